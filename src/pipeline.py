"""Context-injection pipeline: expand, retrieve, rerank, build the system prompt."""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from src.audit import RetrievalLog, SupabaseRetrievalLog
from src.config import ContextInjectionConfig, Settings, get_settings
from src.embeddings import EmbeddingClient, MultilingualEmbedder, OpenAIEmbeddingClient
from src.exceptions import ConfigurationError, ValidationError
from src.expansion import ExpansionCache, InMemoryExpansionCache, QueryExpander, SupabaseExpansionCache
from src.generation import CompletionClient, HFGenerator, OllamaGenerator
from src.models import (
    TIER_ORDER,
    AgentIdentity,
    ContextChunk,
    ContextInjectionResult,
    ContextRetrievalRecord,
    QueryExpansionResult,
)
from src.prompting import PromptBuilder, format_citation_footer, group_chunks_by_source, truncate_prompt_to_token_limit
from src.retrieval.coordinator import RetrievalCoordinator
from src.retrieval.reranker import BM25Reranker, CrossEncoderReranker, Reranker, ServiceReranker
from src.retrieval.search_clients import (
    KnowledgeStoreClient,
    SupabaseCompanyProfileStore,
    agent_document_search,
    keyword_search,
    playbook_search,
    shared_document_search,
)
from src.retrieval.tiers import (
    AgentDocumentRetriever,
    CompanyProfileRetriever,
    KeywordRetriever,
    PlaybookRetriever,
    SharedDocumentRetriever,
)

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    """Linear pipeline states; expansion and reranking may be skipped."""

    IDLE = "Idle"
    EXPANDING = "Expanding"
    RETRIEVING = "Retrieving"
    RERANKING = "Reranking"
    PROMPT_BUILDING = "PromptBuilding"
    DONE = "Done"


def context_confidence(chunks: list[ContextChunk]) -> float:
    """Mean ranking score of the final chunks, clamped to [0, 1]; 0 when empty."""
    if not chunks:
        return 0.0
    mean = sum(c.ranking_score for c in chunks) / len(chunks)
    return min(1.0, max(0.0, mean))


class ContextInjectionPipeline:
    """Orchestrates one context-injection run.

    Flow: 1. expand query 2. retrieve from all tiers 3. rerank or truncate
    4. build prompt 5. score confidence, footer and audit record.

    Every stage degrades internally, so ``run`` only raises for invalid
    input (empty query).
    """

    def __init__(
        self,
        expander: QueryExpander | None,
        coordinator: RetrievalCoordinator,
        rerankers: Mapping[str, Reranker] | None = None,
        prompt_builder: PromptBuilder | None = None,
        retrieval_log: RetrievalLog | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            expander: Query expander; None disables expansion regardless of config.
            coordinator: Tier fan-out.
            rerankers: Reranker per strategy name (``service``, ``cross_encoder``,
                ``bm25``). Missing strategies fall back to BM25.
            prompt_builder: Defaults to PromptBuilder().
            retrieval_log: Optional audit sink; failures are logged, never raised.
        """
        self._expander = expander
        self._coordinator = coordinator
        self._rerankers: dict[str, Reranker] = dict(rerankers or {})
        self._prompt_builder = prompt_builder or PromptBuilder()
        self._retrieval_log = retrieval_log

    @property
    def expansion_cache(self) -> ExpansionCache | None:
        """Cache behind the expander, for periodic cleanup; None without an expander."""
        return self._expander.cache if self._expander is not None else None

    def run(
        self,
        agent: AgentIdentity,
        company_id: str,
        user_query: str,
        config: ContextInjectionConfig | None = None,
    ) -> ContextInjectionResult:
        """Build a context-grounded system prompt for ``user_query``.

        Args:
            agent: Identity of the agent answering.
            company_id: Company whose knowledge is searched.
            user_query: The user's question.
            config: Per-agent settings; defaults apply when omitted.

        Returns:
            ContextInjectionResult with the (token-limited) system prompt,
            timings, chunk counts, confidence and citation footer.

        Raises:
            ValidationError: If ``user_query`` is empty.
        """
        if not user_query or not user_query.strip():
            raise ValidationError("user_query must be a non-empty string")
        config = config or ContextInjectionConfig()
        query = user_query.strip()
        start = time.perf_counter()
        stages = [Stage.IDLE]

        # 1. expand
        if config.enable_query_expansion and self._expander is not None:
            self._enter(stages, Stage.EXPANDING)
            expansion = self._expander.expand(
                query,
                max_expansions=config.max_expanded_queries,
                model=config.expansion_model,
            )
        else:
            expansion = QueryExpansionResult(original_query=query, expanded_queries=[query], expansion_time_ms=0.0)
        expansion_time_ms = expansion.expansion_time_ms or 0.0

        # 2. retrieve
        self._enter(stages, Stage.RETRIEVING)
        retrieval = self._coordinator.retrieve(agent.id, company_id, expansion.expanded_queries, config)
        pool = retrieval.all_chunks()

        # 3. rerank, or keep tier order within the overall budget
        rerank_time_ms = 0.0
        if config.enable_reranking:
            self._enter(stages, Stage.RERANKING)
            reranked = self._reranker_for(config.rerank_strategy).rerank(
                query,
                pool,
                top_n=config.effective_top_n,
                model=config.rerank_model,
            )
            final_chunks = reranked.chunks[: config.total_max_chunks]
            rerank_time_ms = reranked.rerank_time_ms
        else:
            final_chunks = pool[: config.total_max_chunks]

        # 4. build prompt
        self._enter(stages, Stage.PROMPT_BUILDING)
        built = self._prompt_builder.build(agent, final_chunks, query, config)
        system_prompt = truncate_prompt_to_token_limit(built.system_prompt, config.max_context_tokens)

        # 5. confidence and footer
        confidence = context_confidence(final_chunks)
        footer = format_citation_footer(final_chunks, confidence, retrieval.retrieval_time_ms)
        total_time_ms = (time.perf_counter() - start) * 1000.0
        self._enter(stages, Stage.DONE)

        result = ContextInjectionResult(
            system_prompt=system_prompt,
            prompt_build_result=built,
            expansion=expansion,
            expansion_time_ms=expansion_time_ms,
            retrieval_time_ms=retrieval.retrieval_time_ms,
            rerank_time_ms=rerank_time_ms,
            total_time_ms=total_time_ms,
            chunks_retrieved=retrieval.total_chunks,
            chunks_used=len(final_chunks),
            context_confidence=confidence,
            citation_footer=footer,
            chunks=final_chunks,
            stages=[s.value for s in stages],
            tier_errors=dict(retrieval.errors),
        )
        logger.info(
            "Context injection for agent %s: %d/%d chunks, confidence %.2f, %.0fms "
            "(expand %.0fms, retrieve %.0fms, rerank %.0fms)",
            agent.id,
            result.chunks_used,
            result.chunks_retrieved,
            confidence,
            total_time_ms,
            expansion_time_ms,
            retrieval.retrieval_time_ms,
            rerank_time_ms,
        )
        self._log_retrieval(agent, company_id, result)
        return result

    @staticmethod
    def _enter(stages: list[Stage], stage: Stage) -> None:
        logger.debug("Pipeline stage %s -> %s", stages[-1].value, stage.value)
        stages.append(stage)

    def _reranker_for(self, strategy: str) -> Reranker:
        reranker = self._rerankers.get(strategy)
        if reranker is None:
            logger.warning("No reranker configured for strategy %r; using BM25", strategy)
            reranker = self._rerankers.setdefault(strategy, BM25Reranker())
        return reranker

    def _log_retrieval(
        self,
        agent: AgentIdentity,
        company_id: str,
        result: ContextInjectionResult,
    ) -> None:
        if self._retrieval_log is None:
            return
        record = build_retrieval_record(agent, company_id, result)
        try:
            self._retrieval_log.record(record)
        except Exception as e:
            logger.warning("Failed to write retrieval log (ignored): %s", e)


def build_retrieval_record(
    agent: AgentIdentity,
    company_id: str,
    result: ContextInjectionResult,
) -> ContextRetrievalRecord:
    """Audit record for one run; chunk content is summarized, not stored."""
    grouped = group_chunks_by_source(result.chunks)
    chunks_by_source: dict[str, list[dict[str, Any]]] = {
        source.value: [
            {
                "id": c.id,
                "source_detail": c.source_detail,
                "score": c.score,
                "rerank_score": c.rerank_score,
            }
            for c in grouped[source]
        ]
        for source in TIER_ORDER
    }
    return ContextRetrievalRecord(
        agent_id=agent.id,
        company_id=company_id,
        original_query=result.expansion.original_query,
        expanded_queries=list(result.expansion.expanded_queries),
        chunks_by_source=chunks_by_source,
        retrieval_time_ms=result.retrieval_time_ms,
        rerank_time_ms=result.rerank_time_ms,
        total_time_ms=result.total_time_ms,
        context_confidence=result.context_confidence,
        sources_used=sum(1 for group in grouped.values() if group),
        chunks_retrieved=result.chunks_retrieved,
        chunks_used=result.chunks_used,
        created_at=datetime.now(timezone.utc).isoformat(),
    )


def _default_embedder(settings: Settings) -> EmbeddingClient:
    """Pick embedding backend from config (openai|local). Default: openai."""
    choice = (settings.contextforge_embedding_backend or "openai").strip().lower()
    if choice == "local":
        return MultilingualEmbedder(model_name=settings.local_embedding_model)
    if choice != "openai":
        raise ConfigurationError(f"Unknown embedding backend: {choice!r}")
    if not settings.openai_api_key:
        raise ConfigurationError(
            "OpenAI embedding backend selected but OPENAI_API_KEY is not set. "
            "Set it in .env or use CONTEXTFORGE_EMBEDDING_BACKEND=local."
        )
    return OpenAIEmbeddingClient(
        api_key=settings.openai_api_key,
        url=settings.openai_embedding_url,
        model=settings.openai_embedding_model,
        dimensions=settings.openai_embedding_dimensions,
        timeout=settings.contextforge_request_timeout,
    )


def _default_llm(settings: Settings) -> CompletionClient:
    """Pick expansion LLM from config (ollama|hf). Default: ollama."""
    choice = (settings.contextforge_expansion_backend or "ollama").strip().lower()
    if choice == "hf":
        if not settings.hf_api_key:
            raise ConfigurationError(
                "HuggingFace expansion backend selected but HF_API_KEY is not set. "
                "Set it in .env or use CONTEXTFORGE_EXPANSION_BACKEND=ollama."
            )
        return HFGenerator(
            api_key=settings.hf_api_key,
            model=settings.hf_model or None,
            timeout=settings.contextforge_request_timeout,
        )
    if choice != "ollama":
        raise ConfigurationError(f"Unknown expansion backend: {choice!r}")
    return OllamaGenerator(
        base_url=settings.ollama_url or None,
        model=settings.ollama_model or None,
        timeout=settings.contextforge_request_timeout,
    )


def build_expansion_cache(settings: Settings) -> ExpansionCache:
    """Pick expansion cache from config (supabase|memory). Default: supabase."""
    choice = (settings.contextforge_expansion_cache or "supabase").strip().lower()
    if choice == "memory":
        return InMemoryExpansionCache(
            ttl=timedelta(days=settings.contextforge_expansion_cache_ttl_days),
            stale_after=timedelta(days=settings.contextforge_expansion_cache_stale_days),
        )
    if choice != "supabase":
        raise ConfigurationError(f"Unknown expansion cache: {choice!r}")
    if not settings.supabase_url or not settings.supabase_key:
        raise ConfigurationError(
            "Expansion cache 'supabase' needs SUPABASE_URL and SUPABASE_KEY, "
            "or set CONTEXTFORGE_EXPANSION_CACHE=memory."
        )
    return SupabaseExpansionCache(
        settings.supabase_url,
        settings.supabase_key,
        timeout=settings.contextforge_request_timeout,
    )


def build_rerankers(settings: Settings) -> dict[str, Reranker]:
    """One reranker per strategy; the cross-encoder loads its model on first use."""
    return {
        "service": ServiceReranker(
            api_key=settings.cohere_api_key,
            url=settings.cohere_rerank_url,
            timeout=settings.contextforge_request_timeout,
        ),
        "cross_encoder": CrossEncoderReranker(model_name=settings.contextforge_cross_encoder_model),
        "bm25": BM25Reranker(),
    }


def build_pipeline(settings: Settings | None = None) -> ContextInjectionPipeline:
    """Wire the pipeline against the configured services.

    Raises:
        ConfigurationError: If a required service URL or key is missing.
    """
    settings = settings or get_settings()
    if not settings.supabase_url or not settings.supabase_key:
        raise ConfigurationError(
            "Knowledge store not configured. Set SUPABASE_URL and SUPABASE_KEY in .env."
        )
    timeout = settings.contextforge_request_timeout
    store = KnowledgeStoreClient(settings.supabase_url, settings.supabase_key, timeout=timeout)
    embedder = _default_embedder(settings)

    retrievers = [
        CompanyProfileRetriever(SupabaseCompanyProfileStore(store), embedder),
        AgentDocumentRetriever(agent_document_search(store)),
        SharedDocumentRetriever(shared_document_search(store)),
        PlaybookRetriever(playbook_search(store)),
        KeywordRetriever(keyword_search(store)),
    ]
    coordinator = RetrievalCoordinator(retrievers, embedder, max_workers=settings.contextforge_max_workers)

    expander = QueryExpander(_default_llm(settings), cache=build_expansion_cache(settings))

    logger.info(
        "Pipeline ready: embeddings=%s, expansion=%s",
        settings.contextforge_embedding_backend,
        settings.contextforge_expansion_backend,
    )
    return ContextInjectionPipeline(
        expander=expander,
        coordinator=coordinator,
        rerankers=build_rerankers(settings),
        retrieval_log=SupabaseRetrievalLog(store),
    )

