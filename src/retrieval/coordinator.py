"""Retrieval coordinator: concurrent fan-out to the five tier retrievers."""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor

from src.config import ContextInjectionConfig
from src.embeddings import EmbeddingClient
from src.exceptions import ValidationError
from src.models import TIER_ORDER, ContextSource, RetrievalResult, TierOutcome
from src.retrieval.tiers import TierRequest, TierRetriever

logger = logging.getLogger(__name__)


class RetrievalCoordinator:
    """Runs every enabled tier concurrently and merges their outcomes.

    Process:
    1. Embed the primary (first) query once, only if an enabled tier needs it.
    2. Submit each enabled tier to a thread pool; disabled tiers resolve to
       an empty outcome without any I/O.
    3. Join on all tiers. There is no early return; a failed tier simply
       contributes nothing.
    """

    def __init__(
        self,
        retrievers: list[TierRetriever],
        embedder: EmbeddingClient,
        max_workers: int = 5,
    ) -> None:
        self._retrievers: dict[ContextSource, TierRetriever] = {}
        for retriever in retrievers:
            if retriever.source in self._retrievers:
                raise ValueError(f"Duplicate retriever for tier {retriever.source.value}")
            self._retrievers[retriever.source] = retriever
        self._embedder = embedder
        self._max_workers = max_workers

    def retrieve(
        self,
        agent_id: str,
        company_id: str,
        queries: list[str],
        config: ContextInjectionConfig,
    ) -> RetrievalResult:
        """Retrieve scored chunks from all enabled tiers.

        Args:
            agent_id: Scope for agent documents and keyword search.
            company_id: Scope for the company profile, shared docs and playbooks.
            queries: Original query first, then expansions.
            config: Tier switches, threshold and per-source budget.

        Returns:
            RetrievalResult with one list per tier, per-tier timings and errors.
        """
        if not queries or not queries[0].strip():
            raise ValidationError("retrieve() needs at least the original query")

        start = time.perf_counter()
        active = [
            self._retrievers[source]
            for source in TIER_ORDER
            if config.tier_enabled(source) and source in self._retrievers
        ]

        request = TierRequest(agent_id=agent_id, company_id=company_id, queries=list(queries), config=config)
        if any(r.uses_embedding for r in active):
            request.query_embedding = self._embed_primary(request.primary_query)
            if not request.query_embedding:
                logger.warning("Query embedding unavailable; vector tiers will return nothing")

        outcomes: dict[ContextSource, TierOutcome] = {
            source: TierOutcome(source=source) for source in TIER_ORDER
        }
        if active:
            with ThreadPoolExecutor(max_workers=min(self._max_workers, len(active))) as pool:
                futures: dict[ContextSource, Future[TierOutcome]] = {
                    r.source: pool.submit(r.retrieve, request) for r in active
                }
                for source, future in futures.items():
                    outcomes[source] = future.result()

        result = RetrievalResult(
            company_profile=outcomes[ContextSource.COMPANY_PROFILE].chunks,
            agent_docs=outcomes[ContextSource.AGENT_DOCS].chunks,
            shared_docs=outcomes[ContextSource.SHARED_DOCS].chunks,
            playbooks=outcomes[ContextSource.PLAYBOOKS].chunks,
            keywords=outcomes[ContextSource.KEYWORDS].chunks,
            retrieval_time_ms=(time.perf_counter() - start) * 1000.0,
            tier_timings_ms={s.value: o.elapsed_ms for s, o in outcomes.items()},
            errors={s.value: o.error for s, o in outcomes.items() if o.error is not None},
        )
        logger.info(
            "Retrieved %d chunks from %d tiers in %.0fms (%d failed)",
            result.total_chunks,
            len(active),
            result.retrieval_time_ms,
            len(result.errors),
        )
        return result

    def _embed_primary(self, query: str) -> list[float]:
        try:
            return list(self._embedder.embed(query))
        except Exception as e:
            logger.error("Embedding client raised instead of degrading: %s", e)
            return []
