"""Shared domain models for the context-injection pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class ContextSource(str, Enum):
    """The five knowledge tiers, in their fixed priority order."""

    COMPANY_PROFILE = "company_profile"
    AGENT_DOCS = "agent_docs"
    SHARED_DOCS = "shared_docs"
    PLAYBOOKS = "playbooks"
    KEYWORDS = "keywords"

    @property
    def label(self) -> str:
        return _SOURCE_LABELS[self]


_SOURCE_LABELS = {
    ContextSource.COMPANY_PROFILE: "Company Profile",
    ContextSource.AGENT_DOCS: "Agent Documentation",
    ContextSource.SHARED_DOCS: "Company Documents",
    ContextSource.PLAYBOOKS: "Playbooks",
    ContextSource.KEYWORDS: "Keyword Matches",
}

TIER_ORDER: tuple[ContextSource, ...] = tuple(ContextSource)


@dataclass(frozen=True)
class ContextChunk:
    """A unit of retrievable knowledge, created fresh on every retrieval call.

    ``metadata`` is an open bag whose keys depend on ``source``:

    - company_profile: ``section``
    - agent_docs: ``file_name``, ``uploaded_at``, ``chunk_index``, ``total_chunks``
      plus whatever the document row carries
    - shared_docs: the document row's metadata as-is
    - playbooks: ``section_order``, ``tags``
    - keywords: ``original_source``
    """

    id: str
    content: str
    source: ContextSource
    source_detail: str = ""
    score: float = 0.0
    rerank_score: float | None = None
    original_score: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def ranking_score(self) -> float:
        """Score used for ordering: rerank score when present, else tier score."""
        return self.rerank_score if self.rerank_score is not None else self.score

    def with_rerank_score(self, rerank_score: float) -> ContextChunk:
        return replace(self, rerank_score=float(rerank_score), original_score=self.score)


@dataclass(frozen=True)
class AgentIdentity:
    """Read-only identity of the agent the prompt is built for."""

    id: str
    name: str = ""
    role: str = ""
    description: str = ""


@dataclass
class QueryExpansionResult:
    """Expanded query variations; the original query is always first."""

    original_query: str
    expanded_queries: list[str]
    from_cache: bool = False
    expansion_time_ms: float | None = None


@dataclass
class TierOutcome:
    """Result of one tier lookup: chunks, or the error that emptied them."""

    source: ContextSource
    chunks: list[ContextChunk] = field(default_factory=list)
    error: str | None = None
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class RetrievalResult:
    """Chunks from all five tiers plus timing and per-tier diagnostics."""

    company_profile: list[ContextChunk] = field(default_factory=list)
    agent_docs: list[ContextChunk] = field(default_factory=list)
    shared_docs: list[ContextChunk] = field(default_factory=list)
    playbooks: list[ContextChunk] = field(default_factory=list)
    keywords: list[ContextChunk] = field(default_factory=list)
    retrieval_time_ms: float = 0.0
    tier_timings_ms: dict[str, float] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    def tier(self, source: ContextSource) -> list[ContextChunk]:
        return getattr(self, source.value)

    @property
    def total_chunks(self) -> int:
        return sum(len(self.tier(source)) for source in TIER_ORDER)

    def all_chunks(self) -> list[ContextChunk]:
        """Concatenate tiers in their fixed enumeration order."""
        merged: list[ContextChunk] = []
        for source in TIER_ORDER:
            merged.extend(self.tier(source))
        return merged


@dataclass
class RerankResult:
    chunks: list[ContextChunk]
    rerank_time_ms: float = 0.0


@dataclass
class ContextSourceSummary:
    """Per-tier count with up to three example labels (observability only)."""

    source: str
    count: int
    examples: list[str]


@dataclass
class PromptBuildResult:
    system_prompt: str
    context_sources: list[ContextSourceSummary]
    total_tokens: int
    citation_map: dict[str, ContextChunk] | None = None


@dataclass
class ContextInjectionResult:
    """Everything the chat subsystem needs from one orchestration run."""

    system_prompt: str
    prompt_build_result: PromptBuildResult
    expansion: QueryExpansionResult
    expansion_time_ms: float
    retrieval_time_ms: float
    rerank_time_ms: float
    total_time_ms: float
    chunks_retrieved: int
    chunks_used: int
    context_confidence: float
    citation_footer: str
    chunks: list[ContextChunk] = field(default_factory=list)
    stages: list[str] = field(default_factory=list)
    tier_errors: dict[str, str] = field(default_factory=dict)


@dataclass
class ContextRetrievalRecord:
    """Audit record of one orchestration run, handed to a RetrievalLog sink."""

    agent_id: str
    company_id: str
    original_query: str
    expanded_queries: list[str]
    chunks_by_source: dict[str, list[dict[str, Any]]]
    retrieval_time_ms: float
    rerank_time_ms: float
    total_time_ms: float
    context_confidence: float
    sources_used: int
    chunks_retrieved: int
    chunks_used: int
    created_at: str
