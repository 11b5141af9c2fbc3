"""The five tier retrievers.

Each retriever turns one knowledge source into scored ContextChunks. The
public entry point ``retrieve`` never raises: a failing lookup produces a
TierOutcome carrying the error and no chunks, which the coordinator treats
exactly like an empty success.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from src.config import ContextInjectionConfig
from src.embeddings import EmbeddingClient, cosine_similarity
from src.exceptions import ServiceUnavailableError
from src.models import ContextChunk, ContextSource, TierOutcome
from src.retrieval.company_profile import chunk_company_profile
from src.retrieval.search_clients import CompanyProfileStore, TextSearchClient, VectorSearchClient

logger = logging.getLogger(__name__)


@dataclass
class TierRequest:
    """Inputs shared by every tier for one retrieval call."""

    agent_id: str
    company_id: str
    queries: list[str]
    config: ContextInjectionConfig
    query_embedding: list[float] = field(default_factory=list)

    @property
    def primary_query(self) -> str:
        return self.queries[0]


class TierRetriever(ABC):
    """Base class: error isolation, threshold filtering, ordering and budget.

    Only tiers with ``uses_embedding`` produce cosine scores, so only they are
    filtered by ``similarity_threshold``.
    """

    source: ContextSource
    uses_embedding: bool = False

    def retrieve(self, request: TierRequest) -> TierOutcome:
        start = time.perf_counter()
        try:
            chunks = self.search(request)
        except Exception as e:
            elapsed = (time.perf_counter() - start) * 1000.0
            message = e.message if isinstance(e, ServiceUnavailableError) else str(e) or type(e).__name__
            logger.error("Tier %s failed, contributing no chunks: %s", self.source.value, message)
            return TierOutcome(source=self.source, error=message, elapsed_ms=elapsed)

        chunks = finalize_tier(chunks, request.config, apply_threshold=self.uses_embedding)
        elapsed = (time.perf_counter() - start) * 1000.0
        logger.debug("Tier %s returned %d chunks in %.1fms", self.source.value, len(chunks), elapsed)
        return TierOutcome(source=self.source, chunks=chunks, elapsed_ms=elapsed)

    @abstractmethod
    def search(self, request: TierRequest) -> list[ContextChunk]:
        """Fetch candidate chunks. May raise; ``retrieve`` contains the failure."""


def finalize_tier(
    chunks: list[ContextChunk],
    config: ContextInjectionConfig,
    apply_threshold: bool = True,
) -> list[ContextChunk]:
    """Sort by score descending and cap per source.

    ``similarity_threshold`` is a cosine bound, so it only filters tiers
    scored by embedding similarity. Full-text ``ts_rank`` relevance lives on
    a much smaller scale (often below 0.1) and is never thresholded.
    """
    kept = [c for c in chunks if c.score >= config.similarity_threshold] if apply_threshold else list(chunks)
    kept.sort(key=lambda c: c.score, reverse=True)
    return kept[: config.max_chunks_per_source]


def _require_embedding(request: TierRequest) -> Sequence[float]:
    if not request.query_embedding:
        raise ServiceUnavailableError("query embedding unavailable")
    return request.query_embedding


def _score(row: dict[str, Any], key: str) -> float:
    value = row.get(key)
    return float(value) if value is not None else 0.0


class CompanyProfileRetriever(TierRetriever):
    """Scores the fixed company-profile chunks against the query vector.

    The only tier that embeds per call. Chunk vectors are memoized by content
    hash since profile data rarely changes; pass ``cache_embeddings=False``
    to always recompute.
    """

    source = ContextSource.COMPANY_PROFILE
    uses_embedding = True

    def __init__(
        self,
        store: CompanyProfileStore,
        embedder: EmbeddingClient,
        max_workers: int = 4,
        cache_embeddings: bool = True,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._max_workers = max_workers
        self._cache_embeddings = cache_embeddings
        self._vectors: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    def search(self, request: TierRequest) -> list[ContextChunk]:
        query_vector = _require_embedding(request)
        raw = self._store.load(request.company_id)
        if not raw:
            logger.warning("No company profile found for company %s", request.company_id)
            return []

        chunks = chunk_company_profile(raw)
        if not chunks:
            return []

        with ThreadPoolExecutor(max_workers=min(self._max_workers, len(chunks))) as pool:
            vectors = list(pool.map(self._embed, [c.content for c in chunks]))

        return [
            ContextChunk(
                id=chunk.id,
                content=chunk.content,
                source=chunk.source,
                source_detail=chunk.source_detail,
                score=cosine_similarity(query_vector, vector),
                metadata=chunk.metadata,
            )
            for chunk, vector in zip(chunks, vectors, strict=True)
        ]

    def _embed(self, text: str) -> list[float]:
        if not self._cache_embeddings:
            return self._embedder.embed(text)
        key = hashlib.md5(text.encode("utf-8")).hexdigest()
        with self._lock:
            cached = self._vectors.get(key)
        if cached is not None:
            return cached
        vector = self._embedder.embed(text)
        if vector:
            with self._lock:
                self._vectors[key] = vector
        return vector


class AgentDocumentRetriever(TierRetriever):
    """Vector search over documents attached to the agent."""

    source = ContextSource.AGENT_DOCS
    uses_embedding = True

    def __init__(self, search_client: VectorSearchClient) -> None:
        self._search = search_client

    def search(self, request: TierRequest) -> list[ContextChunk]:
        rows = self._search.search(
            _require_embedding(request),
            request.agent_id,
            request.config.similarity_threshold,
            request.config.max_chunks_per_source,
        )
        return [
            ContextChunk(
                id=str(row.get("id", f"agent_doc_{i}")),
                content=row.get("content") or "",
                source=self.source,
                source_detail=row.get("title") or "",
                score=_score(row, "similarity"),
                metadata={
                    "file_name": row.get("source_file_name"),
                    "uploaded_at": row.get("created_at"),
                    "chunk_index": row.get("chunk_index"),
                    "total_chunks": row.get("total_chunks"),
                    **(row.get("metadata") or {}),
                },
            )
            for i, row in enumerate(rows)
        ]


class SharedDocumentRetriever(TierRetriever):
    """Vector search over documents shared across the company."""

    source = ContextSource.SHARED_DOCS
    uses_embedding = True

    def __init__(self, search_client: VectorSearchClient) -> None:
        self._search = search_client

    def search(self, request: TierRequest) -> list[ContextChunk]:
        rows = self._search.search(
            _require_embedding(request),
            request.company_id,
            request.config.similarity_threshold,
            request.config.max_chunks_per_source,
        )
        return [
            ContextChunk(
                id=str(row.get("id", f"shared_doc_{i}")),
                content=row.get("content") or "",
                source=self.source,
                source_detail=row.get("title") or "Company Documents",
                score=_score(row, "similarity"),
                metadata=dict(row.get("metadata") or {}),
            )
            for i, row in enumerate(rows)
        ]


class PlaybookRetriever(TierRetriever):
    """Full-text playbook search; uses only the primary query."""

    source = ContextSource.PLAYBOOKS

    def __init__(self, search_client: TextSearchClient) -> None:
        self._search = search_client

    def search(self, request: TierRequest) -> list[ContextChunk]:
        rows = self._search.search(
            request.primary_query,
            (request.company_id,),
            request.config.max_chunks_per_source,
        )
        return [
            ContextChunk(
                id=str(row.get("id", f"playbook_{i}")),
                content=row.get("content") or "",
                source=self.source,
                source_detail=row.get("title") or "",
                score=_score(row, "relevance"),
                metadata={
                    "section_order": row.get("section_order"),
                    "tags": list(row.get("tags") or []),
                },
            )
            for i, row in enumerate(rows)
        ]


class KeywordRetriever(TierRetriever):
    """Hybrid keyword search across every source the agent can see."""

    source = ContextSource.KEYWORDS

    def __init__(self, search_client: TextSearchClient) -> None:
        self._search = search_client

    def search(self, request: TierRequest) -> list[ContextChunk]:
        rows = self._search.search(
            request.primary_query,
            (request.company_id, request.agent_id),
            request.config.max_chunks_per_source,
        )
        return [
            ContextChunk(
                id=str(row.get("id", f"keyword_{i}")),
                content=row.get("content") or "",
                source=self.source,
                source_detail=row.get("title") or "",
                score=_score(row, "relevance"),
                metadata={"original_source": row.get("source")},
            )
            for i, row in enumerate(rows)
        ]
