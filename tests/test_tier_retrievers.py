"""Tests for the five tier retrievers."""

from __future__ import annotations

import sys
import threading
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from src.config import ContextInjectionConfig
from src.exceptions import ServiceUnavailableError
from src.models import ContextSource
from src.retrieval import (
    AgentDocumentRetriever,
    CompanyProfileRetriever,
    KeywordRetriever,
    PlaybookRetriever,
    SharedDocumentRetriever,
    TierRequest,
)

QUERY_VECTOR = [1.0, 0.0, 0.0]


class FakeVectorSearch:
    """Returns canned rows and records the call arguments."""

    def __init__(self, rows: list[dict], error: Exception | None = None) -> None:
        self.rows = rows
        self.error = error
        self.calls: list[tuple] = []

    def search(self, query_embedding, scope_id, threshold, limit):
        self.calls.append((list(query_embedding), scope_id, threshold, limit))
        if self.error is not None:
            raise self.error
        return self.rows


class FakeTextSearch:
    def __init__(self, rows: list[dict], error: Exception | None = None) -> None:
        self.rows = rows
        self.error = error
        self.calls: list[tuple] = []

    def search(self, query_text, scope_ids, limit):
        self.calls.append((query_text, tuple(scope_ids), limit))
        if self.error is not None:
            raise self.error
        return self.rows


class KeywordEmbedder:
    """Maps text onto 3 axes by keyword so similarities are predictable."""

    def __init__(self) -> None:
        self.calls = 0
        self._lock = threading.Lock()

    def embed(self, text: str) -> list[float]:
        with self._lock:
            self.calls += 1
        lowered = text.lower()
        if "overview" in lowered:
            return [1.0, 0.0, 0.0]
        if "mission" in lowered:
            return [0.8, 0.6, 0.0]
        return [0.0, 0.0, 1.0]


class FakeProfileStore:
    def __init__(self, profile: dict | None) -> None:
        self.profile = profile

    def load(self, company_id: str) -> dict | None:
        return self.profile


PROFILE = {
    "coreIdentityAndStrategicFoundation": {
        "companyOverview": "Acme builds software.",
        "missionAndVision": {"missionStatement": "Simplify.", "visionStatement": "Everywhere."},
        "coreValues": ["Craft"],
    }
}


def _request(queries: list[str] | None = None, embedding: list[float] | None = None, **config) -> TierRequest:
    return TierRequest(
        agent_id="agent-1",
        company_id="company-1",
        queries=queries or ["pricing strategy", "how do we price"],
        config=ContextInjectionConfig(**config),
        query_embedding=QUERY_VECTOR if embedding is None else embedding,
    )


def _row(i: int, score: float, key: str = "similarity", **extra) -> dict:
    return {"id": f"row-{i}", "content": f"content {i}", "title": f"Doc {i}", key: score, **extra}


def test_threshold_filter_sort_and_cap() -> None:
    """Below-threshold rows are dropped; the rest are sorted and capped per source."""
    rows = [_row(1, 0.71), _row(2, 0.95), _row(3, 0.69), _row(4, 0.80), _row(5, 0.90)]
    retriever = AgentDocumentRetriever(FakeVectorSearch(rows))
    outcome = retriever.retrieve(_request(similarity_threshold=0.7, max_chunks_per_source=3))

    assert outcome.ok
    assert [c.score for c in outcome.chunks] == [0.95, 0.90, 0.80]
    assert all(c.score >= 0.7 for c in outcome.chunks)


def test_agent_docs_scope_and_metadata() -> None:
    """Agent docs search by agent id and carry file metadata."""
    search = FakeVectorSearch(
        [_row(1, 0.9, source_file_name="guide.pdf", chunk_index=2, total_chunks=7, metadata={"lang": "en"})]
    )
    outcome = AgentDocumentRetriever(search).retrieve(_request(max_chunks_per_source=4, similarity_threshold=0.5))

    assert search.calls == [(QUERY_VECTOR, "agent-1", 0.5, 4)]
    chunk = outcome.chunks[0]
    assert chunk.source is ContextSource.AGENT_DOCS
    assert chunk.source_detail == "Doc 1"
    assert chunk.metadata["file_name"] == "guide.pdf"
    assert chunk.metadata["chunk_index"] == 2
    assert chunk.metadata["lang"] == "en"


def test_shared_docs_scope_and_default_title() -> None:
    """Shared docs search by company id; untitled rows get a generic label."""
    search = FakeVectorSearch([{"id": "s1", "content": "x", "similarity": 0.9}])
    outcome = SharedDocumentRetriever(search).retrieve(_request())
    assert search.calls[0][1] == "company-1"
    assert outcome.chunks[0].source_detail == "Company Documents"


def test_playbooks_use_primary_query_only() -> None:
    """Playbook search sends only the original query, scoped to the company."""
    search = FakeTextSearch([_row(1, 0.8, key="relevance", tags=["sales", "pricing"], section_order=3)])
    outcome = PlaybookRetriever(search).retrieve(_request())

    assert search.calls == [("pricing strategy", ("company-1",), 3)]
    chunk = outcome.chunks[0]
    assert chunk.source is ContextSource.PLAYBOOKS
    assert chunk.metadata == {"section_order": 3, "tags": ["sales", "pricing"]}


def test_keywords_scope_company_and_agent() -> None:
    """Keyword search spans company and agent scopes and records the origin tier."""
    search = FakeTextSearch([_row(1, 0.75, key="relevance", source="playbooks")])
    outcome = KeywordRetriever(search).retrieve(_request())
    assert search.calls[0][1] == ("company-1", "agent-1")
    assert outcome.chunks[0].metadata == {"original_source": "playbooks"}


def test_text_tiers_keep_low_relevance_rows() -> None:
    """Full-text ts_rank scores sit far below the cosine threshold and are still kept."""
    playbooks = PlaybookRetriever(FakeTextSearch([_row(1, 0.0607927, key="relevance")])).retrieve(_request())
    keywords = KeywordRetriever(FakeTextSearch([_row(2, 0.0607927, key="relevance")])).retrieve(_request())
    assert [c.id for c in playbooks.chunks] == ["row-1"]
    assert [c.id for c in keywords.chunks] == ["row-2"]


def test_text_tiers_sorted_and_capped() -> None:
    """Without a threshold, text tiers are still ordered by relevance and capped."""
    rows = [_row(i, score, key="relevance") for i, score in enumerate([0.02, 0.09, 0.001, 0.05])]
    outcome = KeywordRetriever(FakeTextSearch(rows)).retrieve(_request(max_chunks_per_source=2))
    assert [c.score for c in outcome.chunks] == [0.09, 0.05]


def test_failure_becomes_error_outcome() -> None:
    """A raising search yields an empty outcome with the error, never an exception."""
    search = FakeTextSearch([], error=ServiceUnavailableError("RPC search_playbooks failed"))
    outcome = PlaybookRetriever(search).retrieve(_request())
    assert not outcome.ok
    assert outcome.chunks == []
    assert outcome.error == "RPC search_playbooks failed"

    crash = AgentDocumentRetriever(FakeVectorSearch([], error=KeyError("similarity")))
    assert crash.retrieve(_request()).chunks == []


def test_vector_tier_without_embedding_reports_error() -> None:
    """With no query vector, vector tiers skip the search and report why."""
    search = FakeVectorSearch([_row(1, 0.9)])
    outcome = AgentDocumentRetriever(search).retrieve(_request(embedding=[]))
    assert outcome.chunks == []
    assert outcome.error == "query embedding unavailable"
    assert search.calls == []


def test_company_profile_scores_by_similarity() -> None:
    """Profile chunks are scored against the query vector and thresholded."""
    embedder = KeywordEmbedder()
    retriever = CompanyProfileRetriever(FakeProfileStore(PROFILE), embedder)
    outcome = retriever.retrieve(_request(similarity_threshold=0.7))

    assert [c.source_detail for c in outcome.chunks] == ["Company Overview", "Mission & Vision"]
    assert outcome.chunks[0].score == 1.0
    assert abs(outcome.chunks[1].score - 0.8) < 1e-9


def test_company_profile_embeddings_are_memoized() -> None:
    """Repeated runs reuse chunk vectors; disabling the memo recomputes them."""
    embedder = KeywordEmbedder()
    retriever = CompanyProfileRetriever(FakeProfileStore(PROFILE), embedder)
    retriever.retrieve(_request())
    retriever.retrieve(_request())
    assert embedder.calls == 3

    embedder = KeywordEmbedder()
    retriever = CompanyProfileRetriever(FakeProfileStore(PROFILE), embedder, cache_embeddings=False)
    retriever.retrieve(_request())
    retriever.retrieve(_request())
    assert embedder.calls == 6


def test_missing_profile_is_empty_success() -> None:
    """A company without a profile contributes nothing, without an error."""
    outcome = CompanyProfileRetriever(FakeProfileStore(None), KeywordEmbedder()).retrieve(_request())
    assert outcome.ok
    assert outcome.chunks == []


def run_tests() -> None:
    """Run all tier retriever tests."""
    tests = [
        test_threshold_filter_sort_and_cap,
        test_agent_docs_scope_and_metadata,
        test_shared_docs_scope_and_default_title,
        test_playbooks_use_primary_query_only,
        test_keywords_scope_company_and_agent,
        test_text_tiers_keep_low_relevance_rows,
        test_text_tiers_sorted_and_capped,
        test_failure_becomes_error_outcome,
        test_vector_tier_without_embedding_reports_error,
        test_company_profile_scores_by_similarity,
        test_company_profile_embeddings_are_memoized,
        test_missing_profile_is_empty_success,
    ]
    for t in tests:
        t()
        print(f"  OK {t.__name__}")
    print(f"\nAll {len(tests)} tier retriever tests passed.")


if __name__ == "__main__":
    run_tests()
