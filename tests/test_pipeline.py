"""Tests for ContextInjectionPipeline (expand, retrieve, rerank, build)."""

from __future__ import annotations

import sys
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from src.audit import InMemoryRetrievalLog
from src.config import ContextInjectionConfig
from src.exceptions import ServiceUnavailableError, ValidationError
from src.models import AgentIdentity, ContextChunk, ContextSource, QueryExpansionResult
from src.pipeline import ContextInjectionPipeline, Stage, build_retrieval_record, context_confidence
from src.prompting.prompt_builder import TRUNCATION_MARKER, estimate_tokens
from src.retrieval import RetrievalCoordinator, Reranker, TierRequest, TierRetriever

AGENT = AgentIdentity(id="agent-1", name="Max", role="Marketing Strategist", description="a growth marketer")


class FixedTier(TierRetriever):
    """Tier returning fixed (score, content) pairs, or raising."""

    def __init__(
        self,
        source: ContextSource,
        items: list[tuple[float, str]],
        error: Exception | None = None,
    ) -> None:
        self.source = source
        self.items = items
        self.error = error
        self.requests: list[TierRequest] = []

    def search(self, request: TierRequest) -> list[ContextChunk]:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return [
            ContextChunk(
                id=f"{self.source.value}-{i}",
                content=content,
                source=self.source,
                source_detail=f"{self.source.label} {i}",
                score=score,
            )
            for i, (score, content) in enumerate(self.items)
        ]


class FakeExpander:
    def __init__(self, expansions: list[str]) -> None:
        self.expansions = expansions
        self.calls: list[tuple[str, int, str | None]] = []

    def expand(self, query: str, max_expansions: int = 5, use_cache: bool = True, model: str | None = None):
        self.calls.append((query, max_expansions, model))
        return QueryExpansionResult(
            original_query=query,
            expanded_queries=[query, *self.expansions[:max_expansions]],
            expansion_time_ms=1.5,
        )


class NullEmbedder:
    def embed(self, text: str) -> list[float]:
        return [0.0]


class SlowFailingReranker(Reranker):
    """Simulates a rerank service that times out."""

    def _rerank(self, query, chunks, top_n, model):
        time.sleep(0.01)
        raise ServiceUnavailableError("Rerank service timed out")


class ReversingReranker(Reranker):
    def __init__(self) -> None:
        self.calls: list[tuple[str, int, str | None]] = []

    def _rerank(self, query, chunks, top_n, model):
        self.calls.append((query, top_n, model))
        return [c.with_rerank_score(0.5) for c in reversed(chunks)][:top_n]


class ExplodingLog:
    def record(self, entry) -> None:
        raise RuntimeError("log table missing")


def _coordinator(*tiers: FixedTier) -> RetrievalCoordinator:
    return RetrievalCoordinator(list(tiers), NullEmbedder())


def _three_tiers() -> list[FixedTier]:
    return [
        FixedTier(ContextSource.COMPANY_PROFILE, [(0.9, "Mission: grow"), (0.8, "Voice: direct")]),
        FixedTier(ContextSource.AGENT_DOCS, [(0.88, "Q4 CAC fell 12%"), (0.77, "Paid social ROI")]),
        FixedTier(ContextSource.PLAYBOOKS, [(0.75, "Launch checklist"), (0.72, "Review cadence")]),
    ]


def test_three_tiers_without_reranking() -> None:
    """Two chunks from each of three tiers yield three sections and six citations."""
    pipeline = ContextInjectionPipeline(FakeExpander([]), _coordinator(*_three_tiers()))
    config = ContextInjectionConfig(enable_reranking=False)
    result = pipeline.run(AGENT, "company-1", "How do we cut CAC?", config)

    assert result.chunks_retrieved == 6
    assert result.chunks_used == 6
    prompt = result.system_prompt
    assert "### TIER 1: Company Profile" in prompt
    assert "### TIER 2: Your Specialized Knowledge" in prompt
    assert "### TIER 4: Playbooks & Procedures" in prompt
    assert "### TIER 3" not in prompt
    assert "[6]" in prompt and "[7]" not in prompt
    built = result.prompt_build_result
    assert [s.source for s in built.context_sources] == ["Company Profile", "Agent Documentation", "Playbooks"]
    assert built.total_tokens == estimate_tokens(built.system_prompt)
    assert result.rerank_time_ms == 0.0


def test_all_tiers_disabled() -> None:
    """No tiers still yields a usable prompt with no sources and zero confidence."""
    config = ContextInjectionConfig(
        enable_company_profile=False,
        enable_agent_docs=False,
        enable_shared_docs=False,
        enable_playbooks=False,
        enable_keyword_search=False,
    )
    tiers = _three_tiers()
    pipeline = ContextInjectionPipeline(None, _coordinator(*tiers))
    result = pipeline.run(AGENT, "company-1", "Anything?", config)

    assert result.chunks_used == 0
    assert result.system_prompt
    assert 'The user asked: "Anything?"' in result.system_prompt
    assert result.prompt_build_result.context_sources == []
    assert result.context_confidence == 0.0
    assert result.citation_footer == ""
    assert all(not t.requests for t in tiers)


def test_rerank_timeout_falls_back_to_score_order() -> None:
    """A failing reranker keeps the top-N by tier score and still reports its time."""
    tiers = [
        FixedTier(ContextSource.COMPANY_PROFILE, [(0.8, "a")]),
        FixedTier(ContextSource.AGENT_DOCS, [(0.95, "b"), (0.9, "c")]),
        FixedTier(ContextSource.SHARED_DOCS, [(0.85, "d")]),
    ]
    pipeline = ContextInjectionPipeline(
        None, _coordinator(*tiers), rerankers={"service": SlowFailingReranker()}
    )
    config = ContextInjectionConfig(rerank_top_n=3, enable_query_expansion=False)
    result = pipeline.run(AGENT, "company-1", "q", config)

    assert [c.content for c in result.chunks] == ["b", "c", "d"]
    assert all(c.rerank_score is None for c in result.chunks)
    assert result.rerank_time_ms > 0


def test_reranker_receives_original_query_and_settings() -> None:
    """The reranker sees the original query, effective top-N and rerank model."""
    reranker = ReversingReranker()
    pipeline = ContextInjectionPipeline(
        FakeExpander(["variation one"]), _coordinator(*_three_tiers()), rerankers={"service": reranker}
    )
    config = ContextInjectionConfig(total_max_chunks=4, rerank_model="rerank-v9")
    result = pipeline.run(AGENT, "company-1", "  cut CAC  ", config)

    assert reranker.calls == [("cut CAC", 4, "rerank-v9")]
    assert result.chunks_used == 4
    assert result.chunks[0].content == "Review cadence"
    assert result.context_confidence == 0.5


def test_total_budget_without_reranking() -> None:
    """With reranking off the merged pool is cut in tier order."""
    pipeline = ContextInjectionPipeline(None, _coordinator(*_three_tiers()))
    config = ContextInjectionConfig(enable_reranking=False, total_max_chunks=3)
    result = pipeline.run(AGENT, "company-1", "q", config)

    assert [c.content for c in result.chunks] == ["Mission: grow", "Voice: direct", "Q4 CAC fell 12%"]


def test_expansions_reach_every_tier() -> None:
    """Expanded queries are passed to the tiers with the original first."""
    expander = FakeExpander(["alt one", "alt two", "alt three"])
    tiers = _three_tiers()
    pipeline = ContextInjectionPipeline(expander, _coordinator(*tiers))
    config = ContextInjectionConfig(max_expanded_queries=2, expansion_model="mini", enable_reranking=False)
    result = pipeline.run(AGENT, "company-1", "q", config)

    assert expander.calls == [("q", 2, "mini")]
    assert result.expansion.expanded_queries == ["q", "alt one", "alt two"]
    assert tiers[1].requests[0].queries == ["q", "alt one", "alt two"]
    assert result.expansion_time_ms == 1.5


def test_context_confidence() -> None:
    """Mean ranking score, clamped to [0, 1]; zero for no chunks."""
    chunk = ContextChunk(id="x", content="c", source=ContextSource.KEYWORDS, score=0.8)
    assert context_confidence([]) == 0.0
    assert abs(context_confidence([chunk, chunk.with_rerank_score(0.4)]) - 0.6) < 1e-9
    assert context_confidence([chunk.with_rerank_score(1.5), chunk.with_rerank_score(0.9)]) == 1.0
    assert context_confidence([chunk.with_rerank_score(-2.0)]) == 0.0


def test_stages_reflect_skipped_steps() -> None:
    """Expansion and reranking appear only when they run."""
    full = ContextInjectionPipeline(
        FakeExpander([]), _coordinator(*_three_tiers()), rerankers={"service": ReversingReranker()}
    ).run(AGENT, "company-1", "q", ContextInjectionConfig(total_max_chunks=4))
    assert full.stages == [s.value for s in Stage]

    minimal = ContextInjectionPipeline(FakeExpander([]), _coordinator(*_three_tiers())).run(
        AGENT,
        "company-1",
        "q",
        ContextInjectionConfig(enable_query_expansion=False, enable_reranking=False),
    )
    assert minimal.stages == ["Idle", "Retrieving", "PromptBuilding", "Done"]
    assert minimal.expansion.expanded_queries == ["q"]
    assert minimal.expansion_time_ms == 0.0


def test_prompt_truncated_to_token_limit() -> None:
    """The returned prompt is cut at max_context_tokens; the build result keeps it whole."""
    long_doc = FixedTier(ContextSource.AGENT_DOCS, [(0.9, "x" * 6000)])
    pipeline = ContextInjectionPipeline(None, _coordinator(long_doc))
    config = ContextInjectionConfig(max_context_tokens=1000, enable_reranking=False)
    result = pipeline.run(AGENT, "company-1", "q", config)

    assert result.system_prompt.endswith(TRUNCATION_MARKER)
    assert len(result.system_prompt) == 4000 + len(TRUNCATION_MARKER)
    assert len(result.prompt_build_result.system_prompt) > 6000


def test_tier_failure_reported_not_raised() -> None:
    """A failing tier shows up in tier_errors while the others still contribute."""
    tiers = _three_tiers()
    tiers[2] = FixedTier(ContextSource.PLAYBOOKS, [], error=ServiceUnavailableError("search down"))
    pipeline = ContextInjectionPipeline(None, _coordinator(*tiers))
    result = pipeline.run(AGENT, "company-1", "q", ContextInjectionConfig(enable_reranking=False))

    assert result.tier_errors == {"playbooks": "search down"}
    assert result.chunks_used == 4
    assert "### TIER 4" not in result.system_prompt


def test_missing_strategy_uses_bm25() -> None:
    """An unconfigured strategy falls back to BM25 scoring."""
    pipeline = ContextInjectionPipeline(None, _coordinator(*_three_tiers()), rerankers={})
    config = ContextInjectionConfig(rerank_strategy="cross_encoder", total_max_chunks=2)
    result = pipeline.run(AGENT, "company-1", "launch checklist", config)

    assert result.chunks_used == 2
    assert result.chunks[0].content == "Launch checklist"
    assert all(c.rerank_score is not None for c in result.chunks)


def test_retrieval_log_recorded() -> None:
    """Each run writes one audit record summarizing the chunks used."""
    log = InMemoryRetrievalLog()
    pipeline = ContextInjectionPipeline(
        FakeExpander(["alt"]), _coordinator(*_three_tiers()), retrieval_log=log
    )
    pipeline.run(AGENT, "company-1", "q", ContextInjectionConfig(enable_reranking=False))

    assert len(log) == 1
    record = log.list_recent()[0]
    assert record.agent_id == "agent-1"
    assert record.company_id == "company-1"
    assert record.expanded_queries == ["q", "alt"]
    assert record.sources_used == 3
    assert record.chunks_used == 6
    assert [c["id"] for c in record.chunks_by_source["agent_docs"]] == ["agent_docs-0", "agent_docs-1"]
    assert record.chunks_by_source["shared_docs"] == []
    assert log.summary()["total_requests"] == 1


def test_retrieval_log_failure_ignored() -> None:
    """A broken audit sink never fails the run."""
    pipeline = ContextInjectionPipeline(None, _coordinator(*_three_tiers()), retrieval_log=ExplodingLog())
    result = pipeline.run(AGENT, "company-1", "q", ContextInjectionConfig(enable_reranking=False))
    assert result.chunks_used == 6


def test_build_record_without_citations() -> None:
    """The audit record does not depend on the citation map."""
    pipeline = ContextInjectionPipeline(None, _coordinator(*_three_tiers()))
    config = ContextInjectionConfig(enable_reranking=False, include_citations=False)
    result = pipeline.run(AGENT, "company-1", "q", config)

    assert result.prompt_build_result.citation_map is None
    record = build_retrieval_record(AGENT, "company-1", result)
    assert len(record.chunks_by_source["company_profile"]) == 2


def test_empty_query_rejected() -> None:
    """Blank queries are invalid input."""
    pipeline = ContextInjectionPipeline(None, _coordinator(*_three_tiers()))
    try:
        pipeline.run(AGENT, "company-1", "   ")
    except ValidationError:
        return
    raise AssertionError("expected ValidationError")


def run_tests() -> None:
    """Run all pipeline tests."""
    tests = [
        test_three_tiers_without_reranking,
        test_all_tiers_disabled,
        test_rerank_timeout_falls_back_to_score_order,
        test_reranker_receives_original_query_and_settings,
        test_total_budget_without_reranking,
        test_expansions_reach_every_tier,
        test_context_confidence,
        test_stages_reflect_skipped_steps,
        test_prompt_truncated_to_token_limit,
        test_tier_failure_reported_not_raised,
        test_missing_strategy_uses_bm25,
        test_retrieval_log_recorded,
        test_retrieval_log_failure_ignored,
        test_build_record_without_citations,
        test_empty_query_rejected,
    ]
    for t in tests:
        t()
        print(f"  OK {t.__name__}")
    print(f"\nAll {len(tests)} pipeline tests passed.")


if __name__ == "__main__":
    run_tests()
