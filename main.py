"""FastAPI app for the ContextForge context-injection API.

Features:
- POST /context   : context-grounded system prompt + sources, timings, confidence
- GET  /health    : liveness check
- GET  /status    : pipeline state + recent retrieval stats
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from typing import Any

from fastapi import FastAPI, HTTPException, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field

from src.audit import InMemoryRetrievalLog
from src.config import ContextInjectionConfig, get_settings
from src.exceptions import ConfigurationError, ContextForgeError, ValidationError
from src.expansion import ExpansionCache, purge_cache
from src.logging_config import configure_logging, get_logger
from src.models import AgentIdentity
from src.pipeline import ContextInjectionPipeline, build_pipeline, build_retrieval_record

# ── Logging ──────────────────────────────────────────────────────────────────
_settings = get_settings()
configure_logging(_settings.contextforge_log_level)
logger = get_logger(__name__)

# ── Global state ─────────────────────────────────────────────────────────────
context_pipeline: ContextInjectionPipeline | None = None
pipeline_error: str = ""
SERVICE_UNAVAILABLE_MESSAGE = "Service temporarily unavailable. Please try again later."


# ── Lifespan ──────────────────────────────────────────────────────────────────


def cleanup_expansion_cache(cache: ExpansionCache) -> tuple[int, int] | None:
    """Purge expired and stale expansions; a failing store is logged, not raised."""
    try:
        return purge_cache(cache)
    except Exception as e:
        logger.warning("Expansion cache cleanup failed (will retry): %s", e)
        return None


async def _cache_cleanup_loop(cache: ExpansionCache, interval_s: float) -> None:
    while True:
        await asyncio.sleep(interval_s)
        await asyncio.to_thread(cleanup_expansion_cache, cache)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire the pipeline on startup; start without it if services are not configured."""
    global context_pipeline, pipeline_error

    logger.info("Building context injection pipeline")
    try:
        context_pipeline = build_pipeline(get_settings())
        pipeline_error = ""
        logger.info("Context injection pipeline ready")
    except ConfigurationError as e:
        logger.warning("Server will start without a pipeline: %s", e.message)
        context_pipeline = None
        pipeline_error = e.message

    cleanup_task: asyncio.Task[None] | None = None
    interval_h = get_settings().contextforge_cache_cleanup_interval_hours
    cache = context_pipeline.expansion_cache if context_pipeline is not None else None
    if cache is not None and interval_h > 0:
        cleanup_task = asyncio.create_task(_cache_cleanup_loop(cache, interval_h * 3600.0))
        logger.info("Expansion cache cleanup every %.1fh", interval_h)

    try:
        yield
    finally:
        if cleanup_task is not None:
            cleanup_task.cancel()
            with suppress(asyncio.CancelledError):
                await cleanup_task
        context_pipeline = None
        logger.info("Context injection pipeline shut down")


# ── Pydantic models ───────────────────────────────────────────────────────────

class AgentInput(BaseModel):
    """Agent identity supplied by the caller."""
    id: str = Field(..., min_length=1, description="Agent id (scopes agent documents)")
    name: str = Field("", description="Agent display name")
    role: str = Field("", description="Agent role, e.g. 'Marketing Strategist'")
    description: str = Field("", description="One-line agent description")


class ContextInput(BaseModel):
    """Request body for POST /context."""
    query: str = Field(..., min_length=1, max_length=65536, description="User question")
    company_id: str = Field(..., min_length=1, description="Company whose knowledge is searched")
    agent: AgentInput
    config: dict[str, Any] | None = Field(None, description="Per-agent context injection settings")


class SourceSummary(BaseModel):
    source: str
    count: int
    examples: list[str]


class ContextOutput(BaseModel):
    """Response body for POST /context."""
    system_prompt: str = Field(..., description="System prompt, truncated to max_context_tokens")
    context_sources: list[SourceSummary] = Field(..., description="Per-tier chunk counts with examples")
    expanded_queries: list[str] = Field(..., description="Original query followed by expansions")
    chunks_retrieved: int
    chunks_used: int
    context_confidence: float = Field(..., description="Mean relevance of the chunks used, 0..1")
    total_tokens: int = Field(..., description="Estimated tokens of the full prompt")
    expansion_time_ms: float
    retrieval_time_ms: float
    rerank_time_ms: float
    total_time_ms: float
    citation_footer: str = Field(..., description="Source summary to append to the assistant reply")
    tier_errors: dict[str, str] = Field(default_factory=dict, description="Tiers that failed and why")


class HealthOutput(BaseModel):
    """Response body for GET /health."""
    status: str = Field(..., description="Health status")


class StatusOutput(BaseModel):
    """Response body for GET /status."""
    status: str = Field(..., description="Pipeline status: ready | unavailable")
    last_error: str = Field(..., description="Why the pipeline is unavailable (empty if ready)")
    recent: dict[str, float | int] = Field(..., description="Aggregates over recent /context calls")


class ErrorDetail(BaseModel):
    """Standard error response."""
    detail: str = Field(..., description="Error message")


# Recent runs served by this process, independent of the pipeline's own audit sink.
recent_runs = InMemoryRetrievalLog(max_records=500)


# ── App ───────────────────────────────────────────────────────────────────────

app = FastAPI(
    title="ContextForge API",
    description="Builds context-grounded system prompts for company AI agents.",
    version="1.0.0",
    lifespan=lifespan,
)


# ── Routes ────────────────────────────────────────────────────────────────────

@app.get("/", include_in_schema=False)
async def root() -> RedirectResponse:
    return RedirectResponse(url="/docs", status_code=status.HTTP_302_FOUND)


@app.get("/health", response_model=HealthOutput, tags=["Ops"])
async def health() -> HealthOutput:
    """Liveness check. Returns ok if the server is running."""
    return HealthOutput(status="ok")


@app.get("/status", response_model=StatusOutput, tags=["Ops"])
async def pipeline_status() -> StatusOutput:
    """Pipeline state and aggregates over recent requests."""
    return StatusOutput(
        status="ready" if context_pipeline is not None else "unavailable",
        last_error=pipeline_error,
        recent=recent_runs.summary(),
    )


def _validate_query(query: str) -> str:
    q = query.strip()
    if not q:
        raise ValidationError("query must be non-empty")
    max_len = get_settings().contextforge_max_query_length
    if len(q) > max_len:
        raise ValidationError(f"query must be at most {max_len} characters")
    return q


@app.post(
    "/context",
    response_model=ContextOutput,
    tags=["Context"],
    responses={
        400: {"model": ErrorDetail, "description": "Invalid request or config"},
        503: {"model": ErrorDetail, "description": "Pipeline unavailable"},
    },
)
async def build_context(input_data: ContextInput) -> ContextOutput:
    """Run expansion, tiered retrieval, reranking and prompt assembly for one query."""
    pipeline = context_pipeline
    if pipeline is None:
        logger.error("Context requested but pipeline is not initialized")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=SERVICE_UNAVAILABLE_MESSAGE)
    try:
        query = _validate_query(input_data.query)
        config = ContextInjectionConfig.from_dict(input_data.config)
    except (ValidationError, ConfigurationError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message) from e

    agent = AgentIdentity(**input_data.agent.model_dump())
    try:
        logger.info("Context: %s", query[:80] + ("..." if len(query) > 80 else ""))
        result = await asyncio.to_thread(pipeline.run, agent, input_data.company_id, query, config)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message) from e
    except ContextForgeError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=SERVICE_UNAVAILABLE_MESSAGE) from e
    except Exception as e:
        logger.exception("Unexpected error building context")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=SERVICE_UNAVAILABLE_MESSAGE) from e

    built = result.prompt_build_result
    recent_runs.record(build_retrieval_record(agent, input_data.company_id, result))
    return ContextOutput(
        system_prompt=result.system_prompt,
        context_sources=[
            SourceSummary(source=s.source, count=s.count, examples=s.examples) for s in built.context_sources
        ],
        expanded_queries=result.expansion.expanded_queries,
        chunks_retrieved=result.chunks_retrieved,
        chunks_used=result.chunks_used,
        context_confidence=result.context_confidence,
        total_tokens=built.total_tokens,
        expansion_time_ms=result.expansion_time_ms,
        retrieval_time_ms=result.retrieval_time_ms,
        rerank_time_ms=result.rerank_time_ms,
        total_time_ms=result.total_time_ms,
        citation_footer=result.citation_footer,
        tier_errors=result.tier_errors,
    )


# ── Entry point ───────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import sys
    import uvicorn

    settings = get_settings()
    port = settings.contextforge_port
    logger.info("Starting ContextForge API on 127.0.0.1:%s (set CONTEXTFORGE_PORT to use another port)", port)
    try:
        uvicorn.run(
            "main:app",
            host="127.0.0.1",
            port=port,
            reload=False,
        )
    except OSError as e:
        in_use = (
            getattr(e, "winerror", None) == 10048
            or getattr(e, "errno", None) == 98
            or "address already in use" in str(e).lower()
        )
        if in_use:
            logger.error(
                "Port %s is already in use. Stop the other process using it, or set CONTEXTFORGE_PORT to another port (e.g. CONTEXTFORGE_PORT=8001 in .env).",
                port,
            )
            sys.exit(1)
        raise
