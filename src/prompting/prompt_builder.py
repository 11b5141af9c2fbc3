"""Prompt builder: renders tiered context chunks into an agent system prompt."""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING

from src.models import (
    TIER_ORDER,
    AgentIdentity,
    ContextChunk,
    ContextSource,
    ContextSourceSummary,
    PromptBuildResult,
)
from src.prompting.templates import DEFAULT_TEMPLATE, render_template

if TYPE_CHECKING:
    # src.config validates templates with this package; import only for typing.
    from src.config import ContextInjectionConfig

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n\n[Context truncated due to length]"
CHARS_PER_TOKEN = 4
MAX_EXAMPLES = 3

# Tier heading and framing sentence; company context is framed as always-use.
_TIER_SECTIONS: dict[ContextSource, tuple[str, str]] = {
    ContextSource.COMPANY_PROFILE: (
        "### TIER 1: Company Profile (Foundation - Always Use This)",
        "This is your company's core strategic and brand knowledge. "
        "Every response should reflect these principles.",
    ),
    ContextSource.AGENT_DOCS: (
        "### TIER 2: Your Specialized Knowledge",
        "These are documents specific to your role. Use them to supplement the company context.",
    ),
    ContextSource.SHARED_DOCS: (
        "### TIER 3: Company-Wide Knowledge",
        "These are shared documents available across the company. Use them as supplementary detail.",
    ),
    ContextSource.PLAYBOOKS: (
        "### TIER 4: Playbooks & Procedures",
        "These are company procedures, SOPs and guidelines. Follow them where they apply, as a supplement to the company context.",
    ),
    ContextSource.KEYWORDS: (
        "### Additional Relevant Context",
        "Further matches found by keyword across all sources. Use them only as supplementary detail.",
    ),
}

_TEMPLATE_KEYS: dict[ContextSource, str] = {
    ContextSource.COMPANY_PROFILE: "company_profile_context",
    ContextSource.AGENT_DOCS: "agent_docs_context",
    ContextSource.SHARED_DOCS: "shared_docs_context",
    ContextSource.PLAYBOOKS: "playbook_context",
    ContextSource.KEYWORDS: "keyword_context",
}

_BASE_INSTRUCTIONS = [
    "**Directly answers the question** with specific, actionable information",
    "**References specific data points** from the context (numbers, facts, examples)",
    "**Stays consistent with company strategy and brand voice** (use the Company Profile context)",
    "**Prioritizes by impact** when providing recommendations",
]

_CITATION_INSTRUCTIONS = [
    '**Cites sources naturally** (e.g., "According to our Brand Guide...", "Based on the Q4 analysis...")',
    "**Uses the bracketed citation numbers** shown next to each source (such as [n]) when referencing specific facts",
]


def estimate_tokens(text: str) -> int:
    """Crude token estimate: one token per four characters, rounded up."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def truncate_prompt_to_token_limit(system_prompt: str, max_tokens: int) -> str:
    """Hard-truncate ``system_prompt`` to roughly ``max_tokens``.

    Returns the prompt unchanged when it fits; otherwise keeps the first
    ``max_tokens * 4`` characters and appends a visible truncation marker.
    """
    if estimate_tokens(system_prompt) <= max_tokens:
        return system_prompt
    logger.warning(
        "System prompt of ~%d tokens exceeds limit %d; truncating",
        estimate_tokens(system_prompt),
        max_tokens,
    )
    return system_prompt[: max_tokens * CHARS_PER_TOKEN] + TRUNCATION_MARKER


def group_chunks_by_source(chunks: list[ContextChunk]) -> dict[ContextSource, list[ContextChunk]]:
    """Bucket chunks into the five tiers, keeping their relative order."""
    grouped: dict[ContextSource, list[ContextChunk]] = {source: [] for source in TIER_ORDER}
    for chunk in chunks:
        grouped[chunk.source].append(chunk)
    return grouped


def _example_labels(chunks: list[ContextChunk]) -> list[str]:
    return [c.source_detail or c.source.label for c in chunks[:MAX_EXAMPLES]]


def format_citation_footer(
    chunks: list[ContextChunk],
    confidence: float | None = None,
    retrieval_time_ms: float | None = None,
) -> str:
    """Plain-text source summary appended to the assistant's reply.

    Args:
        chunks: Final chunk list that went into the prompt.
        confidence: Context confidence in [0, 1], shown as a percentage.
        retrieval_time_ms: Retrieval stage duration, shown in seconds.

    Returns:
        Footer text, or "" when no chunks were used.
    """
    if not chunks:
        return ""

    lines = ["", "─" * 66, f"Context used: {len(chunks)} sources"]
    for source, group in group_chunks_by_source(chunks).items():
        if group:
            lines.append(f"  • {source.label}: {', '.join(_example_labels(group))}")

    stats: list[str] = []
    if confidence is not None:
        stats.append(f"Context confidence: {round(confidence * 100)}%")
    if retrieval_time_ms is not None:
        stats.append(f"Retrieval time: {retrieval_time_ms / 1000:.1f}s")
    if stats:
        lines.append(" • ".join(stats))
    return "\n".join(lines)


class PromptBuilder:
    """Builds the system prompt from agent identity, chunks and the user query.

    Chunks are regrouped into tier order before rendering, so citation numbers
    follow the order the reader sees them in: ``[1]`` is the first chunk of
    the first non-empty tier, numbering continues across tiers.
    """

    def build(
        self,
        agent: AgentIdentity,
        chunks: list[ContextChunk],
        user_query: str,
        config: ContextInjectionConfig,
    ) -> PromptBuildResult:
        """Render the prompt.

        Args:
            agent: Name, role and description fill the identity placeholders.
            chunks: Final (possibly reranked) chunk list.
            user_query: Inserted verbatim.
            config: Citations toggle and optional custom template.

        Returns:
            PromptBuildResult with prompt, per-tier summary, token estimate
            and (when citations are on) the ``"[n]" -> chunk`` map.
        """
        grouped = group_chunks_by_source(chunks)
        ordered = [chunk for source in TIER_ORDER for chunk in grouped[source]]
        cite = config.include_citations

        sections: dict[str, str] = {
            "agent_name": agent.name or "Assistant",
            "agent_role": agent.role or "AI Assistant",
            "agent_description": agent.description or "",
            "user_query": user_query,
            "instructions": build_instructions(cite),
        }
        number = 1
        for source in TIER_ORDER:
            sections[_TEMPLATE_KEYS[source]] = _format_tier(source, grouped[source], number, cite)
            number += len(grouped[source])

        system_prompt = render_template(config.prompt_template or DEFAULT_TEMPLATE, sections)

        citation_map = {f"[{i}]": chunk for i, chunk in enumerate(ordered, start=1)} if cite else None
        context_sources = [
            ContextSourceSummary(source=source.label, count=len(group), examples=_example_labels(group))
            for source, group in grouped.items()
            if group
        ]
        total_tokens = estimate_tokens(system_prompt)
        logger.debug(
            "Built prompt: %d chunks in %d tiers, ~%d tokens",
            len(ordered),
            len(context_sources),
            total_tokens,
        )
        return PromptBuildResult(
            system_prompt=system_prompt,
            context_sources=context_sources,
            total_tokens=total_tokens,
            citation_map=citation_map,
        )


def build_instructions(include_citations: bool) -> str:
    directives = _BASE_INSTRUCTIONS + (_CITATION_INSTRUCTIONS if include_citations else [])
    numbered = "\n".join(f"{i}. {d}" for i, d in enumerate(directives, start=1))
    return f"Using the context above, provide a comprehensive, accurate answer that:\n\n{numbered}"


def _format_chunk(chunk: ContextChunk, number: int, cite: bool) -> str:
    header = f"**{chunk.source_detail or chunk.source.label}**"
    if chunk.source is ContextSource.AGENT_DOCS and chunk.metadata.get("file_name"):
        header += f" ({chunk.metadata['file_name']})"
    elif chunk.source is ContextSource.PLAYBOOKS and chunk.metadata.get("tags"):
        header += f" (Tags: {', '.join(chunk.metadata['tags'])})"
    if cite:
        header += f" [{number}]"
    return f"{header}\n{chunk.content}"


def _format_tier(source: ContextSource, chunks: list[ContextChunk], first_number: int, cite: bool) -> str:
    if not chunks:
        return ""
    heading, framing = _TIER_SECTIONS[source]
    body = "\n\n".join(_format_chunk(c, first_number + i, cite) for i, c in enumerate(chunks))
    return "\n\n".join([heading, framing, body])
