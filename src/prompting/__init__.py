"""Prompt assembly: templates, tiered context rendering, citations."""

from src.prompting.prompt_builder import (
    PromptBuilder,
    estimate_tokens,
    format_citation_footer,
    group_chunks_by_source,
    truncate_prompt_to_token_limit,
)
from src.prompting.templates import (
    DEFAULT_TEMPLATE,
    REQUIRED_PLACEHOLDERS,
    missing_placeholders,
    render_template,
)

__all__ = [
    "DEFAULT_TEMPLATE",
    "PromptBuilder",
    "REQUIRED_PLACEHOLDERS",
    "estimate_tokens",
    "format_citation_footer",
    "group_chunks_by_source",
    "missing_placeholders",
    "render_template",
    "truncate_prompt_to_token_limit",
]
