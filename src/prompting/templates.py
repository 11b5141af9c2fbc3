"""System prompt template and placeholder substitution.

Placeholders are ``{name}`` tokens. Rendering is a single regex pass, so text
substituted for one placeholder (a user query containing ``{instructions}``,
say) is never expanded again. Unknown placeholders are left untouched.
"""

from __future__ import annotations

import re
from collections.abc import Mapping

PLACEHOLDER_PATTERN = re.compile(r"\{(\w+)\}")

KNOWN_PLACEHOLDERS: frozenset[str] = frozenset(
    {
        "agent_name",
        "agent_role",
        "agent_description",
        "company_profile_context",
        "agent_docs_context",
        "shared_docs_context",
        "playbook_context",
        "keyword_context",
        "user_query",
        "instructions",
    }
)

# A custom template without these cannot produce a usable prompt.
REQUIRED_PLACEHOLDERS: frozenset[str] = frozenset({"agent_name", "user_query", "instructions"})

_RULE = "━" * 66

DEFAULT_TEMPLATE = f"""# YOU ARE: {{agent_role}}

You are {{agent_name}}, {{agent_description}}

{_RULE}

## YOUR COMPANY CONTEXT (CRITICAL - REFERENCE THIS IN YOUR RESPONSE)

{{company_profile_context}}

{{agent_docs_context}}

{{shared_docs_context}}

{{playbook_context}}

{{keyword_context}}

{_RULE}

## YOUR TASK

The user asked: "{{user_query}}"

{{instructions}}

Begin your response:"""


def placeholders(template: str) -> set[str]:
    """Names of all ``{name}`` tokens in ``template``."""
    return set(PLACEHOLDER_PATTERN.findall(template))


def missing_placeholders(template: str) -> list[str]:
    """Required placeholders absent from ``template``, sorted."""
    return sorted(REQUIRED_PLACEHOLDERS - placeholders(template))


def render_template(template: str, sections: Mapping[str, str]) -> str:
    """Substitute every known placeholder in one pass.

    Args:
        template: Template text with ``{name}`` placeholders.
        sections: Replacement text per placeholder name.

    Returns:
        Rendered text. Placeholders with no entry in ``sections`` stay as-is.
    """

    def _substitute(match: re.Match[str]) -> str:
        name = match.group(1)
        return sections[name] if name in sections else match.group(0)

    return PLACEHOLDER_PATTERN.sub(_substitute, template)
