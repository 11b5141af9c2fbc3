"""Tests for prompt template rendering."""

from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from src.prompting import DEFAULT_TEMPLATE, REQUIRED_PLACEHOLDERS, missing_placeholders, render_template
from src.prompting.templates import KNOWN_PLACEHOLDERS, placeholders


def test_default_template_uses_every_known_placeholder() -> None:
    """The default template exposes all ten placeholders."""
    assert placeholders(DEFAULT_TEMPLATE) == set(KNOWN_PLACEHOLDERS)
    assert missing_placeholders(DEFAULT_TEMPLATE) == []


def test_missing_placeholders_sorted() -> None:
    """Missing required placeholders are reported in sorted order."""
    assert missing_placeholders("Hello {agent_name}") == ["instructions", "user_query"]
    assert missing_placeholders("") == sorted(REQUIRED_PLACEHOLDERS)


def test_render_single_pass() -> None:
    """Substituted text is not scanned again for placeholders."""
    out = render_template(
        "Q: {user_query}\n{instructions}",
        {"user_query": "what is {instructions}?", "instructions": "Be brief."},
    )
    assert out == "Q: what is {instructions}?\nBe brief."


def test_unknown_placeholders_left_intact() -> None:
    """Tokens without a section stay verbatim; repeated tokens all get replaced."""
    out = render_template("{agent_name} {custom} {agent_name}", {"agent_name": "Ava"})
    assert out == "Ava {custom} Ava"


def run_tests() -> None:
    """Run all template tests."""
    tests = [
        test_default_template_uses_every_known_placeholder,
        test_missing_placeholders_sorted,
        test_render_single_pass,
        test_unknown_placeholders_left_intact,
    ]
    for t in tests:
        t()
        print(f"  OK {t.__name__}")
    print(f"\nAll {len(tests)} template tests passed.")


if __name__ == "__main__":
    run_tests()
