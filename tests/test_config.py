"""Tests for configuration."""

from __future__ import annotations

import sys
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from src.config import ContextInjectionConfig, Settings
from src.exceptions import ConfigurationError
from src.models import ContextSource


def _rejects(**kwargs) -> bool:
    try:
        ContextInjectionConfig(**kwargs)
    except PydanticValidationError:
        return True
    return False


def test_defaults() -> None:
    """Defaults match the per-agent configuration table."""
    config = ContextInjectionConfig()
    assert config.max_chunks_per_source == 3
    assert config.total_max_chunks == 10
    assert config.similarity_threshold == 0.70
    assert config.max_expanded_queries == 5
    assert config.rerank_model == "rerank-english-v3.0"
    assert config.rerank_top_n == 8
    assert config.rerank_strategy == "service"
    assert config.include_citations is True
    assert config.prompt_template is None
    assert config.max_context_tokens == 8000
    assert all(config.tier_enabled(source) for source in ContextSource)


def test_bounds_enforced() -> None:
    """Out-of-range values fail at construction."""
    assert _rejects(max_chunks_per_source=0)
    assert _rejects(max_chunks_per_source=11)
    assert _rejects(total_max_chunks=21)
    assert _rejects(similarity_threshold=1.5)
    assert _rejects(max_expanded_queries=11)
    assert _rejects(max_context_tokens=999)
    assert _rejects(rerank_strategy="magic")
    assert _rejects(unknown_field=True)


def test_rerank_top_n_resolution() -> None:
    """Unset top_n follows a small total budget; explicit values may not exceed it."""
    assert ContextInjectionConfig(total_max_chunks=5).rerank_top_n == 5
    assert ContextInjectionConfig(total_max_chunks=5).effective_top_n == 5
    assert ContextInjectionConfig(rerank_top_n=None).effective_top_n == 10
    assert ContextInjectionConfig(rerank_top_n=4).effective_top_n == 4
    assert _rejects(total_max_chunks=5, rerank_top_n=6)


def test_prompt_template_validation() -> None:
    """Custom templates must carry the required placeholders; blank means default."""
    assert _rejects(prompt_template="Hello {agent_name}")
    assert ContextInjectionConfig(prompt_template="   ").prompt_template is None
    ok = "{agent_name} {user_query} {instructions}"
    assert ContextInjectionConfig(prompt_template=ok).prompt_template == ok


def test_tier_switches() -> None:
    """tier_enabled reflects each switch, by enum or by value."""
    config = ContextInjectionConfig(enable_playbooks=False, enable_keyword_search=False)
    assert config.tier_enabled(ContextSource.AGENT_DOCS)
    assert not config.tier_enabled(ContextSource.PLAYBOOKS)
    assert not config.tier_enabled("keywords")


def test_config_is_frozen() -> None:
    """The config is a value object."""
    config = ContextInjectionConfig()
    try:
        config.total_max_chunks = 3
    except PydanticValidationError:
        return
    raise AssertionError("expected frozen model")


def test_from_dict_wraps_errors() -> None:
    """from_dict raises ConfigurationError with pydantic's details."""
    assert ContextInjectionConfig.from_dict(None) == ContextInjectionConfig()
    assert ContextInjectionConfig.from_dict({"enable_reranking": False}).enable_reranking is False
    try:
        ContextInjectionConfig.from_dict({"total_max_chunks": 50})
    except ConfigurationError as e:
        assert "total_max_chunks" in e.details
        return
    raise AssertionError("expected ConfigurationError")


def test_settings_from_environment() -> None:
    """Settings read uppercase environment variables."""
    import os

    saved = {k: os.environ.get(k) for k in ("CONTEXTFORGE_REQUEST_TIMEOUT", "OLLAMA_MODEL")}
    os.environ["CONTEXTFORGE_REQUEST_TIMEOUT"] = "2.5"
    os.environ["OLLAMA_MODEL"] = "mistral"
    try:
        settings = Settings(_env_file=None)
        assert settings.contextforge_request_timeout == 2.5
        assert settings.ollama_model == "mistral"
    finally:
        for key, value in saved.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value


def run_tests() -> None:
    """Run all config tests."""
    tests = [
        test_defaults,
        test_bounds_enforced,
        test_rerank_top_n_resolution,
        test_prompt_template_validation,
        test_tier_switches,
        test_config_is_frozen,
        test_from_dict_wraps_errors,
        test_settings_from_environment,
    ]
    for t in tests:
        t()
        print(f"  OK {t.__name__}")
    print(f"\nAll {len(tests)} config tests passed.")


if __name__ == "__main__":
    run_tests()
