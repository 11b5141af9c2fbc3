"""Tests for the language-model completion clients."""

from __future__ import annotations

import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import requests

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from src.exceptions import LanguageModelError, ServiceUnavailableError
from src.generation import HFGenerator, OllamaGenerator


def _response(json_body: object, status_code: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = json_body
    resp.text = str(json_body)
    return resp


def _expect_llm_error(fn) -> LanguageModelError:
    try:
        fn()
    except LanguageModelError as e:
        return e
    raise AssertionError("expected LanguageModelError")


def test_ollama_complete() -> None:
    """Ollama posts to /api/generate and returns the stripped response."""
    gen = OllamaGenerator(base_url="http://ollama:11434/", model="llama3", timeout=2.0)
    with patch("src.generation.ollama_generator.requests.post", return_value=_response({"response": "  a\nb  "})) as post:
        assert gen.complete("expand this", model="mistral") == "a\nb"
    url = post.call_args.args[0]
    payload = post.call_args.kwargs["json"]
    assert url == "http://ollama:11434/api/generate"
    assert payload["model"] == "mistral"
    assert payload["stream"] is False
    assert post.call_args.kwargs["timeout"] == 2.0


def test_ollama_failures_raise_language_model_error() -> None:
    """Connection errors, timeouts and empty replies all raise LanguageModelError."""
    gen = OllamaGenerator(base_url="http://ollama:11434", model="llama3")
    for side_effect in (requests.ConnectionError("refused"), requests.Timeout("slow")):
        with patch("src.generation.ollama_generator.requests.post", side_effect=side_effect):
            err = _expect_llm_error(lambda: gen.complete("p"))
            assert isinstance(err, ServiceUnavailableError)
    with patch("src.generation.ollama_generator.requests.post", return_value=_response({"response": "  "})):
        _expect_llm_error(lambda: gen.complete("p"))


def test_hf_complete_and_retry() -> None:
    """HF retries a 503 once, then returns generated_text from the list payload."""
    gen = HFGenerator(api_key="hf_test", model="org/model", endpoint="https://hf.example/models")
    gen.RETRY_DELAY = 0
    gen._session = MagicMock()
    gen._session.post.side_effect = [
        _response({"error": "loading"}, status_code=503),
        _response([{"generated_text": " rephrased "}]),
    ]
    assert gen.complete("p") == "rephrased"
    assert gen._session.post.call_count == 2
    assert gen._session.post.call_args.args[0] == "https://hf.example/models/org/model"


def test_hf_failures() -> None:
    """Exhausted retries and error payloads raise LanguageModelError."""
    gen = HFGenerator(api_key="hf_test")
    gen.RETRY_DELAY = 0
    gen._session = MagicMock()
    gen._session.post.return_value = _response({}, status_code=429)
    _expect_llm_error(lambda: gen.complete("p"))

    gen._session.post.return_value = _response({"error": "Model not found"})
    err = _expect_llm_error(lambda: gen.complete("p"))
    assert "Model not found" in err.message


def run_tests() -> None:
    """Run all generation client tests."""
    tests = [
        test_ollama_complete,
        test_ollama_failures_raise_language_model_error,
        test_hf_complete_and_retry,
        test_hf_failures,
    ]
    for t in tests:
        t()
        print(f"  OK {t.__name__}")
    print(f"\nAll {len(tests)} generation client tests passed.")


if __name__ == "__main__":
    run_tests()
