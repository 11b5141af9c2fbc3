"""Ollama-based completion client. Runs locally, no API key needed."""

from __future__ import annotations

import logging
import os
from typing import Any

import requests

from dotenv import load_dotenv

from src.exceptions import LanguageModelError

load_dotenv()

logger = logging.getLogger(__name__)

ENV_OLLAMA_URL = "OLLAMA_URL"
ENV_OLLAMA_MODEL = "OLLAMA_MODEL"


class OllamaGenerator:
    """Local LLM completion client using Ollama (llama3 / mistral / etc)."""

    DEFAULT_URL = "http://localhost:11434"
    DEFAULT_MODEL = "llama3"
    DEFAULT_TIMEOUT = 5.0

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self.base_url = (base_url or os.environ.get(ENV_OLLAMA_URL, "").strip() or self.DEFAULT_URL).rstrip("/")
        self.model = model or os.environ.get(ENV_OLLAMA_MODEL, "").strip() or self.DEFAULT_MODEL
        self.timeout = timeout if timeout is not None else self.DEFAULT_TIMEOUT

    def complete(
        self,
        prompt: str,
        *,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 200,
    ) -> str:
        """Return the model's completion for ``prompt``.

        Raises:
            LanguageModelError: Ollama is unreachable, slow, or returned nothing.
        """
        if not prompt or not isinstance(prompt, str):
            raise ValueError("prompt must be a non-empty string")

        url = f"{self.base_url}/api/generate"
        payload: dict[str, Any] = {
            "model": model or self.model,
            "prompt": prompt,
            "stream": False,
            "options": {"num_predict": max_tokens, "temperature": temperature},
        }

        try:
            resp = requests.post(url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except requests.ConnectionError as e:
            raise LanguageModelError(
                "Ollama is not running.",
                details=f"Start Ollama and pull a model: ollama run {payload['model']}",
            ) from e
        except requests.Timeout as e:
            raise LanguageModelError("Ollama took too long to respond.", details=str(e)) from e
        except requests.RequestException as e:
            logger.warning("Ollama request failed: %s", e)
            raise LanguageModelError("Ollama request failed.", details=str(e)) from e
        except ValueError as e:
            raise LanguageModelError("Invalid JSON from Ollama.", details=str(e)) from e

        text = data.get("response", "") if isinstance(data, dict) else ""
        text = text.strip() if isinstance(text, str) else ""
        if not text:
            raise LanguageModelError("Ollama returned an empty completion.")
        return text
