"""HuggingFace-based completion client."""

from __future__ import annotations

import logging
import os
import time
from typing import Any

import requests

from dotenv import load_dotenv

from src.exceptions import LanguageModelError

# Load .env from cwd or parent dirs (standard protocol)
load_dotenv()

logger = logging.getLogger(__name__)

ENV_HF_API_KEY = "HF_API_KEY"


class HFGenerator:
    """HuggingFace inference completion client."""

    DEFAULT_ENDPOINT = "https://api-inference.huggingface.co/models"
    DEFAULT_MODEL = "Qwen/Qwen2.5-7B-Instruct"
    DEFAULT_TIMEOUT = 5.0
    MAX_RETRIES = 2
    RETRY_DELAY = 1

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        endpoint: str | None = None,
        timeout: float | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            api_key: HuggingFace API key. Reads HF_API_KEY from environment if not set.
            model: Default model id, appended to the endpoint per request.
            endpoint: Inference base URL.
            timeout: Request timeout in seconds.
        """
        self.api_key = api_key or os.environ.get(ENV_HF_API_KEY, "").strip()
        if not self.api_key:
            raise ValueError(
                f"HuggingFace API key required. Set {ENV_HF_API_KEY} in .env "
                "or pass api_key to HFGenerator()."
            )
        self.model = model or self.DEFAULT_MODEL
        self.endpoint = (endpoint or self.DEFAULT_ENDPOINT).rstrip("/")
        self.timeout = timeout if timeout is not None else self.DEFAULT_TIMEOUT
        self._session = requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            }
        )

    def complete(
        self,
        prompt: str,
        *,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 200,
    ) -> str:
        """Return the model's completion for ``prompt``.

        Retries on 429 and 503 (model loading); every other failure raises.

        Raises:
            LanguageModelError: the inference service failed or answered garbage.
        """
        if not prompt or not isinstance(prompt, str):
            raise ValueError("prompt must be a non-empty string")

        url = f"{self.endpoint}/{model or self.model}"
        payload: dict[str, Any] = {
            "inputs": prompt,
            "parameters": {
                "max_new_tokens": max_tokens,
                "temperature": temperature,
                "return_full_text": False,
            },
        }

        resp: requests.Response | None = None
        for attempt in range(self.MAX_RETRIES):
            try:
                logger.debug("HF inference request (attempt %d)", attempt + 1)
                resp = self._session.post(url, json=payload, timeout=self.timeout)

                if resp.status_code in (429, 503):
                    logger.warning(
                        "HF inference returned %d. Retrying in %ds...", resp.status_code, self.RETRY_DELAY
                    )
                    time.sleep(self.RETRY_DELAY)
                    continue

                resp.raise_for_status()
                return self._extract_generated_text(resp.json())
            except requests.Timeout as e:
                raise LanguageModelError("HF inference timed out.", details=str(e)) from e
            except requests.RequestException as e:
                raise LanguageModelError("Unable to reach the inference service.", details=str(e)) from e
            except ValueError as e:
                resp_preview = resp.text[:200] if resp is not None else ""
                raise LanguageModelError(
                    "Invalid response from inference service.", details=resp_preview
                ) from e

        raise LanguageModelError("Too many retries against the inference service.")

    def _extract_generated_text(self, data: Any) -> str:
        """Extract generated text from HF API response. Handles multiple formats."""
        if isinstance(data, dict) and "error" in data:
            raise LanguageModelError(f"Inference error: {data.get('error', 'Unknown error')}")
        item = data[0] if isinstance(data, list) and data else data
        if isinstance(item, dict):
            text = item.get("generated_text", "")
            if isinstance(text, str) and text.strip():
                return text.strip()
        raise LanguageModelError("Invalid response format.")
