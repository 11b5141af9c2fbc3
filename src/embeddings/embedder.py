"""Embedding clients: turn text into a fixed-length vector.

Every client honours the same contract: ``embed(text)`` returns a list of
floats, or an empty list when the backend fails. An empty vector scores zero
similarity downstream instead of raising.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import numpy as np
import requests

from src.exceptions import ServiceUnavailableError

logger = logging.getLogger(__name__)


class EmbeddingClient(Protocol):
    """Protocol for embedding backends."""

    def embed(self, text: str) -> list[float]: ...


class OpenAIEmbeddingClient:
    """Embeddings from an OpenAI-compatible ``/v1/embeddings`` endpoint."""

    DEFAULT_URL = "https://api.openai.com/v1/embeddings"
    DEFAULT_MODEL = "text-embedding-3-large"
    DEFAULT_DIMENSIONS = 1536
    DEFAULT_TIMEOUT = 5.0

    def __init__(
        self,
        api_key: str,
        url: str | None = None,
        model: str | None = None,
        dimensions: int | None = None,
        timeout: float | None = None,
        session: requests.Session | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            api_key: Bearer token for the embedding service.
            url: Endpoint URL. Uses the public OpenAI endpoint if not set.
            model: Embedding model name. Must match the model used at index time.
            dimensions: Requested dimensionality; every call asks for the same value.
            timeout: Request timeout in seconds.
            session: Optional pre-configured requests session (tests inject one).
        """
        self.url = url or self.DEFAULT_URL
        self.model = model or self.DEFAULT_MODEL
        self.dimensions = dimensions or self.DEFAULT_DIMENSIONS
        self.timeout = timeout if timeout is not None else self.DEFAULT_TIMEOUT
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            }
        )

    def embed(self, text: str) -> list[float]:
        try:
            return self._request(text)
        except ServiceUnavailableError as e:
            logger.warning("Embedding failed, degrading to empty vector: %s", e.message)
            return []

    def _request(self, text: str) -> list[float]:
        payload: dict[str, Any] = {
            "input": text,
            "model": self.model,
            "dimensions": self.dimensions,
        }
        try:
            resp = self._session.post(self.url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except requests.Timeout as e:
            raise ServiceUnavailableError("Embedding request timed out", details=str(e)) from e
        except requests.RequestException as e:
            raise ServiceUnavailableError("Embedding request failed", details=str(e)) from e
        except ValueError as e:
            raise ServiceUnavailableError("Invalid JSON from embedding service", details=str(e)) from e

        try:
            embedding = data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as e:
            raise ServiceUnavailableError("Unexpected embedding response shape", details=str(e)) from e

        if len(embedding) != self.dimensions:
            logger.warning(
                "Expected %d dimensions from %s, got %d", self.dimensions, self.model, len(embedding)
            )
        return [float(v) for v in embedding]


# Lazy import to avoid loading the model until first use
_SentenceTransformer: type[Any] | None = None


def _get_sentence_transformer() -> type[Any]:
    global _SentenceTransformer
    if _SentenceTransformer is None:
        from sentence_transformers import SentenceTransformer

        _SentenceTransformer = SentenceTransformer
    return _SentenceTransformer


class MultilingualEmbedder:
    """Multilingual SentenceTransformer wrapper; singleton model instance.

    Offline embedding backend: no API key, same ``embed`` contract as the
    HTTP client.
    """

    _instance: MultilingualEmbedder | None = None
    _model: Any | None = None

    def __new__(cls, model_name: str = "paraphrase-multilingual-MiniLM-L12-v2", **kwargs: Any) -> MultilingualEmbedder:
        if cls._instance is None:
            obj = super().__new__(cls)
            cls._instance = obj
        return cls._instance

    def __init__(
        self,
        model_name: str = "paraphrase-multilingual-MiniLM-L12-v2",
        device: str | None = None,
        **model_kwargs: Any,
    ) -> None:
        self._model_name = model_name
        self._device = device
        self._model_kwargs = model_kwargs

    @property
    def model(self) -> Any:
        if MultilingualEmbedder._model is None:
            SentenceTransformer = _get_sentence_transformer()
            logger.info("Loading embedding model: %s", self._model_name)
            MultilingualEmbedder._model = SentenceTransformer(
                self._model_name, device=self._device, **self._model_kwargs
            )
        return MultilingualEmbedder._model

    def encode_query(self, text: str, normalize_embeddings: bool = False) -> np.ndarray:
        """Encode a single text into a 1D embedding vector."""
        embedding = self.model.encode(
            [text],
            normalize_embeddings=normalize_embeddings,
            convert_to_numpy=True,
        )
        return np.asarray(embedding[0], dtype=np.float32)

    def embed(self, text: str) -> list[float]:
        try:
            return self.encode_query(text, normalize_embeddings=True).tolist()
        except Exception as e:
            logger.warning("Local embedding failed, degrading to empty vector: %s", e)
            return []

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton and unload model."""
        cls._instance = None
        cls._model = None
