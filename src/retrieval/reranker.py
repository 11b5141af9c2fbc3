"""Rerankers: second-pass relevance scoring of the merged candidate pool.

Three interchangeable strategies share one contract and output shape:

- ``ServiceReranker``: external cross-attention rerank service (Cohere API).
- ``CrossEncoderReranker``: self-hosted sentence-transformers cross-encoder.
- ``BM25Reranker``: statistical term-frequency scoring, no dependencies.

All of them return the input untouched when there is nothing to discard, and
fall back to the top-N by original score when scoring fails.
"""

from __future__ import annotations

import logging
import math
import re
import time
from abc import ABC, abstractmethod
from typing import Any

import requests

from src.exceptions import ServiceUnavailableError
from src.models import ContextChunk, RerankResult

logger = logging.getLogger(__name__)


def fallback_order(chunks: list[ContextChunk], top_n: int) -> list[ContextChunk]:
    """Top-N by original tier score, descending. Stable for equal scores."""
    return sorted(chunks, key=lambda c: c.score, reverse=True)[:top_n]


class Reranker(ABC):
    """Template for every strategy: short-circuit, score, or fall back."""

    def rerank(
        self,
        query: str,
        chunks: list[ContextChunk],
        top_n: int = 10,
        model: str | None = None,
    ) -> RerankResult:
        """Rerank ``chunks`` against ``query`` and keep the best ``top_n``.

        Args:
            query: The original user query (not an expansion).
            chunks: Merged candidates from all tiers.
            top_n: Number of chunks to keep.
            model: Strategy-specific model name; strategies that have no use
                for it ignore it.

        Returns:
            RerankResult. With ``len(chunks) <= top_n`` the input list is
            returned unchanged and ``rerank_time_ms`` is 0.
        """
        if not chunks or len(chunks) <= top_n:
            return RerankResult(chunks=chunks, rerank_time_ms=0.0)

        start = time.perf_counter()
        try:
            reranked = self._rerank(query, chunks, top_n, model)
        except Exception as e:
            message = e.message if isinstance(e, ServiceUnavailableError) else str(e) or type(e).__name__
            logger.error("%s failed, falling back to original order: %s", type(self).__name__, message)
            return RerankResult(
                chunks=fallback_order(chunks, top_n),
                rerank_time_ms=(time.perf_counter() - start) * 1000.0,
            )

        elapsed = (time.perf_counter() - start) * 1000.0
        logger.info("Reranked %d -> %d chunks in %.0fms", len(chunks), len(reranked), elapsed)
        return RerankResult(chunks=reranked, rerank_time_ms=elapsed)

    @abstractmethod
    def _rerank(
        self,
        query: str,
        chunks: list[ContextChunk],
        top_n: int,
        model: str | None,
    ) -> list[ContextChunk]:
        """Return at most ``top_n`` chunks carrying ``rerank_score``. May raise."""


class ServiceReranker(Reranker):
    """Reranks with a Cohere-compatible ``/v1/rerank`` endpoint.

    The service's own ordering is kept; each result's ``index`` maps back to
    the input chunk, which gains ``rerank_score`` and keeps its old score as
    ``original_score``.
    """

    DEFAULT_URL = "https://api.cohere.com/v1/rerank"
    DEFAULT_MODEL = "rerank-english-v3.0"
    DEFAULT_TIMEOUT = 5.0

    def __init__(
        self,
        api_key: str,
        url: str | None = None,
        default_model: str | None = None,
        timeout: float | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.api_key = api_key
        self.url = url or self.DEFAULT_URL
        self.default_model = default_model or self.DEFAULT_MODEL
        self.timeout = timeout if timeout is not None else self.DEFAULT_TIMEOUT
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            }
        )

    def _rerank(
        self,
        query: str,
        chunks: list[ContextChunk],
        top_n: int,
        model: str | None,
    ) -> list[ContextChunk]:
        if not self.api_key:
            raise ServiceUnavailableError("Rerank service API key not configured")

        payload: dict[str, Any] = {
            "model": model or self.default_model,
            "query": query,
            "documents": [c.content for c in chunks],
            "top_n": top_n,
            "return_documents": False,
        }
        try:
            resp = self._session.post(self.url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except requests.Timeout as e:
            raise ServiceUnavailableError("Rerank service timed out", details=str(e)) from e
        except requests.RequestException as e:
            raise ServiceUnavailableError("Rerank service request failed", details=str(e)) from e
        except ValueError as e:
            raise ServiceUnavailableError("Invalid JSON from rerank service", details=str(e)) from e

        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            raise ServiceUnavailableError("Rerank response has no results list")

        reranked: list[ContextChunk] = []
        for item in results[:top_n]:
            index = int(item["index"])
            if not 0 <= index < len(chunks):
                raise ServiceUnavailableError(f"Rerank result index {index} out of range")
            reranked.append(chunks[index].with_rerank_score(float(item["relevance_score"])))
        return reranked


# Lazy import to avoid loading the model until first use
_CrossEncoder: type[Any] | None = None


def _get_cross_encoder() -> type[Any]:
    global _CrossEncoder
    if _CrossEncoder is None:
        from sentence_transformers import CrossEncoder
        _CrossEncoder = CrossEncoder
    return _CrossEncoder


class CrossEncoderReranker(Reranker):
    """Rerank with a small self-hosted cross-encoder.

    Scores each (query, chunk) pair jointly, which models query-chunk
    interaction better than the bi-encoder similarity used at retrieval.
    The ``model`` argument of ``rerank`` is ignored; the cross-encoder is
    fixed at construction.
    """

    def __init__(
        self,
        model_name: str | None = None,
    ) -> None:
        """Initialize the reranker.

        Args:
            model_name: HuggingFace model for cross-encoder. Default
                cross-encoder/ms-marco-MiniLM-L-6-v2.
        """
        self._model_name = model_name or "cross-encoder/ms-marco-MiniLM-L-6-v2"
        self._model = None

    def _ensure_loaded(self) -> None:
        if self._model is None:
            CrossEncoder = _get_cross_encoder()
            logger.info("Loading reranker model: %s", self._model_name)
            self._model = CrossEncoder(self._model_name)
            logger.debug("Reranker model loaded")

    def _rerank(
        self,
        query: str,
        chunks: list[ContextChunk],
        top_n: int,
        model: str | None,
    ) -> list[ContextChunk]:
        self._ensure_loaded()
        assert self._model is not None  # Type guard after _ensure_loaded()
        pairs = [(query, c.content) for c in chunks]
        scores = self._model.predict(pairs)
        if hasattr(scores, "tolist"):
            scores = scores.tolist()

        scored = [c.with_rerank_score(float(s)) for c, s in zip(chunks, scores, strict=True)]
        scored.sort(key=lambda c: c.ranking_score, reverse=True)
        return scored[:top_n]


_TOKEN = re.compile(r"[^\w\s]")


def tokenize(text: str) -> list[str]:
    """Lowercase, replace punctuation with spaces, split on whitespace."""
    return _TOKEN.sub(" ", text.lower()).split()


class BM25Reranker(Reranker):
    """BM25-style scoring with fixed, non-corpus-calibrated statistics.

    The IDF assumes every query term occurs in exactly one document,
    ``log(N / (1 + 1))``, and document length is normalised against a
    constant average. No corpus statistics are available at rerank time.
    """

    K1 = 1.5
    B = 0.75
    AVG_DOC_LENGTH = 100

    def _rerank(
        self,
        query: str,
        chunks: list[ContextChunk],
        top_n: int,
        model: str | None,
    ) -> list[ContextChunk]:
        query_terms = tokenize(query)
        scored = [
            c.with_rerank_score(self.score(query_terms, c.content, len(chunks))) for c in chunks
        ]
        scored.sort(key=lambda c: c.ranking_score, reverse=True)
        return scored[:top_n]

    @classmethod
    def score(cls, query_terms: list[str], document: str, corpus_size: int) -> float:
        doc_terms = tokenize(document)
        doc_length = len(doc_terms)
        idf = math.log(corpus_size / (1 + 1)) if corpus_size > 0 else 0.0

        total = 0.0
        for term in query_terms:
            tf = doc_terms.count(term)
            if tf == 0:
                continue
            numerator = tf * (cls.K1 + 1)
            denominator = tf + cls.K1 * (1 - cls.B + cls.B * (doc_length / cls.AVG_DOC_LENGTH))
            total += idf * (numerator / denominator)
        return total
