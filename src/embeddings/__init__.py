"""Embedding clients and vector similarity."""

from .embedder import EmbeddingClient, MultilingualEmbedder, OpenAIEmbeddingClient
from .similarity import cosine_similarity

__all__ = ["EmbeddingClient", "MultilingualEmbedder", "OpenAIEmbeddingClient", "cosine_similarity"]
