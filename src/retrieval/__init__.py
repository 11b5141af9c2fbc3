"""Retrieval: search adapters, five tier retrievers, coordinator, rerankers."""

from .coordinator import RetrievalCoordinator
from .reranker import BM25Reranker, CrossEncoderReranker, Reranker, ServiceReranker
from .tiers import (
    AgentDocumentRetriever,
    CompanyProfileRetriever,
    KeywordRetriever,
    PlaybookRetriever,
    SharedDocumentRetriever,
    TierRequest,
    TierRetriever,
)

__all__ = [
    "AgentDocumentRetriever",
    "BM25Reranker",
    "CompanyProfileRetriever",
    "CrossEncoderReranker",
    "KeywordRetriever",
    "PlaybookRetriever",
    "Reranker",
    "RetrievalCoordinator",
    "ServiceReranker",
    "SharedDocumentRetriever",
    "TierRequest",
    "TierRetriever",
]
