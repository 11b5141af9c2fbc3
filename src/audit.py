"""Retrieval audit log: one record per orchestration run, for debugging and analytics."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import asdict
from typing import Protocol

from src.models import ContextRetrievalRecord
from src.retrieval.search_clients import KnowledgeStoreClient

logger = logging.getLogger(__name__)


class RetrievalLog(Protocol):
    """Sink for ContextRetrievalRecords. May raise; the pipeline contains failures."""

    def record(self, entry: ContextRetrievalRecord) -> None: ...


class InMemoryRetrievalLog:
    """Bounded in-memory log. Oldest records are dropped past ``max_records``."""

    def __init__(self, max_records: int = 1000) -> None:
        self._records: deque[ContextRetrievalRecord] = deque(maxlen=max_records)
        self._lock = threading.Lock()

    def record(self, entry: ContextRetrievalRecord) -> None:
        with self._lock:
            self._records.append(entry)

    def list_recent(self, limit: int = 20) -> list[ContextRetrievalRecord]:
        with self._lock:
            return list(self._records)[-limit:]

    def __len__(self) -> int:
        return len(self._records)

    def summary(self) -> dict[str, float | int]:
        """Aggregate latency, confidence and chunk usage across stored runs."""
        with self._lock:
            records = list(self._records)
        total = len(records)
        if total == 0:
            return {
                "total_requests": 0,
                "avg_total_time_ms": 0.0,
                "avg_retrieval_time_ms": 0.0,
                "avg_confidence": 0.0,
                "avg_chunks_used": 0.0,
                "zero_context_requests": 0,
            }
        return {
            "total_requests": total,
            "avg_total_time_ms": sum(r.total_time_ms for r in records) / total,
            "avg_retrieval_time_ms": sum(r.retrieval_time_ms for r in records) / total,
            "avg_confidence": sum(r.context_confidence for r in records) / total,
            "avg_chunks_used": sum(r.chunks_used for r in records) / total,
            "zero_context_requests": sum(1 for r in records if r.chunks_used == 0),
        }


class SupabaseRetrievalLog:
    """Writes records to the knowledge store's ``context_retrieval_logs`` table."""

    TABLE = "context_retrieval_logs"

    def __init__(self, client: KnowledgeStoreClient) -> None:
        self._client = client

    def record(self, entry: ContextRetrievalRecord) -> None:
        self._client.insert(self.TABLE, asdict(entry))
        logger.debug("Logged retrieval for agent %s", entry.agent_id)
