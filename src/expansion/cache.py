"""Query-expansion cache stores.

Keys are the MD5 hash of the normalized query (lowercase, trimmed,
whitespace collapsed). Values are the expansions *without* the original
query. A hit slides the expiry forward; a separate stale cleanup purges
entries that have not been used for a long interval even if unexpired.
"""

from __future__ import annotations

import hashlib
import logging
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

import requests

from src.exceptions import ServiceUnavailableError

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


def normalize_query(query: str) -> str:
    return _WHITESPACE.sub(" ", query.strip().lower())


def query_hash(query: str) -> str:
    """Cache key for ``query``: MD5 of the normalized text."""
    return hashlib.md5(normalize_query(query).encode("utf-8")).hexdigest()


class ExpansionCache(Protocol):
    """Injectable cache used by QueryExpander."""

    def get(self, query: str) -> list[str] | None: ...

    def set(self, query: str, expansions: list[str], model: str) -> None: ...

    def evict(self, query: str) -> bool: ...

    def cleanup_expired(self) -> int: ...

    def cleanup_stale(self) -> int: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CacheEntry:
    original_query: str
    expansions: list[str]
    model: str
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    hit_count: int = 0


class InMemoryExpansionCache:
    """Thread-safe in-process store. Concurrent writers race; last write wins."""

    def __init__(
        self,
        ttl: timedelta = timedelta(days=30),
        stale_after: timedelta = timedelta(days=90),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.ttl = ttl
        self.stale_after = stale_after
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def entry(self, query: str) -> CacheEntry | None:
        """Raw entry for inspection; does not count as a hit."""
        return self._entries.get(query_hash(query))

    def get(self, query: str) -> list[str] | None:
        key = query_hash(query)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.expires_at <= now:
                return None
            entry.hit_count += 1
            entry.last_used_at = now
            entry.expires_at = now + self.ttl
            return list(entry.expansions)

    def set(self, query: str, expansions: list[str], model: str) -> None:
        key = query_hash(query)
        now = self._clock()
        with self._lock:
            previous = self._entries.get(key)
            self._entries[key] = CacheEntry(
                original_query=query,
                expansions=list(expansions),
                model=model,
                created_at=previous.created_at if previous else now,
                last_used_at=now,
                expires_at=now + self.ttl,
                hit_count=previous.hit_count if previous else 0,
            )

    def evict(self, query: str) -> bool:
        with self._lock:
            return self._entries.pop(query_hash(query), None) is not None

    def cleanup_expired(self) -> int:
        now = self._clock()
        return self._purge(lambda e: e.expires_at < now)

    def cleanup_stale(self) -> int:
        cutoff = self._clock() - self.stale_after
        return self._purge(lambda e: e.last_used_at < cutoff)

    def _purge(self, predicate: Callable[[CacheEntry], bool]) -> int:
        with self._lock:
            doomed = [key for key, entry in self._entries.items() if predicate(entry)]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.info("Purged %d expansion cache entries", len(doomed))
        return len(doomed)


class SupabaseExpansionCache:
    """Cache backed by the knowledge store's RPC functions.

    Expiry, sliding refresh and hit counting happen server-side.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 5.0,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            }
        )

    def _rpc(self, function: str, params: dict[str, Any]) -> Any:
        url = f"{self.base_url}/rest/v1/rpc/{function}"
        try:
            resp = self._session.post(url, json=params, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json() if resp.content else None
        except (requests.RequestException, ValueError) as e:
            raise ServiceUnavailableError(f"RPC {function} failed", details=str(e)) from e

    def get(self, query: str) -> list[str] | None:
        data = self._rpc("get_cached_query_expansion", {"query": query})
        if not data:
            return None
        return [str(item) for item in data]

    def set(self, query: str, expansions: list[str], model: str) -> None:
        self._rpc("cache_query_expansion", {"query": query, "expansions": expansions, "model": model})

    def evict(self, query: str) -> bool:
        url = f"{self.base_url}/rest/v1/query_expansion_cache"
        try:
            resp = self._session.delete(
                url, params={"query_hash": f"eq.{query_hash(query)}"}, timeout=self.timeout
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise ServiceUnavailableError("Cache eviction failed", details=str(e)) from e
        return True

    def cleanup_expired(self) -> int:
        return int(self._rpc("cleanup_expired_query_cache", {}) or 0)

    def cleanup_stale(self) -> int:
        return int(self._rpc("cleanup_stale_query_cache", {}) or 0)


def purge_cache(cache: ExpansionCache) -> tuple[int, int]:
    """Run both cleanups on ``cache``.

    Returns:
        ``(expired, stale)`` counts of removed entries.

    Raises:
        ServiceUnavailableError: If a remote store cannot be reached.
    """
    expired = cache.cleanup_expired()
    stale = cache.cleanup_stale()
    logger.info("Expansion cache cleanup: %d expired, %d stale entries removed", expired, stale)
    return expired, stale
