"""Adapters for the external knowledge store.

The store is a Supabase-style PostgREST service: similarity and full-text
searches are exposed as RPC functions, the company profile as a table.
Adapters raise ServiceUnavailableError on any failure; the tier retrievers
decide how to degrade.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Protocol

import requests

from src.exceptions import ServiceUnavailableError

logger = logging.getLogger(__name__)


class VectorSearchClient(Protocol):
    """Similarity search scoped to one owner (agent or company)."""

    def search(
        self,
        query_embedding: Sequence[float],
        scope_id: str,
        threshold: float,
        limit: int,
    ) -> list[dict[str, Any]]: ...


class TextSearchClient(Protocol):
    """Full-text or hybrid keyword search scoped to one or more owners."""

    def search(self, query_text: str, scope_ids: Sequence[str], limit: int) -> list[dict[str, Any]]: ...


class CompanyProfileStore(Protocol):
    """Loads the structured company profile document (raw JSON) for a company."""

    def load(self, company_id: str) -> dict[str, Any] | None: ...


class KnowledgeStoreClient:
    """Thin HTTP client for the knowledge store's REST and RPC endpoints."""

    DEFAULT_TIMEOUT = 5.0

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float | None = None,
        session: requests.Session | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required for the knowledge store client")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout if timeout is not None else self.DEFAULT_TIMEOUT
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            }
        )

    def rpc(self, function: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        """Call an RPC function and return its rows."""
        url = f"{self.base_url}/rest/v1/rpc/{function}"
        data = self._send("POST", url, json=params)
        if data is None:
            return []
        if not isinstance(data, list):
            raise ServiceUnavailableError(f"RPC {function} returned {type(data).__name__}, expected rows")
        return data

    def select(self, table: str, filters: dict[str, str], columns: str = "*") -> list[dict[str, Any]]:
        """Select rows from ``table`` where every ``column = value`` filter holds."""
        url = f"{self.base_url}/rest/v1/{table}"
        params = {"select": columns, **{column: f"eq.{value}" for column, value in filters.items()}}
        data = self._send("GET", url, params=params)
        return data if isinstance(data, list) else []

    def insert(self, table: str, row: dict[str, Any]) -> None:
        """Insert one row into ``table`` without reading it back."""
        url = f"{self.base_url}/rest/v1/{table}"
        self._send("POST", url, json=row, headers={"Prefer": "return=minimal"})

    def _send(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            resp = self._session.request(method, url, timeout=self.timeout, **kwargs)
            resp.raise_for_status()
            return resp.json() if resp.content else None
        except requests.Timeout as e:
            raise ServiceUnavailableError(f"Knowledge store timed out: {url}", details=str(e)) from e
        except requests.RequestException as e:
            raise ServiceUnavailableError(f"Knowledge store request failed: {url}", details=str(e)) from e
        except ValueError as e:
            raise ServiceUnavailableError(f"Invalid JSON from knowledge store: {url}", details=str(e)) from e


class RpcVectorSearch:
    """Vector similarity search through an RPC such as ``match_agent_documents``."""

    def __init__(self, client: KnowledgeStoreClient, function: str, scope_param: str) -> None:
        self._client = client
        self.function = function
        self.scope_param = scope_param

    def search(
        self,
        query_embedding: Sequence[float],
        scope_id: str,
        threshold: float,
        limit: int,
    ) -> list[dict[str, Any]]:
        return self._client.rpc(
            self.function,
            {
                "query_embedding": list(query_embedding),
                self.scope_param: scope_id,
                "match_threshold": threshold,
                "match_count": limit,
            },
        )


class RpcTextSearch:
    """Full-text search through an RPC such as ``search_playbooks``.

    ``scope_params`` names the RPC parameter for each positional scope id.
    """

    def __init__(self, client: KnowledgeStoreClient, function: str, scope_params: Sequence[str]) -> None:
        self._client = client
        self.function = function
        self.scope_params = tuple(scope_params)

    def search(self, query_text: str, scope_ids: Sequence[str], limit: int) -> list[dict[str, Any]]:
        if len(scope_ids) != len(self.scope_params):
            raise ValueError(
                f"{self.function} expects {len(self.scope_params)} scope ids, got {len(scope_ids)}"
            )
        params: dict[str, Any] = {"search_query": query_text, "match_count": limit}
        params.update(zip(self.scope_params, scope_ids, strict=True))
        return self._client.rpc(self.function, params)


class SupabaseCompanyProfileStore:
    """Reads the completed company profile from the ``company_os`` table."""

    def __init__(self, client: KnowledgeStoreClient) -> None:
        self._client = client

    def load(self, company_id: str) -> dict[str, Any] | None:
        rows = self._client.select(
            "company_os",
            {"company_id": company_id, "status": "completed"},
            columns="os_data,version",
        )
        if not rows:
            return None
        data = rows[0].get("os_data")
        return data if isinstance(data, dict) and data else None


def agent_document_search(client: KnowledgeStoreClient) -> RpcVectorSearch:
    return RpcVectorSearch(client, "match_agent_documents", "match_agent_id")


def shared_document_search(client: KnowledgeStoreClient) -> RpcVectorSearch:
    return RpcVectorSearch(client, "match_shared_documents", "match_company_id")


def playbook_search(client: KnowledgeStoreClient) -> RpcTextSearch:
    return RpcTextSearch(client, "search_playbooks", ("match_company_id",))


def keyword_search(client: KnowledgeStoreClient) -> RpcTextSearch:
    return RpcTextSearch(client, "keyword_search_all_sources", ("match_company_id", "match_agent_id"))
