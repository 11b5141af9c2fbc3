"""Query expansion with an injectable cache."""

from .cache import (
    ExpansionCache,
    InMemoryExpansionCache,
    SupabaseExpansionCache,
    normalize_query,
    purge_cache,
    query_hash,
)
from .query_expander import QueryExpander, parse_expansions

__all__ = [
    "ExpansionCache",
    "InMemoryExpansionCache",
    "QueryExpander",
    "SupabaseExpansionCache",
    "normalize_query",
    "parse_expansions",
    "purge_cache",
    "query_hash",
]
