"""Query expansion: semantically varied rephrasings of the user query."""

from __future__ import annotations

import logging
import time

from src.exceptions import ServiceUnavailableError, ValidationError
from src.expansion.cache import ExpansionCache, InMemoryExpansionCache
from src.generation import CompletionClient
from src.models import QueryExpansionResult

logger = logging.getLogger(__name__)

_EXPANSION_PROMPT = """Given the query: "{query}"

Generate {max_expansions} semantically similar queries that capture different phrasings and related concepts. These will be used for semantic search to retrieve relevant information.

Guidelines:
- Use synonyms and alternative phrasings
- Include related business concepts
- Vary the specificity (some more general, some more specific)
- Keep queries concise (5-15 words each)
- Make them sound natural, as if asked by a business user

Return ONLY the queries, one per line, without numbering or explanation."""


class QueryExpander:
    """Expands a query with an LLM, caching results by normalized query.

    Expansion only improves recall. A failing model yields no expansions and
    a failing cache behaves like a miss; neither ever raises to the caller.
    """

    DEFAULT_MODEL = "llama3"

    def __init__(
        self,
        llm: CompletionClient,
        cache: ExpansionCache | None = None,
        default_model: str | None = None,
    ) -> None:
        """Initialize the expander.

        Args:
            llm: Completion client used to generate rephrasings.
            cache: Expansion store. Defaults to a fresh in-memory cache.
            default_model: Model used when ``expand`` is not given one.
        """
        self._llm = llm
        self._cache = cache if cache is not None else InMemoryExpansionCache()
        self._default_model = default_model or getattr(llm, "model", None) or self.DEFAULT_MODEL

    @property
    def cache(self) -> ExpansionCache:
        return self._cache

    def expand(
        self,
        query: str,
        max_expansions: int = 5,
        use_cache: bool = True,
        model: str | None = None,
    ) -> QueryExpansionResult:
        """Return the original query followed by up to ``max_expansions`` rephrasings.

        Args:
            query: Non-empty user query.
            max_expansions: Upper bound on generated rephrasings (>= 1).
            use_cache: Read from and write to the expansion cache.
            model: Expansion model; falls back to the expander's default.

        Raises:
            ValidationError: empty query or ``max_expansions < 1``.
        """
        if not query or not query.strip():
            raise ValidationError("query must be a non-empty string")
        if max_expansions < 1:
            raise ValidationError(f"max_expansions must be >= 1, got {max_expansions}")

        original = query.strip()
        model_name = model or self._default_model
        start = time.perf_counter()

        if use_cache:
            cached = self._cache_get(original)
            if cached is not None:
                logger.debug("Expansion cache hit for %r", original[:80])
                return QueryExpansionResult(
                    original_query=original,
                    expanded_queries=[original, *cached[:max_expansions]],
                    from_cache=True,
                    expansion_time_ms=(time.perf_counter() - start) * 1000.0,
                )

        expansions = self._generate(original, max_expansions, model_name)

        if use_cache and expansions:
            self._cache_set(original, expansions, model_name)

        return QueryExpansionResult(
            original_query=original,
            expanded_queries=[original, *expansions],
            from_cache=False,
            expansion_time_ms=(time.perf_counter() - start) * 1000.0,
        )

    def _generate(self, query: str, max_expansions: int, model: str) -> list[str]:
        prompt = _EXPANSION_PROMPT.format(query=query, max_expansions=max_expansions)
        try:
            text = self._llm.complete(prompt, model=model)
        except ServiceUnavailableError as e:
            logger.warning("Query expansion failed, using original query only: %s", e.message)
            return []
        except Exception:
            logger.exception("Unexpected error during query expansion")
            return []
        return parse_expansions(text, max_expansions)

    def _cache_get(self, query: str) -> list[str] | None:
        try:
            return self._cache.get(query)
        except Exception as e:
            logger.warning("Expansion cache read failed, treating as miss: %s", e)
            return None

    def _cache_set(self, query: str, expansions: list[str], model: str) -> None:
        try:
            self._cache.set(query, expansions, model)
        except Exception as e:
            logger.warning("Expansion cache write failed (ignored): %s", e)


def parse_expansions(text: str, max_expansions: int) -> list[str]:
    """Split an LLM response into non-empty lines, keeping at most ``max_expansions``."""
    lines = [line.strip() for line in (text or "").splitlines()]
    return [line for line in lines if line][:max_expansions]
