"""Centralized configuration.

Two layers:
- ``Settings``: process-wide service endpoints and credentials, loaded from
  environment variables and .env (Pydantic Settings).
- ``ContextInjectionConfig``: the per-agent value object that controls one
  context-injection run (tiers, budgets, expansion, reranking, prompt).
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.exceptions import ConfigurationError
from src.prompting.templates import missing_placeholders

RerankStrategy = Literal["service", "cross_encoder", "bm25"]


class Settings(BaseSettings):
    """Application settings loaded from environment and .env.

    Env vars use uppercase field names, e.g. CONTEXTFORGE_LOG_LEVEL, OLLAMA_URL.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    contextforge_log_level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR).")
    contextforge_request_timeout: float = Field(
        default=5.0,
        gt=0.0,
        le=60.0,
        description="Timeout in seconds applied to every external call.",
    )
    contextforge_max_workers: int = Field(
        default=5,
        ge=1,
        le=32,
        description="Thread-pool width for the tier fan-out.",
    )

    # Embeddings: openai | local
    contextforge_embedding_backend: str = Field(default="openai", description="Embedding backend: openai or local.")
    openai_api_key: str = Field(default="", description="API key for the OpenAI-compatible embedding service.")
    openai_embedding_url: str = Field(
        default="https://api.openai.com/v1/embeddings",
        description="OpenAI-compatible embeddings endpoint.",
    )
    openai_embedding_model: str = Field(default="text-embedding-3-large", description="Embedding model name.")
    openai_embedding_dimensions: int = Field(default=1536, ge=1, description="Requested embedding dimensionality.")
    local_embedding_model: str = Field(
        default="paraphrase-multilingual-MiniLM-L12-v2",
        description="sentence-transformers model used by the local embedding backend.",
    )

    # Knowledge store (Supabase-style PostgREST RPC)
    supabase_url: str = Field(default="", description="Base URL of the search/knowledge service.")
    supabase_key: str = Field(default="", description="Service key for the search/knowledge service.")

    # Query expansion LLM: ollama | hf
    contextforge_expansion_backend: str = Field(default="ollama", description="LLM backend for expansion: ollama or hf.")
    ollama_url: str = Field(default="http://localhost:11434", description="Ollama server URL.")
    ollama_model: str = Field(default="llama3", description="Ollama model name.")
    hf_api_key: str = Field(default="", description="HuggingFace API key for inference.")
    hf_model: str = Field(
        default="Qwen/Qwen2.5-7B-Instruct",
        description="HuggingFace model for inference.",
    )

    # Reranking
    cohere_api_key: str = Field(default="", description="API key for the rerank service.")
    cohere_rerank_url: str = Field(
        default="https://api.cohere.com/v1/rerank",
        description="Cross-attention rerank service endpoint.",
    )
    contextforge_cross_encoder_model: str = Field(
        default="cross-encoder/ms-marco-MiniLM-L-6-v2",
        description="Cross-encoder model for self-hosted reranking.",
    )

    # Expansion cache
    contextforge_expansion_cache: str = Field(default="supabase", description="Expansion cache store: supabase or memory.")
    contextforge_expansion_cache_ttl_days: int = Field(default=30, ge=1, description="Expansion cache expiry.")
    contextforge_expansion_cache_stale_days: int = Field(
        default=90,
        ge=1,
        description="Entries unused for this long are purged by stale cleanup.",
    )
    contextforge_cache_cleanup_interval_hours: float = Field(
        default=24.0,
        ge=0.0,
        description="How often the API purges expired and stale expansion cache entries; 0 disables.",
    )

    # API / server
    contextforge_port: int = Field(default=8000, ge=1, le=65535, description="Port for the HTTP API.")
    contextforge_max_query_length: int = Field(
        default=4096,
        ge=1,
        le=65536,
        description="Max character length for query input.",
    )

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from environment (with .env)."""
        return cls()


def get_settings() -> Settings:
    """Return application settings (singleton-style; create once per process)."""
    return Settings.from_env()


class ContextInjectionConfig(BaseModel):
    """Per-agent configuration for one context-injection run.

    Defaults and bounds mirror the per-agent configuration table. The model
    is frozen: treat it as a value, build a new one with ``model_copy`` to
    change a field.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    # Tiers
    enable_company_profile: bool = True
    enable_agent_docs: bool = True
    enable_shared_docs: bool = True
    enable_playbooks: bool = True
    enable_keyword_search: bool = True

    # Retrieval
    max_chunks_per_source: int = Field(default=3, ge=1, le=10)
    total_max_chunks: int = Field(default=10, ge=1, le=20)
    similarity_threshold: float = Field(default=0.70, ge=0.0, le=1.0)

    # Query expansion
    enable_query_expansion: bool = True
    max_expanded_queries: int = Field(default=5, ge=1, le=10)
    expansion_model: str | None = None

    # Reranking
    enable_reranking: bool = True
    rerank_model: str = "rerank-english-v3.0"
    rerank_top_n: int | None = Field(default=8, ge=1, le=20)
    rerank_strategy: RerankStrategy = "service"

    # Prompt assembly
    include_citations: bool = True
    prompt_template: str | None = None
    max_context_tokens: int = Field(default=8000, ge=1000, le=32000)

    @model_validator(mode="before")
    @classmethod
    def _default_top_n_follows_budget(cls, data: object) -> object:
        # An unset rerank_top_n follows a total_max_chunks budget smaller than its default.
        if isinstance(data, dict) and "rerank_top_n" not in data and "total_max_chunks" in data:
            total = data["total_max_chunks"]
            if isinstance(total, int) and total < 8:
                return {**data, "rerank_top_n": total}
        return data

    @field_validator("prompt_template")
    @classmethod
    def _template_has_required_placeholders(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        missing = missing_placeholders(value)
        if missing:
            raise ValueError(
                "prompt_template is missing required placeholders: "
                + ", ".join("{" + name + "}" for name in missing)
            )
        return value

    @model_validator(mode="after")
    def _rerank_top_n_within_budget(self) -> "ContextInjectionConfig":
        if self.rerank_top_n is not None and self.rerank_top_n > self.total_max_chunks:
            raise ValueError(
                f"rerank_top_n ({self.rerank_top_n}) must not exceed "
                f"total_max_chunks ({self.total_max_chunks})"
            )
        return self

    @property
    def effective_top_n(self) -> int:
        """Number of chunks kept after reranking; never above total_max_chunks."""
        return min(self.rerank_top_n or self.total_max_chunks, self.total_max_chunks)

    def tier_enabled(self, source: str) -> bool:
        """Whether the tier identified by ``source`` (a ContextSource value) is enabled."""
        flags = {
            "company_profile": self.enable_company_profile,
            "agent_docs": self.enable_agent_docs,
            "shared_docs": self.enable_shared_docs,
            "playbooks": self.enable_playbooks,
            "keywords": self.enable_keyword_search,
        }
        return flags[getattr(source, "value", source)]

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ContextInjectionConfig":
        """Build a config from stored per-agent settings.

        Raises:
            ConfigurationError: If any field is out of bounds or inconsistent.
        """
        try:
            return cls.model_validate(data or {})
        except PydanticValidationError as e:
            raise ConfigurationError("Invalid context injection config", details=str(e)) from e
