"""ContextForge custom exceptions for clear error handling and API responses."""

from __future__ import annotations


class ContextForgeError(Exception):
    """Base exception for ContextForge. Use for user-facing or logged errors."""

    def __init__(self, message: str, *, details: str | None = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class ConfigurationError(ContextForgeError):
    """Raised when configuration or a prompt template violates an invariant."""


class ValidationError(ContextForgeError):
    """Raised for invalid caller input (empty query, max_expansions < 1, etc.)."""


class ServiceUnavailableError(ContextForgeError):
    """Raised by a service client when its upstream call fails or times out.

    Pipeline components catch this at their boundary and degrade; it never
    reaches the orchestrator's caller.
    """


class LanguageModelError(ServiceUnavailableError):
    """Raised when the configured language model cannot produce a completion."""
