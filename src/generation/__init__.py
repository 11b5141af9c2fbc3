"""Language-model completion clients used for query expansion."""

from typing import Protocol

from .generator import HFGenerator
from .ollama_generator import OllamaGenerator


class CompletionClient(Protocol):
    """Anything that turns a prompt into text, raising LanguageModelError on failure."""

    def complete(self, prompt: str, *, model: str | None = None) -> str: ...


__all__ = ["CompletionClient", "HFGenerator", "OllamaGenerator"]
