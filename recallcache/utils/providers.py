"""
Contracts for the external model capabilities the pipeline depends on.
"""

from abc import ABC, abstractmethod
from typing import List, Sequence

from ..models.core import ContextItem


class EmbeddingProvider(ABC):
    """Text to fixed-width vector.

    Implementations return provider errors as exceptions and never fabricate vectors.
    """

    dimension: int

    @abstractmethod
    def embed(self, text: str) -> List[float]:
        """Embed non-empty text."""

    def embed_query(self, text: str) -> List[float]:
        """Embed a search query; providers with asymmetric models override this."""
        return self.embed(text)

    def health_check(self) -> bool:
        try:
            return len(self.embed('health check')) == self.dimension
        except Exception:
            return False


class GenerationProvider(ABC):
    """Answer a query given ranked context."""

    @abstractmethod
    def generate(self, query: str, context: Sequence[ContextItem]) -> str:
        """Return the answer text, or raise on failure."""
