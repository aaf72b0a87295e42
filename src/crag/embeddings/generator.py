"""
Embedding generator with a deterministic fallback.

Calls the configured provider and, when it is missing or fails, produces a
pseudo-random vector seeded from the content instead. Callers never see an
exception: every result carries a model tag so fallback vectors can be found
and re-embedded later.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..interfaces import EmbeddingProvider

logger = logging.getLogger(__name__)

FALLBACK_MODEL = "mock-embedding-fallback"
DEFAULT_DIMENSIONS = 1536

_LCG_MULTIPLIER = 1664525
_LCG_INCREMENT = 1013904223
_UINT32 = 2**32


@dataclass
class GeneratedEmbedding:
    """A vector plus the model tag that produced it."""

    vector: list[float]
    model: str
    dimensions: int

    @property
    def is_fallback(self) -> bool:
        return is_fallback_model(self.model)


def is_fallback_model(model: Optional[str]) -> bool:
    """True for records produced by the fallback path."""
    return model == FALLBACK_MODEL


def _string_hash(content: str) -> int:
    """32-bit signed rolling hash (h * 31 + code point, wrapped)."""
    h = 0
    for ch in content:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    return h - _UINT32 if h >= 2**31 else h


def fallback_vector(content: str, dimensions: int = DEFAULT_DIMENSIONS) -> list[float]:
    """
    Deterministic pseudo-embedding for content.

    Seeds a linear congruential generator with a hash of the content and maps
    each draw into [-1, 1]. Same content and dimensions always give the same
    vector.

    Args:
        content: Text to derive the vector from
        dimensions: Vector length

    Returns:
        List of `dimensions` floats in [-1, 1]
    """
    state = abs(_string_hash(content)) % _UINT32
    vector = []
    for _ in range(dimensions):
        state = (state * _LCG_MULTIPLIER + _LCG_INCREMENT) % _UINT32
        vector.append(state / _UINT32 * 2 - 1)
    return vector


class EmbeddingGenerator:
    """
    Turns text into vectors, falling back when the provider cannot.

    Example:
        generator = EmbeddingGenerator(provider=HTTPEmbeddingProvider(api_key=key))
        result = await generator.generate("Minimum wage is $16.00 per hour")
        if result.is_fallback:
            print("provider unavailable, will re-embed later")
    """

    def __init__(
        self,
        provider: Optional[EmbeddingProvider] = None,
        dimensions: Optional[int] = None,
    ):
        """
        Args:
            provider: Embedding backend, or None to always use the fallback
            dimensions: Vector length; defaults to the provider's, else 1536
        """
        self.provider = provider
        if dimensions is not None:
            self.dimensions = dimensions
        elif provider is not None:
            self.dimensions = provider.dimensions
        else:
            self.dimensions = DEFAULT_DIMENSIONS

    @property
    def model_name(self) -> str:
        return self.provider.model_name if self.provider else FALLBACK_MODEL

    def fallback(self, content: str) -> GeneratedEmbedding:
        return GeneratedEmbedding(
            vector=fallback_vector(content, self.dimensions),
            model=FALLBACK_MODEL,
            dimensions=self.dimensions,
        )

    async def generate(self, content: str) -> GeneratedEmbedding:
        """
        Embed content with the provider, or the fallback if that fails.

        Never raises. A provider vector of the wrong length is treated as a
        failure, so every returned vector has self.dimensions entries.

        Args:
            content: Text to embed

        Returns:
            GeneratedEmbedding with vector, model tag and dimensions
        """
        if self.provider is None:
            return self.fallback(content)

        try:
            vector = await self.provider.embed(content)
        except Exception as e:
            logger.warning(f"Embedding provider failed, using fallback: {e}")
            return self.fallback(content)

        if len(vector) != self.dimensions:
            logger.warning(
                f"Provider returned {len(vector)} dimensions, expected {self.dimensions}; "
                f"using fallback"
            )
            return self.fallback(content)

        return GeneratedEmbedding(
            vector=vector,
            model=self.provider.model_name,
            dimensions=len(vector),
        )
