"""
Embedding generation, similarity search and source hydration.

Example:
    from crag.embeddings import EmbeddingGenerator, SimilaritySearchEngine

    generator = EmbeddingGenerator()          # no provider: fallback vectors
    vector = (await generator.generate("overtime pay")).vector

    engine = SimilaritySearchEngine(db)
    response = engine.search(vector, k=5, threshold=0.7)
"""

from .models import HydratedSource, Match, SearchFilters, SearchResponse, TopKResult
from .generator import FALLBACK_MODEL, EmbeddingGenerator, GeneratedEmbedding
from .provider import (
    EmbeddingAuthError,
    EmbeddingProviderError,
    EmbeddingRateLimitError,
    HTTPEmbeddingProvider,
    LocalEmbeddingProvider,
    build_provider,
)
from .search_engine import DimensionMismatchError, SimilaritySearchEngine, cosine_similarity
from .hydrator import SourceHydrator

__all__ = [
    "EmbeddingGenerator",
    "GeneratedEmbedding",
    "FALLBACK_MODEL",
    "HTTPEmbeddingProvider",
    "LocalEmbeddingProvider",
    "build_provider",
    "EmbeddingProviderError",
    "EmbeddingRateLimitError",
    "EmbeddingAuthError",
    "SimilaritySearchEngine",
    "DimensionMismatchError",
    "cosine_similarity",
    "SourceHydrator",
    "SearchFilters",
    "Match",
    "SearchResponse",
    "HydratedSource",
    "TopKResult",
]
