"""
Similarity search over a bounded page of stored embeddings.

There is no vector index: each search reads at most a few hundred candidate
records from the store and scores them with cosine similarity. Filters are
applied to that page, so very large corpora are only partially visible to
any single search.

Example:
    engine = SimilaritySearchEngine(db)
    response = engine.search(query_vector, SearchFilters(jurisdiction="california"), k=5)
    for match in response.matches:
        print(f"{match.entity_id}: {match.similarity:.3f}")
"""

import logging
import time
from typing import Optional, Sequence

import numpy as np

from ..database import EmbeddingDatabase
from .models import Match, SearchFilters, SearchResponse

logger = logging.getLogger(__name__)

# Candidate page sizes
SCAN_LIMIT = 100
FILTERED_SCAN_LIMIT = 200

# How many below-threshold matches a degraded response may carry
DEGRADED_MAX_RESULTS = 3

DEFAULT_K = 5
DEFAULT_THRESHOLD = 0.7


class DimensionMismatchError(ValueError):
    """Raised when two vectors of different lengths are compared."""
    pass


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two vectors, in [-1, 1].

    A zero-norm vector scores 0.0 against anything.

    Raises:
        DimensionMismatchError: If the vectors differ in length
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise DimensionMismatchError(
            f"Vector dimensions differ: {va.shape[0]} vs {vb.shape[0]}"
        )

    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / norm, -1.0, 1.0))


class SimilaritySearchEngine:
    """
    Brute-force cosine search with a threshold-degradation policy.

    Matches below the threshold are dropped. If that leaves nothing but the
    candidate page was not empty, the best min(3, k) matches are returned
    anyway, flagged low confidence, with the response marked degraded.
    """

    def __init__(self, db: EmbeddingDatabase):
        self.db = db

    def _scan_limit(self, filters: SearchFilters) -> int:
        return FILTERED_SCAN_LIMIT if filters.has_filters() else SCAN_LIMIT

    def search(
        self,
        query_vector: Sequence[float],
        filters: Optional[SearchFilters] = None,
        k: int = DEFAULT_K,
        threshold: float = DEFAULT_THRESHOLD,
    ) -> SearchResponse:
        """
        Rank stored records against a query vector.

        Args:
            query_vector: Embedding of the query
            filters: Equality filters on entity type, jurisdiction, topic
            k: Maximum matches returned
            threshold: Minimum similarity for a confident match

        Returns:
            SearchResponse (empty and non-degraded if there are no candidates)

        Raises:
            DimensionMismatchError: If a stored vector's length differs from the query's
        """
        start_time = time.time()
        filters = filters or SearchFilters()

        candidates = self.db.get_page(
            limit=self._scan_limit(filters),
            entity_type=filters.entity_type,
            jurisdiction=filters.jurisdiction,
            topic_key=filters.topic_key,
        )
        candidates = [record for record in candidates if filters.matches(record)]

        if not candidates or k <= 0:
            return SearchResponse(
                total_candidates=len(candidates),
                threshold=threshold,
                search_time_ms=(time.time() - start_time) * 1000,
            )

        scored = [
            Match(record=record, similarity=cosine_similarity(query_vector, record.vector))
            for record in candidates
        ]
        # sorted() is stable: equal scores keep page order
        ranked = sorted(scored, key=lambda m: m.similarity, reverse=True)[:k]

        confident = [m for m in ranked if m.similarity >= threshold]
        degraded = False

        if not confident:
            confident = ranked[: min(DEGRADED_MAX_RESULTS, k)]
            for match in confident:
                match.low_confidence = True
            degraded = True
            logger.info(
                f"No match above threshold {threshold:.2f} among {len(candidates)} candidates; "
                f"returning {len(confident)} low-confidence matches"
            )

        return SearchResponse(
            matches=confident,
            total_candidates=len(candidates),
            threshold=threshold,
            degraded=degraded,
            search_time_ms=(time.time() - start_time) * 1000,
        )
