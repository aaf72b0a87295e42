"""
Request/response models for similarity search and source hydration.
"""

from dataclasses import dataclass, field
from typing import Optional

from ..models import EmbeddingRecord, EntityType


@dataclass
class SearchFilters:
    """
    Equality filters on record metadata. A None field matches everything.

    Example:
        filters = SearchFilters(entity_type=EntityType.RULE, jurisdiction="california")
    """

    entity_type: Optional[EntityType] = None
    jurisdiction: Optional[str] = None
    topic_key: Optional[str] = None

    def has_filters(self) -> bool:
        return any(
            value is not None
            for value in (self.entity_type, self.jurisdiction, self.topic_key)
        )

    def matches(self, record: EmbeddingRecord) -> bool:
        if self.entity_type is not None and record.entity_type != self.entity_type:
            return False
        if self.jurisdiction is not None and record.metadata.jurisdiction != self.jurisdiction:
            return False
        if self.topic_key is not None and record.metadata.topic_key != self.topic_key:
            return False
        return True


@dataclass
class Match:
    """A candidate record scored against the query vector."""

    record: EmbeddingRecord
    similarity: float
    low_confidence: bool = False

    @property
    def entity_id(self) -> str:
        return self.record.entity_id

    @property
    def entity_type(self) -> EntityType:
        return self.record.entity_type


@dataclass
class SearchResponse:
    """
    Ranked matches from the similarity search.

    degraded is True when nothing cleared the threshold and the best
    below-threshold matches were returned instead.
    """

    matches: list[Match] = field(default_factory=list)
    total_candidates: int = 0
    threshold: float = 0.0
    degraded: bool = False
    search_time_ms: float = 0.0


@dataclass
class HydratedSource:
    """A match enriched with citation fields from the domain."""

    entity_id: str
    entity_type: EntityType
    similarity: float
    snippet: str
    jurisdiction: Optional[str] = None
    topic_key: Optional[str] = None
    topic_label: Optional[str] = None
    source_url: Optional[str] = None
    rule_id: Optional[str] = None
    report_id: Optional[str] = None
    low_confidence: bool = False

    def to_dict(self) -> dict:
        return {
            "entity_id": self.entity_id,
            "entity_type": self.entity_type.value,
            "similarity": self.similarity,
            "snippet": self.snippet,
            "jurisdiction": self.jurisdiction,
            "topic_key": self.topic_key,
            "topic_label": self.topic_label,
            "source_url": self.source_url,
            "rule_id": self.rule_id,
            "report_id": self.report_id,
            "low_confidence": self.low_confidence,
        }


@dataclass
class TopKResult:
    """Hydrated top-K sources for a query."""

    query: str
    sources: list[HydratedSource] = field(default_factory=list)
    degraded: bool = False
    total_candidates: int = 0
    search_time_ms: float = 0.0
    cache_hit: bool = False
