"""
Source hydration: turn ranked matches into citable sources.
"""

import logging
import re
from typing import Optional

from ..interfaces import DomainInfo, DomainLookup
from ..models import EntityType
from .models import HydratedSource, Match

logger = logging.getLogger(__name__)

SNIPPET_LENGTH = 500


def humanize_topic(topic_key: Optional[str]) -> Optional[str]:
    """'minimum_wage' -> 'Minimum Wage'."""
    if not topic_key:
        return None
    return topic_key.replace("_", " ").strip().title()


def default_source_url(jurisdiction: Optional[str]) -> Optional[str]:
    """Best-guess labor department URL for a jurisdiction."""
    if not jurisdiction:
        return None
    slug = re.sub(r"[^a-z0-9]+", "", jurisdiction.lower())
    if not slug:
        return None
    return f"https://www.{slug}.gov/labor/employment"


class SourceHydrator:
    """
    Enriches matches with source URL, jurisdiction and topic label.

    Domain lookups that fail or come back incomplete are filled in from the
    record's own metadata, so hydration never fails a search.
    """

    def __init__(self, lookup: Optional[DomainLookup] = None, snippet_length: int = SNIPPET_LENGTH):
        self.lookup = lookup
        self.snippet_length = snippet_length

    def _lookup(self, entity_id: str, entity_type: EntityType) -> Optional[DomainInfo]:
        if self.lookup is None:
            return None
        try:
            return self.lookup.lookup(entity_id, entity_type)
        except Exception as e:
            logger.warning(f"Domain lookup failed for {entity_type.value} {entity_id}: {e}")
            return None

    def hydrate_one(self, match: Match) -> HydratedSource:
        record = match.record
        info = self._lookup(record.entity_id, record.entity_type) or DomainInfo()

        jurisdiction = info.jurisdiction or record.metadata.jurisdiction
        topic_key = info.topic_key or record.metadata.topic_key
        text = info.overview or record.content

        rule_id = info.rule_id
        report_id = info.report_id
        if record.entity_type == EntityType.RULE and rule_id is None:
            rule_id = record.entity_id
        if record.entity_type == EntityType.REPORT and report_id is None:
            report_id = record.entity_id

        return HydratedSource(
            entity_id=record.entity_id,
            entity_type=record.entity_type,
            similarity=match.similarity,
            snippet=(text or "")[: self.snippet_length],
            jurisdiction=jurisdiction,
            topic_key=topic_key,
            topic_label=info.topic_label or humanize_topic(topic_key),
            source_url=info.source_url or default_source_url(jurisdiction),
            rule_id=rule_id,
            report_id=report_id,
            low_confidence=match.low_confidence,
        )

    def hydrate(self, matches: list[Match]) -> list[HydratedSource]:
        """
        Hydrate matches in rank order.

        Args:
            matches: Ranked matches from SimilaritySearchEngine

        Returns:
            One HydratedSource per match, same order
        """
        return [self.hydrate_one(match) for match in matches]
