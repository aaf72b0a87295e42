"""
Collaborator protocols for the embedding core.

The job manager, generator and hydrator depend on these shapes rather than
on concrete services, so tests can pass simple fakes and deployments can
swap the compliance catalog or embedding backend.

- ContentSource.resolve(entity_id) -> ResolvedContent | None
- EmbeddingProvider.embed(text) -> list[float]
- DomainLookup.lookup(entity_id, entity_type) -> DomainInfo | None
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from .models import EntityType


@dataclass
class ResolvedContent:
    """Embeddable text for one entity plus the metadata stored with it."""

    entity_id: str
    entity_type: EntityType
    content: str
    jurisdiction: Optional[str] = None
    topic_key: Optional[str] = None


@dataclass
class DomainInfo:
    """Fields the hydrator needs from a rule or report."""

    source_url: Optional[str] = None
    jurisdiction: Optional[str] = None
    topic_key: Optional[str] = None
    topic_label: Optional[str] = None
    overview: Optional[str] = None
    rule_id: Optional[str] = None
    report_id: Optional[str] = None


class ContentSource(Protocol):
    def resolve(self, entity_id: str) -> Optional[ResolvedContent]: ...


class EmbeddingProvider(Protocol):
    model_name: str
    dimensions: int

    async def embed(self, text: str) -> list[float]: ...


class DomainLookup(Protocol):
    def lookup(self, entity_id: str, entity_type: EntityType) -> Optional[DomainInfo]: ...
