"""Tests for SourceHydrator and its formatting helpers."""

import pytest

from crag.catalog import ComplianceCatalog
from crag.chunker import chunk_text
from crag.embeddings.hydrator import (
    SNIPPET_LENGTH,
    SourceHydrator,
    default_source_url,
    humanize_topic,
)
from crag.embeddings.models import Match
from crag.interfaces import DomainInfo
from crag.models import EntityType

from .factories import generate_record, generate_rule


class StaticLookup:
    """DomainLookup returning one fixed DomainInfo."""

    def __init__(self, info=None):
        self.info = info
        self.calls = []

    def lookup(self, entity_id, entity_type):
        self.calls.append((entity_id, entity_type))
        return self.info


class BrokenLookup:
    def lookup(self, entity_id, entity_type):
        raise RuntimeError("catalog unavailable")


def _match(similarity=0.9, low_confidence=False, **kwargs) -> Match:
    return Match(record=generate_record(**kwargs), similarity=similarity, low_confidence=low_confidence)


class TestHelpers:
    @pytest.mark.parametrize(
        "key, label",
        [("minimum_wage", "Minimum Wage"), ("overtime", "Overtime"), (None, None), ("", None)],
    )
    def test_humanize_topic(self, key, label):
        assert humanize_topic(key) == label

    def test_default_source_url(self):
        assert default_source_url("California") == "https://www.california.gov/labor/employment"
        assert default_source_url("new_york") == "https://www.newyork.gov/labor/employment"
        assert default_source_url(None) is None
        assert default_source_url("__") is None


class TestSourceHydrator:
    """Tests for hydration from domain info and record metadata."""

    def test_uses_domain_info(self):
        info = DomainInfo(
            source_url="https://dir.ca.gov/wage",
            jurisdiction="california",
            topic_key="minimum_wage",
            topic_label="Minimum Wage",
            overview="The state minimum wage is $16.00.",
            rule_id="california_minimum_wage",
        )
        hydrator = SourceHydrator(StaticLookup(info))

        source = hydrator.hydrate_one(_match(similarity=0.82))

        assert source.source_url == "https://dir.ca.gov/wage"
        assert source.topic_label == "Minimum Wage"
        assert source.snippet == "The state minimum wage is $16.00."
        assert source.similarity == 0.82
        assert source.rule_id == "california_minimum_wage"
        assert source.report_id is None

    def test_without_lookup_uses_record_metadata(self):
        hydrator = SourceHydrator()
        source = hydrator.hydrate_one(
            _match(content="Chunk text about overtime", jurisdiction="texas", topic_key="overtime")
        )

        assert source.snippet == "Chunk text about overtime"
        assert source.jurisdiction == "texas"
        assert source.topic_label == "Overtime"
        assert source.source_url == "https://www.texas.gov/labor/employment"
        assert source.rule_id == "california_minimum_wage"

    def test_report_gets_report_id(self):
        source = SourceHydrator().hydrate_one(
            _match(entity_id="report_9", entity_type=EntityType.REPORT)
        )
        assert source.report_id == "report_9"
        assert source.rule_id is None

    def test_lookup_error_falls_back(self):
        hydrator = SourceHydrator(BrokenLookup())
        source = hydrator.hydrate_one(_match(content="fallback snippet"))
        assert source.snippet == "fallback snippet"
        assert source.jurisdiction == "california"

    def test_snippet_truncated(self):
        source = SourceHydrator().hydrate_one(_match(content="x" * 2000))
        assert len(source.snippet) == SNIPPET_LENGTH

    def test_low_confidence_carried(self):
        source = SourceHydrator().hydrate_one(_match(low_confidence=True))
        assert source.low_confidence is True

    def test_hydrate_keeps_order(self):
        matches = [_match(entity_id=f"rule_{i}", similarity=1 - i / 10) for i in range(3)]
        sources = SourceHydrator().hydrate(matches)
        assert [s.entity_id for s in sources] == ["rule_0", "rule_1", "rule_2"]

    def test_to_dict(self):
        data = SourceHydrator().hydrate_one(_match()).to_dict()
        assert data["entity_type"] == "rule"
        assert set(data) >= {"entity_id", "similarity", "snippet", "source_url", "low_confidence"}


class TestCatalogHydration:
    """Hydration against the seeded compliance catalog."""

    def test_rule(self, catalog: ComplianceCatalog):
        hydrator = SourceHydrator(catalog)
        source = hydrator.hydrate_one(_match(entity_id="texas_overtime", jurisdiction=None, topic_key=None))

        assert source.jurisdiction == "texas"
        assert source.topic_key == "overtime"
        assert source.source_url == "https://www.dir.texas.gov/overtime"
        assert source.rule_id == "texas_overtime"

    def test_rule_snippet_comes_from_matched_chunk(self, catalog: ComplianceCatalog):
        description = "A" * 600 + "MATCHED_PASSAGE" + "B" * 600
        catalog.upsert_rule(generate_rule("oregon", "overtime", "Overtime", description=description))
        chunks = chunk_text(catalog.resolve("oregon_overtime").content)
        matched = next(c for c in chunks if "MATCHED_PASSAGE" in c.text)
        assert matched.index > 0

        hydrator = SourceHydrator(catalog)
        source = hydrator.hydrate_one(
            _match(entity_id="oregon_overtime", content=matched.text, chunk_index=matched.index)
        )

        assert source.snippet == matched.text[:SNIPPET_LENGTH]
        assert "MATCHED_PASSAGE" in source.snippet

    def test_report_prefers_overview(self, catalog: ComplianceCatalog):
        hydrator = SourceHydrator(catalog)
        source = hydrator.hydrate_one(
            _match(entity_id="report_ca_wage", entity_type=EntityType.REPORT, content="chunk")
        )

        assert source.snippet == "California's minimum wage is $16.00 per hour."
        assert source.rule_id == "california_minimum_wage"
        assert source.report_id == "report_ca_wage"
        assert source.source_url == "https://www.dir.california.gov/minimum_wage"

    def test_unknown_entity_uses_metadata(self, catalog: ComplianceCatalog):
        hydrator = SourceHydrator(catalog)
        source = hydrator.hydrate_one(_match(entity_id="ghost_rule", content="ghost"))
        assert source.snippet == "ghost"
        assert source.jurisdiction == "california"
