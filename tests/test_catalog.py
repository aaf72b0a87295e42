"""
Tests for ComplianceCatalog.

These tests verify:
- Loading rules and reports from JSON
- Composition of embeddable content
- ContentSource.resolve and DomainLookup.lookup behavior
"""

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from crag.catalog import (
    ComplianceCatalog,
    EntityNotFoundError,
    compose_report_content,
    compose_rule_content,
    split_rule_id,
)
from crag.models import EntityType

from .factories import generate_report, generate_rule


class TestSplitRuleId:
    @pytest.mark.parametrize(
        "rule_id, expected",
        [
            ("california_minimum_wage", ("california", "minimum_wage")),
            ("texas_overtime", ("texas", "overtime")),
            ("federal", ("federal", "unknown")),
            ("_orphan", ("unknown", "orphan")),
        ],
    )
    def test_split(self, rule_id, expected):
        assert split_rule_id(rule_id) == expected


class TestComposeContent:
    """Tests for embeddable text composition."""

    def test_report_sections_in_order(self):
        report = generate_report(
            overview="Overview text.",
            penalties="Fines up to $500.",
            covered_employers="All employers.",
        )
        content = compose_report_content(report)

        assert content == (
            "Overview: Overview text.\n\n"
            "Covered Employers: All employers.\n\n"
            "Penalties: Fines up to $500."
        )

    def test_report_raw_content_truncated(self):
        report = generate_report(overview=None, report_content="r" * 5000)
        assert compose_report_content(report) == "r" * 2000

    def test_report_placeholder(self):
        report = generate_report(report_id="report_empty", overview=None)
        assert compose_report_content(report) == "Compliance report: report_empty"

    def test_empty_sections_fall_through_to_raw(self):
        report = generate_report(overview="", report_content="raw body")
        assert compose_report_content(report) == "raw body"

    def test_rule_content(self):
        rule = generate_rule(description="Pay at least $16.00 per hour.")
        content = compose_rule_content(rule)

        assert content.startswith("California Minimum Wage (california)")
        assert "Topic: Minimum Wage" in content
        assert content.endswith("Pay at least $16.00 per hour.")


class TestLoadJson:
    """Tests for ComplianceCatalog.load_json."""

    def test_load_counts(self, temp_db_path: Path, catalog_file: Path):
        catalog = ComplianceCatalog(str(temp_db_path))
        assert catalog.load_json(catalog_file) == (3, 2)
        assert catalog.count() == {"rules": 3, "reports": 2}

    def test_reload_is_upsert(self, catalog: ComplianceCatalog, catalog_file: Path):
        catalog.load_json(catalog_file)
        assert catalog.count() == {"rules": 3, "reports": 2}

    def test_invalid_rule_rejected(self, temp_dir: Path, temp_db_path: Path):
        path = temp_dir / "bad.json"
        path.write_text(json.dumps({"rules": [{"rule_id": "x"}]}), encoding="utf-8")
        with pytest.raises(ValidationError):
            ComplianceCatalog(str(temp_db_path)).load_json(path)

    def test_upsert_updates_rule(self, catalog: ComplianceCatalog):
        catalog.upsert_rule(generate_rule("texas", "overtime", description="Updated text."))
        assert catalog.get_rule("texas_overtime").description == "Updated text."

    def test_list_entity_ids(self, catalog: ComplianceCatalog):
        assert catalog.list_entity_ids() == [
            "california_minimum_wage",
            "new_york_paid_sick_leave",
            "texas_overtime",
            "report_ca_wage",
            "report_tx_ot",
        ]
        assert catalog.list_entity_ids(EntityType.REPORT) == ["report_ca_wage", "report_tx_ot"]


class TestResolve:
    """Tests for the ContentSource side of the catalog."""

    def test_rule(self, catalog: ComplianceCatalog):
        resolved = catalog.resolve("texas_overtime")
        assert resolved.entity_type == EntityType.RULE
        assert resolved.jurisdiction == "texas"
        assert resolved.topic_key == "overtime"
        assert "Overtime" in resolved.content

    def test_report_inherits_rule_metadata(self, catalog: ComplianceCatalog):
        resolved = catalog.resolve("report_ca_wage")
        assert resolved.entity_type == EntityType.REPORT
        assert resolved.jurisdiction == "california"
        assert resolved.topic_key == "minimum_wage"
        assert resolved.content.startswith("Overview: California's minimum wage")
        assert "Penalties: Back pay" in resolved.content

    def test_report_with_unknown_rule_splits_id(self, catalog: ComplianceCatalog):
        catalog.upsert_report(generate_report("report_orphan", "oregon_meal_breaks"))
        resolved = catalog.resolve("report_orphan")
        assert resolved.jurisdiction == "oregon"
        assert resolved.topic_key == "meal_breaks"

    def test_unknown(self, catalog: ComplianceCatalog):
        assert catalog.resolve("nope") is None


class TestLookup:
    """Tests for the DomainLookup side of the catalog."""

    def test_rule(self, catalog: ComplianceCatalog):
        info = catalog.lookup("california_minimum_wage", EntityType.RULE)
        assert info.source_url == "https://www.dir.california.gov/minimum_wage"
        assert info.topic_label == "Minimum Wage"
        assert info.rule_id == "california_minimum_wage"
        assert info.overview is None

    def test_report_without_overview(self, catalog: ComplianceCatalog):
        info = catalog.lookup("report_tx_ot", EntityType.REPORT)
        assert info.overview is None
        assert info.jurisdiction == "texas"
        assert info.report_id == "report_tx_ot"

    def test_missing_raises(self, catalog: ComplianceCatalog):
        with pytest.raises(EntityNotFoundError):
            catalog.lookup("nope", EntityType.RULE)
        with pytest.raises(EntityNotFoundError):
            catalog.lookup("nope", EntityType.REPORT)
