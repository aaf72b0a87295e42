"""
Compliance catalog: the rules and reports that get embedded.

Backs both collaborator protocols the core needs:
- ContentSource: the embeddable text of a rule or report
- DomainLookup: citation fields (source URL, jurisdiction, topic) for hydration

Rules and reports live in their own SQLite tables, which can share a file
with the embedding store.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from .database import SQLiteStore, to_db_time
from .embeddings.hydrator import humanize_topic
from .interfaces import DomainInfo, ResolvedContent
from .models import EntityType, utcnow

logger = logging.getLogger(__name__)

REPORT_CONTENT_LIMIT = 2000

CATALOG_SCHEMA = """
CREATE TABLE IF NOT EXISTS compliance_rules (
    rule_id TEXT PRIMARY KEY,
    rule_name TEXT,
    jurisdiction TEXT NOT NULL,
    topic_key TEXT NOT NULL,
    topic_label TEXT,
    source_url TEXT,
    description TEXT,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS compliance_reports (
    report_id TEXT PRIMARY KEY,
    rule_id TEXT NOT NULL,
    report_content TEXT,
    extracted_sections TEXT,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_reports_rule ON compliance_reports(rule_id);
CREATE INDEX IF NOT EXISTS idx_rules_jurisdiction ON compliance_rules(jurisdiction);
"""


class EntityNotFoundError(LookupError):
    """Raised when a rule or report id is unknown."""
    pass


class ComplianceRule(BaseModel):
    """A jurisdiction's rule on one compliance topic."""
    rule_id: str = Field(min_length=1)
    rule_name: Optional[str] = None
    jurisdiction: str = Field(min_length=1)
    topic_key: str = Field(min_length=1)
    topic_label: Optional[str] = None
    source_url: Optional[str] = None
    description: Optional[str] = None


class ExtractedSections(BaseModel):
    """Structured sections parsed out of a report."""
    overview: Optional[str] = None
    covered_employers: Optional[str] = None
    employer_responsibilities: Optional[str] = None
    training_requirements: Optional[str] = None
    penalties: Optional[str] = None
    sources: Optional[str] = None


class ComplianceReport(BaseModel):
    """A generated report about a rule."""
    report_id: str = Field(min_length=1)
    rule_id: str = Field(min_length=1)
    report_content: Optional[str] = None
    extracted_sections: Optional[ExtractedSections] = None


# Section order and headings used when composing report text
_SECTION_HEADINGS = [
    ("overview", "Overview"),
    ("covered_employers", "Covered Employers"),
    ("employer_responsibilities", "Employer Responsibilities"),
    ("training_requirements", "Training Requirements"),
    ("penalties", "Penalties"),
    ("sources", "Sources"),
]


def split_rule_id(rule_id: str) -> tuple[str, str]:
    """
    Split "california_minimum_wage" into ("california", "minimum_wage").

    Missing parts come back as "unknown".
    """
    parts = rule_id.split("_")
    jurisdiction = parts[0] or "unknown"
    topic_key = "_".join(parts[1:]) or "unknown"
    return jurisdiction, topic_key


def compose_report_content(report: ComplianceReport) -> str:
    """
    Embeddable text for a report.

    Uses the extracted sections when present, else the first 2000 characters
    of the raw report, else a placeholder naming the report.
    """
    content = ""
    if report.extracted_sections:
        for name, heading in _SECTION_HEADINGS:
            value = getattr(report.extracted_sections, name)
            if value:
                content += f"{heading}: {value}\n\n"

    if not content.strip() and report.report_content:
        content = report.report_content[:REPORT_CONTENT_LIMIT]

    return content.strip() or f"Compliance report: {report.report_id}"


def compose_rule_content(rule: ComplianceRule) -> str:
    label = rule.topic_label or humanize_topic(rule.topic_key)
    lines = [f"{rule.rule_name or label} ({rule.jurisdiction})", f"Topic: {label}"]
    if rule.description:
        lines.append("")
        lines.append(rule.description)
    return "\n".join(lines)


class ComplianceCatalog(SQLiteStore):
    """
    SQLite-backed rules and reports.

    Example:
        catalog = ComplianceCatalog("data/crag.db")
        catalog.load_json(Path("data/catalog.json"))
        content = catalog.resolve("california_minimum_wage")
    """

    SCHEMAS = (CATALOG_SCHEMA,)

    # =========================================================================
    # Writes
    # =========================================================================

    def upsert_rule(self, rule: ComplianceRule) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO compliance_rules (
                    rule_id, rule_name, jurisdiction, topic_key, topic_label,
                    source_url, description, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(rule_id) DO UPDATE SET
                    rule_name = excluded.rule_name,
                    jurisdiction = excluded.jurisdiction,
                    topic_key = excluded.topic_key,
                    topic_label = excluded.topic_label,
                    source_url = excluded.source_url,
                    description = excluded.description,
                    updated_at = excluded.updated_at
                """,
                (
                    rule.rule_id,
                    rule.rule_name,
                    rule.jurisdiction,
                    rule.topic_key,
                    rule.topic_label,
                    rule.source_url,
                    rule.description,
                    to_db_time(utcnow()),
                ),
            )

    def upsert_report(self, report: ComplianceReport) -> None:
        sections = (
            report.extracted_sections.model_dump_json() if report.extracted_sections else None
        )
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO compliance_reports (
                    report_id, rule_id, report_content, extracted_sections, updated_at
                ) VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(report_id) DO UPDATE SET
                    rule_id = excluded.rule_id,
                    report_content = excluded.report_content,
                    extracted_sections = excluded.extracted_sections,
                    updated_at = excluded.updated_at
                """,
                (
                    report.report_id,
                    report.rule_id,
                    report.report_content,
                    sections,
                    to_db_time(utcnow()),
                ),
            )

    def load_json(self, path: Path) -> tuple[int, int]:
        """
        Load rules and reports from a JSON file.

        Expected shape: {"rules": [...], "reports": [...]}, fields as in
        ComplianceRule / ComplianceReport.

        Returns:
            Tuple of (rules_loaded, reports_loaded)
        """
        with open(path, encoding="utf-8") as f:
            data = json.load(f)

        rules = [ComplianceRule.model_validate(item) for item in data.get("rules", [])]
        reports = [ComplianceReport.model_validate(item) for item in data.get("reports", [])]

        for rule in rules:
            self.upsert_rule(rule)
        for report in reports:
            self.upsert_report(report)

        logger.info(f"Loaded {len(rules)} rules and {len(reports)} reports from {path}")
        return len(rules), len(reports)

    # =========================================================================
    # Reads
    # =========================================================================

    def get_rule(self, rule_id: str) -> Optional[ComplianceRule]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM compliance_rules WHERE rule_id = ?",
                (rule_id,),
            ).fetchone()
        if not row:
            return None
        return ComplianceRule(
            rule_id=row["rule_id"],
            rule_name=row["rule_name"],
            jurisdiction=row["jurisdiction"],
            topic_key=row["topic_key"],
            topic_label=row["topic_label"],
            source_url=row["source_url"],
            description=row["description"],
        )

    def get_report(self, report_id: str) -> Optional[ComplianceReport]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM compliance_reports WHERE report_id = ?",
                (report_id,),
            ).fetchone()
        if not row:
            return None
        sections = row["extracted_sections"]
        return ComplianceReport(
            report_id=row["report_id"],
            rule_id=row["rule_id"],
            report_content=row["report_content"],
            extracted_sections=ExtractedSections.model_validate_json(sections)
            if sections
            else None,
        )

    def list_entity_ids(self, entity_type: Optional[EntityType] = None) -> list[str]:
        """All rule ids then all report ids (or just one kind)."""
        ids: list[str] = []
        with self._connection() as conn:
            if entity_type in (None, EntityType.RULE):
                ids.extend(
                    row[0]
                    for row in conn.execute("SELECT rule_id FROM compliance_rules ORDER BY rule_id")
                )
            if entity_type in (None, EntityType.REPORT):
                ids.extend(
                    row[0]
                    for row in conn.execute(
                        "SELECT report_id FROM compliance_reports ORDER BY report_id"
                    )
                )
        return ids

    def count(self) -> dict[str, int]:
        with self._connection() as conn:
            rules = conn.execute("SELECT COUNT(*) FROM compliance_rules").fetchone()[0]
            reports = conn.execute("SELECT COUNT(*) FROM compliance_reports").fetchone()[0]
        return {"rules": rules, "reports": reports}

    def _report_context(self, report: ComplianceReport) -> tuple[str, str, Optional[ComplianceRule]]:
        rule = self.get_rule(report.rule_id)
        if rule:
            return rule.jurisdiction, rule.topic_key, rule
        jurisdiction, topic_key = split_rule_id(report.rule_id)
        return jurisdiction, topic_key, None

    # =========================================================================
    # ContentSource / DomainLookup
    # =========================================================================

    def resolve(self, entity_id: str) -> Optional[ResolvedContent]:
        """
        Embeddable content for a rule or report id.

        Rule ids are tried first, then report ids.
        """
        rule = self.get_rule(entity_id)
        if rule:
            return ResolvedContent(
                entity_id=entity_id,
                entity_type=EntityType.RULE,
                content=compose_rule_content(rule),
                jurisdiction=rule.jurisdiction,
                topic_key=rule.topic_key,
            )

        report = self.get_report(entity_id)
        if report:
            jurisdiction, topic_key, _ = self._report_context(report)
            return ResolvedContent(
                entity_id=entity_id,
                entity_type=EntityType.REPORT,
                content=compose_report_content(report),
                jurisdiction=jurisdiction,
                topic_key=topic_key,
            )

        return None

    def lookup(self, entity_id: str, entity_type: EntityType) -> Optional[DomainInfo]:
        """
        Citation fields for a hydrated source.

        A report resolves through its rule for the URL, jurisdiction and
        topic; its overview section becomes the preferred snippet.

        Raises:
            EntityNotFoundError: If no such rule or report exists
        """
        if EntityType(entity_type) == EntityType.RULE:
            rule = self.get_rule(entity_id)
            if rule is None:
                raise EntityNotFoundError(f"Rule not found: {entity_id}")
            return DomainInfo(
                source_url=rule.source_url,
                jurisdiction=rule.jurisdiction,
                topic_key=rule.topic_key,
                topic_label=rule.topic_label,
                rule_id=rule.rule_id,
            )

        report = self.get_report(entity_id)
        if report is None:
            raise EntityNotFoundError(f"Report not found: {entity_id}")

        jurisdiction, topic_key, rule = self._report_context(report)
        overview = report.extracted_sections.overview if report.extracted_sections else None
        return DomainInfo(
            source_url=rule.source_url if rule else None,
            jurisdiction=jurisdiction,
            topic_key=topic_key,
            topic_label=rule.topic_label if rule else None,
            overview=overview,
            rule_id=report.rule_id,
            report_id=report.report_id,
        )
