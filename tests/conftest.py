"""
Shared pytest fixtures for all tests.

This module provides reusable fixtures for:
- Temporary directories and databases
- A compliance catalog seeded with sample rules and reports
- Fake embedding providers with controllable vectors
- A job manager and retrieval service wired with zero pacing

Fixtures are composable: `manager` builds on `db`, `generator` and
`catalog`; `service` uses its own settings on the same database file.
"""

import json
import tempfile
from pathlib import Path
from typing import Generator

import pytest

from crag.catalog import ComplianceCatalog
from crag.config import Settings
from crag.database import EmbeddingDatabase
from crag.embeddings.generator import EmbeddingGenerator
from crag.jobs import JobManager
from crag.service import RetrievalService, build_service

from .factories import DIMS, FakeProvider, catalog_payload


# =============================================================================
# Basic Fixtures
# =============================================================================


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Provide a temporary directory for test files.

    The directory is automatically cleaned up after the test completes.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_db_path(temp_dir: Path) -> Path:
    """Path for a temporary test database."""
    return temp_dir / "test_crag.db"


@pytest.fixture
def catalog_file(temp_dir: Path) -> Path:
    """JSON catalog file with three rules and two reports."""
    path = temp_dir / "catalog.json"
    path.write_text(json.dumps(catalog_payload()), encoding="utf-8")
    return path


# =============================================================================
# Store Fixtures
# =============================================================================


@pytest.fixture
def db(temp_db_path: Path) -> EmbeddingDatabase:
    """Empty embedding store."""
    return EmbeddingDatabase(str(temp_db_path))


@pytest.fixture
def catalog(temp_db_path: Path, catalog_file: Path) -> ComplianceCatalog:
    """
    Catalog sharing the store's database file, seeded with:
    - rules california_minimum_wage, texas_overtime, new_york_paid_sick_leave
    - reports report_ca_wage (sections) and report_tx_ot (raw content only)
    """
    catalog = ComplianceCatalog(str(temp_db_path))
    catalog.load_json(catalog_file)
    return catalog


# =============================================================================
# Embedding Fixtures
# =============================================================================


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def generator(fake_provider: FakeProvider) -> EmbeddingGenerator:
    """Generator backed by the fake provider (DIMS-length vectors)."""
    return EmbeddingGenerator(provider=fake_provider)


@pytest.fixture
def fallback_generator() -> EmbeddingGenerator:
    """Generator with no provider: every vector is a fallback."""
    return EmbeddingGenerator(dimensions=DIMS)


@pytest.fixture
def manager(
    db: EmbeddingDatabase,
    generator: EmbeddingGenerator,
    catalog: ComplianceCatalog,
) -> JobManager:
    """Job manager with no pacing delays."""
    return JobManager(db, generator, catalog, item_delay=0, batch_delay=0)


# =============================================================================
# Service Fixtures
# =============================================================================


@pytest.fixture
def settings(temp_db_path: Path) -> Settings:
    return Settings(
        db_path=str(temp_db_path),
        embedding_dimensions=DIMS,
        item_delay_seconds=0.0,
        batch_delay_seconds=0.0,
    )


@pytest.fixture
def service(
    settings: Settings,
    catalog: ComplianceCatalog,
    fake_provider: FakeProvider,
) -> RetrievalService:
    """Retrieval service over the seeded catalog, using the fake provider."""
    return build_service(settings, provider=fake_provider)
