"""
Tests for RetrievalService: wiring, imports and top-K retrieval.
"""

import asyncio
import threading

import pytest

from crag.config import Settings
from crag.embeddings.generator import FALLBACK_MODEL
from crag.embeddings.models import SearchFilters
from crag.embeddings.search_engine import DimensionMismatchError
from crag.jobs import EntityProcessingError, JobNotFoundError
from crag.models import EntityType, JobConfig, JobStatus, JobType, Priority, ProcessingMethod
from crag.service import ImportedEmbedding, RetrievalService, build_service

from .factories import DIMS, FakeProvider, generate_record, generate_rule, unit_vector


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def keyword_service(settings, catalog) -> RetrievalService:
    """
    Service whose provider maps wage text to axis 0 and overtime text to axis 1.

    Catalog rule content mentions its topic ("minimum wage", "overtime"),
    so embedded rules land on those axes.
    """
    provider = FakeProvider(keywords={"wage": unit_vector(0), "overtime": unit_vector(1)})
    return build_service(settings, provider=provider)


class TestBuildService:
    """Tests for service construction."""

    def test_fallback_only_by_default(self, settings, catalog):
        service = build_service(settings)
        assert service.generator.provider is None
        assert service.generator.model_name == FALLBACK_MODEL
        assert service.generator.dimensions == DIMS

    def test_catalog_is_default_source(self, service: RetrievalService, catalog):
        assert service.source.resolve("texas_overtime") is not None

    def test_pacing_from_settings(self, service: RetrievalService):
        assert service.jobs.item_delay == 0.0
        assert service.jobs.batch_delay == 0.0


class TestJobOperations:
    """Tests for job submission and processing through the service."""

    def test_submit_and_process(self, service: RetrievalService):
        job_id = service.submit_embedding_job(
            JobType.GENERATE_NEW, ["california_minimum_wage", "texas_overtime"], Priority.HIGH
        )

        summary = run(service.run_scheduled_processing())

        assert summary.jobs_completed == 1
        job = service.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.priority == Priority.HIGH
        assert service.db.count_records() == 2

    def test_config_priority_used_without_explicit_priority(self, service: RetrievalService):
        job_id = service.submit_embedding_job(
            JobType.GENERATE_NEW, ["a"], config=JobConfig(priority=Priority.LOW)
        )
        assert service.get_job(job_id).priority == Priority.LOW

    def test_max_jobs_default_from_settings(self, service: RetrievalService):
        for _ in range(service.settings.max_jobs_per_run + 2):
            service.submit_embedding_job(JobType.GENERATE_NEW, ["texas_overtime"])
        summary = run(service.run_scheduled_processing())
        assert summary.jobs_claimed == service.settings.max_jobs_per_run

    def test_get_missing_job(self, service: RetrievalService):
        with pytest.raises(JobNotFoundError):
            service.get_job("nope")

    def test_schedule_updates_uses_catalog(self, service: RetrievalService, catalog):
        service.submit_embedding_job(JobType.GENERATE_NEW, ["new_york_paid_sick_leave"])
        run(service.run_scheduled_processing())
        catalog.upsert_rule(
            generate_rule("new_york", "paid_sick_leave", "Paid Sick Leave", description="Changed.")
        )

        job_id = service.schedule_embedding_updates()
        assert service.get_job(job_id).entity_ids == ["new_york_paid_sick_leave"]

    def test_reap(self, service: RetrievalService):
        assert service.reap_jobs() == 0


class TestEmbedEntity:
    """Tests for direct, queue-less embedding."""

    def test_embed_rule(self, service: RetrievalService):
        record_ids = run(service.embed_entity("texas_overtime"))

        assert len(record_ids) == 1
        record = service.db.get_by_entity("texas_overtime")[0]
        assert record.metadata.processing_method == ProcessingMethod.DIRECT

    def test_unknown_entity(self, service: RetrievalService):
        with pytest.raises(EntityProcessingError):
            run(service.embed_entity("ghost"))


class TestImportEmbeddings:
    """Tests for importing externally generated vectors."""

    def test_import_and_reimport(self, service: RetrievalService):
        item = ImportedEmbedding(
            entity_id="california_minimum_wage",
            entity_type=EntityType.RULE,
            content="Imported text",
            vector=unit_vector(0),
            jurisdiction="california",
        )

        first = service.import_embeddings([item])
        second = service.import_embeddings([item])

        assert (first.imported, first.updated, first.failed) == (1, 0, 0)
        assert (second.imported, second.updated) == (0, 1)

        record = service.db.get_by_entity("california_minimum_wage")[0]
        assert record.embedding_model == "gemini-embedding-001"
        assert record.metadata.processing_method == ProcessingMethod.IMPORTED

    def test_imported_entities_satisfy_import_job(self, service: RetrievalService):
        service.import_embeddings(
            [
                ImportedEmbedding(
                    entity_id="r1", entity_type=EntityType.RULE, content="x", vector=unit_vector(0)
                )
            ]
        )
        job_id = service.submit_embedding_job(JobType.IMPORT_EXISTING, ["r1"])
        run(service.run_scheduled_processing())

        assert service.get_job(job_id).progress.completed == 1

    def test_wrong_dimensions_rejected(self, service: RetrievalService):
        item = ImportedEmbedding(
            entity_id="r1", entity_type=EntityType.RULE, content="x", vector=[1.0] * (DIMS * 2)
        )

        stats = service.import_embeddings([item])

        assert (stats.imported, stats.updated, stats.failed) == (0, 0, 1)
        assert service.db.count_records() == 0
        result = run(service.search_top_k("anything", threshold=0.99))
        assert result.sources == []


class TestSearchTopK:
    """Tests for end-to-end retrieval."""

    def _embed_catalog(self, service: RetrievalService):
        service.submit_embedding_job(
            JobType.GENERATE_NEW, ["california_minimum_wage", "texas_overtime"]
        )
        run(service.run_scheduled_processing())

    def test_returns_hydrated_sources(self, keyword_service: RetrievalService):
        self._embed_catalog(keyword_service)

        result = run(keyword_service.search_top_k("what is the overtime rule?"))

        assert result.degraded is False
        assert [s.entity_id for s in result.sources] == ["texas_overtime"]
        source = result.sources[0]
        assert source.similarity == pytest.approx(1.0)
        assert source.source_url == "https://www.dir.texas.gov/overtime"
        assert source.topic_label == "Overtime"
        assert source.rule_id == "texas_overtime"

    def test_degraded_when_nothing_clears_threshold(self, keyword_service: RetrievalService):
        self._embed_catalog(keyword_service)

        # Neither keyword: default vector is orthogonal to both rules
        result = run(keyword_service.search_top_k("harassment training"))

        assert result.degraded is True
        assert len(result.sources) == 2
        assert all(s.low_confidence for s in result.sources)

    def test_filters(self, keyword_service: RetrievalService):
        self._embed_catalog(keyword_service)

        result = run(
            keyword_service.search_top_k(
                "overtime", filters=SearchFilters(jurisdiction="california"), threshold=0.5
            )
        )

        assert [s.entity_id for s in result.sources] == ["california_minimum_wage"]
        assert result.degraded is True

    def test_empty_store(self, service: RetrievalService):
        result = run(service.search_top_k("anything"))
        assert result.sources == []
        assert result.degraded is False
        assert result.total_candidates == 0

    def test_query_vector_cached(self, keyword_service: RetrievalService):
        provider = keyword_service.generator.provider

        first = run(keyword_service.search_top_k("overtime"))
        second = run(keyword_service.search_top_k("overtime"))

        assert first.cache_hit is False
        assert second.cache_hit is True
        assert provider.calls.count("overtime") == 1

        keyword_service.clear_caches()
        assert run(keyword_service.search_top_k("overtime")).cache_hit is False

    def test_fallback_query_not_cached(self, settings, catalog):
        service = build_service(settings)
        run(service.search_top_k("overtime"))
        assert run(service.search_top_k("overtime")).cache_hit is False

    def test_scoring_runs_off_the_event_loop(self, keyword_service: RetrievalService, monkeypatch):
        loop_thread = threading.get_ident()
        search_threads = []
        real_search = keyword_service.search_engine.search

        def search(*args, **kwargs):
            search_threads.append(threading.get_ident())
            return real_search(*args, **kwargs)

        monkeypatch.setattr(keyword_service.search_engine, "search", search)
        run(keyword_service.search_top_k("overtime"))

        assert len(search_threads) == 1
        assert search_threads[0] != loop_thread

    def test_dimension_mismatch_propagates(self, service: RetrievalService):
        service.db.upsert_record(generate_record("odd", [1.0, 0.0, 0.0]))
        with pytest.raises(DimensionMismatchError):
            run(service.search_top_k("overtime"))


class TestStats:
    def test_stats_shape(self, service: RetrievalService):
        service.submit_embedding_job(JobType.GENERATE_NEW, ["texas_overtime"])
        run(service.run_scheduled_processing())

        stats = service.get_stats()

        assert stats["jobs"]["completed"] == 1
        assert stats["embeddings"]["total_records"] == 1
        assert stats["embedding_model"] == "fake-embed"
        assert stats["dimensions"] == DIMS
        assert stats["catalog"] == {"rules": 3, "reports": 2}


class TestSettings:
    """Tests for environment-driven configuration."""

    def test_env_and_overrides(self, monkeypatch):
        monkeypatch.setenv("CRAG_DB_PATH", "/tmp/from_env.db")
        monkeypatch.setenv("CRAG_EMBEDDING_PROVIDER", "HTTP")
        monkeypatch.setenv("CRAG_CORS_ORIGINS", "https://a.test, https://b.test")
        monkeypatch.setenv("CRAG_RATE_LIMIT_RPM", "7")

        settings = Settings.from_env(db_path="/tmp/override.db", chunk_size=None)

        assert settings.db_path == "/tmp/override.db"
        assert settings.embedding_provider == "http"
        assert settings.cors_origins == ["https://a.test", "https://b.test"]
        assert settings.rate_limit_rpm == 7
        assert settings.chunk_size == 500

    def test_defaults(self, monkeypatch):
        for name in ("CRAG_DB_PATH", "CRAG_EMBEDDING_PROVIDER", "CRAG_CORS_ORIGINS"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings.from_env()
        assert settings.db_path == "data/crag.db"
        assert settings.embedding_provider == "none"
        assert settings.default_threshold == 0.65
        assert settings.cors_origins == ["*"]
