"""
Retrieval service: the consumer-facing facade over the embedding core.

Wires the store, generator, job manager, search engine and hydrator
together from Settings, and exposes the operations used by the API, the CLI
and the scheduler.

Example:
    service = build_service(Settings.from_env())
    job_id = service.submit_embedding_job(JobType.GENERATE_NEW, ["california_minimum_wage"])
    await service.run_scheduled_processing()
    result = await service.search_top_k("overtime rules in california")
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from functools import partial
from typing import Iterable, Optional

from cachetools import TTLCache
from pydantic import BaseModel, Field

from .catalog import ComplianceCatalog
from .chunker import content_hash
from .config import Settings
from .database import EmbeddingDatabase
from .embeddings.generator import EmbeddingGenerator
from .embeddings.hydrator import SourceHydrator
from .embeddings.models import SearchFilters, TopKResult
from .embeddings.provider import build_provider
from .embeddings.search_engine import SimilaritySearchEngine
from .interfaces import ContentSource, DomainLookup
from .jobs import EntityProcessingError, JobManager, ProcessingSummary
from .models import (
    EmbeddingJob,
    EmbeddingMetadata,
    EmbeddingRecord,
    EntityType,
    JobConfig,
    JobType,
    Priority,
    ProcessingMethod,
)

logger = logging.getLogger(__name__)

IMPORTED_MODEL = "gemini-embedding-001"


class ImportedEmbedding(BaseModel):
    """An externally generated embedding to load into the store."""
    entity_id: str = Field(min_length=1)
    entity_type: EntityType
    content: str
    vector: list[float] = Field(min_length=1)
    embedding_model: str = IMPORTED_MODEL
    jurisdiction: Optional[str] = None
    topic_key: Optional[str] = None


@dataclass
class ImportStats:
    imported: int = 0
    updated: int = 0
    failed: int = 0


class RetrievalService:
    """Operations exposed to consumers of the embedding core."""

    def __init__(
        self,
        db: EmbeddingDatabase,
        jobs: JobManager,
        search_engine: SimilaritySearchEngine,
        hydrator: SourceHydrator,
        generator: EmbeddingGenerator,
        source: Optional[ContentSource] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.jobs = jobs
        self.search_engine = search_engine
        self.hydrator = hydrator
        self.generator = generator
        self.source = source
        self.settings = settings or Settings()

        self._query_cache: TTLCache = TTLCache(
            maxsize=self.settings.query_cache_size,
            ttl=self.settings.query_cache_ttl,
        )

    # =========================================================================
    # Jobs
    # =========================================================================

    def submit_embedding_job(
        self,
        job_type: JobType,
        entity_ids: Iterable[str],
        priority: Optional[Priority] = None,
        config: Optional[JobConfig] = None,
    ) -> str:
        return self.jobs.create_job(job_type, entity_ids, priority=priority, config=config)

    async def run_scheduled_processing(self, max_jobs: Optional[int] = None) -> ProcessingSummary:
        return await self.jobs.run_scheduled_processing(
            max_jobs or self.settings.max_jobs_per_run
        )

    def get_job(self, job_id: str) -> EmbeddingJob:
        return self.jobs.get_job(job_id)

    def schedule_embedding_updates(self) -> Optional[str]:
        """Queue re-embedding of fallback vectors and changed catalog content."""
        candidates = None
        if isinstance(self.source, ComplianceCatalog):
            candidates = self.source.list_entity_ids()
        return self.jobs.schedule_embedding_updates(candidates)

    def reap_jobs(self) -> int:
        return self.jobs.reap()

    # =========================================================================
    # Embedding
    # =========================================================================

    async def embed_entity(self, entity_id: str) -> list[int]:
        """
        Embed one entity immediately, outside the job queue.

        Returns:
            Record ids written

        Raises:
            EntityProcessingError: If the entity cannot be resolved
        """
        if self.source is None:
            raise EntityProcessingError("No content source configured")
        loop = asyncio.get_running_loop()
        resolved = await loop.run_in_executor(None, self.source.resolve, entity_id)
        if resolved is None:
            raise EntityProcessingError(f"Entity {entity_id} not found")
        return await self.jobs.embed_content(resolved, ProcessingMethod.DIRECT)

    def import_embeddings(self, items: Iterable[ImportedEmbedding]) -> ImportStats:
        """
        Load externally generated embeddings as single-chunk records.

        Invalid items, including vectors whose length differs from the
        generator's dimensions, are counted as failed and skipped.
        """
        stats = ImportStats()
        for item in items:
            if len(item.vector) != self.generator.dimensions:
                logger.warning(
                    f"Skipping import of {item.entity_id}: vector has {len(item.vector)} "
                    f"dimensions, expected {self.generator.dimensions}"
                )
                stats.failed += 1
                continue

            try:
                record = EmbeddingRecord(
                    entity_id=item.entity_id,
                    entity_type=item.entity_type,
                    content_hash=content_hash(item.content),
                    content=item.content,
                    vector=item.vector,
                    embedding_model=item.embedding_model,
                    dimensions=len(item.vector),
                    metadata=EmbeddingMetadata(
                        jurisdiction=item.jurisdiction,
                        topic_key=item.topic_key,
                        content_length=len(item.content),
                        processing_method=ProcessingMethod.IMPORTED,
                    ),
                )
                _, is_new = self.db.upsert_record(record)
            except ValueError as e:
                logger.warning(f"Skipping import of {item.entity_id}: {e}")
                stats.failed += 1
                continue

            if is_new:
                stats.imported += 1
            else:
                stats.updated += 1

        logger.info(
            f"Imported {stats.imported} embeddings ({stats.updated} updated, {stats.failed} failed)"
        )
        return stats

    # =========================================================================
    # Search
    # =========================================================================

    async def _query_vector(self, query: str) -> tuple[list[float], bool]:
        cache_key = f"query:{query}"
        cached = self._query_cache.get(cache_key)
        if cached is not None:
            return cached, True

        generated = await self.generator.generate(query)
        # Fallback vectors are not cached so a recovered provider is used next time
        if not generated.is_fallback:
            self._query_cache[cache_key] = generated.vector
        return generated.vector, False

    async def search_top_k(
        self,
        query: str,
        k: Optional[int] = None,
        threshold: Optional[float] = None,
        filters: Optional[SearchFilters] = None,
    ) -> TopKResult:
        """
        Embed a query, rank stored records and hydrate the best matches.

        Args:
            query: Natural-language question
            k: Maximum sources returned (default from settings)
            threshold: Minimum similarity (default from settings)
            filters: Entity type / jurisdiction / topic filters

        Returns:
            TopKResult; degraded is True when only low-confidence sources were found
        """
        start_time = time.time()
        k = k if k is not None else self.settings.default_top_k
        threshold = threshold if threshold is not None else self.settings.default_threshold

        vector, cache_hit = await self._query_vector(query)

        # Store reads and scoring are blocking; keep them off the event loop
        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(
            None, partial(self.search_engine.search, vector, filters, k=k, threshold=threshold)
        )
        sources = await loop.run_in_executor(None, self.hydrator.hydrate, response.matches)

        return TopKResult(
            query=query,
            sources=sources,
            degraded=response.degraded,
            total_candidates=response.total_candidates,
            search_time_ms=(time.time() - start_time) * 1000,
            cache_hit=cache_hit,
        )

    def clear_caches(self) -> None:
        self._query_cache.clear()

    # =========================================================================
    # Stats
    # =========================================================================

    def get_stats(self) -> dict:
        stats = self.jobs.get_stats()
        stats["embedding_model"] = self.generator.model_name
        stats["dimensions"] = self.generator.dimensions
        stats["query_cache_size"] = len(self._query_cache)
        if isinstance(self.source, ComplianceCatalog):
            stats["catalog"] = self.source.count()
        return stats


def build_service(
    settings: Optional[Settings] = None,
    provider=None,
    source: Optional[ContentSource] = None,
    lookup: Optional[DomainLookup] = None,
) -> RetrievalService:
    """
    Construct a RetrievalService and its collaborators.

    The compliance catalog in the same database file is used as content
    source and domain lookup unless others are passed in.

    Args:
        settings: Configuration (defaults to Settings.from_env())
        provider: Embedding provider override (defaults to build_provider(settings))
        source: ContentSource override
        lookup: DomainLookup override
    """
    settings = settings or Settings.from_env()
    db = EmbeddingDatabase(settings.db_path)

    if source is None or lookup is None:
        catalog = ComplianceCatalog(settings.db_path)
        source = source or catalog
        lookup = lookup or catalog

    if provider is None:
        provider = build_provider(settings)
    generator = EmbeddingGenerator(provider=provider, dimensions=settings.embedding_dimensions)

    jobs = JobManager(
        db=db,
        generator=generator,
        source=source,
        chunk_size=settings.chunk_size,
        item_delay=settings.item_delay_seconds,
        batch_delay=settings.batch_delay_seconds,
        retry_backoff=settings.retry_backoff_seconds,
        retry_backoff_max=settings.retry_backoff_max_seconds,
        retention_days=settings.job_retention_days,
    )

    logger.info(
        f"Retrieval service ready (db={settings.db_path}, model={generator.model_name}, "
        f"dimensions={generator.dimensions})"
    )

    return RetrievalService(
        db=db,
        jobs=jobs,
        search_engine=SimilaritySearchEngine(db),
        hydrator=SourceHydrator(lookup),
        generator=generator,
        source=source,
        settings=settings,
    )
