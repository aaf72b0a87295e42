"""
Embedding job manager.

Drives the job lifecycle on top of EmbeddingDatabase:
- create_job: queue entity ids for embedding
- claim_next_jobs: atomically pick up pending (and due retrying) jobs
- process_batch: chunk, embed and store each entity, recording per-entity errors
- complete_job / fail_job: terminal transitions, with bounded retry on failure
- reap: delete old terminal jobs

A failing entity never fails its job; only an exception escaping the
per-entity loop does.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional

from .chunker import DEFAULT_CHUNK_SIZE, Chunk, chunk_text, content_hash
from .database import EmbeddingDatabase
from .embeddings.generator import FALLBACK_MODEL, EmbeddingGenerator, is_fallback_model
from .interfaces import ContentSource, ResolvedContent
from .models import (
    EmbeddingJob,
    EmbeddingMetadata,
    EmbeddingRecord,
    JobConfig,
    JobProgress,
    JobStatus,
    JobType,
    Priority,
    ProcessingMethod,
    generate_job_id,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_JOBS_PER_RUN = 5
DEFAULT_RETENTION_DAYS = 7


class JobNotFoundError(LookupError):
    """Raised when a job id does not exist."""
    pass


class EntityProcessingError(Exception):
    """Raised for a single entity that cannot be embedded."""
    pass


@dataclass
class ProcessingSummary:
    """Outcome of one run_scheduled_processing invocation."""

    jobs_claimed: int = 0
    jobs_completed: int = 0
    jobs_failed: int = 0
    jobs_retrying: int = 0
    entities_completed: int = 0
    entities_failed: int = 0
    job_ids: list[str] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    def to_dict(self) -> dict:
        return {
            "jobs_claimed": self.jobs_claimed,
            "jobs_completed": self.jobs_completed,
            "jobs_failed": self.jobs_failed,
            "jobs_retrying": self.jobs_retrying,
            "entities_completed": self.entities_completed,
            "entities_failed": self.entities_failed,
            "job_ids": self.job_ids,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


class JobManager:
    """
    Queue and run embedding jobs.

    Example:
        manager = JobManager(db, EmbeddingGenerator(provider), catalog)
        job_id = manager.create_job(JobType.GENERATE_NEW, ["california_minimum_wage"])
        summary = await manager.run_scheduled_processing()
        print(manager.get_job(job_id).status)
    """

    def __init__(
        self,
        db: EmbeddingDatabase,
        generator: EmbeddingGenerator,
        source: ContentSource,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        item_delay: float = 0.1,
        batch_delay: float = 2.0,
        retry_backoff: float = 60.0,
        retry_backoff_max: float = 3600.0,
        retention_days: int = DEFAULT_RETENTION_DAYS,
    ):
        """
        Args:
            db: Embedding store holding records and jobs
            generator: Embedding generator (never raises)
            source: Resolves entity ids to embeddable content
            chunk_size: Characters per chunk
            item_delay: Pause between entities, in seconds
            batch_delay: Pause between batches, in seconds
            retry_backoff: Delay before the first retry of a failed job
            retry_backoff_max: Upper bound on the retry delay
            retention_days: Age after which terminal jobs are reaped
        """
        self.db = db
        self.generator = generator
        self.source = source
        self.chunk_size = chunk_size
        self.item_delay = item_delay
        self.batch_delay = batch_delay
        self.retry_backoff = retry_backoff
        self.retry_backoff_max = retry_backoff_max
        self.retention_days = retention_days

    # =========================================================================
    # Queue
    # =========================================================================

    def create_job(
        self,
        job_type: JobType,
        entity_ids: Iterable[str],
        priority: Optional[Priority] = None,
        config: Optional[JobConfig] = None,
    ) -> str:
        """
        Queue a new pending job.

        Args:
            job_type: What to do with the entities
            entity_ids: Ordered, non-empty list of rule/report ids
            priority: Overrides config.priority when given
            config: Batch size, retry count and priority

        Returns:
            The new job id

        Raises:
            ValueError: If entity_ids is empty
        """
        entity_ids = list(entity_ids)
        if not entity_ids:
            raise ValueError("entity_ids must not be empty")

        config = config or JobConfig()
        if priority is not None:
            config = config.model_copy(update={"priority": Priority(priority)})

        job_type = JobType(job_type)
        job = EmbeddingJob(
            job_id=generate_job_id(job_type),
            job_type=job_type,
            entity_ids=entity_ids,
            progress=JobProgress(total=len(entity_ids)),
            config=config,
            scheduled_at=utcnow(),
        )
        self.db.insert_job(job)

        logger.info(
            f"Created {job.job_type.value} job {job.job_id} for {len(entity_ids)} entities "
            f"(priority={config.priority.value})"
        )
        return job.job_id

    def get_job(self, job_id: str) -> EmbeddingJob:
        job = self.db.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 50) -> list[EmbeddingJob]:
        return self.db.list_jobs(status=status, limit=limit)

    def claim_next_jobs(self, max_jobs: int = DEFAULT_MAX_JOBS_PER_RUN) -> list[EmbeddingJob]:
        """
        Claim up to max_jobs jobs, highest priority first, then FIFO.

        Each claim is a conditional update, so a job taken by a concurrent
        claimer in between is skipped rather than run twice.

        Returns:
            Claimed jobs, now in processing status
        """
        now = utcnow()
        claimed = []
        for candidate in self.db.get_claimable_jobs(limit=max_jobs, now=now):
            if not self.db.claim_job(candidate.job_id, now=now):
                logger.debug(f"Job {candidate.job_id} was claimed elsewhere, skipping")
                continue
            job = self.db.get_job(candidate.job_id)
            if job is not None:
                claimed.append(job)
        return claimed

    # =========================================================================
    # Processing
    # =========================================================================

    async def _blocking(self, func, *args):
        """Run a synchronous store or content-source call in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def embed_content(
        self,
        resolved: ResolvedContent,
        processing_method: ProcessingMethod = ProcessingMethod.AUTO_GENERATED,
        chunks: Optional[list[Chunk]] = None,
    ) -> list[int]:
        """
        Chunk, embed and upsert one entity's content.

        Returns:
            Record ids, one per chunk
        """
        chunks = chunks or chunk_text(resolved.content, self.chunk_size)
        record_ids = []
        for chunk in chunks:
            generated = await self.generator.generate(chunk.text)
            record = EmbeddingRecord(
                entity_id=resolved.entity_id,
                entity_type=resolved.entity_type,
                content_hash=content_hash(chunk.text),
                content=chunk.text,
                chunk_index=chunk.index,
                total_chunks=chunk.total,
                vector=generated.vector,
                embedding_model=generated.model,
                dimensions=generated.dimensions,
                metadata=EmbeddingMetadata(
                    jurisdiction=resolved.jurisdiction,
                    topic_key=resolved.topic_key,
                    content_length=len(resolved.content),
                    processing_method=processing_method,
                ),
            )
            record_id, _ = await self._blocking(self.db.upsert_record, record)
            record_ids.append(record_id)
        return record_ids

    def _is_current(self, entity_id: str, chunks: list[Chunk]) -> bool:
        """True if every chunk is already stored from a real (non-fallback) model."""
        stored = {r.content_hash: r for r in self.db.get_by_entity(entity_id)}
        for chunk in chunks:
            record = stored.get(content_hash(chunk.text))
            if record is None or is_fallback_model(record.embedding_model):
                return False
        return True

    async def _process_entity(self, job_type: JobType, entity_id: str) -> None:
        if job_type == JobType.IMPORT_EXISTING:
            if not await self._blocking(self.db.get_by_entity, entity_id):
                raise EntityProcessingError("no imported embedding")
            return

        resolved = await self._blocking(self.source.resolve, entity_id)
        if resolved is None:
            raise EntityProcessingError(f"Entity {entity_id} not found")

        chunks = chunk_text(resolved.content, self.chunk_size)
        if job_type == JobType.UPDATE_EXISTING and await self._blocking(
            self._is_current, entity_id, chunks
        ):
            logger.debug(f"Embeddings for {entity_id} are current, skipping")
            return

        await self.embed_content(resolved, ProcessingMethod.AUTO_GENERATED, chunks=chunks)

    async def process_batch(self, job: EmbeddingJob) -> JobProgress:
        """
        Process every entity of a claimed job in batches of config.batch_size.

        Per-entity failures are counted and recorded in progress.errors as
        "{entity_id}: {message}"; processing carries on with the next entity.
        Progress is written to the store at each batch boundary.

        Args:
            job: Job in processing status

        Returns:
            Final progress of this attempt
        """
        progress = JobProgress(total=len(job.entity_ids), errors=list(job.progress.errors))
        batch_size = job.config.batch_size

        for start in range(0, len(job.entity_ids), batch_size):
            if start > 0 and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)

            batch = job.entity_ids[start : start + batch_size]
            for i, entity_id in enumerate(batch):
                if i > 0 and self.item_delay > 0:
                    await asyncio.sleep(self.item_delay)

                try:
                    await self._process_entity(job.job_type, entity_id)
                    progress.completed += 1
                except Exception as e:
                    logger.warning(f"Job {job.job_id}: failed to process {entity_id}: {e}")
                    progress.failed += 1
                    progress.errors.append(f"{entity_id}: {e}")

            await self._blocking(self.db.update_job_progress, job.job_id, progress)
            logger.debug(
                f"Job {job.job_id}: {progress.processed}/{progress.total} processed "
                f"({progress.failed} failed)"
            )

        return progress

    async def run_job(self, job: EmbeddingJob) -> JobStatus:
        """
        Process a claimed job and move it to its next status.

        Returns:
            COMPLETED, or RETRYING / FAILED if processing raised
        """
        logger.info(f"Starting job {job.job_id} ({job.job_type.value}, {len(job.entity_ids)} entities)")
        try:
            progress = await self.process_batch(job)
        except Exception as e:
            logger.error(f"Job {job.job_id} failed: {e}")
            return await self._blocking(self.fail_job, job.job_id, str(e))

        await self._blocking(self.complete_job, job.job_id)
        logger.info(
            f"Completed job {job.job_id}: {progress.completed} completed, {progress.failed} failed"
        )
        return JobStatus.COMPLETED

    def complete_job(self, job_id: str) -> None:
        """Mark a job completed, even if some of its entities failed."""
        if not self.db.mark_job_completed(job_id, now=utcnow()):
            raise JobNotFoundError(f"Job not found: {job_id}")

    def _retry_delay(self, attempts: int) -> float:
        return min(self.retry_backoff * 2 ** (attempts - 1), self.retry_backoff_max)

    def fail_job(self, job_id: str, error: str, retry: bool = True) -> JobStatus:
        """
        Record a job-level failure.

        While attempts remain under config.retry_count (and retry is True) the
        job goes to retrying with an exponentially growing delay; otherwise
        it is marked failed. The error is kept in progress.errors either way.

        Returns:
            RETRYING or FAILED
        """
        job = self.get_job(job_id)
        errors = job.progress.errors + [error]
        attempts = job.attempts + 1

        if retry and attempts <= job.config.retry_count:
            delay = self._retry_delay(attempts)
            self.db.mark_job_retrying(
                job_id,
                attempts=attempts,
                scheduled_at=utcnow() + timedelta(seconds=delay),
                errors=errors,
            )
            logger.warning(
                f"Job {job_id} will retry in {delay:.0f}s "
                f"(attempt {attempts}/{job.config.retry_count})"
            )
            return JobStatus.RETRYING

        self.db.mark_job_failed(job_id, errors, now=utcnow())
        return JobStatus.FAILED

    async def run_scheduled_processing(
        self,
        max_jobs: int = DEFAULT_MAX_JOBS_PER_RUN,
    ) -> ProcessingSummary:
        """
        Claim up to max_jobs jobs and run them one after another.

        This is the entry point for an external scheduler tick.
        """
        start_time = time.time()
        summary = ProcessingSummary()

        jobs = await self._blocking(self.claim_next_jobs, max_jobs)
        summary.jobs_claimed = len(jobs)
        logger.info(f"Processing {len(jobs)} embedding jobs")

        for job in jobs:
            status = await self.run_job(job)
            summary.job_ids.append(job.job_id)

            if status == JobStatus.COMPLETED:
                summary.jobs_completed += 1
            elif status == JobStatus.RETRYING:
                summary.jobs_retrying += 1
            else:
                summary.jobs_failed += 1

            final = await self._blocking(self.db.get_job, job.job_id)
            if final is not None:
                summary.entities_completed += final.progress.completed
                summary.entities_failed += final.progress.failed

        summary.elapsed_seconds = time.time() - start_time
        return summary

    # =========================================================================
    # Maintenance
    # =========================================================================

    def reap(self, cutoff: Optional[datetime] = None) -> int:
        """
        Delete completed/failed jobs scheduled before the cutoff.

        Args:
            cutoff: Defaults to now minus the retention window

        Returns:
            Number of jobs deleted
        """
        cutoff = cutoff or utcnow() - timedelta(days=self.retention_days)
        deleted = self.db.delete_terminal_jobs_before(cutoff)
        logger.info(f"Reaped {deleted} embedding jobs older than {cutoff.isoformat()}")
        return deleted

    def _has_changed(self, entity_id: str) -> bool:
        stored = self.db.get_by_entity(entity_id)
        if not stored:
            return False
        resolved = self.source.resolve(entity_id)
        if resolved is None:
            return False
        current = {content_hash(c.text) for c in chunk_text(resolved.content, self.chunk_size)}
        return current != {r.content_hash for r in stored}

    def schedule_embedding_updates(
        self,
        candidate_ids: Optional[Iterable[str]] = None,
    ) -> Optional[str]:
        """
        Queue an update_existing job for entities that need re-embedding.

        Picks up every entity with fallback-generated records, plus any of
        candidate_ids whose current content no longer matches what is stored.

        Returns:
            The new job id, or None if nothing needs updating
        """
        entity_ids = self.db.get_entity_ids_for_model(FALLBACK_MODEL)
        seen = set(entity_ids)

        for entity_id in candidate_ids or []:
            if entity_id not in seen and self._has_changed(entity_id):
                entity_ids.append(entity_id)
                seen.add(entity_id)

        if not entity_ids:
            logger.info("No embeddings need updating")
            return None

        job_id = self.create_job(JobType.UPDATE_EXISTING, entity_ids, Priority.MEDIUM)
        logger.info(f"Scheduled embedding update job {job_id} for {len(entity_ids)} entities")
        return job_id

    def get_stats(self) -> dict:
        return {
            "jobs": self.db.get_job_stats(),
            "embeddings": self.db.get_embedding_stats(),
        }
