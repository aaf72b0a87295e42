"""
SQLite embedding store.

Holds two collections:
- embedding_records: one row per embedded chunk, deduplicated by content hash
- embedding_jobs: the embedding job queue and its progress counters

Vectors are stored as float32 blobs. Every payload is validated through the
pydantic models in crag.models before it is written.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

import numpy as np

from .models import (
    EmbeddingJob,
    EmbeddingMetadata,
    EmbeddingRecord,
    EntityType,
    JobProgress,
    JobStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

# Hard cap on a single page read, regardless of the requested limit
MAX_PAGE_SIZE = 200

RECORDS_SCHEMA = """
CREATE TABLE IF NOT EXISTS embedding_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    content_hash TEXT UNIQUE NOT NULL,
    content TEXT,
    chunk_index INTEGER DEFAULT 0,
    total_chunks INTEGER DEFAULT 1,
    embedding_blob BLOB NOT NULL,
    embedding_model TEXT NOT NULL,
    dimensions INTEGER NOT NULL,
    jurisdiction TEXT,
    topic_key TEXT,
    content_length INTEGER,
    processing_method TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_records_entity ON embedding_records(entity_id);
CREATE INDEX IF NOT EXISTS idx_records_type ON embedding_records(entity_type);
CREATE INDEX IF NOT EXISTS idx_records_model ON embedding_records(embedding_model);
"""

JOBS_SCHEMA = """
CREATE TABLE IF NOT EXISTS embedding_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT UNIQUE NOT NULL,
    job_type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    priority TEXT NOT NULL DEFAULT 'medium',
    priority_rank INTEGER NOT NULL DEFAULT 2,
    entity_ids TEXT NOT NULL,
    progress_total INTEGER NOT NULL DEFAULT 0,
    progress_completed INTEGER NOT NULL DEFAULT 0,
    progress_failed INTEGER NOT NULL DEFAULT 0,
    progress_errors TEXT NOT NULL DEFAULT '[]',
    batch_size INTEGER NOT NULL DEFAULT 50,
    retry_count INTEGER NOT NULL DEFAULT 3,
    attempts INTEGER NOT NULL DEFAULT 0,
    scheduled_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_status ON embedding_jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_claim ON embedding_jobs(status, priority_rank, scheduled_at);
CREATE INDEX IF NOT EXISTS idx_jobs_scheduled ON embedding_jobs(scheduled_at);
"""

# Statuses a claimer may pick up. Retrying jobs only once scheduled_at is due.
_CLAIMABLE_WHERE = "(status = 'pending' OR (status = 'retrying' AND scheduled_at <= ?))"


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC ISO string, so text comparison orders correctly."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteStore:
    """Shared connection handling for the SQLite-backed stores."""

    SCHEMAS: tuple[str, ...] = ()

    def __init__(self, db_path: str = "data/crag.db"):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database connections."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            for schema in self.SCHEMAS:
                conn.executescript(schema)
        logger.debug(f"Database schema ensured at {self.db_path}")


class EmbeddingDatabase(SQLiteStore):
    """
    Store for embedding records and embedding jobs.

    Example:
        db = EmbeddingDatabase("data/crag.db")
        record_id, is_new = db.upsert_record(record)
        chunks = db.get_by_entity("california_minimum_wage")
    """

    SCHEMAS = (RECORDS_SCHEMA, JOBS_SCHEMA)

    # =========================================================================
    # Embedding records
    # =========================================================================

    def upsert_record(self, record: EmbeddingRecord) -> tuple[int, bool]:
        """
        Insert a record, or overwrite the vector of the record with the same hash.

        Only the vector, model tag, dimensions and updated_at change on
        conflict. The entity, chunk position and created_at of the first
        writer are kept.

        Args:
            record: Validated embedding record

        Returns:
            Tuple of (record_id, is_new)
        """
        record = EmbeddingRecord.model_validate(record.model_dump())
        blob = np.asarray(record.vector, dtype=np.float32).tobytes()
        now = to_db_time(utcnow())
        meta = record.metadata

        with self._connection() as conn:
            existing = conn.execute(
                "SELECT id FROM embedding_records WHERE content_hash = ?",
                (record.content_hash,),
            ).fetchone()

            conn.execute(
                """
                INSERT INTO embedding_records (
                    entity_id, entity_type, content_hash, content, chunk_index,
                    total_chunks, embedding_blob, embedding_model, dimensions,
                    jurisdiction, topic_key, content_length, processing_method,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(content_hash) DO UPDATE SET
                    embedding_blob = excluded.embedding_blob,
                    embedding_model = excluded.embedding_model,
                    dimensions = excluded.dimensions,
                    updated_at = excluded.updated_at
                """,
                (
                    record.entity_id,
                    record.entity_type.value,
                    record.content_hash,
                    record.content,
                    record.chunk_index,
                    record.total_chunks,
                    blob,
                    record.embedding_model,
                    record.dimensions,
                    meta.jurisdiction,
                    meta.topic_key,
                    meta.content_length,
                    meta.processing_method.value if meta.processing_method else None,
                    now,
                    now,
                ),
            )

            row = conn.execute(
                "SELECT id FROM embedding_records WHERE content_hash = ?",
                (record.content_hash,),
            ).fetchone()

        return row["id"], existing is None

    def _row_to_record(self, row: sqlite3.Row) -> EmbeddingRecord:
        vector = np.frombuffer(row["embedding_blob"], dtype=np.float32)
        return EmbeddingRecord(
            id=row["id"],
            entity_id=row["entity_id"],
            entity_type=row["entity_type"],
            content_hash=row["content_hash"],
            content=row["content"] or "",
            chunk_index=row["chunk_index"],
            total_chunks=row["total_chunks"],
            vector=vector.tolist(),
            embedding_model=row["embedding_model"],
            dimensions=row["dimensions"],
            metadata=EmbeddingMetadata(
                jurisdiction=row["jurisdiction"],
                topic_key=row["topic_key"],
                content_length=row["content_length"],
                processing_method=row["processing_method"],
            ),
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )

    def get_record_by_hash(self, content_hash: str) -> Optional[EmbeddingRecord]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM embedding_records WHERE content_hash = ?",
                (content_hash,),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def get_by_entity(self, entity_id: str) -> list[EmbeddingRecord]:
        """
        All chunks stored for an entity, ordered by chunk_index.

        Args:
            entity_id: Rule or report id

        Returns:
            List of records (empty if the entity was never embedded)
        """
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM embedding_records
                WHERE entity_id = ?
                ORDER BY chunk_index, id
                """,
                (entity_id,),
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def get_page(
        self,
        limit: int = 100,
        entity_type: Optional[EntityType] = None,
        jurisdiction: Optional[str] = None,
        topic_key: Optional[str] = None,
    ) -> list[EmbeddingRecord]:
        """
        Read a bounded page of records in insertion order.

        The page is taken first and jurisdiction/topic filters are applied
        to it afterwards, so a filtered read can return fewer rows than
        match in the whole corpus.

        Args:
            limit: Page size, capped at MAX_PAGE_SIZE
            entity_type: Restrict to rules or reports
            jurisdiction: Keep only records with this jurisdiction
            topic_key: Keep only records with this topic

        Returns:
            List of matching records from the page
        """
        limit = max(0, min(limit, MAX_PAGE_SIZE))
        if limit == 0:
            return []

        with self._connection() as conn:
            if entity_type is not None:
                rows = conn.execute(
                    "SELECT * FROM embedding_records WHERE entity_type = ? ORDER BY id LIMIT ?",
                    (EntityType(entity_type).value, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM embedding_records ORDER BY id LIMIT ?",
                    (limit,),
                ).fetchall()

        records = [self._row_to_record(row) for row in rows]
        if jurisdiction is not None:
            records = [r for r in records if r.metadata.jurisdiction == jurisdiction]
        if topic_key is not None:
            records = [r for r in records if r.metadata.topic_key == topic_key]
        return records

    def count_records(self, entity_type: Optional[EntityType] = None) -> int:
        with self._connection() as conn:
            if entity_type is not None:
                row = conn.execute(
                    "SELECT COUNT(*) FROM embedding_records WHERE entity_type = ?",
                    (EntityType(entity_type).value,),
                ).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) FROM embedding_records").fetchone()
        return row[0]

    def get_entity_ids_for_model(self, model: str) -> list[str]:
        """Distinct entity ids that have at least one record from this model."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT entity_id, MIN(id) AS first_id FROM embedding_records
                WHERE embedding_model = ?
                GROUP BY entity_id
                ORDER BY first_id
                """,
                (model,),
            ).fetchall()
        return [row["entity_id"] for row in rows]

    def get_embedding_stats(self) -> dict:
        """
        Record counts by entity type and by embedding model.

        Returns:
            Dict with total, by_type, by_model and entity count
        """
        with self._connection() as conn:
            by_type = {
                row[0]: row[1]
                for row in conn.execute(
                    "SELECT entity_type, COUNT(*) FROM embedding_records GROUP BY entity_type"
                )
            }
            by_model = {
                row[0]: row[1]
                for row in conn.execute(
                    "SELECT embedding_model, COUNT(*) FROM embedding_records GROUP BY embedding_model"
                )
            }
            entities = conn.execute(
                "SELECT COUNT(DISTINCT entity_id) FROM embedding_records"
            ).fetchone()[0]

        return {
            "total_records": sum(by_type.values()),
            "total_entities": entities,
            "by_type": by_type,
            "by_model": by_model,
        }

    def delete_records_for_model(self, model: str) -> int:
        """
        Delete every record produced by a model.

        Useful when retiring an embedding model or purging fallback vectors.

        Returns:
            Number of records deleted
        """
        with self._connection() as conn:
            cursor = conn.execute(
                "DELETE FROM embedding_records WHERE embedding_model = ?",
                (model,),
            )
            return cursor.rowcount

    def delete_records_for_entity(self, entity_id: str) -> int:
        with self._connection() as conn:
            cursor = conn.execute(
                "DELETE FROM embedding_records WHERE entity_id = ?",
                (entity_id,),
            )
            return cursor.rowcount

    # =========================================================================
    # Embedding jobs
    # =========================================================================

    def insert_job(self, job: EmbeddingJob) -> int:
        """
        Persist a new job.

        Args:
            job: Validated job (usually pending)

        Returns:
            Row id of the inserted job
        """
        job = EmbeddingJob.model_validate(job.model_dump())
        with self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO embedding_jobs (
                    job_id, job_type, status, priority, priority_rank, entity_ids,
                    progress_total, progress_completed, progress_failed, progress_errors,
                    batch_size, retry_count, attempts, scheduled_at, started_at, completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.job_id,
                    job.job_type.value,
                    job.status.value,
                    job.config.priority.value,
                    job.config.priority.rank,
                    json.dumps(job.entity_ids),
                    job.progress.total,
                    job.progress.completed,
                    job.progress.failed,
                    json.dumps(job.progress.errors),
                    job.config.batch_size,
                    job.config.retry_count,
                    job.attempts,
                    to_db_time(job.scheduled_at),
                    to_db_time(job.started_at),
                    to_db_time(job.completed_at),
                ),
            )
            return cursor.lastrowid

    def _row_to_job(self, row: sqlite3.Row) -> EmbeddingJob:
        return EmbeddingJob(
            id=row["id"],
            job_id=row["job_id"],
            job_type=row["job_type"],
            status=row["status"],
            entity_ids=json.loads(row["entity_ids"]),
            progress={
                "total": row["progress_total"],
                "completed": row["progress_completed"],
                "failed": row["progress_failed"],
                "errors": json.loads(row["progress_errors"]),
            },
            config={
                "batch_size": row["batch_size"],
                "retry_count": row["retry_count"],
                "priority": row["priority"],
            },
            attempts=row["attempts"],
            scheduled_at=from_db_time(row["scheduled_at"]),
            started_at=from_db_time(row["started_at"]),
            completed_at=from_db_time(row["completed_at"]),
        )

    def get_job(self, job_id: str) -> Optional[EmbeddingJob]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM embedding_jobs WHERE job_id = ?",
                (job_id,),
            ).fetchone()
        return self._row_to_job(row) if row else None

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        limit: int = 50,
    ) -> list[EmbeddingJob]:
        """
        List jobs, most recently scheduled first.

        Args:
            status: Filter by status
            limit: Maximum jobs returned
        """
        with self._connection() as conn:
            if status is not None:
                rows = conn.execute(
                    """
                    SELECT * FROM embedding_jobs
                    WHERE status = ?
                    ORDER BY scheduled_at DESC, id DESC
                    LIMIT ?
                    """,
                    (JobStatus(status).value, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM embedding_jobs ORDER BY scheduled_at DESC, id DESC LIMIT ?",
                    (limit,),
                ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def get_claimable_jobs(self, limit: int, now: Optional[datetime] = None) -> list[EmbeddingJob]:
        """
        Jobs ready to run, highest priority first, then oldest scheduled_at.

        Args:
            limit: Maximum jobs returned
            now: Reference time for due retrying jobs
        """
        now_str = to_db_time(now or utcnow())
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM embedding_jobs
                WHERE {_CLAIMABLE_WHERE}
                ORDER BY priority_rank DESC, scheduled_at ASC, id ASC
                LIMIT ?
                """,
                (now_str, limit),
            ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def claim_job(self, job_id: str, now: Optional[datetime] = None) -> bool:
        """
        Atomically move a claimable job to processing.

        Progress counters are reset for the new attempt; errors from earlier
        attempts are kept.

        Returns:
            True if this caller won the claim, False if the job was not claimable
        """
        now_str = to_db_time(now or utcnow())
        with self._connection() as conn:
            cursor = conn.execute(
                f"""
                UPDATE embedding_jobs
                SET status = 'processing',
                    started_at = ?,
                    progress_completed = 0,
                    progress_failed = 0
                WHERE job_id = ? AND {_CLAIMABLE_WHERE}
                """,
                (now_str, job_id, now_str),
            )
            return cursor.rowcount == 1

    def update_job_progress(self, job_id: str, progress: JobProgress) -> None:
        """Persist progress counters. Counts are clamped to the job's total."""
        progress = JobProgress.model_validate(progress.model_dump())
        with self._connection() as conn:
            conn.execute(
                """
                UPDATE embedding_jobs
                SET progress_completed = MIN(?, progress_total),
                    progress_failed = MIN(?, progress_total - MIN(?, progress_total)),
                    progress_errors = ?
                WHERE job_id = ?
                """,
                (
                    progress.completed,
                    progress.failed,
                    progress.completed,
                    json.dumps(progress.errors),
                    job_id,
                ),
            )

    def mark_job_completed(self, job_id: str, now: Optional[datetime] = None) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                """
                UPDATE embedding_jobs
                SET status = 'completed', completed_at = ?
                WHERE job_id = ?
                """,
                (to_db_time(now or utcnow()), job_id),
            )
            return cursor.rowcount == 1

    def mark_job_failed(
        self,
        job_id: str,
        errors: list[str],
        now: Optional[datetime] = None,
    ) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                """
                UPDATE embedding_jobs
                SET status = 'failed', progress_errors = ?, completed_at = ?
                WHERE job_id = ?
                """,
                (json.dumps(errors), to_db_time(now or utcnow()), job_id),
            )
            return cursor.rowcount == 1

    def mark_job_retrying(
        self,
        job_id: str,
        attempts: int,
        scheduled_at: datetime,
        errors: list[str],
    ) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                """
                UPDATE embedding_jobs
                SET status = 'retrying', attempts = ?, scheduled_at = ?, progress_errors = ?
                WHERE job_id = ?
                """,
                (attempts, to_db_time(scheduled_at), json.dumps(errors), job_id),
            )
            return cursor.rowcount == 1

    def delete_terminal_jobs_before(self, cutoff: datetime) -> int:
        """
        Delete completed and failed jobs scheduled before the cutoff.

        Returns:
            Number of jobs deleted
        """
        with self._connection() as conn:
            cursor = conn.execute(
                """
                DELETE FROM embedding_jobs
                WHERE status IN ('completed', 'failed') AND scheduled_at < ?
                """,
                (to_db_time(cutoff),),
            )
            return cursor.rowcount

    def get_job_stats(self) -> dict[str, int]:
        """Job counts keyed by status (every status present, zero if none)."""
        counts = {status.value: 0 for status in JobStatus}
        with self._connection() as conn:
            for row in conn.execute(
                "SELECT status, COUNT(*) FROM embedding_jobs GROUP BY status"
            ):
                counts[row[0]] = row[1]
        return counts
