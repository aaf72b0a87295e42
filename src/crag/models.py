"""
Pydantic models for embedding records and embedding jobs.

These models are the persisted payloads of the embedding store. They are
validated before anything is written, so a malformed vector or a job whose
progress counters overflow never reaches the database.
"""

import random
import string
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)


def utcnow() -> datetime:
    """Timezone-aware current time used for every persisted timestamp."""
    return datetime.now(timezone.utc)


class EntityType(str, Enum):
    """Kind of domain document an embedding belongs to."""
    RULE = "rule"
    REPORT = "report"


class JobType(str, Enum):
    """What a job does with its entities."""
    IMPORT_EXISTING = "import_existing"
    GENERATE_NEW = "generate_new"
    UPDATE_EXISTING = "update_existing"
    BATCH_PROCESS = "batch_process"


class JobStatus(str, Enum):
    """Lifecycle state of an embedding job."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class Priority(str, Enum):
    """Job priority. Higher rank is claimed first."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 3, "medium": 2, "low": 1}[self.value]


class ProcessingMethod(str, Enum):
    """How an embedding record came to exist."""
    AUTO_GENERATED = "auto_generated"
    IMPORTED = "imported_from_existing"
    DIRECT = "direct"


class EmbeddingMetadata(BaseModel):
    """Filterable metadata stored alongside each vector."""
    jurisdiction: Optional[str] = None
    topic_key: Optional[str] = None
    content_length: Optional[int] = Field(default=None, ge=0)
    processing_method: Optional[ProcessingMethod] = None


class EmbeddingRecord(BaseModel):
    """
    One embedded chunk of a rule or report.

    content_hash is the deduplication key: the store keeps at most one
    record per hash and re-embedding the same text updates it in place.
    """
    id: Optional[int] = None
    entity_id: str = Field(min_length=1)
    entity_type: EntityType
    content_hash: str = Field(pattern=r"^[0-9a-f]{64}$")
    content: str = ""
    chunk_index: int = Field(default=0, ge=0)
    total_chunks: int = Field(default=1, ge=1)
    vector: list[float] = Field(min_length=1)
    embedding_model: str = Field(min_length=1)
    dimensions: int = Field(ge=1)
    metadata: EmbeddingMetadata = Field(default_factory=EmbeddingMetadata)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_shape(self) -> "EmbeddingRecord":
        if self.dimensions != len(self.vector):
            raise ValueError(
                f"dimensions={self.dimensions} does not match vector length {len(self.vector)}"
            )
        if self.chunk_index >= self.total_chunks:
            raise ValueError(
                f"chunk_index {self.chunk_index} out of range for {self.total_chunks} chunks"
            )
        return self


class JobProgress(BaseModel):
    """Per-job counters. completed + failed never exceeds total."""
    model_config = ConfigDict(validate_assignment=True)

    total: int = Field(default=0, ge=0)
    completed: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    errors: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_counts(self) -> "JobProgress":
        if self.completed + self.failed > self.total:
            raise ValueError(
                f"completed ({self.completed}) + failed ({self.failed}) exceeds total ({self.total})"
            )
        return self

    @computed_field
    @property
    def processed(self) -> int:
        return self.completed + self.failed

    @computed_field
    @property
    def progress_pct(self) -> float:
        if self.total > 0:
            return round(self.processed / self.total * 100, 1)
        return 0.0


class JobConfig(BaseModel):
    """Tunables carried by each job."""
    batch_size: int = Field(default=50, ge=1, le=1000)
    retry_count: int = Field(default=3, ge=0, le=10)
    priority: Priority = Priority.MEDIUM


class EmbeddingJob(BaseModel):
    """
    A queued unit of embedding work over an ordered list of entities.

    Status moves pending -> processing -> completed | failed. A job that
    fails as a whole with retries left goes through retrying and is
    claimed again once its scheduled_at comes due.
    """
    id: Optional[int] = None
    job_id: str = Field(min_length=1)
    job_type: JobType
    status: JobStatus = JobStatus.PENDING
    entity_ids: list[str] = Field(min_length=1)
    progress: JobProgress = Field(default_factory=JobProgress)
    config: JobConfig = Field(default_factory=JobConfig)
    attempts: int = Field(default=0, ge=0)
    scheduled_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("entity_ids")
    @classmethod
    def _no_blank_ids(cls, v: list[str]) -> list[str]:
        if any(not entity_id.strip() for entity_id in v):
            raise ValueError("entity_ids must not contain blank ids")
        return v

    @property
    def priority(self) -> Priority:
        return self.config.priority

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


_BASE36 = string.digits + string.ascii_lowercase


def generate_job_id(job_type: JobType) -> str:
    """
    Build a unique job id: "{job_type}_{epoch_ms}_{9 random base36 chars}".

    Example:
        >>> generate_job_id(JobType.GENERATE_NEW)
        'generate_new_1760000000000_k3j9x0a1b'
    """
    suffix = "".join(random.choices(_BASE36, k=9))
    return f"{JobType(job_type).value}_{int(time.time() * 1000)}_{suffix}"
