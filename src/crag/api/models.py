"""
API request/response models for the compliance retrieval API.

These models sit at the HTTP boundary. The core uses plain dataclasses and
its own pydantic payloads internally (crag.embeddings.models, crag.models);
this module validates input and translates between the two.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from ..embeddings.models import (
    HydratedSource,
    SearchFilters,
    TopKResult,
)
from ..jobs import ProcessingSummary
from ..models import EmbeddingJob, EntityType, JobConfig, JobStatus, JobType, Priority


# =============================================================================
# Request Models
# =============================================================================


class JobCreateRequest(BaseModel):
    """Request to queue an embedding job."""

    job_type: JobType = Field(JobType.GENERATE_NEW, description="What to do with the entities")
    entity_ids: list[str] = Field(
        ..., min_length=1, max_length=10000, description="Rule or report ids, in processing order"
    )
    priority: Priority = Field(Priority.MEDIUM, description="'high', 'medium' or 'low'")
    batch_size: int = Field(50, ge=1, le=1000, description="Entities per progress checkpoint")
    retry_count: int = Field(3, ge=0, le=10, description="Job-level retries before failing")

    @field_validator("entity_ids")
    @classmethod
    def strip_ids(cls, v: list[str]) -> list[str]:
        ids = [entity_id.strip() for entity_id in v]
        if any(not entity_id for entity_id in ids):
            raise ValueError("entity_ids must not contain blank ids")
        return ids

    def to_config(self) -> JobConfig:
        return JobConfig(
            batch_size=self.batch_size,
            retry_count=self.retry_count,
            priority=self.priority,
        )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "job_type": "generate_new",
                    "entity_ids": ["california_minimum_wage", "texas_overtime"],
                    "priority": "high",
                }
            ]
        }
    }


class ProcessRequest(BaseModel):
    """Request to run one processing pass now."""

    max_jobs: int = Field(5, ge=1, le=50, description="Maximum jobs claimed in this pass")


class SearchRequest(BaseModel):
    """Request for top-K source retrieval."""

    query: str = Field(..., min_length=1, max_length=2000, description="Question text")
    k: int = Field(5, ge=1, le=50, description="Maximum sources to return")
    threshold: float = Field(0.65, ge=-1.0, le=1.0, description="Minimum cosine similarity")
    entity_type: Optional[EntityType] = Field(None, description="'rule' or 'report'")
    jurisdiction: Optional[str] = Field(None, description="Jurisdiction filter")
    topic_key: Optional[str] = Field(None, description="Topic filter, e.g. 'minimum_wage'")

    def to_filters(self) -> SearchFilters:
        return SearchFilters(
            entity_type=self.entity_type,
            jurisdiction=self.jurisdiction,
            topic_key=self.topic_key,
        )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "query": "What is the minimum wage for tipped employees?",
                    "k": 5,
                    "jurisdiction": "california",
                }
            ]
        }
    }


# =============================================================================
# Response Models
# =============================================================================


class JobCreateResponse(BaseModel):
    job_id: str


class JobProgressModel(BaseModel):
    total: int
    completed: int
    failed: int
    progress_pct: float
    errors: list[str]


class JobResponse(BaseModel):
    """Status and progress of one embedding job."""

    job_id: str
    job_type: JobType
    status: JobStatus
    priority: Priority
    entity_count: int
    attempts: int
    progress: JobProgressModel
    scheduled_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_internal(cls, job: EmbeddingJob) -> "JobResponse":
        return cls(
            job_id=job.job_id,
            job_type=job.job_type,
            status=job.status,
            priority=job.config.priority,
            entity_count=len(job.entity_ids),
            attempts=job.attempts,
            progress=JobProgressModel(
                total=job.progress.total,
                completed=job.progress.completed,
                failed=job.progress.failed,
                progress_pct=job.progress.progress_pct,
                errors=job.progress.errors,
            ),
            scheduled_at=job.scheduled_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )


class JobListResponse(BaseModel):
    jobs: list[JobResponse]
    total: int


class ProcessResponse(BaseModel):
    """Outcome of a processing pass."""

    jobs_claimed: int
    jobs_completed: int
    jobs_failed: int
    jobs_retrying: int
    entities_completed: int
    entities_failed: int
    job_ids: list[str]
    elapsed_seconds: float

    @classmethod
    def from_internal(cls, summary: ProcessingSummary) -> "ProcessResponse":
        return cls(**summary.to_dict())


class SourceResult(BaseModel):
    """A hydrated, citable source."""

    entity_id: str
    entity_type: EntityType
    similarity: float = Field(description="Cosine similarity [-1, 1]")
    snippet: str
    jurisdiction: Optional[str] = None
    topic_key: Optional[str] = None
    topic_label: Optional[str] = None
    source_url: Optional[str] = None
    rule_id: Optional[str] = None
    report_id: Optional[str] = None
    low_confidence: bool = False

    @classmethod
    def from_internal(cls, source: HydratedSource) -> "SourceResult":
        return cls(**source.to_dict())


class SearchResponse(BaseModel):
    """Top-K sources for a query."""

    query: str
    sources: list[SourceResult]
    degraded: bool = Field(description="True if no source cleared the threshold")
    total_candidates: int
    search_time_ms: float
    cache_hit: bool = False

    @classmethod
    def from_internal(cls, result: TopKResult) -> "SearchResponse":
        return cls(
            query=result.query,
            sources=[SourceResult.from_internal(s) for s in result.sources],
            degraded=result.degraded,
            total_candidates=result.total_candidates,
            search_time_ms=result.search_time_ms,
            cache_hit=result.cache_hit,
        )


class StatsResponse(BaseModel):
    """Job and embedding statistics."""

    jobs: dict[str, int]
    total_records: int
    total_entities: int
    records_by_type: dict[str, int]
    records_by_model: dict[str, int]
    embedding_model: str
    dimensions: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="'healthy' or 'degraded'")
    service_loaded: bool
    fallback_only: bool = Field(description="True if no embedding provider is configured")


# =============================================================================
# Error Models
# =============================================================================


class ErrorDetail(BaseModel):
    """Error detail in response."""

    code: str = Field(description="Error code (e.g., VALIDATION_ERROR)")
    message: str
    details: Optional[dict] = None


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: ErrorDetail
