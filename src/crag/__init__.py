"""
Compliance RAG embedding core.

Turns compliance rules and reports into vector embeddings and retrieves the
most relevant ones for a question, with source metadata attached for
citation.

Features:
- Priority job queue with batch checkpoints and job-level retries
- Content-hash deduplication of stored chunk embeddings
- Deterministic fallback vectors when no provider is reachable
- Bounded cosine search with a low-confidence degraded mode
- Source hydration for citable results
"""

from .models import (
    EmbeddingJob,
    EmbeddingRecord,
    EntityType,
    JobConfig,
    JobProgress,
    JobStatus,
    JobType,
    Priority,
    ProcessingMethod,
)
from .config import Settings
from .database import EmbeddingDatabase
from .catalog import ComplianceCatalog, EntityNotFoundError
from .jobs import JobManager, JobNotFoundError, ProcessingSummary
from .service import RetrievalService, build_service

__all__ = [
    # Core models
    "EmbeddingJob",
    "EmbeddingRecord",
    "EntityType",
    "JobConfig",
    "JobProgress",
    "JobStatus",
    "JobType",
    "Priority",
    "ProcessingMethod",
    # Configuration
    "Settings",
    # Storage
    "EmbeddingDatabase",
    "ComplianceCatalog",
    "EntityNotFoundError",
    # Pipeline
    "JobManager",
    "JobNotFoundError",
    "ProcessingSummary",
    "RetrievalService",
    "build_service",
]
__version__ = "1.0.0"
