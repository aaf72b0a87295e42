"""
FastAPI application for the compliance retrieval core.

Exposes job submission, job status, on-demand processing, top-K source
retrieval and statistics over HTTP. Store access is synchronous sqlite3,
so the plain lookups run in the default executor.

Usage:
    from crag.api.app import create_app
    app = create_app(db_path="data/crag.db")

    # Or run directly:
    # uvicorn crag.api.app:app --reload
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from functools import partial
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..config import Settings
from ..embeddings.search_engine import DimensionMismatchError
from ..jobs import JobNotFoundError
from ..models import JobStatus
from ..service import RetrievalService, build_service
from .middleware import RateLimitMiddleware, RequestLoggingMiddleware
from .models import (
    ErrorResponse,
    HealthResponse,
    JobCreateRequest,
    JobCreateResponse,
    JobListResponse,
    JobResponse,
    ProcessRequest,
    ProcessResponse,
    SearchRequest,
    SearchResponse,
    StatsResponse,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the retrieval service on startup, release it on shutdown."""
    settings: Settings = app.state.settings
    logger.info(f"Starting retrieval service (db={settings.db_path})")

    loop = asyncio.get_running_loop()
    app.state.service = await loop.run_in_executor(None, build_service, settings)

    yield

    logger.info("Shutting down retrieval service")
    provider = app.state.service.generator.provider
    if provider is not None and hasattr(provider, "aclose"):
        await provider.aclose()
    app.state.service = None


def get_service(request: Request) -> RetrievalService:
    """FastAPI dependency: the service built during startup."""
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Retrieval service not initialized")
    return service


def create_app(
    db_path: str | None = None,
    cors_origins: Optional[list[str]] = None,
    rate_limit_rpm: int | None = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Application factory.

    Args:
        db_path: SQLite database path. Falls back to ``CRAG_DB_PATH``,
            then ``"data/crag.db"``.
        cors_origins: Allowed CORS origins. Falls back to
            ``CRAG_CORS_ORIGINS`` (comma-separated), then ``["*"]``.
        rate_limit_rpm: Max requests per minute per IP. Falls back to
            ``CRAG_RATE_LIMIT_RPM``, then ``100``. ``0`` disables limiting.
        settings: Full settings object; the arguments above override it.
    """
    overrides = {
        "db_path": db_path,
        "cors_origins": cors_origins,
        "rate_limit_rpm": rate_limit_rpm,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if settings is None:
        settings = Settings.from_env(**overrides)
    elif overrides:
        settings = replace(settings, **overrides)

    app = FastAPI(
        title="Compliance Retrieval API",
        description="Embedding jobs and top-K source retrieval for compliance RAG",
        version="1.0.0",
        lifespan=lifespan,
        responses={
            400: {"model": ErrorResponse},
            404: {"model": ErrorResponse},
            429: {"model": ErrorResponse},
            500: {"model": ErrorResponse},
            503: {"model": ErrorResponse},
        },
    )
    app.state.settings = settings
    app.state.service = None

    # Middleware execution order (outermost first):
    #   Logging -> CORS -> RateLimit -> App
    # add_middleware prepends, so add in reverse order.
    trusted_proxies = frozenset(settings.trusted_proxies) or None
    if settings.rate_limit_rpm > 0:
        app.add_middleware(
            RateLimitMiddleware,
            requests_per_minute=settings.rate_limit_rpm,
            trusted_proxies=trusted_proxies,
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials="*" not in settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(RequestLoggingMiddleware, trusted_proxies=trusted_proxies)

    _register_routes(app)
    _register_exception_handlers(app)

    return app


# =========================================================================
# Route registration
# =========================================================================


def _register_routes(app: FastAPI) -> None:
    """Attach all route handlers to the app."""

    # -- Jobs -----------------------------------------------------------------

    @app.post("/api/jobs", response_model=JobCreateResponse, status_code=201)
    async def submit_job(
        request: JobCreateRequest,
        service: RetrievalService = Depends(get_service),
    ) -> JobCreateResponse:
        """Queue an embedding job for a list of rules/reports."""
        loop = asyncio.get_running_loop()
        try:
            job_id = await loop.run_in_executor(
                None,
                partial(
                    service.submit_embedding_job,
                    request.job_type,
                    request.entity_ids,
                    priority=request.priority,
                    config=request.to_config(),
                ),
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return JobCreateResponse(job_id=job_id)

    @app.get("/api/jobs", response_model=JobListResponse)
    async def list_jobs(
        status: Optional[JobStatus] = None,
        limit: int = 50,
        service: RetrievalService = Depends(get_service),
    ) -> JobListResponse:
        """List jobs, most recently scheduled first."""
        if not 1 <= limit <= 500:
            raise HTTPException(status_code=400, detail="limit must be between 1 and 500")
        loop = asyncio.get_running_loop()
        jobs = await loop.run_in_executor(
            None, partial(service.jobs.list_jobs, status=status, limit=limit)
        )
        return JobListResponse(
            jobs=[JobResponse.from_internal(job) for job in jobs],
            total=len(jobs),
        )

    @app.get("/api/jobs/{job_id}", response_model=JobResponse)
    async def get_job(
        job_id: str,
        service: RetrievalService = Depends(get_service),
    ) -> JobResponse:
        """Status and progress of one job."""
        loop = asyncio.get_running_loop()
        job = await loop.run_in_executor(None, service.get_job, job_id)
        return JobResponse.from_internal(job)

    @app.post("/api/jobs/process", response_model=ProcessResponse)
    async def process_jobs(
        request: Optional[ProcessRequest] = None,
        service: RetrievalService = Depends(get_service),
    ) -> ProcessResponse:
        """Run one processing pass now instead of waiting for the scheduler."""
        request = request or ProcessRequest()
        summary = await service.run_scheduled_processing(request.max_jobs)
        return ProcessResponse.from_internal(summary)

    # -- Retrieval ------------------------------------------------------------

    @app.post("/api/search", response_model=SearchResponse)
    async def search(
        request: SearchRequest,
        service: RetrievalService = Depends(get_service),
    ) -> SearchResponse:
        """
        Top-K hydrated sources for a question.

        If nothing clears the threshold, up to three best matches are returned
        flagged low confidence, with degraded set.
        """
        result = await service.search_top_k(
            request.query,
            k=request.k,
            threshold=request.threshold,
            filters=request.to_filters(),
        )
        return SearchResponse.from_internal(result)

    # -- Utility endpoints ----------------------------------------------------

    @app.get("/api/stats", response_model=StatsResponse)
    async def get_stats(
        service: RetrievalService = Depends(get_service),
    ) -> StatsResponse:
        """Job counts by status and record counts by type and model."""
        loop = asyncio.get_running_loop()
        raw = await loop.run_in_executor(None, service.get_stats)
        emb = raw.get("embeddings", {})
        return StatsResponse(
            jobs=raw.get("jobs", {}),
            total_records=emb.get("total_records", 0),
            total_entities=emb.get("total_entities", 0),
            records_by_type=emb.get("by_type", {}),
            records_by_model=emb.get("by_model", {}),
            embedding_model=raw.get("embedding_model", "unknown"),
            dimensions=raw.get("dimensions", 0),
        )

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request) -> HealthResponse:
        """Health check endpoint."""
        service = getattr(request.app.state, "service", None)
        if service is None:
            return HealthResponse(status="degraded", service_loaded=False, fallback_only=True)

        fallback_only = service.generator.provider is None
        return HealthResponse(
            status="degraded" if fallback_only else "healthy",
            service_loaded=True,
            fallback_only=fallback_only,
        )


# =========================================================================
# Exception handlers
# =========================================================================

_STATUS_CODES = {
    400: "VALIDATION_ERROR",
    404: "NOT_FOUND",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _error(status_code: int, code: str, message) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message}},
    )


def _register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return _error(
            exc.status_code,
            _STATUS_CODES.get(exc.status_code, "UNKNOWN_ERROR"),
            exc.detail,
        )

    @app.exception_handler(JobNotFoundError)
    async def job_not_found_handler(request: Request, exc: JobNotFoundError):
        return _error(404, "NOT_FOUND", str(exc))

    @app.exception_handler(DimensionMismatchError)
    async def dimension_mismatch_handler(request: Request, exc: DimensionMismatchError):
        logger.error(f"Embedding dimension mismatch: {exc}")
        return _error(500, "DIMENSION_MISMATCH", str(exc))

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception")
        return _error(500, "INTERNAL_ERROR", "An unexpected error occurred")


# =========================================================================
# Default app instance (for `uvicorn crag.api.app:app`)
# =========================================================================

app = create_app()
