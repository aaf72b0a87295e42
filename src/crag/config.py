"""
Runtime configuration read from CRAG_* environment variables.

Explicit arguments (CLI options, create_app parameters) override the
environment; the environment overrides the defaults below.
"""

import os
from dataclasses import dataclass, field, replace
from typing import Optional


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value not in (None, "") else default


@dataclass
class Settings:
    """
    Settings for the store, embedding backend, job pipeline and API.

    Example:
        settings = Settings.from_env(db_path="data/test.db")
        service = build_service(settings)
    """

    db_path: str = "data/crag.db"

    # Embedding backend: "http", "local", or "none" (fallback vectors only)
    embedding_provider: str = "none"
    embedding_api_url: str = "https://api.openai.com/v1"
    embedding_api_key: Optional[str] = None
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    embedding_timeout: float = 30.0
    embedding_requests_per_second: float = 5.0

    # Job pipeline
    chunk_size: int = 500
    max_jobs_per_run: int = 5
    item_delay_seconds: float = 0.1
    batch_delay_seconds: float = 2.0
    job_retention_days: int = 7
    retry_backoff_seconds: float = 60.0
    retry_backoff_max_seconds: float = 3600.0

    # Search
    default_top_k: int = 5
    default_threshold: float = 0.65
    query_cache_size: int = 256
    query_cache_ttl: float = 600.0

    # API
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    rate_limit_rpm: int = 100
    # Peers allowed to set X-Forwarded-For
    trusted_proxies: list[str] = field(default_factory=list)

    @classmethod
    def from_env(cls, **overrides) -> "Settings":
        """
        Build settings from the environment, then apply non-None overrides.

        Args:
            **overrides: Field values that take precedence over the environment
        """
        defaults = cls()
        origins = os.environ.get("CRAG_CORS_ORIGINS")
        proxies = os.environ.get("CRAG_TRUSTED_PROXIES", "")
        settings = cls(
            db_path=os.environ.get("CRAG_DB_PATH", defaults.db_path),
            embedding_provider=os.environ.get(
                "CRAG_EMBEDDING_PROVIDER", defaults.embedding_provider
            ).lower(),
            embedding_api_url=os.environ.get("CRAG_EMBEDDING_API_URL", defaults.embedding_api_url),
            embedding_api_key=os.environ.get("CRAG_EMBEDDING_API_KEY") or None,
            embedding_model=os.environ.get("CRAG_EMBEDDING_MODEL", defaults.embedding_model),
            embedding_dimensions=_env_int("CRAG_EMBEDDING_DIMENSIONS", defaults.embedding_dimensions),
            embedding_timeout=_env_float("CRAG_EMBEDDING_TIMEOUT", defaults.embedding_timeout),
            embedding_requests_per_second=_env_float(
                "CRAG_EMBEDDING_RPS", defaults.embedding_requests_per_second
            ),
            chunk_size=_env_int("CRAG_CHUNK_SIZE", defaults.chunk_size),
            max_jobs_per_run=_env_int("CRAG_MAX_JOBS_PER_RUN", defaults.max_jobs_per_run),
            item_delay_seconds=_env_float("CRAG_PACING_SECONDS", defaults.item_delay_seconds),
            batch_delay_seconds=_env_float("CRAG_BATCH_PACING_SECONDS", defaults.batch_delay_seconds),
            job_retention_days=_env_int("CRAG_JOB_RETENTION_DAYS", defaults.job_retention_days),
            retry_backoff_seconds=_env_float(
                "CRAG_RETRY_BACKOFF_SECONDS", defaults.retry_backoff_seconds
            ),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()]
            if origins
            else defaults.cors_origins,
            rate_limit_rpm=_env_int("CRAG_RATE_LIMIT_RPM", defaults.rate_limit_rpm),
            trusted_proxies=[p.strip() for p in proxies.split(",") if p.strip()],
        )
        applied = {k: v for k, v in overrides.items() if v is not None}
        return replace(settings, **applied) if applied else settings
