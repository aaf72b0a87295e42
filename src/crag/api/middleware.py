"""
Rate limiting and request logging middleware for the retrieval API.

Requests are budgeted per client IP in units per minute. Routes that spend
embedding provider calls or run a processing pass cost more than plain
store reads, so one client hammering /api/search cannot starve job status
polling from everyone else.
"""

import logging
import time
import uuid
from typing import Mapping, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger("crag.api.access")

# Never rate limited, so orchestrator probes keep working under load
EXEMPT_PATHS = frozenset({"/health"})

# Units charged per request; anything not listed costs 1
ROUTE_COSTS: Mapping[str, int] = {
    "/api/search": 2,
    "/api/jobs/process": 5,
}


def get_client_ip(
    request: Request,
    trusted_proxies: Optional[frozenset[str]] = None,
) -> str:
    """Client IP, honouring X-Forwarded-For only from trusted proxies."""
    direct_ip = request.client.host if request.client else None

    if trusted_proxies and direct_ip in trusted_proxies:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()

    return direct_ip or "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-IP sliding window budget of `requests_per_minute` units.

    Each admitted request records (timestamp, cost). Entries older than the
    window are dropped for that IP on every request. Responses carry
    X-RateLimit-Limit and X-RateLimit-Remaining; a rejected request gets a
    429 envelope with Retry-After.
    """

    def __init__(
        self,
        app,
        requests_per_minute: int = 100,
        trusted_proxies: Optional[frozenset[str]] = None,
        exempt_paths: frozenset[str] = EXEMPT_PATHS,
        route_costs: Mapping[str, int] = ROUTE_COSTS,
    ):
        super().__init__(app)
        self.requests_per_minute = requests_per_minute
        self.window_seconds = 60.0
        self.trusted_proxies = trusted_proxies
        self.exempt_paths = exempt_paths
        self.route_costs = route_costs
        self._hits: dict[str, list[tuple[float, int]]] = {}

    def cost_of(self, path: str) -> int:
        # A route dearer than the whole budget would never be admitted
        return min(self.route_costs.get(path, 1), self.requests_per_minute)

    def _retry_after(self, hits: list[tuple[float, int]], cost: int, now: float) -> int:
        """Seconds until enough units expire to admit a request of `cost`."""
        used = sum(c for _, c in hits)
        for timestamp, c in hits:
            used -= c
            if used + cost <= self.requests_per_minute:
                return max(1, int(timestamp + self.window_seconds - now) + 1)
        return int(self.window_seconds)

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path in self.exempt_paths:
            return await call_next(request)

        ip = get_client_ip(request, self.trusted_proxies)
        now = time.monotonic()
        cutoff = now - self.window_seconds
        cost = self.cost_of(path)

        recent = [(t, c) for t, c in self._hits.get(ip, ()) if t > cutoff]
        used = sum(c for _, c in recent)

        if used + cost > self.requests_per_minute:
            self._hits[ip] = recent
            logger.debug(f"Rate limited {ip} on {path} ({used}/{self.requests_per_minute} units used)")
            return JSONResponse(
                status_code=429,
                headers={
                    "Retry-After": str(self._retry_after(recent, cost, now)),
                    "X-RateLimit-Limit": str(self.requests_per_minute),
                    "X-RateLimit-Remaining": str(max(0, self.requests_per_minute - used)),
                },
                content={
                    "error": {
                        "code": "RATE_LIMITED",
                        "message": f"Rate limit exceeded ({self.requests_per_minute} requests/minute)",
                    }
                },
            )

        recent.append((now, cost))
        self._hits[ip] = recent

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.requests_per_minute)
        response.headers["X-RateLimit-Remaining"] = str(self.requests_per_minute - used - cost)
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Access log line per request, tagged with a request id.

    The id is taken from an incoming X-Request-ID header when present and
    echoed back on the response.
    """

    def __init__(
        self,
        app,
        trusted_proxies: Optional[frozenset[str]] = None,
    ):
        super().__init__(app)
        self.trusted_proxies = trusted_proxies

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:12]
        start = time.monotonic()
        response = await call_next(request)
        duration_ms = (time.monotonic() - start) * 1000

        response.headers["X-Request-ID"] = request_id
        logger.info(
            "%s %s %s %d %.0fms %s",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            get_client_ip(request, self.trusted_proxies),
        )
        return response
