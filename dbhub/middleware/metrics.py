"""Prometheus metrics middleware for HTTP request instrumentation.

Collects HTTP request metrics:
- Request count by method, endpoint, status code
- Request duration histogram
- In-flight requests gauge
"""

import time

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from dbhub.metrics import (
    REQUEST_COUNT,
    REQUEST_DURATION,
    REQUEST_IN_FLIGHT,
)

logger = structlog.get_logger()

# /x/<action> endpoints addressed by owner and database name
DATABASE_ACTIONS = {"table", "downloadcsv", "download", "visdata", "vis", "page", "star"}


def normalize_path(path: str) -> str:
    """
    Normalize path for metrics labels to avoid high cardinality.

    Replaces owner, database and user names with placeholders.

    Examples:
        /x/table/alice/sales.db -> /x/table/{owner}/{database}
        /stars/alice/sales.db -> /stars/{owner}/{database}
        /users/alice -> /users/{username}
    """
    parts = path.strip("/").split("/")
    normalized = []

    i = 0
    while i < len(parts):
        part = parts[i]

        if i == 0 and part == "x" and len(parts) >= 4 and parts[1] in DATABASE_ACTIONS:
            normalized.extend(["x", parts[1], "{owner}", "{database}"])
            i += 4
            continue

        if i == 0 and part == "stars" and len(parts) >= 3:
            normalized.extend(["stars", "{owner}", "{database}"])
            i += 3
            continue

        if i == 0 and part == "users" and len(parts) >= 2:
            normalized.extend(["users", "{username}"])
            i += 2
            continue

        normalized.append(part)
        i += 1

    return "/" + "/".join(p for p in normalized if p) if any(normalized) else "/"


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Middleware that collects Prometheus metrics for HTTP requests.

    Metrics collected:
    - dbhub_api_requests_total: Counter by method, endpoint, status_code
    - dbhub_api_request_duration_seconds: Histogram by method, endpoint
    - dbhub_api_requests_in_flight: Gauge by method
    """

    # Endpoints to skip (internal/debug endpoints)
    SKIP_PATHS = {"/metrics", "/docs", "/redoc", "/openapi.json"}

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        method = request.method

        if request.url.path in self.SKIP_PATHS:
            return await call_next(request)

        endpoint = normalize_path(request.url.path)

        REQUEST_IN_FLIGHT.labels(method=method).inc()
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            status_code = str(response.status_code)
        except Exception:
            status_code = "500"
            raise
        finally:
            duration = time.perf_counter() - start_time
            REQUEST_DURATION.labels(method=method, endpoint=endpoint).observe(duration)
            REQUEST_COUNT.labels(
                method=method,
                endpoint=endpoint,
                status_code=status_code,
            ).inc()
            REQUEST_IN_FLIGHT.labels(method=method).dec()

        return response
