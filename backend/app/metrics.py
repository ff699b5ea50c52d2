"""Prometheus metrics for monitoring and observability."""

from __future__ import annotations

import re
import time
from collections.abc import Callable
from functools import lru_cache

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# ==============================================================================
# APPLICATION INFO
# ==============================================================================

app_info = Info("places_gateway", "Places gateway API information")
app_info.info({"version": "0.1.0", "service": "places-gateway"})

# ==============================================================================
# HTTP METRICS
# ==============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

http_requests_in_progress = Gauge(
    "http_requests_in_progress",
    "HTTP requests currently in progress",
    ["method", "endpoint"],
)

# ==============================================================================
# RATE LIMITER METRICS
# ==============================================================================

rate_limit_hits_total = Counter(
    "rate_limit_hits_total",
    "Total rate limit hits (requests blocked)",
    ["limiter"],
)

rate_limit_requests_total = Counter(
    "rate_limit_requests_total",
    "Total requests checked by rate limiter",
    ["limiter", "result"],
)

# ==============================================================================
# UPSTREAM METRICS
# ==============================================================================

query_normalizations_total = Counter(
    "query_normalizations_total",
    "Query normalizations by outcome",
    ["outcome"],
)

completion_request_duration_seconds = Histogram(
    "completion_request_duration_seconds",
    "Chat-completion round trip in seconds",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 3.0, 5.0),
)

places_requests_total = Counter(
    "places_requests_total",
    "Places text search calls by provider status",
    ["status"],
)

places_results_returned = Histogram(
    "places_results_returned",
    "Number of places returned per search",
    buckets=(0, 1, 2, 3, 4, 5),
)


@lru_cache(maxsize=2048)
def normalize_endpoint(path: str) -> str:
    """
    Normalize endpoint path to reduce cardinality.

    Static asset paths collapse to ``/static`` since the front-end is mounted at
    the root and every file would otherwise get its own label.
    """
    if path.startswith("/api/") or path in {"/", "/metrics"}:
        return re.sub(r"/\d+", "/{id}", path)
    return "/static"


# ==============================================================================
# PROMETHEUS MIDDLEWARE
# ==============================================================================


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware to track HTTP request metrics."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Skip metrics endpoint itself
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        endpoint = normalize_endpoint(request.url.path)

        http_requests_in_progress.labels(method=method, endpoint=endpoint).inc()
        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            http_requests_total.labels(method=method, endpoint=endpoint, status="500").inc()
            raise
        finally:
            duration = time.perf_counter() - start_time
            http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(duration)
            http_requests_in_progress.labels(method=method, endpoint=endpoint).dec()

        http_requests_total.labels(
            method=method, endpoint=endpoint, status=str(response.status_code)
        ).inc()
        return response


def get_metrics() -> Response:
    """Generate Prometheus metrics response."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


__all__ = [
    "PrometheusMiddleware",
    "completion_request_duration_seconds",
    "get_metrics",
    "http_request_duration_seconds",
    "http_requests_in_progress",
    "http_requests_total",
    "normalize_endpoint",
    "places_requests_total",
    "places_results_returned",
    "query_normalizations_total",
    "rate_limit_hits_total",
    "rate_limit_requests_total",
]
