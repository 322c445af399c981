"""Prometheus metrics for HTTP traffic and visitor reconciliation.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- reconciliation/store/notification counters incremented by the engine
- coordinator gauges for in-flight runs and coalesced reruns
- get_metrics_response(): FastAPI route handler body for /metrics
"""

from __future__ import annotations

import time

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "visitor_sync_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "visitor_sync_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Reconciliation Metrics ───────────────────────────────────────────────────

reconciliations_total = Counter(
    "visitor_sync_reconciliations_total",
    "Reconciliation passes by outcome",
    ["outcome"],
)

store_operations_total = Counter(
    "visitor_sync_store_operations_total",
    "Record store operations by kind and outcome",
    ["operation", "outcome"],
)

notifications_total = Counter(
    "visitor_sync_notifications_total",
    "Visitor notifications by outcome",
    ["outcome"],
)

# ── Coordinator Metrics ──────────────────────────────────────────────────────

reconciliations_in_flight = Gauge(
    "visitor_sync_reconciliations_in_flight",
    "Meetings with a reconciliation currently running",
)

coalesced_triggers_total = Counter(
    "visitor_sync_coalesced_triggers_total",
    "Change triggers folded into a pending rerun",
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Uses the matched route template as the endpoint label so per-meeting
    paths do not explode label cardinality. Skips /metrics itself.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
