"""Prometheus metrics: HTTP middleware plus agent runtime counters."""

import time
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import FastAPI, Request
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_code"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)
REQUEST_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "In-progress HTTP requests",
    ["method"],
)

# ----- Agent runtime -----

AI_CALLS = Counter(
    "opsagent_ai_calls_total",
    "Vendor chat-completion calls",
    ["provider", "model", "outcome"],
)
AI_CALL_LATENCY = Histogram(
    "opsagent_ai_call_duration_seconds",
    "Vendor chat-completion latency in seconds",
    ["provider"],
    buckets=(0.25, 0.5, 1, 2, 5, 10, 20, 45, 90),
)
AI_FALLBACKS = Counter(
    "opsagent_ai_fallbacks_total",
    "Calls retried against the fallback vendor after a 429",
    ["from_provider", "to_provider"],
)
TOOL_EXECUTIONS = Counter(
    "opsagent_tool_executions_total",
    "Tool executions by outcome",
    ["tool", "outcome"],
)
PENDING_ACTIONS = Counter(
    "opsagent_pending_actions_total",
    "Pending action lifecycle transitions",
    ["tool", "status"],
)
QA_REVIEWS = Counter(
    "opsagent_qa_reviews_total",
    "QA review outcomes",
    ["agent", "outcome"],
)
AGENT_TURNS = Counter(
    "opsagent_agent_turns_total",
    "Completed orchestration turns by final status",
    ["agent", "status"],
)
RATE_LIMIT_REJECTIONS = Counter(
    "opsagent_rate_limit_rejections_total",
    "Requests rejected by the per-user limiter",
    ["function"],
)
AGENT_ROUTES = Counter(
    "opsagent_agent_routes_total",
    "Agent routing decisions by method",
    ["method"],
)


def _get_route_path(request: Request) -> str:
    route: Any | None = request.scope.get("route")
    path = getattr(route, "path", None) if route is not None else None
    if isinstance(path, str) and path:
        return path
    return "unknown"


def setup_metrics(app: FastAPI) -> None:
    """Attach Prometheus metrics and /metrics endpoint to the app."""

    @app.middleware("http")
    async def metrics_middleware(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        method = request.method
        REQUEST_IN_PROGRESS.labels(method=method).inc()
        start = time.perf_counter()
        response = None
        try:
            response = await call_next(request)
            return response
        finally:
            path = _get_route_path(request)
            status_code = str(response.status_code) if response else "500"
            REQUEST_LATENCY.labels(method=method, path=path).observe(time.perf_counter() - start)
            REQUEST_COUNT.labels(method=method, path=path, status_code=status_code).inc()
            REQUEST_IN_PROGRESS.labels(method=method).dec()

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
