from __future__ import annotations

"""Prometheus metrics for the chat relay FastAPI backend.

Adds an HTTP middleware that records request latency per method/path/status,
plus counters for streamed completions.
"""

import time
from typing import Callable, Awaitable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds); streamed replies land in the upper buckets
REQUEST_LATENCY = Histogram(
    "chatrelay_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
)

STREAM_FRAGMENTS = Counter(
    "chatrelay_stream_fragments_total",
    "Generated text fragments relayed to clients",
)

STREAM_OUTCOMES = Counter(
    "chatrelay_stream_outcomes_total",
    "Completion streams by how they ended",
    labelnames=("outcome",),
)


def sanitize_path(path: str) -> str:
    """Reduce a request path to a coarse label (``/api/chat/edit`` -> ``/api/chat``).

    The ``/api`` mirror keeps one extra segment so both mounts report the same
    resource.
    """
    if not path:
        return "/"
    segs = path.split("?")[0].split("/")
    if len(segs) > 2 and segs[1] == "api":
        return "/api/" + segs[2]
    if len(segs) > 1:
        return "/" + segs[1]
    return path


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        if request.url.path.startswith("/metrics") or request.url.path.startswith("/api/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        # For streamed replies this measures time to first byte, not the full stream.
        elapsed = time.perf_counter() - start
        REQUEST_LATENCY.labels(
            method=request.method,
            path=sanitize_path(request.url.path),
            status=str(response.status_code),
        ).observe(elapsed)
        return response

    return middleware
