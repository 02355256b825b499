from __future__ import annotations

import time
from typing import Callable

from fastapi import Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

REQUESTS_TOTAL = Counter(
    "http_requests_total", "Total HTTP requests", ["method", "path", "status"]
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds", "HTTP request latency", ["method", "path"]
)

# outcome: inserted | stale | no_pose | render_failed | protocol_violation
SCANS_TOTAL = Counter("occmap_scans_total", "Scans received by outcome", ["outcome"])
SCAN_LATENCY = Histogram(
    "occmap_scan_duration_seconds",
    "Per-scan pipeline latency",
    ["stage"],
)
INSTANCES = Gauge("occmap_instances", "Live instance trees (background included)")
RESETS_TOTAL = Counter("occmap_resets_total", "Map resets")
MAP_EXPORT_FAILURES = Counter("occmap_map_export_failures_total", "Octree serialization failures", ["topic"])


class StageTimer:
    """Observes the wall time of a pipeline stage into SCAN_LATENCY."""

    def __init__(self, stage: str) -> None:
        self.stage = stage
        self._t0 = 0.0

    def __enter__(self) -> "StageTimer":
        self._t0 = time.perf_counter()
        return self

    def __exit__(self, *exc) -> None:
        SCAN_LATENCY.labels(self.stage).observe(max(0.0, time.perf_counter() - self._t0))


async def metrics_middleware(request: Request, call_next: Callable) -> Response:
    t0 = time.perf_counter()
    response = await call_next(request)
    dt = max(0.0, float(time.perf_counter() - t0))

    REQUESTS_TOTAL.labels(request.method, request.url.path, str(response.status_code)).inc()
    REQUEST_LATENCY.labels(request.method, request.url.path).observe(dt)
    return response


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
