"""Prometheus request metrics.

Each app owns its registry so several apps can live in one process.
Requests are labelled by route template, not raw path, to keep profile and
query IDs out of the label set.
"""

from __future__ import annotations

from fastapi import Request, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

LATENCY_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


class RequestMetrics:
    def __init__(self, namespace: str) -> None:
        self.registry = CollectorRegistry()
        self.requests = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "handler", "status"],
            namespace=namespace,
            registry=self.registry,
        )
        self.latency = Histogram(
            "http_request_duration_seconds",
            "HTTP request latency",
            ["method", "handler"],
            namespace=namespace,
            buckets=LATENCY_BUCKETS,
            registry=self.registry,
        )

    def observe(self, request: Request, status_code: int, seconds: float) -> None:
        route = request.scope.get("route")
        handler = getattr(route, "path", "unmatched")
        if handler == "/metrics":
            return
        self.requests.labels(request.method, handler, str(status_code)).inc()
        self.latency.labels(request.method, handler).observe(seconds)

    def render(self) -> Response:
        return Response(generate_latest(self.registry), media_type=CONTENT_TYPE_LATEST)


async def metrics_endpoint(request: Request) -> Response:
    return request.app.state.metrics.render()
