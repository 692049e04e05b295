"""
Prometheus metric definitions and the standalone exposition app.

Metrics live on an injected CollectorRegistry instead of the process-global
default so the middleware can be exercised in isolation.
"""

from __future__ import annotations

from typing import Optional

from fastapi import FastAPI
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Histogram, generate_latest

LABELS = ("method", "path", "status")

EXPONENTIAL_SECONDS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


class HttpMetrics:
    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests handled by the API server",
            LABELS,
            registry=self.registry,
        )
        self.requests_duration = Histogram(
            "http_requests_duration_seconds",
            "HTTP request latency in seconds",
            LABELS,
            buckets=EXPONENTIAL_SECONDS,
            registry=self.registry,
        )

    def observe(self, method: str, path: str, status: int, duration: float) -> None:
        labels = (method, path, str(status))
        self.requests_total.labels(*labels).inc()
        self.requests_duration.labels(*labels).observe(duration)

    def render(self) -> bytes:
        return generate_latest(self.registry)


def create_metrics_app(metrics: HttpMetrics) -> FastAPI:
    app = FastAPI(title="Minipool metrics", docs_url=None, redoc_url=None, openapi_url=None)

    @app.get("/metrics")
    async def metrics_endpoint():
        return Response(content=metrics.render(), media_type=CONTENT_TYPE_LATEST)

    return app
