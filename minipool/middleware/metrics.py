"""Request counter/latency middleware for the API app."""
from __future__ import annotations

import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.routing import Match

from ..metrics import HttpMetrics


def matched_route_template(request: Request) -> str:
    """Registered path pattern for the request, or the raw path if none matches.

    Mirrors the router: the first full match wins, otherwise the first
    partial (method mismatch) match.
    """
    partial = None
    for route in request.app.router.routes:
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            return getattr(route, "path", request.url.path)
        if match == Match.PARTIAL and partial is None:
            partial = route
    if partial is not None:
        return getattr(partial, "path", request.url.path)
    return request.url.path


class MetricsMiddleware(BaseHTTPMiddleware):
    """Records one counter and one histogram observation per request."""

    def __init__(self, app, metrics: HttpMetrics):
        super().__init__(app)
        self.metrics = metrics

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        path = matched_route_template(request)
        method = request.method
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            self.metrics.observe(method, path, status, time.perf_counter() - start)
