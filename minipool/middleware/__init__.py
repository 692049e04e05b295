from .metrics import MetricsMiddleware, matched_route_template
from .request_id import RequestIdMiddleware

__all__ = ["MetricsMiddleware", "RequestIdMiddleware", "matched_route_template"]
