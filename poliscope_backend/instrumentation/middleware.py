"""
FastAPI middleware for request instrumentation.

Records Prometheus request counters and latency histograms keyed by route
template, tracks in-flight requests per method, and adds an
X-Request-Duration-Ms header to every response.
"""

import time
import logging
from typing import Callable
from fastapi import Request, Response
from prometheus_client import Counter, Gauge, Histogram
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

UNMATCHED_ROUTE = "unmatched"

api_request_count = Counter(
    'api_requests_total',
    'Total API requests',
    ['endpoint', 'method', 'status']
)

api_request_latency = Histogram(
    'api_request_latency_seconds',
    'API request latency',
    ['endpoint', 'method']
)

# The route is only known after routing, so in-flight requests are keyed by method.
active_requests = Gauge(
    'api_active_requests',
    'Number of active requests',
    ['method']
)


def _route_label(request: Request) -> str:
    """Route template (e.g. /api/debates/{debate_id}); never the raw path."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or UNMATCHED_ROUTE


class InstrumentationMiddleware(BaseHTTPMiddleware):
    """
    Middleware to instrument HTTP requests.

    Usage:
        app = FastAPI()
        app.add_middleware(InstrumentationMiddleware)
    """

    def __init__(self, app, enable_logging: bool = True):
        super().__init__(app)
        self.enable_logging = enable_logging

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        method = request.method
        active_requests.labels(method=method).inc()

        try:
            response = await call_next(request)
        except Exception:
            if self.enable_logging:
                logger.exception("Error processing %s %s", method, request.url.path)
            raise
        finally:
            active_requests.labels(method=method).dec()

        latency = time.time() - start_time
        latency_ms = int(latency * 1000)
        endpoint = _route_label(request)

        api_request_count.labels(endpoint=endpoint, method=method, status=response.status_code).inc()
        api_request_latency.labels(endpoint=endpoint, method=method).observe(latency)

        response.headers["X-Request-Duration-Ms"] = str(latency_ms)

        if self.enable_logging:
            logger.info("%s %s %s - %sms", method, request.url.path, response.status_code, latency_ms)

        return response
