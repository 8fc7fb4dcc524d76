import re
import time

from prometheus_client import Counter, Gauge, Histogram
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

HTTP_REQUESTS = Counter(
    "http_requests_total",
    "HTTP requests served, by route and status",
    ["service", "method", "path", "status"],
)

HTTP_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["service", "method", "path"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

HTTP_IN_FLIGHT = Gauge(
    "http_requests_in_flight",
    "HTTP requests currently being served",
    ["service"],
)

# Order and payment ids are numeric path segments.
_ID_SEGMENT = re.compile(r"/\d+(?=/|$)")
_UNMEASURED = ("/metrics", "/health")


def _normalise_path(path: str) -> str:
    return _ID_SEGMENT.sub("/{id}", path)


class MetricsMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, service: str = "unknown"):
        super().__init__(app)
        self.service = service

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path.startswith(_UNMEASURED):
            return await call_next(request)

        path = _normalise_path(request.url.path)
        status = "500"
        start = time.perf_counter()
        HTTP_IN_FLIGHT.labels(self.service).inc()
        try:
            response = await call_next(request)
            status = str(response.status_code)
            return response
        finally:
            HTTP_IN_FLIGHT.labels(self.service).dec()
            HTTP_REQUESTS.labels(self.service, request.method, path, status).inc()
            HTTP_LATENCY.labels(self.service, request.method, path).observe(time.perf_counter() - start)
