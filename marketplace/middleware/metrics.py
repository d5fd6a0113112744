import re
import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# Normalise dynamic path segments to avoid high-cardinality label explosion.
_UUID = r"[0-9a-fA-F-]{36}"
_PATH_PATTERNS = [
    (re.compile(rf"^/orders/{_UUID}"), "/orders/{order_id}"),
    (re.compile(rf"^/payments/{_UUID}/status$"), "/payments/{payment_id}/status"),
    (re.compile(r"^/payments/(?!webhook$|indirect$)[^/]+"), "/payments/{transaction_id}"),
]


def _normalise_path(path: str) -> str:
    for pattern, replacement in _PATH_PATTERNS:
        path, count = pattern.subn(replacement, path)
        if count:
            break
    return path


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        path = _normalise_path(request.url.path)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start

        REQUEST_COUNT.labels(
            method=request.method,
            path=path,
            status=str(response.status_code),
        ).inc()
        REQUEST_LATENCY.labels(method=request.method, path=path).observe(elapsed)

        return response
