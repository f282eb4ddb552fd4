import time

from starlette.middleware.base import BaseHTTPMiddleware

from mymcp.core.metrics import METRICS, http_requests_total, normalize_path

http_request_seconds = METRICS.histogram(
    "http_request_seconds", "HTTP request latency", ["method", "path"]
)

# Scrapes and probes would drown out API traffic
_UNTRACKED_PATHS = frozenset({"/metrics", "/healthz", "/readyz"})


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        if request.url.path in _UNTRACKED_PATHS:
            return await call_next(request)

        started = time.perf_counter()
        response = await call_next(request)
        path = normalize_path(request.url.path)
        method = request.method.upper()
        http_requests_total.inc(labels={"method": method, "path": path, "status": str(response.status_code)})
        http_request_seconds.observe(time.perf_counter() - started, labels={"method": method, "path": path})
        return response
