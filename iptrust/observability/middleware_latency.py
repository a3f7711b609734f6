# iptrust/observability/middleware_latency.py
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from iptrust.metrics import REQUEST_LATENCY

EXCLUDE_PREFIXES = ("/metrics",)


class LatencyMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        path = request.url.path or "/"
        if any(path.startswith(p) for p in EXCLUDE_PREFIXES):
            return await call_next(request)

        start = time.perf_counter()
        status = "500"
        try:
            response: Response = await call_next(request)
            status = str(response.status_code)
            return response
        finally:
            duration = time.perf_counter() - start
            # route template keeps label cardinality bounded
            route = request.scope.get("route")
            route_tpl = getattr(route, "path", None) or path
            REQUEST_LATENCY.labels(route=route_tpl, method=request.method, status=status).observe(duration)
