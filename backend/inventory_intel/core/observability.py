r"""backend\inventory_intel\core\observability.py"""

from __future__ import annotations

import json
import time
import uuid
from datetime import datetime, timezone
from typing import Callable

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response


_REQUEST_COUNTER = Counter(
    "http_requests_total", "Total HTTP requests", ["method", "path", "status"]
)
_LATENCY_HISTOGRAM = Histogram(
    "http_request_latency_seconds", "Request latency", ["method", "path"]
)

MODEL_FITS = Counter(
    "inventory_model_fits_total", "Demand model fits by model", ["model"]
)
MODEL_FALLBACKS = Counter(
    "inventory_model_fallbacks_total", "Primary model failures recovered by the fallback model"
)
FORECAST_CACHE = Counter(
    "inventory_forecast_cache_total", "Forecast cache lookups", ["result"]
)
FIT_LATENCY = Histogram(
    "inventory_model_fit_seconds", "Time spent fitting demand models", ["model"]
)


class RequestMetricsMiddleware(BaseHTTPMiddleware):
    """Middleware recording Prometheus metrics and a JSON access log line per request."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        method = request.method
        client_ip = request.client.host if request.client else "unknown"
        request_id = (
            request.headers.get("x-request-id")
            or request.headers.get("request-id")
            or str(uuid.uuid4())
        )

        start_perf = time.perf_counter()
        start_wall = time.time()

        def _finalize(response: Response) -> Response:
            latency = time.perf_counter() - start_perf
            status_code = getattr(response, "status_code", 500)
            # Route template keeps label cardinality bounded.
            route = request.scope.get("route")
            path_label = getattr(route, "path", path)

            _REQUEST_COUNTER.labels(method, path_label, str(status_code)).inc()
            _LATENCY_HISTOGRAM.labels(method, path_label).observe(latency)

            path_params = request.scope.get("path_params") or {}
            log_payload = {
                "timestamp": datetime.fromtimestamp(start_wall, tz=timezone.utc).isoformat(),
                "path": path,
                "method": method,
                "status": status_code,
                "latency_ms": int(latency * 1000),
                "request_id": request_id,
                "client_ip": client_ip,
                "store_id": path_params.get("store_id"),
                "product_id": path_params.get("product_id"),
            }
            print(json.dumps(log_payload))

            response.headers["x-request-id"] = request_id
            return response

        try:
            response = await call_next(request)
        except Exception:
            # Even if downstream fails we still want metrics/logs; re-raise after logging.
            _finalize(PlainTextResponse("Internal Server Error", status_code=500))
            raise

        return _finalize(response)


def metrics_endpoint() -> Response:
    """Return Prometheus metrics payload."""

    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
