from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from crmflow.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("crmflow.request")

_QUIET_PATHS = {"/health", "/metrics"}


def _log_request(request: Request, status_code: int, started: float, *, failed: bool = False) -> None:
    # Routing has run by now, so the label is the route template when one matched.
    path = resolve_http_path_label(request)
    elapsed = time.perf_counter() - started
    observe_http_request(method=request.method, path=path, status=status_code, duration=elapsed)
    fields = {
        "method": request.method,
        "path": path,
        "status_code": status_code,
        "duration_ms": round(elapsed * 1000, 2),
    }
    if failed:
        logger.error("http.error", exc_info=True, extra=fields)
    elif path in _QUIET_PATHS:
        logger.debug("http.request", extra=fields)
    else:
        logger.info("http.request", extra=fields)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            _log_request(request, 500, started, failed=True)
            raise
        _log_request(request, response.status_code, started)
        return response
