from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from dealercrm.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("dealercrm.request")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            path = resolve_http_path_label(request)
            observe_http_request(method=method, path=path, status=500, duration=duration_ms / 1000)
            logger.error(
                "http.error",
                exc_info=True,
                extra={"method": method, "path": path, "status_code": 500, "duration_ms": duration_ms},
            )
            raise

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        path = resolve_http_path_label(request)
        observe_http_request(method=method, path=path, status=response.status_code, duration=duration_ms / 1000)
        logger.info(
            "http.request",
            extra={"method": method, "path": path, "status_code": response.status_code, "duration_ms": duration_ms},
        )
        return response
