from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from dealercrm.context import reset_correlation_id, set_correlation_id


CORRELATION_HEADER = "x-correlation-id"
# form relays and ad-platform webhooks forward their own delivery ids here
FALLBACK_HEADERS = ("x-request-id",)
MAX_CORRELATION_ID_LENGTH = 128

_ALLOWED = re.compile(r"^[A-Za-z0-9._:\-]+$")


def accept_correlation_id(value: str | None) -> str | None:
    """Return ``value`` when it is safe to echo into logs and headers, else ``None``."""

    if value is None:
        return None
    value = value.strip()
    if not value or len(value) > MAX_CORRELATION_ID_LENGTH or not _ALLOWED.match(value):
        return None
    return value


def correlation_id_for(request: Request) -> str:
    for header in (CORRELATION_HEADER, *FALLBACK_HEADERS):
        accepted = accept_correlation_id(request.headers.get(header))
        if accepted is not None:
            return accepted
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = correlation_id_for(request)
        request.state.correlation_id = correlation_id
        token = set_correlation_id(correlation_id)
        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
