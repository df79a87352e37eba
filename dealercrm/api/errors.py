from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi.responses import JSONResponse
from starlette.requests import Request

from dealercrm.context import get_correlation_id
from dealercrm.core.errors import DomainError


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def domain_error_response(request: Request, exc: DomainError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.kind,
        message=exc.message,
        details=exc.details,
    )
