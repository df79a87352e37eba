from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, status
from jose import JWTError
from starlette.requests import Request

from dealercrm.context import get_correlation_id
from dealercrm.core.roles import Role, try_normalize_role
from dealercrm.core.security import decode_access_token


@dataclass
class ActorUser:
    user_id: int
    name: str
    role: Role | None
    email: str | None = None
    correlation_id: str | None = None


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header[len("Bearer ") :] if auth_header.startswith("Bearer ") else ""


async def get_current_actor(request: Request) -> ActorUser:
    token = _bearer_token(request)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="token not provided")

    try:
        payload = decode_access_token(token)
        user_id = int(payload["sub"])
    except (JWTError, KeyError, TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid token") from None

    return ActorUser(
        user_id=user_id,
        name=str(payload.get("name") or ""),
        role=try_normalize_role(payload.get("role")),
        email=payload.get("email"),
        correlation_id=get_correlation_id() or getattr(request.state, "correlation_id", None),
    )
