from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from dealercrm.api.errors import domain_error_response
from dealercrm.core.auth import ActorUser, get_current_actor
from dealercrm.core.database import get_db
from dealercrm.core.errors import DomainError
from dealercrm.identity.schemas import (
    LoginRequest,
    TokenResponse,
    UserCreate,
    UserImportRequest,
    UserRead,
    UserUpdate,
    VerifyResponse,
)
from dealercrm.identity.service import AuthService, UserService


auth_router = APIRouter(prefix="/api/auth", tags=["auth"])
users_router = APIRouter(prefix="/api/users", tags=["users"])
auth_service = AuthService()
user_service = UserService()


@auth_router.post("/login", response_model=TokenResponse)
def login(
    request: Request,
    dto: LoginRequest,
    db: Session = Depends(get_db),
) -> TokenResponse | JSONResponse:
    try:
        return auth_service.login(db, dto)
    except DomainError as exc:
        return domain_error_response(request, exc)


@auth_router.get("/verify", response_model=VerifyResponse)
def verify(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> VerifyResponse | JSONResponse:
    try:
        return auth_service.verify(db, user)
    except DomainError as exc:
        return domain_error_response(request, exc)


@users_router.get("", response_model=list[UserRead])
def list_users(
    request: Request,
    active: bool | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[UserRead] | JSONResponse:
    try:
        return user_service.list_users(db, user, active=active)
    except DomainError as exc:
        return domain_error_response(request, exc)


@users_router.get("/{user_id}", response_model=UserRead)
def get_user(
    request: Request,
    user_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> UserRead | JSONResponse:
    try:
        return user_service.get_user(db, user, user_id)
    except DomainError as exc:
        return domain_error_response(request, exc)


@users_router.post("", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(
    request: Request,
    dto: UserCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> UserRead | JSONResponse:
    try:
        return user_service.create_user(db, user, dto)
    except DomainError as exc:
        return domain_error_response(request, exc)


@users_router.post("/import", response_model=list[UserRead], status_code=status.HTTP_201_CREATED)
def import_users(
    request: Request,
    dto: UserImportRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[UserRead] | JSONResponse:
    try:
        return user_service.import_users(db, user, dto)
    except DomainError as exc:
        return domain_error_response(request, exc)


@users_router.api_route("/{user_id}", methods=["PUT", "PATCH"], response_model=UserRead)
def update_user(
    request: Request,
    user_id: int,
    dto: UserUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> UserRead | JSONResponse:
    try:
        return user_service.update_user(db, user, user_id, dto)
    except DomainError as exc:
        return domain_error_response(request, exc)


@users_router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_user(
    request: Request,
    user_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> Response:
    try:
        user_service.delete_user(db, user, user_id)
    except DomainError as exc:
        return domain_error_response(request, exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
