from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from dealercrm.access.gateway import build_access_gateway
from dealercrm.core.auth import ActorUser, get_current_actor
from dealercrm.core.config import get_settings
from dealercrm.core.database import get_db
from dealercrm.core.roles import OWNER_ONLY, has_role
from dealercrm.crm.api import budget_templates_router, goals_router, leads_router, notes_router, webhook_router
from dealercrm.identity.api import auth_router, users_router
from dealercrm.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(auth_router)
router.include_router(users_router)
router.include_router(leads_router)
router.include_router(notes_router)
router.include_router(goals_router)
router.include_router(budget_templates_router)
router.include_router(webhook_router)


@router.get("/health", tags=["system"])
@router.get("/api/health", tags=["system"], include_in_schema=False)
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
def me(
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> dict[str, object]:
    scope = build_access_gateway(db, user).scope
    return {
        "user_id": user.user_id,
        "name": user.name,
        "role": scope.role.value if scope.role is not None else None,
        "unrestricted": scope.unrestricted,
        "accessible_ids": sorted(scope.accessible_ids),
        "team": scope.team,
    }


@router.get("/metrics", tags=["system"])
def metrics(
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if not has_role(build_access_gateway(db, user).scope.role, OWNER_ONLY):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="metrics are restricted to the owner")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
