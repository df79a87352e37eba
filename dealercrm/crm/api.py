from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Body, Depends, Header, Query, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from dealercrm.api.errors import domain_error_response
from dealercrm.core.auth import ActorUser, get_current_actor
from dealercrm.core.database import get_db
from dealercrm.core.errors import DomainError
from dealercrm.crm.schemas import (
    BudgetTemplateCreate,
    BudgetTemplateRead,
    BudgetTemplateUpdate,
    GoalRead,
    GoalUpdate,
    GoalUpsert,
    LeadBulkDeleteRequest,
    LeadBulkDeleteResponse,
    LeadCreate,
    LeadHistoryRead,
    LeadRead,
    LeadUpdate,
    NoteCreate,
    NoteRead,
    WebhookLeadPayload,
    WebhookLeadResponse,
    WebhookStatus,
)
from dealercrm.crm.service import (
    BudgetTemplateService,
    GoalService,
    LeadService,
    NoteService,
    WebhookService,
)


leads_router = APIRouter(prefix="/api/leads", tags=["leads"])
notes_router = APIRouter(prefix="/api/notes", tags=["notes"])
goals_router = APIRouter(prefix="/api/goals", tags=["goals"])
budget_templates_router = APIRouter(prefix="/api/budget-templates", tags=["budget_templates"])
webhook_router = APIRouter(prefix="/api/webhook", tags=["webhook"])
lead_service = LeadService()
note_service = NoteService()
goal_service = GoalService()
budget_template_service = BudgetTemplateService()
webhook_service = WebhookService()


@leads_router.get("", response_model=list[LeadRead])
def list_leads(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    source: str | None = Query(default=None),
    assigned_to_id: int | None = Query(default=None),
    team: str | None = Query(default=None),
    q: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[LeadRead] | JSONResponse:
    try:
        return lead_service.list_leads(
            db,
            user,
            filters={
                "status": status_filter,
                "source": source,
                "assigned_to_id": assigned_to_id,
                "team": team,
                "q": q,
            },
            cursor=cursor,
            limit=limit,
        )
    except DomainError as exc:
        return domain_error_response(request, exc)


@leads_router.post("", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.create_lead(db, user, dto)
    except DomainError as exc:
        return domain_error_response(request, exc)


@leads_router.post("/bulk-delete", response_model=LeadBulkDeleteResponse)
def bulk_delete_leads(
    request: Request,
    dto: LeadBulkDeleteRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> LeadBulkDeleteResponse | JSONResponse:
    try:
        return LeadBulkDeleteResponse(deleted=lead_service.bulk_delete(db, user, dto.ids))
    except DomainError as exc:
        return domain_error_response(request, exc)


@leads_router.get("/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.get_lead(db, user, lead_id)
    except DomainError as exc:
        return domain_error_response(request, exc)


@leads_router.api_route("/{lead_id}", methods=["PUT", "PATCH"], response_model=LeadRead)
def update_lead(
    request: Request,
    lead_id: int,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.update_lead(db, user, lead_id, dto)
    except DomainError as exc:
        return domain_error_response(request, exc)


@leads_router.delete("/{lead_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_lead(
    request: Request,
    lead_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> Response:
    try:
        lead_service.delete_lead(db, user, lead_id)
    except DomainError as exc:
        return domain_error_response(request, exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@leads_router.get("/{lead_id}/history", response_model=list[LeadHistoryRead])
def list_lead_history(
    request: Request,
    lead_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[LeadHistoryRead] | JSONResponse:
    try:
        return lead_service.list_history(db, user, lead_id)
    except DomainError as exc:
        return domain_error_response(request, exc)


@leads_router.get("/{lead_id}/notes", response_model=list[NoteRead])
def list_lead_notes(
    request: Request,
    lead_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[NoteRead] | JSONResponse:
    try:
        return note_service.list_for_lead(db, user, lead_id)
    except DomainError as exc:
        return domain_error_response(request, exc)


@notes_router.post("", response_model=NoteRead, status_code=status.HTTP_201_CREATED)
def create_note(
    request: Request,
    dto: NoteCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> NoteRead | JSONResponse:
    try:
        return note_service.create_note(db, user, dto)
    except DomainError as exc:
        return domain_error_response(request, exc)


@notes_router.delete("/{note_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_note(
    request: Request,
    note_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> Response:
    try:
        note_service.delete_note(db, user, note_id)
    except DomainError as exc:
        return domain_error_response(request, exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@goals_router.get("", response_model=list[GoalRead])
def list_goals(
    request: Request,
    month: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[GoalRead] | JSONResponse:
    try:
        return goal_service.list_goals(db, user, month=month)
    except DomainError as exc:
        return domain_error_response(request, exc)


@goals_router.post("", response_model=GoalRead, status_code=status.HTTP_201_CREATED)
def upsert_goal(
    request: Request,
    response: Response,
    dto: GoalUpsert,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> GoalRead | JSONResponse:
    try:
        goal, created = goal_service.upsert_goal(db, user, dto)
    except DomainError as exc:
        return domain_error_response(request, exc)
    if not created:
        response.status_code = status.HTTP_200_OK
    return goal


@goals_router.api_route("/{goal_id}", methods=["PUT", "PATCH"], response_model=GoalRead)
def update_goal(
    request: Request,
    goal_id: int,
    dto: GoalUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> GoalRead | JSONResponse:
    try:
        return goal_service.update_goal(db, user, goal_id, dto)
    except DomainError as exc:
        return domain_error_response(request, exc)


@goals_router.delete("/{goal_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_goal(
    request: Request,
    goal_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> Response:
    try:
        goal_service.delete_goal(db, user, goal_id)
    except DomainError as exc:
        return domain_error_response(request, exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@budget_templates_router.get("", response_model=list[BudgetTemplateRead])
def list_budget_templates(
    request: Request,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[BudgetTemplateRead] | JSONResponse:
    try:
        return budget_template_service.list_templates(db, user, include_inactive=include_inactive)
    except DomainError as exc:
        return domain_error_response(request, exc)


@budget_templates_router.get("/{template_id}", response_model=BudgetTemplateRead)
def get_budget_template(
    request: Request,
    template_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> BudgetTemplateRead | JSONResponse:
    try:
        return budget_template_service.get_template(db, user, template_id)
    except DomainError as exc:
        return domain_error_response(request, exc)


@budget_templates_router.post("", response_model=BudgetTemplateRead, status_code=status.HTTP_201_CREATED)
def create_budget_template(
    request: Request,
    dto: BudgetTemplateCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> BudgetTemplateRead | JSONResponse:
    try:
        return budget_template_service.create_template(db, user, dto)
    except DomainError as exc:
        return domain_error_response(request, exc)


@budget_templates_router.api_route("/{template_id}", methods=["PUT", "PATCH"], response_model=BudgetTemplateRead)
def update_budget_template(
    request: Request,
    template_id: int,
    dto: BudgetTemplateUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> BudgetTemplateRead | JSONResponse:
    try:
        return budget_template_service.update_template(db, user, template_id, dto)
    except DomainError as exc:
        return domain_error_response(request, exc)


@budget_templates_router.delete("/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_budget_template(
    request: Request,
    template_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> Response:
    try:
        budget_template_service.delete_template(db, user, template_id)
    except DomainError as exc:
        return domain_error_response(request, exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


def _receive_webhook_lead(
    request: Request,
    payload: WebhookLeadPayload,
    db: Session,
    webhook_secret: str | None,
) -> WebhookLeadResponse | JSONResponse:
    try:
        webhook_service.verify_secret(webhook_secret)
        return webhook_service.receive_lead(db, payload)
    except DomainError as exc:
        return domain_error_response(request, exc)


@webhook_router.post("/leads", response_model=WebhookLeadResponse, status_code=status.HTTP_201_CREATED)
def receive_webhook_lead(
    request: Request,
    payload: WebhookLeadPayload = Body(...),
    db: Session = Depends(get_db),
    webhook_secret: str | None = Header(default=None, alias="X-Webhook-Secret"),
) -> WebhookLeadResponse | JSONResponse:
    return _receive_webhook_lead(request, payload, db, webhook_secret)


@webhook_router.post("/zapier/meta-lead", response_model=WebhookLeadResponse, status_code=status.HTTP_201_CREATED)
def receive_legacy_webhook_lead(
    request: Request,
    payload: WebhookLeadPayload = Body(...),
    db: Session = Depends(get_db),
    webhook_secret: str | None = Header(default=None, alias="X-Webhook-Secret"),
) -> WebhookLeadResponse | JSONResponse:
    return _receive_webhook_lead(request, payload, db, webhook_secret)


@webhook_router.get("/test", response_model=WebhookStatus)
def webhook_status() -> WebhookStatus:
    return WebhookStatus(message="webhook endpoint is up", timestamp=datetime.now(timezone.utc))
