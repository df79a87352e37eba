from __future__ import annotations

import hmac
import logging
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from dealercrm import events
from dealercrm.access.gateway import AccessGateway, build_access_gateway
from dealercrm.assignment.engine import AssignmentEngine, AssignmentRequest, build_assignment_engine
from dealercrm.core.auth import ActorUser
from dealercrm.core.config import get_settings
from dealercrm.core.errors import (
    AuthenticationError,
    DomainValidationError,
    NotFoundError,
    StorageError,
)
from dealercrm.core.roles import GOAL_EDITORS, MANAGER_TIER, OWNER_ONLY, has_role
from dealercrm.crm.models import BudgetTemplate, Goal, Lead, LeadHistory, LeadNote
from dealercrm.crm.schemas import (
    BudgetTemplateCreate,
    BudgetTemplateRead,
    BudgetTemplateUpdate,
    GoalRead,
    GoalUpdate,
    GoalUpsert,
    LeadCreate,
    LeadHistoryRead,
    LeadRead,
    LeadUpdate,
    NoteCreate,
    NoteRead,
    WebhookLeadPayload,
    WebhookLeadResponse,
)
from dealercrm.identity.models import User


logger = logging.getLogger("dealercrm.crm")

INITIAL_STATUS = "nuevo"
WEBHOOK_DEFAULT_MODEL = "No especificado"
WEBHOOK_DEFAULT_NOTE = "Lead recibido vía webhook"

# columns a partial update may never null out
_REQUIRED_LEAD_FIELDS = frozenset({"name", "phone", "vehicle_model", "delivery", "source"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def append_history(session: Session, lead: Lead, status: str, actor_name: str) -> LeadHistory:
    entry = LeadHistory(lead_id=lead.id, status=status, actor_name=actor_name)
    session.add(entry)
    session.flush()
    return entry


def to_lead_read(lead: Lead) -> LeadRead:
    read = LeadRead.model_validate(lead)
    assignee = lead.assigned_to
    return read.model_copy(update={"assigned_to_name": assignee.name if assignee is not None else None})


def _ensure_user_exists(session: Session, user_id: int, *, field: str) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise DomainValidationError(f"{field} does not reference an existing user", details={field: user_id})
    return user


def _insert_lead(
    session: Session,
    engine: AssignmentEngine,
    *,
    values: dict[str, Any],
    assigned_to_id: int | None,
    team: str | None,
    created_by_id: int | None,
    history_actor: str,
) -> LeadRead:
    """Insert the lead and its first history row, returning the read-back projection.

    Runs inside the caller's transaction; the caller commits or rolls back.
    """

    if assigned_to_id is None:
        assigned_to_id = engine.assign(session, AssignmentRequest(team=team))

    lead = Lead(
        **values,
        status=INITIAL_STATUS,
        assigned_to_id=assigned_to_id,
        team=team,
        created_by_id=created_by_id,
        status_changed_at=utcnow(),
    )
    session.add(lead)
    session.flush()
    append_history(session, lead, INITIAL_STATUS, history_actor)
    session.refresh(lead)
    return to_lead_read(lead)


class LeadService:
    entity_type = "lead"

    def __init__(self, assignment_engine: AssignmentEngine | None = None) -> None:
        self._assignment_engine = assignment_engine

    @property
    def assignment_engine(self) -> AssignmentEngine:
        return self._assignment_engine or build_assignment_engine()

    def list_leads(
        self,
        session: Session,
        actor: ActorUser,
        filters: dict[str, Any],
        cursor: str | None,
        limit: int,
    ) -> list[LeadRead]:
        gateway = build_access_gateway(session, actor)
        stmt = gateway.scope_query(select(Lead), Lead.assigned_to_id, Lead.team)

        if filters.get("status"):
            stmt = stmt.where(Lead.status == filters["status"])
        if filters.get("source"):
            stmt = stmt.where(Lead.source == filters["source"])
        if filters.get("assigned_to_id") is not None:
            stmt = stmt.where(Lead.assigned_to_id == filters["assigned_to_id"])
        if filters.get("team"):
            stmt = stmt.where(Lead.team == filters["team"])
        if filters.get("q"):
            q = f"%{filters['q']}%"
            stmt = stmt.where(
                or_(Lead.name.ilike(q), Lead.phone.ilike(q), Lead.email.ilike(q), Lead.vehicle_model.ilike(q))
            )

        offset = int(cursor) if cursor and cursor.isdigit() else 0
        leads = session.scalars(stmt.order_by(Lead.created_at.desc(), Lead.id.desc()).offset(offset).limit(limit)).all()
        return [to_lead_read(item) for item in leads]

    def get_lead(self, session: Session, actor: ActorUser, lead_id: int) -> LeadRead:
        gateway = build_access_gateway(session, actor)
        lead = self._get_visible(session, gateway, lead_id)
        return to_lead_read(lead)

    def list_history(self, session: Session, actor: ActorUser, lead_id: int) -> list[LeadHistoryRead]:
        gateway = build_access_gateway(session, actor)
        self._get_visible(session, gateway, lead_id)
        rows = session.scalars(
            select(LeadHistory)
            .where(LeadHistory.lead_id == lead_id)
            .order_by(LeadHistory.created_at.desc(), LeadHistory.id.desc())
        ).all()
        return [LeadHistoryRead.model_validate(item) for item in rows]

    def create_lead(self, session: Session, actor: ActorUser, dto: LeadCreate) -> LeadRead:
        gateway = build_access_gateway(session, actor)
        if dto.assigned_to_id is not None:
            _ensure_user_exists(session, dto.assigned_to_id, field="assigned_to_id")
            gateway.ensure_assignable(self.entity_type, dto.assigned_to_id)

        team = dto.team
        if gateway.partitioned_by_team and not gateway.scope.all_teams:
            if team is None:
                team = gateway.scope.team
            elif team != gateway.scope.team:
                gateway.require_role(self.entity_type, "retag", MANAGER_TIER)

        values = dto.model_dump(exclude={"assigned_to_id", "team"})
        try:
            lead = _insert_lead(
                session,
                self.assignment_engine,
                values=values,
                assigned_to_id=dto.assigned_to_id,
                team=team,
                created_by_id=actor.user_id,
                history_actor=actor.name,
            )
            events.publish(
                events.LEAD_CREATED,
                actor_user_id=actor.user_id,
                payload={"lead_id": lead.id, "assigned_to_id": lead.assigned_to_id, "source": lead.source},
            )
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("lead_create_failed", extra={"user_id": actor.user_id, "error": str(exc)})
            raise StorageError("lead could not be stored") from exc

        logger.info("lead_created", extra={"lead_id": lead.id, "assignee_id": lead.assigned_to_id})
        return lead

    def update_lead(self, session: Session, actor: ActorUser, lead_id: int, dto: LeadUpdate) -> LeadRead:
        gateway = build_access_gateway(session, actor)
        lead = self._get_visible(session, gateway, lead_id, action="update")

        payload = dto.model_dump(exclude_unset=True)
        new_status = payload.pop("status", None)
        if "assigned_to_id" in payload and payload["assigned_to_id"] != lead.assigned_to_id:
            target_id = payload["assigned_to_id"]
            if target_id is not None:
                _ensure_user_exists(session, target_id, field="assigned_to_id")
            gateway.ensure_assignable(self.entity_type, target_id)
        if "team" in payload and payload["team"] != lead.team:
            gateway.require_role(self.entity_type, "retag", MANAGER_TIER)

        for key, value in payload.items():
            if value is None and key in _REQUIRED_LEAD_FIELDS:
                continue
            setattr(lead, key, value)

        status_changed = new_status is not None and new_status != lead.status
        previous_status = lead.status
        try:
            if status_changed:
                lead.status = new_status
                lead.status_changed_at = utcnow()
                append_history(session, lead, new_status, actor.name)
            lead.updated_at = utcnow()
            session.flush()

            events.publish(events.LEAD_UPDATED, actor_user_id=actor.user_id, payload={"lead_id": lead.id})
            if status_changed:
                events.publish(
                    events.LEAD_STATUS_CHANGED,
                    actor_user_id=actor.user_id,
                    payload={"lead_id": lead.id, "from": previous_status, "to": new_status},
                )
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("lead_update_failed", extra={"lead_id": lead_id, "error": str(exc)})
            raise StorageError("lead could not be updated") from exc

        session.refresh(lead)
        return to_lead_read(lead)

    def delete_lead(self, session: Session, actor: ActorUser, lead_id: int) -> None:
        gateway = build_access_gateway(session, actor)
        lead = self._get_or_404(session, lead_id)
        gateway.ensure_deletable(self.entity_type, lead.assigned_to_id, team=lead.team, by_team=True)

        try:
            session.delete(lead)
            session.flush()
            events.publish(events.LEAD_DELETED, actor_user_id=actor.user_id, payload={"lead_id": lead_id})
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("lead_delete_failed", extra={"lead_id": lead_id, "error": str(exc)})
            raise StorageError("lead could not be deleted") from exc

    def bulk_delete(self, session: Session, actor: ActorUser, ids: list[int]) -> int:
        """Delete every lead in ``ids`` or none of them."""

        gateway = build_access_gateway(session, actor)
        wanted = sorted(set(ids))
        leads = session.scalars(select(Lead).where(Lead.id.in_(wanted))).all()
        missing = sorted(set(wanted) - {lead.id for lead in leads})
        if missing:
            raise NotFoundError("some leads do not exist", details={"missing_ids": missing})

        for lead in leads:
            gateway.ensure_deletable(self.entity_type, lead.assigned_to_id, team=lead.team, by_team=True)

        try:
            for lead in leads:
                session.delete(lead)
            session.flush()
            events.publish(events.LEAD_DELETED, actor_user_id=actor.user_id, payload={"lead_ids": wanted})
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("lead_bulk_delete_failed", extra={"scope_size": len(wanted), "error": str(exc)})
            raise StorageError("leads could not be deleted") from exc
        return len(leads)

    def _get_or_404(self, session: Session, lead_id: int) -> Lead:
        lead = session.get(Lead, lead_id)
        if lead is None:
            raise NotFoundError("lead not found", details={"lead_id": lead_id})
        return lead

    def _get_visible(self, session: Session, gateway: AccessGateway, lead_id: int, *, action: str = "read") -> Lead:
        lead = self._get_or_404(session, lead_id)
        gateway.ensure_visible(self.entity_type, lead.assigned_to_id, team=lead.team, by_team=True, action=action)
        return lead


class WebhookService:
    """Lead intake for unauthenticated integrations (ad platforms, form relays)."""

    def __init__(self, assignment_engine: AssignmentEngine | None = None) -> None:
        self._assignment_engine = assignment_engine

    def verify_secret(self, provided: str | None) -> None:
        expected = get_settings().webhook_secret
        if not expected:
            return
        if not provided or not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
            raise AuthenticationError("invalid webhook secret")

    def receive_lead(self, session: Session, payload: WebhookLeadPayload) -> WebhookLeadResponse:
        settings = get_settings()
        name = (payload.name or "").strip()
        phone = (payload.phone or "").strip()
        if not name:
            raise DomainValidationError("name is required", details={"field": "name"})
        if not phone:
            raise DomainValidationError("phone is required", details={"field": "phone"})
        if payload.assigned_to_id is not None:
            _ensure_user_exists(session, payload.assigned_to_id, field="assigned_to_id")

        values = {
            "name": name,
            "phone": phone,
            "email": payload.email or None,
            "vehicle_model": (payload.vehicle_model or "").strip() or WEBHOOK_DEFAULT_MODEL,
            "payment_method": payload.payment_method or settings.webhook_default_payment,
            "budget": payload.budget or None,
            "trade_in_info": payload.trade_in_info or None,
            "delivery": payload.delivery,
            "lead_date": date.today(),
            "source": payload.source or settings.webhook_default_source,
            "notes": payload.notes or WEBHOOK_DEFAULT_NOTE,
        }
        engine = self._assignment_engine or build_assignment_engine(settings)
        try:
            lead = _insert_lead(
                session,
                engine,
                values=values,
                assigned_to_id=payload.assigned_to_id,
                team=payload.team,
                created_by_id=None,
                history_actor=settings.webhook_actor_name,
            )
            events.publish(
                events.LEAD_CREATED,
                actor_user_id=None,
                payload={"lead_id": lead.id, "assigned_to_id": lead.assigned_to_id, "source": lead.source},
            )
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("webhook_lead_failed", extra={"error": str(exc)})
            raise StorageError("lead could not be stored") from exc

        logger.info("webhook_lead_received", extra={"lead_id": lead.id, "assignee_id": lead.assigned_to_id})
        return WebhookLeadResponse(
            message="lead created",
            lead_id=lead.id,
            assigned_to=lead.assigned_to_name or "unassigned",
            lead=lead,
        )


class NoteService:
    entity_type = "note"

    def list_for_lead(self, session: Session, actor: ActorUser, lead_id: int) -> list[NoteRead]:
        gateway = build_access_gateway(session, actor)
        self._ensure_lead_visible(session, gateway, lead_id)
        notes = session.scalars(
            select(LeadNote).where(LeadNote.lead_id == lead_id).order_by(LeadNote.created_at.desc(), LeadNote.id.desc())
        ).all()
        return [NoteRead.model_validate(item) for item in notes]

    def create_note(self, session: Session, actor: ActorUser, dto: NoteCreate) -> NoteRead:
        gateway = build_access_gateway(session, actor)
        self._ensure_lead_visible(session, gateway, dto.lead_id)
        note = LeadNote(lead_id=dto.lead_id, body=dto.body, author_id=actor.user_id, author_name=actor.name)
        session.add(note)
        session.commit()
        session.refresh(note)
        return NoteRead.model_validate(note)

    def delete_note(self, session: Session, actor: ActorUser, note_id: int) -> None:
        note = session.get(LeadNote, note_id)
        if note is None:
            raise NotFoundError("note not found", details={"note_id": note_id})
        if note.author_id != actor.user_id:
            build_access_gateway(session, actor).require_role(self.entity_type, "delete", MANAGER_TIER)
        session.delete(note)
        session.commit()

    def _ensure_lead_visible(self, session: Session, gateway: AccessGateway, lead_id: int) -> None:
        lead = session.get(Lead, lead_id)
        if lead is None:
            raise NotFoundError("lead not found", details={"lead_id": lead_id})
        gateway.ensure_visible("lead", lead.assigned_to_id, team=lead.team, by_team=True)


class GoalService:
    entity_type = "goal"

    def list_goals(self, session: Session, actor: ActorUser, *, month: str | None = None) -> list[GoalRead]:
        gateway = build_access_gateway(session, actor)
        stmt = gateway.scope_query(select(Goal), Goal.salesperson_id)
        if month:
            stmt = stmt.where(Goal.month == month)
        goals = session.scalars(stmt.order_by(Goal.month.desc(), Goal.salesperson_id)).all()
        return [self._to_read(item) for item in goals]

    def upsert_goal(self, session: Session, actor: ActorUser, dto: GoalUpsert) -> tuple[GoalRead, bool]:
        """Create or overwrite the goal for (salesperson, month); returns (goal, created)."""

        gateway = build_access_gateway(session, actor)
        gateway.require_role(self.entity_type, "upsert", GOAL_EDITORS)
        if session.get(User, dto.salesperson_id) is None:
            raise NotFoundError("salesperson not found", details={"salesperson_id": dto.salesperson_id})
        gateway.ensure_assignable(self.entity_type, dto.salesperson_id)

        goal = self._find_goal(session, dto.salesperson_id, dto.month)
        created = goal is None
        if goal is None:
            goal = Goal(
                salesperson_id=dto.salesperson_id,
                month=dto.month,
                sales_target=dto.sales_target,
                lead_target=dto.lead_target,
                created_by_id=actor.user_id,
            )
            session.add(goal)
            try:
                session.commit()
            except IntegrityError:
                # a concurrent upsert inserted the same (salesperson, month) first
                session.rollback()
                logger.info(
                    "goal_upsert_retried_as_update",
                    extra={"user_id": actor.user_id, "assignee_id": dto.salesperson_id},
                )
                goal = self._find_goal(session, dto.salesperson_id, dto.month)
                if goal is None:
                    raise StorageError("goal could not be stored") from None
                created = False

        if not created:
            goal.sales_target = dto.sales_target
            goal.lead_target = dto.lead_target
            goal.updated_at = utcnow()
            session.commit()
        session.refresh(goal)
        return self._to_read(goal), created

    def _find_goal(self, session: Session, salesperson_id: int, month: str) -> Goal | None:
        return session.scalar(select(Goal).where(Goal.salesperson_id == salesperson_id, Goal.month == month))

    def update_goal(self, session: Session, actor: ActorUser, goal_id: int, dto: GoalUpdate) -> GoalRead:
        gateway = build_access_gateway(session, actor)
        gateway.require_role(self.entity_type, "update", GOAL_EDITORS)
        goal = self._get_or_404(session, goal_id)
        gateway.ensure_visible(self.entity_type, goal.salesperson_id, action="update")

        if dto.sales_target is not None:
            goal.sales_target = dto.sales_target
        if dto.lead_target is not None:
            goal.lead_target = dto.lead_target
        goal.updated_at = utcnow()
        session.commit()
        session.refresh(goal)
        return self._to_read(goal)

    def delete_goal(self, session: Session, actor: ActorUser, goal_id: int) -> None:
        gateway = build_access_gateway(session, actor)
        gateway.require_role(self.entity_type, "delete", GOAL_EDITORS)
        goal = self._get_or_404(session, goal_id)
        gateway.ensure_visible(self.entity_type, goal.salesperson_id, action="delete")
        session.delete(goal)
        session.commit()

    def _get_or_404(self, session: Session, goal_id: int) -> Goal:
        goal = session.get(Goal, goal_id)
        if goal is None:
            raise NotFoundError("goal not found", details={"goal_id": goal_id})
        return goal

    def _to_read(self, goal: Goal) -> GoalRead:
        read = GoalRead.model_validate(goal)
        return read.model_copy(update={"salesperson_name": goal.salesperson.name if goal.salesperson else None})


class BudgetTemplateService:
    entity_type = "budget_template"

    def list_templates(self, session: Session, actor: ActorUser, *, include_inactive: bool = False) -> list[BudgetTemplateRead]:
        stmt = select(BudgetTemplate)
        if not (include_inactive and self._is_owner(session, actor)):
            stmt = stmt.where(BudgetTemplate.active.is_(True))
        templates = session.scalars(stmt.order_by(BudgetTemplate.created_at.desc(), BudgetTemplate.id.desc())).all()
        return [BudgetTemplateRead.model_validate(item) for item in templates]

    def get_template(self, session: Session, actor: ActorUser, template_id: int) -> BudgetTemplateRead:
        template = session.get(BudgetTemplate, template_id)
        if template is None or (not template.active and not self._is_owner(session, actor)):
            raise NotFoundError("budget template not found", details={"template_id": template_id})
        return BudgetTemplateRead.model_validate(template)

    def create_template(self, session: Session, actor: ActorUser, dto: BudgetTemplateCreate) -> BudgetTemplateRead:
        build_access_gateway(session, actor).require_role(self.entity_type, "create", OWNER_ONLY)
        template = BudgetTemplate(**dto.model_dump(), active=True, created_by_id=actor.user_id)
        session.add(template)
        session.commit()
        session.refresh(template)
        return BudgetTemplateRead.model_validate(template)

    def update_template(
        self,
        session: Session,
        actor: ActorUser,
        template_id: int,
        dto: BudgetTemplateUpdate,
    ) -> BudgetTemplateRead:
        build_access_gateway(session, actor).require_role(self.entity_type, "update", OWNER_ONLY)
        template = self._get_or_404(session, template_id)
        for key, value in dto.model_dump(exclude_unset=True).items():
            if value is None and key in {"brand", "vehicle_model", "active"}:
                continue
            setattr(template, key, value)
        template.updated_at = utcnow()
        session.commit()
        session.refresh(template)
        return BudgetTemplateRead.model_validate(template)

    def delete_template(self, session: Session, actor: ActorUser, template_id: int) -> None:
        build_access_gateway(session, actor).require_role(self.entity_type, "delete", OWNER_ONLY)
        template = self._get_or_404(session, template_id)
        session.delete(template)
        session.commit()

    def _is_owner(self, session: Session, actor: ActorUser) -> bool:
        return has_role(build_access_gateway(session, actor).scope.role, OWNER_ONLY)

    def _get_or_404(self, session: Session, template_id: int) -> BudgetTemplate:
        template = session.get(BudgetTemplate, template_id)
        if template is None:
            raise NotFoundError("budget template not found", details={"template_id": template_id})
        return template
