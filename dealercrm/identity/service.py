from __future__ import annotations

import logging

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from dealercrm import events
from dealercrm.access.gateway import build_access_gateway
from dealercrm.access.hierarchy import DbUserDirectory, would_create_cycle
from dealercrm.core.auth import ActorUser
from dealercrm.core.config import get_settings
from dealercrm.core.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    DomainValidationError,
    NotFoundError,
    StorageError,
)
from dealercrm.core.roles import MANAGER_TIER, OWNER_ONLY, TOP_TIER, Role, try_normalize_role
from dealercrm.core.security import create_access_token, hash_password, verify_password
from dealercrm.crm.models import Goal, Lead
from dealercrm.identity.models import User
from dealercrm.identity.schemas import (
    LoginRequest,
    TokenResponse,
    UserCreate,
    UserImportRequest,
    UserRead,
    UserUpdate,
    VerifyResponse,
)


logger = logging.getLogger("dealercrm.identity")


class AuthService:
    def login(self, session: Session, dto: LoginRequest) -> TokenResponse:
        user = session.scalar(select(User).where(User.email == dto.email.strip().lower()))
        if user is None or not verify_password(dto.password, user.password_hash):
            raise AuthenticationError("invalid credentials")
        if not user.active:
            raise AuthorizationError("user is deactivated")

        token = create_access_token(user_id=user.id, name=user.name, email=user.email, role=user.role)
        logger.info("login_succeeded", extra={"user_id": user.id})
        return TokenResponse(token=token, user=UserRead.model_validate(user))

    def verify(self, session: Session, actor: ActorUser) -> VerifyResponse:
        user = session.get(User, actor.user_id)
        if user is None:
            raise NotFoundError("user not found")
        return VerifyResponse(user=UserRead.model_validate(user))


class UserService:
    entity_type = "user"

    def list_users(self, session: Session, actor: ActorUser, *, active: bool | None = None) -> list[UserRead]:
        gateway = build_access_gateway(session, actor)
        stmt = gateway.scope_query(select(User), User.id)
        if active is not None:
            stmt = stmt.where(User.active.is_(active))
        users = session.scalars(stmt.order_by(User.role, User.name)).all()
        return [UserRead.model_validate(item) for item in users]

    def get_user(self, session: Session, actor: ActorUser, user_id: int) -> UserRead:
        gateway = build_access_gateway(session, actor)
        user = self._get_or_404(session, user_id)
        gateway.ensure_visible(self.entity_type, user.id)
        return UserRead.model_validate(user)

    def create_user(self, session: Session, actor: ActorUser, dto: UserCreate) -> UserRead:
        gateway = build_access_gateway(session, actor)
        gateway.require_role(self.entity_type, "create", MANAGER_TIER)
        self._ensure_role_grantable(gateway, dto.role)
        self._validate_password(dto.password)

        email = dto.email
        self._ensure_email_free(session, email)
        if dto.reports_to_id is not None:
            self._get_or_404(session, dto.reports_to_id, message="reports_to user not found")
            gateway.ensure_assignable(self.entity_type, dto.reports_to_id)

        user = User(
            name=dto.name.strip(),
            email=email,
            password_hash=hash_password(dto.password),
            role=dto.role.value,
            reports_to_id=dto.reports_to_id,
            active=dto.active,
        )
        session.add(user)
        self._flush_or_conflict(session)

        events.publish(
            events.USER_CREATED,
            actor_user_id=actor.user_id,
            payload={"user_id": user.id, "role": user.role, "reports_to_id": user.reports_to_id},
        )
        session.commit()
        session.refresh(user)
        return UserRead.model_validate(user)

    def update_user(self, session: Session, actor: ActorUser, user_id: int, dto: UserUpdate) -> UserRead:
        gateway = build_access_gateway(session, actor)
        gateway.require_role(self.entity_type, "update", MANAGER_TIER)
        user = self._get_or_404(session, user_id)
        gateway.ensure_visible(self.entity_type, user.id, action="update")

        payload = dto.model_dump(exclude_unset=True)
        if "name" in payload and payload["name"] is not None:
            user.name = payload["name"].strip()
        if payload.get("email") is not None:
            email = payload["email"]
            if email != user.email:
                self._ensure_email_free(session, email)
                user.email = email
        if payload.get("role") is not None and dto.role != try_normalize_role(user.role):
            if user.id == actor.user_id:
                raise AuthorizationError("users cannot change their own role", details={"user_id": user.id})
            self._ensure_role_grantable(gateway, dto.role)
            user.role = dto.role.value
        if payload.get("active") is not None:
            user.active = payload["active"]
        if payload.get("password") and payload["password"].strip():
            self._validate_password(payload["password"])
            user.password_hash = hash_password(payload["password"])

        if "reports_to_id" in payload:
            new_parent_id = payload["reports_to_id"]
            if new_parent_id is not None:
                self._get_or_404(session, new_parent_id, message="reports_to user not found")
                gateway.ensure_assignable(self.entity_type, new_parent_id)
                if would_create_cycle(DbUserDirectory(session).entries(), user.id, new_parent_id):
                    raise DomainValidationError(
                        "reports_to would create a cycle in the reporting tree",
                        details={"user_id": user.id, "reports_to_id": new_parent_id},
                    )
            user.reports_to_id = new_parent_id

        self._flush_or_conflict(session)
        session.commit()
        session.refresh(user)
        return UserRead.model_validate(user)

    def import_users(self, session: Session, actor: ActorUser, dto: UserImportRequest) -> list[UserRead]:
        """Create every account in ``dto`` in one transaction, in file order.

        ``reports_to`` may name an account created earlier in the same batch or one
        that already exists; forward references are rejected.
        """

        gateway = build_access_gateway(session, actor)
        gateway.require_role(self.entity_type, "import", OWNER_ONLY)

        batch: set[str] = set()
        existing_parents: dict[str, int] = {}
        for index, row in enumerate(dto.users):
            self._validate_password(row.password)
            if row.email in batch:
                raise ConflictError("identifier repeated in import", details={"email": row.email, "row": index})
            self._ensure_email_free(session, row.email)
            parent = row.reports_to
            if parent is not None and parent not in batch and parent not in existing_parents:
                parent_id = session.scalar(select(User.id).where(User.email == parent))
                if parent_id is None:
                    raise DomainValidationError(
                        "reports_to does not name a known user", details={"row": index, "reports_to": parent}
                    )
                existing_parents[parent] = parent_id
            batch.add(row.email)

        created_ids: dict[str, int] = {}
        created: list[User] = []
        try:
            for row in dto.users:
                parent = row.reports_to
                reports_to_id = None
                if parent is not None:
                    reports_to_id = created_ids.get(parent, existing_parents.get(parent))
                user = User(
                    name=row.name.strip(),
                    email=row.email,
                    password_hash=hash_password(row.password),
                    role=row.role.value,
                    reports_to_id=reports_to_id,
                    active=row.active,
                )
                session.add(user)
                session.flush()
                created_ids[row.email] = user.id
                created.append(user)
                events.publish(
                    events.USER_CREATED,
                    actor_user_id=actor.user_id,
                    payload={"user_id": user.id, "role": user.role, "reports_to_id": user.reports_to_id},
                )
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("user_import_failed", extra={"user_id": actor.user_id, "error": str(exc)})
            raise StorageError("users could not be imported") from exc

        logger.info("users_imported", extra={"user_id": actor.user_id, "scope_size": len(created)})
        return [UserRead.model_validate(user) for user in created]

    def delete_user(self, session: Session, actor: ActorUser, user_id: int) -> None:
        gateway = build_access_gateway(session, actor)
        gateway.require_role(self.entity_type, "delete", OWNER_ONLY)
        user = self._get_or_404(session, user_id)
        if try_normalize_role(user.role) == Role.OWNER:
            raise AuthorizationError("owner accounts cannot be deleted", details={"user_id": user.id})

        try:
            # leads survive their salesperson; reports move up one level
            session.execute(update(Lead).where(Lead.assigned_to_id == user.id).values(assigned_to_id=None))
            session.execute(update(Lead).where(Lead.created_by_id == user.id).values(created_by_id=None))
            session.execute(
                update(User).where(User.reports_to_id == user.id).values(reports_to_id=user.reports_to_id)
            )
            session.execute(delete(Goal).where(Goal.salesperson_id == user.id))
            session.delete(user)
            session.flush()

            events.publish(events.USER_DELETED, actor_user_id=actor.user_id, payload={"user_id": user_id})
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("user_delete_failed", extra={"user_id": user_id, "error": str(exc)})
            raise StorageError("user could not be deleted") from exc

    def _get_or_404(self, session: Session, user_id: int, *, message: str = "user not found") -> User:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError(message, details={"user_id": user_id})
        return user

    def _ensure_email_free(self, session: Session, email: str) -> None:
        if session.scalar(select(User.id).where(User.email == email)) is not None:
            raise ConflictError("email already registered", details={"email": email})

    def _ensure_role_grantable(self, gateway, role: Role) -> None:
        # top-tier roles see the whole tree, so only an owner may hand them out
        if role in TOP_TIER:
            gateway.require_role(self.entity_type, f"grant_{role.value}", OWNER_ONLY)

    def _validate_password(self, password: str) -> None:
        minimum = get_settings().min_password_length
        if len(password) < minimum:
            raise DomainValidationError(f"password must have at least {minimum} characters")

    def _flush_or_conflict(self, session: Session) -> None:
        try:
            session.flush()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError("email already registered") from exc
