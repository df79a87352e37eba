from __future__ import annotations

import dataclasses
import logging
from typing import Any

from sqlalchemy import or_
from sqlalchemy.sql import Select

from dealercrm.access.hierarchy import AccessScope, DbUserDirectory, HierarchyResolver
from dealercrm.access.teams import TeamClassifier, TeamPolicy
from dealercrm.core.auth import ActorUser
from dealercrm.core.config import Settings, get_settings
from dealercrm.core.errors import AuthorizationError, NotFoundError
from dealercrm.core.roles import OWNER_ONLY, Role, has_role
from dealercrm.metrics import observe_access_denied


logger = logging.getLogger("dealercrm.access.gateway")

_READ_ACTIONS = frozenset({"read", "list"})


class AccessGateway:
    """Applies one resolved ``AccessScope`` to every resource a request touches.

    Rows owned by nobody (``owner_id is None``) are visible to any caller.
    When the scope mode is ``team`` and the caller was classified into a team,
    team-tagged resources are partitioned by tag instead of by owner.
    """

    def __init__(self, scope: AccessScope, settings: Settings | None = None) -> None:
        self._scope = scope
        self._settings = settings or get_settings()

    @property
    def scope(self) -> AccessScope:
        return self._scope

    @property
    def partitioned_by_team(self) -> bool:
        return self._settings.access_scope_mode == "team" and self._scope.team is not None

    def scope_query(self, stmt: Select[Any], owner_column: Any, team_column: Any | None = None) -> Select[Any]:
        if team_column is not None and self.partitioned_by_team:
            if self._scope.all_teams:
                return stmt
            return stmt.where(or_(team_column == self._scope.team, team_column.is_(None)))

        if self._scope.unrestricted:
            return stmt
        return stmt.where(or_(owner_column.is_(None), owner_column.in_(sorted(self._scope.accessible_ids))))

    def can_see(self, owner_id: int | None, *, team: str | None = None, by_team: bool = False) -> bool:
        if by_team and self.partitioned_by_team:
            return self._scope.all_teams or team is None or team == self._scope.team
        return owner_id is None or self._scope.includes(owner_id)

    def ensure_visible(
        self,
        resource: str,
        owner_id: int | None,
        *,
        team: str | None = None,
        by_team: bool = False,
        action: str = "read",
    ) -> None:
        if self.can_see(owner_id, team=team, by_team=by_team):
            return
        self._deny(resource, action, f"{resource} is outside the accessible scope")

    def ensure_assignable(self, resource: str, target_id: int | None) -> None:
        # assignee checks always follow the reporting tree, even in team mode
        if target_id is None or self._scope.includes(target_id):
            return
        self._deny(resource, "assign", f"cannot assign {resource} to a user outside the accessible scope")

    def require_role(self, resource: str, action: str, allowed: frozenset[Role] | set[Role]) -> None:
        if has_role(self._scope.role, allowed):
            return
        self._deny(resource, action, f"role is not allowed to {action} {resource}")

    def ensure_deletable(
        self,
        resource: str,
        owner_id: int | None,
        *,
        team: str | None = None,
        by_team: bool = False,
        owner_only: bool | None = None,
    ) -> None:
        if owner_only is None:
            owner_only = self._settings.lead_delete_owner_only
        if owner_only:
            self.require_role(resource, "delete", OWNER_ONLY)
        self.ensure_visible(resource, owner_id, team=team, by_team=by_team, action="delete")

    def _deny(self, resource: str, action: str, message: str) -> None:
        observe_access_denied(resource=resource, action=action)
        logger.warning(
            "access_denied",
            extra={
                "caller_id": self._scope.caller_id,
                "resource": resource,
                "action": action,
                "scope_size": len(self._scope.accessible_ids),
            },
        )
        if action in _READ_ACTIONS and self._settings.mask_forbidden_as_not_found:
            raise NotFoundError(f"{resource} not found")
        raise AuthorizationError(message, details={"resource": resource, "action": action})


def build_access_gateway(session, actor: ActorUser, settings: Settings | None = None) -> AccessGateway:
    settings = settings or get_settings()
    directory = DbUserDirectory(session)
    scope = HierarchyResolver(directory).resolve_scope(actor.user_id)

    # unknown and deactivated callers stay confined to themselves
    if settings.access_scope_mode == "team" and scope.role is not None:
        policy = TeamPolicy.from_settings(settings)
        team = TeamClassifier(directory, policy).classify(actor.user_id)
        scope = dataclasses.replace(scope, team=team, all_teams=team is not None and team == policy.all_label)

    return AccessGateway(scope, settings)
