from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Protocol

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dealercrm.core.roles import TOP_TIER, Role, try_normalize_role
from dealercrm.identity.models import User
from dealercrm.metrics import observe_scope_resolution


logger = logging.getLogger("dealercrm.access.hierarchy")
tracer = trace.get_tracer("dealercrm.access")


@dataclass(frozen=True, slots=True)
class DirectoryEntry:
    """One node of the reporting tree as seen by scope resolution."""

    id: int
    role: Role | None
    reports_to_id: int | None = None
    active: bool = True
    name: str = ""


@dataclass(frozen=True, slots=True)
class AccessScope:
    caller_id: int
    role: Role | None
    accessible_ids: frozenset[int]
    unrestricted: bool = False
    team: str | None = None
    all_teams: bool = False

    def includes(self, user_id: int | None) -> bool:
        if user_id is None:
            return False
        return self.unrestricted or user_id in self.accessible_ids


class UserDirectory(Protocol):
    """Read access to the reporting tree."""

    def entries(self) -> list[DirectoryEntry]:
        ...


class InMemoryUserDirectory:
    def __init__(self, entries: Iterable[DirectoryEntry] = ()) -> None:
        self._entries = list(entries)

    def entries(self) -> list[DirectoryEntry]:
        return list(self._entries)


class DbUserDirectory:
    """Directory backed by the ``crm_user`` table on an injected session."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def entries(self) -> list[DirectoryEntry]:
        rows = self._session.execute(
            select(User.id, User.name, User.role, User.reports_to_id, User.active).order_by(User.id)
        ).all()
        return [
            DirectoryEntry(
                id=row.id,
                role=try_normalize_role(row.role),
                reports_to_id=row.reports_to_id,
                active=bool(row.active),
                name=row.name or "",
            )
            for row in rows
        ]


def build_children_map(entries: Iterable[DirectoryEntry]) -> dict[int, list[int]]:
    children: dict[int, list[int]] = {}
    for entry in entries:
        children.setdefault(entry.id, [])
        if entry.reports_to_id is not None and entry.reports_to_id != entry.id:
            children.setdefault(entry.reports_to_id, []).append(entry.id)
    return children


def collect_descendants(children: Mapping[int, list[int]], root_id: int) -> set[int]:
    """Every node below ``root_id``; terminates on cyclic data."""

    descendants: set[int] = set()
    stack = list(children.get(root_id, []))
    while stack:
        current = stack.pop()
        if current == root_id or current in descendants:
            continue
        descendants.add(current)
        stack.extend(children.get(current, []))
    return descendants


def would_create_cycle(entries: Iterable[DirectoryEntry], user_id: int, new_parent_id: int | None) -> bool:
    """True when pointing ``user_id`` at ``new_parent_id`` closes a loop in the reporting tree."""

    if new_parent_id is None:
        return False
    if new_parent_id == user_id:
        return True

    parent_of = {entry.id: entry.reports_to_id for entry in entries}
    bound = len(parent_of) + 1
    current: int | None = new_parent_id
    hops = 0
    while current is not None:
        if current == user_id:
            return True
        hops += 1
        if hops > bound:
            # existing data already loops
            return True
        current = parent_of.get(current)
    return False


class HierarchyResolver:
    """Computes which user ids a caller may see or act upon.

    Role and active flag are read from the caller's stored directory entry, not
    from whatever the caller's token claims. Unknown or deactivated callers get a
    scope holding only themselves and no role.
    """

    def __init__(self, directory: UserDirectory) -> None:
        self._directory = directory

    def resolve_accessible_ids(self, caller_id: int) -> frozenset[int]:
        return self.resolve_scope(caller_id).accessible_ids

    def resolve_scope(self, caller_id: int) -> AccessScope:
        with tracer.start_as_current_span("hierarchy.resolve") as span:
            span.set_attribute("caller_id", caller_id)
            try:
                entries = self._directory.entries()
            except SQLAlchemyError as exc:
                logger.exception("scope_resolution_failed", extra={"caller_id": caller_id, "error": str(exc)})
                observe_scope_resolution("storage_error")
                return _self_only(caller_id)

            scope = self._resolve(caller_id, entries)
            span.set_attribute("scope_size", len(scope.accessible_ids))
            return scope

    def _resolve(self, caller_id: int, entries: list[DirectoryEntry]) -> AccessScope:
        caller = next((entry for entry in entries if entry.id == caller_id), None)
        if caller is None:
            logger.warning("scope_caller_unknown", extra={"caller_id": caller_id})
            observe_scope_resolution("unknown_caller")
            return _self_only(caller_id)
        if not caller.active:
            logger.warning("scope_caller_inactive", extra={"caller_id": caller_id})
            observe_scope_resolution("inactive_caller")
            return _self_only(caller_id)

        if caller.role in TOP_TIER:
            observe_scope_resolution("unrestricted")
            return AccessScope(
                caller_id=caller_id,
                role=caller.role,
                accessible_ids=frozenset(entry.id for entry in entries),
                unrestricted=True,
            )

        descendants = collect_descendants(build_children_map(entries), caller_id)
        observe_scope_resolution("subtree")
        return AccessScope(caller_id=caller_id, role=caller.role, accessible_ids=frozenset({caller_id, *descendants}))


def _self_only(caller_id: int) -> AccessScope:
    return AccessScope(caller_id=caller_id, role=None, accessible_ids=frozenset({caller_id}))
