from __future__ import annotations

import logging
import random
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.orm import Session

from dealercrm.access.hierarchy import DbUserDirectory, build_children_map, collect_descendants
from dealercrm.access.teams import TeamClassifier, TeamPolicy
from dealercrm.assignment.models import AssignmentCursor
from dealercrm.core.config import Settings, get_settings
from dealercrm.core.roles import SALESPERSON_ROLES
from dealercrm.crm.models import Lead
from dealercrm.identity.models import User
from dealercrm.metrics import observe_assignment


logger = logging.getLogger("dealercrm.assignment")
tracer = trace.get_tracer("dealercrm.assignment")

DEFAULT_POOL = "salespeople"


@dataclass(frozen=True, slots=True)
class AssignmentRequest:
    team: str | None = None


class AssignmentStrategy(Protocol):
    name: str

    def pick(self, session: Session, request: AssignmentRequest) -> int | None:
        ...


def next_in_rotation(roster: Sequence[int], last_assigned: int | None) -> int | None:
    """Successor of ``last_assigned`` in ``roster``, wrapping at the end.

    Returns the first member when nothing was assigned yet or the last
    assignee is no longer on the roster, and ``None`` for an empty roster.
    """

    if not roster:
        return None
    if last_assigned is None or last_assigned not in roster:
        return roster[0]
    return roster[(roster.index(last_assigned) + 1) % len(roster)]


def active_salesperson_ids(session: Session) -> list[int]:
    stmt = (
        select(User.id)
        .where(User.active.is_(True), User.role.in_(sorted(role.value for role in SALESPERSON_ROLES)))
        .order_by(User.id)
    )
    return list(session.scalars(stmt))


class RoundRobinStrategy:
    """Rotates through active salespeople ordered by id.

    In soft mode the last assignee is read from the newest assigned lead, so two
    concurrent creations may pick the same person. Strict mode keeps the cursor
    in ``crm_assignment_cursor`` and locks it for the rest of the transaction.
    """

    name = "round_robin"

    def __init__(self, *, strict: bool = False, pool: str = DEFAULT_POOL) -> None:
        self.strict = strict
        self.pool = pool

    def pick(self, session: Session, request: AssignmentRequest) -> int | None:
        roster = active_salesperson_ids(session)
        if self.strict:
            return self._advance_cursor(session, roster)

        last_assigned = session.scalar(
            select(Lead.assigned_to_id)
            .where(Lead.assigned_to_id.is_not(None))
            .order_by(Lead.id.desc())
            .limit(1)
        )
        return next_in_rotation(roster, last_assigned)

    def _advance_cursor(self, session: Session, roster: list[int]) -> int | None:
        cursor = session.scalars(
            select(AssignmentCursor).where(AssignmentCursor.pool == self.pool).with_for_update()
        ).first()
        if cursor is None:
            cursor = AssignmentCursor(pool=self.pool, last_user_id=None)
            session.add(cursor)

        chosen = next_in_rotation(roster, cursor.last_user_id)
        if chosen is not None:
            cursor.last_user_id = chosen
            session.flush()
        return chosen


class TeamRandomStrategy:
    """Uniform pick among active salespeople below the manager heading the lead's team."""

    name = "team_random"

    def __init__(self, policy: TeamPolicy, rng: random.Random | None = None) -> None:
        self.policy = policy
        self.rng = rng or random.Random()

    def pick(self, session: Session, request: AssignmentRequest) -> int | None:
        if not request.team:
            return None

        directory = DbUserDirectory(session)
        entries = directory.entries()
        managers = TeamClassifier(directory, self.policy).manager_ids(entries, request.team)
        if not managers:
            return None

        children = build_children_map(entries)
        below: set[int] = set()
        for manager_id in managers:
            below |= collect_descendants(children, manager_id)

        candidates = sorted(
            entry.id
            for entry in entries
            if entry.id in below and entry.active and entry.role in SALESPERSON_ROLES
        )
        if not candidates:
            return None
        return self.rng.choice(candidates)


class AssignmentEngine:
    def __init__(self, strategy: AssignmentStrategy) -> None:
        self.strategy = strategy

    def assign(self, session: Session, request: AssignmentRequest | None = None) -> int | None:
        request = request or AssignmentRequest()
        with tracer.start_as_current_span("assignment.assign") as span:
            span.set_attribute("strategy", self.strategy.name)
            chosen = self.strategy.pick(session, request)
            if chosen is None:
                observe_assignment(self.strategy.name, "empty_roster")
                logger.warning(
                    "assignment_no_candidate",
                    extra={"strategy": self.strategy.name, "team": request.team},
                )
                return None

            span.set_attribute("assignee_id", chosen)
            observe_assignment(self.strategy.name, "assigned")
            logger.info(
                "lead_assigned",
                extra={"strategy": self.strategy.name, "team": request.team, "assignee_id": chosen},
            )
            return chosen


def build_assignment_engine(settings: Settings | None = None, *, rng: random.Random | None = None) -> AssignmentEngine:
    settings = settings or get_settings()
    if settings.assignment_strategy == "team_random":
        return AssignmentEngine(TeamRandomStrategy(TeamPolicy.from_settings(settings), rng=rng))
    return AssignmentEngine(RoundRobinStrategy(strict=settings.assignment_strict_rotation))
