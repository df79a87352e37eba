from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError

from dealercrm.access.hierarchy import DirectoryEntry, UserDirectory
from dealercrm.core.config import Settings
from dealercrm.core.roles import TOP_TIER, Role, normalize_role


logger = logging.getLogger("dealercrm.access.teams")


def _normalize_name(value: str) -> str:
    return " ".join(value.split()).casefold()


@dataclass(frozen=True, slots=True)
class TeamPolicy:
    """How users are partitioned into named sales teams.

    ``team_managers`` maps a team tag to the display name of the manager that
    heads it. ``fallback_team`` is what a user gets when no managing ancestor
    can be found; ``None`` leaves the user unclassified.
    """

    manager_role: Role = Role.GERENTE
    team_managers: Mapping[str, str] = field(default_factory=dict)
    fallback_team: str | None = None
    all_label: str = "both"

    @classmethod
    def from_settings(cls, settings: Settings) -> TeamPolicy:
        return cls(
            manager_role=normalize_role(settings.team_manager_role),
            team_managers=dict(settings.team_managers),
            fallback_team=settings.team_fallback,
            all_label=settings.team_all_label,
        )

    def team_for_manager(self, manager_name: str) -> str | None:
        wanted = _normalize_name(manager_name)
        for team, name in self.team_managers.items():
            if _normalize_name(name) == wanted:
                return team
        return None


class TeamClassifier:
    def __init__(self, directory: UserDirectory, policy: TeamPolicy) -> None:
        self._directory = directory
        self._policy = policy

    @property
    def policy(self) -> TeamPolicy:
        return self._policy

    def classify(self, user_id: int) -> str | None:
        try:
            entries = self._directory.entries()
        except SQLAlchemyError as exc:
            logger.exception("team_classification_failed", extra={"user_id": user_id, "error": str(exc)})
            return self._policy.fallback_team
        return self.classify_in(entries, user_id)

    def classify_in(self, entries: Iterable[DirectoryEntry], user_id: int) -> str | None:
        by_id = {entry.id: entry for entry in entries}
        user = by_id.get(user_id)
        if user is None:
            return self._policy.fallback_team
        if user.role in TOP_TIER:
            return self._policy.all_label

        # the user counts as the first node so a manager classifies into their own team
        current: DirectoryEntry | None = user
        hops = 0
        while current is not None and hops <= len(by_id):
            if current.role == self._policy.manager_role:
                team = self._policy.team_for_manager(current.name)
                if team is not None:
                    return team
                logger.warning("team_manager_unmapped", extra={"user_id": user_id, "caller_id": current.id})
                return self._policy.fallback_team
            if current.reports_to_id is None:
                break
            current = by_id.get(current.reports_to_id)
            hops += 1

        return self._policy.fallback_team

    def manager_ids(self, entries: Iterable[DirectoryEntry], team: str) -> set[int]:
        return {
            entry.id
            for entry in entries
            if entry.role == self._policy.manager_role and self._policy.team_for_manager(entry.name) == team
        }
