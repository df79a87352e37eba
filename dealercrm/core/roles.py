from __future__ import annotations

from enum import StrEnum


class Role(StrEnum):
    OWNER = "owner"
    DIRECTOR = "director"
    GERENTE = "gerente"
    SUPERVISOR = "supervisor"
    VENDEDOR = "vendedor"
    ADMIN = "admin"


_ALIASES = {
    "dueño": Role.OWNER,
    "dueno": Role.OWNER,
}

TOP_TIER: frozenset[Role] = frozenset({Role.OWNER, Role.DIRECTOR})
MANAGER_TIER: frozenset[Role] = frozenset({Role.OWNER, Role.DIRECTOR, Role.GERENTE})
GOAL_EDITORS: frozenset[Role] = MANAGER_TIER | {Role.SUPERVISOR}
SALESPERSON_ROLES: frozenset[Role] = frozenset({Role.VENDEDOR, Role.ADMIN})
OWNER_ONLY: frozenset[Role] = frozenset({Role.OWNER})


def normalize_role(value: str | Role) -> Role:
    """Map a stored or submitted role string to its canonical ``Role``.

    Legacy spellings (``dueño``) resolve to ``Role.OWNER``. Unknown values raise
    ``ValueError``.
    """

    if isinstance(value, Role):
        return value
    key = str(value).strip().lower()
    if key in _ALIASES:
        return _ALIASES[key]
    try:
        return Role(key)
    except ValueError:
        raise ValueError(f"unknown role: {value!r}") from None


def try_normalize_role(value: str | Role | None) -> Role | None:
    if value is None:
        return None
    try:
        return normalize_role(value)
    except ValueError:
        return None


def has_role(role: Role | None, allowed: frozenset[Role] | set[Role]) -> bool:
    return role is not None and role in allowed
