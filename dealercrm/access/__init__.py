from dealercrm.access.gateway import AccessGateway, build_access_gateway
from dealercrm.access.hierarchy import (
    AccessScope,
    DbUserDirectory,
    DirectoryEntry,
    HierarchyResolver,
    InMemoryUserDirectory,
    UserDirectory,
    would_create_cycle,
)
from dealercrm.access.teams import TeamClassifier, TeamPolicy

__all__ = [
    "AccessGateway",
    "AccessScope",
    "DbUserDirectory",
    "DirectoryEntry",
    "HierarchyResolver",
    "InMemoryUserDirectory",
    "TeamClassifier",
    "TeamPolicy",
    "UserDirectory",
    "build_access_gateway",
    "would_create_cycle",
]
