from __future__ import annotations


class DomainError(Exception):
    """Base error carrying a stable machine-readable kind."""

    kind = "error"
    status_code = 400

    def __init__(self, message: str, *, details: object | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(DomainError):
    kind = "not_found"
    status_code = 404


class AuthorizationError(DomainError):
    """Caller is authenticated but outside the accessible scope or lacks the role."""

    kind = "forbidden"
    status_code = 403


class DomainValidationError(DomainError):
    kind = "validation"
    status_code = 422


class ConflictError(DomainError):
    kind = "conflict"
    status_code = 409


class StorageError(DomainError):
    kind = "storage"
    status_code = 503


class AuthenticationError(DomainError):
    kind = "unauthorized"
    status_code = 401
