# leadflow/core/errors.py
"""
Typed errors for the dispatch engine.

Caller-facing errors carry a stable ``code`` and an HTTP ``status_code``;
the transport layer converts any ``DispatchError`` into
``{"error": {"code", "message"}}`` without business logic in the routes.
"""
from __future__ import annotations


class DispatchError(Exception):
    """Base class for all dispatch errors."""

    code: str = "internal"
    status_code: int = 500

    def __init__(self, message: str = "Internal error"):
        self.message = message
        super().__init__(message)


class UnauthenticatedError(DispatchError):
    code = "unauthenticated"
    status_code = 401


class InvalidArgumentError(DispatchError):
    code = "invalid-argument"
    status_code = 400


class NotFoundError(DispatchError):
    code = "not-found"
    status_code = 404


class PermissionDeniedError(DispatchError):
    code = "permission-denied"
    status_code = 403


class FailedPreconditionError(DispatchError):
    """Lead or closer is in a state that does not allow the operation (409)."""

    code = "failed-precondition"
    status_code = 409


class UnavailableError(DispatchError):
    """No eligible closer (503)."""

    code = "unavailable"
    status_code = 503


class InternalError(DispatchError):
    pass


class RepositoryError(DispatchError):
    """A persistence call failed."""


class AssignmentConflictError(RepositoryError):
    """
    The conditional assignment write saw a concurrent change.

    Raised when the closer's active count or the lead's assignee no longer
    matches what the selector observed.
    """

    code = "aborted"
    status_code = 409
