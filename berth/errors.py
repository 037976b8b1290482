"""Berth error types.

Error codes are stable strings for programmatic handling by callers.
Every error maps to one HTTP status in the API layer.
"""

from __future__ import annotations

from typing import Any


class BerthError(Exception):
    """Base error for all Berth exceptions."""

    code: str = "internal_error"
    message: str = "An internal error occurred"
    status_code: int = 500

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.__class__.message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self, request_id: str | None = None) -> dict[str, Any]:
        """Render the error as an API response body."""
        error: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            error["details"] = self.details
        if request_id:
            error["request_id"] = request_id
        return {"error": error}


class ValidationError(BerthError):
    """Request validation error (400)."""

    code = "validation_error"
    message = "Validation error"
    status_code = 400


class UnauthorizedError(BerthError):
    """Caller identity missing (401)."""

    code = "unauthorized"
    message = "Authentication required"
    status_code = 401


class ForbiddenError(BerthError):
    """Caller lacks the required role (403)."""

    code = "forbidden"
    message = "Forbidden"
    status_code = 403


class RecordNotFoundError(BerthError):
    """Lookup by id, name and runtime id all missed (404)."""

    code = "record_not_found"
    message = "Record not found"
    status_code = 404


class ConflictError(BerthError):
    """Unique constraint or state conflict (409)."""

    code = "conflict"
    message = "Conflict"
    status_code = 409


class AlreadyRunningError(ConflictError):
    """Start requested on a running container (409)."""

    code = "already_running"
    message = "Container is already running"


class AlreadyStoppedError(ConflictError):
    """Stop requested on an exited container (409)."""

    code = "already_stopped"
    message = "Container is already stopped"


class InvalidStateTransitionError(ConflictError):
    """Action not allowed from the observed state (409)."""

    code = "invalid_state_transition"
    message = "Invalid state transition"


class ReconciliationInProgressError(BerthError):
    """Another reconciliation holds the guard (423)."""

    code = "reconciliation_in_progress"
    message = "A reconciliation is already running"
    status_code = 423


class PartialFailureError(BerthError):
    """Runtime side converged but the persisted side did not (500).

    The caller can retry only the persistence half.
    """

    code = "partial_failure"
    message = "Operation partially failed"
    status_code = 500


class OperationFailedError(BerthError):
    """Runtime rejected the operation (502)."""

    code = "operation_failed"
    message = "Container operation failed"
    status_code = 502


class RuntimeUnreachableError(BerthError):
    """Container engine API could not be reached (503)."""

    code = "runtime_unreachable"
    message = "Container runtime is unreachable"
    status_code = 503


class NoPortAvailableError(BerthError):
    """Allocator exhausted every range (503)."""

    code = "no_port_available"
    message = "No host port available"
    status_code = 503


class ConvergenceTimeoutError(BerthError):
    """Polling budget exhausted before the desired state was observed (504)."""

    code = "convergence_timeout"
    message = "Container did not converge in time"
    status_code = 504
