"""Typed errors raised by the reconciliation engine.

Every error carries a machine-readable ``code`` and the HTTP status the API
layer maps it to. Services raise these; the API and CLI translate them.
"""

from typing import Any, Dict, Optional


class ReconciliationError(Exception):
    """Base class for all engine errors."""

    code: str = "RECONCILIATION_ERROR"
    status_code: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for API responses."""
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFoundError(ReconciliationError):
    """Entity does not exist or is not visible to the caller's firm."""

    code = "NOT_FOUND"
    status_code = 404


class ConflictError(ReconciliationError):
    """Creation collided with a uniqueness constraint."""

    code = "CONFLICT"
    status_code = 409


class ValidationError(ReconciliationError):
    """Caller-correctable precondition failure."""

    code = "VALIDATION_ERROR"
    status_code = 400


class PermissionDeniedError(ReconciliationError):
    """Actor's role lacks the required capability."""

    code = "PERMISSION_DENIED"
    status_code = 403


# Errors that describe the request rather than the environment; never retried.
NON_RETRYABLE_ERRORS = (ValidationError, NotFoundError, ConflictError, PermissionDeniedError)
