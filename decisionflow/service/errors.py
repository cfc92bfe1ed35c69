from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for request-level rejections raised by the services.

    Each subclass carries an HTTP-like ``status_code`` and a stable
    ``error_code`` so callers can map rejections without string matching:
    - validation_error (400)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class WorkflowValidationError(BadRequestError):
    """A graph failed the save or publish gate."""

    error_code = "workflow_invalid"

    def __init__(self, message: str, issues: list, *, stage: Optional[str] = None) -> None:
        super().__init__(
            message,
            detail={
                "stage": stage,
                "issues": [
                    issue.to_dict() if hasattr(issue, "to_dict") else issue
                    for issue in issues
                ],
            },
        )
        self.issues = list(issues)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "WorkflowValidationError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
