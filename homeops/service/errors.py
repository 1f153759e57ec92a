from __future__ import annotations

from decimal import Decimal
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable machine-readable
    ``error_code``. ``detail`` entries are merged into the error envelope next
    to ``message``/``status``/``code``, so callers can attach context fields
    (for example ``spent`` and ``cap`` on a budget rejection).
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

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
    error_code = "VALIDATION_ERROR"


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class EnrollmentExpired(ValidationError):
    """No pending MFA enrollment, or it outlived its window (400)."""
    error_code = "ENROLLMENT_EXPIRED"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"


class InvalidCredentials(AuthenticationError):
    error_code = "INVALID_CREDENTIALS"


class InvalidRefresh(AuthenticationError):
    error_code = "INVALID_REFRESH"


class InvalidCode(AuthenticationError):
    error_code = "INVALID_CODE"


class InvalidMfaTicket(AuthenticationError):
    error_code = "INVALID_MFA_TICKET"


class InvalidInvitation(AuthenticationError):
    error_code = "INVALID_INVITATION"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "FORBIDDEN"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "CONFLICT"


class AlreadyEnrolled(ConflictError):
    error_code = "MFA_ALREADY_ENABLED"


class PreconditionFailed(ServiceError):
    """An invariant would be violated by the requested change (412)."""
    status_code = 412
    error_code = "PRECONDITION_FAILED"


class BudgetExceeded(ServiceError):
    """Monthly AI spend cap reached (429)."""
    status_code = 429
    error_code = "BUDGET_EXCEEDED"

    def __init__(self, spent: Decimal, cap: Decimal, message: Optional[str] = None) -> None:
        super().__init__(
            message or "Monthly AI budget exceeded",
            detail={"spent": float(spent), "cap": float(cap)},
        )
        self.spent = spent
        self.cap = cap


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "SERVER_ERROR"


class BadUpstream(ServiceError):
    """An external dependency failed; 502 by default, 503 when it is unavailable."""
    status_code = 502
    error_code = "BAD_UPSTREAM"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "EnrollmentExpired",
    "AuthenticationError",
    "InvalidCredentials",
    "InvalidRefresh",
    "InvalidCode",
    "InvalidMfaTicket",
    "InvalidInvitation",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "AlreadyEnrolled",
    "PreconditionFailed",
    "BudgetExceeded",
    "ServerError",
    "BadUpstream",
]
