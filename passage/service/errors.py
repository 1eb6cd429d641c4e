from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each exception class carries an HTTP-style ``status_code`` and a stable
    ``error_code`` so the calling web layer can map failures without string
    matching:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - provider_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    retryable: bool = False

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
    """Request is well formed but not valid in the current state."""
    pass


class UnauthorizedError(ServiceError):
    """Authentication failed or missing (401).

    ``reason`` distinguishes the failure for logging and tests; callers that
    need to resist account enumeration should surface only ``message``.
    """

    status_code = 401
    error_code = "unauthorized"

    def __init__(
        self,
        message: str = "Unauthorized",
        *,
        reason: str = "unauthorized",
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.reason = reason


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate provider binding (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Too many attempts (429)."""
    status_code = 429
    error_code = "rate_limited"


class InternalError(ServiceError):
    """Unexpected failure in a collaborator (500)."""
    status_code = 500
    error_code = "server_error"


class TransientProviderError(ServiceError):
    """Identity provider unreachable or timed out (503); safe to retry."""
    status_code = 503
    error_code = "provider_unavailable"
    retryable = True


class VerificationError(ServiceError):
    """Base class for verification code failures."""
    status_code = 400
    error_code = "verification_failed"


class VerificationNotFoundError(VerificationError, NotFoundError):
    status_code = 404
    error_code = "verification_not_found"


class VerificationAlreadyUsedError(VerificationError):
    error_code = "verification_already_used"


class VerificationExpiredError(VerificationError):
    error_code = "verification_expired"


class VerificationAttemptsExceededError(VerificationError):
    status_code = 429
    error_code = "verification_attempts_exceeded"


class InvalidVerificationCodeError(VerificationError):
    error_code = "verification_invalid_code"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "UnauthorizedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "InternalError",
    "TransientProviderError",
    "VerificationError",
    "VerificationNotFoundError",
    "VerificationAlreadyUsedError",
    "VerificationExpiredError",
    "VerificationAttemptsExceededError",
    "InvalidVerificationCodeError",
]
