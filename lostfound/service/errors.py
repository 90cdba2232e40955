from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)

    Soft errors (``retryable = False``) are expected outcomes of a user action
    and carry a guidance message instead of a failure.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    retryable: bool = True

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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class InvalidCredentialError(AuthenticationError):
    error_code = "invalid_credential"

    def __init__(self, remaining_attempts: Optional[int] = None) -> None:
        message = "Invalid email/student ID or password."
        if remaining_attempts is not None:
            suffix = "attempt" if remaining_attempts == 1 else "attempts"
            message = f"{message} {remaining_attempts} {suffix} remaining."
        super().__init__(message, detail={"remaining_attempts": remaining_attempts})
        self.remaining_attempts = remaining_attempts


class AccountLockedError(ServiceError):
    status_code = 429
    error_code = "account_locked"

    def __init__(self, unlock_at: datetime) -> None:
        remaining = (unlock_at - datetime.now(timezone.utc)).total_seconds()
        minutes = max(1, math.ceil(remaining / 60))
        suffix = "minute" if minutes == 1 else "minutes"
        super().__init__(
            f"Too many failed login attempts. Please try again in {minutes} {suffix}.",
            detail={"unlock_at": unlock_at.isoformat(), "remaining_minutes": minutes},
        )
        self.unlock_at = unlock_at
        self.remaining_minutes = minutes


class AccountInactiveError(ForbiddenError):
    error_code = "account_inactive"

    def __init__(self, message: str = "Your account has been deactivated. Please contact an administrator.") -> None:
        super().__init__(message)


class EmailUnverifiedError(ForbiddenError):
    error_code = "email_unverified"

    def __init__(self, message: str = "Please verify your email address before logging in.") -> None:
        super().__init__(message)


class ProfileNotFoundError(NotFoundError):
    error_code = "profile_not_found"

    def __init__(self, message: str = "User profile not found. Please contact an administrator.") -> None:
        super().__init__(message)


class ProviderUnavailableError(ServiceError):
    status_code = 503
    error_code = "provider_unavailable"

    def __init__(self, message: str = "Authentication service is unavailable. Please try again.") -> None:
        super().__init__(message)


class SelfClaimError(ConflictError):
    error_code = "self_claim"
    retryable = False

    def __init__(self, message: str = "You cannot claim an item you reported.") -> None:
        super().__init__(message)


class DuplicatePendingError(ConflictError):
    error_code = "duplicate_pending"
    retryable = False

    def __init__(
        self,
        message: str = (
            "You already have a pending claim for this item. "
            "Please wait for admin review before submitting again."
        ),
    ) -> None:
        super().__init__(message)


class AlreadyTransitionedError(ConflictError):
    error_code = "already_transitioned"
    retryable = False

    def __init__(self, entity: str, current_status: Optional[str]) -> None:
        super().__init__(
            f"This {entity} has already been processed (status: {current_status}).",
            detail={"entity": entity, "status": current_status},
        )
        self.current_status = current_status


class OperationInProgressError(ConflictError):
    error_code = "operation_in_progress"
    retryable = False

    def __init__(self, key: str) -> None:
        super().__init__(
            "This request is already being processed.", detail={"operation": key}
        )


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "InvalidCredentialError",
    "AccountLockedError",
    "AccountInactiveError",
    "EmailUnverifiedError",
    "ProfileNotFoundError",
    "ProviderUnavailableError",
    "SelfClaimError",
    "DuplicatePendingError",
    "AlreadyTransitionedError",
    "OperationInProgressError",
]
