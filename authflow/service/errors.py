from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP status_code and a stable error_code:
    - validation_error (400)
    - unauthorized (401)
    - attempts_exhausted (403)
    - not_found (404)
    - conflict (409)
    - expired (410, or 401 for refresh tokens)
    - rate_limited (429)
    - server_error (500)
    - delivery_failed (502)
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


class InvalidCredentialError(ServiceError):
    """Credentials, token or code rejected (401).

    The message is the same for every cause so callers cannot tell an unknown
    account from a wrong password.
    """
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCodeError(InvalidCredentialError):
    """One-time code did not match; detail carries attempts_remaining."""

    def __init__(self, attempts_remaining: int) -> None:
        super().__init__(
            "invalid verification code",
            detail={"attempts_remaining": attempts_remaining},
        )
        self.attempts_remaining = attempts_remaining


class AttemptsExhaustedError(ServiceError):
    """All verification attempts were spent (403)."""
    status_code = 403
    error_code = "attempts_exhausted"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ExpiredError(ServiceError):
    """Resource outlived its TTL (410 unless overridden)."""
    status_code = 410
    error_code = "expired"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "rate limit exceeded",
        *,
        retry_after: int = 1,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(1, int(retry_after))
        self.detail.setdefault("retry_after", self.retry_after)


class TooManyRequestsError(RateLimitedError):
    """Per-identity one-time code request limit exceeded (429)."""


class FaultError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class DeliveryFailedError(ServiceError):
    """Outgoing mail could not be dispatched (502)."""
    status_code = 502
    error_code = "delivery_failed"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentialError",
    "InvalidCodeError",
    "AttemptsExhaustedError",
    "NotFoundError",
    "ConflictError",
    "ExpiredError",
    "RateLimitedError",
    "TooManyRequestsError",
    "FaultError",
    "DeliveryFailedError",
]
