from __future__ import annotations

from enum import Enum
from typing import Optional


class ConfigurationError(RuntimeError):
    """Fatal misconfiguration detected at startup (e.g. no signing key)."""


class TokenError(Exception):
    """Base class for token codec failures; never surfaced to clients as-is."""


class Malformed(TokenError):
    """Token structure or claims cannot be parsed."""


class InvalidSignature(TokenError):
    """Token signature does not match the configured key."""


class Expired(TokenError):
    """Token is past its expiry.

    The signature was verified before the expiry check, so ``claims`` can be
    trusted for cleanup of the session it references.
    """

    def __init__(self, message: str, claims=None) -> None:
        super().__init__(message)
        self.claims = claims


class AuthFailure(str, Enum):
    """Internal reason codes for authentication failures."""

    TOKEN_MISSING = "token_missing"
    INVALID_TOKEN = "invalid_token"
    SESSION_INVALID = "session_invalid"
    HIJACK_DETECTED = "hijack_detected"
    TOKEN_EXPIRED = "token_expired"


# Missing, invalid and unknown-session tokens share one message so the
# response does not reveal which check failed.
_GENERIC_AUTH_MESSAGE = "authentication required"

_AUTH_MESSAGES = {
    AuthFailure.TOKEN_MISSING: _GENERIC_AUTH_MESSAGE,
    AuthFailure.INVALID_TOKEN: _GENERIC_AUTH_MESSAGE,
    AuthFailure.SESSION_INVALID: _GENERIC_AUTH_MESSAGE,
    AuthFailure.HIJACK_DETECTED: "session terminated: client address changed, please log in again",
    AuthFailure.TOKEN_EXPIRED: "session expired, please log in again",
}

_DISCLOSED_REASONS = frozenset({AuthFailure.HIJACK_DETECTED, AuthFailure.TOKEN_EXPIRED})


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass defines an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, reason: AuthFailure = AuthFailure.TOKEN_MISSING) -> None:
        detail = {"reason": reason.value} if reason in _DISCLOSED_REASONS else None
        super().__init__(_AUTH_MESSAGES[reason], detail=detail)
        self.reason = reason


class InvalidCredentialsError(ServiceError):
    """Login rejected; the message does not say which credential was wrong (401)."""
    status_code = 401
    error_code = "unauthorized"

    def __init__(self) -> None:
        super().__init__("invalid credentials")


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
    """Rate limit exceeded or account locked (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str,
        *,
        retry_after: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.retry_after = retry_after


__all__ = [
    "AuthFailure",
    "AuthenticationError",
    "ConfigurationError",
    "ConflictError",
    "Expired",
    "ForbiddenError",
    "InvalidCredentialsError",
    "InvalidSignature",
    "Malformed",
    "NotFoundError",
    "RateLimitedError",
    "ServiceError",
    "TokenError",
    "ValidationError",
]
