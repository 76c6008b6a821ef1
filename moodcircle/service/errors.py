from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Closed set of failure kinds surfaced by the auth service.

    The HTTP adapter switches on these values; it never inspects messages.
    """

    VALIDATION_ERROR = "validation_error"
    RATE_LIMITED = "rate_limited"
    INVALID_CODE = "invalid_code"
    NO_TOKEN = "no_token"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_INVALID = "token_invalid"
    DEPENDENCY_FAILURE = "dependency_failure"


class ServiceError(Exception):
    """Base class for service-layer failures.

    Each subclass pins one ``kind`` and a fixed client-facing message, so
    response bodies never carry details that distinguish one cause from
    another within the same kind. Operator context goes in ``detail``, which
    is logged but not returned to clients.
    """

    kind: ErrorKind = ErrorKind.VALIDATION_ERROR
    public_message: str = "invalid request"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        detail: Optional[dict] = None,
    ) -> None:
        self.message = message or self.public_message
        super().__init__(self.message)
        self.detail = detail or {}

    @property
    def error_code(self) -> str:
        return self.kind.value


class ValidationError(ServiceError):
    """Request is malformed (e.g. an email that normalizes to nothing)."""

    kind = ErrorKind.VALIDATION_ERROR
    public_message = "invalid request"


class RateLimitedError(ServiceError):
    """An unexpired code is already outstanding for the email."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(self, minutes_remaining: int, *, detail: Optional[dict] = None) -> None:
        self.minutes_remaining = minutes_remaining
        super().__init__(
            f"Please wait {minutes_remaining} minutes before requesting a new code",
            detail=detail,
        )


class InvalidOrExpiredCodeError(ServiceError):
    """Wrong, expired, already-used or race-lost code; deliberately one kind."""

    kind = ErrorKind.INVALID_CODE
    public_message = "Invalid or expired verification code"


class NoTokenError(ServiceError):
    kind = ErrorKind.NO_TOKEN
    public_message = "Access token required"


class TokenExpiredError(ServiceError):
    """Access token is well formed but past its expiry; a refresh may help."""

    kind = ErrorKind.TOKEN_EXPIRED
    public_message = "Access token expired"


class TokenInvalidError(ServiceError):
    """Any other token failure; the client must authenticate again."""

    kind = ErrorKind.TOKEN_INVALID
    public_message = "Invalid token"


class DependencyFailureError(ServiceError):
    """A store or the email transport was unreachable or failed."""

    kind = ErrorKind.DEPENDENCY_FAILURE
    public_message = "Service temporarily unavailable"


__all__ = [
    "ErrorKind",
    "ServiceError",
    "ValidationError",
    "RateLimitedError",
    "InvalidOrExpiredCodeError",
    "NoTokenError",
    "TokenExpiredError",
    "TokenInvalidError",
    "DependencyFailureError",
]
