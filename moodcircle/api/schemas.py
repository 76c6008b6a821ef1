from __future__ import annotations

import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from moodcircle.logging import get_correlation_id
from moodcircle.service.errors import ErrorKind

MAX_EMAIL_LENGTH = 254
MAX_TOKEN_LENGTH = 4096


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "​‌‍﻿"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset(
    {kind.value for kind in ErrorKind} | {"not_found", "server_error"}
)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class CodeRequest(BaseModel):
    email: str = Field(..., min_length=1, max_length=MAX_EMAIL_LENGTH)

    @field_validator("email")
    @classmethod
    def _clean_email(cls, value: str) -> str:
        # Canonical normalization happens in the service
        cleaned = _normalize_unicode(value).strip()
        if not cleaned:
            raise ValueError("email is required")
        return cleaned


class VerifyCodeRequest(CodeRequest):
    code: str = Field(..., min_length=1, max_length=16)

    @field_validator("code")
    @classmethod
    def _clean_code(cls, value: str) -> str:
        return value.strip()


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class CodeRequestResponse(BaseModel):
    message: str = "Verification code sent to your email"
    expiry_minutes: int


class IdentityResponse(BaseModel):
    id: str
    pseudonym: str


class LoginResponse(BaseModel):
    user: IdentityResponse
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class RefreshResponse(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"


class LogoutResponse(BaseModel):
    message: str = "Logged out successfully"


class LogoutAllResponse(BaseModel):
    message: str = "Logged out from all devices"
    revoked: int


class VerifyResponse(BaseModel):
    user_id: str
