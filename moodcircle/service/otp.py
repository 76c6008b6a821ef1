from __future__ import annotations

import asyncio
import math
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

from moodcircle.logging import get_logger
from moodcircle.service.errors import (
    DependencyFailureError,
    InvalidOrExpiredCodeError,
    RateLimitedError,
    ValidationError,
)
from moodcircle.storage.models import OneTimeCode, utcnow

logger = get_logger(__name__)

_EMAIL_STRIP = re.compile(r"[^A-Za-z0-9_.@+-]")


class OTPStore(Protocol):
    def insert_code(self, record: OneTimeCode) -> OneTimeCode: ...

    def upsert_code(
        self, record: OneTimeCode, *, now: datetime
    ) -> tuple[bool, Optional[OneTimeCode]]: ...

    def find_active_code(self, email: str, *, now: datetime) -> Optional[OneTimeCode]: ...

    def find_matching_code(
        self, email: str, code: str, *, now: datetime
    ) -> Optional[OneTimeCode]: ...

    def delete_codes_for_email(self, email: str) -> int: ...

    def delete_code_if_match(self, email: str, code: str) -> int: ...

    def purge_expired_codes(self, *, now: datetime) -> int: ...


class EmailSender(Protocol):
    def send_otp(self, to_email: str, code: str, expiry_minutes: int) -> bool: ...


@dataclass
class CodeRequestResult:
    accepted: bool
    expiry_minutes: int


def normalize_email(raw: Optional[str]) -> str:
    """Lowercase, trim and strip characters outside the address alphabet.

    Raises ``ValidationError`` unless the result has exactly one ``@`` with
    non-empty local and domain parts.
    """
    cleaned = _EMAIL_STRIP.sub("", (raw or "").strip().lower())
    local, sep, domain = cleaned.partition("@")
    if not sep or not local or not domain or "@" in domain:
        raise ValidationError(detail={"reason": "malformed_email"})
    return cleaned


def generate_code(length: int = 6) -> str:
    # Each digit drawn independently so leading zeros are as likely as any other
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


def minutes_remaining(expires_at: datetime, now: datetime) -> int:
    return max(1, math.ceil((expires_at - now).total_seconds() / 60))


class OTPEngine:
    """Issues and single-use-consumes one-time passcodes.

    Coordination between concurrent requests lives in the store: issuance goes
    through ``upsert_code`` and consumption through ``delete_code_if_match``,
    both of which are atomic there.
    """

    def __init__(
        self,
        store: OTPStore,
        email_sender: EmailSender,
        *,
        code_length: int = 6,
        expiry_minutes: int = 10,
        send_timeout_seconds: float = 10.0,
    ) -> None:
        self.store = store
        self.email_sender = email_sender
        self.code_length = code_length
        self.expiry_minutes = expiry_minutes
        self.send_timeout_seconds = send_timeout_seconds

    def _now(self) -> datetime:
        return utcnow()

    async def request_code(self, email: str) -> CodeRequestResult:
        normalized = normalize_email(email)
        now = self._now()
        code = generate_code(self.code_length)
        record = OneTimeCode(
            email=normalized,
            code=code,
            expires_at=now + timedelta(minutes=self.expiry_minutes),
            created_at=now,
        )
        stored, existing = self.store.upsert_code(record, now=now)
        if not stored:
            remaining = minutes_remaining(existing.expires_at, now) if existing else 1
            logger.info("otp_request_rate_limited", email=normalized, minutes_remaining=remaining)
            raise RateLimitedError(remaining)

        logger.debug("otp_issued", email=normalized, expires_at=record.expires_at.isoformat())
        await self._dispatch(normalized, code)
        logger.info("otp_requested", email=normalized, expiry_minutes=self.expiry_minutes)
        return CodeRequestResult(accepted=True, expiry_minutes=self.expiry_minutes)

    async def _dispatch(self, email: str, code: str) -> None:
        """Deliver ``code``; on any failure roll the stored record back and raise."""
        failure: Optional[BaseException] = None
        try:
            delivered = await asyncio.wait_for(
                asyncio.to_thread(
                    self.email_sender.send_otp, email, code, self.expiry_minutes
                ),
                timeout=self.send_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            delivered = False
            failure = exc
            logger.error(
                "otp_dispatch_timeout", email=email, timeout=self.send_timeout_seconds
            )
        except Exception as exc:
            delivered = False
            failure = exc
            logger.error(
                "otp_dispatch_failed",
                email=email,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        if delivered:
            return
        if failure is None:
            logger.error("otp_dispatch_rejected", email=email)
        # Only remove the exact code issued above; a newer one must survive
        removed = self.store.delete_code_if_match(email, code)
        logger.info("otp_rolled_back", email=email, removed=removed)
        raise DependencyFailureError(detail={"stage": "email_dispatch"}) from failure

    async def consume_code(self, email: str, code: str) -> str:
        """Consume a matching unexpired code exactly once; returns the normalized email."""
        normalized = normalize_email(email)
        submitted = (code or "").strip()
        if len(submitted) != self.code_length or not submitted.isdigit():
            logger.info("otp_verify_failed", email=normalized, reason="malformed")
            raise InvalidOrExpiredCodeError()

        now = self._now()
        match = self.store.find_matching_code(normalized, submitted, now=now)
        if match is None:
            logger.info("otp_verify_failed", email=normalized, reason="no_match")
            raise InvalidOrExpiredCodeError()

        removed = self.store.delete_code_if_match(normalized, submitted)
        if removed != 1:
            logger.info("otp_verify_failed", email=normalized, reason="already_consumed")
            raise InvalidOrExpiredCodeError()
        logger.info("otp_consumed", email=normalized)
        return normalized

    def purge_expired(self) -> int:
        removed = self.store.purge_expired_codes(now=self._now())
        if removed:
            logger.info("otp_expired_purged", removed=removed)
        return removed
