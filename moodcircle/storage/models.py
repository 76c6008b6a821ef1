from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class OneTimeCode:
    """A pending one-time passcode; at most one active record per email."""

    email: str
    code: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_active(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass
class Identity:
    id: str
    email: str
    pseudonym: str
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, email: str, pseudonym: str) -> "Identity":
        return cls(id=str(uuid.uuid4()), email=email, pseudonym=pseudonym)


@dataclass
class RefreshTokenRecord:
    """Durable record of an issued refresh token.

    ``revoked`` only ever moves from False to True. Records are kept after
    revocation or expiry for auditing; both states are terminal.
    """

    token: str
    user_id: str
    expires_at: datetime
    revoked: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def is_usable(self, now: datetime) -> bool:
        return not self.revoked and self.expires_at > now
