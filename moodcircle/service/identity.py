from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Optional, Protocol

from moodcircle.logging import get_logger
from moodcircle.service.errors import DependencyFailureError
from moodcircle.storage.errors import ConstraintViolation
from moodcircle.storage.models import Identity

logger = get_logger(__name__)


class IdentityStore(Protocol):
    def get_identity_by_email(self, email: str) -> Optional[Identity]: ...

    def create_identity(self, email: str, pseudonym: str) -> Identity: ...

    def get_identity(self, identity_id: str) -> Optional[Identity]: ...


@dataclass(frozen=True)
class IdentitySummary:
    """The only identity fields that leave the service; email is never exposed."""

    id: str
    pseudonym: str

    @classmethod
    def from_identity(cls, identity: Identity) -> "IdentitySummary":
        return cls(id=identity.id, pseudonym=identity.pseudonym)


def generate_pseudonym(prefix: str = "mood_", suffix_bytes: int = 4) -> str:
    return f"{prefix}{secrets.token_hex(suffix_bytes)}"


class IdentityResolver:
    """Maps a verified email to its identity, creating one on first login."""

    def __init__(
        self,
        store: IdentityStore,
        *,
        pseudonym_prefix: str = "mood_",
        pseudonym_suffix_bytes: int = 4,
        max_attempts: int = 5,
    ) -> None:
        self.store = store
        self.pseudonym_prefix = pseudonym_prefix
        self.pseudonym_suffix_bytes = pseudonym_suffix_bytes
        self.max_attempts = max_attempts

    async def resolve_or_create(self, email: str) -> IdentitySummary:
        existing = self.store.get_identity_by_email(email)
        if existing:
            return IdentitySummary.from_identity(existing)

        for attempt in range(1, self.max_attempts + 1):
            pseudonym = generate_pseudonym(
                self.pseudonym_prefix, self.pseudonym_suffix_bytes
            )
            try:
                identity = self.store.create_identity(email, pseudonym)
            except ConstraintViolation as exc:
                if exc.detail.get("field") == "pseudonym":
                    logger.warning("pseudonym_collision", attempt=attempt)
                    continue
                # A concurrent first login for this email won the insert
                winner = self.store.get_identity_by_email(email)
                if winner is None:
                    logger.error("identity_create_conflict_unresolved", email=email)
                    raise DependencyFailureError(
                        detail={"stage": "identity_create"}
                    ) from exc
                logger.info("identity_create_race_resolved", identity_id=winner.id)
                return IdentitySummary.from_identity(winner)
            logger.info("identity_created", identity_id=identity.id, pseudonym=identity.pseudonym)
            return IdentitySummary.from_identity(identity)

        logger.error("pseudonym_attempts_exhausted", attempts=self.max_attempts)
        raise DependencyFailureError(detail={"stage": "pseudonym_generation"})
