from __future__ import annotations

from typing import Optional

from moodcircle.logging import get_logger
from moodcircle.service.tokens import RefreshTokenStore

logger = get_logger(__name__)


class RevocationService:
    """Marks refresh-token records unusable, one at a time or per identity.

    Revocation is monotonic: a revoked record never becomes usable again, and
    tokens issued after a bulk revocation are not affected by it.
    """

    def __init__(self, store: RefreshTokenStore) -> None:
        self.store = store

    async def revoke(self, refresh_token: str, *, owner_id: Optional[str] = None) -> bool:
        """Revoke one refresh token; unknown or already revoked tokens are a no-op.

        When ``owner_id`` is given, tokens belonging to anyone else are left alone.
        Returns True only if this call flipped the record.
        """
        if owner_id is not None:
            record = self.store.get_refresh_token(refresh_token)
            if record is None or record.user_id != owner_id:
                logger.info("refresh_revoke_skipped", user_id=owner_id, reason="not_owner")
                return False
        flipped = self.store.revoke_refresh_token(refresh_token) == 1
        logger.info("refresh_revoked", user_id=owner_id, changed=flipped)
        return flipped

    async def revoke_all(self, user_id: str) -> int:
        revoked = self.store.revoke_user_refresh_tokens(user_id)
        logger.info("refresh_revoked_all", user_id=user_id, revoked=revoked)
        return revoked
