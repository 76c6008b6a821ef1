from __future__ import annotations

import contextlib
from dataclasses import dataclass
from typing import Iterator, Optional

from moodcircle.config import Settings
from moodcircle.logging import get_logger
from moodcircle.service.errors import (
    DependencyFailureError,
    NoTokenError,
    TokenInvalidError,
)
from moodcircle.service.identity import IdentityResolver, IdentityStore, IdentitySummary
from moodcircle.service.otp import CodeRequestResult, EmailSender, OTPEngine, OTPStore
from moodcircle.service.revocation import RevocationService
from moodcircle.service.tokens import (
    AuthContext,
    RefreshResult,
    RefreshTokenStore,
    TokenService,
)
from moodcircle.storage.errors import ConstraintViolation, StorageUnavailable

logger = get_logger(__name__)


@dataclass
class LoginResult:
    identity: IdentitySummary
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class AuthService:
    """Passwordless login, token refresh and logout for MoodCircle.

    All collaborators are passed in explicitly; the service holds no store
    singletons of its own and keeps no per-request state between calls.
    """

    def __init__(
        self,
        *,
        otp_store: OTPStore,
        identity_store: IdentityStore,
        token_store: RefreshTokenStore,
        email_sender: EmailSender,
        settings: Settings,
    ) -> None:
        self.settings = settings
        self.logger = logger
        self.otp = OTPEngine(
            otp_store,
            email_sender,
            code_length=settings.otp_length,
            expiry_minutes=settings.otp_expiry_minutes,
            send_timeout_seconds=settings.email_send_timeout_seconds,
        )
        self.identities = IdentityResolver(
            identity_store,
            pseudonym_prefix=settings.pseudonym_prefix,
            pseudonym_suffix_bytes=settings.pseudonym_suffix_bytes,
            max_attempts=settings.pseudonym_max_attempts,
        )
        self.tokens = TokenService(token_store, settings)
        self.revocation = RevocationService(token_store)

    @contextlib.contextmanager
    def _dependency_guard(self, operation: str) -> Iterator[None]:
        """Translate storage faults into ``DependencyFailureError``."""
        try:
            yield
        except StorageUnavailable as exc:
            self.logger.error("auth_storage_unavailable", operation=operation, error=exc.message)
            raise DependencyFailureError(detail={"operation": operation}) from exc
        except ConstraintViolation as exc:
            self.logger.error(
                "auth_constraint_violation",
                operation=operation,
                error=exc.message,
                detail=exc.detail,
            )
            raise DependencyFailureError(detail={"operation": operation}) from exc

    async def request_code(self, email: str) -> CodeRequestResult:
        with self._dependency_guard("request_code"):
            return await self.otp.request_code(email)

    async def verify_code(self, email: str, code: str) -> LoginResult:
        with self._dependency_guard("verify_code"):
            normalized = await self.otp.consume_code(email, code)
            identity = await self.identities.resolve_or_create(normalized)
            access_token = self.tokens.issue_access_token(identity.id)
            refresh_token = self.tokens.issue_refresh_token(identity.id)
        self.logger.info("login_succeeded", identity_id=identity.id)
        return LoginResult(
            identity=identity, access_token=access_token, refresh_token=refresh_token
        )

    async def refresh(self, refresh_token: str) -> RefreshResult:
        if not refresh_token:
            raise TokenInvalidError(detail={"reason": "missing"})
        with self._dependency_guard("refresh"):
            return await self.tokens.refresh(refresh_token)

    async def logout(self, refresh_token: str, *, user_id: Optional[str] = None) -> None:
        if not refresh_token:
            return
        with self._dependency_guard("logout"):
            await self.revocation.revoke(refresh_token, owner_id=user_id)

    async def logout_all(self, user_id: str) -> int:
        with self._dependency_guard("logout_all"):
            return await self.revocation.revoke_all(user_id)

    def _extract_bearer(self, header: Optional[str]) -> str:
        if not header or not header.strip():
            raise NoTokenError()
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer":
            raise TokenInvalidError(detail={"reason": "scheme"})
        token = token.strip()
        if not token:
            raise NoTokenError()
        return token

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve a bearer access token to its caller.

        Raises ``NoTokenError``, ``TokenExpiredError`` or ``TokenInvalidError``.
        No store is consulted, so this never fails on a dependency.
        """
        token = self._extract_bearer(authorization)
        return self.tokens.verify_access_token(token)

    def purge_expired_codes(self) -> int:
        with self._dependency_guard("purge_expired_codes"):
            return self.otp.purge_expired()
