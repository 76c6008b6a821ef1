from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

from moodcircle.config import Settings
from moodcircle.logging import get_logger
from moodcircle.service.errors import TokenExpiredError, TokenInvalidError
from moodcircle.storage.models import RefreshTokenRecord, utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class RefreshTokenStore(Protocol):
    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshTokenRecord]: ...

    def revoke_refresh_token(self, token: str) -> int: ...

    def revoke_user_refresh_tokens(self, user_id: str) -> int: ...


@dataclass
class AuthContext:
    user_id: str
    token_id: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class RefreshResult:
    access_token: str
    refresh_token: Optional[str] = None


class TokenService:
    """Mints and verifies HS256 access and refresh tokens.

    Access tokens are stateless: validity is signature plus expiry, so a
    logged-out access token stays usable until it expires. Refresh tokens are
    additionally checked against their stored record on every use.
    """

    def __init__(self, store: RefreshTokenStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._clock_skew_leeway = timedelta(seconds=settings.jwt_clock_skew_seconds)
        self._secrets = {
            ACCESS: settings.jwt_access_secret,
            REFRESH: settings.jwt_refresh_secret,
        }

    def _now(self) -> datetime:
        return utcnow()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, token_type: str) -> str:
        digest = hmac.new(
            self._secrets[token_type].encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any], token_type: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, token_type)}"

    def _decode_jwt(self, token: str, token_type: str) -> dict[str, Any]:
        """Return the verified payload of a ``token_type`` token.

        Raises ``TokenExpiredError`` only when everything but the expiry checks
        out; every other defect is ``TokenInvalidError``.
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError(detail={"reason": "malformed"})

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError(detail={"reason": "bad_header"})
        # Reject anything but HS256 so "none" or asymmetric algs cannot be substituted
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise TokenInvalidError(detail={"reason": "algorithm"})

        signing_input = f"{header_b64}.{payload_b64}"
        try:
            expected_sig = self._sign(signing_input, token_type)
            matches = hmac.compare_digest(expected_sig.encode(), sig_b64.encode())
        except UnicodeError:
            raise TokenInvalidError(detail={"reason": "malformed"})
        if not matches:
            raise TokenInvalidError(detail={"reason": "signature"})
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError(detail={"reason": "bad_payload"})
        if not isinstance(payload, dict):
            raise TokenInvalidError(detail={"reason": "bad_payload"})
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalidError(detail={"reason": "issuer"})
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            raise TokenInvalidError(detail={"reason": "audience"})
        if payload.get("token_type") != token_type:
            raise TokenInvalidError(detail={"reason": "type"})
        if not payload.get("sub"):
            raise TokenInvalidError(detail={"reason": "subject"})
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError(detail={"reason": "expiry"})
        if exp_ts <= self._now().timestamp() - self._clock_skew_leeway.total_seconds():
            raise TokenExpiredError(detail={"reason": "expired"})
        return payload

    def _mint(
        self, user_id: str, token_type: str, ttl: timedelta, now: datetime
    ) -> tuple[str, datetime]:
        expires_at = now + ttl
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "token_type": token_type,
            # Unique per token so same-second mints for one user never collide
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return self._encode_jwt(payload, token_type), expires_at

    def issue_access_token(self, user_id: str) -> str:
        token, _ = self._mint(
            user_id,
            ACCESS,
            timedelta(minutes=self.settings.access_token_ttl_minutes),
            self._now(),
        )
        return token

    def issue_refresh_token(self, user_id: str) -> str:
        now = self._now()
        token, expires_at = self._mint(
            user_id,
            REFRESH,
            timedelta(minutes=self.settings.refresh_token_ttl_minutes),
            now,
        )
        self.store.insert_refresh_token(
            RefreshTokenRecord(
                token=token, user_id=user_id, expires_at=expires_at, created_at=now
            )
        )
        logger.info("refresh_token_issued", user_id=user_id, expires_at=expires_at.isoformat())
        return token

    def verify_access_token(self, token: str) -> AuthContext:
        payload = self._decode_jwt(token, ACCESS)
        return AuthContext(
            user_id=str(payload["sub"]),
            token_id=payload.get("jti"),
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
        )

    def verify_refresh_token(self, token: str) -> dict[str, Any]:
        """Decode a refresh token; expiry is reported as plain invalidity."""
        try:
            return self._decode_jwt(token, REFRESH)
        except TokenExpiredError as exc:
            raise TokenInvalidError(detail={"reason": "expired"}) from exc

    async def refresh(self, refresh_token: str) -> RefreshResult:
        payload = self.verify_refresh_token(refresh_token)
        user_id = str(payload["sub"])
        record = self.store.get_refresh_token(refresh_token)
        if record is None or record.user_id != user_id:
            logger.info("refresh_rejected", user_id=user_id, reason="unknown")
            raise TokenInvalidError(detail={"reason": "unknown"})
        if not record.is_usable(self._now()):
            reason = "revoked" if record.revoked else "expired"
            logger.info("refresh_rejected", user_id=user_id, reason=reason)
            raise TokenInvalidError(detail={"reason": reason})

        rotated: Optional[str] = None
        if self.settings.rotate_refresh_tokens:
            # Only the caller whose conditional update flipped the record may continue
            if self.store.revoke_refresh_token(refresh_token) != 1:
                logger.info("refresh_rejected", user_id=user_id, reason="rotation_race")
                raise TokenInvalidError(detail={"reason": "rotation_race"})
            rotated = self.issue_refresh_token(user_id)

        access = self.issue_access_token(user_id)
        logger.info("access_token_refreshed", user_id=user_id, rotated=rotated is not None)
        return RefreshResult(access_token=access, refresh_token=rotated)
