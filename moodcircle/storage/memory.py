from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from moodcircle.logging import get_logger
from moodcircle.storage.errors import ConstraintViolation
from moodcircle.storage.models import Identity, OneTimeCode, RefreshTokenRecord


class MemoryStore:
    """In-memory backing store implementing the code, identity and token stores.

    Every check-and-set runs under one re-entrant data lock, which gives the
    same atomicity the Postgres store gets from its constraints. When
    ``fs_root`` is set, state is written to ``<fs_root>/state`` after every
    mutation and reloaded on construction.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.codes: Dict[str, OneTimeCode] = {}
        self.identities: Dict[str, Identity] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        # RLock so helpers can be called while a mutation holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def verify_connection(self) -> None:
        """Health probe; the in-memory store is always reachable."""
        return None

    # -- one-time codes -------------------------------------------------

    def insert_code(self, record: OneTimeCode) -> OneTimeCode:
        with self._data_lock:
            if record.email in self.codes:
                raise ConstraintViolation("code already exists", {"field": "email"})
            self.codes[record.email] = record
            self._persist_state()
            return record

    def upsert_code(
        self, record: OneTimeCode, *, now: datetime
    ) -> tuple[bool, Optional[OneTimeCode]]:
        """Insert ``record`` unless an unexpired code exists for the email.

        Returns ``(True, None)`` when the record was stored (replacing any
        stale one) and ``(False, existing)`` when an active code blocked it.
        """
        with self._data_lock:
            existing = self.codes.get(record.email)
            if existing and existing.is_active(now):
                return False, existing
            self.codes[record.email] = record
            self._persist_state()
            return True, None

    def find_active_code(self, email: str, *, now: datetime) -> Optional[OneTimeCode]:
        with self._data_lock:
            record = self.codes.get(email)
            if record and record.is_active(now):
                return record
            return None

    def find_matching_code(
        self, email: str, code: str, *, now: datetime
    ) -> Optional[OneTimeCode]:
        with self._data_lock:
            record = self.codes.get(email)
            if record and record.code == code and record.is_active(now):
                return record
            return None

    def delete_codes_for_email(self, email: str) -> int:
        with self._data_lock:
            removed = self.codes.pop(email, None)
            if removed is None:
                return 0
            self._persist_state()
            return 1

    def delete_code_if_match(self, email: str, code: str) -> int:
        """Remove the code only if it still matches; returns rows removed."""
        with self._data_lock:
            record = self.codes.get(email)
            if not record or record.code != code:
                return 0
            del self.codes[email]
            self._persist_state()
            return 1

    def purge_expired_codes(self, *, now: datetime) -> int:
        with self._data_lock:
            stale = [email for email, rec in self.codes.items() if not rec.is_active(now)]
            for email in stale:
                self.codes.pop(email, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- identities -----------------------------------------------------

    def create_identity(self, email: str, pseudonym: str) -> Identity:
        with self._data_lock:
            for existing in self.identities.values():
                if existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.pseudonym == pseudonym:
                    raise ConstraintViolation(
                        "pseudonym already exists", {"field": "pseudonym"}
                    )
            identity = Identity.new(email, pseudonym)
            self.identities[identity.id] = identity
            self._persist_state()
            return identity

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        with self._data_lock:
            return next((i for i in self.identities.values() if i.email == email), None)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            return self.identities.get(identity_id)

    # -- refresh tokens -------------------------------------------------

    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._data_lock:
            if record.user_id not in self.identities:
                raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
            if record.token in self.refresh_tokens:
                raise ConstraintViolation("token already exists", {"field": "token"})
            self.refresh_tokens[record.token] = record
            self._persist_state()
            return record

    def get_refresh_token(self, token: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            return self.refresh_tokens.get(token)

    def revoke_refresh_token(self, token: str) -> int:
        """Mark one token revoked; returns 1 only if it flipped from active."""
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if not record or record.revoked:
                return 0
            record.revoked = True
            self._persist_state()
            return 1

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and not record.revoked:
                    record.revoked = True
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def count_active_refresh_tokens(self, user_id: str, *, now: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for record in self.refresh_tokens.values()
                if record.user_id == user_id and record.is_usable(now)
            )

    # -- persistence ----------------------------------------------------

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "codes": [self._serialize_code(c) for c in self.codes.values()],
            "identities": [self._serialize_identity(i) for i in self.identities.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.codes = {
            c["email"]: self._deserialize_code(c) for c in data.get("codes", [])
        }
        self.identities = {
            i["id"]: self._deserialize_identity(i) for i in data.get("identities", [])
        }
        self.refresh_tokens = {
            r["token"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self.logger.info(
            "memory_store_state_loaded",
            identities=len(self.identities),
            refresh_records=len(self.refresh_tokens),
        )
        return True

    def _serialize_code(self, record: OneTimeCode) -> dict:
        return {
            "email": record.email,
            "code": record.code,
            "expires_at": self._serialize_datetime(record.expires_at),
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_code(self, data: dict) -> OneTimeCode:
        return OneTimeCode(
            email=data["email"],
            code=data["code"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_identity(self, identity: Identity) -> dict:
        return {
            "id": identity.id,
            "email": identity.email,
            "pseudonym": identity.pseudonym,
            "created_at": self._serialize_datetime(identity.created_at),
        }

    def _deserialize_identity(self, data: dict) -> Identity:
        return Identity(
            id=data["id"],
            email=data["email"],
            pseudonym=data["pseudonym"],
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict:
        return {
            "token": record.token,
            "user_id": record.user_id,
            "expires_at": self._serialize_datetime(record.expires_at),
            "revoked": record.revoked,
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            token=data["token"],
            user_id=data["user_id"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked=bool(data.get("revoked", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
