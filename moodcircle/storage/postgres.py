from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from moodcircle.logging import get_logger
from moodcircle.storage.errors import ConstraintViolation, StorageUnavailable
from moodcircle.storage.models import Identity, OneTimeCode, RefreshTokenRecord

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_identity (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        pseudonym TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    # One row per email: the primary key is the issuance uniqueness guard
    """
    CREATE TABLE IF NOT EXISTS otp_code (
        email TEXT PRIMARY KEY,
        code TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        token TEXT PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_identity(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS refresh_token_active_user_idx
        ON refresh_token (user_id) WHERE NOT revoked
    """,
)


class PostgresStore:
    """Postgres-backed code, identity and refresh-token store."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        connect_timeout: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.connect_timeout = connect_timeout
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        """Borrow a pooled connection; unreachable databases raise StorageUnavailable."""
        try:
            with self.pool.connection(timeout=self.connect_timeout) as conn:
                yield conn
        except (PoolTimeout, psycopg.OperationalError) as exc:
            self.logger.error(
                "postgres_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise StorageUnavailable("database unavailable") from exc

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- one-time codes -------------------------------------------------

    @staticmethod
    def _row_to_code(row: dict) -> OneTimeCode:
        return OneTimeCode(
            email=row["email"],
            code=row["code"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    def insert_code(self, record: OneTimeCode) -> OneTimeCode:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO otp_code (email, code, expires_at, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (record.email, record.code, record.expires_at, record.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("code already exists", {"field": "email"})
        return record

    def upsert_code(
        self, record: OneTimeCode, *, now: datetime
    ) -> tuple[bool, Optional[OneTimeCode]]:
        """Atomically insert ``record`` or report the active code blocking it.

        The conflict update only fires when the stored row has expired, so
        concurrent requests for one email cannot both create a live code.
        """
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO otp_code (email, code, expires_at, created_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (email) DO UPDATE
                    SET code = EXCLUDED.code,
                        expires_at = EXCLUDED.expires_at,
                        created_at = EXCLUDED.created_at
                    WHERE otp_code.expires_at <= %s
                RETURNING email
                """,
                (record.email, record.code, record.expires_at, record.created_at, now),
            ).fetchone()
            if row:
                return True, None
            existing = conn.execute(
                "SELECT * FROM otp_code WHERE email = %s", (record.email,)
            ).fetchone()
        return False, self._row_to_code(existing) if existing else None

    def find_active_code(self, email: str, *, now: datetime) -> Optional[OneTimeCode]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM otp_code WHERE email = %s AND expires_at > %s",
                (email, now),
            ).fetchone()
        return self._row_to_code(row) if row else None

    def find_matching_code(
        self, email: str, code: str, *, now: datetime
    ) -> Optional[OneTimeCode]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM otp_code
                WHERE email = %s AND code = %s AND expires_at > %s
                """,
                (email, code, now),
            ).fetchone()
        return self._row_to_code(row) if row else None

    def delete_codes_for_email(self, email: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM otp_code WHERE email = %s", (email,))
            return cur.rowcount

    def delete_code_if_match(self, email: str, code: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM otp_code WHERE email = %s AND code = %s", (email, code)
            )
            return cur.rowcount

    def purge_expired_codes(self, *, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM otp_code WHERE expires_at <= %s", (now,))
            return cur.rowcount

    # -- identities -----------------------------------------------------

    @staticmethod
    def _row_to_identity(row: dict) -> Identity:
        return Identity(
            id=str(row["id"]),
            email=row["email"],
            pseudonym=row["pseudonym"],
            created_at=row["created_at"],
        )

    def create_identity(self, email: str, pseudonym: str) -> Identity:
        identity = Identity.new(email, pseudonym)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_identity (id, email, pseudonym, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (identity.id, email, pseudonym, identity.created_at),
                )
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            if "pseudonym" in constraint:
                raise ConstraintViolation("pseudonym already exists", {"field": "pseudonym"})
            raise ConstraintViolation("email already exists", {"field": "email"})
        return identity

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_identity WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_identity(row) if row else None

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_identity WHERE id = %s", (identity_id,)
            ).fetchone()
        return self._row_to_identity(row) if row else None

    # -- refresh tokens -------------------------------------------------

    @staticmethod
    def _row_to_refresh_token(row: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            token=row["token"],
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            revoked=bool(row.get("revoked", False)),
            created_at=row["created_at"],
        )

    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (token, user_id, expires_at, revoked, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        record.token,
                        record.user_id,
                        record.expires_at,
                        record.revoked,
                        record.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("token already exists", {"field": "token"})
        return record

    def get_refresh_token(self, token: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def revoke_refresh_token(self, token: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE token = %s AND NOT revoked",
                (token,),
            )
            return cur.rowcount

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE user_id = %s AND NOT revoked",
                (user_id,),
            )
            return cur.rowcount

    def count_active_refresh_tokens(self, user_id: str, *, now: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT count(*) AS active FROM refresh_token
                WHERE user_id = %s AND NOT revoked AND expires_at > %s
                """,
                (user_id, now),
            ).fetchone()
        return int(row["active"]) if row else 0
