from contextlib import contextmanager
from datetime import timedelta
from types import SimpleNamespace

import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from moodcircle.logging import get_logger
from moodcircle.storage.errors import ConstraintViolation, StorageUnavailable
from moodcircle.storage.models import OneTimeCode, RefreshTokenRecord, utcnow
from moodcircle.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self.row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self.row


class FakeConnection:
    def __init__(self, results):
        self.results = results
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        result = self.results.pop(0) if self.results else FakeCursor()
        if isinstance(result, Exception):
            raise result
        return result


class FakePool:
    def __init__(self, *results):
        self.conn = FakeConnection(list(results))

    @contextmanager
    def connection(self, timeout=None):
        yield self.conn


class TimeoutPool:
    @contextmanager
    def connection(self, timeout=None):
        raise PoolTimeout("couldn't get a connection after 5.00 sec")
        yield  # pragma: no cover


class NamedUniqueViolation(errors.UniqueViolation):
    def __init__(self, constraint_name):
        super().__init__("duplicate key value violates unique constraint")
        self._constraint_name = constraint_name

    @property
    def diag(self):
        return SimpleNamespace(constraint_name=self._constraint_name)


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://stub"
    store.connect_timeout = 1.0
    store.logger = get_logger("test")
    return store


def _code(now):
    return OneTimeCode(
        email="user@example.com",
        code="123456",
        expires_at=now + timedelta(minutes=10),
        created_at=now,
    )


def test_upsert_code_inserted():
    now = utcnow()
    pool = FakePool(FakeCursor(row={"email": "user@example.com"}))
    store = _store(pool)

    assert store.upsert_code(_code(now), now=now) == (True, None)
    sql, params = pool.conn.statements[0]
    assert "ON CONFLICT (email) DO UPDATE" in sql
    assert "WHERE otp_code.expires_at <= %s" in sql
    assert params[-1] == now


def test_upsert_code_blocked_by_active_code():
    now = utcnow()
    existing = {
        "email": "user@example.com",
        "code": "999999",
        "expires_at": now + timedelta(minutes=4),
        "created_at": now - timedelta(minutes=6),
    }
    store = _store(FakePool(FakeCursor(row=None), FakeCursor(row=existing)))

    stored, record = store.upsert_code(_code(now), now=now)

    assert stored is False
    assert record.code == "999999"
    assert record.expires_at == existing["expires_at"]


def test_delete_code_if_match_returns_rowcount():
    pool = FakePool(FakeCursor(rowcount=1), FakeCursor(rowcount=0))
    store = _store(pool)

    assert store.delete_code_if_match("user@example.com", "123456") == 1
    assert store.delete_code_if_match("user@example.com", "123456") == 0
    sql, params = pool.conn.statements[0]
    assert sql == "DELETE FROM otp_code WHERE email = %s AND code = %s"
    assert params == ("user@example.com", "123456")


def test_find_matching_code_maps_row():
    now = utcnow()
    row = {
        "email": "user@example.com",
        "code": "123456",
        "expires_at": now + timedelta(minutes=5),
        "created_at": now,
    }
    store = _store(FakePool(FakeCursor(row=row)))

    record = store.find_matching_code("user@example.com", "123456", now=now)

    assert record.email == "user@example.com"
    assert record.is_active(now)


@pytest.mark.parametrize(
    "constraint, field",
    [
        ("app_identity_pseudonym_key", "pseudonym"),
        ("app_identity_email_key", "email"),
        (None, "email"),
    ],
)
def test_create_identity_maps_unique_violations(constraint, field):
    store = _store(FakePool(NamedUniqueViolation(constraint)))

    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_identity("user@example.com", "mood_11111111")
    assert exc_info.value.detail == {"field": field}


def test_insert_refresh_token_for_missing_user():
    now = utcnow()
    record = RefreshTokenRecord(
        token="tok", user_id="ghost", expires_at=now + timedelta(days=7), created_at=now
    )
    store = _store(FakePool(errors.ForeignKeyViolation("missing parent")))

    with pytest.raises(ConstraintViolation) as exc_info:
        store.insert_refresh_token(record)
    assert exc_info.value.detail == {"user_id": "ghost"}


def test_revocations_only_touch_active_rows():
    pool = FakePool(FakeCursor(rowcount=1), FakeCursor(rowcount=3))
    store = _store(pool)

    assert store.revoke_refresh_token("tok") == 1
    assert store.revoke_user_refresh_tokens("user-1") == 3
    for sql, _ in pool.conn.statements:
        assert sql.startswith("UPDATE refresh_token SET revoked = TRUE")
        assert sql.endswith("AND NOT revoked")


def test_refresh_token_row_mapping():
    now = utcnow()
    row = {
        "token": "tok",
        "user_id": "7b0c1c6e-8a3b-4f59-9b53-0c5f5d8f6a11",
        "expires_at": now + timedelta(days=7),
        "revoked": True,
        "created_at": now,
    }
    store = _store(FakePool(FakeCursor(row=row)))

    record = store.get_refresh_token("tok")

    assert record.user_id == row["user_id"]
    assert record.revoked is True
    assert not record.is_usable(now)


def test_pool_timeout_is_storage_unavailable():
    store = _store(TimeoutPool())

    with pytest.raises(StorageUnavailable):
        store.verify_connection()


def test_operational_error_is_storage_unavailable():
    store = _store(FakePool(errors.OperationalError("server closed the connection")))

    with pytest.raises(StorageUnavailable):
        store.get_identity_by_email("user@example.com")
