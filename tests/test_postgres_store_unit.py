import uuid
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from authflow.storage.errors import ConstraintViolation
from authflow.storage.postgres import PostgresStore


class FakeResult:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, results=None, error=None):
        self.results = list(results or [])
        self.error = error
        self.statements = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.error is not None:
            raise self.error
        return self.results.pop(0) if self.results else FakeResult()


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    def connection(self):
        return self.conn


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


def _store(conn=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(conn) if conn is not None else DummyPool()
    return store


def test_create_user_writes_user_and_credential_together():
    conn = FakeConnection()
    store = _store(conn)

    user = store.create_user("kim@example.com", "Kim Park", "$argon2id$hash")

    assert [sql.split()[2] for sql, _ in conn.statements] == ["app_user", "user_auth_credential"]
    assert conn.statements[1][1] == (user.id, "$argon2id$hash", "argon2id")
    assert user.is_verified is True


def test_unique_violation_becomes_constraint_violation():
    store = _store(FakeConnection(error=errors.UniqueViolation("duplicate key")))

    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user("kim@example.com", "Kim Park", "hash")
    assert exc_info.value.detail == {"field": "email"}


def test_get_user_rejects_non_uuid_without_querying():
    assert _store().get_user("not-a-uuid") is None


def test_get_user_maps_row():
    user_id = uuid.uuid4()
    row = {
        "id": user_id,
        "email": "kim@example.com",
        "full_name": "Kim Park",
        "is_verified": True,
        "is_active": True,
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        "last_login_at": None,
        "meta": None,
    }
    store = _store(FakeConnection([FakeResult([row])]))

    user = store.get_user(str(user_id))

    assert user.id == str(user_id)
    assert user.username == "Kim Park"


def test_consume_refresh_token_uses_delete_returning():
    user_id = uuid.uuid4()
    now = datetime.now(timezone.utc)
    row = {
        "token_hash": "abc",
        "user_id": user_id,
        "created_at": now,
        "expires_at": now + timedelta(days=7),
    }
    conn = FakeConnection([FakeResult([row]), FakeResult()])
    store = _store(conn)

    first = store.consume_refresh_token("abc")
    second = store.consume_refresh_token("abc")

    assert first.user_id == str(user_id)
    assert second is None
    assert conn.statements[0][0].startswith("DELETE FROM refresh_token")
    assert "RETURNING" in conn.statements[0][0]


def test_refresh_token_for_missing_user():
    store = _store(FakeConnection(error=errors.ForeignKeyViolation("fk")))

    with pytest.raises(ConstraintViolation):
        store.create_refresh_token(
            str(uuid.uuid4()), "abc", datetime.now(timezone.utc) + timedelta(days=7)
        )


def test_revoke_and_purge_report_rowcount():
    conn = FakeConnection([FakeResult(rowcount=3), FakeResult(rowcount=2)])
    store = _store(conn)

    assert store.revoke_user_refresh_tokens(str(uuid.uuid4())) == 3
    assert store.purge_expired_refresh_tokens() == 2
