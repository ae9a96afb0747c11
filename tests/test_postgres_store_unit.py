from contextlib import contextmanager
from datetime import datetime, timezone

import pytest
from psycopg import errors

from fingerauth.storage.errors import ConstraintViolation
from fingerauth.storage.postgres import PostgresStore

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class DummyResult:
    def __init__(self, rows, rowcount=None):
        self.rows = rows
        self.rowcount = len(rows) if rowcount is None else rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class DummyConnection:
    def __init__(self, pool):
        self.pool = pool

    def execute(self, sql, params=None):
        self.pool.calls.append((" ".join(sql.split()), params))
        outcome = self.pool.results.pop(0) if self.pool.results else DummyResult([])
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class DummyPool:
    """Records statements and replays queued results in order."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    @contextmanager
    def connection(self):
        yield DummyConnection(self)


def make_store(*results):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool(*results)
    return store


def otp_row(**overrides):
    row = {
        "id": 3,
        "user_key": "key-1",
        "emails": ["a@x.com"],
        "otp_code": "1234",
        "fingerprint": "$2b$07$hash",
        "mail_attempts": 1,
        "code_attempts": 1,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def test_create_user_maps_row_and_normalizes_email():
    store = make_store(
        DummyResult(
            [
                {
                    "id": 1,
                    "email": "a@x.com",
                    "password_hash": None,
                    "name": "Ann",
                    "surname": None,
                    "phone": None,
                    "roles": ["USER", "ADMIN"],
                    "provider": None,
                    "created_at": NOW,
                }
            ]
        )
    )
    user = store.create_user(" A@X.com ", name="Ann", roles=["USER", "ADMIN"])
    sql, params = store.pool.calls[0]
    assert sql.startswith("INSERT INTO app_user")
    assert params[0] == "a@x.com"
    assert user.is_admin
    assert user.created_at == NOW


def test_create_user_unique_violation():
    store = make_store(errors.UniqueViolation("duplicate key"))
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user("a@x.com")
    assert exc_info.value.constraint == "app_user_email_key"


def test_create_otp_record_conflict_raises():
    store = make_store(DummyResult([]))
    with pytest.raises(ConstraintViolation):
        store.create_otp_record("key-1", "a@x.com", "1234", "fp")
    sql, params = store.pool.calls[0]
    assert "ON CONFLICT (user_key) DO NOTHING" in sql
    assert params == ("key-1", ["a@x.com"], "1234", "fp")


def test_create_otp_record_returns_row():
    store = make_store(DummyResult([otp_row()]))
    record = store.create_otp_record("key-1", "a@x.com", "1234", "$2b$07$hash")
    assert record.id == 3
    assert record.emails == ["a@x.com"]


def test_update_otp_record_builds_increments():
    store = make_store(DummyResult([otp_row(mail_attempts=2, otp_code="5678")]))
    record = store.update_otp_record(
        3,
        increment_mail_attempts=True,
        otp_code="5678",
        code_attempts=1,
        emails=["a@x.com", "a@x.com", "b@x.com"],
    )
    sql, params = store.pool.calls[0]
    assert sql == (
        "UPDATE otp_record SET otp_code = %s, code_attempts = %s, emails = %s, "
        "mail_attempts = mail_attempts + 1, updated_at = now() WHERE id = %s RETURNING *"
    )
    assert params == ("5678", 1, ["a@x.com", "b@x.com"], 3)
    assert record.mail_attempts == 2


def test_update_otp_record_rejects_unknown_columns():
    store = make_store()
    with pytest.raises(ValueError):
        store.update_otp_record(3, user_key="hijack")
    assert store.pool.calls == []


def test_update_otp_record_missing_row():
    store = make_store(DummyResult([]))
    assert store.update_otp_record(99, increment_code_attempts=True) is None
    sql, _ = store.pool.calls[0]
    assert "code_attempts = code_attempts + 1" in sql


def test_list_otp_records_filters_and_pages():
    store = make_store(DummyResult([otp_row(mail_attempts=5)]))
    records = store.list_otp_records(5, "x.com", limit=10, offset=20, newest_first=False)
    sql, params = store.pool.calls[0]
    assert "position(%s in array_to_string(emails, ' ')) > 0" in sql
    assert "ORDER BY updated_at ASC, id ASC" in sql
    assert sql.endswith("LIMIT %s OFFSET %s")
    assert params == (5, "x.com", 10, 20)
    assert [r.mail_attempts for r in records] == [5]


def test_list_otp_records_without_filter():
    store = make_store(DummyResult([]))
    store.list_otp_records(5)
    sql, params = store.pool.calls[0]
    assert "position" not in sql
    assert "LIMIT" not in sql
    assert params == (5,)


def test_delete_session_reports_rowcount():
    store = make_store(DummyResult([], rowcount=1), DummyResult([], rowcount=0))
    assert store.delete_session(7) is True
    assert store.delete_session(7) is False


def test_list_user_sessions_orders_oldest_first():
    row = {
        "id": 1,
        "user_id": 2,
        "fingerprint": "fp",
        "access_token": "a",
        "refresh_token": "r",
        "expires_at": NOW,
        "created_at": NOW,
    }
    store = make_store(DummyResult([row]))
    (session,) = store.list_user_sessions(2)
    sql, _ = store.pool.calls[0]
    assert "ORDER BY created_at ASC, id ASC" in sql
    assert session.refresh_token == "r"


def test_create_session_missing_user():
    store = make_store(errors.ForeignKeyViolation("fk"))
    with pytest.raises(ConstraintViolation):
        store.create_session(1, "fp", "a", "r", NOW)


def test_ping():
    store = make_store(DummyResult([{"ok": 1}]))
    assert store.ping() is True
