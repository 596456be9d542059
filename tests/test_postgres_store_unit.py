import uuid
from datetime import datetime, timezone

import pytest
from psycopg import errors

from novo.logging import get_logger
from novo.storage.errors import ConstraintViolation
from novo.storage.postgres import PostgresStore


class FakeResult:
    def __init__(self, row=None, rowcount=0):
        self._row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self._row


class FakeConnection:
    def __init__(self, results, executed, raises=None):
        self.results = results
        self.executed = executed
        self.raises = raises

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        if self.raises is not None:
            raise self.raises
        return self.results.pop(0) if self.results else FakeResult()


class FakePool:
    def __init__(self, results=None, raises=None):
        self.results = list(results or [])
        self.executed = []
        self.raises = raises

    def connection(self):
        return FakeConnection(self.results, self.executed, self.raises)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://unit"
    store.logger = get_logger(__name__)
    return store


def _slot_row(account_id, session_hash, version):
    return {
        "id": uuid.UUID(account_id),
        "refresh_session_hash": session_hash,
        "refresh_session_version": version,
        "refresh_session_updated_at": datetime(2030, 1, 1),
    }


def test_non_uuid_ids_skip_the_database():
    store = _store(DummyPool())
    assert store.get_account("not-a-uuid") is None
    assert store.get_session_slot("not-a-uuid") is None


def test_write_session_hash_is_single_versioned_update():
    account_id = str(uuid.uuid4())
    pool = FakePool([FakeResult(_slot_row(account_id, "f" * 64, 3))])
    slot = _store(pool).write_session_hash(account_id, "f" * 64)

    sql, params = pool.executed[0]
    assert sql.startswith("UPDATE users")
    assert "refresh_session_version = refresh_session_version + 1" in sql
    assert params == ("f" * 64, account_id)
    assert slot.version == 3
    assert slot.account_id == account_id
    assert slot.updated_at.tzinfo is timezone.utc


def test_write_session_hash_missing_account():
    pool = FakePool([FakeResult(None)])
    assert _store(pool).write_session_hash(str(uuid.uuid4()), None) is None


def test_create_account_unique_violation_maps_to_constraint():
    pool = FakePool(raises=errors.UniqueViolation("duplicate key"))
    with pytest.raises(ConstraintViolation) as excinfo:
        _store(pool).create_account("ada@example.com", "Ada", password_hash="h")
    assert excinfo.value.detail["field"] == "email"


def test_email_lookup_is_case_insensitive_in_sql():
    account_id = uuid.uuid4()
    now = datetime(2030, 1, 1, tzinfo=timezone.utc)
    row = {
        "id": account_id,
        "email": "ada@example.com",
        "name": "Ada",
        "password_hash": None,
        "provider": "google",
        "provider_uid": "g",
        "is_premium": False,
        "created_at": now,
        "updated_at": now,
    }
    pool = FakePool([FakeResult(row)])
    account = _store(pool).get_account_by_email("ADA@example.com")
    assert "lower(email) = lower(%s)" in pool.executed[0][0]
    assert account.id == str(account_id)
    assert account.is_federated_only


def test_delete_account_reports_rowcount():
    pool = FakePool([FakeResult(rowcount=1), FakeResult(rowcount=0)])
    store = _store(pool)
    assert store.delete_account(str(uuid.uuid4())) is True
    assert store.delete_account(str(uuid.uuid4())) is False
