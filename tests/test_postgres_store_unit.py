import contextlib
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from psycopg import errors

from sessionvault.logging import get_logger
from sessionvault.storage.errors import ConstraintViolation, StorageError
from sessionvault.storage.models import Session
from sessionvault.storage.postgres import _SCHEMA_STATEMENTS, PostgresStore


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, responses=None, error=None):
        self.statements = []
        self.responses = list(responses or [])
        self.error = error

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.error is not None:
            raise self.error
        return self.responses.pop(0) if self.responses else FakeCursor()


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextlib.contextmanager
    def connection(self):
        yield self.conn


def _store(conn):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unused"
    store.logger = get_logger(__name__)
    store.pool = FakePool(conn)
    return store


def _row(**overrides):
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    row = {
        "id": "a" * 32,
        "scope": "scope-a",
        "identity_token": None,
        "identity_key": None,
        "code": "123456",
        "code_expires_at": now,
        "expires_at": now,
        "duration_seconds": 1800,
        "validated": False,
        "created_at": now,
        "parent_id": None,
    }
    row.update(overrides)
    return row


def test_insert_with_supersedes_reparents_then_deletes_in_one_block():
    conn = FakeConnection()
    store = _store(conn)
    session = Session.new("n" * 32, "scope-a", "123456")

    store.insert_session(session, supersedes="o" * 32)

    sql = [statement for statement, _ in conn.statements]
    assert sql[0] == "UPDATE auth_session SET parent_id = NULL, identity_key = NULL WHERE id = %s"
    assert conn.statements[0][1] == ("o" * 32,)
    assert sql[1].startswith("INSERT INTO auth_session")
    assert sql[2] == "UPDATE auth_session SET parent_id = %s WHERE parent_id = %s"
    assert conn.statements[2][1] == ("n" * 32, "o" * 32)
    assert sql[3] == "DELETE FROM auth_session WHERE id = %s"


def test_plain_insert_is_a_single_statement():
    conn = FakeConnection()
    store = _store(conn)

    store.insert_session(Session.new("n" * 32, "scope-a", "123456"))

    assert len(conn.statements) == 1
    assert conn.statements[0][0].startswith("INSERT INTO auth_session")


@pytest.mark.parametrize(
    "constraint, field",
    [
        ("auth_session_pkey", "id"),
        ("auth_session_child_scope_idx", "parent_scope"),
        ("auth_session_pending_identity_idx", "identity_key"),
    ],
)
def test_unique_index_names_map_to_fields(constraint, field):
    class NamedUniqueViolation(errors.UniqueViolation):
        diag = SimpleNamespace(constraint_name=constraint)

    store = _store(FakeConnection(error=NamedUniqueViolation("duplicate key")))

    with pytest.raises(ConstraintViolation) as excinfo:
        store.insert_session(Session.new("a" * 32, "scope-b", "123456", parent_id="p" * 32))
    assert excinfo.value.detail["field"] == field


def test_schema_declares_one_child_per_scope_and_one_pending_login():
    schema = " ".join(" ".join(s.split()) for s in _SCHEMA_STATEMENTS)
    assert "auth_session_child_scope_idx ON auth_session (parent_id, scope)" in schema
    assert "auth_session_pending_identity_idx ON auth_session (identity_key, scope)" in schema
    assert "WHERE NOT validated" in schema


def test_assign_identity_supersedes_pending_rows_in_one_block():
    conn = FakeConnection(
        [
            FakeCursor([{"scope": "scope-a", "validated": False}]),
            FakeCursor([{"id": "o" * 32}]),
            FakeCursor(rowcount=1),
        ]
    )
    store = _store(conn)

    superseded = store.assign_identity("a" * 32, identity_token="tok", identity_key="k")

    assert superseded == ["o" * 32]
    sql = [statement for statement, _ in conn.statements]
    assert sql[0].endswith("FOR UPDATE")
    assert sql[1].startswith("DELETE FROM auth_session WHERE identity_key = %s")
    assert conn.statements[1][1] == ("k", "scope-a", "a" * 32)
    assert sql[2] == "UPDATE auth_session SET identity_token = %s, identity_key = %s WHERE id = %s"


def test_assign_identity_on_validated_or_missing_session():
    conn = FakeConnection([FakeCursor([{"scope": "scope-a", "validated": True}])])
    store = _store(conn)

    assert store.assign_identity("a" * 32, identity_token="tok", identity_key="k") == []
    assert len(conn.statements) == 2

    missing = _store(FakeConnection([FakeCursor()]))
    assert missing.assign_identity("b" * 32, identity_token="tok", identity_key="k") is None



def test_unique_violation_maps_to_constraint_violation():
    store = _store(FakeConnection(error=errors.UniqueViolation("duplicate key")))

    with pytest.raises(ConstraintViolation) as excinfo:
        store.insert_session(Session.new("a" * 32, "scope-a", "123456"))
    assert excinfo.value.detail["field"] == "id"


def test_foreign_key_violation_maps_to_parent_constraint():
    store = _store(FakeConnection(error=errors.ForeignKeyViolation("missing parent")))

    with pytest.raises(ConstraintViolation) as excinfo:
        store.insert_session(Session.new("a" * 32, "scope-a", "123456", parent_id="p"))
    assert excinfo.value.detail["field"] == "parent_id"


def test_other_database_errors_map_to_storage_error():
    store = _store(FakeConnection(error=errors.OperationalError("connection lost")))

    with pytest.raises(StorageError):
        store.get_session("a" * 32)


def test_get_session_maps_row():
    store = _store(FakeConnection([FakeCursor([_row(validated=True, parent_id="p" * 32)])]))

    session = store.get_session("a" * 32)

    assert session.validated is True
    assert session.parent_id == "p" * 32
    assert store.get_session("missing") is None


def test_update_session_only_uses_allowed_columns():
    conn = FakeConnection([FakeCursor(rowcount=1)])
    store = _store(conn)

    assert store.update_session("a" * 32, validated=True, identity_token="tok") is True
    statement, params = conn.statements[0]
    assert statement == "UPDATE auth_session SET validated = %s, identity_token = %s WHERE id = %s"
    assert params == (True, "tok", "a" * 32)

    with pytest.raises(ValueError):
        store.update_session("a" * 32, id="b" * 32)


def test_delete_sessions_returns_deleted_ids():
    conn = FakeConnection([FakeCursor([{"id": "a" * 32}])])
    store = _store(conn)

    assert store.delete_sessions(["a" * 32, "b" * 32]) == ["a" * 32]
    assert conn.statements[0][1] == (["a" * 32, "b" * 32],)
    assert store.delete_sessions([]) == []
