from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Any, Iterable, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sessionvault.logging import get_logger
from sessionvault.storage.errors import ConstraintViolation, StorageError
from sessionvault.storage.models import MUTABLE_SESSION_FIELDS, Session

_SESSION_COLUMNS = (
    "id, scope, identity_token, identity_key, code, code_expires_at, expires_at, "
    "duration_seconds, validated, created_at, parent_id"
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        scope TEXT NOT NULL,
        identity_token TEXT DEFAULT NULL,
        identity_key TEXT DEFAULT NULL,
        code TEXT NOT NULL,
        code_expires_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        duration_seconds INTEGER NOT NULL DEFAULT 1800,
        validated BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        parent_id TEXT DEFAULT NULL REFERENCES auth_session(id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_parent_idx ON auth_session (parent_id)",
    "CREATE INDEX IF NOT EXISTS auth_session_identity_idx ON auth_session (identity_key, scope)",
    "CREATE INDEX IF NOT EXISTS auth_session_expires_idx ON auth_session (expires_at)",
    # One delegated child per (parent, scope).
    """
    CREATE UNIQUE INDEX IF NOT EXISTS auth_session_child_scope_idx
    ON auth_session (parent_id, scope) WHERE parent_id IS NOT NULL
    """,
    # One pending login per (identity, scope).
    """
    CREATE UNIQUE INDEX IF NOT EXISTS auth_session_pending_identity_idx
    ON auth_session (identity_key, scope)
    WHERE NOT validated AND identity_key IS NOT NULL
    """,
)

# Unique index name -> ConstraintViolation field.
_UNIQUE_FIELDS = {
    "auth_session_pkey": "id",
    "auth_session_child_scope_idx": "parent_scope",
    "auth_session_pending_identity_idx": "identity_key",
}


class PostgresStore:
    """Postgres-backed session table.

    Every public method borrows one pooled connection; the pool commits when
    the block exits cleanly and rolls back otherwise, so each call is a
    single transaction.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            field = _UNIQUE_FIELDS.get(exc.diag.constraint_name or "", "id")
            raise ConstraintViolation("unique constraint violated", {"field": field}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("parent session missing", {"field": "parent_id"}) from exc
        except psycopg.Error as exc:
            self.logger.error(
                "postgres_operation_failed", error_type=type(exc).__name__, error=str(exc)
            )
            raise StorageError("database operation failed") from exc

    def _ensure_schema(self) -> None:
        """Create the ``auth_session`` table and its indexes if missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    @staticmethod
    def _row_to_session(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            scope=row["scope"],
            code=row["code"],
            code_expires_at=row["code_expires_at"],
            expires_at=row["expires_at"],
            duration_seconds=int(row.get("duration_seconds") or 1800),
            created_at=row["created_at"],
            validated=bool(row.get("validated", False)),
            identity_token=row.get("identity_token"),
            identity_key=row.get("identity_key"),
            parent_id=row.get("parent_id"),
        )

    # sessions
    def insert_session(
        self, session: Session, *, supersedes: Optional[str] = None
    ) -> Session:
        with self._connect() as conn:
            if supersedes is not None and supersedes != session.id:
                # Release the unique slots the replacement is about to take.
                conn.execute(
                    "UPDATE auth_session SET parent_id = NULL, identity_key = NULL WHERE id = %s",
                    (supersedes,),
                )
            conn.execute(
                f"""
                INSERT INTO auth_session ({_SESSION_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    session.id,
                    session.scope,
                    session.identity_token,
                    session.identity_key,
                    session.code,
                    session.code_expires_at,
                    session.expires_at,
                    session.duration_seconds,
                    session.validated,
                    session.created_at,
                    session.parent_id,
                ),
            )
            if supersedes is not None and supersedes != session.id:
                # Reparent before deleting so the cascade leaves children alone.
                conn.execute(
                    "UPDATE auth_session SET parent_id = %s WHERE parent_id = %s",
                    (session.id, supersedes),
                )
                conn.execute("DELETE FROM auth_session WHERE id = %s", (supersedes,))
        return session

    def session_exists(self, session_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return row is not None

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE id = %s",
                (session_id,),
            ).fetchone()
        if not row:
            return None
        return self._row_to_session(row)

    def list_child_sessions(self, parent_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE parent_id = %s",
                (parent_id,),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def find_sessions_by_identity(self, identity_key: str, scope: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE identity_key = %s AND scope = %s",
                (identity_key, scope),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def list_sessions(self, scope: Optional[str] = None) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS} FROM auth_session
                WHERE (%s::text IS NULL OR scope = %s)
                ORDER BY created_at DESC
                """,
                (scope, scope),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def update_session(self, session_id: str, **fields: Any) -> bool:
        if not fields:
            return self.session_exists(session_id)
        unknown = set(fields) - MUTABLE_SESSION_FIELDS
        if unknown:
            raise ValueError(f"cannot update session fields: {sorted(unknown)}")
        # Column names come from the allow-list above, never from callers.
        assignments = ", ".join(f"{name} = %s" for name in fields)
        with self._connect() as conn:
            result = conn.execute(
                f"UPDATE auth_session SET {assignments} WHERE id = %s",
                (*fields.values(), session_id),
            )
            return result.rowcount > 0

    def assign_identity(
        self, session_id: str, *, identity_token: str, identity_key: str
    ) -> Optional[List[str]]:
        """Attach an identity and drop other pending sessions for it in one transaction."""

        with self._connect() as conn:
            row = conn.execute(
                "SELECT scope, validated FROM auth_session WHERE id = %s FOR UPDATE",
                (session_id,),
            ).fetchone()
            if not row:
                return None
            superseded: List[str] = []
            if not row["validated"]:
                rows = conn.execute(
                    """
                    DELETE FROM auth_session
                    WHERE identity_key = %s AND scope = %s AND NOT validated AND id <> %s
                    RETURNING id
                    """,
                    (identity_key, row["scope"], session_id),
                ).fetchall()
                superseded = [str(r["id"]) for r in rows]
            conn.execute(
                "UPDATE auth_session SET identity_token = %s, identity_key = %s WHERE id = %s",
                (identity_token, identity_key, session_id),
            )
        return superseded

    def delete_sessions(self, session_ids: Iterable[str]) -> List[str]:
        ids = list(session_ids)
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "DELETE FROM auth_session WHERE id = ANY(%s) RETURNING id", (ids,)
            ).fetchall()
        return [str(row["id"]) for row in rows]

    def delete_expired_sessions(self, threshold: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE expires_at < %s", (threshold,)
            )
            return result.rowcount

    def close(self) -> None:
        self.pool.close()
