from __future__ import annotations

import contextlib
import copy
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

from sessionvault.logging import get_logger
from sessionvault.storage.errors import ConstraintViolation, StorageError
from sessionvault.storage.models import MUTABLE_SESSION_FIELDS, Session


class MemoryStore:
    """In-memory session table with JSON snapshot persistence.

    Mirrors the Postgres store contract closely enough that the lifecycle
    manager cannot tell them apart. The same uniqueness rules are enforced
    under a single re-entrant lock:
    - duplicate ids (``field="id"``)
    - dangling parent references (``field="parent_id"``)
    - a second child of one parent in one scope (``field="parent_scope"``)
    - a second unvalidated session per (identity_key, scope) (``field="identity_key"``)
    Every write is applied and persisted as one step; if persisting fails the
    in-memory table is rolled back.
    """

    def __init__(self, fs_root: str = "/tmp/sessionvault") -> None:
        self.logger = get_logger(__name__)
        self.sessions: Dict[str, Session] = {}
        # RLock so helpers can be called from inside locked sections
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "sessions.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    @contextlib.contextmanager
    def _write(self) -> Iterator[None]:
        """Apply a mutation and persist it, restoring the previous table on failure."""

        with self._data_lock:
            snapshot = copy.deepcopy(self.sessions)
            try:
                yield
                self._persist_state()
            except Exception:
                self.sessions = snapshot
                raise

    def _descendants(self, roots: Iterable[str]) -> Set[str]:
        found: Set[str] = set()
        frontier = set(roots)
        while frontier:
            frontier = {
                sid
                for sid, s in self.sessions.items()
                if s.parent_id in frontier and sid not in found
            }
            found |= frontier
        return found

    def _check_child_scope(
        self, parent_id: Optional[str], scope: str, *, exclude: Iterable[str]
    ) -> None:
        if parent_id is None:
            return
        skip = set(exclude)
        for sid, s in self.sessions.items():
            if sid not in skip and s.parent_id == parent_id and s.scope == scope:
                raise ConstraintViolation(
                    "parent already has a child in this scope",
                    {"field": "parent_scope", "parent_id": parent_id},
                )

    def _check_pending_identity(
        self,
        identity_key: Optional[str],
        scope: str,
        validated: bool,
        *,
        exclude: Iterable[str],
    ) -> None:
        if validated or not identity_key:
            return
        skip = set(exclude)
        for sid, s in self.sessions.items():
            if (
                sid not in skip
                and not s.validated
                and s.identity_key == identity_key
                and s.scope == scope
            ):
                raise ConstraintViolation(
                    "identity already has a pending session in this scope",
                    {"field": "identity_key"},
                )

    # sessions
    def insert_session(
        self, session: Session, *, supersedes: Optional[str] = None
    ) -> Session:
        with self._write():
            if session.id in self.sessions:
                raise ConstraintViolation(
                    "session id already exists", {"field": "id"}
                )
            if session.parent_id is not None and session.parent_id not in self.sessions:
                raise ConstraintViolation(
                    "parent session missing",
                    {"field": "parent_id", "parent_id": session.parent_id},
                )
            replaced = [supersedes] if supersedes is not None else []
            self._check_child_scope(session.parent_id, session.scope, exclude=replaced)
            self._check_pending_identity(
                session.identity_key, session.scope, session.validated, exclude=replaced
            )
            self.sessions[session.id] = session
            if supersedes is not None and supersedes != session.id:
                for child in self.sessions.values():
                    if child.parent_id == supersedes:
                        child.parent_id = session.id
                self.sessions.pop(supersedes, None)
            return session

    def session_exists(self, session_id: str) -> bool:
        with self._data_lock:
            return session_id in self.sessions

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def list_child_sessions(self, parent_id: str) -> List[Session]:
        with self._data_lock:
            return [s for s in self.sessions.values() if s.parent_id == parent_id]

    def find_sessions_by_identity(self, identity_key: str, scope: str) -> List[Session]:
        with self._data_lock:
            return [
                s
                for s in self.sessions.values()
                if s.identity_key == identity_key and s.scope == scope
            ]

    def list_sessions(self, scope: Optional[str] = None) -> List[Session]:
        with self._data_lock:
            results = [
                s for s in self.sessions.values() if scope is None or s.scope == scope
            ]
            return sorted(results, key=lambda s: s.created_at, reverse=True)

    def update_session(self, session_id: str, **fields: Any) -> bool:
        unknown = set(fields) - MUTABLE_SESSION_FIELDS
        if unknown:
            raise ValueError(f"cannot update session fields: {sorted(unknown)}")
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return False
            self._check_child_scope(
                fields.get("parent_id", sess.parent_id), sess.scope, exclude=[session_id]
            )
            self._check_pending_identity(
                fields.get("identity_key", sess.identity_key),
                sess.scope,
                fields.get("validated", sess.validated),
                exclude=[session_id],
            )
            with self._write():
                for field, value in fields.items():
                    setattr(sess, field, value)
            return True

    def assign_identity(
        self, session_id: str, *, identity_token: str, identity_key: str
    ) -> Optional[List[str]]:
        """Attach an identity, superseding other pending sessions for it.

        Unvalidated sessions of the same (identity_key, scope) are removed with
        their descendants in the same step. Returns the removed ids, or
        ``None`` if ``session_id`` does not exist.
        """
        with self._write():
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            superseded: List[str] = []
            if not sess.validated:
                superseded = [
                    sid
                    for sid, s in self.sessions.items()
                    if sid != session_id
                    and not s.validated
                    and s.identity_key == identity_key
                    and s.scope == sess.scope
                ]
                for sid in [*superseded, *self._descendants(superseded)]:
                    self.sessions.pop(sid, None)
            sess.identity_token = identity_token
            sess.identity_key = identity_key
            return superseded

    def delete_sessions(self, session_ids: Iterable[str]) -> List[str]:
        """Delete the given rows and, like ON DELETE CASCADE, all their descendants."""

        with self._data_lock:
            roots = [sid for sid in session_ids if sid in self.sessions]
            if not roots:
                return []
            doomed = [*roots, *(self._descendants(roots) - set(roots))]
            with self._write():
                for sid in doomed:
                    self.sessions.pop(sid, None)
            return doomed

    def delete_expired_sessions(self, threshold: datetime) -> int:
        with self._data_lock:
            expired = {sid for sid, s in self.sessions.items() if s.expires_at < threshold}
            # Children of expired rows go with them, like ON DELETE CASCADE.
            doomed = expired | self._descendants(expired)
            if not doomed:
                return 0
            with self._write():
                for sid in doomed:
                    self.sessions.pop(sid, None)
            return len(doomed)

    def _persist_state(self) -> None:
        state = {
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        try:
            self._state_path().write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StorageError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            raise StorageError(f"failed to load in-memory state: {exc}") from exc
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.logger.debug("memory_store_loaded", sessions=len(self.sessions))
        return True

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "scope": session.scope,
            "code": session.code,
            "code_expires_at": self._serialize_datetime(session.code_expires_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "duration_seconds": session.duration_seconds,
            "created_at": self._serialize_datetime(session.created_at),
            "validated": session.validated,
            "identity_token": session.identity_token,
            "identity_key": session.identity_key,
            "parent_id": session.parent_id,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            scope=data["scope"],
            code=data["code"],
            code_expires_at=self._deserialize_datetime(data["code_expires_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            duration_seconds=int(data.get("duration_seconds", 1800)),
            created_at=self._deserialize_datetime(data["created_at"]),
            validated=bool(data.get("validated", False)),
            identity_token=data.get("identity_token"),
            identity_key=data.get("identity_key"),
            parent_id=data.get("parent_id"),
        )
