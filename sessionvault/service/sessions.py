from __future__ import annotations

import functools
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, List, Optional, Protocol, TypeVar

from sessionvault.config import Settings
from sessionvault.logging import get_logger
from sessionvault.service.errors import (
    InvalidInputError,
    SessionErrorKind,
    SessionResult,
    StorageFailure,
)
from sessionvault.service.identity import IdentityTokenCodec
from sessionvault.storage.errors import ConstraintViolation, StorageError
from sessionvault.storage.models import Session

logger = get_logger(__name__)

SESSION_ID_ALPHABET = "abcdefghijklmnopqrstuvwxyz234567"
SESSION_ID_LENGTH = 32
CODE_DIGITS = 6
# Attempts at drawing an unused identifier before giving up.
MAX_ID_ATTEMPTS = 8
# Attempts at claiming an identity while another login for it is being written.
MAX_IDENTITY_ATTEMPTS = 3
# Delegation depth is capped at one level; anything deeper is a storage anomaly.
MAX_ANCESTRY_HOPS = 4

F = TypeVar("F", bound=Callable[..., Any])


class SessionStore(Protocol):
    def insert_session(
        self, session: Session, *, supersedes: Optional[str] = None
    ) -> Session: ...

    def session_exists(self, session_id: str) -> bool: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def list_child_sessions(self, parent_id: str) -> List[Session]: ...

    def find_sessions_by_identity(self, identity_key: str, scope: str) -> List[Session]: ...

    def list_sessions(self, scope: Optional[str] = None) -> List[Session]: ...

    def update_session(self, session_id: str, **fields: Any) -> bool: ...

    def assign_identity(
        self, session_id: str, *, identity_token: str, identity_key: str
    ) -> Optional[List[str]]: ...

    def delete_sessions(self, session_ids: Iterable[str]) -> List[str]: ...

    def delete_expired_sessions(self, threshold: datetime) -> int: ...


def generate_session_id() -> str:
    """32 characters from a lowercase base32 alphabet (160 bits of randomness)."""

    return "".join(secrets.choice(SESSION_ID_ALPHABET) for _ in range(SESSION_ID_LENGTH))


def generate_code() -> str:
    return f"{secrets.randbelow(10 ** CODE_DIGITS):0{CODE_DIGITS}d}"


def guard_storage(func: F) -> F:
    """Surface backend failures as ``StorageFailure``; never retry them."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except StorageError as exc:
            logger.error(
                "session_storage_failure", operation=func.__name__, error=exc.message
            )
            raise StorageFailure(
                "storage operation failed", detail={"operation": func.__name__}
            ) from exc

    return wrapper  # type: ignore[return-value]


class SessionLifecycleManager:
    """Creation, validation, rotation, expiry and cascading deletion of sessions.

    The store is the only shared state. Every identifier change goes through
    one atomic ``insert_session(..., supersedes=...)`` call so a logical
    session never has two live rows and delegated children are never
    orphaned by a rotation.
    """

    def __init__(
        self,
        store: SessionStore,
        codec: IdentityTokenCodec,
        *,
        session_duration_seconds: int = 1800,
        code_validity_seconds: int = 300,
    ) -> None:
        self.store = store
        self.codec = codec
        self.session_duration_seconds = session_duration_seconds
        self.code_validity_seconds = code_validity_seconds
        self.logger = logger

    @classmethod
    def from_settings(
        cls, store: SessionStore, codec: IdentityTokenCodec, settings: Settings
    ) -> "SessionLifecycleManager":
        return cls(
            store,
            codec,
            session_duration_seconds=settings.session_duration_seconds,
            code_validity_seconds=settings.code_validity_seconds,
        )

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    def _insert_new(
        self,
        build: Callable[[str], Session],
        *,
        supersedes: Optional[str] = None,
    ) -> Session:
        """Insert a session under a fresh identifier, retrying on collision.

        The pre-check keeps the common path cheap; the store's uniqueness
        constraint is what actually closes the race.
        """
        for attempt in range(1, MAX_ID_ATTEMPTS + 1):
            session_id = generate_session_id()
            if self.store.session_exists(session_id):
                self.logger.warning("session_id_collision", attempt=attempt, stage="precheck")
                continue
            try:
                return self.store.insert_session(build(session_id), supersedes=supersedes)
            except ConstraintViolation as exc:
                if exc.detail.get("field") != "id":
                    raise
                self.logger.warning("session_id_collision", attempt=attempt, stage="insert")
        raise StorageFailure(
            "could not allocate a unique session id",
            detail={"attempts": MAX_ID_ATTEMPTS},
        )

    @guard_storage
    def create(
        self,
        scope: str,
        duration_seconds: Optional[int] = None,
        code_validity_seconds: Optional[int] = None,
        *,
        supersedes: Optional[str] = None,
    ) -> Session:
        """Create an unvalidated session with a fresh code and no identity.

        If ``supersedes`` names an existing session, its children move to the
        new identifier and the old row is removed in the same write.
        """
        if not scope:
            raise InvalidInputError("scope required")
        duration = duration_seconds or self.session_duration_seconds
        validity = code_validity_seconds or self.code_validity_seconds
        now = self._now()
        session = self._insert_new(
            lambda sid: Session.new(
                sid,
                scope,
                generate_code(),
                duration_seconds=duration,
                code_validity_seconds=validity,
                now=now,
            ),
            supersedes=supersedes,
        )
        self.logger.info("session_created", session_id=session.id, superseded=supersedes)
        return session

    @guard_storage
    def set_identity(
        self,
        session_id: str,
        encrypted_token: str,
        *,
        identity_key: Optional[str] = None,
    ) -> bool:
        fields: dict[str, Any] = {"identity_token": encrypted_token}
        if identity_key is not None:
            fields["identity_key"] = identity_key
        try:
            return self.store.update_session(session_id, **fields)
        except ConstraintViolation as exc:
            # Another pending login already holds this identity; use assign_identity.
            self.logger.warning(
                "session_identity_conflict", session_id=session_id, field=exc.detail.get("field")
            )
            return False

    @guard_storage
    def assign_identity(self, session_id: str, identity: str) -> SessionResult:
        """Seal ``identity`` onto a live session.

        Any other unvalidated session for the same identity and scope is
        superseded in the same store write, so at most one login per
        (identity, scope) is pending.
        """
        session = self.get(session_id)
        if session is None:
            return SessionResult.failure(SessionErrorKind.NOT_FOUND, "session not found")
        if not identity:
            return SessionResult.failure(SessionErrorKind.INVALID_INPUT, "identity required")
        identity_key = self.codec.seal_deterministic(identity, session.scope)
        for attempt in range(1, MAX_IDENTITY_ATTEMPTS + 1):
            try:
                superseded = self.store.assign_identity(
                    session.id,
                    identity_token=self.codec.seal(identity),
                    identity_key=identity_key,
                )
                break
            except ConstraintViolation as exc:
                if exc.detail.get("field") != "identity_key":
                    raise
                # A concurrent login committed first; the next attempt supersedes it.
                self.logger.warning(
                    "session_identity_conflict", session_id=session.id, attempt=attempt
                )
        else:
            raise StorageFailure(
                "could not claim identity for session",
                detail={"attempts": MAX_IDENTITY_ATTEMPTS},
            )
        if superseded is None:
            return SessionResult.failure(SessionErrorKind.NOT_FOUND, "session not found")
        for other_id in superseded:
            self.logger.info("session_superseded", session_id=other_id, replaced_by=session.id)
        refreshed = self.store.get_session(session.id)
        if refreshed is None:
            return SessionResult.failure(SessionErrorKind.NOT_FOUND, "session not found")
        return SessionResult.success(refreshed)

    @guard_storage
    def check_code(self, session_id: str, code: str) -> bool:
        """Exact match against an unexpired code; never mutates the session."""

        if not code:
            return False
        session = self.store.get_session(session_id)
        if session is None or session.validated:
            return False
        now = self._now()
        if session.is_expired(now) or session.code_expired(now):
            return False
        return hmac.compare_digest(session.code.encode(), str(code).encode())

    @guard_storage
    def mark_validated(self, session_id: str) -> bool:
        session = self.store.get_session(session_id)
        if session is None or not session.identity_token:
            return False
        return self.store.update_session(session_id, validated=True)

    def _rotate(
        self,
        old: Session,
        scope: str,
        *,
        validated: Optional[bool] = None,
        identity_token: Optional[str] = None,
    ) -> SessionResult:
        now = self._now()
        same_scope = scope == old.scope
        try:
            new = self._insert_new(
                lambda sid: Session.new(
                    sid,
                    scope,
                    generate_code(),
                    duration_seconds=old.duration_seconds,
                    code_validity_seconds=self.code_validity_seconds,
                    validated=old.validated if validated is None else validated,
                    identity_token=identity_token,
                    identity_key=old.identity_key if same_scope else None,
                    parent_id=old.parent_id,
                    now=now,
                ),
                supersedes=old.id,
            )
        except ConstraintViolation:
            # Parent disappeared between the read and the write.
            return SessionResult.failure(SessionErrorKind.NOT_FOUND, "session not found")
        self.logger.info("session_rotated", old_session=old.id, new_session=new.id)
        return SessionResult.success(new)

    @guard_storage
    def rotate(
        self,
        old_id: str,
        new_scope: Optional[str] = None,
        *,
        identity_token: Optional[str] = None,
    ) -> SessionResult:
        """Replace a session's identifier, keeping its state and children.

        The old identity token is not carried over. Pass a freshly resealed
        ``identity_token`` to attach it in the same write, or call
        ``set_identity`` afterwards.
        """
        old = self.get(old_id)
        if old is None:
            return SessionResult.failure(SessionErrorKind.NOT_FOUND, "session not found")
        return self._rotate(old, new_scope or old.scope, identity_token=identity_token)

    @guard_storage
    def validate(self, session_id: str, code: str) -> SessionResult:
        """Check the code, then rotate into a validated session with a resealed identity."""

        session = self.get(session_id)
        if session is None:
            return SessionResult.failure(SessionErrorKind.NOT_FOUND, "session not found")
        if not self.check_code(session.id, code):
            return SessionResult.failure(SessionErrorKind.INVALID_CODE, "invalid code")
        if not session.identity_token:
            return SessionResult.failure(
                SessionErrorKind.INVALID_IDENTITY, "session has no identity"
            )
        token = self.codec.reseal(session.identity_token)
        if token is None:
            self.logger.warning("identity_token_rejected", session_id=session.id)
            return SessionResult.failure(
                SessionErrorKind.INVALID_IDENTITY, "identity token did not authenticate"
            )
        result = self._rotate(session, session.scope, validated=True, identity_token=token)
        if result.ok:
            self.logger.info(
                "session_validated", old_session=session.id, new_session=result.session.id
            )
        return result

    @guard_storage
    def regenerate_code(
        self, session_id: str, code_validity_seconds: Optional[int] = None
    ) -> SessionResult:
        session = self.get(session_id)
        if session is None:
            return SessionResult.failure(SessionErrorKind.NOT_FOUND, "session not found")
        if session.validated:
            return SessionResult.failure(
                SessionErrorKind.INVALID_INPUT, "session already validated"
            )
        validity = code_validity_seconds or self.code_validity_seconds
        self.store.update_session(
            session.id,
            code=generate_code(),
            code_expires_at=self._now() + timedelta(seconds=validity),
        )
        refreshed = self.store.get_session(session.id)
        if refreshed is None:
            return SessionResult.failure(SessionErrorKind.NOT_FOUND, "session not found")
        return SessionResult.success(refreshed)

    @guard_storage
    def touch(self, session_id: str, duration_seconds: Optional[int] = None) -> SessionResult:
        """Extend ``expires_at`` from now, keeping the same identifier."""

        session = self.get(session_id)
        if session is None:
            return SessionResult.failure(SessionErrorKind.NOT_FOUND, "session not found")
        ttl = duration_seconds or session.duration_seconds
        expires_at = self._now() + timedelta(seconds=ttl)
        if not self.store.update_session(session.id, expires_at=expires_at):
            return SessionResult.failure(SessionErrorKind.NOT_FOUND, "session not found")
        refreshed = self.store.get_session(session.id)
        if refreshed is None:
            return SessionResult.failure(SessionErrorKind.NOT_FOUND, "session not found")
        return SessionResult.success(refreshed)

    @guard_storage
    def is_active(self, session_id: str) -> bool:
        session = self.store.get_session(session_id)
        if session is None:
            return False
        if session.is_expired(self._now()):
            self._expire(session)
            return False
        return True

    @guard_storage
    def is_validated(self, session_id: str) -> bool:
        session = self.get(session_id)
        return bool(session and session.validated)

    def _expire(self, session: Session) -> None:
        self.logger.info("session_expired", session_id=session.id)
        self.delete(session.id)

    @guard_storage
    def get(self, session_id: str) -> Optional[Session]:
        """Fetch a live session.

        Expired rows are deleted on sight. Ancestors are walked iteratively;
        if any is gone or expired the whole branch is removed and ``None`` is
        returned, so a child is never readable without its parent.
        """
        if not session_id:
            return None
        now = self._now()
        session = self.store.get_session(session_id)
        if session is None:
            return None
        if session.is_expired(now):
            self._expire(session)
            return None
        current = session
        seen = {session.id}
        for _ in range(MAX_ANCESTRY_HOPS):
            if current.parent_id is None:
                return session
            parent = self.store.get_session(current.parent_id)
            if parent is None:
                self.logger.info(
                    "session_parent_missing", session_id=current.id, parent_id=current.parent_id
                )
                self.delete(current.id)
                return None
            if parent.id in seen:
                self.logger.error("session_ancestry_cycle", session_id=session.id)
                self.delete(session.id)
                return None
            if parent.is_expired(now):
                self._expire(parent)
                return None
            seen.add(parent.id)
            current = parent
        self.logger.error("session_ancestry_too_deep", session_id=session.id)
        self.delete(session.id)
        return None

    @guard_storage
    def list_children(self, session_id: str) -> List[Session]:
        parent = self.get(session_id)
        if parent is None:
            return []
        children = []
        for child in self.store.list_child_sessions(parent.id):
            live = self.get(child.id)
            if live is not None:
                children.append(live)
        return children

    @guard_storage
    def delete_children(self, parent_id: str, scope: Optional[str] = None) -> int:
        """Delete the children of ``parent_id`` (optionally only those under ``scope``)."""

        removed = 0
        for child in self.store.list_child_sessions(parent_id):
            if scope is None or child.scope == scope:
                if self.delete(child.id):
                    removed += 1
        return removed

    @guard_storage
    def delete(self, session_id: str) -> bool:
        """Delete a session and every transitive descendant in one write.

        The walk names the known subtree; ``delete_sessions`` also cascades, so a
        child inserted after the walk goes with its parent. Returns whether the
        named row existed.
        """
        if not session_id:
            return False
        order: List[str] = []
        seen: set[str] = set()
        stack = [session_id]
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            order.append(current)
            stack.extend(child.id for child in self.store.list_child_sessions(current))
        # Descendants first, root last.
        deleted = self.store.delete_sessions(list(reversed(order)))
        if deleted:
            self.logger.info(
                "session_deleted", session_id=session_id, cascaded=max(0, len(deleted) - 1)
            )
        return session_id in deleted

    @guard_storage
    def delete_expired(self, threshold: Optional[datetime] = None) -> int:
        threshold = threshold or self._now()
        removed = self.store.delete_expired_sessions(threshold)
        self.logger.info("expired_sessions_purged", removed=removed, threshold=threshold.isoformat())
        return removed

    @guard_storage
    def check_access(self, session_id: str, caller_scope: str) -> bool:
        """True only for a live session created under ``caller_scope``."""

        return self.resolve(session_id, caller_scope).ok

    @guard_storage
    def resolve(self, session_id: str, caller_scope: str) -> SessionResult:
        """Fetch a live session for ``caller_scope``.

        Absent, expired and foreign-scope sessions all come back as the same
        ``NOT_FOUND`` failure.
        """
        session = self.get(session_id)
        if (
            session is None
            or not caller_scope
            or not hmac.compare_digest(session.scope.encode(), caller_scope.encode())
        ):
            return SessionResult.failure(SessionErrorKind.NOT_FOUND, "session not found")
        return SessionResult.success(session)

    def create_delegated(
        self,
        parent: Session,
        scope: str,
        *,
        identity_token: str,
        identity_key: Optional[str] = None,
        duration_seconds: Optional[int] = None,
    ) -> Session:
        """Insert a pre-validated child of ``parent``; its code is born expired."""

        duration = duration_seconds or self.session_duration_seconds
        now = self._now()
        return self._insert_new(
            lambda sid: Session.new(
                sid,
                scope,
                generate_code(),
                duration_seconds=duration,
                code_validity_seconds=0,
                validated=True,
                identity_token=identity_token,
                identity_key=identity_key,
                parent_id=parent.id,
                now=now,
            )
        )


__all__ = [
    "SessionLifecycleManager",
    "SessionStore",
    "generate_code",
    "generate_session_id",
]
