from __future__ import annotations

from typing import Optional

from sessionvault.config import Settings
from sessionvault.logging import get_logger
from sessionvault.service.errors import DelegationResult, SessionErrorKind
from sessionvault.service.identity import IdentityTokenCodec
from sessionvault.service.scopes import ScopeRegistry
from sessionvault.service.sessions import SessionLifecycleManager, guard_storage
from sessionvault.storage.errors import ConstraintViolation

logger = get_logger(__name__)


class DelegationManager:
    """Hands a validated session's identity to another scope as a child session.

    Children are pre-validated, limited to one per (parent, target scope),
    and live only as long as their parent. Delegating also rotates the
    parent, so the caller must switch to ``result.parent.id``.
    """

    def __init__(
        self,
        sessions: SessionLifecycleManager,
        codec: IdentityTokenCodec,
        scopes: ScopeRegistry,
        *,
        duration_seconds: int = 1800,
    ) -> None:
        self.sessions = sessions
        self.codec = codec
        self.scopes = scopes
        self.duration_seconds = duration_seconds
        self.logger = logger

    @classmethod
    def from_settings(
        cls,
        sessions: SessionLifecycleManager,
        codec: IdentityTokenCodec,
        scopes: ScopeRegistry,
        settings: Settings,
    ) -> "DelegationManager":
        return cls(
            sessions,
            codec,
            scopes,
            duration_seconds=settings.delegated_session_duration_seconds,
        )

    @guard_storage
    def delegate(
        self,
        parent_id: str,
        target_scope: str,
        *,
        duration_seconds: Optional[int] = None,
    ) -> DelegationResult:
        parent = self.sessions.get(parent_id)
        if parent is None:
            return DelegationResult.failure(
                SessionErrorKind.INVALID_PARENT, "parent session not found or expired"
            )
        if not parent.validated:
            return DelegationResult.failure(
                SessionErrorKind.INVALID_PARENT, "parent session must be validated"
            )
        if parent.parent_id is not None:
            return DelegationResult.failure(
                SessionErrorKind.INVALID_PARENT, "cannot delegate from a delegated session"
            )
        if not target_scope or target_scope == parent.scope:
            return DelegationResult.failure(
                SessionErrorKind.INVALID_INPUT, "cannot delegate a session to its own scope"
            )
        if not self.scopes.is_known(target_scope):
            return DelegationResult.failure(
                SessionErrorKind.INVALID_SCOPE, "target scope does not exist"
            )

        replaced = self.sessions.delete_children(parent.id, target_scope)

        identity = self.codec.open(parent.identity_token)
        if identity is None:
            self.logger.warning("identity_token_rejected", session_id=parent.id)
            return DelegationResult.failure(
                SessionErrorKind.INVALID_IDENTITY, "parent identity token did not authenticate"
            )

        try:
            child = self.sessions.create_delegated(
                parent,
                target_scope,
                identity_token=self.codec.seal(identity),
                identity_key=self.codec.seal_deterministic(identity, target_scope),
                duration_seconds=duration_seconds or self.duration_seconds,
            )
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "parent_scope":
                # A concurrent delegation to the same scope inserted its child first.
                self.logger.warning("delegation_conflict", parent_session=parent.id)
                return DelegationResult.failure(
                    SessionErrorKind.INVALID_PARENT, "concurrent delegation to this scope"
                )
            return DelegationResult.failure(
                SessionErrorKind.INVALID_PARENT, "parent session disappeared"
            )

        rotated = self.sessions.rotate(
            parent.id, parent.scope, identity_token=self.codec.seal(identity)
        )
        if not rotated.ok:
            # Parent was rotated or removed concurrently; the child must not outlive this call.
            self.sessions.delete(child.id)
            return DelegationResult.failure(
                SessionErrorKind.INVALID_PARENT, "parent session disappeared"
            )

        # Re-read so the child reflects the reparenting done by the rotation.
        child = self.sessions.store.get_session(child.id)
        if child is None:
            return DelegationResult.failure(
                SessionErrorKind.INVALID_PARENT, "delegated session disappeared"
            )
        self.logger.info(
            "delegated_session_created",
            child_session=child.id,
            parent_session=rotated.session.id,
            replaced=replaced,
        )
        return DelegationResult(child=child, parent=rotated.session)


__all__ = ["DelegationManager"]
