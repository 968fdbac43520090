from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sessionvault.logging import get_logger
from sessionvault.service.identity import IdentityTokenCodec
from sessionvault.service.sessions import SessionLifecycleManager, guard_storage

logger = get_logger(__name__)


@dataclass
class CleanupReport:
    scanned: int = 0
    unique: int = 0
    duplicates: List[str] = field(default_factory=list)
    deleted: int = 0
    skipped: int = 0
    dry_run: bool = False

    def as_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "unique": self.unique,
            "duplicates": len(self.duplicates),
            "deleted": self.deleted,
            "skipped": self.skipped,
            "dry_run": self.dry_run,
        }


class SessionMaintenance:
    """Out-of-band cleanup jobs meant for cron, not the request path."""

    def __init__(self, sessions: SessionLifecycleManager, codec: IdentityTokenCodec) -> None:
        self.sessions = sessions
        self.codec = codec
        self.logger = logger

    def purge_expired(self, before: Optional[datetime] = None) -> int:
        return self.sessions.delete_expired(before)

    @guard_storage
    def purge_duplicates(self, *, dry_run: bool = False) -> CleanupReport:
        """Keep only the newest session per (identity, scope).

        Identity tokens are opened rather than compared, since every seal uses
        a fresh nonce. Sessions whose token does not authenticate are left in
        place and counted as skipped.
        """
        report = CleanupReport(dry_run=dry_run)
        seen: Dict[Tuple[str, str], str] = {}
        # Newest first, so the first occurrence of a key is the one kept.
        candidates = sorted(
            (s for s in self.sessions.store.list_sessions() if s.identity_token),
            key=lambda s: s.created_at,
            reverse=True,
        )
        report.scanned = len(candidates)
        for session in candidates:
            identity = self.codec.open(session.identity_token)
            if identity is None:
                report.skipped += 1
                self.logger.warning("duplicate_cleanup_skipped", session_id=session.id)
                continue
            key = (identity, session.scope)
            if key in seen:
                report.duplicates.append(session.id)
            else:
                seen[key] = session.id
        report.unique = len(seen)

        if not dry_run:
            for session_id in report.duplicates:
                if self.sessions.delete(session_id):
                    report.deleted += 1
                else:
                    # Already gone, e.g. removed with a duplicate parent.
                    self.logger.info("duplicate_cleanup_missing", session_id=session_id)

        self.logger.info("duplicate_cleanup_completed", **report.as_dict())
        return report


__all__ = ["CleanupReport", "SessionMaintenance"]
