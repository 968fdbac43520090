from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Session:
    id: str
    scope: str
    code: str
    code_expires_at: datetime
    expires_at: datetime
    duration_seconds: int
    created_at: datetime
    validated: bool = False
    identity_token: Optional[str] = None
    identity_key: Optional[str] = None
    parent_id: Optional[str] = None

    @classmethod
    def new(
        cls,
        session_id: str,
        scope: str,
        code: str,
        *,
        duration_seconds: int = 1800,
        code_validity_seconds: int = 300,
        validated: bool = False,
        identity_token: Optional[str] = None,
        identity_key: Optional[str] = None,
        parent_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=session_id,
            scope=scope,
            code=code,
            code_expires_at=now + timedelta(seconds=code_validity_seconds),
            expires_at=now + timedelta(seconds=duration_seconds),
            duration_seconds=duration_seconds,
            created_at=now,
            validated=validated,
            identity_token=identity_token,
            identity_key=identity_key,
            parent_id=parent_id,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    def code_expired(self, now: Optional[datetime] = None) -> bool:
        return self.code_expires_at <= (now or utcnow())

    def snapshot(self) -> Dict[str, Any]:
        """External view handed to the transport layer; never includes identity data."""

        return {
            "id": self.id,
            "expires_at": self.expires_at.isoformat(),
            "validated": self.validated,
            "scope": self.scope,
            "parent_id": self.parent_id,
        }


# Columns a store may update in place through ``update_session``.
MUTABLE_SESSION_FIELDS = frozenset(
    {
        "identity_token",
        "identity_key",
        "code",
        "code_expires_at",
        "expires_at",
        "duration_seconds",
        "validated",
        "parent_id",
    }
)
