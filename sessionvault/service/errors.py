from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Dict, Optional, Type

if TYPE_CHECKING:
    from sessionvault.storage.models import Session


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each subclass carries an HTTP status_code and a stable error_code so the
    transport layer can map failures without inspecting messages:
    - not_found (404)
    - invalid_code (401)
    - forbidden (403)
    - invalid_parent / invalid_input / invalid_scope / invalid_identity (400)
    - storage_failure (500)
    """

    status_code: int = 400
    error_code: str = "invalid_input"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class NotFoundError(ServiceError):
    """Session absent, expired, or outside the caller's scope (404)."""
    status_code = 404
    error_code = "not_found"


class InvalidCodeError(ServiceError):
    """Validation code mismatched or expired (401)."""
    status_code = 401
    error_code = "invalid_code"


class ForbiddenError(ServiceError):
    """Scope lacks a required permission (403)."""
    status_code = 403
    error_code = "forbidden"


class InvalidParentError(ServiceError):
    """Delegation parent missing, unvalidated, or itself delegated (400)."""
    status_code = 400
    error_code = "invalid_parent"


class InvalidInputError(ServiceError):
    """Request arguments rejected (400)."""
    status_code = 400
    error_code = "invalid_input"


class InvalidScopeError(InvalidInputError):
    """Target scope is not a recognised API key (400)."""
    error_code = "invalid_scope"


class InvalidIdentityError(ServiceError):
    """Identity token failed to authenticate (400)."""
    status_code = 400
    error_code = "invalid_identity"


class StorageFailure(ServiceError):
    """Underlying store failed mid-operation (500)."""
    status_code = 500
    error_code = "storage_failure"


class SessionErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_CODE = "invalid_code"
    INVALID_PARENT = "invalid_parent"
    INVALID_INPUT = "invalid_input"
    INVALID_SCOPE = "invalid_scope"
    INVALID_IDENTITY = "invalid_identity"


_KIND_TO_ERROR: Dict[SessionErrorKind, Type[ServiceError]] = {
    SessionErrorKind.NOT_FOUND: NotFoundError,
    SessionErrorKind.INVALID_CODE: InvalidCodeError,
    SessionErrorKind.INVALID_PARENT: InvalidParentError,
    SessionErrorKind.INVALID_INPUT: InvalidInputError,
    SessionErrorKind.INVALID_SCOPE: InvalidScopeError,
    SessionErrorKind.INVALID_IDENTITY: InvalidIdentityError,
}


def error_for(kind: SessionErrorKind, message: str = "") -> ServiceError:
    """Build the exception matching a failure kind."""

    return _KIND_TO_ERROR[kind](message or kind.value)


@dataclass
class SessionResult:
    """Outcome of a lifecycle operation: a session or a typed failure."""

    session: Optional["Session"] = None
    error: Optional[SessionErrorKind] = None
    message: str = ""

    @classmethod
    def success(cls, session: "Session") -> "SessionResult":
        return cls(session=session)

    @classmethod
    def failure(cls, kind: SessionErrorKind, message: str = "") -> "SessionResult":
        return cls(error=kind, message=message or kind.value)

    @property
    def ok(self) -> bool:
        return self.error is None and self.session is not None

    def unwrap(self) -> "Session":
        if self.error is not None:
            raise error_for(self.error, self.message)
        if self.session is None:
            raise NotFoundError("session not found")
        return self.session


@dataclass
class DelegationResult:
    """Outcome of a delegation: the child plus the parent under its rotated id."""

    child: Optional["Session"] = None
    parent: Optional["Session"] = None
    error: Optional[SessionErrorKind] = None
    message: str = ""

    @classmethod
    def failure(cls, kind: SessionErrorKind, message: str = "") -> "DelegationResult":
        return cls(error=kind, message=message or kind.value)

    @property
    def ok(self) -> bool:
        return self.error is None and self.child is not None

    def unwrap(self) -> "Session":
        if self.error is not None:
            raise error_for(self.error, self.message)
        if self.child is None:
            raise NotFoundError("delegated session not created")
        return self.child


__all__ = [
    "ServiceError",
    "NotFoundError",
    "InvalidCodeError",
    "ForbiddenError",
    "InvalidParentError",
    "InvalidInputError",
    "InvalidScopeError",
    "InvalidIdentityError",
    "StorageFailure",
    "SessionErrorKind",
    "SessionResult",
    "DelegationResult",
    "error_for",
]
