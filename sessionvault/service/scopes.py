from __future__ import annotations

import base64
import hmac
import json
import math
import re
import secrets
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sessionvault.config import Settings
from sessionvault.logging import get_logger
from sessionvault.service.errors import ForbiddenError

logger = get_logger(__name__)

DELEGATE_PERMISSION = "delegate_session"

_API_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def generate_api_key(length: int = 32) -> str:
    """Generate a URL-safe alphanumeric API key of exactly ``length`` characters."""

    if length < 16:
        raise ValueError("Key length must be at least 16 characters")
    raw = secrets.token_bytes(math.ceil(length * 3 / 4))
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")[:length]


def generate_api_keys(count: int, length: int = 32) -> List[str]:
    keys: List[str] = []
    while len(keys) < count:
        key = generate_api_key(length)
        if key not in keys:
            keys.append(key)
    return keys


def is_valid_api_key_format(key: str) -> bool:
    return bool(key) and _API_KEY_PATTERN.match(key) is not None


class ScopeRegistry:
    """Recognised access scopes (API keys) with their names and permissions.

    The mapping has the shape ``{api_key: {"name": str, "permissions": [str]}}``.
    """

    def __init__(self, scopes: Optional[Mapping[str, Mapping[str, Any]]] = None) -> None:
        self._scopes: Dict[str, Dict[str, Any]] = {}
        for key, config in (scopes or {}).items():
            if not is_valid_api_key_format(key):
                raise ValueError("API keys may only contain URL-safe characters")
            config = dict(config or {})
            permissions = config.get("permissions") or []
            if isinstance(permissions, str) or not isinstance(permissions, Iterable):
                raise ValueError(f"permissions for scope {config.get('name') or '?'} must be a list")
            self._scopes[key] = {
                "name": config.get("name"),
                "permissions": frozenset(str(p) for p in permissions),
            }

    @classmethod
    def from_file(cls, path: str | Path) -> "ScopeRegistry":
        data = json.loads(Path(path).read_text())
        if not isinstance(data, dict):
            raise ValueError("API key file must contain a JSON object")
        # Accept either the bare mapping or {"keys": {...}}
        scopes = data["keys"] if "keys" in data else data
        registry = cls(scopes)
        logger.info("scope_registry_loaded", scopes=len(registry), path=str(path))
        return registry

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScopeRegistry":
        if not settings.api_keys_path:
            logger.warning("scope_registry_empty", message="API_KEYS_PATH not configured")
            return cls()
        return cls.from_file(settings.api_keys_path)

    def __len__(self) -> int:
        return len(self._scopes)

    def _lookup(self, scope: str) -> Optional[Dict[str, Any]]:
        for key, config in self._scopes.items():
            if hmac.compare_digest(key.encode(), scope.encode()):
                return config
        return None

    def is_known(self, scope: Optional[str]) -> bool:
        if not scope:
            return False
        return self._lookup(scope) is not None

    def has_permission(self, scope: str, permission: str) -> bool:
        config = self._lookup(scope) if scope else None
        if not config:
            return False
        return permission in config["permissions"]

    def name(self, scope: str) -> Optional[str]:
        config = self._lookup(scope) if scope else None
        return config["name"] if config else None

    def require_permission(self, scope: str, permission: str) -> None:
        """Raise ``ForbiddenError`` unless ``scope`` is known and holds ``permission``."""

        if not self.has_permission(scope, permission):
            logger.info("scope_permission_denied", permission=permission)
            raise ForbiddenError(
                "scope lacks required permission", detail={"permission": permission}
            )


__all__ = [
    "DELEGATE_PERMISSION",
    "ScopeRegistry",
    "generate_api_key",
    "generate_api_keys",
    "is_valid_api_key_format",
]
