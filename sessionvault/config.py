from __future__ import annotations

import base64
import binascii
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessionvault.logging import get_logger

logger = get_logger(__name__)

KEY_PREFIX = "base64:"
KEY_BYTES = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def encode_key(key: bytes) -> str:
    """Render raw key bytes in the ``base64:`` form accepted by ``ENCRYPTION_KEY``."""

    return KEY_PREFIX + base64.b64encode(key).decode("ascii")


def decode_key(value: str) -> bytes:
    if not value.startswith(KEY_PREFIX):
        raise ValueError(f"encryption key must start with '{KEY_PREFIX}'")
    try:
        raw = base64.b64decode(value[len(KEY_PREFIX):], validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("encryption key is not valid base64") from exc
    if len(raw) != KEY_BYTES:
        raise ValueError(f"encryption key must decode to {KEY_BYTES} bytes")
    return raw


class Settings(BaseModel):
    """Runtime settings for the session service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/sessionvault", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/sessionvault", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors for CI.",
    )
    identity_encryption_key: str = env_field(
        None,
        "ENCRYPTION_KEY",
        validate_default=True,
        description="32-byte AEAD key for identity tokens, formatted as base64:<...>",
    )
    identity_context: str = env_field(
        "sessionvault-identity",
        "IDENTITY_CONTEXT",
        description="Associated data binding identity tokens to this deployment",
    )
    session_duration_seconds: int = env_field(1800, "SESSION_DURATION_SECONDS")
    code_validity_seconds: int = env_field(300, "CODE_VALIDITY_SECONDS")
    delegated_session_duration_seconds: int = env_field(
        1800, "DELEGATED_SESSION_DURATION_SECONDS"
    )
    api_keys_path: str | None = env_field(
        None,
        "API_KEYS_PATH",
        description="JSON file mapping API keys (scopes) to name and permissions",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def identity_key_bytes(self) -> bytes:
        return decode_key(self.identity_encryption_key)

    @field_validator(
        "session_duration_seconds",
        "code_validity_seconds",
        "delegated_session_duration_seconds",
    )
    @classmethod
    def _positive_duration(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("durations must be positive")
        return value

    @field_validator("identity_context")
    @classmethod
    def _non_empty_context(cls, value: str) -> str:
        if not value:
            raise ValueError("identity context must not be empty")
        return value

    @field_validator("identity_encryption_key", mode="before")
    @classmethod
    def _ensure_identity_key(cls, value: str | None) -> str:
        if value:
            decode_key(value)
            return value
        # Persist a generated key so identity tokens remain readable across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/sessionvault"))
        key_path = fs_root / ".identity_key"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "identity_key_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if key_path.exists() and not key_path.is_symlink():
            try:
                persisted = key_path.read_text().strip()
                decode_key(persisted)
                return persisted
            except (OSError, ValueError) as exc:
                logger.error(
                    "identity_key_read_failed", error=str(exc), path=str(key_path)
                )

        generated = encode_key(secrets.token_bytes(KEY_BYTES))
        tmp_path = None
        try:
            # Atomic write: temp file then rename
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".identity_key_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(key_path))
        except OSError as exc:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error(
                "identity_key_persist_failed", error=str(exc), path=str(key_path)
            )
            raise RuntimeError(
                "Unable to persist identity key; set ENCRYPTION_KEY or make SHARED_FS_ROOT writable"
            ) from exc
        logger.warning("identity_key_generated", path=str(key_path))
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
