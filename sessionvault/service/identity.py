from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

from sessionvault.config import KEY_BYTES, Settings
from sessionvault.logging import get_logger

logger = get_logger(__name__)

NONCE_BYTES = 12
TAG_BYTES = 16


def _b64e(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64d(token: str) -> bytes:
    padded = token + "=" * (-len(token) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


class IdentityTokenCodec:
    """Authenticated encryption of an external identity string.

    Tokens are ``base64url(nonce || ciphertext)`` without padding, sealed with
    ChaCha20-Poly1305 under one 256-bit key and a fixed associated-data
    context. ``open`` is fail-closed: anything that does not authenticate
    comes back as ``None``.
    """

    def __init__(self, key: bytes, context: str = "") -> None:
        if len(key) != KEY_BYTES:
            raise ValueError("Key must be 32 bytes (binary).")
        self._aead = ChaCha20Poly1305(key)
        self._aad = context.encode("utf-8")
        # Separate subkey for nonce derivation so the AEAD key is never reused as a MAC key.
        self._nonce_key = hmac.new(key, b"identity-token-nonce", hashlib.sha256).digest()

    @classmethod
    def from_settings(cls, settings: Settings) -> "IdentityTokenCodec":
        return cls(settings.identity_key_bytes, settings.identity_context)

    @staticmethod
    def generate_key() -> bytes:
        return os.urandom(KEY_BYTES)

    def _encrypt(self, nonce: bytes, identity: str) -> str:
        ciphertext = self._aead.encrypt(nonce, identity.encode("utf-8"), self._aad)
        return _b64e(nonce + ciphertext)

    def seal(self, identity: str) -> str:
        """Encrypt ``identity`` under a freshly drawn random nonce."""

        return self._encrypt(os.urandom(NONCE_BYTES), identity)

    def seal_deterministic(self, identity: str, uniqueness_key: str) -> str:
        """Encrypt ``identity`` so the same (identity, uniqueness_key) always yields the same token.

        The nonce is an HMAC of the length-prefixed uniqueness key followed by
        the identity. Only use this where a stable opaque identifier is the
        point; everything else should call ``seal``.
        """

        uk = uniqueness_key.encode("utf-8")
        material = len(uk).to_bytes(4, "big") + uk + identity.encode("utf-8")
        nonce = hmac.new(self._nonce_key, material, hashlib.sha256).digest()[:NONCE_BYTES]
        return self._encrypt(nonce, identity)

    def open(self, token: Optional[str]) -> Optional[str]:
        if not token or not isinstance(token, str):
            return None
        try:
            raw = _b64d(token)
        except (binascii.Error, ValueError, UnicodeEncodeError):
            return None
        # Reject non-canonical encodings (stray characters, altered padding bits).
        if _b64e(raw) != token or len(raw) < NONCE_BYTES + TAG_BYTES:
            return None
        nonce, ciphertext = raw[:NONCE_BYTES], raw[NONCE_BYTES:]
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext, self._aad)
        except InvalidTag:
            return None
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            return None

    def reseal(self, token: Optional[str]) -> Optional[str]:
        """Re-encrypt a token's identity under a new random nonce; ``None`` if it does not open."""

        identity = self.open(token)
        if identity is None:
            logger.warning("identity_token_rejected", operation="reseal")
            return None
        return self.seal(identity)


__all__ = ["IdentityTokenCodec", "NONCE_BYTES", "TAG_BYTES"]
