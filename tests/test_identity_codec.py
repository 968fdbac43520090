import base64

import pytest

from sessionvault.service.identity import NONCE_BYTES, TAG_BYTES, IdentityTokenCodec


def _flip_byte(token: str, index: int) -> str:
    raw = bytearray(base64.urlsafe_b64decode(token + "=" * (-len(token) % 4)))
    raw[index] ^= 0x01
    return base64.urlsafe_b64encode(bytes(raw)).decode().rstrip("=")


def test_seal_then_open_returns_identity(codec):
    token = codec.seal("alice@example.com")
    assert token != "alice@example.com"
    assert "=" not in token
    assert codec.open(token) == "alice@example.com"


def test_seal_uses_fresh_nonce_each_time(codec):
    assert codec.seal("alice") != codec.seal("alice")


def test_token_layout_is_nonce_ciphertext_and_tag(codec):
    identity = "bob"
    raw = base64.urlsafe_b64decode(codec.seal(identity) + "==")
    assert len(raw) == NONCE_BYTES + len(identity) + TAG_BYTES


def test_empty_identity_round_trips(codec):
    assert codec.open(codec.seal("")) == ""


@pytest.mark.parametrize("index", [0, NONCE_BYTES, -1])
def test_any_modified_byte_is_rejected(codec, index):
    token = codec.seal("alice@example.com")
    assert codec.open(_flip_byte(token, index)) is None


def test_wrong_key_is_rejected(codec):
    other = IdentityTokenCodec(b"\x02" * 32, "sessionvault-tests")
    assert other.open(codec.seal("alice")) is None


def test_wrong_context_is_rejected(codec):
    other = IdentityTokenCodec(b"\x01" * 32, "another-deployment")
    assert other.open(codec.seal("alice")) is None


@pytest.mark.parametrize(
    "token",
    [None, "", "not base64 at all!", "abc", "AAAA", "x" * 10],
)
def test_garbage_tokens_are_rejected(codec, token):
    assert codec.open(token) is None


def test_truncated_token_is_rejected(codec):
    token = codec.seal("alice@example.com")
    assert codec.open(token[:-4]) is None
    assert codec.open(token[: (NONCE_BYTES + TAG_BYTES - 1) * 4 // 3]) is None


def test_padded_token_is_rejected(codec):
    token = codec.seal("alice@example.com")
    assert codec.open(token + "=") is None


def test_deterministic_seal_is_stable_per_uniqueness_key(codec):
    first = codec.seal_deterministic("alice", "scope-a")
    assert codec.seal_deterministic("alice", "scope-a") == first
    assert codec.seal_deterministic("alice", "scope-b") != first
    assert codec.seal_deterministic("bob", "scope-a") != first
    assert codec.open(first) == "alice"


def test_deterministic_seal_separates_key_and_identity(codec):
    # Moving characters between the two inputs must not reuse a nonce.
    left = codec.seal_deterministic("bc", "a")
    right = codec.seal_deterministic("c", "ab")
    assert left[:16] != right[:16]


def test_reseal_changes_token_but_not_identity(codec):
    token = codec.seal("alice")
    resealed = codec.reseal(token)
    assert resealed is not None
    assert resealed != token
    assert codec.open(resealed) == "alice"


def test_reseal_rejects_invalid_token(codec):
    assert codec.reseal("garbage") is None


def test_key_must_be_32_bytes():
    with pytest.raises(ValueError):
        IdentityTokenCodec(b"short")


def test_generate_key_returns_distinct_32_byte_keys():
    first = IdentityTokenCodec.generate_key()
    assert len(first) == 32
    assert first != IdentityTokenCodec.generate_key()
