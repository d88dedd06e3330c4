"""Tests for core.crypto."""

import pytest
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.keywrap import InvalidUnwrap

from core.crypto import (
    KEY_SIZE,
    NONCE_SIZE,
    PBKDF2_ITERATIONS,
    SALT_SIZE,
    WRAPPED_KEY_SIZE,
    MasterKey,
    b64decode,
    b64encode,
    decrypt,
    derive_key,
    encrypt,
    generate_key,
    generate_nonce,
    generate_salt,
    sha256_hex,
    unwrap_key,
    wrap_key,
)


# ── Key derivation ────────────────────────────────────────────────────────────

def test_iterations_meet_minimum() -> None:
    assert PBKDF2_ITERATIONS >= 100_000


def test_derive_key_length() -> None:
    key = derive_key("passphrase", generate_salt(), iterations=1000)
    assert len(key) == KEY_SIZE


def test_derive_key_deterministic() -> None:
    salt = generate_salt()
    assert derive_key("hello", salt, iterations=1000) == derive_key("hello", salt, iterations=1000)


def test_derive_key_different_inputs() -> None:
    salt = generate_salt()
    assert derive_key("a", salt, iterations=1000) != derive_key("b", salt, iterations=1000)
    assert derive_key("a", generate_salt(), iterations=1000) != derive_key(
        "a", generate_salt(), iterations=1000
    )


def test_salt_and_nonce_sizes() -> None:
    assert len(generate_salt()) == SALT_SIZE
    assert len(generate_nonce()) == NONCE_SIZE


# ── AES-256-GCM ───────────────────────────────────────────────────────────────

def test_encrypt_decrypt_roundtrip() -> None:
    key = generate_key()
    nonce = generate_nonce()
    blob = encrypt(b"Hello, dietvault!", key, nonce)
    assert decrypt(blob, key, nonce) == b"Hello, dietvault!"


def test_decrypt_wrong_key_raises() -> None:
    nonce = generate_nonce()
    blob = encrypt(b"secret", generate_key(), nonce)
    with pytest.raises(InvalidTag):
        decrypt(blob, generate_key(), nonce)


def test_decrypt_tampered_data_raises() -> None:
    key = generate_key()
    nonce = generate_nonce()
    blob = bytearray(encrypt(b"secret", key, nonce))
    blob[-1] ^= 0xFF  # flip a bit in the tag
    with pytest.raises(InvalidTag):
        decrypt(bytes(blob), key, nonce)


def test_encrypt_wrong_sizes_raise() -> None:
    with pytest.raises(ValueError):
        encrypt(b"test", b"short_key", generate_nonce())
    with pytest.raises(ValueError):
        encrypt(b"test", generate_key(), b"short")


# ── Key wrapping ──────────────────────────────────────────────────────────────

def test_wrap_unwrap_roundtrip() -> None:
    key = generate_key()
    wrapping = generate_key()
    wrapped = wrap_key(key, wrapping)
    assert len(wrapped) == WRAPPED_KEY_SIZE
    assert unwrap_key(wrapped, wrapping) == key


def test_unwrap_with_wrong_key_raises() -> None:
    wrapped = wrap_key(generate_key(), generate_key())
    with pytest.raises(InvalidUnwrap):
        unwrap_key(wrapped, generate_key())


# ── Helpers ───────────────────────────────────────────────────────────────────

def test_b64_accepts_both_alphabets() -> None:
    raw = bytes(range(250, 256)) * 3
    assert b64decode(b64encode(raw)) == raw
    urlsafe = b64encode(raw).replace("+", "-").replace("/", "_")
    assert b64decode(urlsafe) == raw


def test_b64_rejects_garbage() -> None:
    with pytest.raises(ValueError):
        b64decode("not base64 at all!!")


def test_sha256_hex_known_value() -> None:
    assert sha256_hex("abc") == (
        "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    )


def test_master_key_repr_hides_material() -> None:
    key = MasterKey.generate()
    assert key.material().hex() not in repr(key)
    assert key.matches(MasterKey(key.material()))
    assert not key.matches(MasterKey.generate())
