"""
Cryptographic primitives for dietvault.

Key derivation  : PBKDF2-HMAC-SHA256
Encryption      : AES-256-GCM (authenticated encryption)
Key wrapping    : AES Key Wrap (RFC 3394)
Checksums       : SHA-256, hex encoded
"""

import base64
import binascii
import hashlib
import hmac
import secrets
from typing import Union

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.keywrap import aes_key_unwrap, aes_key_wrap

# ── Constants ────────────────────────────────────────────────────────────────

SALT_SIZE = 32          # 256-bit device salt
NONCE_SIZE = 12         # 96-bit nonce (GCM recommendation)
KEY_SIZE = 32           # 256-bit AES key
TAG_SIZE = 16           # 128-bit GCM tag
WRAPPED_KEY_SIZE = KEY_SIZE + 8  # RFC 3394 adds one 64-bit block
PBKDF2_ITERATIONS = 100_000
PBKDF2_HASH = "sha256"


# ── Key handle ───────────────────────────────────────────────────────────────

class MasterKey:
    """
    Opaque handle around the 256-bit master key.

    The material is only reachable through :meth:`material`;
    ``repr`` never shows it.
    """

    __slots__ = ("_material", "__weakref__")

    def __init__(self, material: bytes) -> None:
        if len(material) != KEY_SIZE:
            raise ValueError(f"Key must be {KEY_SIZE} bytes, got {len(material)}")
        self._material = bytes(material)

    @classmethod
    def generate(cls) -> "MasterKey":
        return cls(generate_key())

    def material(self) -> bytes:
        return self._material

    def matches(self, other: "MasterKey") -> bool:
        """Constant-time equality of key material."""
        return hmac.compare_digest(self._material, other._material)

    def __repr__(self) -> str:
        return "<MasterKey AES-256-GCM>"


# ── Random material ──────────────────────────────────────────────────────────

def generate_salt() -> bytes:
    """Return a cryptographically random 32-byte salt."""
    return secrets.token_bytes(SALT_SIZE)


def generate_key() -> bytes:
    """Return fresh 256-bit key material."""
    return secrets.token_bytes(KEY_SIZE)


def generate_nonce() -> bytes:
    """Return a fresh 12-byte GCM nonce. Never reuse one under the same key."""
    return secrets.token_bytes(NONCE_SIZE)


# ── Key derivation ────────────────────────────────────────────────────────────

def derive_key(
    passphrase: str,
    salt: bytes,
    iterations: int = PBKDF2_ITERATIONS,
) -> bytes:
    """
    Derive a 256-bit key from ``passphrase`` using PBKDF2-HMAC-SHA256.

    Args:
        passphrase: Low-entropy secret (unicode string).
        salt:       Random 32-byte salt.
        iterations: PBKDF2 round count.

    Returns:
        32-byte derived key.
    """
    return hashlib.pbkdf2_hmac(
        PBKDF2_HASH,
        passphrase.encode("utf-8"),
        salt,
        iterations,
        dklen=KEY_SIZE,
    )


# ── AES-256-GCM ───────────────────────────────────────────────────────────────

def _check_key(key: bytes) -> None:
    if len(key) != KEY_SIZE:
        raise ValueError(f"Key must be {KEY_SIZE} bytes, got {len(key)}")


def encrypt(plaintext: bytes, key: bytes, nonce: bytes) -> bytes:
    """
    Encrypt *plaintext* with AES-256-GCM under an explicit nonce.

    The 16-byte tag is appended to the returned ciphertext by the library.

    Raises:
        ValueError: If key or nonce length is wrong.
    """
    _check_key(key)
    if len(nonce) != NONCE_SIZE:
        raise ValueError(f"Nonce must be {NONCE_SIZE} bytes, got {len(nonce)}")
    return AESGCM(key).encrypt(nonce, plaintext, None)


def decrypt(ciphertext: bytes, key: bytes, nonce: bytes) -> bytes:
    """
    Decrypt ciphertext+tag produced by :func:`encrypt`.

    Raises:
        ValueError: If key or nonce length is wrong.
        cryptography.exceptions.InvalidTag: If authentication fails (wrong key
            or tampered data).
    """
    _check_key(key)
    if len(nonce) != NONCE_SIZE:
        raise ValueError(f"Nonce must be {NONCE_SIZE} bytes, got {len(nonce)}")
    return AESGCM(key).decrypt(nonce, ciphertext, None)


# ── Key wrapping ──────────────────────────────────────────────────────────────

def wrap_key(key_to_wrap: bytes, wrapping_key: bytes) -> bytes:
    """Wrap ``key_to_wrap`` under ``wrapping_key`` (AES-KW, 40-byte output)."""
    _check_key(wrapping_key)
    return aes_key_wrap(wrapping_key, key_to_wrap)


def unwrap_key(wrapped: bytes, wrapping_key: bytes) -> bytes:
    """
    Reverse :func:`wrap_key`.

    Raises:
        cryptography.hazmat.primitives.keywrap.InvalidUnwrap: Wrong wrapping
            key or corrupted blob.
        ValueError: Blob has an impossible length.
    """
    _check_key(wrapping_key)
    return aes_key_unwrap(wrapping_key, wrapped)


# ── Encoding helpers ──────────────────────────────────────────────────────────

def sha256_hex(data: Union[str, bytes]) -> str:
    """Return the hex SHA-256 digest of *data* (strings hashed as UTF-8)."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def b64encode(raw: bytes) -> str:
    """Standard base64, ASCII string."""
    return base64.b64encode(raw).decode("ascii")


def b64decode(encoded: str) -> bytes:
    """
    Decode standard or URL-safe base64.

    Raises:
        ValueError: If the text is not valid in either alphabet.
    """
    try:
        return base64.b64decode(encoded.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError):
        pass
    try:
        normalised = encoded.replace("-", "+").replace("_", "/")
        return base64.b64decode(normalised.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise ValueError(f"Invalid base64 data: {exc}") from exc


def constant_time_compare(a: str, b: str) -> bool:
    """Return True if *a* == *b* in constant time (timing-safe)."""
    return hmac.compare_digest(a.encode(), b.encode())
