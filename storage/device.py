"""
Device-bound wrapping-key derivation.

The wrapping key is PBKDF2 over a persisted random device salt and a
passphrase chosen by :class:`~core.fingerprint.KeyDerivationStrategy`. It is
only ever used to wrap and unwrap the master key.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from core import crypto
from core.errors import EncryptionSupportError, KeyUnwrapError
from core.fingerprint import (
    KeyDerivationStrategy,
    build_passphrase,
    collect_device_attributes,
)
from storage.kvstore import KeyValueStore
from storage.schema import STORE_KEYS

logger = logging.getLogger(__name__)

DEVICE_SALT_ID = "device-salt"
WRAPPED_KEY_ID = "wrapped-master-key"


def encode_key_entry(entry_id: str, raw: bytes) -> Dict[str, Any]:
    """Build the stored form of a binary value in the ``keys`` store."""
    return {
        "id": entry_id,
        "value": crypto.b64encode(raw),
        "timestamp": int(time.time() * 1000),
    }


def decode_key_entry(entry: Any) -> Optional[bytes]:
    """
    Return the bytes held by a ``keys`` store entry.

    Older builds stored raw byte arrays as JSON integer lists; both forms are
    accepted. Returns None for anything that is not a recognisable value.
    """
    if not isinstance(entry, dict):
        return None
    value = entry.get("value")
    if isinstance(value, str) and value:
        try:
            return crypto.b64decode(value)
        except ValueError:
            return None
    if isinstance(value, list) and value:
        if all(isinstance(b, int) and 0 <= b <= 255 for b in value):
            return bytes(value)
    return None


class DeviceKeyDeriver:
    """Derive the wrapping key for this device."""

    def __init__(
        self,
        store: KeyValueStore,
        attributes: Callable[[], Dict[str, str]] = collect_device_attributes,
        iterations: int = crypto.PBKDF2_ITERATIONS,
    ) -> None:
        """
        Args:
            store:      Vault key-value store (the ``keys`` store holds the salt).
            attributes: Source of the device attributes for the fingerprint.
            iterations: PBKDF2 rounds; never below 100,000 in production.
        """
        self._store = store
        self._attributes = attributes
        self._iterations = iterations

    async def get_device_salt(self, create: bool = True) -> Optional[bytes]:
        """
        Return the device salt, generating and persisting it on first use.

        With ``create=False`` nothing is written and None is returned when
        the salt does not exist yet.

        Raises:
            KeyUnwrapError: The salt is missing or malformed but a wrapped
                master key is stored; replacing the salt would orphan it.
        """
        salt = decode_key_entry(await self._store.get(STORE_KEYS, DEVICE_SALT_ID))
        if salt is not None and len(salt) == crypto.SALT_SIZE:
            return salt
        if not create:
            return None
        if await self._store.get(STORE_KEYS, WRAPPED_KEY_ID) is not None:
            raise KeyUnwrapError("Device salt is missing or malformed while a master key is stored")
        if salt is not None:
            logger.warning("Stored device salt is malformed; generating a new one.")
        salt = crypto.generate_salt()
        await self._store.put(STORE_KEYS, DEVICE_SALT_ID, encode_key_entry(DEVICE_SALT_ID, salt))
        logger.debug("New device salt generated.")
        return salt

    async def has_device_salt(self) -> bool:
        return await self.get_device_salt(create=False) is not None

    async def derive_wrapping_key(
        self,
        strategy: KeyDerivationStrategy = KeyDerivationStrategy.CURRENT,
        create_salt: bool = True,
    ) -> bytes:
        """
        Derive the 256-bit wrapping key for ``strategy``.

        Raises:
            EncryptionSupportError: If the salt is missing and ``create_salt``
                is False, or key derivation is unavailable.
            KeyUnwrapError: The salt is unusable while a master key is stored.
        """
        salt = await self.get_device_salt(create=create_salt)
        if salt is None:
            raise EncryptionSupportError("Device salt does not exist.")
        passphrase = build_passphrase(strategy, self._attributes)
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None, crypto.derive_key, passphrase, salt, self._iterations
            )
        except (ValueError, TypeError) as exc:
            raise EncryptionSupportError(f"Key derivation unavailable: {exc}") from exc
