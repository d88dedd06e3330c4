"""
Record repository with transparent field encryption.

Raw methods read and write records exactly as stored (legacy plaintext or
encrypted). ``save``/``load`` route through :mod:`core.cipher` with the
master key. Saving fails closed: if the key system is unavailable or
encryption fails, nothing is written.
"""

import logging
from typing import Any, Dict, List, Optional

from core import cipher
from core.errors import EncryptionError, VaultError
from storage.keys import MasterKeyManager
from storage.kvstore import READWRITE, KeyValueStore
from storage.schema import STORE_RECORDS

logger = logging.getLogger(__name__)

Record = Dict[str, Any]


def _record_id(record: Record) -> str:
    record_id = record.get("id") if isinstance(record, dict) else None
    if record_id is None or str(record_id).strip() == "":
        raise ValueError("Record must have a non-empty 'id'.")
    return str(record_id)


class RecordRepository:
    """Access to the ``records`` object store."""

    def __init__(self, store: KeyValueStore, keys: MasterKeyManager) -> None:
        self._store = store
        self._keys = keys

    @property
    def store(self) -> KeyValueStore:
        return self._store

    # ── Raw access ────────────────────────────────────────────────────────

    async def get_raw(self, record_id: str) -> Optional[Record]:
        """Fetch a record as stored, or None."""
        if not record_id:
            return None
        return await self._store.get(STORE_RECORDS, str(record_id))

    async def list_raw(self) -> List[Record]:
        """Return every stored record, ordered by id."""
        return await self._store.get_all(STORE_RECORDS)

    async def put_raw(self, record: Record) -> str:
        """Store ``record`` as-is; return its id."""
        record_id = _record_id(record)
        await self._store.put(STORE_RECORDS, record_id, record)
        return record_id

    async def put_many_raw(self, records: List[Record]) -> int:
        """Store several records in one transaction."""
        async with self._store.transaction([STORE_RECORDS], READWRITE) as txn:
            target = txn.store(STORE_RECORDS)
            for record in records:
                await target.put(_record_id(record), record)
        return len(records)

    async def delete(self, record_id: str) -> None:
        if not record_id:
            return
        await self._store.delete(STORE_RECORDS, str(record_id))

    async def clear(self) -> None:
        await self._store.clear(STORE_RECORDS)

    # ── Encrypted access ─────────────────────────────────────────────────

    async def save(self, record: Record) -> str:
        """
        Encrypt and store ``record``; return its id.

        Raises:
            KeyUnwrapError, EncryptionSupportError: Key system unavailable.
            EncryptionError: The record could not be encrypted.
            StorageError: The write was rejected.
        """
        record_id = _record_id(record)
        try:
            key = await self._keys.get_master_key()
            encrypted = cipher.encrypt_record(record, key)
        except VaultError:
            logger.error("Refusing to save record %s: encryption unavailable.", record_id)
            raise
        if not cipher.is_encrypted(encrypted):
            raise EncryptionError(f"Refusing to save record {record_id} without encryption.")
        await self._store.put(STORE_RECORDS, record_id, encrypted)
        logger.debug("Record %s saved encrypted.", record_id)
        return record_id

    async def _decrypt(self, raw: Record, warn_on_checksum_mismatch: bool) -> Record:
        if not cipher.is_encrypted(raw):
            return raw
        key = await self._keys.get_master_key()
        return cipher.decrypt_record(raw, key, warn_on_checksum_mismatch=warn_on_checksum_mismatch)

    async def load(self, record_id: str, warn_on_checksum_mismatch: bool = True) -> Optional[Record]:
        """Fetch and decrypt one record; legacy records are returned unchanged."""
        raw = await self.get_raw(record_id)
        if raw is None:
            return None
        return await self._decrypt(raw, warn_on_checksum_mismatch)

    async def load_all(self, warn_on_checksum_mismatch: bool = True) -> List[Record]:
        """Fetch and decrypt every record."""
        return [
            await self._decrypt(raw, warn_on_checksum_mismatch)
            for raw in await self.list_raw()
        ]
