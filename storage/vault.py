"""
Application-facing entry point to the encrypted record store.

Typical start-up::

    vault = await RecordVault.open(Settings.from_env())
    await vault.ensure_key_system_ready()
    result = await vault.run_migration_if_needed()
    ...
    await vault.close()
"""

import logging
from typing import Any, Dict, List, Optional

from core import cipher
from core.config import Settings
from core.crypto import MasterKey
from storage.backups import Backup, BackupKind, BackupStore
from storage.keys import (
    RECOVERY_PHRASE_ENABLED,
    KeyCache,
    KeyDiagnosis,
    MasterKeyManager,
)
from storage.kvstore import KeyValueStore
from storage.migration import MigrationEngine, MigrationResult
from storage.records import RecordRepository
from storage.schema import open_vault_store

logger = logging.getLogger(__name__)

Record = Dict[str, Any]


class RecordVault:
    """Wires the key manager, record repository, backups and migration."""

    RECOVERY_PHRASE_ENABLED = RECOVERY_PHRASE_ENABLED

    def __init__(
        self,
        store: KeyValueStore,
        settings: Optional[Settings] = None,
        keys: Optional[MasterKeyManager] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.store = store
        self.keys = keys or MasterKeyManager(store, cache=KeyCache(self.settings.key_cache_ttl))
        self.records = RecordRepository(store, self.keys)
        self.backups = BackupStore(store, max_backups=self.settings.max_backups)
        self.migration = MigrationEngine(
            self.keys,
            self.records,
            self.backups,
            max_attempts=self.settings.migration_max_attempts,
            retry_delay=self.settings.migration_retry_delay,
        )

    @classmethod
    async def open(cls, settings: Optional[Settings] = None) -> "RecordVault":
        settings = settings or Settings.from_env()
        store = await open_vault_store(settings.data_dir)
        return cls(store, settings)

    async def close(self) -> None:
        self.keys.cache.drop()
        await self.store.close()

    # ── Cipher ───────────────────────────────────────────────────────────

    @staticmethod
    def is_encrypted(record: Any) -> bool:
        return cipher.is_encrypted(record)

    @staticmethod
    def encrypt_record(record: Record, key: MasterKey) -> Record:
        return cipher.encrypt_record(record, key)

    @staticmethod
    def decrypt_record(
        encrypted: Record, key: MasterKey, warn_on_checksum_mismatch: bool = True
    ) -> Record:
        return cipher.decrypt_record(
            encrypted, key, warn_on_checksum_mismatch=warn_on_checksum_mismatch
        )

    # ── Keys ─────────────────────────────────────────────────────────────

    async def ensure_key_system_ready(self) -> None:
        """
        Make sure a master key exists and can be unwrapped.

        An existing key that cannot be unwrapped is left in place and
        reported; only :meth:`reset_key_system` removes it.

        Raises:
            EncryptionSupportError: Crypto or storage capability missing.
            KeyUnwrapError: The stored key cannot be unwrapped on this device.
        """
        if not await self.keys.is_key_system_initialized():
            await self.keys.initialize_key_system()
        await self.keys.get_master_key()

    async def get_master_key(self) -> MasterKey:
        return await self.keys.get_master_key()

    async def diagnose(self) -> KeyDiagnosis:
        return await self.keys.diagnose()

    async def reset_key_system(self, confirmed: bool = False) -> None:
        await self.keys.reset_key_system(confirmed=confirmed)

    async def export_recovery_phrase(self) -> str:
        return await self.keys.export_recovery_phrase()

    async def import_from_recovery_phrase(self, phrase: str) -> MasterKey:
        return await self.keys.import_from_recovery_phrase(phrase)

    # ── Records ──────────────────────────────────────────────────────────

    async def save_record(self, record: Record) -> str:
        return await self.records.save(record)

    async def load_record(self, record_id: str) -> Optional[Record]:
        return await self.records.load(record_id)

    async def load_all_records(self) -> List[Record]:
        return await self.records.load_all()

    async def delete_record(self, record_id: str) -> None:
        await self.records.delete(record_id)

    # ── Migration & backups ─────────────────────────────────────────────

    async def run_migration_if_needed(self) -> MigrationResult:
        return await self.migration.run_if_needed()

    async def create_backup(self, kind: BackupKind = BackupKind.MANUAL) -> Backup:
        return await self.backups.create_backup(None, kind)
