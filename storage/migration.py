"""
Migration of legacy plaintext records to encrypted form.

State machine: NotStarted -> Running -> Completed. Completion is persisted
in the ``meta`` store and checked first, so running the migration again is
a no-op.

Every run follows the same order:

1. Snapshot the legacy records into a pre-migration backup. No backup, no
   migration.
2. Migrate records one at a time, retrying each up to ``max_attempts``
   times with a linearly growing delay.
3. Each record is encrypted, decrypted again, and its sensitive fields are
   compared with the original before the encrypted form is written.

Records whose last failure was a transient storage error are remembered
and retried on the next run; other failures are reported and left alone.
The application must not save a record while it is being migrated.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core import cipher
from core.crypto import MasterKey
from core.errors import (
    MigrationAbortedError,
    MigrationItemError,
    QuotaExceededError,
    StorageError,
    VaultError,
)
from storage.backups import BackupStore
from storage.keys import MasterKeyManager
from storage.records import RecordRepository
from storage.schema import STORE_META

logger = logging.getLogger(__name__)

MIGRATION_KEY = "migration-v2.0.1-encryption"
MAX_ATTEMPTS = 3
RETRY_DELAY = 1.0          # seconds; attempt n waits n * RETRY_DELAY
PROGRESS_EVERY = 5         # records between progress notifications

Record = Dict[str, Any]
ProgressCallback = Callable[[int, int], None]


class MigrationState(str, Enum):
    NOT_STARTED = "not-started"
    RUNNING = "running"
    COMPLETED = "completed"


@dataclass
class ItemResult:
    """Outcome of migrating one record."""

    success: bool
    attempts: int
    error: Optional[str] = None
    transient: bool = False


@dataclass
class MigrationResult:
    """Outcome of a migration run."""

    migrated: int = 0
    errors: int = 0
    total: int = 0
    error_details: List[MigrationItemError] = field(default_factory=list)
    already_migrated: bool = False
    already_running: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "migrated": self.migrated,
            "errors": self.errors,
            "total": self.total,
        }
        if self.error_details:
            data["errorDetails"] = [
                {"recordId": e.record_id, "error": e.message, "attempts": e.attempts}
                for e in self.error_details
            ]
        if self.already_migrated:
            data["alreadyMigrated"] = True
        if self.already_running:
            data["alreadyRunning"] = True
        return data


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, StorageError) and not isinstance(exc, QuotaExceededError)


def _describe(exc: Optional[BaseException]) -> str:
    if isinstance(exc, MigrationItemError):
        return exc.message
    if isinstance(exc, VaultError):
        return str(exc)
    return f"{type(exc).__name__}: {exc}"


def _log_progress(current: int, total: int) -> None:
    percent = round(current / total * 100) if total else 100
    logger.info("Migration: %d/%d (%d%%)", current, total, percent)


class MigrationEngine:
    """Upgrades legacy records to encrypted form, once."""

    def __init__(
        self,
        keys: MasterKeyManager,
        records: RecordRepository,
        backups: BackupStore,
        max_attempts: int = MAX_ATTEMPTS,
        retry_delay: float = RETRY_DELAY,
        on_progress: ProgressCallback = _log_progress,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        self._keys = keys
        self._records = records
        self._backups = backups
        self._store = records.store
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._on_progress = on_progress
        self._sleep = sleep
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    # ── Persisted state ──────────────────────────────────────────────────

    async def _load_state(self) -> Dict[str, Any]:
        return await self._store.get(STORE_META, MIGRATION_KEY) or {}

    async def is_already_migrated(self) -> bool:
        state = await self._load_state()
        return state.get("status") == MigrationState.COMPLETED.value

    async def mark_as_migrated(self, pending_retry: Optional[List[str]] = None) -> None:
        await self._store.put(
            STORE_META,
            MIGRATION_KEY,
            {
                "status": MigrationState.COMPLETED.value,
                "completedAt": datetime.now(timezone.utc).isoformat(),
                "pendingRetry": sorted(pending_retry or []),
            },
        )
        logger.debug("Migration marked as completed.")

    async def reset_migration_status(self) -> None:
        """Forget completion so the next run migrates again."""
        await self._store.delete(STORE_META, MIGRATION_KEY)
        logger.warning("Migration state reset.")

    async def get_migration_status(self) -> Dict[str, Any]:
        state = await self._load_state()
        if self._running:
            status = MigrationState.RUNNING
        elif state.get("status") == MigrationState.COMPLETED.value:
            status = MigrationState.COMPLETED
        else:
            status = MigrationState.NOT_STARTED
        return {
            "state": status.value,
            "completed": status is MigrationState.COMPLETED,
            "completedAt": state.get("completedAt"),
            "pendingRetry": list(state.get("pendingRetry", [])),
            "isRunning": self._running,
        }

    # ── Entry point ──────────────────────────────────────────────────────

    async def run_if_needed(self) -> MigrationResult:
        """
        Migrate legacy records unless that already happened.

        Raises:
            MigrationAbortedError: The safety backup could not be created.
            KeyUnwrapError, EncryptionSupportError: The key system is unusable.
        """
        if self._running:
            logger.debug("Migration already running; skipping.")
            return MigrationResult(already_running=True)

        self._running = True
        try:
            state = await self._load_state()
            pending = set(state.get("pendingRetry", []))
            if state.get("status") == MigrationState.COMPLETED.value and not pending:
                logger.debug("Migration already completed.")
                return MigrationResult(already_migrated=True)

            if not await self._keys.is_key_system_initialized():
                await self._keys.initialize_key_system()

            all_records = await self._records.list_raw()
            legacy = [r for r in all_records if not cipher.is_encrypted(r)]
            if pending:
                legacy = [r for r in legacy if str(r.get("id")) in pending]

            if not legacy:
                logger.debug("No records to migrate.")
                await self.mark_as_migrated()
                return MigrationResult(total=len(all_records))

            logger.info(
                "Found %d record(s) to migrate (of %d total).", len(legacy), len(all_records)
            )
            return await self.migrate(legacy)
        finally:
            self._running = False

    # ── Migration ───────────────────────────────────────────────────────

    async def migrate(self, records: List[Record]) -> MigrationResult:
        """Back up ``records`` and migrate them one by one."""
        total = len(records)
        try:
            await self._backups.create_pre_migration_backup(records)
        except (VaultError, OSError) as exc:
            logger.error("Safety backup failed; migration aborted: %s", exc)
            raise MigrationAbortedError(f"Safety backup failed: {exc}") from exc
        logger.debug("Safety backup created.")

        key = await self._keys.get_master_key()
        result = MigrationResult(total=total)
        pending_retry: List[str] = []

        for record in records:
            outcome = await self.migrate_one_with_retry(record, key, self.max_attempts)
            if outcome.success:
                result.migrated += 1
                if result.migrated % PROGRESS_EVERY == 0 or result.migrated == total:
                    self._on_progress(result.migrated, total)
            else:
                result.errors += 1
                result.error_details.append(
                    MigrationItemError(record.get("id"), outcome.error or "unknown error", outcome.attempts)
                )
                if outcome.transient and record.get("id") is not None:
                    pending_retry.append(str(record.get("id")))

        await self.mark_as_migrated(pending_retry)
        if result.errors:
            logger.warning(
                "Migration completed: %d/%d migrated, %d error(s).",
                result.migrated, total, result.errors,
            )
        else:
            logger.info("Migration completed: %d/%d migrated.", result.migrated, total)
        return result

    async def migrate_one_with_retry(
        self, record: Record, key: MasterKey, max_attempts: int = MAX_ATTEMPTS
    ) -> ItemResult:
        """Try :meth:`migrate_one` up to ``max_attempts`` times."""
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        record_id = record.get("id")
        last_error: Optional[BaseException] = None
        for attempt in range(1, max_attempts + 1):
            try:
                await self.migrate_one(record, key)
                logger.debug("Record %s migrated (attempt %d).", record_id, attempt)
                return ItemResult(success=True, attempts=attempt)
            except Exception as exc:  # failures are soft per record
                last_error = exc
                logger.warning(
                    "Attempt %d/%d failed for record %s: %s",
                    attempt, max_attempts, record_id, _describe(exc),
                )
            if attempt < max_attempts:
                delay = attempt * self.retry_delay
                logger.debug("Waiting %.2fs before retrying...", delay)
                await self._sleep(delay)

        logger.error("Record %s could not be migrated after %d attempt(s).", record_id, max_attempts)
        return ItemResult(
            success=False,
            attempts=max_attempts,
            error=_describe(last_error),
            transient=last_error is not None and _is_transient(last_error),
        )

    async def migrate_one(self, record: Record, key: MasterKey) -> None:
        """
        Encrypt ``record``, verify it decrypts back identically, then commit.

        Raises:
            MigrationItemError: Decrypted sensitive fields differ from the original.
            VaultError: Encryption, decryption or storage failed.
        """
        encrypted = cipher.encrypt_record(record, key)
        check = cipher.decrypt_record(encrypted, key)
        original = cipher.canonical_json(cipher.extract_sensitive_data(record))
        roundtrip = cipher.canonical_json(cipher.extract_sensitive_data(check))
        if original != roundtrip:
            raise MigrationItemError(
                record.get("id"), "Validation failed: data mismatch after decrypt", 1
            )
        await self._records.put_raw(encrypted)
        logger.debug("Record %s migrated and verified.", record.get("id"))
