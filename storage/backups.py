"""
Record backups.

Backups are snapshots of a list of records with a SHA-256 checksum over the
canonical JSON of the snapshot. They are kept in the ``backups`` object
store; only the newest ``max_backups`` survive each new backup.
"""

import json
import logging
import secrets
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from core.cipher import canonical_json
from core.crypto import sha256_hex
from core.errors import BackupIntegrityError
from storage.kvstore import READWRITE, KeyValueStore
from storage.schema import INDEX_BACKUP_TIMESTAMP, STORE_BACKUPS, STORE_RECORDS

logger = logging.getLogger(__name__)

BACKUP_FORMAT_VERSION = "2.0.1"
MAX_BACKUPS_STORED = 5
BACKUP_FILE_PREFIX = "dietvault-backup"


class BackupKind(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"
    PRE_MIGRATION = "pre-migration"


def records_checksum(records: List[Dict[str, Any]]) -> str:
    """Checksum of a records snapshot."""
    return sha256_hex(canonical_json(records))


@dataclass
class Backup:
    """A checksummed snapshot of records."""

    kind: BackupKind
    timestamp: float
    records: List[Dict[str, Any]] = field(default_factory=list)
    checksum: str = ""
    count: int = 0
    id: str = ""
    version: str = BACKUP_FORMAT_VERSION

    @property
    def date(self) -> str:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["date"] = self.date
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "Backup":
        """
        Build a backup from its stored or exported form.

        Raises:
            BackupIntegrityError: If required fields are missing or mistyped.
        """
        if not isinstance(data, dict):
            raise BackupIntegrityError("Backup must be a JSON object.")
        try:
            kind = BackupKind(data.get("kind", BackupKind.MANUAL.value))
            records = data["records"]
            if not isinstance(records, list):
                raise TypeError("records must be a list")
            return cls(
                kind=kind,
                timestamp=float(data["timestamp"]),
                records=records,
                checksum=str(data["checksum"]),
                count=int(data.get("count", len(records))),
                id=str(data.get("id", "")),
                version=str(data.get("version", BACKUP_FORMAT_VERSION)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise BackupIntegrityError(f"Invalid backup format: {exc}") from exc


def validate_backup(backup: Any) -> bool:
    """Recompute the checksum of ``backup``; never raises."""
    try:
        if isinstance(backup, dict):
            backup = Backup.from_dict(backup)
        if not isinstance(backup, Backup) or not backup.checksum:
            logger.warning("Backup has an invalid format.")
            return False
        if records_checksum(backup.records) != backup.checksum:
            logger.warning("Backup checksum does not match - backup is corrupt.")
            return False
        return True
    except Exception as exc:  # validation must never raise
        logger.error("Error validating backup: %s", exc)
        return False


class BackupStore:
    """Creates, lists, prunes, exports and restores backups."""

    def __init__(
        self,
        store: KeyValueStore,
        max_backups: int = MAX_BACKUPS_STORED,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_backups < 1:
            raise ValueError("max_backups must be at least 1.")
        self._store = store
        self._max_backups = max_backups
        self._clock = clock

    async def create_backup(
        self,
        records: Optional[List[Dict[str, Any]]] = None,
        kind: BackupKind = BackupKind.MANUAL,
    ) -> Backup:
        """
        Snapshot ``records`` (all stored records when None), persist, prune.

        Raises:
            StorageError: If the backup cannot be written.
        """
        kind = BackupKind(kind)
        if records is None:
            records = await self._store.get_all(STORE_RECORDS)
        snapshot = json.loads(canonical_json(records))
        timestamp = self._clock()
        backup = Backup(
            kind=kind,
            timestamp=timestamp,
            records=snapshot,
            checksum=records_checksum(snapshot),
            count=len(snapshot),
            id=f"{int(timestamp * 1000):015d}-{secrets.token_hex(4)}",
        )

        async with self._store.transaction([STORE_BACKUPS], READWRITE) as txn:
            backups = txn.store(STORE_BACKUPS)
            await backups.put(backup.id, backup.to_dict())
            stale = []
            position = 0
            async for key, _ in backups.cursor(index=INDEX_BACKUP_TIMESTAMP, reverse=True):
                position += 1
                if position > self._max_backups:
                    stale.append(key)
            for key in stale:
                await backups.delete(key)

        if stale:
            logger.debug("Pruned %d old backup(s).", len(stale))
        logger.info("Backup created (%s): %d record(s).", kind.value, backup.count)
        return backup

    async def create_pre_migration_backup(self, records: List[Dict[str, Any]]) -> Backup:
        logger.debug("Creating safety backup before migration...")
        return await self.create_backup(records, BackupKind.PRE_MIGRATION)

    async def get_all_backups(self) -> List[Backup]:
        """Return stored backups, newest first."""
        result = []
        async with self._store.transaction([STORE_BACKUPS]) as txn:
            async for _, value in txn.store(STORE_BACKUPS).cursor(
                index=INDEX_BACKUP_TIMESTAMP, reverse=True
            ):
                result.append(Backup.from_dict(value))
        return result

    def validate_backup(self, backup: Union[Backup, Dict[str, Any]]) -> bool:
        return validate_backup(backup)

    # ── Files ────────────────────────────────────────────────────────────

    def default_filename(self, backup: Backup) -> str:
        day = datetime.fromtimestamp(backup.timestamp, tz=timezone.utc).strftime("%Y-%m-%d")
        return f"{BACKUP_FILE_PREFIX}-{day}.json"

    def export_to_file(self, backup: Backup, path: Optional[Path] = None) -> Path:
        """
        Write ``backup`` as pretty JSON.

        ``path`` may be a directory (the default file name is used) or a file.
        """
        target = Path(path) if path is not None else Path.cwd()
        if target.is_dir():
            target = target / self.default_filename(backup)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(
            json.dumps(backup.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8"
        )
        logger.info("Backup exported to %s", target)
        return target

    def restore_from_file(self, path: Path) -> Backup:
        """
        Read a backup file and validate it.

        Raises:
            BackupIntegrityError: Unreadable, malformed, or checksum mismatch.
        """
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise BackupIntegrityError(f"Cannot read backup file {path}: {exc}") from exc
        backup = Backup.from_dict(data)
        if not validate_backup(backup):
            raise BackupIntegrityError("Backup is invalid or corrupt.")
        logger.info("Backup imported: %d record(s).", backup.count)
        return backup
