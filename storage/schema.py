"""
Persisted layout of the dietvault database.

Stores
------
keys      device salt and wrapped master key, keyed by id
records   diet records (legacy plaintext or encrypted), keyed by record id
backups   record snapshots, indexed by ``timestamp`` and ``kind``
meta      small persisted flags (migration state)
"""

from pathlib import Path
from typing import Optional

from storage.kvstore import KeyValueStore, SchemaUpgrade

DB_NAME = "dietvault"
DB_VERSION = 1

STORE_KEYS = "keys"
STORE_RECORDS = "records"
STORE_BACKUPS = "backups"
STORE_META = "meta"

INDEX_BACKUP_TIMESTAMP = "timestamp"
INDEX_BACKUP_KIND = "kind"


def upgrade_schema(upgrade: SchemaUpgrade) -> None:
    """Create every object store the vault needs."""
    if upgrade.old_version < 1:
        upgrade.create_store(STORE_KEYS)
        upgrade.create_store(STORE_RECORDS)
        upgrade.create_store(
            STORE_BACKUPS, indexes=(INDEX_BACKUP_TIMESTAMP, INDEX_BACKUP_KIND)
        )
        upgrade.create_store(STORE_META)


async def open_vault_store(
    directory: Path, max_page_count: Optional[int] = None
) -> KeyValueStore:
    """Open the vault database in ``directory`` at the current schema version."""
    return await KeyValueStore.open(
        DB_NAME,
        DB_VERSION,
        on_upgrade=upgrade_schema,
        directory=directory,
        max_page_count=max_page_count,
    )
