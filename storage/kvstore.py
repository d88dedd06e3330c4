"""
SQLite-backed transactional key-value store with an asyncio interface.

Layout
------
object_stores
  name     TEXT PRIMARY KEY
  indexes  TEXT     -- JSON list of indexed top-level value fields

entries
  store    TEXT NOT NULL
  key      TEXT NOT NULL
  value    TEXT NOT NULL  -- JSON document
  PRIMARY KEY (store, key)

The schema version lives in ``PRAGMA user_version``. Every SQLite call runs
on a single worker thread owned by the store, and transactions are
serialised with an :class:`asyncio.Lock`, so one open transaction owns the
connection at a time. Do not open a transaction while already holding one
on the same store.
"""

import asyncio
import json
import logging
import re
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Iterable, List, Optional, Tuple

from core.errors import QuotaExceededError, StorageError

logger = logging.getLogger(__name__)

READONLY = "readonly"
READWRITE = "readwrite"

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _translate(exc: sqlite3.Error, action: str) -> StorageError:
    """Map a SQLite failure to the vault's storage errors."""
    errname = getattr(exc, "sqlite_errorname", "")
    if errname == "SQLITE_FULL" or "database or disk is full" in str(exc):
        return QuotaExceededError(
            f"Storage quota exceeded while trying to {action}; "
            "free some space or delete old records."
        )
    return StorageError(f"Storage failure while trying to {action}: {exc}")


def _dumps(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise StorageError(f"Value is not JSON serialisable: {exc}") from exc


def _check_name(name: str) -> str:
    if not _NAME_RE.match(name):
        raise ValueError(f"Invalid store or index name: {name!r}")
    return name


# ── Schema upgrade ────────────────────────────────────────────────────────────

class SchemaUpgrade:
    """Handle passed to the ``on_upgrade`` callback of :meth:`KeyValueStore.open`."""

    def __init__(self, conn: sqlite3.Connection, old_version: int, new_version: int) -> None:
        self._conn = conn
        self.old_version = old_version
        self.new_version = new_version

    @property
    def store_names(self) -> List[str]:
        rows = self._conn.execute("SELECT name FROM object_stores ORDER BY name").fetchall()
        return [r[0] for r in rows]

    def create_store(self, name: str, indexes: Iterable[str] = ()) -> None:
        """Create an object store (no-op if it exists) and its field indexes."""
        _check_name(name)
        index_list = [_check_name(i) for i in indexes]
        existing = self._conn.execute(
            "SELECT indexes FROM object_stores WHERE name=?", (name,)
        ).fetchone()
        if existing is not None:
            index_list = sorted(set(json.loads(existing[0])) | set(index_list))
        self._conn.execute(
            "INSERT OR REPLACE INTO object_stores (name, indexes) VALUES (?, ?)",
            (name, json.dumps(index_list)),
        )
        for field_name in index_list:
            self._conn.execute(
                f'CREATE INDEX IF NOT EXISTS "idx_{name}_{field_name}" '
                f"ON entries (store, json_extract(value, '$.{field_name}'))"
            )

    def delete_store(self, name: str) -> None:
        row = self._conn.execute(
            "SELECT indexes FROM object_stores WHERE name=?", (name,)
        ).fetchone()
        if row is None:
            return
        for field_name in json.loads(row[0]):
            self._conn.execute(f'DROP INDEX IF EXISTS "idx_{name}_{field_name}"')
        self._conn.execute("DELETE FROM entries WHERE store=?", (name,))
        self._conn.execute("DELETE FROM object_stores WHERE name=?", (name,))


# ── Store ─────────────────────────────────────────────────────────────────────

class KeyValueStore:
    """Durable keyed map of JSON documents grouped into named object stores."""

    def __init__(self, conn: sqlite3.Connection, executor: ThreadPoolExecutor, path: Path) -> None:
        self._conn = conn
        self._executor = executor
        self._path = path
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def path(self) -> Path:
        return self._path

    # ── Opening ──────────────────────────────────────────────────────────

    @classmethod
    async def open(
        cls,
        name: str,
        version: int,
        on_upgrade: Optional[Callable[[SchemaUpgrade], None]] = None,
        directory: Optional[Path] = None,
        max_page_count: Optional[int] = None,
    ) -> "KeyValueStore":
        """
        Open (creating if needed) the database ``name`` at schema ``version``.

        Args:
            name:           Database name; the file is ``<directory>/<name>.db``.
            version:        Schema version. When the stored version is lower,
                            ``on_upgrade`` runs inside one transaction.
            on_upgrade:     Callback receiving a :class:`SchemaUpgrade`.
            directory:      Folder for the database file.
            max_page_count: Optional SQLite page cap; writes beyond it fail
                            with :class:`QuotaExceededError`.

        Raises:
            StorageError: If the file cannot be opened or upgraded, or the
                stored version is newer than ``version``.
        """
        if version < 1:
            raise ValueError("Schema version must be >= 1.")
        folder = Path(directory) if directory is not None else Path.cwd()
        path = folder / f"{_check_name(name)}.db"
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"kv-{name}")
        loop = asyncio.get_running_loop()
        try:
            conn = await loop.run_in_executor(
                executor, cls._open_sync, path, version, on_upgrade, max_page_count
            )
        except BaseException:
            executor.shutdown(wait=False)
            raise
        logger.debug("Opened key-value store %s (v%d)", path, version)
        return cls(conn, executor, path)

    @staticmethod
    def _open_sync(
        path: Path,
        version: int,
        on_upgrade: Optional[Callable[[SchemaUpgrade], None]],
        max_page_count: Optional[int],
    ) -> sqlite3.Connection:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(path), check_same_thread=False, isolation_level=None)
        except (OSError, sqlite3.Error) as exc:
            raise StorageError(f"Cannot open storage at {path}: {exc}") from exc
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                "CREATE TABLE IF NOT EXISTS object_stores ("
                " name TEXT PRIMARY KEY, indexes TEXT NOT NULL DEFAULT '[]')"
            )
            conn.execute(
                "CREATE TABLE IF NOT EXISTS entries ("
                " store TEXT NOT NULL, key TEXT NOT NULL, value TEXT NOT NULL,"
                " PRIMARY KEY (store, key))"
            )
            current = conn.execute("PRAGMA user_version").fetchone()[0]
            if current > version:
                raise StorageError(
                    f"Storage at {path} is version {current}, newer than {version}."
                )
            if current < version:
                if on_upgrade is not None:
                    on_upgrade(SchemaUpgrade(conn, current, version))
                conn.execute(f"PRAGMA user_version = {int(version)}")
                logger.info("Upgraded storage %s from v%d to v%d", path.name, current, version)
            conn.execute("COMMIT")
        except BaseException as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            conn.close()
            if isinstance(exc, sqlite3.Error):
                raise _translate(exc, "upgrade the schema") from exc
            raise
        if max_page_count is not None:
            conn.execute(f"PRAGMA max_page_count = {int(max_page_count)}")
        return conn

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        if self._closed:
            raise StorageError("Storage is closed.")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    # ── Transactions ─────────────────────────────────────────────────────

    def transaction(self, store_names: Iterable[str], mode: str = READONLY) -> "Transaction":
        """
        Start a transaction over ``store_names``.

        Use as an async context manager; leaving the block normally commits,
        leaving it with an exception rolls back and re-raises::

            async with kv.transaction(["records"], READWRITE) as txn:
                await txn.store("records").put("r1", record)
        """
        if mode not in (READONLY, READWRITE):
            raise ValueError(f"Unknown transaction mode: {mode!r}")
        if isinstance(store_names, str):
            store_names = [store_names]
        return Transaction(self, list(store_names), mode)

    # ── Convenience single-operation helpers ────────────────────────────

    async def get(self, store: str, key: str) -> Any:
        async with self.transaction([store]) as txn:
            return await txn.store(store).get(key)

    async def put(self, store: str, key: str, value: Any) -> None:
        async with self.transaction([store], READWRITE) as txn:
            await txn.store(store).put(key, value)

    async def delete(self, store: str, key: str) -> None:
        async with self.transaction([store], READWRITE) as txn:
            await txn.store(store).delete(key)

    async def get_all(self, store: str) -> List[Any]:
        async with self.transaction([store]) as txn:
            return await txn.store(store).get_all()

    async def clear(self, store: str) -> None:
        async with self.transaction([store], READWRITE) as txn:
            await txn.store(store).clear()

    async def store_names(self) -> List[str]:
        rows = await self._run(
            lambda: self._conn.execute("SELECT name FROM object_stores ORDER BY name").fetchall()
        )
        return [r[0] for r in rows]

    async def close(self) -> None:
        """Close the connection and stop the worker thread."""
        if self._closed:
            return
        async with self._lock:
            await self._run(self._conn.close)
            self._closed = True
        self._executor.shutdown(wait=True)


class Transaction:
    """A unit of work over a fixed set of object stores."""

    def __init__(self, kv: KeyValueStore, store_names: List[str], mode: str) -> None:
        self._kv = kv
        self._store_names = store_names
        self.mode = mode
        self._active = False

    async def __aenter__(self) -> "Transaction":
        await self._kv._lock.acquire()
        try:
            await self._kv._run(self._begin)
        except BaseException:
            self._kv._lock.release()
            raise
        self._active = True
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self._active = False
        try:
            if exc_type is None:
                await self._kv._run(self._commit)
            else:
                await self._kv._run(self._rollback)
        finally:
            self._kv._lock.release()
        return False

    def _begin(self) -> None:
        conn = self._kv._conn
        try:
            conn.execute("BEGIN IMMEDIATE" if self.mode == READWRITE else "BEGIN")
            known = {r[0] for r in conn.execute("SELECT name FROM object_stores").fetchall()}
        except sqlite3.Error as exc:
            raise _translate(exc, "begin a transaction") from exc
        missing = [s for s in self._store_names if s not in known]
        if missing:
            conn.execute("ROLLBACK")
            raise StorageError(f"Unknown object store(s): {', '.join(missing)}")

    def _commit(self) -> None:
        try:
            self._kv._conn.execute("COMMIT")
        except sqlite3.Error as exc:
            self._rollback()
            raise _translate(exc, "commit a transaction") from exc

    def _rollback(self) -> None:
        if self._kv._conn.in_transaction:
            self._kv._conn.execute("ROLLBACK")

    def store(self, name: str) -> "ObjectStore":
        """Return the object store ``name``; it must be part of this transaction."""
        if name not in self._store_names:
            raise StorageError(f"Object store {name!r} is not part of this transaction.")
        return ObjectStore(self, name)

    async def _exec(self, fn: Callable[[sqlite3.Connection], Any], action: str) -> Any:
        if not self._active:
            raise StorageError("Transaction is not active.")

        def runner() -> Any:
            try:
                return fn(self._kv._conn)
            except sqlite3.Error as exc:
                raise _translate(exc, action) from exc

        return await self._kv._run(runner)

    def _require_write(self) -> None:
        if self.mode != READWRITE:
            raise StorageError("Cannot write inside a read-only transaction.")


class ObjectStore:
    """Operations on one object store inside a :class:`Transaction`."""

    def __init__(self, txn: Transaction, name: str) -> None:
        self._txn = txn
        self.name = name

    async def get(self, key: str) -> Any:
        """Return the stored value, or ``None`` when the key is absent."""
        row = await self._txn._exec(
            lambda c: c.execute(
                "SELECT value FROM entries WHERE store=? AND key=?", (self.name, str(key))
            ).fetchone(),
            "read",
        )
        return json.loads(row[0]) if row else None

    async def put(self, key: str, value: Any) -> None:
        self._txn._require_write()
        payload = _dumps(value)
        await self._txn._exec(
            lambda c: c.execute(
                "INSERT OR REPLACE INTO entries (store, key, value) VALUES (?, ?, ?)",
                (self.name, str(key), payload),
            ),
            "write",
        )

    async def delete(self, key: str) -> None:
        self._txn._require_write()
        await self._txn._exec(
            lambda c: c.execute(
                "DELETE FROM entries WHERE store=? AND key=?", (self.name, str(key))
            ),
            "delete",
        )

    async def clear(self) -> None:
        self._txn._require_write()
        await self._txn._exec(
            lambda c: c.execute("DELETE FROM entries WHERE store=?", (self.name,)),
            "clear",
        )

    async def get_all(self) -> List[Any]:
        """Return every value in key order."""
        rows = await self._txn._exec(
            lambda c: c.execute(
                "SELECT value FROM entries WHERE store=? ORDER BY key", (self.name,)
            ).fetchall(),
            "read",
        )
        return [json.loads(r[0]) for r in rows]

    async def count(self) -> int:
        row = await self._txn._exec(
            lambda c: c.execute(
                "SELECT COUNT(*) FROM entries WHERE store=?", (self.name,)
            ).fetchone(),
            "count",
        )
        return int(row[0])

    async def cursor(
        self, index: Optional[str] = None, reverse: bool = False
    ) -> AsyncIterator[Tuple[str, Any]]:
        """
        Iterate ``(key, value)`` pairs ordered by key, or by an indexed field.

        Ties on the indexed field are ordered by key.
        """
        direction = "DESC" if reverse else "ASC"
        if index is None:
            order = f"key {direction}"
        else:
            order = f"json_extract(value, '$.{_check_name(index)}') {direction}, key {direction}"
        rows = await self._txn._exec(
            lambda c: c.execute(
                f"SELECT key, value FROM entries WHERE store=? ORDER BY {order}",
                (self.name,),
            ).fetchall(),
            "iterate",
        )
        for key, value in rows:
            yield key, json.loads(value)
