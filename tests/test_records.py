"""Tests for storage.records."""

import asyncio
from pathlib import Path

import pytest

from core.cipher import is_encrypted
from core.errors import EncryptionSupportError, KeyUnwrapError
from storage.device import DeviceKeyDeriver
from storage.keys import MasterKeyManager
from storage.records import RecordRepository
from storage.schema import open_vault_store

ITERATIONS = 1000
ATTRS = {"platform": "Linux/x86_64", "locale": "ca_ES"}

RECORD = {
    "id": "r1",
    "date": "2025-03-14",
    "person1": "José Núñez",
    "vehicleNumber": "V-1",
    "services": [{"serviceNumber": "S-1", "notes": "critical", "originTime": "08:00"}],
}


def _repo(store) -> RecordRepository:
    keys = MasterKeyManager(store, DeviceKeyDeriver(store, lambda: ATTRS, ITERATIONS))
    return RecordRepository(store, keys)


def test_save_stores_only_encrypted_form(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await open_vault_store(tmp_path)
        try:
            repo = _repo(store)
            assert await repo.save(RECORD) == "r1"
            raw = await repo.get_raw("r1")
            assert is_encrypted(raw)
            assert "person1" not in raw
            assert raw["date"] == "2025-03-14"
            assert "José" not in repr(raw)
            assert await repo.load("r1") == RECORD
        finally:
            await store.close()

    asyncio.run(scenario())


@pytest.mark.parametrize("failure", [KeyUnwrapError, EncryptionSupportError])
def test_save_fails_closed(tmp_path: Path, monkeypatch, failure) -> None:
    async def scenario() -> None:
        store = await open_vault_store(tmp_path)
        try:
            repo = _repo(store)

            async def broken():
                raise failure()

            monkeypatch.setattr(repo._keys, "get_master_key", broken)
            with pytest.raises(failure):
                await repo.save(RECORD)
            assert await repo.list_raw() == []
        finally:
            await store.close()

    asyncio.run(scenario())


def test_legacy_records_pass_through(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await open_vault_store(tmp_path)
        try:
            repo = _repo(store)
            legacy = {"id": "old", "person1": "Anna"}
            await repo.put_raw(legacy)
            await repo.save(RECORD)
            assert await repo.load("old") == legacy
            loaded = await repo.load_all()
            assert sorted(r["id"] for r in loaded) == ["old", "r1"]
            assert RECORD in loaded
        finally:
            await store.close()

    asyncio.run(scenario())


def test_missing_and_deleted_records(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await open_vault_store(tmp_path)
        try:
            repo = _repo(store)
            assert await repo.load("nope") is None
            assert await repo.get_raw("") is None
            await repo.save(RECORD)
            await repo.delete("r1")
            assert await repo.load("r1") is None
        finally:
            await store.close()

    asyncio.run(scenario())


def test_put_many_raw_and_clear(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await open_vault_store(tmp_path)
        try:
            repo = _repo(store)
            assert await repo.put_many_raw([{"id": str(i)} for i in range(4)]) == 4
            assert len(await repo.list_raw()) == 4
            await repo.clear()
            assert await repo.list_raw() == []
        finally:
            await store.close()

    asyncio.run(scenario())


@pytest.mark.parametrize("record", [{}, {"id": ""}, {"id": None}, {"id": "  "}])
def test_records_need_an_id(tmp_path: Path, record) -> None:
    async def scenario() -> None:
        store = await open_vault_store(tmp_path)
        try:
            repo = _repo(store)
            with pytest.raises(ValueError):
                await repo.save(record)
            with pytest.raises(ValueError):
                await repo.put_raw(record)
        finally:
            await store.close()

    asyncio.run(scenario())
