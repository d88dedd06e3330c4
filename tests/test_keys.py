"""Tests for storage.keys."""

import asyncio
from pathlib import Path

import pytest

from core import crypto
from core.crypto import MasterKey
from core.errors import (
    KeyResetNotConfirmedError,
    KeyUnwrapError,
    RecoveryNotSupportedError,
)
from core.fingerprint import KeyDerivationStrategy
from storage.device import DEVICE_SALT_ID, DeviceKeyDeriver, encode_key_entry
from storage.keys import WRAPPED_KEY_ID, KeyCache, MasterKeyManager
from storage.schema import STORE_KEYS, open_vault_store

ITERATIONS = 1000

ATTRS = {"platform": "Linux/x86_64", "locale": "ca_ES", "cores": "8", "tz_offset": "-60"}
DRIFTED = dict(ATTRS, cores="16")


def _manager(store, attrs=ATTRS, cache=None) -> MasterKeyManager:
    return MasterKeyManager(
        store, DeviceKeyDeriver(store, lambda: attrs, ITERATIONS), cache=cache
    )


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


# ── KeyCache ──────────────────────────────────────────────────────────────────

def test_cache_expires_after_ttl() -> None:
    clock = FakeClock()
    cache = KeyCache(ttl=300, clock=clock)
    key = MasterKey.generate()
    cache.put(key)
    clock.now += 299
    assert cache.get() is key
    clock.now += 1
    assert cache.get() is None


def test_cache_clear_and_drop() -> None:
    cache = KeyCache(ttl=10)
    cache.put(MasterKey.generate())
    cache.clear()
    assert cache.get() is None
    cache.put(MasterKey.generate())
    cache.drop()
    assert cache.get() is None


def test_cache_rejects_bad_ttl() -> None:
    with pytest.raises(ValueError):
        KeyCache(ttl=0)


def test_cache_loads_once_under_concurrency() -> None:
    calls = []

    async def loader() -> MasterKey:
        calls.append(1)
        await asyncio.sleep(0.01)
        return MasterKey.generate()

    async def scenario() -> None:
        cache = KeyCache(ttl=60)
        keys = await asyncio.gather(*(cache.get_or_derive(loader) for _ in range(5)))
        assert all(k is keys[0] for k in keys)
        cache.drop()

    asyncio.run(scenario())
    assert len(calls) == 1


def test_cache_timer_clears_entry() -> None:
    async def scenario() -> None:
        cache = KeyCache(ttl=0.01)
        cache.put(MasterKey.generate())
        await asyncio.sleep(0.05)
        assert cache._key is None

    asyncio.run(scenario())


# ── Initialisation ────────────────────────────────────────────────────────────

def test_initialize_creates_wrapped_key(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await open_vault_store(tmp_path)
        try:
            manager = _manager(store)
            assert not await manager.is_key_system_initialized()
            await manager.initialize_key_system()
            assert await manager.is_key_system_initialized()
            entry = await store.get(STORE_KEYS, WRAPPED_KEY_ID)
            assert len(crypto.b64decode(entry["value"])) == crypto.WRAPPED_KEY_SIZE
            assert await store.get(STORE_KEYS, DEVICE_SALT_ID) is not None
        finally:
            await store.close()

    asyncio.run(scenario())


def test_initialize_is_idempotent(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await open_vault_store(tmp_path)
        try:
            manager = _manager(store)
            await manager.initialize_key_system()
            first = await store.get(STORE_KEYS, WRAPPED_KEY_ID)
            await manager.initialize_key_system()
            assert await store.get(STORE_KEYS, WRAPPED_KEY_ID) == first
        finally:
            await store.close()

    asyncio.run(scenario())


def test_initialize_replaces_corrupt_key(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await open_vault_store(tmp_path)
        try:
            await store.put(STORE_KEYS, WRAPPED_KEY_ID, {"id": WRAPPED_KEY_ID, "value": "garbage"})
            manager = _manager(store)
            await manager.initialize_key_system()
            assert isinstance(await manager.get_master_key(), MasterKey)
        finally:
            await store.close()

    asyncio.run(scenario())


# ── get_master_key ────────────────────────────────────────────────────────────

def test_get_master_key_is_stable_and_cached(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await open_vault_store(tmp_path)
        try:
            manager = _manager(store)
            key = await manager.get_master_key()
            assert await manager.get_master_key() is key
            manager.cache.clear()
            reloaded = await manager.get_master_key()
            assert reloaded is not key
            assert reloaded.matches(key)
        finally:
            await store.close()

    asyncio.run(scenario())


def test_master_key_survives_reopen(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await open_vault_store(tmp_path)
        first = await _manager(store).get_master_key()
        await store.close()
        store = await open_vault_store(tmp_path)
        try:
            assert (await _manager(store).get_master_key()).matches(first)
        finally:
            await store.close()

    asyncio.run(scenario())


def test_legacy_wrapped_key_unwraps_with_audit(tmp_path: Path, caplog) -> None:
    async def scenario() -> None:
        store = await open_vault_store(tmp_path)
        try:
            manager = _manager(store)
            legacy_wrapping = await manager.deriver.derive_wrapping_key(KeyDerivationStrategy.LEGACY)
            master = MasterKey.generate()
            await store.put(
                STORE_KEYS,
                WRAPPED_KEY_ID,
                encode_key_entry(WRAPPED_KEY_ID, crypto.wrap_key(master.material(), legacy_wrapping)),
            )
            assert (await manager.get_master_key()).matches(master)
            assert manager.legacy_unwrap_count == 1
        finally:
            await store.close()

    with caplog.at_level("WARNING", logger="storage.keys"):
        asyncio.run(scenario())
    assert any("AUDIT" in r.getMessage() for r in caplog.records)


def test_fingerprint_drift_raises_without_reset(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await open_vault_store(tmp_path)
        try:
            await _manager(store).initialize_key_system()
            stored = await store.get(STORE_KEYS, WRAPPED_KEY_ID)
            drifted = _manager(store, attrs=DRIFTED)
            with pytest.raises(KeyUnwrapError) as excinfo:
                await drifted.get_master_key()
            assert "reset" in str(excinfo.value).lower()
            assert await store.get(STORE_KEYS, WRAPPED_KEY_ID) == stored
        finally:
            await store.close()

    asyncio.run(scenario())


def test_malformed_wrapped_key_raises(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await open_vault_store(tmp_path)
        try:
            await store.put(
                STORE_KEYS, WRAPPED_KEY_ID, encode_key_entry(WRAPPED_KEY_ID, b"\x01" * 12)
            )
            with pytest.raises(KeyUnwrapError):
                await _manager(store).get_master_key()
            assert await store.get(STORE_KEYS, WRAPPED_KEY_ID) is not None
        finally:
            await store.close()

    asyncio.run(scenario())


def test_corrupt_salt_never_replaced_on_key_load(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await open_vault_store(tmp_path)
        try:
            await _manager(store).initialize_key_system()
            await store.put(STORE_KEYS, DEVICE_SALT_ID, encode_key_entry(DEVICE_SALT_ID, b"bad"))
            stored = await store.get_all(STORE_KEYS)
            with pytest.raises(KeyUnwrapError):
                await _manager(store).get_master_key()
            assert await store.get_all(STORE_KEYS) == stored
        finally:
            await store.close()

    asyncio.run(scenario())


# ── Reset ─────────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("confirmed", [False, None, "yes", 1])
def test_reset_requires_explicit_confirmation(tmp_path: Path, confirmed) -> None:
    async def scenario() -> None:
        store = await open_vault_store(tmp_path)
        try:
            manager = _manager(store)
            await manager.initialize_key_system()
            with pytest.raises(KeyResetNotConfirmedError):
                await manager.reset_key_system(confirmed=confirmed)
            assert await manager.is_key_system_initialized()
        finally:
            await store.close()

    asyncio.run(scenario())


def test_confirmed_reset_creates_a_new_key(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await open_vault_store(tmp_path)
        try:
            manager = _manager(store)
            old = await manager.get_master_key()
            await manager.reset_key_system(confirmed=True)
            assert not await manager.is_key_system_initialized()
            assert await store.get_all(STORE_KEYS) == []
            new = await manager.get_master_key()
            assert not new.matches(old)
        finally:
            await store.close()

    asyncio.run(scenario())


# ── Diagnose ──────────────────────────────────────────────────────────────────

def test_diagnose_fresh_store_is_read_only(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await open_vault_store(tmp_path)
        try:
            report = await _manager(store).diagnose()
            assert report.encryption_supported
            assert not report.wrapped_key_exists
            assert not report.device_salt_exists
            assert not report.can_unwrap
            assert await store.get_all(STORE_KEYS) == []
        finally:
            await store.close()

    asyncio.run(scenario())


def test_diagnose_healthy_and_drifted(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await open_vault_store(tmp_path)
        try:
            await _manager(store).initialize_key_system()
            healthy = await _manager(store).diagnose()
            assert healthy.can_unwrap
            assert healthy.unwrap_strategy == "current"
            drifted_manager = _manager(store, attrs=DRIFTED)
            drifted = await drifted_manager.diagnose()
            assert drifted.wrapped_key_valid
            assert not drifted.can_unwrap
            assert drifted.errors
            assert drifted_manager.legacy_unwrap_count == 0
            assert set(drifted.to_dict()) >= {"can_unwrap", "errors", "device_salt_exists"}
        finally:
            await store.close()

    asyncio.run(scenario())


# ── Recovery ──────────────────────────────────────────────────────────────────

def test_recovery_phrases_are_not_supported(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await open_vault_store(tmp_path)
        try:
            manager = _manager(store)
            with pytest.raises(RecoveryNotSupportedError):
                await manager.export_recovery_phrase()
            with pytest.raises(RecoveryNotSupportedError):
                await manager.import_from_recovery_phrase("alpha beta gamma")
        finally:
            await store.close()

    asyncio.run(scenario())
