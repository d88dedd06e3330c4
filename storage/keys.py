"""
Master key lifecycle.

The device has exactly one master key. It is generated on first run,
wrapped (AES-KW) under a wrapping key derived from the device salt and
fingerprint, and only the wrapped blob is persisted. Unwrapping tries the
derivation strategies in :data:`~core.fingerprint.UNWRAP_ORDER`.

An unwrap failure is never fixed by resetting automatically: that would
destroy data that might still be recoverable. Callers get a
:class:`~core.errors.KeyUnwrapError` and must ask the user for an explicit,
confirmed :meth:`MasterKeyManager.reset_key_system`.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Awaitable, Callable, List, Optional, Tuple

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.keywrap import InvalidUnwrap

from core import crypto
from core.crypto import MasterKey
from core.errors import (
    EncryptionSupportError,
    KeyResetNotConfirmedError,
    KeyUnwrapError,
    RecoveryNotSupportedError,
    StorageError,
)
from core.fingerprint import UNWRAP_ORDER, KeyDerivationStrategy
from storage.device import (
    WRAPPED_KEY_ID,
    DeviceKeyDeriver,
    decode_key_entry,
    encode_key_entry,
)
from storage.kvstore import READWRITE, KeyValueStore
from storage.schema import STORE_KEYS

logger = logging.getLogger(__name__)

KEY_CACHE_TTL = 300.0  # seconds

# Recovery phrases are reserved surface; both operations below always fail.
RECOVERY_PHRASE_ENABLED = False


# ── Key cache ─────────────────────────────────────────────────────────────────

class KeyCache:
    """
    Expiring in-memory holder for the unwrapped master key.

    Purely a performance cache: the wrapped key stays persisted regardless,
    so dropping the entry only costs one re-derivation. The expiry is
    checked on every access; when an event loop is running a timer also
    clears the entry once the TTL elapses.
    """

    def __init__(self, ttl: float = KEY_CACHE_TTL, clock: Callable[[], float] = time.monotonic) -> None:
        if ttl <= 0:
            raise ValueError("ttl must be positive.")
        self._ttl = ttl
        self._clock = clock
        self._key: Optional[MasterKey] = None
        self._expires_at = 0.0
        self._timer: Optional[asyncio.TimerHandle] = None
        self._lock: Optional[asyncio.Lock] = None

    @property
    def ttl(self) -> float:
        return self._ttl

    @property
    def expires_at(self) -> float:
        return self._expires_at

    def get(self) -> Optional[MasterKey]:
        """Return the cached key, or None if absent or expired."""
        if self._key is not None and self._clock() >= self._expires_at:
            logger.debug("Cached master key expired.")
            self.clear()
        return self._key

    def put(self, key: MasterKey) -> None:
        self._cancel_timer()
        self._key = key
        self._expires_at = self._clock() + self._ttl
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._timer = loop.call_later(self._ttl, self._on_timer)

    async def get_or_derive(self, loader: Callable[[], Awaitable[MasterKey]]) -> MasterKey:
        """Return the cached key, or await ``loader`` once and cache its result."""
        key = self.get()
        if key is not None:
            return key
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            key = self.get()
            if key is None:
                key = await loader()
                self.put(key)
            return key

    def clear(self) -> None:
        """Forget the cached key."""
        self._cancel_timer()
        self._key = None
        self._expires_at = 0.0

    def drop(self) -> None:
        """Clear the entry and release the lock; the cache stays usable."""
        self.clear()
        self._lock = None

    def _on_timer(self) -> None:
        self._timer = None
        if self._key is not None:
            logger.debug("Master key cache TTL elapsed; entry cleared.")
        self._key = None
        self._expires_at = 0.0

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


# ── Diagnostics ───────────────────────────────────────────────────────────────

@dataclass
class KeyDiagnosis:
    """Read-only snapshot of the key system, for support tooling."""

    encryption_supported: bool = False
    key_system_initialized: bool = False
    wrapped_key_exists: bool = False
    wrapped_key_valid: bool = False
    device_salt_exists: bool = False
    can_unwrap: bool = False
    unwrap_strategy: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def check_encryption_support() -> None:
    """
    Probe the cryptographic backend.

    Raises:
        EncryptionSupportError: If AES-GCM or AES key wrap is unavailable.
    """
    try:
        probe = MasterKey.generate()
        nonce = crypto.generate_nonce()
        sealed = crypto.encrypt(b"probe", probe.material(), nonce)
        if crypto.decrypt(sealed, probe.material(), nonce) != b"probe":
            raise EncryptionSupportError("AES-GCM self-check returned wrong plaintext.")
        wrapping = crypto.generate_key()
        if crypto.unwrap_key(crypto.wrap_key(probe.material(), wrapping), wrapping) != probe.material():
            raise EncryptionSupportError("AES key wrap self-check returned wrong key.")
    except (UnsupportedAlgorithm, ValueError) as exc:
        raise EncryptionSupportError(f"Required cryptography is not available: {exc}") from exc


# ── Manager ───────────────────────────────────────────────────────────────────

class MasterKeyManager:
    """Owns the device master key: creation, unwrap, cache, reset."""

    def __init__(
        self,
        store: KeyValueStore,
        deriver: Optional[DeviceKeyDeriver] = None,
        cache: Optional[KeyCache] = None,
        strategies: Tuple[KeyDerivationStrategy, ...] = UNWRAP_ORDER,
    ) -> None:
        self._store = store
        self._deriver = deriver or DeviceKeyDeriver(store)
        self._cache = cache or KeyCache()
        self._strategies = tuple(strategies)
        self.legacy_unwrap_count = 0

    @property
    def cache(self) -> KeyCache:
        return self._cache

    @property
    def deriver(self) -> DeviceKeyDeriver:
        return self._deriver

    # ── Persisted blob ───────────────────────────────────────────────────

    async def _load_wrapped(self) -> Tuple[bool, Optional[bytes]]:
        """Return (exists, bytes-or-None-if-malformed)."""
        entry = await self._store.get(STORE_KEYS, WRAPPED_KEY_ID)
        if entry is None:
            return False, None
        wrapped = decode_key_entry(entry)
        if wrapped is None or len(wrapped) != crypto.WRAPPED_KEY_SIZE:
            return True, None
        return True, wrapped

    async def _wipe_wrapped(self) -> None:
        await self._store.delete(STORE_KEYS, WRAPPED_KEY_ID)

    # ── Unwrap with fallback ────────────────────────────────────────────

    async def _unwrap_with_fallback(
        self, wrapped: bytes, create_salt: bool = True, audit: bool = True
    ) -> Tuple[MasterKey, KeyDerivationStrategy]:
        failures = []
        for strategy in self._strategies:
            try:
                wrapping_key = await self._deriver.derive_wrapping_key(strategy, create_salt=create_salt)
                material = crypto.unwrap_key(wrapped, wrapping_key)
                key = MasterKey(material)
            except (InvalidUnwrap, ValueError, EncryptionSupportError) as exc:
                failures.append(f"{strategy.value}: {type(exc).__name__}")
                logger.debug("Unwrap with %s strategy failed: %s", strategy.value, type(exc).__name__)
                continue
            if strategy is KeyDerivationStrategy.LEGACY and audit:
                self.legacy_unwrap_count += 1
                logger.warning(
                    "AUDIT: master key unwrapped with the legacy device strategy "
                    "(count=%d); the device fingerprint may have drifted.",
                    self.legacy_unwrap_count,
                )
            return key, strategy
        raise KeyUnwrapError(f"Key unwrap failed ({'; '.join(failures)})")

    # ── Public API ───────────────────────────────────────────────────────

    async def is_key_system_initialized(self) -> bool:
        exists, _ = await self._load_wrapped()
        return exists

    async def initialize_key_system(self) -> None:
        """
        Make sure a usable wrapped master key is persisted.

        An existing key is health-checked by unwrapping it. If that fails the
        stored blob is treated as corrupt, wiped, and a new key is created.
        A freshly written key is read back and unwrapped before returning.

        Raises:
            EncryptionSupportError: If the crypto backend is missing or the
                new key fails its self-test (it is wiped in that case).
        """
        check_encryption_support()
        exists, wrapped = await self._load_wrapped()
        if exists:
            if wrapped is not None:
                try:
                    await self._unwrap_with_fallback(wrapped)
                    logger.debug("Key system already initialised.")
                    return
                except KeyUnwrapError:
                    pass
            logger.error("Stored master key is corrupt; replacing it with a new key.")
            self._cache.clear()
            await self._wipe_wrapped()

        logger.info("Creating a new master key for this device.")
        master = MasterKey.generate()
        wrapping_key = await self._deriver.derive_wrapping_key(KeyDerivationStrategy.CURRENT)
        blob = crypto.wrap_key(master.material(), wrapping_key)
        await self._store.put(STORE_KEYS, WRAPPED_KEY_ID, encode_key_entry(WRAPPED_KEY_ID, blob))

        # Self-test what was actually persisted.
        try:
            exists, written = await self._load_wrapped()
            if written is None:
                raise KeyUnwrapError("Wrapped key did not persist correctly")
            check_key, _ = await self._unwrap_with_fallback(written)
            if not check_key.matches(master):
                raise KeyUnwrapError("Unwrapped key differs from the generated key")
        except (KeyUnwrapError, StorageError) as exc:
            logger.error("New master key failed its self-test; wiping it.")
            await self._wipe_wrapped()
            raise EncryptionSupportError(f"Key system self-test failed: {exc}") from exc
        logger.info("Key system initialised; data protection enabled.")

    async def _load_master_key(self) -> MasterKey:
        exists, wrapped = await self._load_wrapped()
        if not exists:
            logger.warning("Master key not found; initialising key system.")
            await self.initialize_key_system()
            exists, wrapped = await self._load_wrapped()
            if not exists:
                raise EncryptionSupportError("Failed to initialise the key system.")
        if wrapped is None:
            raise KeyUnwrapError("Stored master key is malformed")
        key, _ = await self._unwrap_with_fallback(wrapped)
        return key

    async def get_master_key(self) -> MasterKey:
        """
        Return the master key, from cache when possible.

        Raises:
            KeyUnwrapError: The stored key cannot be unwrapped on this device.
            EncryptionSupportError: No key exists and one cannot be created.
        """
        return await self._cache.get_or_derive(self._load_master_key)

    async def reset_key_system(self, confirmed: bool = False) -> None:
        """
        Destroy all key material (salt, wrapped key) and the cache.

        Irreversible: every record encrypted under the old key becomes
        permanently unreadable.

        Raises:
            KeyResetNotConfirmedError: Unless ``confirmed`` is True.
        """
        if confirmed is not True:
            raise KeyResetNotConfirmedError(
                "Resetting the key system destroys all encrypted records; "
                "pass confirmed=True to proceed."
            )
        logger.warning("RESETTING KEY SYSTEM - encrypted data will be lost!")
        self._cache.drop()
        async with self._store.transaction([STORE_KEYS], READWRITE) as txn:
            await txn.store(STORE_KEYS).clear()
        logger.info("Key system reset.")

    async def diagnose(self) -> KeyDiagnosis:
        """Report the state of the key system without changing it. Never raises."""
        report = KeyDiagnosis()
        try:
            check_encryption_support()
            report.encryption_supported = True
        except EncryptionSupportError as exc:
            report.errors.append(str(exc))
        try:
            exists, wrapped = await self._load_wrapped()
            report.wrapped_key_exists = exists
            report.key_system_initialized = exists
            report.wrapped_key_valid = wrapped is not None
            report.device_salt_exists = await self._deriver.has_device_salt()
            if exists and wrapped is None:
                report.errors.append("Wrapped key has an invalid format.")
            if wrapped is not None and report.device_salt_exists:
                _, strategy = await self._unwrap_with_fallback(
                    wrapped, create_salt=False, audit=False
                )
                report.can_unwrap = True
                report.unwrap_strategy = strategy.value
            elif wrapped is not None:
                report.errors.append("Device salt is missing; the key cannot be unwrapped.")
        except Exception as exc:  # diagnostics must never raise
            report.errors.append(f"{type(exc).__name__}: {exc}")
        return report

    async def export_recovery_phrase(self) -> str:
        raise RecoveryNotSupportedError("Recovery phrases are not supported.")

    async def import_from_recovery_phrase(self, phrase: str) -> MasterKey:
        raise RecoveryNotSupportedError("Recovery phrases are not supported.")
