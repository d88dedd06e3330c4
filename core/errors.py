"""
Exception taxonomy for dietvault.

Every error raised on purpose by the vault derives from :class:`VaultError`
so callers can separate them from programming errors. The checksum warning
is a :class:`UserWarning` subclass and goes through :mod:`warnings`.
"""

from typing import Optional


class VaultError(Exception):
    """Base class for all dietvault errors."""


class EncryptionSupportError(VaultError):
    """The environment lacks a required cryptographic or storage capability."""


class KeyUnwrapError(VaultError):
    """The wrapped master key cannot be unwrapped with any known strategy."""

    GUIDANCE = (
        "The stored master key could not be unlocked on this device. "
        "Restart the application; if the problem persists, an explicit, "
        "confirmed key reset is required and existing encrypted records "
        "will become unreadable."
    )

    def __init__(self, message: str = "Key unwrap failed") -> None:
        super().__init__(f"{message}. {self.GUIDANCE}")


class KeyResetNotConfirmedError(VaultError):
    """A destructive key reset was requested without confirmation."""


class EncryptionError(VaultError):
    """A record could not be encrypted; nothing was written."""


class DecryptionAuthError(VaultError):
    """Authenticated decryption failed: wrong key or corrupted ciphertext."""


class ChecksumMismatchWarning(UserWarning):
    """Stored checksum does not match the ciphertext. Advisory only."""


class StorageError(VaultError):
    """The persistent store rejected an operation."""


class QuotaExceededError(StorageError):
    """A write was rejected because the store ran out of capacity."""


class BackupIntegrityError(VaultError):
    """A backup is malformed or its checksum does not validate."""


class MigrationAbortedError(VaultError):
    """Migration stopped before touching any record (e.g. no safety backup)."""


class MigrationItemError(VaultError):
    """A single record could not be migrated after exhausting its attempts."""

    def __init__(self, record_id: Optional[str], message: str, attempts: int) -> None:
        super().__init__(f"Record {record_id}: {message} (after {attempts} attempt(s))")
        self.record_id = record_id
        self.message = message
        self.attempts = attempts


class RecoveryNotSupportedError(VaultError):
    """Recovery phrases are reserved surface and not available."""
