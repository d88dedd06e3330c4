"""
Device fingerprint and wrapping-key passphrases.

The fingerprint is built only from attributes that stay the same for the
lifetime of an installation: operating system, machine architecture,
locale, logical core count, standard-time timezone offset and a generic
client identifier. Nothing that depends on terminal or window size is
included, and the offset ignores daylight saving time.
"""

import locale
import os
import platform
import time
from enum import Enum
from typing import Callable, Dict

from core.crypto import sha256_hex

FINGERPRINT_VERSION = "dietvault-device-v2"

# Only kept to unwrap keys created before fingerprints existed.
LEGACY_PASSPHRASE = "dietvault-device-key-v1"

CLIENT_ID = "dietvault-client"


class KeyDerivationStrategy(str, Enum):
    """Ways of building the wrapping-key passphrase."""

    CURRENT = "current"
    LEGACY = "legacy"


# Order in which strategies are tried when unwrapping; first success wins.
UNWRAP_ORDER = (KeyDerivationStrategy.CURRENT, KeyDerivationStrategy.LEGACY)


def collect_device_attributes() -> Dict[str, str]:
    """Return the stable environment attributes that make up the fingerprint."""
    lang = locale.getlocale()[0] or os.environ.get("LANG", "") or "C"
    return {
        "platform": f"{platform.system()}/{platform.machine()}",
        "locale": lang,
        "cores": str(os.cpu_count() or 0),
        "tz_offset": str(time.timezone // 60),
        "client": f"{CLIENT_ID}/{platform.python_implementation()}",
    }


def device_fingerprint(attributes: Dict[str, str]) -> str:
    """Hash ``attributes`` into a hex fingerprint (order-independent)."""
    parts = [f"{name}={attributes[name]}" for name in sorted(attributes)]
    return sha256_hex("|".join(parts))


def build_passphrase(
    strategy: KeyDerivationStrategy,
    attributes: Callable[[], Dict[str, str]] = collect_device_attributes,
) -> str:
    """Return the PBKDF2 passphrase for ``strategy``."""
    if strategy is KeyDerivationStrategy.CURRENT:
        return f"{FINGERPRINT_VERSION}:{device_fingerprint(attributes())}"
    if strategy is KeyDerivationStrategy.LEGACY:
        return LEGACY_PASSPHRASE
    raise ValueError(f"Unknown key derivation strategy: {strategy!r}")
