"""
dietvault – entry point.

Usage
-----
    python main.py              prepare keys and migrate legacy records
    python main.py --diagnose   print a read-only key system report

Or, if installed as a package:
    dietvault
"""

import asyncio
import json
import logging
import sys
from typing import List, Optional

from core.config import Settings
from core.errors import EncryptionSupportError, KeyUnwrapError, MigrationAbortedError
from storage.vault import RecordVault

logger = logging.getLogger("dietvault")


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.numeric_log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # Keep crypto modules quiet below WARNING
    logging.getLogger("core.crypto").setLevel(logging.WARNING)
    logging.getLogger("core.cipher").setLevel(logging.WARNING)
    logging.getLogger("storage.device").setLevel(logging.WARNING)


# ── Bootstrap ─────────────────────────────────────────────────────────────────

def _offer_reset(diagnosis) -> bool:
    """Ask the user, through the repair dialog, whether to reset the keys."""
    try:
        from ui.key_repair_dialog import ask_for_key_reset
    except ImportError:
        logger.error(
            "PyQt6 is not installed; cannot show the repair dialog. "
            "Install the 'gui' extra to reset keys interactively."
        )
        return False
    return ask_for_key_reset(diagnosis)


async def _prepare(vault: RecordVault) -> bool:
    """Make the key system usable. Returns False if the user declined a reset."""
    try:
        await vault.ensure_key_system_ready()
        return True
    except KeyUnwrapError as exc:
        logger.error("%s", exc)
        diagnosis = await vault.diagnose()

    if not _offer_reset(diagnosis):
        logger.info("Key reset declined; leaving stored data untouched.")
        return False
    await vault.reset_key_system(confirmed=True)
    await vault.ensure_key_system_ready()
    logger.info("Key system reset and re-initialised.")
    return True


async def _run(settings: Settings, diagnose_only: bool) -> int:
    vault = await RecordVault.open(settings)
    try:
        if diagnose_only:
            report = await vault.diagnose()
            print(json.dumps(report.to_dict(), indent=2))
            return 0 if report.can_unwrap else 1

        if not await _prepare(vault):
            return 1
        result = await vault.run_migration_if_needed()
        logger.info("Migration result: %s", result.to_dict())
        return 0 if result.errors == 0 else 2
    except EncryptionSupportError as exc:
        logger.error("Encryption is not available on this system: %s", exc)
        return 1
    except MigrationAbortedError as exc:
        logger.error("%s", exc)
        return 1
    finally:
        await vault.close()


# ── Main ──────────────────────────────────────────────────────────────────────

def main(argv: Optional[List[str]] = None) -> None:
    args = sys.argv[1:] if argv is None else argv
    settings = Settings.from_env()
    _configure_logging(settings)
    sys.exit(asyncio.run(_run(settings, diagnose_only="--diagnose" in args)))


if __name__ == "__main__":
    main()
