"""Tests for the entry point and the key repair dialog helpers."""

import asyncio
import json
from pathlib import Path

import pytest

import main
from core.config import Settings
from storage.keys import KeyDiagnosis


def test_diagnose_only_prints_report(tmp_path: Path, capsys) -> None:
    code = asyncio.run(main._run(Settings(data_dir=tmp_path), diagnose_only=True))
    report = json.loads(capsys.readouterr().out)
    assert code == 1
    assert report["wrapped_key_exists"] is False
    assert report["encryption_supported"] is True


def test_run_prepares_keys_and_migrates(tmp_path: Path) -> None:
    settings = Settings(data_dir=tmp_path)
    assert asyncio.run(main._run(settings, diagnose_only=False)) == 0
    assert asyncio.run(main._run(settings, diagnose_only=True)) == 0


def test_declined_reset_leaves_keys(tmp_path: Path, monkeypatch) -> None:
    from core.errors import KeyUnwrapError
    from storage.vault import RecordVault

    offered = []

    async def broken(self):
        raise KeyUnwrapError()

    monkeypatch.setattr(RecordVault, "ensure_key_system_ready", broken)
    monkeypatch.setattr(main, "_offer_reset", lambda diagnosis: offered.append(diagnosis) or False)
    assert asyncio.run(main._run(Settings(data_dir=tmp_path), diagnose_only=False)) == 1
    assert isinstance(offered[0], KeyDiagnosis)


def test_format_diagnosis_lists_errors() -> None:
    pytest.importorskip("PyQt6.QtWidgets")
    from ui.key_repair_dialog import format_diagnosis

    text = format_diagnosis(
        KeyDiagnosis(encryption_supported=True, wrapped_key_valid=True, errors=["Key unwrap failed"])
    )
    assert "Encryption supported: yes" in text
    assert "Key can be unlocked: NO" in text
    assert "• Key unwrap failed" in text
