"""
Key repair dialog.

Shown when the stored master key cannot be unwrapped. It explains the
situation, lists the diagnosis, and only allows a reset after the user
types the confirmation word.
"""

from typing import Optional

from PyQt6.QtWidgets import (
    QApplication,
    QDialog,
    QDialogButtonBox,
    QLabel,
    QLineEdit,
    QMessageBox,
    QVBoxLayout,
    QWidget,
)

from storage.keys import KeyDiagnosis

CONFIRMATION_WORD = "RESET"


def _yes_no(value: bool) -> str:
    return "yes" if value else "NO"


def format_diagnosis(diagnosis: KeyDiagnosis) -> str:
    lines = [
        f"Encryption supported: {_yes_no(diagnosis.encryption_supported)}",
        f"Key system initialised: {_yes_no(diagnosis.key_system_initialized)}",
        f"Stored key well-formed: {_yes_no(diagnosis.wrapped_key_valid)}",
        f"Device salt present: {_yes_no(diagnosis.device_salt_exists)}",
        f"Key can be unlocked: {_yes_no(diagnosis.can_unwrap)}",
    ]
    lines.extend(f"• {err}" for err in diagnosis.errors)
    return "\n".join(lines)


class KeyRepairDialog(QDialog):
    """Ask for explicit confirmation before destroying the key system."""

    def __init__(self, diagnosis: KeyDiagnosis, parent: Optional[QWidget] = None) -> None:
        super().__init__(parent)
        self._diagnosis = diagnosis
        self.confirmed = False
        self._setup_ui()

    def _setup_ui(self) -> None:
        self.setWindowTitle("Encryption Key Problem")
        self.setMinimumWidth(440)
        self.setModal(True)

        layout = QVBoxLayout(self)
        layout.setSpacing(14)
        layout.setContentsMargins(28, 28, 28, 28)

        info = QLabel(
            "The encryption key stored on this device could not be unlocked.\n"
            "This can happen after moving to another device or if the data is corrupted.\n\n"
            "Try restarting first. Resetting creates a new key and every "
            "encrypted record becomes permanently unreadable."
        )
        info.setWordWrap(True)
        layout.addWidget(info)

        report = QLabel(format_diagnosis(self._diagnosis))
        report.setWordWrap(True)
        layout.addWidget(report)

        self._edit_confirm = QLineEdit()
        self._edit_confirm.setPlaceholderText(f"Type {CONFIRMATION_WORD} to confirm")
        self._edit_confirm.returnPressed.connect(self._on_accept)
        layout.addWidget(self._edit_confirm)

        btn_box = QDialogButtonBox(
            QDialogButtonBox.StandardButton.Ok
            | QDialogButtonBox.StandardButton.Cancel
        )
        btn_box.button(QDialogButtonBox.StandardButton.Ok).setText("Reset keys")
        btn_box.accepted.connect(self._on_accept)
        btn_box.rejected.connect(self.reject)
        layout.addWidget(btn_box)

    def _on_accept(self) -> None:
        if self._edit_confirm.text().strip() != CONFIRMATION_WORD:
            QMessageBox.warning(
                self, "Not Confirmed", f"Type {CONFIRMATION_WORD} to reset the keys."
            )
            return
        self.confirmed = True
        self.accept()


def ask_for_key_reset(diagnosis: KeyDiagnosis) -> bool:
    """Show the dialog; True only if the user explicitly confirmed the reset."""
    app = QApplication.instance() or QApplication([])
    app.setApplicationName("dietvault")
    dlg = KeyRepairDialog(diagnosis)
    dlg.exec()
    return dlg.confirmed
