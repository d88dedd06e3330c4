"""
Field-level record encryption.

A record keeps its non-sensitive fields in clear so it can still be listed
and sorted; the sensitive ones are collected into a payload that is
serialised to JSON and sealed with AES-256-GCM.

Encrypted record layout::

    {
        ...public fields...,
        "services": [{...public service fields...}, ...],
        "encryption": {"version": 1, "algorithm": "AES-GCM", "iv": "<b64>"},
        "encryptedData": "<b64 ciphertext+tag>",
        "checksum": "<sha256 hex of encryptedData>",
    }

The checksum is an early corruption hint only. The GCM tag decides whether
a record is trusted.
"""

import copy
import json
import logging
import warnings
from typing import Any, Dict, List, Tuple

from cryptography.exceptions import InvalidTag

from core import crypto
from core.crypto import MasterKey
from core.errors import ChecksumMismatchWarning, DecryptionAuthError, EncryptionError

logger = logging.getLogger(__name__)

ENCRYPTION_VERSION = 1
ALGORITHM = "AES-GCM"

# Top-level fields sealed inside the payload.
SENSITIVE_FIELDS = (
    "person1",             # driver name
    "person2",             # assistant name
    "vehicleNumber",
    "signatureConductor",  # driver signature (data URL)
    "signatureAjudant",    # assistant signature (data URL)
)

SERVICES_FIELD = "services"

# Per-service fields sealed inside the payload.
SENSITIVE_SERVICE_FIELDS = (
    "serviceNumber",
    "origin",
    "destination",
    "notes",
)

ENVELOPE_FIELDS = ("encryption", "encryptedData", "checksum")

Record = Dict[str, Any]
Payload = Dict[str, Any]


def is_encrypted(record: Any) -> bool:
    """True iff ``record`` carries a well-formed envelope and ciphertext."""
    if not isinstance(record, dict):
        return False
    envelope = record.get("encryption")
    data = record.get("encryptedData")
    return (
        isinstance(envelope, dict)
        and bool(envelope.get("version"))
        and isinstance(envelope.get("iv"), str)
        and bool(envelope.get("iv"))
        and isinstance(data, str)
        and bool(data)
    )


# ── Separate / merge ──────────────────────────────────────────────────────────

def separate(record: Record) -> Tuple[Record, Payload]:
    """
    Split ``record`` into its public fields and its sensitive payload.

    Fields that are absent stay absent on both sides, so
    ``merge(*separate(r)) == r`` holds for every record.
    """
    public: Record = {}
    general: Dict[str, Any] = {}
    for name, value in record.items():
        if name in SENSITIVE_FIELDS:
            general[name] = copy.deepcopy(value)
        else:
            public[name] = copy.deepcopy(value)

    services_data: List[Dict[str, Any]] = []
    services = public.get(SERVICES_FIELD)
    if isinstance(services, list):
        public_services = []
        for service in services:
            if not isinstance(service, dict):
                public_services.append(service)
                services_data.append({})
                continue
            sensitive = {k: v for k, v in service.items() if k in SENSITIVE_SERVICE_FIELDS}
            public_services.append(
                {k: v for k, v in service.items() if k not in SENSITIVE_SERVICE_FIELDS}
            )
            services_data.append(sensitive)
        public[SERVICES_FIELD] = public_services

    return public, {"generalData": general, "servicesData": services_data}


def merge(public: Record, payload: Payload) -> Record:
    """Exact inverse of :func:`separate`."""
    record = copy.deepcopy(public)
    record.update(copy.deepcopy(payload.get("generalData") or {}))

    services = record.get(SERVICES_FIELD)
    services_data = payload.get("servicesData") or []
    if isinstance(services, list):
        merged = []
        for index, service in enumerate(services):
            sensitive = services_data[index] if index < len(services_data) else {}
            if isinstance(service, dict):
                merged.append({**service, **copy.deepcopy(sensitive)})
            else:
                merged.append(service)
        record[SERVICES_FIELD] = merged
    return record


def extract_sensitive_data(record: Record) -> Dict[str, Any]:
    """
    Return the normalised sensitive subset of ``record`` for comparisons.

    Missing values read as empty strings so that a field that was absent
    and one that was empty compare equal.
    """
    services = record.get(SERVICES_FIELD)
    if not isinstance(services, list):
        services = []
    return {
        **{name: record.get(name) or "" for name in SENSITIVE_FIELDS},
        SERVICES_FIELD: [
            {name: (s.get(name) or "") if isinstance(s, dict) else "" for name in SENSITIVE_SERVICE_FIELDS}
            for s in services
        ],
    }


def canonical_json(value: Any) -> str:
    """Deterministic JSON used for structural comparisons and checksums."""
    return json.dumps(value, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


# ── Encrypt / decrypt ─────────────────────────────────────────────────────────

def _seal(payload: Payload, key: MasterKey) -> Tuple[str, str]:
    plaintext = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    nonce = crypto.generate_nonce()
    ciphertext = crypto.encrypt(plaintext, key.material(), nonce)
    return crypto.b64encode(ciphertext), crypto.b64encode(nonce)


def _open(encrypted_data: str, iv: str, key: MasterKey) -> Payload:
    try:
        ciphertext = crypto.b64decode(encrypted_data)
        nonce = crypto.b64decode(iv)
    except (ValueError, TypeError, AttributeError) as exc:
        raise DecryptionAuthError("Encrypted data is corrupted (invalid encoding).") from exc
    if len(nonce) != crypto.NONCE_SIZE or len(ciphertext) < crypto.TAG_SIZE:
        raise DecryptionAuthError("Encrypted data is corrupted (invalid nonce or length).")
    try:
        plaintext = crypto.decrypt(ciphertext, key.material(), nonce)
    except InvalidTag as exc:
        raise DecryptionAuthError(
            "Data is corrupted or was encrypted with a different key."
        ) from exc
    try:
        payload = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise DecryptionAuthError("Decrypted payload is not valid JSON.") from exc
    if not isinstance(payload, dict):
        raise DecryptionAuthError("Decrypted payload has an unexpected shape.")
    return payload


def encrypt_record(record: Record, key: MasterKey) -> Record:
    """
    Return the encrypted form of ``record``.

    Raises:
        EncryptionError: If the record cannot be serialised or sealed.
    """
    if not isinstance(record, dict):
        raise EncryptionError("Only mapping records can be encrypted.")
    if is_encrypted(record):
        raise EncryptionError(f"Record {record.get('id')} is already encrypted.")
    public, payload = separate(record)
    try:
        data, iv = _seal(payload, key)
    except (TypeError, ValueError) as exc:
        raise EncryptionError(f"Encryption failed for record {record.get('id')}: {exc}") from exc

    encrypted = {k: v for k, v in public.items() if k not in ENVELOPE_FIELDS}
    encrypted["encryption"] = {
        "version": ENCRYPTION_VERSION,
        "algorithm": ALGORITHM,
        "iv": iv,
    }
    encrypted["encryptedData"] = data
    encrypted["checksum"] = crypto.sha256_hex(data)
    logger.debug("Record %s encrypted.", record.get("id"))
    return encrypted


def decrypt_record(
    encrypted: Record,
    key: MasterKey,
    warn_on_checksum_mismatch: bool = True,
) -> Record:
    """
    Return the plaintext form of an encrypted record.

    A checksum mismatch is logged and, when ``warn_on_checksum_mismatch`` is
    set, reported as a :class:`ChecksumMismatchWarning`; decryption still
    goes ahead and the GCM tag decides.

    Raises:
        DecryptionAuthError: Wrong key, tampered ciphertext or nonce, or a
            malformed envelope.
    """
    if not is_encrypted(encrypted):
        raise DecryptionAuthError(f"Record {encrypted.get('id')} has no valid encryption envelope.")
    envelope = encrypted["encryption"]
    if envelope.get("algorithm", ALGORITHM) != ALGORITHM:
        raise DecryptionAuthError(f"Unsupported algorithm: {envelope.get('algorithm')!r}")

    stored_checksum = encrypted.get("checksum")
    if stored_checksum:
        current = crypto.sha256_hex(encrypted["encryptedData"])
        if not crypto.constant_time_compare(current, str(stored_checksum)):
            logger.error(
                "Checksum mismatch for record %s; relying on the authentication tag.",
                encrypted.get("id"),
            )
            if warn_on_checksum_mismatch:
                warnings.warn(
                    ChecksumMismatchWarning(
                        f"Record {encrypted.get('id')} may be corrupted: checksum does not match."
                    ),
                    stacklevel=2,
                )

    payload = _open(encrypted["encryptedData"], envelope["iv"], key)
    public = {k: v for k, v in encrypted.items() if k not in ENVELOPE_FIELDS}
    return merge(public, payload)


def validate_encryption(data: Any, key: MasterKey) -> bool:
    """Seal and reopen ``data`` under ``key``; True when it comes back identical."""
    try:
        sealed, iv = _seal(data, key)
        return canonical_json(_open(sealed, iv, key)) == canonical_json(data)
    except (DecryptionAuthError, TypeError, ValueError) as exc:
        logger.error("Encryption self-check failed: %s", exc)
        return False
