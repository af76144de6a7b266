"""
Vault Crypto Core — Envelope encryption and field-level helpers.

Envelope format (a single opaque string):
    base64( [IV 12B][AES-GCM ciphertext + tag 16B] )

Strings are encrypted as their UTF-8 bytes; every other value is serialized
with orjson first. Decryption attempts a JSON parse and falls back to the raw
string, so envelopes written by older clients (raw strings) still read back.

Security Note:
    Never log plaintext or ciphertext values.
    A fresh random 96-bit IV is drawn for every encryption; the same
    (key, IV) pair is never used twice in practice.
"""
import os
import base64
import binascii
import logging
from dataclasses import dataclass, field
from typing import Any, Optional
from collections.abc import Iterable, Mapping

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..conf import KEY_LENGTH, NONCE_SIZE
from ..exceptions import (
    KeyUnavailable,
    EncryptionFailure,
    DecryptionFailure,
)

logger = logging.getLogger("journal.vault")

TAG_SIZE = 16
_MIN_ENVELOPE = NONCE_SIZE + TAG_SIZE


# ---------------------------------------------------------------------------
# Key import
# ---------------------------------------------------------------------------

def import_key(key: Optional[str]) -> AESGCM:
    """Build an AES-256-GCM cipher from a base64 master key.

    Raises:
        KeyUnavailable: If no key was given.
        ValueError: If the key is not base64 of exactly 32 bytes.
    """
    if not key:
        raise KeyUnavailable("No encryption key available")
    try:
        raw = base64.b64decode(key, validate=True)
    except (binascii.Error, ValueError) as err:
        raise ValueError("Master key is not valid base64") from err
    if len(raw) != KEY_LENGTH:
        raise ValueError(
            f"Master key must decode to exactly {KEY_LENGTH} bytes, got {len(raw)}"
        )
    return AESGCM(raw)


# ---------------------------------------------------------------------------
# Value serialization
# ---------------------------------------------------------------------------

def serialize_value(value: Any) -> bytes:
    """Serialize a plaintext value to bytes.

    Strings are kept verbatim, anything else goes through orjson.
    """
    if isinstance(value, str):
        return value.encode("utf-8")
    return orjson.dumps(value)


def deserialize_value(data: bytes) -> Any:
    """Decode bytes to text and parse JSON if possible, else return the text."""
    text = data.decode("utf-8")
    try:
        return orjson.loads(text)
    except orjson.JSONDecodeError:
        return text


# ---------------------------------------------------------------------------
# Envelope encryption
# ---------------------------------------------------------------------------

def encrypt(plaintext: Any, key: Optional[str]) -> str:
    """Encrypt a value into a base64 envelope.

    Args:
        plaintext: String or JSON-serializable value.
        key: Base64-encoded 256-bit master key.

    Returns:
        base64(IV || ciphertext).

    Raises:
        KeyUnavailable: If key is missing.
        EncryptionFailure: On any serialization or cipher error.
    """
    if not key:
        raise KeyUnavailable("No encryption key available")
    try:
        cipher = import_key(key)
        data = serialize_value(plaintext)
        iv = os.urandom(NONCE_SIZE)
        ct = cipher.encrypt(iv, data, None)
    except Exception as err:
        raise EncryptionFailure(f"Failed to encrypt data: {err}") from err
    return base64.b64encode(iv + ct).decode("ascii")


def decrypt(envelope: str, key: Optional[str]) -> Any:
    """Decrypt a base64 envelope.

    Raises:
        KeyUnavailable: If key is missing.
        DecryptionFailure: On malformed envelope, wrong key or tampering.
    """
    if not key:
        raise KeyUnavailable("No encryption key available")
    try:
        cipher = import_key(key)
        combined = base64.b64decode(envelope, validate=True)
    except (binascii.Error, ValueError, TypeError) as err:
        raise DecryptionFailure(f"Failed to decrypt data: {err}") from err
    if len(combined) < _MIN_ENVELOPE:
        raise DecryptionFailure(
            f"Envelope too short: {len(combined)} bytes (minimum {_MIN_ENVELOPE})"
        )
    iv = combined[:NONCE_SIZE]
    ct = combined[NONCE_SIZE:]
    try:
        data = cipher.decrypt(iv, ct, None)
    except InvalidTag as err:
        raise DecryptionFailure(
            "Failed to decrypt data: authentication tag mismatch"
        ) from err
    try:
        return deserialize_value(data)
    except UnicodeDecodeError as err:
        raise DecryptionFailure(f"Decrypted payload is not UTF-8: {err}") from err


def is_envelope(value: Any) -> bool:
    """Structural check: base64 of at least IV + tag bytes."""
    if not isinstance(value, str) or not value:
        return False
    try:
        raw = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return False
    return len(raw) >= _MIN_ENVELOPE


# ---------------------------------------------------------------------------
# Field-level helpers
# ---------------------------------------------------------------------------

@dataclass
class FieldDecryption:
    """Outcome of decrypting the fields of one record.

    ``record`` is the best-effort merged result: every field that failed
    keeps its original value.
    """
    record: dict
    decrypted: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def encrypt_fields(
    record: Mapping[str, Any],
    fields: Iterable[str],
    key: Optional[str],
) -> dict:
    """Return a copy of record with each present, non-null field encrypted.

    Absent or null fields pass through and are never added.
    """
    encrypted = dict(record)
    for name in fields:
        value = record.get(name)
        if value is not None:
            encrypted[name] = encrypt(value, key)
    return encrypted


def decrypt_fields_detailed(
    record: Mapping[str, Any],
    fields: Iterable[str],
    key: Optional[str],
) -> FieldDecryption:
    """Decrypt the named fields, collecting per-field failures."""
    result = FieldDecryption(record=dict(record))
    for name in fields:
        value = record.get(name)
        if not value or not isinstance(value, str):
            continue
        try:
            result.record[name] = decrypt(value, key)
            result.decrypted.append(name)
        except (KeyUnavailable, DecryptionFailure) as err:
            logger.warning("Failed to decrypt field %s: %s", name, err)
            result.failed[name] = str(err)
    return result


def decrypt_fields(
    record: Mapping[str, Any],
    fields: Iterable[str],
    key: Optional[str],
) -> dict:
    """Return a copy of record with the named fields decrypted.

    A field that cannot be decrypted keeps its original (ciphertext)
    value instead of failing the whole record.
    """
    return decrypt_fields_detailed(record, fields, key).record


def batch_encrypt(
    records: Iterable[Mapping[str, Any]],
    fields: Iterable[str],
    key: Optional[str],
) -> list[dict]:
    fields = list(fields)
    return [encrypt_fields(r, fields, key) for r in records]


def batch_decrypt(
    records: Iterable[Mapping[str, Any]],
    fields: Iterable[str],
    key: Optional[str],
) -> list[dict]:
    fields = list(fields)
    return [decrypt_fields(r, fields, key) for r in records]
