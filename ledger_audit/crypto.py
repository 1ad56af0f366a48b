"""Symmetric encryption and token helpers for secrets stored at rest."""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import os
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

_IV_LENGTH = 16
_KEY_ENV = "LEDGER_AUDIT_ENCRYPTION_KEY"


class EncryptionKeyError(RuntimeError):
    """Raised when no usable encryption key is configured."""


class DecryptionError(ValueError):
    """Raised when ciphertext is malformed or fails authentication."""


def _load_key(key: Optional[str]) -> bytes:
    raw = key if key is not None else os.getenv(_KEY_ENV)
    if not raw:
        raise EncryptionKeyError(f"{_KEY_ENV} environment variable is not set")
    try:
        decoded = bytes.fromhex(raw)
    except ValueError as exc:
        raise EncryptionKeyError("Encryption key must be a hex string") from exc
    if len(decoded) != 32:
        raise EncryptionKeyError("Encryption key must be 32 bytes (64 hex characters)")
    return decoded


def encrypt(plaintext: str, *, key: Optional[str] = None) -> str:
    """Encrypt ``plaintext`` with AES-256-GCM.

    The result is base64 of a JSON document holding hex ``ciphertext``,
    ``iv`` and ``authTag`` fields.
    """
    cipher = AESGCM(_load_key(key))
    iv = secrets.token_bytes(_IV_LENGTH)
    sealed = cipher.encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-16], sealed[-16:]
    document = {"ciphertext": ciphertext.hex(), "iv": iv.hex(), "authTag": tag.hex()}
    return base64.b64encode(json.dumps(document).encode("utf-8")).decode("ascii")


def decrypt(blob: str, *, key: Optional[str] = None) -> str:
    cipher = AESGCM(_load_key(key))
    try:
        document = json.loads(base64.b64decode(blob, validate=True).decode("utf-8"))
        ciphertext = bytes.fromhex(document["ciphertext"])
        iv = bytes.fromhex(document["iv"])
        tag = bytes.fromhex(document["authTag"])
    except (binascii.Error, UnicodeDecodeError, ValueError, KeyError, TypeError) as exc:
        raise DecryptionError("Invalid encrypted data format") from exc

    try:
        plaintext = cipher.decrypt(iv, ciphertext + tag, None)
    except InvalidTag as exc:
        raise DecryptionError("Encrypted data failed authentication") from exc
    return plaintext.decode("utf-8")


def hash_sha256(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def generate_secure_token(length: int = 32) -> str:
    """Return ``length`` random bytes as a hex string."""

    return secrets.token_hex(length)


def constant_time_compare(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


__all__ = [
    "DecryptionError",
    "EncryptionKeyError",
    "constant_time_compare",
    "decrypt",
    "encrypt",
    "generate_secure_token",
    "hash_sha256",
]
