"""
Passphrase encryption for everything that leaves the device.

Blob layout: base64(salt[16] || iv[12] || AES-256-GCM ciphertext+tag).
The key is PBKDF2-HMAC-SHA256 over the passphrase with the per-blob salt,
so the same value encrypts differently every time.

The sync id is the same KDF with a fixed salt: one passphrase always maps
to the same remote slot, on every device.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from chatvault.sync.errors import DecryptionError

logger = logging.getLogger(__name__)

KDF_ITERATIONS = 100_000
SALT_BYTES = 16
IV_BYTES = 12
KEY_BYTES = 32

SYNC_ID_SALT = b"chatvault-sync-id-v1"


def _derive_key(passphrase: str, salt: bytes, iterations: int = KDF_ITERATIONS) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def encrypt(value: Any, passphrase: str) -> str:
    """JSON-serialize value and encrypt it. Returns a base64 blob."""
    if not passphrase:
        raise ValueError("passphrase is required")
    salt = os.urandom(SALT_BYTES)
    iv = os.urandom(IV_BYTES)
    plaintext = json.dumps(value, separators=(",", ":")).encode("utf-8")
    ciphertext = AESGCM(_derive_key(passphrase, salt)).encrypt(iv, plaintext, None)
    return base64.b64encode(salt + iv + ciphertext).decode("ascii")


def decrypt(blob: str, passphrase: str) -> Any:
    """
    Reverse of encrypt().
    Any failure (bad base64, short blob, wrong key, tampering) is a DecryptionError.
    """
    try:
        raw = base64.b64decode(blob.encode("ascii"), validate=True)
    except (ValueError, AttributeError) as e:
        logger.debug("Blob is not valid base64: %s", e)
        raise DecryptionError() from e
    if len(raw) <= SALT_BYTES + IV_BYTES:
        raise DecryptionError()

    salt = raw[:SALT_BYTES]
    iv = raw[SALT_BYTES:SALT_BYTES + IV_BYTES]
    ciphertext = raw[SALT_BYTES + IV_BYTES:]
    try:
        plaintext = AESGCM(_derive_key(passphrase, salt)).decrypt(iv, ciphertext, None)
        return json.loads(plaintext.decode("utf-8"))
    except (InvalidTag, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecryptionError() from e


def checksum(blob: str | bytes) -> str:
    """SHA-256 hex digest of a blob."""
    if isinstance(blob, str):
        blob = blob.encode("utf-8")
    return hashlib.sha256(blob).hexdigest()


def derive_sync_id(passphrase: str) -> str:
    """Deterministic remote slot id for a passphrase (64 hex chars)."""
    if not passphrase:
        raise ValueError("passphrase is required")
    return _derive_key(passphrase, SYNC_ID_SALT).hex()


def derive_user_id(passphrase: str) -> str:
    """Short, stable user id for the versioned per-type endpoints."""
    return "u_" + derive_sync_id(passphrase)[:32]
