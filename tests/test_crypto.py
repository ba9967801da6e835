"""
Tests for passphrase encryption and sync id derivation.
"""

import base64

import pytest

from chatvault.sync import crypto
from chatvault.sync.errors import DecryptionError


def test_encrypt_decrypt():
    value = {"conversations": [{"id": "c1", "title": "héllo"}], "n": 3}
    blob = crypto.encrypt(value, "correct horse")
    assert crypto.decrypt(blob, "correct horse") == value


def test_same_value_encrypts_differently():
    a = crypto.encrypt({"x": 1}, "pw")
    b = crypto.encrypt({"x": 1}, "pw")
    assert a != b


def test_blob_layout():
    raw = base64.b64decode(crypto.encrypt("x", "pw"))
    # salt + iv + ciphertext with 16-byte GCM tag
    assert len(raw) > crypto.SALT_BYTES + crypto.IV_BYTES + 16


def test_wrong_passphrase():
    blob = crypto.encrypt({"secret": True}, "right")
    with pytest.raises(DecryptionError, match="wrong passphrase or corrupted data"):
        crypto.decrypt(blob, "wrong")


def test_tampered_blob():
    raw = bytearray(base64.b64decode(crypto.encrypt({"a": 1}, "pw")))
    raw[-1] ^= 0x01
    with pytest.raises(DecryptionError):
        crypto.decrypt(base64.b64encode(bytes(raw)).decode(), "pw")


@pytest.mark.parametrize("blob", ["not base64 !!", "", base64.b64encode(b"short").decode()])
def test_garbage_blob(blob):
    with pytest.raises(DecryptionError):
        crypto.decrypt(blob, "pw")


def test_empty_passphrase_rejected():
    with pytest.raises(ValueError):
        crypto.encrypt({}, "")
    with pytest.raises(ValueError):
        crypto.derive_sync_id("")


def test_sync_id_is_deterministic():
    a = crypto.derive_sync_id("shared passphrase")
    assert a == crypto.derive_sync_id("shared passphrase")
    assert a != crypto.derive_sync_id("other passphrase")
    assert len(a) == 64


def test_user_id_derived_from_sync_id():
    user_id = crypto.derive_user_id("pw")
    assert user_id.startswith("u_")
    assert user_id[2:] == crypto.derive_sync_id("pw")[:32]


def test_checksum():
    assert crypto.checksum("abc") == crypto.checksum(b"abc")
    assert crypto.checksum("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
