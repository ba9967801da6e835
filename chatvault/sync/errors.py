"""Sync-layer exceptions."""

from __future__ import annotations


class SyncError(Exception):
    """Base class for every sync failure."""


class ServerUnavailableError(SyncError):
    """Health probe failed or the endpoint refused the connection."""

    def __init__(self, detail: str = ""):
        self.detail = detail
        message = "Sync server unavailable"
        super().__init__(f"{message}: {detail}" if detail else message)


class SyncHTTPError(SyncError):
    """The sync server answered with a non-2xx status."""

    def __init__(self, status_code: int, message: str = ""):
        self.status_code = status_code
        self.message = message
        super().__init__(f"HTTP {status_code}: {message}" if message else f"HTTP {status_code}")


class DecryptionError(SyncError):
    """Payload could not be decrypted with the given passphrase."""

    def __init__(self):
        super().__init__("wrong passphrase or corrupted data")


class ChecksumMismatchError(SyncError):
    """Decrypted or stored data does not match its recorded checksum."""


class BackupFormatError(SyncError):
    """Backup package is malformed or from an unsupported version."""


class PayloadTooLargeError(SyncError):
    """Local state exceeds the configured upload cap."""

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(
            f"Sync data too large ({size / 1024 / 1024:.2f}MB). "
            f"Maximum allowed is {limit / 1024 / 1024:.0f}MB. Clear some history and retry."
        )
