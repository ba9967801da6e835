"""
Cross-device sync: conflict resolution, encryption, the HTTP client and
the engine that ties them to the message tree.
"""
from chatvault.sync.errors import (
    BackupFormatError,
    ChecksumMismatchError,
    DecryptionError,
    PayloadTooLargeError,
    ServerUnavailableError,
    SyncError,
    SyncHTTPError,
)

__all__ = [
    "BackupFormatError",
    "ChecksumMismatchError",
    "DecryptionError",
    "PayloadTooLargeError",
    "ServerUnavailableError",
    "SyncError",
    "SyncHTTPError",
]
