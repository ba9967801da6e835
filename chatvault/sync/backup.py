"""
Offline encrypted backup.

File format (JSON):

    {"checksum": "<sha256 hex of payload>", "payload": "<encrypted blob>"}

The payload decrypts to

    {"version": "1.0.0", "exportDate": "...", "appVersion": "...", "data": {...}}

Restore verifies the checksum, decrypts, checks the version, validates the
data shape and then swaps all local entities in one transaction: either
everything is restored or nothing changes.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from chatvault import __version__
from chatvault.storage.models import Conversation, Message, Tombstone
from chatvault.sync import crypto
from chatvault.sync.engine import SETTING_APP_CONFIG
from chatvault.sync.errors import BackupFormatError, ChecksumMismatchError
from chatvault.tree import MessageTree

logger = logging.getLogger(__name__)

BACKUP_FORMAT_VERSION = "1.0.0"
SUPPORTED_VERSIONS = ("1.0.0",)


def collect_data(tree: MessageTree) -> dict:
    return {
        "config": tree.get_setting(SETTING_APP_CONFIG) or {},
        "conversations": tree.export_conversations(),
        "messages": tree.export_messages(),
        "deletedRecords": tree.export_tombstones(),
    }


def data_statistics(data: dict) -> dict:
    return {
        "conversations": len(data.get("conversations") or []),
        "messages": len(data.get("messages") or []),
        "deletedRecords": len(data.get("deletedRecords") or []),
        "totalSize": len(json.dumps(data, ensure_ascii=False).encode("utf-8")),
    }


def validate_data(data) -> list[str]:
    """Return a list of problems; empty means restorable."""
    if not isinstance(data, dict):
        return ["data is not an object"]
    errors = []
    if "config" in data and not isinstance(data["config"], dict):
        errors.append("config must be an object")
    for key in ("conversations", "messages", "deletedRecords"):
        value = data.get(key)
        if value is not None and not isinstance(value, list):
            errors.append(f"{key} must be a list")
    for i, conv in enumerate(data.get("conversations") or []):
        if not isinstance(conv, dict) or not conv.get("id"):
            errors.append(f"conversations[{i}] has no id")
    for i, msg in enumerate(data.get("messages") or []):
        if not isinstance(msg, dict) or not msg.get("id") or not msg.get("conversationId"):
            errors.append(f"messages[{i}] needs id and conversationId")
    return errors


def is_version_compatible(version: str | None) -> bool:
    return version in SUPPORTED_VERSIONS


def export_backup(tree: MessageTree, passphrase: str) -> str:
    """Serialize, encrypt and checksum all local data. Returns file content."""
    data = collect_data(tree)
    package = {
        "version": BACKUP_FORMAT_VERSION,
        "exportDate": datetime.now(timezone.utc).isoformat(),
        "appVersion": __version__,
        "data": data,
    }
    payload = crypto.encrypt(package, passphrase)
    logger.info("Backup exported: %s", data_statistics(data))
    return json.dumps({"checksum": crypto.checksum(payload), "payload": payload})


def import_backup(tree: MessageTree, content: str, passphrase: str) -> dict:
    """
    Restore everything from an export_backup() file.

    Raises ChecksumMismatchError, DecryptionError or BackupFormatError and
    leaves local data untouched on any of them.
    """
    try:
        envelope = json.loads(content)
    except json.JSONDecodeError as e:
        raise BackupFormatError(f"backup is not valid JSON: {e}") from e
    if not isinstance(envelope, dict) or "payload" not in envelope or "checksum" not in envelope:
        raise BackupFormatError("backup is missing checksum or payload")

    if crypto.checksum(envelope["payload"]) != envelope["checksum"]:
        raise ChecksumMismatchError("backup checksum does not match its payload")

    package = crypto.decrypt(envelope["payload"], passphrase)
    if not isinstance(package, dict):
        raise BackupFormatError("backup payload is not an object")
    if not is_version_compatible(package.get("version")):
        raise BackupFormatError(f"unsupported backup version {package.get('version')!r}")

    data = package.get("data")
    errors = validate_data(data)
    if errors:
        raise BackupFormatError("backup validation failed: " + ", ".join(errors))

    conversations = [Conversation.from_dict(c) for c in data.get("conversations") or []]
    messages = [Message.from_dict(m) for m in data.get("messages") or []]
    tombstones = [Tombstone.from_dict(t) for t in data.get("deletedRecords") or []]

    with tree.store.transaction():
        tree.store.replace_all(conversations, messages)
        tree.store.put_tombstones(tombstones)
        if data.get("config"):
            tree.put_setting(SETTING_APP_CONFIG, data["config"])

    stats = data_statistics(data)
    logger.info("Backup restored: %s", stats)
    return {
        "success": True,
        "stats": stats,
        "exportDate": package.get("exportDate"),
        "appVersion": package.get("appVersion"),
    }
