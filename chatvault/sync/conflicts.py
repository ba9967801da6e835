"""
Conflict detection and resolution for synced entities.

Pure functions over camelCase entity dicts (Conversation.to_dict(),
Message.to_dict()). Nothing here touches storage; the sync engine applies
whatever these functions return.

The MERGE strategy is a structural merge, not a CRDT: when the same scalar
field differs on both sides, the remote value wins.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

# Timestamps closer than this are treated as concurrent edits.
CONCURRENT_WINDOW_MS = 1000


class ConflictType(str, Enum):
    TIMESTAMP = "timestamp"
    DELETION = "deletion"
    MODIFICATION = "modification"


class ResolutionStrategy(str, Enum):
    LOCAL_WINS = "local_wins"
    REMOTE_WINS = "remote_wins"
    TIMESTAMP = "timestamp"
    MERGE = "merge"
    MANUAL = "manual"

    @classmethod
    def parse(cls, value: str | ResolutionStrategy) -> ResolutionStrategy:
        """Lenient lookup; unknown names fall back to TIMESTAMP."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            logger.warning("Unknown resolution strategy %r, using timestamp", value)
            return cls.TIMESTAMP


@dataclass
class ConflictSide:
    data: dict
    timestamp: int
    id: str

    def to_dict(self) -> dict:
        return {"data": self.data, "timestamp": self.timestamp, "id": self.id}


@dataclass
class Conflict:
    type: ConflictType
    local: ConflictSide
    remote: ConflictSide
    time_diff: int

    @property
    def id(self) -> str:
        return self.local.id

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "local": self.local.to_dict(),
            "remote": self.remote.to_dict(),
            "timeDiff": self.time_diff,
        }


@dataclass
class Resolution:
    id: str
    data: Any
    was_conflict: bool
    strategy: ResolutionStrategy

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "data": self.data,
            "wasConflict": self.was_conflict,
            "strategy": self.strategy.value,
        }


def comparison_timestamp(item: dict) -> int:
    value = item.get("lastUpdatedAt") or item.get("updatedAt") or 0
    return int(value) if isinstance(value, (int, float)) else 0


def _serialize(item: dict) -> str:
    return json.dumps(item, sort_keys=True, separators=(",", ":"), default=str)


def detect_conflict(local: dict | None, remote: dict | None) -> Conflict | None:
    """
    Compare two versions of one entity.

    None when either side is missing, when their timestamps match, or when
    the serialized content is identical.
    """
    if not local or not remote:
        return None

    local_ts = comparison_timestamp(local)
    remote_ts = comparison_timestamp(remote)
    if local_ts == remote_ts:
        return None
    if _serialize(local) == _serialize(remote):
        return None

    diff = abs(local_ts - remote_ts)
    if bool(local.get("deleted")) != bool(remote.get("deleted")):
        kind = ConflictType.DELETION
    elif diff < CONCURRENT_WINDOW_MS:
        kind = ConflictType.TIMESTAMP
    else:
        kind = ConflictType.MODIFICATION

    return Conflict(
        type=kind,
        local=ConflictSide(data=local, timestamp=local_ts, id=local.get("id")),
        remote=ConflictSide(data=remote, timestamp=remote_ts, id=remote.get("id")),
        time_diff=diff,
    )


def detect_conflicts(local_items: list[dict], remote_items: list[dict]) -> list[Conflict]:
    """Pair entities by id and collect every conflict."""
    local_by_id = {item.get("id"): item for item in local_items}
    conflicts = []
    for remote in remote_items:
        conflict = detect_conflict(local_by_id.get(remote.get("id")), remote)
        if conflict is not None:
            conflicts.append(conflict)
    logger.info("Detected %d conflict(s)", len(conflicts))
    return conflicts


def resolve_conflict(
    conflict: Conflict | None,
    strategy: ResolutionStrategy | str = ResolutionStrategy.TIMESTAMP,
) -> Any:
    """
    Pick the surviving data for one conflict.

    MANUAL returns the Conflict itself; callers must hand it to a human
    rather than writing it anywhere.
    """
    if conflict is None:
        return None

    strategy = ResolutionStrategy.parse(strategy)
    if strategy is ResolutionStrategy.LOCAL_WINS:
        return conflict.local.data
    if strategy is ResolutionStrategy.REMOTE_WINS:
        return conflict.remote.data
    if strategy is ResolutionStrategy.MERGE:
        return merge_data(conflict.local.data, conflict.remote.data)
    if strategy is ResolutionStrategy.MANUAL:
        return conflict
    # TIMESTAMP: strictly newer local wins, ties go to remote
    if conflict.local.timestamp > conflict.remote.timestamp:
        return conflict.local.data
    return conflict.remote.data


def resolve_conflicts(
    conflicts: list[Conflict],
    strategy: ResolutionStrategy | str = ResolutionStrategy.TIMESTAMP,
) -> list[Resolution]:
    strategy = ResolutionStrategy.parse(strategy)
    resolved = [
        Resolution(
            id=c.id,
            data=resolve_conflict(c, strategy),
            was_conflict=True,
            strategy=strategy,
        )
        for c in conflicts
    ]
    logger.info("Resolved %d conflict(s) using %s", len(resolved), strategy.value)
    return resolved


def merge_data(local: dict, remote: dict) -> dict:
    """
    Structural merge: keys missing on one side are filled from the other,
    lists are unioned, nested dicts recurse, scalar clashes take remote.
    """
    merged = dict(local)
    for key, remote_value in remote.items():
        if key not in local:
            merged[key] = remote_value
            continue
        local_value = local[key]
        if isinstance(local_value, list) and isinstance(remote_value, list):
            merged[key] = _merge_lists(local_value, remote_value)
        elif isinstance(local_value, dict) and isinstance(remote_value, dict):
            merged[key] = merge_data(local_value, remote_value)
        else:
            merged[key] = remote_value
    return merged


def _merge_lists(first: list, second: list) -> list:
    if first and isinstance(first[0], dict) and "id" in first[0]:
        by_id: dict[Any, Any] = {}
        for item in first + second:
            by_id[item.get("id") if isinstance(item, dict) else item] = item
        return list(by_id.values())

    out: list = []
    seen: set[str] = set()
    for item in first + second:
        key = _serialize(item) if isinstance(item, (dict, list)) else repr(item)
        if key not in seen:
            seen.add(key)
            out.append(item)
    return out


def merge_messages(local_messages: list[dict], remote_messages: list[dict]) -> list[dict]:
    """Union two message lists by id, newest updatedAt wins, ordered by timestamp."""
    by_id: dict[str, dict] = {}
    for msg in local_messages + remote_messages:
        existing = by_id.get(msg["id"])
        if existing is None or _message_version(msg) > _message_version(existing):
            by_id[msg["id"]] = msg
    return sorted(by_id.values(), key=lambda m: m.get("timestamp") or 0)


def _message_version(msg: dict) -> int:
    return int(msg.get("updatedAt") or msg.get("timestamp") or 0)


def needs_merge(local: dict | None, remote: dict | None) -> bool:
    return detect_conflict(local, remote) is not None


def conflict_summary(conflicts: list[Conflict]) -> dict:
    """Counts by type plus the oldest and newest conflicting change."""
    summary: dict = {"total": len(conflicts), "byType": {}, "oldest": None, "newest": None}
    for conflict in conflicts:
        kind = conflict.type.value
        summary["byType"][kind] = summary["byType"].get(kind, 0) + 1
        stamp = max(conflict.local.timestamp, conflict.remote.timestamp)
        if summary["newest"] is None or stamp > summary["newest"]["timestamp"]:
            summary["newest"] = {"id": conflict.id, "type": kind, "timestamp": stamp}
        if summary["oldest"] is None or stamp < summary["oldest"]["timestamp"]:
            summary["oldest"] = {"id": conflict.id, "type": kind, "timestamp": stamp}
    return summary
