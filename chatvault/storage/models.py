"""
Data models for conversation storage.
These define the shape of data flowing between the tree store, the
embedded database and the sync layer.

Entities serialize to camelCase dicts (to_dict / from_dict) because that
is the shape exchanged with the remote sync service and the shape the
conflict resolver compares.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Union
from uuid import uuid4

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"

STATUS_GENERATING = "generating"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

TABLE_CONVERSATIONS = "conversations"
TABLE_MESSAGES = "messages"


def now_ms() -> int:
    """Wall clock in integer milliseconds."""
    return int(time.time() * 1000)


def _as_ms(value: Any, default: int | None = None) -> int:
    if isinstance(value, bool):
        return default if default is not None else now_ms()
    if isinstance(value, (int, float)):
        return int(value)
    return default if default is not None else now_ms()


# ---------------------------------------------------------------------------
# Compression fold: NoCompression | Compression
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NoCompression:
    """Conversation has never been folded."""

    def to_dict(self) -> None:
        return None


@dataclass
class Compression:
    """The most recent fold of a conversation's history into a summary."""
    summary_id: str
    folded_ids: list[str] = field(default_factory=list)
    summary_text: str = ""
    folded_at: int = 0

    def to_dict(self) -> dict:
        return {
            "summaryMessageId": self.summary_id,
            "compressedMessageIds": list(self.folded_ids),
            "compressedContent": self.summary_text,
            "timestamp": self.folded_at,
        }


CompressionState = Union[NoCompression, Compression]


def compression_from_dict(data: dict | None) -> CompressionState:
    if not data:
        return NoCompression()
    return Compression(
        summary_id=data.get("summaryMessageId") or "",
        folded_ids=list(data.get("compressedMessageIds") or []),
        summary_text=data.get("compressedContent") or "",
        folded_at=_as_ms(data.get("timestamp"), 0),
    )


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

@dataclass
class Conversation:
    """A conversation owns a forest of messages linked by parent_id."""
    id: str = field(default_factory=lambda: uuid4().hex)
    title: str = "New conversation"
    last_updated_at: int = field(default_factory=now_ms)
    is_generating: bool = False
    has_unread: bool = False
    manual_title: bool = False
    local_settings: dict | None = None
    compression: CompressionState = field(default_factory=NoCompression)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "lastUpdatedAt": self.last_updated_at,
            "isGenerating": self.is_generating,
            "hasUnread": self.has_unread,
            "manualTitle": self.manual_title,
            "localSettings": self.local_settings,
            "compressionData": self.compression.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> Conversation:
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or "Untitled"),
            last_updated_at=_as_ms(data.get("lastUpdatedAt")),
            is_generating=bool(data.get("isGenerating", False)),
            has_unread=bool(data.get("hasUnread", False)),
            manual_title=bool(data.get("manualTitle", False)),
            local_settings=data.get("localSettings"),
            compression=compression_from_dict(data.get("compressionData")),
        )


@dataclass
class Message:
    """A single node in a conversation's message tree."""
    id: str = field(default_factory=lambda: uuid4().hex)
    conversation_id: str = ""
    role: str = ROLE_USER
    content: str = ""
    timestamp: int = field(default_factory=now_ms)
    parent_id: str | None = None
    selected_child_id: str | None = None
    is_compressed: bool = False
    is_compression_summary: bool = False
    task_id: str | None = None
    status: str = STATUS_COMPLETED
    updated_at: int = 0
    model: str = ""
    reasoning: str | None = None

    def __post_init__(self):
        if not self.updated_at:
            self.updated_at = self.timestamp

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
            "parentId": self.parent_id,
            "selectedChildId": self.selected_child_id,
            "isCompressed": self.is_compressed,
            "isCompressionSummary": self.is_compression_summary,
            "taskId": self.task_id,
            "status": self.status,
            "updatedAt": self.updated_at,
            "model": self.model,
            "reasoning": self.reasoning,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Message:
        content = data.get("content")
        timestamp = _as_ms(data.get("timestamp"))
        return cls(
            id=str(data["id"]),
            conversation_id=str(data.get("conversationId") or ""),
            role=data.get("role") or ROLE_USER,
            content="" if content is None else content,
            timestamp=timestamp,
            parent_id=data.get("parentId") or None,
            selected_child_id=data.get("selectedChildId") or None,
            is_compressed=bool(data.get("isCompressed", False)),
            is_compression_summary=bool(data.get("isCompressionSummary", False)),
            task_id=data.get("taskId"),
            status=data.get("status") or STATUS_COMPLETED,
            updated_at=_as_ms(data.get("updatedAt"), timestamp),
            model=data.get("model") or "",
            reasoning=data.get("reasoning"),
        )


@dataclass
class Tombstone:
    """Durable marker that an entity was hard-deleted."""
    table: str
    record_id: str
    deleted_at: int = field(default_factory=now_ms)

    def to_dict(self) -> dict:
        return {"table": self.table, "recordId": self.record_id, "deletedAt": self.deleted_at}

    @classmethod
    def from_dict(cls, data: dict) -> Tombstone:
        return cls(
            table=data.get("table") or data.get("tableName") or "",
            record_id=str(data["recordId"]),
            deleted_at=_as_ms(data.get("deletedAt"), 0),
        )


@dataclass
class PathNode:
    """A message on the active path, annotated for branch navigation."""
    message: Message
    sibling_count: int = 1
    sibling_index: int = 1
    siblings: list[str] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.message.id

    def to_dict(self) -> dict:
        data = self.message.to_dict()
        data.update({
            "siblingCount": self.sibling_count,
            "siblingIndex": self.sibling_index,
            "siblings": list(self.siblings),
        })
        return data


def entity_timestamp(data: dict) -> int:
    """Last-modified marker of a serialized entity, used for tombstone checks."""
    for key in ("lastUpdatedAt", "updatedAt", "timestamp"):
        value = data.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value:
            return int(value)
    return 0
