"""
Message tree: branching conversation history on top of the SQLite store.

Messages form a forest per conversation through parent_id links. A node
may have many children (regenerations, edits), and its selected_child_id
picks the one that is "active". Following those pointers from the first
root gives the active path: the single linear conversation shown to the
user.

Structural damage (dangling parent ids, stale selected_child_id, cycles)
never raises here. The walker stops, ignores or falls back, and logs.

Compression folds a run of messages into one synthetic summary node.
The folded originals are only flagged, never deleted.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Callable

from chatvault.storage.models import (
    ROLE_ASSISTANT,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_GENERATING,
    TABLE_CONVERSATIONS,
    TABLE_MESSAGES,
    Compression,
    Conversation,
    Message,
    NoCompression,
    PathNode,
    Tombstone,
    now_ms,
)
from chatvault.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)

# Hard ceiling on walk steps; guards against corrupted pointer chains.
MAX_WALK_STEPS = 5000

# getActivePath keeps only the newest MAX_PATH_NODES nodes. This is a lossy
# cut to bound rendering cost, not a pagination cursor: older nodes are
# simply not returned.
MAX_PATH_NODES = 100

_MESSAGE_FIELDS = {
    "role", "content", "status", "task_id", "model", "reasoning",
    "is_compressed", "selected_child_id",
}


class _TreeIndex:
    """Arena view of one conversation: id → node and parent → children."""

    def __init__(self, messages: list[Message]):
        self.messages = messages
        self.by_id: dict[str, Message] = {m.id: m for m in messages}
        self.children: dict[str | None, list[Message]] = defaultdict(list)
        for m in messages:
            parent = m.parent_id
            if parent is not None and parent not in self.by_id:
                logger.warning(
                    "Message %s references missing parent %s; treating as broken link",
                    m.id, parent,
                )
            self.children[parent].append(m)
        for kids in self.children.values():
            kids.sort(key=lambda m: m.timestamp)

    @property
    def roots(self) -> list[Message]:
        return self.children.get(None, [])

    def next_child(self, node: Message) -> Message | None:
        kids = self.children.get(node.id)
        if not kids:
            return None
        chosen = self.by_id.get(node.selected_child_id) if node.selected_child_id else None
        if chosen is None or chosen.parent_id != node.id:
            if node.selected_child_id:
                logger.warning(
                    "Message %s selects %s which is not its child; using most recent child",
                    node.id, node.selected_child_id,
                )
            chosen = kids[-1]
        return chosen


class MessageTree:
    """
    Owns Conversation and Message entities.

    All reads and writes go through the injected SQLiteStore, so the sync
    layer (which receives this object) cannot bypass the tree invariants.
    """

    def __init__(self, store: SQLiteStore):
        self.store = store

    # ─ Conversations ──────────────────────────────────────────────────────

    def create_conversation(
        self,
        title: str | None = None,
        local_settings: dict | None = None,
        conversation_id: str | None = None,
    ) -> Conversation:
        conv = Conversation(title=title or "New conversation", local_settings=local_settings)
        if conversation_id:
            conv.id = conversation_id
        self.store.put_conversation(conv)
        logger.debug("Created conversation %s", conv.id)
        return conv

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        return self.store.get_conversation(conversation_id)

    def list_conversations(self) -> list[Conversation]:
        return self.store.list_conversations()

    def _touch(self, conversation_id: str, **updates) -> Conversation | None:
        """Apply field updates to a conversation and bump lastUpdatedAt."""
        conv = self.store.get_conversation(conversation_id)
        if conv is None:
            return None
        for key, value in updates.items():
            setattr(conv, key, value)
        conv.last_updated_at = max(now_ms(), conv.last_updated_at + 1)
        self.store.put_conversation(conv)
        return conv

    def update_title(self, conversation_id: str, title: str) -> bool:
        """User-set title; marks it manual so auto-naming leaves it alone."""
        if not title:
            return False
        return self._touch(conversation_id, title=title, manual_title=True) is not None

    def get_conversation_settings(self, conversation_id: str) -> dict | None:
        conv = self.store.get_conversation(conversation_id)
        return conv.local_settings if conv else None

    def update_conversation_settings(self, conversation_id: str, settings: dict) -> bool:
        return self._touch(conversation_id, local_settings=settings) is not None

    def reset_conversation_settings(self, conversation_id: str) -> bool:
        return self._touch(conversation_id, local_settings=None) is not None

    def _set_flag(self, conversation_id: str, **flags) -> bool:
        conv = self.store.get_conversation(conversation_id)
        if conv is None:
            return False
        for key, value in flags.items():
            setattr(conv, key, value)
        self.store.put_conversation(conv)
        return True

    def mark_read(self, conversation_id: str) -> bool:
        return self._set_flag(conversation_id, has_unread=False)

    def mark_unread(self, conversation_id: str) -> bool:
        return self._set_flag(conversation_id, has_unread=True)

    def set_generating(self, conversation_id: str, is_generating: bool) -> bool:
        return self._set_flag(conversation_id, is_generating=is_generating)

    def delete_conversation(self, conversation_id: str) -> None:
        """Remove a conversation and all of its messages as one unit."""
        self.delete_conversations([conversation_id])

    def delete_conversations(self, conversation_ids: list[str]) -> None:
        removed = self.store.delete_conversations(list(conversation_ids))
        logger.info("Deleted %d conversation(s), %d message(s)", len(conversation_ids), removed)

    def clear_all_history(self) -> None:
        ids = [c.id for c in self.store.list_conversations()]
        self.delete_conversations(ids)

    def cleanup_empty_conversation(self, conversation_id: str) -> bool:
        """Drop a conversation that never received a message."""
        conv = self.store.get_conversation(conversation_id)
        if conv is None or self.store.count_messages(conversation_id) > 0:
            return False
        self.store.delete_conversations([conversation_id], tombstone=False)
        logger.info("Cleaned up empty conversation %s", conversation_id)
        return True

    # ─ Traversal ──────────────────────────────────────────────────────────

    def _index(self, conversation_id: str) -> _TreeIndex:
        return _TreeIndex(self.store.list_messages(conversation_id))

    def get_active_path(self, conversation_id: str) -> list[PathNode]:
        """
        Walk the active branch from the first root to a leaf.

        Each node carries sibling_count, 1-based sibling_index and the
        sibling id list for "branch 2/3" navigation. At most the last
        MAX_PATH_NODES nodes are returned (lossy truncation).
        """
        index = self._index(conversation_id)
        if not index.messages:
            return []

        roots = index.roots
        if not roots:
            # Every node has a dangling parent; start from the oldest one.
            logger.warning("Conversation %s has no root message", conversation_id)
            current: Message | None = index.messages[0]
        else:
            current = roots[0]

        path: list[PathNode] = []
        visited: set[str] = set()
        steps = 0
        while current is not None:
            if current.id in visited:
                logger.warning(
                    "Cycle detected at message %s in conversation %s", current.id, conversation_id
                )
                break
            if steps >= MAX_WALK_STEPS:
                logger.warning(
                    "Active path walk hit %d steps in conversation %s", MAX_WALK_STEPS, conversation_id
                )
                break
            visited.add(current.id)
            steps += 1

            siblings = index.children.get(current.parent_id, [current])
            sibling_ids = [s.id for s in siblings]
            position = sibling_ids.index(current.id) + 1 if current.id in sibling_ids else 1
            path.append(PathNode(
                message=current,
                sibling_count=len(siblings),
                sibling_index=position,
                siblings=sibling_ids,
            ))
            current = index.next_child(current)

        if len(path) > MAX_PATH_NODES:
            return path[-MAX_PATH_NODES:]
        return path

    def get_active_leaf(self, conversation_id: str) -> Message | None:
        path = self.get_active_path(conversation_id)
        return path[-1].message if path else None

    # ─ Mutations ──────────────────────────────────────────────────────────

    def add_message(
        self,
        payload: dict,
        conversation_id: str,
        parent_id: str | None = None,
    ) -> str:
        """
        Append a message and make it the active branch.

        With no parent_id the message extends the current active leaf (or
        becomes the root of an empty conversation). The parent's
        selected_child_id is pointed at the new message.
        """
        conv = self.store.get_conversation(conversation_id)
        if conv is None:
            conv = self.create_conversation(conversation_id=conversation_id)

        if parent_id is None:
            leaf = self.get_active_leaf(conversation_id)
            parent_id = leaf.id if leaf else None

        existing = self.store.list_messages(conversation_id)
        newest = max((m.timestamp for m in existing), default=0)
        fields = {k: v for k, v in payload.items() if k in _MESSAGE_FIELDS}
        fields.setdefault("status", STATUS_COMPLETED)
        msg = Message(
            conversation_id=conversation_id,
            parent_id=parent_id,
            timestamp=max(now_ms(), newest + 1),
            **fields,
        )

        with self.store.transaction():
            self.store.put_message(msg)
            if parent_id is not None:
                parent = self.store.get_message(parent_id)
                if parent is None or parent.conversation_id != conversation_id:
                    logger.warning(
                        "Appended message %s under unknown parent %s", msg.id, parent_id
                    )
                else:
                    parent.selected_child_id = msg.id
                    parent.updated_at = now_ms()
                    self.store.put_message(parent)
            self._touch(conversation_id)
        return msg.id

    def switch_branch(self, message_id: str, target_sibling_id: str) -> bool:
        """Point message_id's parent at target_sibling_id. No-op for roots."""
        msg = self.store.get_message(message_id)
        if msg is None or msg.parent_id is None:
            return False
        parent = self.store.get_message(msg.parent_id)
        if parent is None:
            return False
        if parent.selected_child_id == target_sibling_id:
            return True
        parent.selected_child_id = target_sibling_id
        parent.updated_at = now_ms()
        with self.store.transaction():
            self.store.put_message(parent)
            self._touch(msg.conversation_id)
        return True

    def update_message(self, message_id: str, **fields) -> bool:
        """In-place field update (content, status, reasoning, ...)."""
        msg = self.store.get_message(message_id)
        if msg is None:
            return False
        for key, value in fields.items():
            if key not in _MESSAGE_FIELDS:
                raise TypeError(f"update_message() got an unexpected field '{key}'")
            setattr(msg, key, value)
        msg.updated_at = max(now_ms(), msg.updated_at + 1)
        with self.store.transaction():
            self.store.put_message(msg)
            self._touch(msg.conversation_id)
        return True

    def edit_message(self, message_id: str, content: str) -> bool:
        """
        Replace content in place and refresh the timestamp. Tree shape is
        unchanged. Summaries are read-only.
        """
        msg = self.store.get_message(message_id)
        if msg is None:
            return False
        if msg.is_compression_summary:
            logger.warning("Refusing to edit compression summary %s", message_id)
            return False

        newest = max(
            (m.timestamp for m in self.store.list_messages(msg.conversation_id)), default=0
        )
        msg.content = content
        msg.timestamp = max(now_ms(), newest + 1)
        msg.updated_at = max(now_ms(), msg.updated_at + 1)
        with self.store.transaction():
            self.store.put_message(msg)
            self._touch(msg.conversation_id)
        return True

    def delete_message(self, message_id: str) -> bool:
        """
        Remove one node.

        Children are reparented to the deleted node's parent so the
        sub-branch stays reachable. If the parent had the deleted node
        selected, the pointer is cleared and traversal falls back to the
        most recent child.
        """
        msg = self.store.get_message(message_id)
        if msg is None:
            return False

        with self.store.transaction():
            children = self.store.list_children(message_id)
            for child in children:
                child.parent_id = msg.parent_id
                child.updated_at = now_ms()
            self.store.put_messages(children)

            if msg.parent_id is not None:
                parent = self.store.get_message(msg.parent_id)
                if parent is not None and parent.selected_child_id == message_id:
                    parent.selected_child_id = None
                    parent.updated_at = now_ms()
                    self.store.put_message(parent)

            self.store.delete_messages([message_id])
            self._touch(msg.conversation_id)

        logger.debug(
            "Deleted message %s, reparented %d child(ren) to %s",
            message_id, len(children), msg.parent_id,
        )
        return True

    # ─ Compression ────────────────────────────────────────────────────────

    def prepare_compression(self, conversation_id: str) -> list[Message]:
        """Messages on the active path that are eligible for folding."""
        return [
            node.message for node in self.get_active_path(conversation_id)
            if not node.message.is_compression_summary and not node.message.is_compressed
        ]

    def apply_compression(
        self, conversation_id: str, summary_text: str, message_ids: list[str]
    ) -> str:
        """
        Fold message_ids into a summary node, atomically.

        Folded messages are flagged is_compressed. The summary hangs off the
        last folded message (by timestamp) and becomes its selected child.
        Re-folding the same messages rewrites the existing summary in place.
        The conversation's folded-id set only ever grows.
        """
        with self.store.transaction():
            wanted = set(message_ids)
            folded = [
                m for m in self.store.list_messages(conversation_id)
                if m.id in wanted and not m.is_compression_summary
            ]
            if not folded:
                raise ValueError(
                    f"No foldable messages {list(message_ids)!r} in conversation {conversation_id}"
                )

            stamp = now_ms()
            for m in folded:
                m.is_compressed = True
                m.updated_at = stamp
            last = max(folded, key=lambda m: m.timestamp)

            children = self.store.list_children(last.id)
            summary = next((c for c in children if c.is_compression_summary), None)
            continuation = _active_child(last, children)
            if summary is not None:
                summary.content = summary_text
                summary.timestamp = last.timestamp + 1
                summary.updated_at = stamp
            else:
                summary = Message(
                    conversation_id=conversation_id,
                    role=ROLE_ASSISTANT,
                    content=summary_text,
                    timestamp=last.timestamp + 1,
                    parent_id=last.id,
                    is_compression_summary=True,
                    updated_at=stamp,
                )
            last.selected_child_id = summary.id
            moved = []
            if continuation is not None and not continuation.is_compression_summary \
                    and continuation.id not in wanted:
                # Keep the unfolded tail on the active path, below the summary.
                continuation.parent_id = summary.id
                continuation.updated_at = stamp
                summary.selected_child_id = continuation.id
                moved.append(continuation)
            self.store.put_messages(folded + [summary] + moved)

            conv = self.store.get_conversation(conversation_id)
            if conv is None:
                conv = Conversation(id=conversation_id)
            previous = conv.compression.folded_ids if isinstance(conv.compression, Compression) else []
            merged = list(previous)
            seen = set(previous)
            for m in sorted(folded, key=lambda m: m.timestamp):
                if m.id not in seen:
                    merged.append(m.id)
                    seen.add(m.id)
            conv.compression = Compression(
                summary_id=summary.id,
                folded_ids=merged,
                summary_text=summary_text,
                folded_at=stamp,
            )
            conv.last_updated_at = max(stamp, conv.last_updated_at + 1)
            self.store.put_conversation(conv)

        logger.info(
            "Folded %d message(s) into summary %s (conversation %s, %d folded total)",
            len(folded), summary.id, conversation_id, len(merged),
        )
        return summary.id

    def get_messages_for_ai(self, conversation_id: str) -> list[dict]:
        """
        Flat history to send to the model.

        This is NOT the active path: it is every live message in timestamp
        order. After a fold, the folded messages are replaced by a single
        leading assistant message carrying the summary text.
        """
        conv = self.store.get_conversation(conversation_id)
        messages = self.store.list_messages(conversation_id)
        compression = conv.compression if conv else NoCompression()

        match compression:
            case Compression(folded_ids=folded_ids, summary_text=summary_text, folded_at=folded_at):
                folded = set(folded_ids)
                kept = [
                    m for m in messages
                    if m.id not in folded and not m.is_compression_summary and not m.is_compressed
                ]
                first_ts = min(
                    (m.timestamp for m in messages if m.id in folded), default=folded_at
                )
                head = [{"role": ROLE_ASSISTANT, "content": summary_text, "timestamp": first_ts}]
                return head + [_ai_message(m) for m in kept]
            case _:
                return [
                    _ai_message(m) for m in messages
                    if not m.is_compressed and not m.is_compression_summary
                ]

    # ─ Recovery ───────────────────────────────────────────────────────────

    def recover_interrupted(self) -> int:
        """Mark messages left in 'generating' by a previous run as failed."""
        stuck = self.store.list_messages_by_status(STATUS_GENERATING)
        for msg in stuck:
            self.update_message(msg.id, status=STATUS_FAILED)
            self.set_generating(msg.conversation_id, False)
        if stuck:
            logger.info("Marked %d interrupted message(s) as failed", len(stuck))
        return len(stuck)

    # ─ Entity-level access for the sync layer ─────────────────────────────

    def export_conversations(self) -> list[dict]:
        return [c.to_dict() for c in self.store.list_conversations()]

    def export_messages(self) -> list[dict]:
        return [m.to_dict() for m in self.store.all_messages()]

    def export_tombstones(self) -> list[dict]:
        return [t.to_dict() for t in self.store.list_tombstones()]

    def tombstone_for(self, table: str, record_id: str) -> Tombstone | None:
        return self.store.get_tombstone(table, record_id)

    def upsert_conversations(self, items: list[dict]) -> int:
        conversations = [Conversation.from_dict(d) for d in items]
        self.store.put_conversations(conversations)
        return len(conversations)

    def upsert_messages(self, items: list[dict]) -> int:
        messages = [Message.from_dict(d) for d in items]
        self.store.put_messages(messages)
        return len(messages)

    def apply_tombstone(self, tombstone: Tombstone) -> bool:
        """
        Apply a deletion seen on another device.

        The local entity is removed only if it was last modified before the
        deletion. The tombstone itself is always recorded.
        """
        removed = False
        with self.store.transaction():
            if tombstone.table == TABLE_CONVERSATIONS:
                conv = self.store.get_conversation(tombstone.record_id)
                if conv is not None and conv.last_updated_at < tombstone.deleted_at:
                    self.store.delete_conversations([conv.id], tombstone=False)
                    removed = True
            elif tombstone.table == TABLE_MESSAGES:
                msg = self.store.get_message(tombstone.record_id)
                if msg is not None and msg.updated_at < tombstone.deleted_at:
                    self.store.delete_messages([msg.id], tombstone=False)
                    removed = True
            self.store.put_tombstones([tombstone])
        return removed

    def replace_all(self, conversations: list[dict], messages: list[dict]) -> None:
        self.store.replace_all(
            [Conversation.from_dict(d) for d in conversations],
            [Message.from_dict(d) for d in messages],
        )

    def add_change_observer(self, observer: Callable[[str, list[str]], None]) -> None:
        self.store.add_observer(observer)

    def remove_change_observer(self, observer: Callable[[str, list[str]], None]) -> None:
        self.store.remove_observer(observer)

    def get_setting(self, key: str, default=None):
        return self.store.get_setting(key, default)

    def put_setting(self, key: str, value) -> None:
        self.store.put_setting(key, value)


def _active_child(node: Message, children: list[Message]) -> Message | None:
    if not children:
        return None
    for child in children:
        if child.id == node.selected_child_id:
            return child
    return max(children, key=lambda m: m.timestamp)


def _ai_message(msg: Message) -> dict:
    return {"id": msg.id, "role": msg.role, "content": msg.content, "timestamp": msg.timestamp}
