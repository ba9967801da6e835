"""
SQLite storage for local conversation state.
This is the per-device source of truth: conversations, the message tree,
deletion tombstones and small settings documents (sync status, watermarks).

Each entity is stored as a JSON document next to the handful of columns
that need an index (conversation_id and parent_id for tree walks,
(table, record_id) for tombstones). Single portable file.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterable

from chatvault.storage.models import (
    TABLE_CONVERSATIONS,
    TABLE_MESSAGES,
    Conversation,
    Message,
    Tombstone,
    now_ms,
)

logger = logging.getLogger(__name__)

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    last_updated_at INTEGER NOT NULL DEFAULT 0,
    doc TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    parent_id TEXT DEFAULT NULL,
    timestamp INTEGER NOT NULL DEFAULT 0,
    status TEXT DEFAULT 'completed',
    doc TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tombstones (
    table_name TEXT NOT NULL,
    record_id TEXT NOT NULL,
    deleted_at INTEGER NOT NULL,
    PRIMARY KEY (table_name, record_id)
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages(conversation_id);
CREATE INDEX IF NOT EXISTS idx_messages_parent
    ON messages(parent_id);
CREATE INDEX IF NOT EXISTS idx_messages_status
    ON messages(status);
CREATE INDEX IF NOT EXISTS idx_conversations_updated
    ON conversations(last_updated_at);
"""

# Observer signature: (table_name, record_ids)
ChangeObserver = Callable[[str, list[str]], None]


class SQLiteStore:
    """Thread-safe SQLite document store with change notification."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._observers: list[ChangeObserver] = []
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
        logger.info("SQLite store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        active = getattr(self._local, "conn", None)
        if active is not None:
            # Inside transaction(): the outer block commits.
            yield active
            return

        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self):
        """
        Group several writes into one all-or-nothing unit.

        Nested calls join the outer transaction. Change notifications are
        held back until the outermost block commits and dropped on rollback.
        """
        if getattr(self._local, "conn", None) is not None:
            yield self
            return

        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        self._local.conn = conn
        self._local.pending = []
        try:
            yield self
            conn.commit()
        except Exception:
            conn.rollback()
            self._local.pending = []
            raise
        finally:
            self._local.conn = None
            conn.close()

        pending, self._local.pending = self._local.pending, []
        for table, ids in pending:
            self._notify(table, ids)

    # ─ Change observers ───────────────────────────────────────────────────

    def add_observer(self, observer: ChangeObserver) -> None:
        """Register a callback fired after every committed write."""
        if observer not in self._observers:
            self._observers.append(observer)

    def remove_observer(self, observer: ChangeObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def _changed(self, table: str, ids: Iterable[str]):
        ids = list(ids)
        if not ids:
            return
        if getattr(self._local, "conn", None) is not None:
            self._local.pending.append((table, ids))
        else:
            self._notify(table, ids)

    def _notify(self, table: str, ids: list[str]):
        for observer in list(self._observers):
            try:
                observer(table, ids)
            except Exception as e:
                logger.warning("Change observer failed for %s: %s", table, e)

    # ─ Conversations ──────────────────────────────────────────────────────

    def put_conversation(self, conv: Conversation) -> None:
        """Insert or replace a conversation document."""
        self.put_conversations([conv])

    def put_conversations(self, conversations: list[Conversation]) -> None:
        if not conversations:
            return
        with self._connect() as conn:
            conn.executemany(
                "INSERT OR REPLACE INTO conversations (id, last_updated_at, doc) VALUES (?, ?, ?)",
                [
                    (c.id, c.last_updated_at, json.dumps(c.to_dict(), ensure_ascii=False))
                    for c in conversations
                ],
            )
        self._changed(TABLE_CONVERSATIONS, [c.id for c in conversations])

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT doc FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
        if not row:
            return None
        return Conversation.from_dict(json.loads(row["doc"]))

    def list_conversations(self) -> list[Conversation]:
        """All conversations, most recently updated first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT doc FROM conversations ORDER BY last_updated_at DESC"
            ).fetchall()
        return [Conversation.from_dict(json.loads(r["doc"])) for r in rows]

    def delete_conversations(self, conversation_ids: list[str], tombstone: bool = True) -> int:
        """
        Remove conversations together with all of their messages.
        Tombstones for every removed row are written in the same transaction.
        Returns the number of messages removed.
        """
        if not conversation_ids:
            return 0
        with self.transaction():
            with self._connect() as conn:
                marks = ",".join("?" * len(conversation_ids))
                msg_ids = [
                    r["id"] for r in conn.execute(
                        f"SELECT id FROM messages WHERE conversation_id IN ({marks})",
                        conversation_ids,
                    ).fetchall()
                ]
                if tombstone:
                    self.record_deletions(TABLE_CONVERSATIONS, conversation_ids)
                    self.record_deletions(TABLE_MESSAGES, msg_ids)
                conn.execute(
                    f"DELETE FROM messages WHERE conversation_id IN ({marks})", conversation_ids
                )
                conn.execute(
                    f"DELETE FROM conversations WHERE id IN ({marks})", conversation_ids
                )
            self._changed(TABLE_CONVERSATIONS, conversation_ids)
            self._changed(TABLE_MESSAGES, msg_ids)
        logger.debug(
            "Deleted %d conversations (%d messages)", len(conversation_ids), len(msg_ids)
        )
        return len(msg_ids)

    # ─ Messages ───────────────────────────────────────────────────────────

    def put_message(self, msg: Message) -> None:
        """Insert or replace a single message document."""
        self.put_messages([msg])

    def put_messages(self, messages: list[Message]) -> None:
        if not messages:
            return
        with self._connect() as conn:
            conn.executemany(
                """INSERT OR REPLACE INTO messages
                   (id, conversation_id, parent_id, timestamp, status, doc)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                [
                    (m.id, m.conversation_id, m.parent_id, m.timestamp, m.status,
                     json.dumps(m.to_dict(), ensure_ascii=False))
                    for m in messages
                ],
            )
        self._changed(TABLE_MESSAGES, [m.id for m in messages])

    def get_message(self, message_id: str) -> Message | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT doc FROM messages WHERE id = ?", (message_id,)
            ).fetchone()
        if not row:
            return None
        return Message.from_dict(json.loads(row["doc"]))

    def list_messages(self, conversation_id: str, limit: int | None = None) -> list[Message]:
        """All messages of a conversation in timestamp order."""
        sql = "SELECT doc FROM messages WHERE conversation_id = ? ORDER BY timestamp, rowid"
        params: list = [conversation_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [Message.from_dict(json.loads(r["doc"])) for r in rows]

    def list_children(self, parent_id: str) -> list[Message]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT doc FROM messages WHERE parent_id = ? ORDER BY timestamp, rowid",
                (parent_id,),
            ).fetchall()
        return [Message.from_dict(json.loads(r["doc"])) for r in rows]

    def list_messages_by_status(self, status: str) -> list[Message]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT doc FROM messages WHERE status = ? ORDER BY timestamp", (status,)
            ).fetchall()
        return [Message.from_dict(json.loads(r["doc"])) for r in rows]

    def count_messages(self, conversation_id: str) -> int:
        with self._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM messages WHERE conversation_id = ?", (conversation_id,)
            ).fetchone()[0]

    def all_messages(self) -> list[Message]:
        with self._connect() as conn:
            rows = conn.execute("SELECT doc FROM messages ORDER BY timestamp").fetchall()
        return [Message.from_dict(json.loads(r["doc"])) for r in rows]

    def delete_messages(self, message_ids: list[str], tombstone: bool = True) -> None:
        if not message_ids:
            return
        marks = ",".join("?" * len(message_ids))
        with self.transaction():
            if tombstone:
                self.record_deletions(TABLE_MESSAGES, message_ids)
            with self._connect() as conn:
                conn.execute(f"DELETE FROM messages WHERE id IN ({marks})", list(message_ids))
            self._changed(TABLE_MESSAGES, message_ids)

    # ─ Tombstones ─────────────────────────────────────────────────────────

    def record_deletions(self, table: str, record_ids: list[str]) -> None:
        """Batch-record tombstones sharing one deletedAt."""
        if not record_ids:
            return
        deleted_at = now_ms()
        self.put_tombstones([Tombstone(table, str(rid), deleted_at) for rid in record_ids])

    def put_tombstones(self, tombstones: list[Tombstone]) -> None:
        if not tombstones:
            return
        with self._connect() as conn:
            conn.executemany(
                """INSERT OR REPLACE INTO tombstones (table_name, record_id, deleted_at)
                   VALUES (?, ?, ?)""",
                [(t.table, t.record_id, t.deleted_at) for t in tombstones],
            )

    def get_tombstone(self, table: str, record_id: str) -> Tombstone | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tombstones WHERE table_name = ? AND record_id = ?",
                (table, record_id),
            ).fetchone()
        if not row:
            return None
        return Tombstone(row["table_name"], row["record_id"], row["deleted_at"])

    def list_tombstones(self) -> list[Tombstone]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM tombstones ORDER BY deleted_at"
            ).fetchall()
        return [Tombstone(r["table_name"], r["record_id"], r["deleted_at"]) for r in rows]

    # ─ Settings documents ─────────────────────────────────────────────────

    def get_setting(self, key: str, default=None):
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        if not row or row["value"] is None:
            return default
        return json.loads(row["value"])

    def put_setting(self, key: str, value) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
                (key, json.dumps(value, ensure_ascii=False)),
            )

    # ─ Bulk operations ────────────────────────────────────────────────────

    def replace_all(self, conversations: list[Conversation], messages: list[Message]) -> None:
        """Swap the entire conversation/message set atomically (backup restore)."""
        with self.transaction():
            with self._connect() as conn:
                conn.execute("DELETE FROM messages")
                conn.execute("DELETE FROM conversations")
            self.put_conversations(conversations)
            self.put_messages(messages)

    def clear_all(self, include_tombstones: bool = False) -> None:
        """Drop all local data. Tombstones survive unless asked for explicitly."""
        with self._connect() as conn:
            conn.execute("DELETE FROM messages")
            conn.execute("DELETE FROM conversations")
            conn.execute("DELETE FROM settings")
            if include_tombstones:
                conn.execute("DELETE FROM tombstones")
        logger.info("Local data cleared (tombstones %s)", "cleared" if include_tombstones else "kept")

    def get_stats(self) -> dict:
        """Return counts of stored entities."""
        with self._connect() as conn:
            conv_count = conn.execute("SELECT COUNT(*) FROM conversations").fetchone()[0]
            msg_count = conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]
            tomb_count = conn.execute("SELECT COUNT(*) FROM tombstones").fetchone()[0]
            status_rows = conn.execute(
                "SELECT status, COUNT(*) as cnt FROM messages GROUP BY status"
            ).fetchall()

        return {
            "conversations": conv_count,
            "messages": msg_count,
            "tombstones": tomb_count,
            "by_status": {row["status"]: row["cnt"] for row in status_rows},
        }
