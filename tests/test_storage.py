"""
Tests for SQLite storage.
Uses a temp database for each test.
"""

import pytest
from chatvault.storage.sqlite_store import SQLiteStore
from chatvault.storage.models import (
    Compression,
    Conversation,
    Message,
    NoCompression,
    Tombstone,
    compression_from_dict,
    entity_timestamp,
)


@pytest.fixture
def store(tmp_path):
    """Create a fresh SQLite store for each test."""
    db_path = str(tmp_path / "test.db")
    return SQLiteStore(db_path)


def test_store_and_retrieve(store):
    """Store a message and get it back."""
    store.put_conversation(Conversation(id="conv1"))
    msg = Message(conversation_id="conv1", role="user", content="hello world", model="qwen3:32b")
    store.put_message(msg)

    got = store.get_message(msg.id)
    assert got.role == "user"
    assert got.content == "hello world"
    assert got.model == "qwen3:32b"
    assert store.count_messages("conv1") == 1


def test_messages_listed_in_timestamp_order(store):
    store.put_message(Message(id="b", conversation_id="c1", content="second", timestamp=200))
    store.put_message(Message(id="a", conversation_id="c1", content="first", timestamp=100))
    store.put_message(Message(id="x", conversation_id="c2", content="other", timestamp=150))

    assert [m.id for m in store.list_messages("c1")] == ["a", "b"]
    assert [m.id for m in store.list_messages("c2")] == ["x"]


def test_conversations_most_recent_first(store):
    store.put_conversation(Conversation(id="old", last_updated_at=1000))
    store.put_conversation(Conversation(id="new", last_updated_at=2000))
    assert [c.id for c in store.list_conversations()] == ["new", "old"]


def test_delete_conversation_cascades_and_tombstones(store):
    store.put_conversation(Conversation(id="c1"))
    store.put_message(Message(id="m1", conversation_id="c1"))
    store.put_message(Message(id="m2", conversation_id="c1", parent_id="m1"))

    removed = store.delete_conversations(["c1"])

    assert removed == 2
    assert store.get_conversation("c1") is None
    assert store.count_messages("c1") == 0
    assert store.get_tombstone("conversations", "c1") is not None
    assert store.get_tombstone("messages", "m1") is not None
    assert store.get_tombstone("messages", "m2") is not None


def test_delete_without_tombstone(store):
    store.put_message(Message(id="m1", conversation_id="c1"))
    store.delete_messages(["m1"], tombstone=False)
    assert store.get_message("m1") is None
    assert store.list_tombstones() == []


def test_transaction_rolls_back_everything(store):
    with pytest.raises(RuntimeError):
        with store.transaction():
            store.put_conversation(Conversation(id="c1"))
            store.put_message(Message(id="m1", conversation_id="c1"))
            raise RuntimeError("boom")

    assert store.get_conversation("c1") is None
    assert store.get_message("m1") is None


def test_nested_transaction_joins_outer(store):
    with store.transaction():
        store.put_conversation(Conversation(id="c1"))
        with store.transaction():
            store.put_message(Message(id="m1", conversation_id="c1"))
        # Visible inside the outer block before commit
        assert store.get_message("m1") is not None
    assert store.get_conversation("c1") is not None


def test_observer_fires_after_commit(store):
    seen = []
    store.add_observer(lambda table, ids: seen.append((table, ids)))

    with store.transaction():
        store.put_conversation(Conversation(id="c1"))
        assert seen == []
    assert seen == [("conversations", ["c1"])]


def test_observer_not_fired_on_rollback(store):
    seen = []
    store.add_observer(lambda table, ids: seen.append(table))

    with pytest.raises(ValueError):
        with store.transaction():
            store.put_message(Message(id="m1", conversation_id="c1"))
            raise ValueError("nope")
    assert seen == []


def test_failing_observer_does_not_break_writes(store):
    def bad(table, ids):
        raise RuntimeError("observer bug")

    seen = []
    store.add_observer(bad)
    store.add_observer(lambda table, ids: seen.append(table))

    store.put_conversation(Conversation(id="c1"))
    assert store.get_conversation("c1") is not None
    assert seen == ["conversations"]


def test_remove_observer(store):
    seen = []

    def observer(table, ids):
        seen.append(table)

    store.add_observer(observer)
    store.remove_observer(observer)
    store.put_conversation(Conversation(id="c1"))
    assert seen == []


def test_settings_roundtrip_without_notifications(store):
    seen = []
    store.add_observer(lambda table, ids: seen.append(table))

    assert store.get_setting("syncStatus", {"syncStatus": "idle"}) == {"syncStatus": "idle"}
    store.put_setting("syncStatus", {"syncStatus": "success", "lastSyncTime": 123})
    assert store.get_setting("syncStatus")["lastSyncTime"] == 123
    assert seen == []


def test_replace_all_swaps_dataset(store):
    store.put_conversation(Conversation(id="old"))
    store.put_message(Message(id="old-m", conversation_id="old"))

    store.replace_all(
        [Conversation(id="new")],
        [Message(id="new-m", conversation_id="new")],
    )

    assert store.get_conversation("old") is None
    assert store.get_message("old-m") is None
    assert store.get_conversation("new") is not None
    assert store.get_message("new-m") is not None


def test_clear_all_keeps_tombstones_by_default(store):
    store.put_conversation(Conversation(id="c1"))
    store.delete_conversations(["c1"])
    store.put_setting("k", 1)

    store.clear_all()
    assert store.get_setting("k") is None
    assert store.get_tombstone("conversations", "c1") is not None

    store.clear_all(include_tombstones=True)
    assert store.list_tombstones() == []


def test_stats(store):
    """Stats reflect stored data."""
    store.put_conversation(Conversation(id="c1"))
    store.put_conversation(Conversation(id="c2"))
    store.put_message(Message(conversation_id="c1", role="user", content="a"))
    store.put_message(Message(conversation_id="c1", role="assistant", content="b", status="failed"))
    store.put_message(Message(conversation_id="c2", role="user", content="c"))

    stats = store.get_stats()
    assert stats["conversations"] == 2
    assert stats["messages"] == 3
    assert stats["tombstones"] == 0
    assert stats["by_status"] == {"completed": 2, "failed": 1}


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

def test_message_dict_is_camel_case():
    msg = Message(id="m1", conversation_id="c1", parent_id="p", timestamp=10)
    data = msg.to_dict()
    assert data["conversationId"] == "c1"
    assert data["parentId"] == "p"
    assert data["updatedAt"] == 10
    assert Message.from_dict(data) == msg


def test_message_from_dict_fills_missing_fields():
    msg = Message.from_dict({"id": "m1", "conversationId": "c1", "timestamp": 50})
    assert msg.role == "user"
    assert msg.content == ""
    assert msg.status == "completed"
    assert msg.updated_at == 50
    assert msg.parent_id is None


def test_compression_variants():
    assert isinstance(compression_from_dict(None), NoCompression)
    assert Conversation(id="c").to_dict()["compressionData"] is None

    comp = compression_from_dict({
        "summaryMessageId": "s1",
        "compressedMessageIds": ["a", "b"],
        "compressedContent": "summary",
        "timestamp": 99,
    })
    assert comp == Compression(summary_id="s1", folded_ids=["a", "b"], summary_text="summary", folded_at=99)

    conv = Conversation(id="c", compression=comp)
    assert Conversation.from_dict(conv.to_dict()).compression == comp


def test_tombstone_accepts_legacy_table_key():
    tomb = Tombstone.from_dict({"tableName": "messages", "recordId": "m1", "deletedAt": 5})
    assert tomb == Tombstone("messages", "m1", 5)


def test_entity_timestamp_prefers_modification_markers():
    assert entity_timestamp({"lastUpdatedAt": 30, "timestamp": 10}) == 30
    assert entity_timestamp({"updatedAt": 20, "timestamp": 10}) == 20
    assert entity_timestamp({"timestamp": 10}) == 10
    assert entity_timestamp({}) == 0
