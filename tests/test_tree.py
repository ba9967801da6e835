"""
Tests for the branching message tree.
Run with: pytest tests/test_tree.py
"""

import pytest

from chatvault.storage.models import Compression, Message, Tombstone
from chatvault.storage.sqlite_store import SQLiteStore
from chatvault.tree import MAX_PATH_NODES, MessageTree


@pytest.fixture
def tree(tmp_path):
    return MessageTree(SQLiteStore(str(tmp_path / "tree.db")))


def _chat(tree, conv_id, *contents):
    """Append alternating user/assistant messages, return their ids."""
    ids = []
    for i, content in enumerate(contents):
        role = "user" if i % 2 == 0 else "assistant"
        ids.append(tree.add_message({"role": role, "content": content}, conv_id))
    return ids


def _path_ids(tree, conv_id):
    return [n.id for n in tree.get_active_path(conv_id)]


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

def test_create_and_list(tree):
    a = tree.create_conversation("first")
    b = tree.create_conversation("second", local_settings={"temperature": 0.2})
    assert {c.id for c in tree.list_conversations()} == {a.id, b.id}
    assert tree.get_conversation_settings(b.id) == {"temperature": 0.2}


def test_update_title_marks_manual(tree):
    conv = tree.create_conversation()
    assert tree.update_title(conv.id, "Renamed")
    got = tree.get_conversation(conv.id)
    assert got.title == "Renamed"
    assert got.manual_title is True
    assert got.last_updated_at >= conv.last_updated_at


def test_update_title_unknown_or_empty(tree):
    assert tree.update_title("missing", "x") is False
    conv = tree.create_conversation()
    assert tree.update_title(conv.id, "") is False


def test_settings_update_and_reset(tree):
    conv = tree.create_conversation()
    tree.update_conversation_settings(conv.id, {"model": "m"})
    assert tree.get_conversation_settings(conv.id) == {"model": "m"}
    tree.reset_conversation_settings(conv.id)
    assert tree.get_conversation_settings(conv.id) is None


def test_read_flags(tree):
    conv = tree.create_conversation()
    tree.mark_unread(conv.id)
    assert tree.get_conversation(conv.id).has_unread
    tree.mark_read(conv.id)
    assert not tree.get_conversation(conv.id).has_unread
    tree.set_generating(conv.id, True)
    assert tree.get_conversation(conv.id).is_generating


def test_delete_conversation_tombstones(tree):
    conv = tree.create_conversation()
    ids = _chat(tree, conv.id, "hi", "hello")
    tree.delete_conversation(conv.id)
    assert tree.get_conversation(conv.id) is None
    assert tree.tombstone_for("conversations", conv.id) is not None
    for mid in ids:
        assert tree.tombstone_for("messages", mid) is not None


def test_clear_all_history(tree):
    for _ in range(3):
        conv = tree.create_conversation()
        _chat(tree, conv.id, "hi")
    tree.clear_all_history()
    assert tree.list_conversations() == []


def test_cleanup_empty_conversation(tree):
    empty = tree.create_conversation()
    used = tree.create_conversation()
    _chat(tree, used.id, "hi")

    assert tree.cleanup_empty_conversation(empty.id) is True
    assert tree.get_conversation(empty.id) is None
    assert tree.tombstone_for("conversations", empty.id) is None
    assert tree.cleanup_empty_conversation(used.id) is False


# ---------------------------------------------------------------------------
# Active path
# ---------------------------------------------------------------------------

def test_empty_conversation_has_empty_path(tree):
    conv = tree.create_conversation()
    assert tree.get_active_path(conv.id) == []
    assert tree.get_active_leaf(conv.id) is None


def test_linear_path(tree):
    conv = tree.create_conversation()
    ids = _chat(tree, conv.id, "q1", "a1", "q2")
    assert _path_ids(tree, conv.id) == ids
    assert tree.get_active_leaf(conv.id).id == ids[-1]


def test_add_message_creates_missing_conversation(tree):
    mid = tree.add_message({"role": "user", "content": "hi"}, "fresh")
    assert tree.get_conversation("fresh") is not None
    assert _path_ids(tree, "fresh") == [mid]


def test_add_message_timestamps_strictly_increase(tree):
    conv = tree.create_conversation()
    ids = _chat(tree, conv.id, "a", "b", "c", "d")
    stamps = [tree.store.get_message(i).timestamp for i in ids]
    assert stamps == sorted(stamps)
    assert len(set(stamps)) == len(stamps)


def test_branch_and_switch(tree):
    conv = tree.create_conversation()
    u1, a1 = _chat(tree, conv.id, "question", "answer one")
    a2 = tree.add_message({"role": "assistant", "content": "answer two"}, conv.id, parent_id=u1)

    path = tree.get_active_path(conv.id)
    assert [n.id for n in path] == [u1, a2]
    assert path[1].sibling_count == 2
    assert path[1].sibling_index == 2
    assert path[1].siblings == [a1, a2]

    assert tree.switch_branch(a2, a1) is True
    path = tree.get_active_path(conv.id)
    assert [n.id for n in path] == [u1, a1]
    assert path[1].sibling_index == 1


def test_switch_branch_on_root_is_noop(tree):
    conv = tree.create_conversation()
    (root,) = _chat(tree, conv.id, "hi")
    assert tree.switch_branch(root, root) is False


def test_stale_selection_falls_back_to_latest_child(tree):
    conv = tree.create_conversation()
    u1, a1 = _chat(tree, conv.id, "q", "a")
    a2 = tree.add_message({"role": "assistant", "content": "b"}, conv.id, parent_id=u1)
    tree.update_message(u1, selected_child_id="ghost")
    assert _path_ids(tree, conv.id) == [u1, a2]


def test_cycle_without_root_terminates(tree):
    store = tree.store
    tree.create_conversation(conversation_id="c")
    store.put_message(Message(id="a", conversation_id="c", parent_id="b", timestamp=1))
    store.put_message(Message(id="b", conversation_id="c", parent_id="a", timestamp=2))

    ids = _path_ids(tree, "c")
    assert ids == ["a", "b"]


def test_path_is_truncated_to_newest_nodes(tree):
    store = tree.store
    tree.create_conversation(conversation_id="long")
    parent = None
    total = MAX_PATH_NODES + 20
    for i in range(total):
        mid = f"m{i:03d}"
        store.put_message(Message(
            id=mid, conversation_id="long", parent_id=parent, timestamp=1000 + i,
        ))
        parent = mid

    ids = _path_ids(tree, "long")
    assert len(ids) == MAX_PATH_NODES
    assert ids[0] == "m020"
    assert ids[-1] == f"m{total - 1:03d}"


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------

def test_update_message_rejects_unknown_field(tree):
    conv = tree.create_conversation()
    (mid,) = _chat(tree, conv.id, "hi")
    with pytest.raises(TypeError):
        tree.update_message(mid, parent_id="elsewhere")


def test_edit_message_refreshes_timestamp(tree):
    conv = tree.create_conversation()
    mid, reply = _chat(tree, conv.id, "typo", "reply")
    before = tree.store.get_message(mid)

    assert tree.edit_message(mid, "fixed")
    after = tree.store.get_message(mid)
    assert after.content == "fixed"
    assert after.timestamp > tree.store.get_message(reply).timestamp
    assert after.updated_at > before.updated_at
    assert after.parent_id == before.parent_id
    assert _path_ids(tree, conv.id) == [mid, reply]


def test_edit_compression_summary_is_refused(tree):
    conv = tree.create_conversation()
    ids = _chat(tree, conv.id, "q1", "a1", "q2")
    summary_id = tree.apply_compression(conv.id, "summary", ids[:2])

    assert not tree.edit_message(summary_id, "rewritten")
    assert tree.store.get_message(summary_id).content == "summary"


def test_delete_message_reparents_children(tree):
    conv = tree.create_conversation()
    u1, a1, u2 = _chat(tree, conv.id, "q1", "a1", "q2")

    assert tree.delete_message(a1)
    assert tree.store.get_message(u2).parent_id == u1
    assert _path_ids(tree, conv.id) == [u1, u2]
    assert tree.tombstone_for("messages", a1) is not None


def test_delete_selected_sibling_falls_back(tree):
    conv = tree.create_conversation()
    u1, a1 = _chat(tree, conv.id, "q", "a")
    a2 = tree.add_message({"role": "assistant", "content": "b"}, conv.id, parent_id=u1)

    tree.delete_message(a2)
    assert tree.store.get_message(u1).selected_child_id is None
    assert _path_ids(tree, conv.id) == [u1, a1]


def test_recover_interrupted(tree):
    conv = tree.create_conversation()
    tree.set_generating(conv.id, True)
    mid = tree.add_message({"role": "assistant", "content": "half", "status": "generating"}, conv.id)

    assert tree.recover_interrupted() == 1
    assert tree.store.get_message(mid).status == "failed"
    assert tree.store.get_message(mid).content == "half"
    assert not tree.get_conversation(conv.id).is_generating


# ---------------------------------------------------------------------------
# Compression
# ---------------------------------------------------------------------------

def test_fold_inserts_summary_and_keeps_tail_active(tree):
    conv = tree.create_conversation()
    u1, a1, u2, a2 = _chat(tree, conv.id, "q1", "a1", "q2", "a2")

    summary_id = tree.apply_compression(conv.id, "short version", [u1, a1])

    summary = tree.store.get_message(summary_id)
    assert summary.is_compression_summary
    assert summary.parent_id == a1
    assert tree.store.get_message(a1).selected_child_id == summary_id
    assert tree.store.get_message(u1).is_compressed
    assert _path_ids(tree, conv.id) == [u1, a1, summary_id, u2, a2]

    compression = tree.get_conversation(conv.id).compression
    assert isinstance(compression, Compression)
    assert compression.folded_ids == [u1, a1]
    assert compression.summary_id == summary_id


def test_messages_for_ai_after_fold(tree):
    conv = tree.create_conversation()
    u1, a1, u2, a2 = _chat(tree, conv.id, "q1", "a1", "q2", "a2")
    first_ts = tree.store.get_message(u1).timestamp

    tree.apply_compression(conv.id, "short version", [u1, a1])
    history = tree.get_messages_for_ai(conv.id)

    assert history[0] == {"role": "assistant", "content": "short version", "timestamp": first_ts}
    assert [m["id"] for m in history[1:]] == [u2, a2]
    assert history[1]["content"] == "q2"


def test_messages_for_ai_without_fold(tree):
    conv = tree.create_conversation()
    ids = _chat(tree, conv.id, "q1", "a1")
    history = tree.get_messages_for_ai(conv.id)
    assert [m["id"] for m in history] == ids
    assert set(history[0]) == {"id", "role", "content", "timestamp"}


def test_messages_for_ai_after_fold_on_branched_tree(tree):
    conv = tree.create_conversation()
    u1, a1 = _chat(tree, conv.id, "q1", "a1")
    a1_retry = tree.add_message({"role": "assistant", "content": "a1 again"}, conv.id, u1)
    u2 = tree.add_message({"role": "user", "content": "q2"}, conv.id)
    u2_alt = tree.add_message({"role": "user", "content": "q2 reworded"}, conv.id, a1_retry)
    a2 = tree.add_message({"role": "assistant", "content": "a2"}, conv.id)
    total = tree.store.count_messages(conv.id)

    tree.apply_compression(conv.id, "summary", [u1, a1_retry])

    history = tree.get_messages_for_ai(conv.id)
    assert len(history) <= total
    assert history[0]["content"] == "summary"
    ids = [m["id"] for m in history[1:]]
    assert u1 not in ids
    assert a1_retry not in ids
    assert set(ids) == {a1, u2, u2_alt, a2}


def test_second_fold_grows_folded_set(tree):
    conv = tree.create_conversation()
    u1, a1, u2, a2 = _chat(tree, conv.id, "q1", "a1", "q2", "a2")
    tree.apply_compression(conv.id, "first", [u1, a1])
    tree.apply_compression(conv.id, "second", [u2])

    compression = tree.get_conversation(conv.id).compression
    assert compression.folded_ids == [u1, a1, u2]
    history = tree.get_messages_for_ai(conv.id)
    assert history[0]["content"] == "second"
    assert [m["id"] for m in history[1:]] == [a2]


def test_refold_rewrites_existing_summary(tree):
    conv = tree.create_conversation()
    u1, a1, u2 = _chat(tree, conv.id, "q1", "a1", "q2")
    first = tree.apply_compression(conv.id, "v1", [u1, a1])
    second = tree.apply_compression(conv.id, "v2", [u1, a1])

    assert first == second
    assert tree.store.get_message(first).content == "v2"
    assert _path_ids(tree, conv.id) == [u1, a1, first, u2]


def test_fold_with_nothing_foldable_raises(tree):
    conv = tree.create_conversation()
    _chat(tree, conv.id, "q1")
    with pytest.raises(ValueError):
        tree.apply_compression(conv.id, "x", ["nope"])


def test_prepare_compression_skips_folded(tree):
    conv = tree.create_conversation()
    u1, a1, u2, a2 = _chat(tree, conv.id, "q1", "a1", "q2", "a2")
    tree.apply_compression(conv.id, "s", [u1, a1])
    assert [m.id for m in tree.prepare_compression(conv.id)] == [u2, a2]


# ---------------------------------------------------------------------------
# Sync-facing access
# ---------------------------------------------------------------------------

def test_apply_tombstone_respects_newer_edit(tree):
    conv = tree.create_conversation()
    (mid,) = _chat(tree, conv.id, "hi")
    msg = tree.store.get_message(mid)

    assert tree.apply_tombstone(Tombstone("messages", mid, msg.updated_at - 1)) is False
    assert tree.store.get_message(mid) is not None
    assert tree.apply_tombstone(Tombstone("messages", mid, msg.updated_at + 1)) is True
    assert tree.store.get_message(mid) is None
    assert tree.tombstone_for("messages", mid) is not None


def test_upsert_and_export_roundtrip(tree):
    conv = tree.create_conversation("synced")
    _chat(tree, conv.id, "q", "a")
    convs, msgs = tree.export_conversations(), tree.export_messages()

    tree.store.clear_all()
    assert tree.upsert_conversations(convs) == 1
    assert tree.upsert_messages(msgs) == 2
    assert tree.export_messages() == msgs


def test_change_observer_sees_tree_writes(tree):
    seen = []
    tree.add_change_observer(lambda table, ids: seen.append(table))
    conv = tree.create_conversation()
    _chat(tree, conv.id, "hi")
    assert "conversations" in seen
    assert "messages" in seen


def test_switch_branch_is_idempotent(tree):
    conv = tree.create_conversation()
    u1, a1 = _chat(tree, conv.id, "q", "a")
    tree.add_message({"role": "assistant", "content": "b"}, conv.id, parent_id=u1)

    tree.switch_branch(a1, a1)
    first = _path_ids(tree, conv.id)
    tree.switch_branch(a1, a1)
    assert _path_ids(tree, conv.id) == first == [u1, a1]


def test_fold_whole_exchange_leaves_only_summary(tree):
    conv = tree.create_conversation()
    a, b = _chat(tree, conv.id, "A", "B")
    a_ts = tree.store.get_message(a).timestamp

    tree.apply_compression(conv.id, "S", [a, b])
    assert tree.get_messages_for_ai(conv.id) == [
        {"role": "assistant", "content": "S", "timestamp": a_ts}
    ]
