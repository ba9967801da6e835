"""
Tests for conflict detection, resolution and merging.
Pure functions, no storage.
"""

import pytest

from chatvault.sync.conflicts import (
    Conflict,
    ConflictType,
    ResolutionStrategy,
    conflict_summary,
    detect_conflict,
    detect_conflicts,
    merge_data,
    merge_messages,
    needs_merge,
    resolve_conflict,
    resolve_conflicts,
)


def _conv(id="c1", ts=1000, **extra):
    return {"id": id, "title": "t", "lastUpdatedAt": ts, **extra}


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------

def test_no_conflict_when_a_side_is_missing():
    assert detect_conflict(None, _conv()) is None
    assert detect_conflict(_conv(), None) is None


def test_no_conflict_on_equal_timestamps():
    assert detect_conflict(_conv(title="a"), _conv(title="b")) is None


def test_no_conflict_on_identical_content():
    # Different key order, same content
    local = {"lastUpdatedAt": 1000, "id": "c1"}
    remote = {"id": "c1", "lastUpdatedAt": 1000}
    assert detect_conflict(local, remote) is None


def test_concurrent_edits_are_timestamp_conflicts():
    conflict = detect_conflict(_conv(ts=1000, title="a"), _conv(ts=1500, title="b"))
    assert conflict.type is ConflictType.TIMESTAMP
    assert conflict.time_diff == 500
    assert conflict.id == "c1"


def test_distant_edits_are_modification_conflicts():
    conflict = detect_conflict(_conv(ts=1000, title="a"), _conv(ts=5000, title="b"))
    assert conflict.type is ConflictType.MODIFICATION
    assert conflict.time_diff == 4000


def test_deleted_flag_mismatch_is_deletion_conflict():
    conflict = detect_conflict(_conv(ts=1000), _conv(ts=1200, deleted=True))
    assert conflict.type is ConflictType.DELETION


def test_messages_compare_on_updated_at():
    local = {"id": "m1", "content": "a", "timestamp": 10, "updatedAt": 100}
    remote = {"id": "m1", "content": "b", "timestamp": 10, "updatedAt": 3000}
    conflict = detect_conflict(local, remote)
    assert conflict.local.timestamp == 100
    assert conflict.remote.timestamp == 3000


def test_detect_conflicts_pairs_by_id():
    local = [_conv("a", 1000, title="x"), _conv("b", 1000)]
    remote = [_conv("a", 2000, title="y"), _conv("c", 1000)]
    conflicts = detect_conflicts(local, remote)
    assert [c.id for c in conflicts] == ["a"]
    assert needs_merge(local[0], remote[0])
    assert not needs_merge(local[1], None)


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

@pytest.fixture
def conflict():
    return detect_conflict(_conv(ts=2000, title="local"), _conv(ts=1000, title="remote"))


def test_local_and_remote_wins(conflict):
    assert resolve_conflict(conflict, ResolutionStrategy.LOCAL_WINS)["title"] == "local"
    assert resolve_conflict(conflict, ResolutionStrategy.REMOTE_WINS)["title"] == "remote"


def test_timestamp_prefers_strictly_newer_local(conflict):
    assert resolve_conflict(conflict, ResolutionStrategy.TIMESTAMP)["title"] == "local"


def test_timestamp_prefers_newer_remote():
    c = detect_conflict(_conv(ts=1000, title="local"), _conv(ts=2000, title="remote"))
    assert resolve_conflict(c, "timestamp")["title"] == "remote"


def test_manual_returns_conflict_untouched(conflict):
    result = resolve_conflict(conflict, ResolutionStrategy.MANUAL)
    assert isinstance(result, Conflict)
    assert result is conflict


def test_merge_strategy(conflict):
    conflict.local.data["tags"] = ["a"]
    conflict.remote.data["tags"] = ["b"]
    merged = resolve_conflict(conflict, ResolutionStrategy.MERGE)
    assert merged["title"] == "remote"
    assert merged["tags"] == ["a", "b"]


def test_resolve_none_is_none():
    assert resolve_conflict(None) is None


def test_unknown_strategy_falls_back_to_timestamp(conflict):
    assert ResolutionStrategy.parse("bogus") is ResolutionStrategy.TIMESTAMP
    assert resolve_conflict(conflict, "bogus")["title"] == "local"


def test_resolve_conflicts_batch(conflict):
    results = resolve_conflicts([conflict], "remote_wins")
    assert len(results) == 1
    assert results[0].was_conflict
    assert results[0].strategy is ResolutionStrategy.REMOTE_WINS
    assert results[0].to_dict()["data"]["title"] == "remote"


# ---------------------------------------------------------------------------
# Merging
# ---------------------------------------------------------------------------

def test_merge_data_fills_unions_and_recurses():
    local = {"a": 1, "only_local": True, "list": [1, 2], "nested": {"x": 1, "y": 1}}
    remote = {"a": 2, "only_remote": True, "list": [2, 3], "nested": {"y": 2, "z": 3}}
    merged = merge_data(local, remote)
    assert merged == {
        "a": 2,
        "only_local": True,
        "only_remote": True,
        "list": [1, 2, 3],
        "nested": {"x": 1, "y": 2, "z": 3},
    }


def test_merge_data_unions_id_lists_by_id():
    local = {"items": [{"id": 1, "v": "old"}, {"id": 2, "v": "keep"}]}
    remote = {"items": [{"id": 1, "v": "new"}]}
    assert merge_data(local, remote)["items"] == [{"id": 1, "v": "new"}, {"id": 2, "v": "keep"}]


def test_merge_messages_newest_version_wins():
    local = [
        {"id": "m1", "timestamp": 1, "updatedAt": 50, "content": "local newer"},
        {"id": "m2", "timestamp": 3, "updatedAt": 3, "content": "local only"},
    ]
    remote = [
        {"id": "m1", "timestamp": 1, "updatedAt": 10, "content": "remote older"},
        {"id": "m3", "timestamp": 2, "updatedAt": 2, "content": "remote only"},
    ]
    merged = merge_messages(local, remote)
    assert [m["id"] for m in merged] == ["m1", "m3", "m2"]
    assert merged[0]["content"] == "local newer"


def test_conflict_summary():
    conflicts = detect_conflicts(
        [_conv("a", 1000, title="x"), _conv("b", 1000, title="x")],
        [_conv("a", 1200, title="y"), _conv("b", 9000, title="y")],
    )
    summary = conflict_summary(conflicts)
    assert summary["total"] == 2
    assert summary["byType"] == {"timestamp": 1, "modification": 1}
    assert summary["newest"]["id"] == "b"
    assert summary["oldest"]["id"] == "a"
