"""Tests for cross-process correlation (introspector/correlation.py)."""

import os
import time
from pathlib import Path

from introspector.correlation import (
    SENTINEL_START_MS,
    CorrelationTracker,
    KeyedExpiringMap,
    correlation_key,
)


class TestCorrelationKey:
    """Tests for correlation_key()."""

    def test_deterministic(self):
        """Same tool and input give the same 16-hex key."""
        key = correlation_key("Bash", {"command": "ls"})
        assert key == correlation_key("Bash", {"command": "ls"})
        assert len(key) == 16
        int(key, 16)

    def test_dict_order_irrelevant(self):
        """Dict inputs are serialized with sorted keys."""
        assert correlation_key("Edit", {"a": 1, "b": 2}) == correlation_key("Edit", {"b": 2, "a": 1})

    def test_tool_and_input_matter(self):
        """Different tool or input gives a different key."""
        base = correlation_key("Bash", "ls")
        assert base != correlation_key("Read", "ls")
        assert base != correlation_key("Bash", "ls -la")


class TestKeyedExpiringMap:
    """Tests for the on-disk keyed map."""

    def test_put_take(self, tmp_path: Path):
        """take() returns the stored value exactly once."""
        arena = KeyedExpiringMap(tmp_path / "arena")
        assert arena.put("k", {"v": 1}) is False
        assert arena.take("k") == {"v": 1}
        assert arena.take("k") is None

    def test_collision_reported(self, tmp_path: Path):
        """A second put under a live key reports a collision."""
        arena = KeyedExpiringMap(tmp_path / "arena")
        arena.put("k", {"v": 1})
        assert arena.put("k", {"v": 2}) is True
        assert len(arena) == 1

    def test_take_missing(self, tmp_path: Path):
        """take() on an unknown key (or missing arena) is None."""
        assert KeyedExpiringMap(tmp_path / "absent").take("k") is None

    def test_expired_entry_not_returned(self, tmp_path: Path):
        """Entries older than the TTL are not paired."""
        arena = KeyedExpiringMap(tmp_path / "arena", ttl_seconds=60)
        arena.put("k", {"v": 1})
        old = time.time() - 120
        os.utime(tmp_path / "arena" / "k.json", (old, old))
        assert arena.take("k") is None
        assert not arena.contains("k")

    def test_sweep_removes_expired(self, tmp_path: Path):
        """sweep() deletes only expired entries."""
        arena = KeyedExpiringMap(tmp_path / "arena", ttl_seconds=60)
        arena.put("old", {})
        arena.put("new", {})
        old = time.time() - 120
        os.utime(tmp_path / "arena" / "old.json", (old, old))
        assert arena.sweep() == 1
        assert list(arena.keys()) == ["new"]

    def test_clear(self, tmp_path: Path):
        """clear() empties the arena."""
        arena = KeyedExpiringMap(tmp_path / "arena")
        arena.put("a", {})
        arena.put("b", {})
        arena.clear()
        assert len(arena) == 0

    def test_corrupt_entry(self, tmp_path: Path):
        """A corrupt entry is consumed and reported as absent."""
        arena = KeyedExpiringMap(tmp_path / "arena")
        arena.put("k", {})
        (tmp_path / "arena" / "k.json").write_text("{not json")
        assert arena.take("k") is None
        assert not (tmp_path / "arena" / "k.json").exists()


class TestCorrelationTracker:
    """Tests for begin/end pairing."""

    def test_matched_pair(self, tmp_path: Path, base_ms: int):
        """A matched end reports the begin's trace id and elapsed time."""
        tracker = CorrelationTracker(tmp_path / ".pending")
        begun = tracker.begin("Bash", {"command": "ls"}, base_ms)
        done = tracker.end(tracker.key_for("Bash", {"command": "ls"}), base_ms + 250)
        assert done.matched
        assert done.trace_id == begun.trace_id
        assert done.elapsed_ms == 250

    def test_unmatched_end(self, tmp_path: Path, base_ms: int):
        """An end with no begin is unmatched with elapsed 0."""
        tracker = CorrelationTracker(tmp_path / ".pending")
        done = tracker.end(tracker.key_for("Read", "x"), base_ms)
        assert not done.matched
        assert done.trace_id == "unknown"
        assert done.start_ms == SENTINEL_START_MS
        assert done.elapsed_ms == 0

    def test_end_is_exactly_once(self, tmp_path: Path, base_ms: int):
        """Two ends for one begin: only the first matches."""
        tracker = CorrelationTracker(tmp_path / ".pending")
        tracker.begin("Bash", "ls", base_ms)
        key = tracker.key_for("Bash", "ls")
        first = tracker.end(key, base_ms + 10)
        second = tracker.end(key, base_ms + 20)
        assert first.matched
        assert not second.matched

    def test_trackers_share_arena(self, tmp_path: Path, base_ms: int):
        """Separate tracker instances (processes) pair through the arena."""
        CorrelationTracker(tmp_path / ".pending").begin("Grep", {"pattern": "x"}, base_ms)
        other = CorrelationTracker(tmp_path / ".pending")
        done = other.end(other.key_for("Grep", {"pattern": "x"}), base_ms + 5)
        assert done.matched
        assert done.elapsed_ms == 5

    def test_simultaneous_identical_calls(self, tmp_path: Path, base_ms: int):
        """Identical concurrent calls collide; the second completion is unmatched."""
        tracker = CorrelationTracker(tmp_path / ".pending")
        tracker.begin("Bash", "ls", base_ms)
        second = tracker.begin("Bash", "ls", base_ms + 1)
        assert second.collided
        key = tracker.key_for("Bash", "ls")
        assert tracker.end(key, base_ms + 10).matched
        assert not tracker.end(key, base_ms + 11).matched

    def test_clock_skew_never_negative(self, tmp_path: Path, base_ms: int):
        """An end before its begin reports elapsed 0."""
        tracker = CorrelationTracker(tmp_path / ".pending")
        tracker.begin("Bash", "ls", base_ms)
        done = tracker.end(tracker.key_for("Bash", "ls"), base_ms - 50)
        assert done.elapsed_ms == 0
