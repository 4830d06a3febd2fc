"""Tests for stats aggregation (introspector/metrics/aggregators.py)."""

import json
import random
from pathlib import Path

import pytest

from introspector.core.records import StatsDelta
from introspector.core.store import SessionStore
from introspector.metrics.aggregators import (
    CLAIM_PREFIX,
    CLAIM_SUFFIX,
    MAX_CONSUMED_BATCHES,
    HistoryAggregator,
    SessionStats,
    StatsAggregator,
    fold,
)


def make_deltas(n: int, seed: int = 7):
    rng = random.Random(seed)
    tools = ["Bash", "Read", "Edit", "Grep"]
    return [
        StatsDelta(
            tool=rng.choice(tools),
            tokens=rng.randint(0, 500),
            error=rng.randint(0, 1),
            duration_ms=rng.randint(0, 2000),
        )
        for _ in range(n)
    ]


class TestFold:
    """Tests for the pure fold."""

    def test_counts(self):
        """Folding sums every counter, globally and per tool."""
        stats = fold(SessionStats(), [
            StatsDelta("Bash", tokens=10, error=1, duration_ms=100),
            StatsDelta("Bash", tokens=5, error=0, duration_ms=50),
            StatsDelta("Read", tokens=1, error=0, duration_ms=7),
        ])
        assert stats.tool_calls == 3
        assert stats.total_tokens_est == 16
        assert stats.errors == 1
        assert stats.total_duration_ms == 157
        assert stats.tools["Bash"].calls == 2
        assert stats.tools["Bash"].avg_duration_ms == 75
        assert stats.tools["Read"].tokens == 1

    def test_pure(self):
        """The input stats are not modified."""
        original = SessionStats()
        fold(original, [StatsDelta("Bash", tokens=1)])
        assert original.tool_calls == 0
        assert original.tools == {}

    def test_associative(self):
        """fold(fold(s, a), b) equals fold(s, a + b)."""
        deltas = make_deltas(60)
        for split in (0, 1, 17, 59, 60):
            stepwise = fold(fold(SessionStats(), deltas[:split]), deltas[split:])
            at_once = fold(SessionStats(), deltas)
            assert stepwise.counters() == at_once.counters()

    def test_order_independent(self):
        """Any permutation of deltas folds to the same counters."""
        deltas = make_deltas(40)
        shuffled = list(deltas)
        random.Random(3).shuffle(shuffled)
        assert fold(SessionStats(), deltas).counters() == fold(SessionStats(), shuffled).counters()

    def test_sums_match_deltas(self):
        """tool_calls equals the delta count; tokens equal the token sum."""
        deltas = make_deltas(25)
        stats = fold(SessionStats(), deltas)
        assert stats.tool_calls == len(deltas)
        assert stats.total_tokens_est == sum(d.tokens for d in deltas)
        assert stats.errors == sum(d.error for d in deltas)


class TestSessionStats:
    """Tests for SessionStats."""

    def test_error_rate_zero_calls(self):
        """No calls means a 0.0 error rate, not a division error."""
        assert SessionStats().error_rate == 0.0

    def test_error_rate_fraction(self):
        """error_rate is a fraction; error_pct a percentage."""
        stats = SessionStats(tool_calls=8, errors=2)
        assert stats.error_rate == 0.25
        assert stats.error_pct == 25.0

    def test_to_dict_roundtrip(self):
        """A stats document reads back with the same counters and extras."""
        stats = fold(SessionStats(extra={"stop_time": "t"}), make_deltas(5))
        restored = SessionStats.from_dict(stats.to_dict())
        assert restored.counters() == stats.counters()
        assert restored.extra["stop_time"] == "t"

    def test_summary(self):
        """The summary names the per-tool counters."""
        stats = fold(SessionStats(), [StatsDelta("Bash", tokens=4, duration_ms=10)])
        text = stats.summary()
        assert "Tool calls: 1" in text
        assert "Bash: 1 calls" in text


class TestStatsAggregator:
    """Tests for append-many / reduce-once."""

    def test_reduce_folds_and_clears(self, store: SessionStore):
        """reduce() folds the log into stats.json and leaves no batches."""
        aggregator = StatsAggregator(store)
        for delta in make_deltas(10):
            aggregator.record(delta)
        stats = aggregator.reduce()
        assert stats.tool_calls == 10
        assert store.read_stats_document()["tool_calls"] == 10
        assert not aggregator.deltas_path.exists()
        assert aggregator.pending() == []

    def test_reduce_twice_does_not_double_count(self, store: SessionStore):
        """A second reduce with no new deltas changes nothing."""
        aggregator = StatsAggregator(store)
        aggregator.record(StatsDelta("Bash", tokens=3))
        aggregator.reduce()
        assert aggregator.reduce().tool_calls == 1

    def test_incremental_reduce(self, store: SessionStore):
        """Deltas recorded after a reduce are added on the next one."""
        aggregator = StatsAggregator(store)
        deltas = make_deltas(20)
        for delta in deltas[:8]:
            aggregator.record(delta)
        aggregator.reduce()
        for delta in deltas[8:]:
            aggregator.record(delta)
        stats = aggregator.reduce()
        assert stats.counters() == fold(SessionStats(), deltas).counters()

    def test_crash_after_save_not_recounted(self, store: SessionStore):
        """A batch already marked consumed is deleted, not folded again."""
        aggregator = StatsAggregator(store)
        aggregator.record(StatsDelta("Bash", tokens=3))
        aggregator.reduce()

        # simulate a crash between saving stats.json and deleting the batch
        stats = aggregator.load()
        stats.consumed_batches.append("1-deadbeef")
        aggregator.save(stats)
        leftover = store.path(f"{CLAIM_PREFIX}1-deadbeef{CLAIM_SUFFIX}")
        leftover.write_text(json.dumps({"t": "Bash", "tok": 3, "err": 0, "dur": 0}) + "\n")

        result = aggregator.reduce()
        assert result.tool_calls == 1
        assert not leftover.exists()

    def test_unconsumed_leftover_batch_is_folded(self, store: SessionStore):
        """A claimed batch from an interrupted reduce is folded next time."""
        aggregator = StatsAggregator(store)
        leftover = store.path(f"{CLAIM_PREFIX}1-cafebabe{CLAIM_SUFFIX}")
        leftover.write_text(json.dumps({"t": "Read", "tok": 2, "err": 0, "dur": 5}) + "\n")
        aggregator.record(StatsDelta("Bash", tokens=1))
        stats = aggregator.reduce()
        assert stats.tool_calls == 2
        assert set(stats.tools) == {"Bash", "Read"}

    def test_malformed_delta_lines_skipped(self, store: SessionStore):
        """Bad lines in the log are skipped."""
        aggregator = StatsAggregator(store)
        aggregator.record(StatsDelta("Bash"))
        with open(aggregator.deltas_path, "a") as f:
            f.write("garbage\n")
            f.write(json.dumps({"t": "Bash", "tok": "x"}) + "\n")
        assert aggregator.reduce().tool_calls == 1

    def test_consumed_batches_capped(self, store: SessionStore):
        """Only the most recent batch ids are kept."""
        aggregator = StatsAggregator(store)
        for _ in range(MAX_CONSUMED_BATCHES + 5):
            aggregator.record(StatsDelta("Bash"))
            aggregator.reduce()
        stats = aggregator.load()
        assert stats.tool_calls == MAX_CONSUMED_BATCHES + 5
        assert len(stats.consumed_batches) == MAX_CONSUMED_BATCHES

    def test_reduce_writes_extra(self, store: SessionStore):
        """Extra fields are persisted alongside the counters."""
        stats = StatsAggregator(store).reduce(extra={"stop_time_ms": 123})
        assert stats.extra["stop_time_ms"] == 123
        assert store.read_stats_document()["stop_time_ms"] == 123

    def test_reduce_creates_missing_document(self, store: SessionStore):
        """With nothing pending, reduce still writes an initial stats.json."""
        StatsAggregator(store).reduce()
        assert store.read_stats_document()["tool_calls"] == 0

    def test_pending(self, store: SessionStore):
        """pending() lists unreduced deltas."""
        aggregator = StatsAggregator(store)
        aggregator.record(StatsDelta("Bash"))
        aggregator.record(StatsDelta("Read"))
        assert [d.tool for d in aggregator.pending()] == ["Bash", "Read"]

    def test_snapshot_does_not_consume(self, store: SessionStore):
        """snapshot() shows reduced plus pending totals and writes nothing."""
        aggregator = StatsAggregator(store)
        aggregator.record(StatsDelta("Bash", tokens=4))
        aggregator.reduce()
        aggregator.record(StatsDelta("Read", tokens=6, error=1))
        before = store.read_stats_document()

        snapshot = aggregator.snapshot()
        assert snapshot.tool_calls == 2
        assert snapshot.total_tokens_est == 10
        assert snapshot.errors == 1
        assert store.read_stats_document() == before
        assert aggregator.deltas_path.exists()
        assert aggregator.reduce().tool_calls == 2

    def test_snapshot_skips_consumed_batches(self, store: SessionStore):
        """A leftover batch already folded is not shown twice."""
        aggregator = StatsAggregator(store)
        aggregator.record(StatsDelta("Bash"))
        stats = aggregator.reduce()
        stats.consumed_batches.append("1-deadbeef")
        aggregator.save(stats)
        leftover = store.path(f"{CLAIM_PREFIX}1-deadbeef{CLAIM_SUFFIX}")
        leftover.write_text(json.dumps({"t": "Bash", "tok": 3, "err": 0, "dur": 0}) + "\n")
        assert aggregator.snapshot().tool_calls == 1
        assert aggregator.pending() == []


class TestHistoryAggregator:
    """Tests for cross-session aggregates."""

    def test_empty(self):
        """No records gives zeroed aggregates."""
        result = HistoryAggregator().aggregate([])
        assert result.sessions_count == 0
        assert result.avg_tokens == 0.0

    def test_averages_and_percentiles(self):
        """Averages, percentiles and tool usage are computed across sessions."""
        records = [
            {"tool_calls": 10, "total_tokens_est": 100, "errors": 1, "duration_ms": 1000,
             "error_rate": 0.1, "tools": {"Bash": {"calls": 6}, "Read": {"calls": 4}}},
            {"tool_calls": 20, "total_tokens_est": 300, "errors": 0, "duration_ms": 3000,
             "error_rate": 0.0, "tools": {"Bash": {"calls": 20}}},
        ]
        result = HistoryAggregator().aggregate(records)
        assert result.sessions_count == 2
        assert result.avg_tool_calls == 15.0
        assert result.avg_tokens == 200.0
        assert result.error_rate_avg == pytest.approx(0.05)
        assert result.p50_tokens == 200.0
        assert result.tool_usage == {"Bash": 26, "Read": 4}
        assert list(result.tool_usage) == ["Bash", "Read"]

    def test_legacy_percentage_error_rate(self):
        """Legacy "12.5" error rates are read as percentages."""
        result = HistoryAggregator().aggregate([{"error_rate": "50.0"}, {"error_rate": 0.0}])
        assert result.error_rate_avg == pytest.approx(0.25)
