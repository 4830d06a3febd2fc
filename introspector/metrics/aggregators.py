"""Introspector aggregators - fold call deltas into session stats, sessions into history."""

import logging
import os
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from ..core.records import StatsDelta, now_ms
from ..core.schema import CURRENT_VERSION, SCHEMA_KEY, upgrade
from ..core.store import SessionStore, iter_jsonl

logger = logging.getLogger(__name__)

# Consumed batch ids kept in stats.json; older ids belong to batches long deleted
MAX_CONSUMED_BATCHES = 64

CLAIM_PREFIX = "stats_deltas."
CLAIM_SUFFIX = ".reducing.jsonl"


@dataclass
class ToolStats:
    """Per-tool counters."""

    calls: int = 0
    tokens: int = 0
    errors: int = 0
    total_duration_ms: int = 0

    @property
    def avg_duration_ms(self) -> float:
        return self.total_duration_ms / self.calls if self.calls else 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "calls": self.calls,
            "tokens": self.tokens,
            "errors": self.errors,
            "total_duration_ms": self.total_duration_ms,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ToolStats":
        return cls(
            calls=int(d.get("calls", 0) or 0),
            tokens=int(d.get("tokens", 0) or 0),
            errors=int(d.get("errors", 0) or 0),
            total_duration_ms=int(d.get("total_duration_ms", 0) or 0),
        )


@dataclass
class SessionStats:
    """Cumulative counters for one session; the fold of its StatsDeltas."""

    tool_calls: int = 0
    total_tokens_est: int = 0
    errors: int = 0
    total_duration_ms: int = 0
    tools: Dict[str, ToolStats] = field(default_factory=dict)
    consumed_batches: List[str] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def error_rate(self) -> float:
        """errors / tool_calls as a fraction; 0.0 with no calls."""
        if self.tool_calls <= 0:
            return 0.0
        return self.errors / self.tool_calls

    @property
    def error_pct(self) -> float:
        return self.error_rate * 100.0

    def copy(self) -> "SessionStats":
        return SessionStats(
            tool_calls=self.tool_calls,
            total_tokens_est=self.total_tokens_est,
            errors=self.errors,
            total_duration_ms=self.total_duration_ms,
            tools={name: ToolStats(**t.to_dict()) for name, t in self.tools.items()},
            consumed_batches=list(self.consumed_batches),
            extra=dict(self.extra),
        )

    def counters(self) -> Dict[str, Any]:
        """The counter fields only, for comparing two folds."""
        return {
            "tool_calls": self.tool_calls,
            "total_tokens_est": self.total_tokens_est,
            "errors": self.errors,
            "total_duration_ms": self.total_duration_ms,
            "tools": {name: t.to_dict() for name, t in sorted(self.tools.items())},
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        d: Dict[str, Any] = dict(self.extra)
        d.update(self.counters())
        d[SCHEMA_KEY] = CURRENT_VERSION
        d["error_rate"] = round(self.error_rate, 6)
        d["consumed_batches"] = list(self.consumed_batches)
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SessionStats":
        """Create SessionStats from a stats.json document, migrating older schemas.

        Raises:
            SchemaVersionError: If the document's schema is unsupported.
        """
        data = upgrade(d)
        known = {
            "tool_calls", "total_tokens_est", "errors", "total_duration_ms",
            "tools", "consumed_batches", "error_rate", SCHEMA_KEY,
        }
        tools = data.get("tools") or {}
        return cls(
            tool_calls=int(data.get("tool_calls", 0) or 0),
            total_tokens_est=int(data.get("total_tokens_est", 0) or 0),
            errors=int(data.get("errors", 0) or 0),
            total_duration_ms=int(data.get("total_duration_ms", 0) or 0),
            tools={
                str(name): ToolStats.from_dict(t)
                for name, t in tools.items()
                if isinstance(t, dict)
            },
            consumed_batches=[str(b) for b in data.get("consumed_batches") or []],
            extra={k: v for k, v in data.items() if k not in known},
        )

    def summary(self) -> str:
        """Generate a human-readable summary."""
        lines = [
            "=== Session Stats ===",
            f"Tool calls: {self.tool_calls}",
            f"Tokens (est): {self.total_tokens_est:,}",
            f"Errors: {self.errors} ({self.error_pct:.1f}%)",
            f"Total duration: {self.total_duration_ms}ms",
        ]
        if self.tools:
            lines.append("")
            lines.append("--- Per Tool ---")
            ranked = sorted(self.tools.items(), key=lambda kv: kv[1].calls, reverse=True)
            for name, t in ranked:
                lines.append(
                    f"  {name}: {t.calls} calls, {t.tokens} tokens, "
                    f"{t.errors} errors, avg {t.avg_duration_ms:.0f}ms"
                )
        return "\n".join(lines)


def fold(stats: SessionStats, deltas: Iterable[StatsDelta]) -> SessionStats:
    """Apply deltas to a copy of stats. Pure: stats is left untouched."""
    result = stats.copy()
    for delta in deltas:
        result.tool_calls += 1
        result.total_tokens_est += delta.tokens
        result.errors += delta.error
        result.total_duration_ms += delta.duration_ms
        tool = result.tools.setdefault(delta.tool, ToolStats())
        tool.calls += 1
        tool.tokens += delta.tokens
        tool.errors += delta.error
        tool.total_duration_ms += delta.duration_ms
    return result


def read_deltas(path: Path) -> List[StatsDelta]:
    """Parse a delta log, skipping lines that are not valid deltas."""
    deltas = []
    for d in iter_jsonl(path):
        try:
            deltas.append(StatsDelta.from_dict(d))
        except ValueError as e:
            logger.debug("Skipping delta in %s: %s", path, e)
    return deltas


class StatsAggregator:
    """Append-many / reduce-once aggregation over a session's delta log.

    Producers call record(), which only appends. The single consumer calls
    reduce(), which:
    1. claims the current log by renaming it to a unique batch name (new
       appends start a fresh log),
    2. folds every claimed batch whose id is not yet in consumed_batches,
    3. writes stats.json via temp file + rename with the batch ids recorded,
    4. deletes the claimed batch files.
    A crash between 3 and 4 leaves a batch that is already marked consumed, so
    re-running reduce() does not count it twice.

    A writer that opened the log just before the rename may land its line in
    the claimed batch after it was read; that line is lost. Appends hold the
    file open for a single write, so the window is small.
    """

    def __init__(self, store: SessionStore):
        self.store = store

    @property
    def deltas_path(self) -> Path:
        return self.store.path(SessionStore.DELTAS)

    def record(self, delta: StatsDelta) -> None:
        self.store.append_delta(delta)

    def load(self) -> SessionStats:
        """Persisted stats, or zero-valued stats if none were written yet."""
        data = self.store.read_stats_document()
        if data is None:
            return SessionStats()
        return SessionStats.from_dict(data)

    def save(self, stats: SessionStats) -> None:
        self.store.write_stats_document(stats.to_dict())

    def pending(self, consumed: Iterable[str] = ()) -> List[StatsDelta]:
        """Deltas not yet reduced (current log plus unconsumed claimed batches)."""
        consumed = set(consumed) or set(self.load().consumed_batches)
        deltas = []
        for path in self._claimed_batches():
            if self._batch_id(path) not in consumed:
                deltas.extend(read_deltas(path))
        deltas.extend(read_deltas(self.deltas_path))
        return deltas

    def snapshot(self) -> SessionStats:
        """Current totals including pending deltas, without claiming or saving.

        Safe to call from any process; only the session checkpoints reduce.
        """
        stats = self.load()
        return fold(stats, self.pending(stats.consumed_batches))

    def _claimed_batches(self) -> List[Path]:
        directory = self.store.directory
        if not directory.is_dir():
            return []
        return sorted(
            p for p in directory.iterdir()
            if p.name.startswith(CLAIM_PREFIX) and p.name.endswith(CLAIM_SUFFIX)
        )

    def _claim(self) -> None:
        batch_id = f"{now_ms()}-{uuid.uuid4().hex[:8]}"
        target = self.store.path(f"{CLAIM_PREFIX}{batch_id}{CLAIM_SUFFIX}")
        try:
            os.rename(self.deltas_path, target)
        except FileNotFoundError:
            pass

    @staticmethod
    def _batch_id(path: Path) -> str:
        return path.name[len(CLAIM_PREFIX): -len(CLAIM_SUFFIX)]

    def reduce(self, extra: Optional[Dict[str, Any]] = None) -> SessionStats:
        """Fold all unconsumed deltas into stats.json and return the result.

        Args:
            extra: Additional top-level fields to persist alongside the counters
                (stop_time, end_time, ...).
        """
        self._claim()
        batches = self._claimed_batches()

        stats = self.load()
        for path in batches:
            batch_id = self._batch_id(path)
            if batch_id in stats.consumed_batches:
                continue
            stats = fold(stats, read_deltas(path))
            stats.consumed_batches.append(batch_id)
        stats.consumed_batches = stats.consumed_batches[-MAX_CONSUMED_BATCHES:]
        if extra:
            stats.extra.update(extra)

        if batches or extra or self.store.read_stats_document() is None:
            self.save(stats)

        for path in batches:
            try:
                path.unlink()
            except FileNotFoundError:
                pass
        return stats


@dataclass
class HistoryAggregates:
    """Cross-session averages computed from session_history.jsonl."""

    sessions_count: int = 0
    avg_tool_calls: float = 0.0
    avg_tokens: float = 0.0
    avg_errors: float = 0.0
    avg_duration_ms: float = 0.0
    error_rate_avg: float = 0.0
    p50_tokens: float = 0.0
    p90_tokens: float = 0.0
    tool_usage: Dict[str, int] = field(default_factory=dict)
    last_updated_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "sessions_count": self.sessions_count,
            "avg_tool_calls": self.avg_tool_calls,
            "avg_tokens": self.avg_tokens,
            "avg_errors": self.avg_errors,
            "avg_duration_ms": self.avg_duration_ms,
            "error_rate_avg": self.error_rate_avg,
            "p50_tokens": self.p50_tokens,
            "p90_tokens": self.p90_tokens,
            "tool_usage": self.tool_usage,
            "last_updated_ms": self.last_updated_ms,
        }


def _percentile(sorted_values: List[float], p: float) -> float:
    """Calculate percentile from sorted values."""
    if not sorted_values:
        return 0.0
    k = (len(sorted_values) - 1) * p
    f = int(k)
    c = f + 1
    if c >= len(sorted_values):
        return sorted_values[-1]
    return sorted_values[f] + (k - f) * (sorted_values[c] - sorted_values[f])


def _error_rate_of(record: Dict[str, Any]) -> float:
    """Fractional error rate; legacy records hold a percentage string."""
    rate = record.get("error_rate", 0)
    if isinstance(rate, str):
        try:
            return float(rate) / 100.0
        except ValueError:
            return 0.0
    if isinstance(rate, (int, float)) and not isinstance(rate, bool):
        return float(rate)
    return 0.0


class HistoryAggregator:
    """Aggregates finalized session records."""

    def aggregate(self, records: List[Dict[str, Any]]) -> HistoryAggregates:
        if not records:
            return HistoryAggregates(last_updated_ms=now_ms())

        n = len(records)

        def _avg(key: str) -> float:
            return round(sum(float(r.get(key, 0) or 0) for r in records) / n, 1)

        tokens = sorted(float(r.get("total_tokens_est", 0) or 0) for r in records)
        tool_usage: Dict[str, int] = {}
        for r in records:
            tools = r.get("tools") or {}
            if not isinstance(tools, dict):
                continue
            for name, t in tools.items():
                if isinstance(t, dict):
                    tool_usage[name] = tool_usage.get(name, 0) + int(t.get("calls", 0) or 0)

        return HistoryAggregates(
            sessions_count=n,
            avg_tool_calls=_avg("tool_calls"),
            avg_tokens=_avg("total_tokens_est"),
            avg_errors=_avg("errors"),
            avg_duration_ms=_avg("duration_ms"),
            error_rate_avg=round(sum(_error_rate_of(r) for r in records) / n, 4),
            p50_tokens=_percentile(tokens, 0.5),
            p90_tokens=_percentile(tokens, 0.9),
            tool_usage=dict(sorted(tool_usage.items(), key=lambda kv: kv[1], reverse=True)),
            last_updated_ms=now_ms(),
        )
