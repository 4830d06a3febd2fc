"""Introspector Metrics - session stats reduction and cross-session history.

Usage:
    from introspector.metrics import StatsAggregator

    aggregator = StatsAggregator(ctx.store)
    aggregator.record(StatsDelta(tool="Bash", tokens=12, error=0, duration_ms=40))
    stats = aggregator.reduce()
    print(stats.summary())
"""

from .aggregators import (
    HistoryAggregates,
    HistoryAggregator,
    SessionStats,
    StatsAggregator,
    ToolStats,
    fold,
    read_deltas,
)

__all__ = [
    "HistoryAggregates",
    "HistoryAggregator",
    "SessionStats",
    "StatsAggregator",
    "ToolStats",
    "fold",
    "read_deltas",
]
