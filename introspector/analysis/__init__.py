"""Introspector Analysis - baseline learning and anomaly alerts."""

from .anomaly import AnomalyDetector, AnomalyThresholds
from .baseline import (
    ABOVE_AVERAGE,
    CRITICAL_PRESENT,
    Baseline,
    BaselineComparison,
    BaselineStore,
    ToolBaseline,
    build_baseline,
    compare_to_baseline,
)

__all__ = [
    "ABOVE_AVERAGE",
    "AnomalyDetector",
    "AnomalyThresholds",
    "Baseline",
    "BaselineComparison",
    "BaselineStore",
    "CRITICAL_PRESENT",
    "ToolBaseline",
    "build_baseline",
    "compare_to_baseline",
]
