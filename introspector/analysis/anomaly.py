"""Session anomaly checks. These only ever produce alerts, never block."""

from dataclasses import dataclass
from typing import List, Optional

from ..config import IntrospectorConfig
from ..core.records import Alert, AlertType, Severity
from ..metrics.aggregators import SessionStats
from .baseline import CRITICAL_PRESENT, BaselineComparison


@dataclass(frozen=True)
class AnomalyThresholds:
    """Alerting knobs. Defaults are uncalibrated starting points."""
    error_rate: float = 0.20
    min_calls: int = 5
    token_cap: int = 100000
    baseline_factor: float = 2.0

    @classmethod
    def from_config(cls, config: IntrospectorConfig) -> "AnomalyThresholds":
        return cls(
            error_rate=config.error_rate_threshold,
            min_calls=config.min_calls_for_error_rate,
            token_cap=config.token_cap,
            baseline_factor=config.baseline_factor,
        )

    @property
    def error_pct(self) -> int:
        return int(round(self.error_rate * 100))


class AnomalyDetector:
    """Checks reduced session stats and baseline comparisons against thresholds."""

    def __init__(self, thresholds: Optional[AnomalyThresholds] = None):
        self.thresholds = thresholds or AnomalyThresholds()

    def check_stats(self, stats: SessionStats, session_id: str) -> List[Alert]:
        """Absolute-threshold alerts for error rate and token usage.

        The error-rate check needs more than min_calls calls; its percentage is
        truncated to a whole number before comparing.
        """
        alerts = []
        t = self.thresholds

        if stats.tool_calls > t.min_calls:
            whole_pct = stats.errors * 100 // stats.tool_calls
            if whole_pct > t.error_pct:
                alerts.append(Alert(
                    severity=Severity.HIGH,
                    type=AlertType.HIGH_ERROR_RATE,
                    message=f"Error rate {stats.error_pct:.1f}% exceeds threshold ({t.error_pct}%)",
                    session_id=session_id,
                    details={"tool_calls": stats.tool_calls, "errors": stats.errors},
                ))

        if stats.total_tokens_est > t.token_cap:
            alerts.append(Alert(
                severity=Severity.MEDIUM,
                type=AlertType.HIGH_TOKEN_USAGE,
                message=f"Token usage ~{stats.total_tokens_est} exceeds threshold ({t.token_cap})",
                session_id=session_id,
                details={"total_tokens_est": stats.total_tokens_est},
            ))
        return alerts

    def check_baseline(self, comparison: BaselineComparison, session_id: str) -> Optional[Alert]:
        """One baseline_anomaly alert when the comparison carries any indicator."""
        if not comparison.anomalous:
            return None
        severity = (
            Severity.CRITICAL if CRITICAL_PRESENT in comparison.anomaly_indicators
            else Severity.MEDIUM
        )
        return Alert(
            severity=severity,
            type=AlertType.BASELINE_ANOMALY,
            message=(
                f"Session security events deviate from baseline: "
                f"{', '.join(comparison.anomaly_indicators)}"
            ),
            session_id=session_id,
            details={
                "current_events": comparison.current_events,
                "baseline_avg": round(comparison.baseline_avg, 3),
                "critical_events": comparison.critical_events,
                "anomaly_indicators": list(comparison.anomaly_indicators),
            },
        )
