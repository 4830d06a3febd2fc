"""Introspector records - the immutable units written to the session store."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional


class Phase(str, Enum):
    """Phase of a tool trace record."""
    PRE = "pre"
    POST = "post"
    FAILURE = "failure"
    SUBAGENT = "subagent"
    ROTATION = "rotation"


class Severity(str, Enum):
    """Ordinal risk level. Compare with rank, not with string ordering."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_least(self, other: "Severity") -> bool:
        return self.rank >= other.rank

    @classmethod
    def parse(cls, value: Any) -> "Severity":
        """Parse a severity, accepting the collector-side aliases WARNING and INFO.

        Raises:
            ValueError: If the value is not a known severity.
        """
        if isinstance(value, Severity):
            return value
        text = str(value or "").strip().upper()
        text = _SEVERITY_ALIASES.get(text, text)
        try:
            return cls(text)
        except ValueError:
            raise ValueError(f"Unknown severity: {value!r}")


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}

_SEVERITY_ALIASES = {"INFO": "LOW", "WARNING": "MEDIUM"}


def max_severity(severities: Iterable[Severity]) -> Optional[Severity]:
    """Highest severity in the iterable, or None when it is empty."""
    result: Optional[Severity] = None
    for severity in severities:
        if result is None or severity.rank > result.rank:
            result = severity
    return result


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def now_iso() -> str:
    """Current UTC time in ISO 8601 with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def estimate_tokens(text: Optional[str]) -> int:
    """Estimate token count from character count (chars/4, rounded up)."""
    if not text:
        return 0
    return (len(text) + 3) // 4


def _require(d: Dict[str, Any], fields: List[str], kind: str) -> None:
    missing = [f for f in fields if f not in d]
    if missing:
        raise ValueError(f"{kind} missing required fields: {missing}")


def _require_int(d: Dict[str, Any], name: str, kind: str, default: Optional[int] = None) -> int:
    value = d.get(name, default)
    # bool is an int subclass; a flag is never a valid counter
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{kind} field {name} must be int, got {type(value).__name__}")
    return value


@dataclass
class ToolInvocation:
    """One tool trace record (pre, post, failure, subagent or rotation)."""
    phase: Phase
    tool: str
    timestamp_ms: int
    trace_id: str = "unknown"
    correlation_key: str = ""
    input_tokens_est: int = 0
    result_tokens_est: int = 0
    duration_ms: int = 0
    has_error: bool = False
    error_snippet: str = ""
    input_summary: str = ""
    incomplete: bool = False
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "type": self.phase.value,
            "trace_id": self.trace_id,
            "tool": self.tool,
            "timestamp_ms": self.timestamp_ms,
        }
        if self.correlation_key:
            d["correlation_key"] = self.correlation_key
        if self.phase == Phase.PRE:
            d["input_tokens_est"] = self.input_tokens_est
            d["input_summary"] = self.input_summary
        elif self.phase in (Phase.POST, Phase.FAILURE, Phase.SUBAGENT):
            d["duration_ms"] = self.duration_ms
            d["result_tokens_est"] = self.result_tokens_est
            d["has_error"] = self.has_error
        if self.error_snippet:
            d["error_snippet"] = self.error_snippet
        if self.incomplete:
            d["_incomplete"] = True
        d.update(self.data)
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ToolInvocation":
        """Create a ToolInvocation from a stored record.

        Raises:
            ValueError: If required fields are missing or invalid.
        """
        _require(d, ["type", "timestamp_ms"], "ToolInvocation")
        try:
            phase = Phase(d["type"])
        except ValueError:
            raise ValueError(f"Unknown trace record type: {d['type']!r}")
        timestamp_ms = _require_int(d, "timestamp_ms", "ToolInvocation")

        known = {
            "type", "trace_id", "tool", "timestamp_ms", "correlation_key",
            "input_tokens_est", "result_tokens_est", "duration_ms", "has_error",
            "error_snippet", "input_summary", "_incomplete",
        }
        return cls(
            phase=phase,
            tool=str(d.get("tool", "")),
            timestamp_ms=timestamp_ms,
            trace_id=str(d.get("trace_id", "unknown")),
            correlation_key=str(d.get("correlation_key", "")),
            input_tokens_est=int(d.get("input_tokens_est", 0) or 0),
            result_tokens_est=int(d.get("result_tokens_est", 0) or 0),
            duration_ms=int(d.get("duration_ms", 0) or 0),
            has_error=bool(d.get("has_error", False)),
            error_snippet=str(d.get("error_snippet", "")),
            input_summary=str(d.get("input_summary", "")),
            incomplete=bool(d.get("_incomplete", False)),
            data={k: v for k, v in d.items() if k not in known},
        )


@dataclass(frozen=True)
class StatsDelta:
    """One completed call's contribution to the session counters.

    Serialized with the compact keys t/tok/err/dur to keep the append small.
    """
    tool: str
    tokens: int = 0
    error: int = 0
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"t": self.tool, "tok": self.tokens, "err": self.error, "dur": self.duration_ms}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "StatsDelta":
        """Create a StatsDelta from its compact or long form.

        Raises:
            ValueError: If the tool is missing or a counter is not an int.
        """
        if not isinstance(d, dict):
            raise ValueError(f"Expected dict, got {type(d).__name__}")
        tool = d.get("t", d.get("tool"))
        if not isinstance(tool, str) or not tool:
            raise ValueError("StatsDelta missing tool")
        normalized = {
            "tok": d.get("tok", d.get("tokens", 0)),
            "err": d.get("err", d.get("error", 0)),
            "dur": d.get("dur", d.get("duration_ms", 0)),
        }
        tokens = _require_int(normalized, "tok", "StatsDelta")
        error = _require_int(normalized, "err", "StatsDelta")
        duration = _require_int(normalized, "dur", "StatsDelta")
        if error not in (0, 1):
            raise ValueError(f"StatsDelta err must be 0 or 1, got {error}")
        return cls(tool=tool, tokens=max(tokens, 0), error=error, duration_ms=max(duration, 0))


class SecurityCategory(str, Enum):
    """What produced a security event."""
    PRE_COMMAND_CHECK = "pre_command_check"
    SENSITIVE_WRITE = "sensitive_write"
    DLP_INPUT = "dlp_input"
    DLP_OUTPUT = "dlp_output"
    STATIC_SCAN = "static_scan"
    OTEL_COMMAND = "otel_command"


class Action(str, Enum):
    LOGGED = "logged"
    BLOCKED = "blocked"


@dataclass
class SecurityEvent:
    """A classified, sanitized security observation.

    excerpt never holds a raw secret; producers pass it through redaction.excerpt().
    """
    timestamp_ms: int
    category: SecurityCategory
    severity: Severity
    tool: str = ""
    excerpt: str = ""
    action: Action = Action.LOGGED
    pattern: str = ""
    findings: List[str] = field(default_factory=list)
    trace_id: str = ""
    session_id: str = ""
    source: str = "hook"

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "timestamp_ms": self.timestamp_ms,
            "type": self.category.value,
            "risk_level": self.severity.value,
            "tool": self.tool,
            "excerpt": self.excerpt,
            "action": self.action.value,
            "source": self.source,
        }
        if self.pattern:
            d["pattern"] = self.pattern
        if self.findings:
            d["findings"] = list(self.findings)
        if self.trace_id:
            d["trace_id"] = self.trace_id
        if self.session_id:
            d["session_id"] = self.session_id
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SecurityEvent":
        """Create a SecurityEvent from a stored record.

        Accepts severity under risk_level or severity, and any action casing.

        Raises:
            ValueError: If required fields are missing or invalid.
        """
        _require(d, ["type"], "SecurityEvent")
        try:
            category = SecurityCategory(d["type"])
        except ValueError:
            raise ValueError(f"Unknown security event type: {d['type']!r}")
        severity = Severity.parse(d.get("risk_level", d.get("severity")))
        action_text = str(d.get("action", "logged")).lower()
        action = Action.BLOCKED if action_text == "blocked" else Action.LOGGED
        findings = d.get("findings", [])
        if isinstance(findings, str):
            findings = findings.split()
        return cls(
            timestamp_ms=int(d.get("timestamp_ms", 0) or 0),
            category=category,
            severity=severity,
            tool=str(d.get("tool", "")),
            excerpt=str(d.get("excerpt", "")),
            action=action,
            pattern=str(d.get("pattern", "")),
            findings=list(findings),
            trace_id=str(d.get("trace_id", "")),
            session_id=str(d.get("session_id", "")),
            source=str(d.get("source", "hook")),
        )


class AlertType(str, Enum):
    DLP_VIOLATION = "dlp_violation"
    DLP_INPUT = "dlp_input"
    COMMAND_BLOCKED = "command_blocked"
    WRITE_BLOCKED = "write_blocked"
    HIGH_ERROR_RATE = "high_error_rate"
    HIGH_TOKEN_USAGE = "high_token_usage"
    BASELINE_ANOMALY = "baseline_anomaly"
    SECURITY_SCAN = "security_scan"


@dataclass
class Alert:
    """A cross-session notice appended to alerts.jsonl."""
    severity: Severity
    type: AlertType
    message: str
    session_id: str
    timestamp: str = field(default_factory=now_iso)
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "timestamp": self.timestamp,
            "session_id": self.session_id,
            "severity": self.severity.value,
            "type": self.type.value,
            "message": self.message,
        }
        d.update(self.details)
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Alert":
        """Create an Alert from a stored record.

        Raises:
            ValueError: If required fields are missing or invalid.
        """
        _require(d, ["severity", "type", "message"], "Alert")
        try:
            alert_type = AlertType(d["type"])
        except ValueError:
            raise ValueError(f"Unknown alert type: {d['type']!r}")
        known = {"timestamp", "session_id", "severity", "type", "message"}
        return cls(
            severity=Severity.parse(d["severity"]),
            type=alert_type,
            message=str(d["message"]),
            session_id=str(d.get("session_id", "")),
            timestamp=str(d.get("timestamp", "")),
            details={k: v for k, v in d.items() if k not in known},
        )


@dataclass
class ApiTrace:
    """A model request observed through a host notification."""
    timestamp_ms: int
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0
    stop_reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "api",
            "timestamp_ms": self.timestamp_ms,
            "model": self.model,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "latency_ms": self.latency_ms,
            "stop_reason": self.stop_reason,
        }

    @classmethod
    def from_notification(cls, payload: Dict[str, Any], timestamp_ms: int) -> "ApiTrace":
        """Pull usage fields out of a notification payload, tolerating either nesting."""
        usage = payload.get("usage") if isinstance(payload.get("usage"), dict) else {}

        def _int(*values: Any) -> int:
            for value in values:
                if value is None or isinstance(value, bool):
                    continue
                try:
                    return int(value)
                except (TypeError, ValueError):
                    continue
            return 0

        return cls(
            timestamp_ms=timestamp_ms,
            model=str(payload.get("model") or "")[:100],
            input_tokens=_int(payload.get("input_tokens"), usage.get("input_tokens")),
            output_tokens=_int(payload.get("output_tokens"), usage.get("output_tokens")),
            latency_ms=_int(payload.get("latency_ms"), payload.get("duration_ms")),
            stop_reason=str(payload.get("stop_reason") or "")[:50],
        )
