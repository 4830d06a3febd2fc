"""Security baseline learned from prior sessions' security events."""

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..core.records import SecurityEvent, Severity, now_ms
from ..core.schema import CURRENT_VERSION, SCHEMA_KEY, upgrade
from ..core.store import GlobalStore, SessionStore, read_document, write_document

logger = logging.getLogger(__name__)

MS_PER_DAY = 86_400_000
TOP_PATTERNS = 10

CRITICAL_PRESENT = "critical_events_present"
ABOVE_AVERAGE = "above_average_events"


@dataclass
class ToolBaseline:
    """Historical security-event profile of one tool."""
    tool: str
    count: int = 0
    severities: Dict[str, int] = field(default_factory=dict)
    actions: Dict[str, int] = field(default_factory=dict)
    avg_per_session: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool": self.tool,
            "count": self.count,
            "severities": self.severities,
            "actions": self.actions,
            "avg_per_session": self.avg_per_session,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ToolBaseline":
        return cls(
            tool=str(d.get("tool", "")),
            count=int(d.get("count", 0) or 0),
            severities=dict(d.get("severities") or {}),
            actions=dict(d.get("actions") or {}),
            avg_per_session=float(d.get("avg_per_session", 0) or 0),
        )


@dataclass
class Baseline:
    """Per-tool frequency and severity distribution over a recency window."""
    tools: Dict[str, ToolBaseline] = field(default_factory=dict)
    sessions_analyzed: int = 0
    events_analyzed: int = 0
    severity_distribution: Dict[str, int] = field(default_factory=dict)
    top_patterns: List[Dict[str, Any]] = field(default_factory=list)
    window_days: int = 30
    updated_ms: int = field(default_factory=now_ms)

    @property
    def avg_events_per_session(self) -> float:
        return self.events_analyzed / max(self.sessions_analyzed, 1)

    @property
    def updated(self) -> str:
        stamp = datetime.fromtimestamp(self.updated_ms / 1000, tz=timezone.utc)
        return stamp.strftime("%Y-%m-%dT%H:%M:%SZ")

    def is_stale(self, max_age_days: int, now: Optional[int] = None) -> bool:
        age = (now if now is not None else now_ms()) - self.updated_ms
        return age > max_age_days * MS_PER_DAY

    def to_dict(self) -> Dict[str, Any]:
        return {
            SCHEMA_KEY: CURRENT_VERSION,
            "tools": [t.to_dict() for t in sorted(self.tools.values(), key=lambda t: t.tool)],
            "updated": self.updated,
            "updated_ms": self.updated_ms,
            "window_days": self.window_days,
            "sessions_analyzed": self.sessions_analyzed,
            "events_analyzed": self.events_analyzed,
            "avg_events_per_session": round(self.avg_events_per_session, 3),
            "severity_distribution": self.severity_distribution,
            "top_patterns": self.top_patterns,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Baseline":
        """Create a Baseline from its document, migrating older schemas.

        Raises:
            SchemaVersionError: If the document's schema is unsupported.
        """
        data = upgrade(d)
        tools = {}
        for item in data.get("tools") or []:
            if isinstance(item, dict):
                tool = ToolBaseline.from_dict(item)
                tools[tool.tool] = tool
        updated_ms = data.get("updated_ms")
        if not isinstance(updated_ms, int):
            updated_ms = _parse_updated(data.get("updated"))
        return cls(
            tools=tools,
            sessions_analyzed=int(data.get("sessions_analyzed", 0) or 0),
            events_analyzed=int(data.get("events_analyzed", 0) or 0),
            severity_distribution=dict(data.get("severity_distribution") or {}),
            top_patterns=list(data.get("top_patterns") or []),
            window_days=int(data.get("window_days", 30) or 30),
            updated_ms=updated_ms,
        )


def _parse_updated(value: Any) -> int:
    # Unparseable timestamps read as epoch, i.e. stale
    if not isinstance(value, str):
        return 0
    try:
        stamp = datetime.strptime(value, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)
    except ValueError:
        return 0
    return int(stamp.timestamp() * 1000)


def build_baseline(
    events: Iterable[Tuple[str, SecurityEvent]],
    session_ids: Optional[Iterable[str]] = None,
    window_days: int = 30,
) -> Baseline:
    """Group historical events by tool.

    Args:
        events: (session_id, event) pairs from sessions inside the window.
        session_ids: Every session in the window, including ones with no
            events. Defaults to the sessions that appear in events.
        window_days: Recorded on the baseline for reference.
    """
    by_tool: Dict[str, List[Tuple[str, SecurityEvent]]] = defaultdict(list)
    all_sessions = set()
    severity_distribution: Counter = Counter()
    patterns: Counter = Counter()
    total = 0

    for session_id, event in events:
        by_tool[event.tool or "unknown"].append((session_id, event))
        all_sessions.add(session_id)
        severity_distribution[event.severity.value] += 1
        patterns[event.pattern or "unknown"] += 1
        total += 1

    if session_ids is not None:
        all_sessions.update(session_ids)

    tools = {}
    for tool, items in by_tool.items():
        sessions = {sid for sid, _ in items}
        tools[tool] = ToolBaseline(
            tool=tool,
            count=len(items),
            severities=dict(Counter(e.severity.value for _, e in items)),
            actions=dict(Counter(e.action.value for _, e in items)),
            avg_per_session=round(len(items) / max(len(sessions), 1), 3),
        )

    return Baseline(
        tools=tools,
        sessions_analyzed=len(all_sessions),
        events_analyzed=total,
        severity_distribution=dict(severity_distribution),
        top_patterns=[
            {"pattern": pattern, "count": count}
            for pattern, count in patterns.most_common(TOP_PATTERNS)
        ],
        window_days=window_days,
    )


@dataclass
class BaselineComparison:
    """A session's security counters set against the baseline."""
    current_events: int
    baseline_avg: float
    critical_events: int
    high_events: int
    anomaly_indicators: List[str] = field(default_factory=list)
    tools: Dict[str, int] = field(default_factory=dict)
    status: str = "compared"

    @property
    def anomalous(self) -> bool:
        return bool(self.anomaly_indicators)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "current_events": self.current_events,
            "baseline_avg": round(self.baseline_avg, 3),
            "critical_events": self.critical_events,
            "high_events": self.high_events,
            "anomaly_indicators": self.anomaly_indicators,
            "tools": self.tools,
        }


def compare_to_baseline(
    events: List[SecurityEvent], baseline: Baseline, factor: float = 2.0
) -> BaselineComparison:
    """Indicators: any CRITICAL event, or more than factor x the historical average."""
    critical = sum(1 for e in events if e.severity == Severity.CRITICAL)
    high = sum(1 for e in events if e.severity == Severity.HIGH)
    avg = baseline.avg_events_per_session

    indicators = []
    if critical > 0:
        indicators.append(CRITICAL_PRESENT)
    if len(events) > avg * factor:
        indicators.append(ABOVE_AVERAGE)

    return BaselineComparison(
        current_events=len(events),
        baseline_avg=avg,
        critical_events=critical,
        high_events=high,
        anomaly_indicators=indicators,
        tools=dict(Counter(e.tool or "unknown" for e in events)),
    )


class BaselineStore:
    """Loads, rebuilds and persists <home>/security_baseline.json."""

    def __init__(self, global_store: GlobalStore, max_age_days: int = 30):
        self.global_store = global_store
        self.max_age_days = max_age_days

    @property
    def path(self):
        return self.global_store.path(GlobalStore.BASELINE)

    def load(self) -> Optional[Baseline]:
        """The stored baseline, or None if missing or unreadable."""
        try:
            return Baseline.from_dict(read_document(self.path))
        except FileNotFoundError:
            return None
        except ValueError as e:
            logger.warning("Ignoring unreadable baseline %s: %s", self.path, e)
            return None

    def save(self, baseline: Baseline) -> None:
        write_document(self.path, baseline.to_dict())

    def _session_start_ms(self, directory) -> int:
        meta = SessionStore(directory).read_meta()
        start = meta.get("start_time_ms")
        if isinstance(start, int) and not isinstance(start, bool) and start > 0:
            return start
        try:
            return int(directory.stat().st_mtime * 1000)
        except OSError:
            return 0

    def collect(
        self, exclude: Optional[str] = None, now: Optional[int] = None
    ) -> Tuple[List[str], List[Tuple[str, SecurityEvent]]]:
        """Session ids and (session_id, event) pairs inside the recency window."""
        cutoff = (now if now is not None else now_ms()) - self.max_age_days * MS_PER_DAY
        session_ids: List[str] = []
        events: List[Tuple[str, SecurityEvent]] = []
        for directory in self.global_store.list_session_dirs():
            session_id = directory.name
            if session_id == exclude or self._session_start_ms(directory) < cutoff:
                continue
            session_ids.append(session_id)
            for event in SessionStore(directory).iter_security_events():
                events.append((session_id, event))
        return session_ids, events

    def build(self, exclude: Optional[str] = None, now: Optional[int] = None) -> Baseline:
        session_ids, events = self.collect(exclude=exclude, now=now)
        baseline = build_baseline(events, session_ids, window_days=self.max_age_days)
        self.save(baseline)
        logger.info(
            "Baseline updated: %d events from %d sessions",
            baseline.events_analyzed, baseline.sessions_analyzed,
        )
        return baseline

    def load_or_build(self, exclude: Optional[str] = None) -> Baseline:
        """Stored baseline, rebuilt first when missing or older than max_age_days."""
        baseline = self.load()
        if baseline is None or baseline.is_stale(self.max_age_days):
            baseline = self.build(exclude=exclude)
        return baseline
