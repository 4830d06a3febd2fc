"""Span model shared by synthesized (Tier 0) and ingested (Tier 1) traces."""

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict


class SpanKind(str, Enum):
    INTERNAL = "INTERNAL"
    SERVER = "SERVER"
    CLIENT = "CLIENT"
    PRODUCER = "PRODUCER"
    CONSUMER = "CONSUMER"

    @classmethod
    def from_code(cls, code: Any) -> "SpanKind":
        """Map an OTLP integer kind code; anything unrecognized is INTERNAL."""
        return _KIND_CODES.get(_as_int(code, 1), cls.INTERNAL)


class SpanStatus(str, Enum):
    UNSET = "UNSET"
    OK = "OK"
    ERROR = "ERROR"

    @classmethod
    def from_code(cls, code: Any) -> "SpanStatus":
        """Map an OTLP status code: 0 UNSET, 2 ERROR, anything else OK."""
        value = _as_int(code, 1)
        if value == 0:
            return cls.UNSET
        if value == 2:
            return cls.ERROR
        return cls.OK


class Provenance(str, Enum):
    """Where a span came from. One session never holds both."""
    SYNTHESIZED = "synthesized"
    INGESTED = "native_otel"


_KIND_CODES = {
    2: SpanKind.SERVER,
    3: SpanKind.CLIENT,
    4: SpanKind.PRODUCER,
    5: SpanKind.CONSUMER,
}


def _as_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def session_trace_id(session_id: str) -> str:
    """Trace id shared by every synthesized span of a session."""
    return hashlib.md5(session_id.encode("utf-8")).hexdigest()


@dataclass
class Span:
    """One timed unit of work in a session trace."""
    trace_id: str
    span_id: str
    name: str
    start_time_ms: int
    end_time_ms: int
    parent_span_id: str = ""
    kind: SpanKind = SpanKind.INTERNAL
    status: SpanStatus = SpanStatus.OK
    attributes: Dict[str, Any] = field(default_factory=dict)
    provenance: Provenance = Provenance.SYNTHESIZED
    incomplete: bool = False

    @property
    def duration_ms(self) -> int:
        return max(self.end_time_ms - self.start_time_ms, 0)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "name": self.name,
            "kind": self.kind.value,
            "start_time_ms": self.start_time_ms,
            "end_time_ms": self.end_time_ms,
            "duration_ms": self.duration_ms,
            "attributes": self.attributes,
            "status": self.status.value,
            "_source": self.provenance.value,
        }
        if self.incomplete:
            d["_incomplete"] = True
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Span":
        """Create a Span from a stored record.

        Raises:
            ValueError: If required fields are missing or invalid.
        """
        missing = [k for k in ("span_id", "name", "start_time_ms") if k not in d]
        if missing:
            raise ValueError(f"Span missing required fields: {missing}")
        try:
            kind = SpanKind(d.get("kind", "INTERNAL"))
            status = SpanStatus(d.get("status", "OK"))
            provenance = Provenance(d.get("_source", Provenance.SYNTHESIZED.value))
        except ValueError as e:
            raise ValueError(f"Invalid span field: {e}")
        start = _as_int(d["start_time_ms"], 0)
        attributes = d.get("attributes")
        return cls(
            trace_id=str(d.get("trace_id", "")),
            span_id=str(d["span_id"]),
            name=str(d["name"]),
            start_time_ms=start,
            end_time_ms=_as_int(d.get("end_time_ms", start), start),
            parent_span_id=str(d.get("parent_span_id") or ""),
            kind=kind,
            status=status,
            attributes=attributes if isinstance(attributes, dict) else {},
            provenance=provenance,
            incomplete=bool(d.get("_incomplete", False)),
        )
