"""Tier-1 ingestion of collector-exported OTLP JSON.

The collector's file exporter writes OTLP JSON objects, either one per line
(.jsonl) or as a whole document (.json):

    {"resourceSpans": [{"resource": {...},
                        "scopeSpans": [{"spans": [{"traceId": ..., "spanId": ...,
                                                   "startTimeUnixNano": "...",
                                                   "attributes": [{"key": ..., "value": {...}}],
                                                   "status": {"code": 0}}]}]}]}

Each span is normalized into the same shape synthesized spans use and tagged
as ingested. Malformed batches and spans are skipped one at a time.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Set

from ..core.store import SessionStore
from .spans import Provenance, Span, SpanKind, SpanStatus
from .tiers import CollectionTier

logger = logging.getLogger(__name__)

EXPORT_PATTERNS = ("*.json", "*.jsonl")
NANOS_PER_MS = 1_000_000


@dataclass
class MergeResult:
    """Outcome of one merge pass."""
    merged: int = 0
    duplicates: int = 0
    out_of_window: int = 0
    malformed: int = 0
    files: int = 0
    spans: List[Span] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "merged": self.merged,
            "duplicates": self.duplicates,
            "out_of_window": self.out_of_window,
            "malformed": self.malformed,
            "files": self.files,
        }


def flatten_value(value: Any) -> Any:
    """Unwrap an OTLP AnyValue into a plain Python value."""
    if not isinstance(value, dict):
        return value
    if "stringValue" in value:
        return value["stringValue"]
    if "intValue" in value:
        try:
            return int(value["intValue"])
        except (TypeError, ValueError):
            return value["intValue"]
    if "doubleValue" in value:
        try:
            return float(value["doubleValue"])
        except (TypeError, ValueError):
            return value["doubleValue"]
    if "boolValue" in value:
        return bool(value["boolValue"])
    if "arrayValue" in value:
        items = (value["arrayValue"] or {}).get("values") or []
        return [flatten_value(v) for v in items]
    if "kvlistValue" in value:
        return flatten_attributes((value["kvlistValue"] or {}).get("values") or [])
    if "bytesValue" in value:
        return value["bytesValue"]
    return ""


def flatten_attributes(attributes: Any) -> Dict[str, Any]:
    """Turn an OTLP [{key, value}] list into a flat dict. Bad entries are dropped."""
    flat: Dict[str, Any] = {}
    if not isinstance(attributes, list):
        return flat
    for item in attributes:
        if not isinstance(item, dict) or "key" not in item:
            continue
        flat[str(item["key"])] = flatten_value(item.get("value"))
    return flat


def nanos_to_ms(value: Any) -> int:
    """OTLP nanosecond timestamps arrive as strings; floor to integer ms."""
    if isinstance(value, bool) or value is None:
        raise ValueError("missing timestamp")
    return int(value) // NANOS_PER_MS


def _number(value: Any, default: float = 0) -> float:
    if isinstance(value, bool) or value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _int(value: Any) -> int:
    return int(_number(value))


def parse_tool_parameters(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def normalize_attributes(attrs: Dict[str, Any]) -> Dict[str, Any]:
    """Map collector attributes onto the GenAI attribute set used by every span."""
    input_tokens = _int(attrs.get("gen_ai.usage.input_tokens", attrs.get("input_tokens")))
    output_tokens = _int(attrs.get("gen_ai.usage.output_tokens", attrs.get("output_tokens")))
    normalized = {
        "gen_ai.system": attrs.get("gen_ai.system") or "anthropic",
        "gen_ai.operation.name": attrs.get("gen_ai.operation.name", ""),
        "gen_ai.request.model": attrs.get("gen_ai.request.model") or attrs.get("model", ""),
        "gen_ai.response.id": attrs.get("gen_ai.response.id", ""),
        "gen_ai.tool.name": attrs.get("gen_ai.tool.name") or attrs.get("tool_name", ""),
        "tool_parameters": parse_tool_parameters(attrs.get("tool_parameters")),
        "gen_ai.usage.input_tokens": input_tokens,
        "gen_ai.usage.output_tokens": output_tokens,
        "gen_ai.usage.total_tokens": input_tokens + output_tokens,
        "decision": attrs.get("decision", ""),
        "decision_source": attrs.get("source", ""),
        "cost_usd": _number(attrs.get("cost_usd")),
        "session.id": attrs.get("session.id", ""),
    }
    if "bash_command" in attrs:
        normalized["bash_command"] = attrs["bash_command"]
    return normalized


def normalize_span(raw: Dict[str, Any]) -> Span:
    """Convert one OTLP span into a Span.

    Raises:
        ValueError: If the span lacks an id or a parseable start time.
    """
    if not isinstance(raw, dict):
        raise ValueError(f"Expected span object, got {type(raw).__name__}")
    span_id = raw.get("spanId")
    if not span_id:
        raise ValueError("Span missing spanId")
    try:
        start_ms = nanos_to_ms(raw.get("startTimeUnixNano", "0"))
        end_ms = nanos_to_ms(raw.get("endTimeUnixNano", raw.get("startTimeUnixNano", "0")))
    except (TypeError, ValueError) as e:
        raise ValueError(f"Span {span_id} has invalid timestamps: {e}")

    status = raw.get("status") if isinstance(raw.get("status"), dict) else {}
    return Span(
        trace_id=str(raw.get("traceId", "")),
        span_id=str(span_id),
        parent_span_id=str(raw.get("parentSpanId") or ""),
        name=str(raw.get("name", "")),
        kind=SpanKind.from_code(raw.get("kind", 1)),
        status=SpanStatus.from_code(status.get("code", 1)),
        start_time_ms=start_ms,
        end_time_ms=max(end_ms, start_ms),
        attributes=normalize_attributes(flatten_attributes(raw.get("attributes"))),
        provenance=Provenance.INGESTED,
    )


def iter_batches(path: Path) -> Iterator[Dict[str, Any]]:
    """Yield the top-level OTLP objects in an export file.

    A .json file may hold one document; otherwise each line is its own object.
    """
    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.debug("Cannot read export file %s: %s", path, e)
        return
    if not content.strip():
        return
    try:
        whole = json.loads(content)
    except json.JSONDecodeError:
        whole = None
    if isinstance(whole, dict):
        yield whole
        return
    if isinstance(whole, list):
        for item in whole:
            if isinstance(item, dict):
                yield item
        return
    for line_no, line in enumerate(content.splitlines(), 1):
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed batch at %s:%d", path, line_no)
            continue
        if isinstance(obj, dict):
            yield obj


def iter_raw_spans(batch: Dict[str, Any]) -> Iterator[Any]:
    """Yield the raw span objects of one batch.

    A level that is not a list of objects is yielded as-is, so normalize_span
    rejects it and the caller counts it malformed instead of aborting the pass.
    """
    resource_list = batch.get("resourceSpans") or []
    if not isinstance(resource_list, list):
        yield resource_list
        return
    for resource_spans in resource_list:
        if not isinstance(resource_spans, dict):
            yield resource_spans
            continue
        scope_list = resource_spans.get("scopeSpans") or []
        if not isinstance(scope_list, list):
            yield scope_list
            continue
        for scope_spans in scope_list:
            if not isinstance(scope_spans, dict):
                yield scope_spans
                continue
            spans = scope_spans.get("spans") or []
            if not isinstance(spans, list):
                yield spans
                continue
            yield from spans


class OtlpMerger:
    """Merges collector output into a session's span stream (Tier 1 only)."""

    def __init__(self, export_dir: Path, store: SessionStore, tier: CollectionTier):
        self.export_dir = Path(export_dir)
        self.store = store
        self.tier = tier

    def export_files(self) -> List[Path]:
        if not self.export_dir.is_dir():
            return []
        files: Set[Path] = set()
        for pattern in EXPORT_PATTERNS:
            files.update(p for p in self.export_dir.glob(pattern) if p.is_file())
        return sorted(files)

    def _existing_span_ids(self) -> Set[str]:
        return {
            str(d["span_id"]) for d in self.store.iter_span_dicts() if d.get("span_id")
        }

    def merge(self, window_start_ms: int, window_end_ms: Optional[int] = None) -> MergeResult:
        """Append every new in-window span from the export dir.

        Spans already present (by span_id) are skipped, so re-running is safe.
        At Tier 0 nothing is merged.
        """
        result = MergeResult()
        if self.tier != CollectionTier.COLLECTOR:
            logger.debug("Merge skipped: session is not at the collector tier")
            return result

        seen = self._existing_span_ids()
        for path in self.export_files():
            result.files += 1
            for batch in iter_batches(path):
                for raw in iter_raw_spans(batch):
                    try:
                        span = normalize_span(raw)
                    except ValueError as e:
                        result.malformed += 1
                        logger.debug("Skipping span in %s: %s", path.name, e)
                        continue
                    if span.start_time_ms < window_start_ms or (
                        window_end_ms is not None and span.start_time_ms > window_end_ms
                    ):
                        result.out_of_window += 1
                        continue
                    if span.span_id in seen:
                        result.duplicates += 1
                        continue
                    self.store.append_span(span.to_dict())
                    seen.add(span.span_id)
                    result.spans.append(span)
                    result.merged += 1

        if result.merged:
            logger.info("Merged %d collector spans into %s", result.merged, self.store.directory.name)
        return result
