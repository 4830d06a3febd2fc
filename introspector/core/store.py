"""Session and cross-session stores.

All state lives in files. Two write disciplines are used and never mixed:

- record streams (*.jsonl) are append-only; each record is one write() of one line,
  so concurrent handler processes can append without coordination;
- whole-file documents (*.json) are replaced by writing a private temporary file
  in the same directory and os.replace()-ing it over the target, so a reader sees
  either the old document or the new one, never a partial write.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

import yaml

from .records import Alert, ApiTrace, SecurityEvent, StatsDelta, ToolInvocation

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def append_jsonl(path: PathLike, record: Dict[str, Any]) -> None:
    """Append one JSON record as a single line."""
    path = Path(path)
    line = json.dumps(record, separators=(",", ":"), default=str) + "\n"
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(line)


def iter_jsonl(path: PathLike) -> Iterator[Dict[str, Any]]:
    """Yield each JSON object in a JSONL file, skipping malformed lines.

    A missing file yields nothing.
    """
    path = Path(path)
    try:
        f = open(path, encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return
    with f:
        for line_no, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Skipping malformed line %d in %s", line_no, path)
                continue
            if isinstance(record, dict):
                yield record


def count_lines(path: PathLike) -> int:
    """Number of non-empty lines in a file (0 if missing)."""
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            return sum(1 for line in f if line.strip())
    except FileNotFoundError:
        return 0


def write_text_atomic(path: PathLike, content: str) -> None:
    """Replace a file's content via a private temp file and os.replace()."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def write_document(path: PathLike, data: Dict[str, Any]) -> None:
    """Atomically write a whole-file document (JSON, or YAML by suffix)."""
    path = Path(path)
    if path.suffix in (".yaml", ".yml"):
        content = yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    else:
        content = json.dumps(data, indent=2, default=str)
    write_text_atomic(path, content)


def read_document(path: PathLike) -> Dict[str, Any]:
    """Load a whole-file document (JSON, or YAML by suffix).

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty, malformed, or not a mapping.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Document not found: {path}")

    content = path.read_text(encoding="utf-8")
    if not content.strip():
        raise ValueError(f"Document is empty: {path}")

    try:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(content)
        else:
            data = json.loads(content)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ValueError(f"Invalid document format in {path}: {e}")

    if not isinstance(data, dict):
        raise ValueError(f"Document must contain a mapping, got {type(data).__name__}: {path}")
    return data


def rotate_jsonl(path: PathLike, max_lines: int, keep_lines: int) -> int:
    """Trim a JSONL file to its last keep_lines lines once it exceeds max_lines.

    Returns:
        Number of lines dropped (0 if no rotation happened).
    """
    path = Path(path)
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            lines = f.readlines()
    except FileNotFoundError:
        return 0
    if len(lines) <= max_lines:
        return 0
    kept = lines[-keep_lines:] if keep_lines > 0 else []
    write_text_atomic(path, "".join(kept))
    return len(lines) - len(kept)


class SessionStore:
    """File layout of one session directory."""

    META = "meta.json"
    STATS = "stats.json"
    DELTAS = "stats_deltas.jsonl"
    TOOL_TRACES = "tool_traces.jsonl"
    API_TRACES = "api_traces.jsonl"
    SPANS = "otel_traces.jsonl"
    SECURITY_EVENTS = "security_events.jsonl"
    PARENT_SPAN = ".parent_span"
    PENDING_DIR = ".pending"

    def __init__(self, directory: PathLike):
        self.directory = Path(directory)

    def path(self, name: str) -> Path:
        return self.directory / name

    def ensure(self) -> None:
        """Create the directory and touch every record stream."""
        self.directory.mkdir(parents=True, exist_ok=True)
        for name in (self.TOOL_TRACES, self.API_TRACES, self.SPANS):
            self.path(name).touch(exist_ok=True)

    # record streams

    def append_trace(self, record: ToolInvocation) -> None:
        append_jsonl(self.path(self.TOOL_TRACES), record.to_dict())

    def iter_traces(self) -> Iterator[ToolInvocation]:
        for d in iter_jsonl(self.path(self.TOOL_TRACES)):
            try:
                yield ToolInvocation.from_dict(d)
            except ValueError as e:
                logger.debug("Skipping trace record: %s", e)

    def append_api_trace(self, record: ApiTrace) -> None:
        append_jsonl(self.path(self.API_TRACES), record.to_dict())

    def append_delta(self, delta: StatsDelta) -> None:
        append_jsonl(self.path(self.DELTAS), delta.to_dict())

    def append_span(self, span: Dict[str, Any]) -> None:
        append_jsonl(self.path(self.SPANS), span)

    def iter_span_dicts(self) -> Iterator[Dict[str, Any]]:
        return iter_jsonl(self.path(self.SPANS))

    def append_security_event(self, event: SecurityEvent) -> None:
        append_jsonl(self.path(self.SECURITY_EVENTS), event.to_dict())

    def iter_security_events(self) -> Iterator[SecurityEvent]:
        for d in iter_jsonl(self.path(self.SECURITY_EVENTS)):
            try:
                yield SecurityEvent.from_dict(d)
            except ValueError as e:
                logger.debug("Skipping security event: %s", e)

    # whole-file documents

    def read_meta(self) -> Dict[str, Any]:
        """Session metadata, or {} if absent or unreadable."""
        try:
            return read_document(self.path(self.META))
        except (FileNotFoundError, ValueError):
            return {}

    def write_meta(self, meta: Dict[str, Any]) -> None:
        write_document(self.path(self.META), meta)

    def read_stats_document(self) -> Optional[Dict[str, Any]]:
        try:
            return read_document(self.path(self.STATS))
        except FileNotFoundError:
            return None

    def write_stats_document(self, data: Dict[str, Any]) -> None:
        write_document(self.path(self.STATS), data)

    # current-parent pointer for synthesized spans

    def read_parent_span(self) -> str:
        try:
            return self.path(self.PARENT_SPAN).read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return ""

    def write_parent_span(self, span_id: str) -> None:
        write_text_atomic(self.path(self.PARENT_SPAN), span_id)

    def clear_parent_span(self) -> None:
        try:
            self.path(self.PARENT_SPAN).unlink()
        except FileNotFoundError:
            pass


class GlobalStore:
    """Cross-session files under the introspector home directory."""

    ALERTS = "alerts.jsonl"
    HISTORY = "session_history.jsonl"
    AGGREGATES = "aggregates.json"
    BASELINE = "security_baseline.json"
    CURRENT_SESSION = ".current_session"
    SESSIONS_DIR = "sessions"
    OTEL_EXPORT_DIR = "otel-export"
    COLLECTOR_PID = "otel-collector.pid"

    def __init__(self, home: PathLike):
        self.home = Path(home)

    def path(self, name: str) -> Path:
        return self.home / name

    @property
    def sessions_dir(self) -> Path:
        return self.home / self.SESSIONS_DIR

    @property
    def export_dir(self) -> Path:
        return self.home / self.OTEL_EXPORT_DIR

    @property
    def collector_pid_file(self) -> Path:
        return self.home / self.COLLECTOR_PID

    def session_dir(self, session_id: str) -> Path:
        return self.sessions_dir / session_id

    def list_session_dirs(self) -> List[Path]:
        if not self.sessions_dir.is_dir():
            return []
        return sorted(p for p in self.sessions_dir.iterdir() if p.is_dir())

    def append_alert(self, alert: Alert) -> None:
        append_jsonl(self.path(self.ALERTS), alert.to_dict())

    def iter_alerts(self) -> Iterator[Alert]:
        for d in iter_jsonl(self.path(self.ALERTS)):
            try:
                yield Alert.from_dict(d)
            except ValueError as e:
                logger.debug("Skipping alert: %s", e)

    def append_history(self, record: Dict[str, Any]) -> None:
        append_jsonl(self.path(self.HISTORY), record)

    def iter_history(self) -> Iterator[Dict[str, Any]]:
        return iter_jsonl(self.path(self.HISTORY))

    def write_aggregates(self, data: Dict[str, Any]) -> None:
        write_document(self.path(self.AGGREGATES), data)

    def read_current_session(self) -> Optional[Path]:
        """Cached session directory written at session start, if it still exists."""
        try:
            cached = self.path(self.CURRENT_SESSION).read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        if cached and Path(cached).is_dir():
            return Path(cached)
        return None

    def write_current_session(self, directory: Path) -> None:
        write_text_atomic(self.path(self.CURRENT_SESSION), str(directory))
