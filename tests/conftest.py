"""Shared fixtures for introspector tests."""

import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from introspector.config import IntrospectorConfig
from introspector.core.session import SessionContext, SessionResolver
from introspector.core.store import GlobalStore, SessionStore

NANOS_PER_MS = 1_000_000


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Undo any logging setup a CLI run or test performed."""
    yield
    package_logger = logging.getLogger("introspector")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.propagate = True
    package_logger.setLevel(logging.NOTSET)


@pytest.fixture
def base_ms() -> int:
    """Fixed base timestamp (2025-01-15 10:00:00 UTC) for reproducible tests."""
    return 1_736_935_200_000


@pytest.fixture
def home(tmp_path: Path) -> Path:
    """Introspector home directory inside the test's temp dir."""
    path = tmp_path / "pi-home"
    path.mkdir()
    return path


@pytest.fixture
def config(home: Path) -> IntrospectorConfig:
    """Default configuration rooted at the temp home."""
    return IntrospectorConfig(home=home, show_reminder=False)


@pytest.fixture
def environ(home: Path) -> Dict[str, str]:
    """Minimal environment for handler and CLI runs."""
    return {"PI_HOME": str(home)}


@pytest.fixture
def global_store(home: Path) -> GlobalStore:
    return GlobalStore(home)


@pytest.fixture
def session(home: Path) -> SessionContext:
    """A started session with its directory created."""
    return SessionResolver(home, {}).start("test-session")


@pytest.fixture
def store(session: SessionContext) -> SessionStore:
    return session.store


def otlp_attr(key: str, value: Any) -> Dict[str, Any]:
    """Encode one attribute the way the collector's file exporter does."""
    if isinstance(value, bool):
        wrapped = {"boolValue": value}
    elif isinstance(value, int):
        wrapped = {"intValue": str(value)}
    elif isinstance(value, float):
        wrapped = {"doubleValue": value}
    else:
        wrapped = {"stringValue": str(value)}
    return {"key": key, "value": wrapped}


def otlp_span(
    span_id: str,
    start_ms: int,
    name: str = "claude_code.tool_result",
    duration_ms: int = 100,
    attributes: Optional[Dict[str, Any]] = None,
    kind: int = 1,
    status_code: int = 1,
) -> Dict[str, Any]:
    return {
        "traceId": "a" * 32,
        "spanId": span_id,
        "name": name,
        "kind": kind,
        "startTimeUnixNano": str(start_ms * NANOS_PER_MS),
        "endTimeUnixNano": str((start_ms + duration_ms) * NANOS_PER_MS),
        "attributes": [otlp_attr(k, v) for k, v in (attributes or {}).items()],
        "status": {"code": status_code},
    }


def otlp_document(spans: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "resourceSpans": [
            {
                "resource": {"attributes": [otlp_attr("service.name", "claude-code")]},
                "scopeSpans": [{"scope": {"name": "claude_code"}, "spans": spans}],
            }
        ]
    }


@pytest.fixture
def write_export(home: Path) -> Callable[..., Path]:
    """Write OTLP spans into <home>/otel-export as a collector would."""

    def _write(spans: List[Dict[str, Any]], name: str = "traces.jsonl") -> Path:
        export_dir = home / GlobalStore.OTEL_EXPORT_DIR
        export_dir.mkdir(parents=True, exist_ok=True)
        path = export_dir / name
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(otlp_document(spans)) + "\n")
        return path

    return _write


def read_jsonl(path: Path) -> List[Dict[str, Any]]:
    """Every record in a JSONL file (empty list if missing)."""
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]
