"""Cross-process call correlation.

Pre and post handlers run in separate processes with no shared memory. They
rendezvous through a keyed, expiring map on disk: the pre handler stores
{start_ms, trace_id} under a key derived from (tool, input) and the post handler
takes it back out.

The key is a content hash, so two simultaneous calls of the same tool with
identical input map to the same key. put() reports that collision; take() then
pairs whichever entry is present, and the second completion is recorded as
incomplete. No counter or nonce is mixed into the key.
"""

import hashlib
import json
import logging
import os
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple

from .core.store import write_text_atomic

logger = logging.getLogger(__name__)

ENTRY_SUFFIX = ".json"
CLAIM_SUFFIX = ".claim"

# Start time used for completions with no matching begin
SENTINEL_START_MS = 0


def correlation_key(tool: str, tool_input: Any) -> str:
    """Deterministic key for a call: md5 of tool name + serialized input."""
    if isinstance(tool_input, str):
        serialized = tool_input
    else:
        serialized = json.dumps(tool_input, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.md5(f"{tool}{serialized}".encode("utf-8")).hexdigest()[:16]


class KeyedExpiringMap:
    """A directory of small JSON entries, one file per key.

    put() writes via temp file + rename, so readers never see a partial entry.
    take() renames the entry to a claim name first; only one process can win
    that rename, which makes take() exactly-once per put().
    """

    def __init__(self, arena: Path, ttl_seconds: float = 3600):
        self.arena = Path(arena)
        self.ttl_seconds = ttl_seconds

    def _entry(self, key: str) -> Path:
        return self.arena / f"{key}{ENTRY_SUFFIX}"

    def put(self, key: str, value: Dict[str, Any]) -> bool:
        """Store value under key.

        Returns:
            True if an entry for key was already present (a collision).
        """
        entry = self._entry(key)
        collided = entry.exists()
        if collided:
            logger.debug("Correlation key collision: %s", key)
        write_text_atomic(entry, json.dumps(value, separators=(",", ":")))
        return collided

    def take(self, key: str) -> Optional[Dict[str, Any]]:
        """Remove and return the entry for key, or None if absent or expired."""
        entry = self._entry(key)
        claim = entry.with_name(f"{entry.name}{CLAIM_SUFFIX}.{os.getpid()}.{uuid.uuid4().hex[:8]}")
        try:
            os.rename(entry, claim)
        except FileNotFoundError:
            return None
        try:
            if self._expired(claim):
                return None
            with open(claim, encoding="utf-8") as f:
                value = json.load(f)
        except (OSError, ValueError):
            logger.debug("Unreadable correlation entry: %s", key, exc_info=True)
            return None
        finally:
            try:
                os.unlink(claim)
            except FileNotFoundError:
                pass
        return value if isinstance(value, dict) else None

    def contains(self, key: str) -> bool:
        return self._entry(key).exists()

    def keys(self) -> Iterator[str]:
        if not self.arena.is_dir():
            return
        for path in self.arena.iterdir():
            if path.name.endswith(ENTRY_SUFFIX) and not path.name.startswith("."):
                yield path.name[: -len(ENTRY_SUFFIX)]

    def __len__(self) -> int:
        return sum(1 for _ in self.keys())

    def _expired(self, path: Path, now: Optional[float] = None) -> bool:
        try:
            age = (now if now is not None else time.time()) - path.stat().st_mtime
        except FileNotFoundError:
            return True
        return age > self.ttl_seconds

    def sweep(self, now: Optional[float] = None) -> int:
        """Delete expired entries and stale claims. Returns the number removed."""
        if not self.arena.is_dir():
            return 0
        removed = 0
        for path in self.arena.iterdir():
            if not path.is_file() or not self._expired(path, now):
                continue
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                pass
        return removed

    def clear(self) -> None:
        if not self.arena.is_dir():
            return
        for path in self.arena.iterdir():
            if path.is_file():
                try:
                    path.unlink()
                except FileNotFoundError:
                    pass


@dataclass
class Correlation:
    """Result of begin()."""
    key: str
    trace_id: str
    start_ms: int
    collided: bool = False


@dataclass
class Completion:
    """Result of end()."""
    key: str
    trace_id: str
    start_ms: int
    end_ms: int
    matched: bool

    @property
    def elapsed_ms(self) -> int:
        # No begin means no elapsed time, not end - 0
        if not self.matched:
            return 0
        return max(self.end_ms - self.start_ms, 0)


class CorrelationTracker:
    """Pairs begin/end events for one session across handler processes.

    Usage:
        tracker = CorrelationTracker(session_dir / ".pending")
        c = tracker.begin("Bash", {"command": "ls"}, now_ms)
        ...  # another process
        done = tracker.end(tracker.key_for("Bash", {"command": "ls"}), now_ms)
        done.elapsed_ms, done.matched
    """

    def __init__(self, arena: Path, ttl_seconds: float = 3600):
        self.map = KeyedExpiringMap(arena, ttl_seconds)

    @staticmethod
    def key_for(tool: str, tool_input: Any) -> str:
        return correlation_key(tool, tool_input)

    def begin(self, tool: str, tool_input: Any, start_ms: int) -> Correlation:
        key = self.key_for(tool, tool_input)
        trace_id = uuid.uuid4().hex[:16]
        collided = self.map.put(key, {"start_ms": start_ms, "trace_id": trace_id})
        return Correlation(key=key, trace_id=trace_id, start_ms=start_ms, collided=collided)

    def end(self, key: str, end_ms: int) -> Completion:
        entry = self.map.take(key)
        if entry is None:
            return Completion(key, "unknown", SENTINEL_START_MS, end_ms, matched=False)
        start_ms, trace_id = _parse_entry(entry)
        if start_ms is None:
            return Completion(key, trace_id, SENTINEL_START_MS, end_ms, matched=False)
        return Completion(key, trace_id, start_ms, end_ms, matched=True)

    def sweep(self, now: Optional[float] = None) -> int:
        return self.map.sweep(now)

    def clear(self) -> None:
        self.map.clear()


def _parse_entry(entry: Dict[str, Any]) -> Tuple[Optional[int], str]:
    trace_id = str(entry.get("trace_id") or "unknown")
    start = entry.get("start_ms")
    if isinstance(start, bool) or not isinstance(start, int):
        return None, trace_id
    return start, trace_id
