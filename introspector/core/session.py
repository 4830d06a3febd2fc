"""Session identity and context.

SessionResolver is the one place ambient identity (environment variables, the
cached current-session pointer) is read. Everything downstream receives an
explicit SessionContext.
"""

import logging
import os
import platform
import re
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .records import now_iso, now_ms
from .store import GlobalStore, SessionStore

logger = logging.getLogger(__name__)

_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def safe_session_id(raw: str) -> str:
    """Reduce an externally supplied id to a safe directory name."""
    cleaned = _UNSAFE_ID_CHARS.sub("_", raw.strip())[:128].lstrip(".")
    return cleaned or "unknown"


def new_session_id(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).strftime("session-%Y%m%d-%H%M%S")


@dataclass
class SessionContext:
    """Explicit handle on one session: its id, directory and home."""
    session_id: str
    directory: Path
    home: Path

    @property
    def store(self) -> SessionStore:
        return SessionStore(self.directory)

    @property
    def global_store(self) -> GlobalStore:
        return GlobalStore(self.home)


@dataclass
class SessionMeta:
    """Contents of meta.json."""
    session_id: str
    start_time: str = field(default_factory=now_iso)
    start_time_ms: int = field(default_factory=now_ms)
    working_dir: str = ""
    git_branch: Optional[str] = None
    git_commit: Optional[str] = None
    collection_tier: int = 0
    platform: str = field(default_factory=lambda: platform.system().lower())
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "session_id": self.session_id,
            "start_time": self.start_time,
            "start_time_ms": self.start_time_ms,
            "working_dir": self.working_dir,
            "git_branch": self.git_branch,
            "git_commit": self.git_commit,
            "collection_tier": self.collection_tier,
            "platform": self.platform,
        }
        d.update(self.extra)
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SessionMeta":
        """Create SessionMeta from meta.json content.

        Raises:
            ValueError: If session_id is missing.
        """
        if "session_id" not in d:
            raise ValueError("SessionMeta missing required fields: ['session_id']")
        known = {
            "session_id", "start_time", "start_time_ms", "working_dir",
            "git_branch", "git_commit", "collection_tier", "platform",
        }
        tier = d.get("collection_tier", 0)
        return cls(
            session_id=str(d["session_id"]),
            start_time=str(d.get("start_time", "")),
            start_time_ms=int(d.get("start_time_ms", 0) or 0),
            working_dir=str(d.get("working_dir", "")),
            git_branch=d.get("git_branch"),
            git_commit=d.get("git_commit"),
            collection_tier=tier if tier in (0, 1) else 0,
            platform=str(d.get("platform", "")),
            extra={k: v for k, v in d.items() if k not in known},
        )


def get_git_metadata(cwd: Optional[str] = None) -> Dict[str, Optional[str]]:
    """Branch and short commit for cwd. Missing git or a non-repo gives None values."""
    metadata: Dict[str, Optional[str]] = {"git_branch": None, "git_commit": None}
    commands = {
        "git_branch": ["git", "rev-parse", "--abbrev-ref", "HEAD"],
        "git_commit": ["git", "rev-parse", "--short", "HEAD"],
    }
    for key, cmd in commands.items():
        try:
            result = subprocess.run(
                cmd, cwd=cwd or None, capture_output=True, text=True, timeout=5
            )
        except (OSError, subprocess.SubprocessError):
            logger.debug("git unavailable for %s", key)
            break
        if result.returncode == 0:
            metadata[key] = result.stdout.strip() or None
    return metadata


class SessionResolver:
    """Turns per-invocation identity into a SessionContext.

    Order: explicit session id (payload or CLAUDE_SESSION_ID), then the cached
    pointer written at session start, then a fresh timestamped id.
    """

    def __init__(self, home: Path, environ: Optional[Mapping[str, str]] = None):
        self.home = Path(home)
        self.environ = os.environ if environ is None else environ
        self.global_store = GlobalStore(self.home)

    def _context(self, session_id: str) -> SessionContext:
        return SessionContext(
            session_id=session_id,
            directory=self.global_store.session_dir(session_id),
            home=self.home,
        )

    def resolve(self, session_id: Optional[str] = None) -> SessionContext:
        explicit = session_id or self.environ.get("CLAUDE_SESSION_ID", "")
        if explicit:
            return self._context(safe_session_id(explicit))

        cached = self.global_store.read_current_session()
        if cached is not None:
            return SessionContext(session_id=cached.name, directory=cached, home=self.home)

        return self._context(new_session_id())

    def start(self, session_id: Optional[str] = None) -> SessionContext:
        """Resolve, create the session directory, and cache it as current."""
        explicit = session_id or self.environ.get("CLAUDE_SESSION_ID", "")
        ctx = self._context(safe_session_id(explicit)) if explicit else self._context(new_session_id())
        ctx.store.ensure()
        self.global_store.write_current_session(ctx.directory)
        return ctx

    def working_dir(self, cwd: Optional[str] = None) -> str:
        return cwd or self.environ.get("CLAUDE_PROJECT_DIR", "") or os.getcwd()
