"""Host boundary: hook input parsing and decision encoding.

Input arrives as a JSON payload on stdin (session_id, tool_name, tool_input,
tool_response, cwd, ...) or, for older hosts, as CLAUDE_* environment
variables. Output is an exit code plus optional stdout/stderr text; only a
deny decision uses exit code 2.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from ..security.policy import Decision

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_DENY = 2


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


@dataclass
class HookContext:
    """Everything a handler may read about the event it is handling."""
    tool_name: str = ""
    tool_input: Any = None
    tool_response: Any = None
    session_id: str = ""
    cwd: str = ""
    error: str = ""
    agent_name: str = ""
    agent_type: str = ""
    notification: Dict[str, Any] = field(default_factory=dict)
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def input_text(self) -> str:
        """Serialized tool input, as used for token estimates and the correlation key."""
        return _as_text(self.tool_input)

    @property
    def result_text(self) -> str:
        return _as_text(self.tool_response)

    @property
    def input_fields(self) -> Dict[str, Any]:
        """Tool input as a dict; a JSON string is parsed, anything else gives {}."""
        if isinstance(self.tool_input, dict):
            return self.tool_input
        if isinstance(self.tool_input, str) and self.tool_input.strip().startswith("{"):
            try:
                parsed = json.loads(self.tool_input)
            except json.JSONDecodeError:
                return {}
            return parsed if isinstance(parsed, dict) else {}
        return {}

    def input_field(self, *names: str) -> str:
        """First non-empty string among the named input fields."""
        fields = self.input_fields
        for name in names:
            value = fields.get(name)
            if isinstance(value, str) and value:
                return value
        return ""

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "HookContext":
        notification = payload.get("notification")
        if not isinstance(notification, dict):
            notification = payload
        error = payload.get("error", "")
        return cls(
            tool_name=str(payload.get("tool_name") or ""),
            tool_input=payload.get("tool_input"),
            tool_response=payload.get("tool_response", payload.get("tool_result")),
            session_id=str(payload.get("session_id") or ""),
            cwd=str(payload.get("cwd") or ""),
            error=_as_text(error),
            agent_name=str(payload.get("agent_name") or ""),
            agent_type=str(payload.get("agent_type") or ""),
            notification=notification,
            payload=payload,
        )

    @classmethod
    def from_environ(cls, environ: Mapping[str, str]) -> "HookContext":
        notification: Dict[str, Any] = {}
        raw_notification = environ.get("CLAUDE_NOTIFICATION", "")
        if raw_notification:
            try:
                parsed = json.loads(raw_notification)
                if isinstance(parsed, dict):
                    notification = parsed
            except json.JSONDecodeError:
                logger.debug("CLAUDE_NOTIFICATION is not JSON")
        return cls(
            tool_name=environ.get("CLAUDE_TOOL_NAME", ""),
            tool_input=environ.get("CLAUDE_TOOL_INPUT", ""),
            tool_response=environ.get("CLAUDE_TOOL_RESULT", ""),
            session_id=environ.get("CLAUDE_SESSION_ID", ""),
            cwd=environ.get("CLAUDE_PROJECT_DIR", ""),
            error=environ.get("CLAUDE_TOOL_ERROR", ""),
            agent_name=environ.get("CLAUDE_AGENT_NAME", ""),
            agent_type=environ.get("CLAUDE_AGENT_TYPE", ""),
            notification=notification,
        )

    @classmethod
    def load(cls, stdin_text: Optional[str], environ: Mapping[str, str]) -> "HookContext":
        """Prefer a JSON object on stdin; fall back to the environment.

        Environment values fill any field the payload left empty.
        """
        payload = None
        if stdin_text and stdin_text.strip():
            try:
                parsed = json.loads(stdin_text)
            except json.JSONDecodeError:
                logger.debug("Hook stdin is not JSON; using environment")
            else:
                if isinstance(parsed, dict):
                    payload = parsed

        env_ctx = cls.from_environ(environ)
        if payload is None:
            return env_ctx

        ctx = cls.from_payload(payload)
        for name in ("tool_name", "session_id", "cwd", "agent_name", "agent_type", "error"):
            if not getattr(ctx, name):
                setattr(ctx, name, getattr(env_ctx, name))
        if ctx.tool_input in (None, ""):
            ctx.tool_input = env_ctx.tool_input
        if ctx.tool_response in (None, ""):
            ctx.tool_response = env_ctx.tool_response
        return ctx


@dataclass
class HookResult:
    """What a handler hands back to the host."""
    decision: Decision = Decision.ALLOW
    reason: str = ""
    message: str = ""

    @classmethod
    def deny(cls, reason: str) -> "HookResult":
        return cls(decision=Decision.DENY, reason=reason)

    @property
    def exit_code(self) -> int:
        return EXIT_DENY if self.decision == Decision.DENY else EXIT_OK

    def stdout(self) -> str:
        """Text for stdout: the deny document, or an informational message."""
        if self.decision == Decision.DENY:
            return json.dumps({"permissionDecision": "deny", "reason": self.reason})
        return self.message

    def stderr(self) -> str:
        return self.reason if self.decision == Decision.DENY else ""
