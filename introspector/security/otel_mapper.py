"""Map ingested collector spans onto SecurityEvents.

Shell commands recorded by the collector are classified with the same ordered
command rules as the pre-execution gate. Only non-LOW results become events.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from ..core.records import Action, SecurityCategory, SecurityEvent, Severity
from ..core.redaction import excerpt
from ..tracing.spans import Span
from .classifier import match_command

logger = logging.getLogger(__name__)

TOOL_RESULT_SPAN = "claude_code.tool_result"
COMMAND_KEYS = ("bash_command", "full_command", "command")
REJECT_DECISION = "reject"


def extract_command(attributes: Dict[str, Any]) -> str:
    params = attributes.get("tool_parameters")
    if isinstance(params, dict):
        for key in COMMAND_KEYS:
            value = params.get(key)
            if isinstance(value, str) and value:
                return value
    value = attributes.get("bash_command")
    return value if isinstance(value, str) else ""


def is_command_span(span: Span) -> bool:
    return span.name == TOOL_RESULT_SPAN or span.attributes.get("gen_ai.tool.name") == "Bash"


def map_span(span: Span, session_id: str = "") -> Optional[SecurityEvent]:
    """SecurityEvent for a risky command span, or None."""
    if not is_command_span(span):
        return None
    command = extract_command(span.attributes)
    rule = match_command(command)
    if rule is None or rule.severity == Severity.LOW:
        return None
    decision = str(span.attributes.get("decision") or "")
    return SecurityEvent(
        timestamp_ms=span.start_time_ms,
        category=SecurityCategory.OTEL_COMMAND,
        severity=rule.severity,
        tool="Bash",
        excerpt=excerpt(command, 300),
        action=Action.BLOCKED if decision == REJECT_DECISION else Action.LOGGED,
        pattern=rule.category,
        trace_id=span.trace_id,
        session_id=str(span.attributes.get("session.id") or session_id),
        source="otel_mapper",
    )


def map_spans(spans: Iterable[Span], session_id: str = "") -> List[SecurityEvent]:
    events = []
    for span in spans:
        event = map_span(span, session_id)
        if event is not None:
            events.append(event)
    if events:
        logger.debug("Mapped %d security events from collector spans", len(events))
    return events
