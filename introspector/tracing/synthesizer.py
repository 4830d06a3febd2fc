"""Tier-0 span synthesis from matched hook events."""

import logging
import uuid
from typing import Any, Dict, Optional, Tuple

from ..core.store import SessionStore
from .spans import Provenance, Span, SpanKind, SpanStatus, session_trace_id
from .tiers import CollectionTier

logger = logging.getLogger(__name__)

AGENT_TOOLS = {"Task", "Agent"}
CHAT_OPERATION = "chat"


def new_span_id() -> str:
    return uuid.uuid4().hex[:16]


def describe_operation(tool: str) -> Tuple[str, SpanKind, str]:
    """(span name, kind, gen_ai operation) for a tool or operation name."""
    if tool.lower() == CHAT_OPERATION:
        return "gen_ai.chat", SpanKind.CLIENT, "gen_ai.chat"
    if tool in AGENT_TOOLS or tool.startswith("Subagent:"):
        return "gen_ai.invoke_agent", SpanKind.INTERNAL, "gen_ai.invoke_agent"
    return f"execute_tool {tool}", SpanKind.INTERNAL, "gen_ai.execute_tool"


class SpanSynthesizer:
    """Emits one span per completed call, parented to the last emitted span.

    The parent is a single "current parent" pointer file, updated on every
    emission. This approximates nesting; concurrent calls may see each other
    as parents.

    Only active at Tier 0. At Tier 1 emit() is a no-op and returns None.
    """

    def __init__(self, store: SessionStore, session_id: str, tier: CollectionTier):
        self.store = store
        self.session_id = session_id
        self.tier = tier

    @property
    def active(self) -> bool:
        return self.tier == CollectionTier.LOCAL

    def emit(
        self,
        tool: str,
        start_ms: int,
        end_ms: int,
        input_tokens: int = 0,
        output_tokens: int = 0,
        status: SpanStatus = SpanStatus.OK,
        incomplete: bool = False,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> Optional[Span]:
        if not self.active:
            return None

        name, kind, operation = describe_operation(tool)
        span_attributes: Dict[str, Any] = {
            "gen_ai.operation.name": operation,
            "gen_ai.tool.name": tool,
            "gen_ai.usage.input_tokens": input_tokens,
            "gen_ai.usage.output_tokens": output_tokens,
        }
        if attributes:
            span_attributes.update(attributes)
        span = Span(
            trace_id=session_trace_id(self.session_id),
            span_id=new_span_id(),
            parent_span_id=self.store.read_parent_span(),
            name=name,
            kind=kind,
            start_time_ms=start_ms,
            end_time_ms=max(end_ms, start_ms),
            status=status,
            attributes=span_attributes,
            provenance=Provenance.SYNTHESIZED,
            incomplete=incomplete,
        )
        self.store.append_span(span.to_dict())
        self.store.write_parent_span(span.span_id)
        return span
