"""Lifecycle event handlers.

Each handler runs in its own short-lived process, receives a HookContext and a
HookRuntime, and returns a HookResult. Handlers fail open: any exception is
logged and turned into an ALLOW result, so observability never gets in the
way of the tool call. The one intentional exception is the deny decision from
security_check, which is computed before any recording happens.
"""

import functools
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Mapping

from ..analysis.anomaly import AnomalyDetector, AnomalyThresholds
from ..analysis.baseline import BaselineStore, compare_to_baseline
from ..config import IntrospectorConfig
from ..core.records import (
    Action,
    Alert,
    AlertType,
    ApiTrace,
    Phase,
    SecurityCategory,
    SecurityEvent,
    Severity,
    StatsDelta,
    ToolInvocation,
    estimate_tokens,
    now_iso,
    now_ms,
)
from ..core.redaction import excerpt
from ..core.session import SessionContext, SessionMeta, SessionResolver, get_git_metadata
from ..core.store import SessionStore, count_lines, rotate_jsonl
from ..correlation import CorrelationTracker
from ..metrics.aggregators import HistoryAggregator, SessionStats, StatsAggregator
from ..security.classifier import scan_for_secrets
from ..security.otel_mapper import map_spans
from ..security.policy import ALLOW, SecurityPolicy
from ..tracing.merger import OtlpMerger
from ..tracing.spans import SpanStatus
from ..tracing.synthesizer import SpanSynthesizer
from ..tracing.tiers import CollectionTier, TierDetector
from .context import HookContext, HookResult

logger = logging.getLogger(__name__)

SELF_SKILL = "plugin-introspector"
GATED_TOOLS = {"Bash", "Write", "Edit"}

REMINDER = """
━━━ Plugin Introspector ━━━
Commands: /plugin-introspector [status|dashboard|tokens|security-scan|quick-scan]
Tip: Use when analyzing plugin behavior or optimizing token usage.
━━━━━━━━━━━━━━━━━━━━━━━━━━━
"""

# tool name -> input fields used for its short summary, first non-empty wins
SUMMARY_FIELDS = {
    "Read": ("file_path", "path"),
    "Edit": ("file_path", "path"),
    "Write": ("file_path", "path"),
    "Bash": ("command",),
    "Glob": ("pattern",),
    "Grep": ("pattern",),
    "Task": ("description", "prompt"),
    "Skill": ("skill",),
}


@dataclass
class HookRuntime:
    """Resolved configuration plus the one place session identity is read."""
    config: IntrospectorConfig
    environ: Mapping[str, str]

    @property
    def resolver(self) -> SessionResolver:
        return SessionResolver(self.config.home, self.environ)

    def session(self, ctx: HookContext) -> SessionContext:
        return self.resolver.resolve(ctx.session_id or None)

    def tracker(self, session: SessionContext) -> CorrelationTracker:
        return CorrelationTracker(
            session.store.path(SessionStore.PENDING_DIR), self.config.correlation_ttl_seconds
        )

    def tier(self, session: SessionContext) -> CollectionTier:
        return TierDetector(session.global_store).session_tier(session.store)


Handler = Callable[[HookContext, HookRuntime], HookResult]

HANDLERS: Dict[str, Handler] = {}


def fail_open(func: Handler) -> Handler:
    """Log and swallow any exception, returning ALLOW."""

    @functools.wraps(func)
    def wrapper(ctx: HookContext, runtime: HookRuntime) -> HookResult:
        try:
            result = func(ctx, runtime)
        except Exception:
            logger.debug("Hook %s failed; continuing", func.__name__, exc_info=True)
            return HookResult()
        return result if result is not None else HookResult()

    return wrapper


def hook(event: str) -> Callable[[Handler], Handler]:
    """Register a fail-open handler for a lifecycle event."""

    def decorator(func: Handler) -> Handler:
        wrapped = fail_open(func)
        HANDLERS[event] = wrapped
        return wrapped

    return decorator


@contextmanager
def enrichment(step: str) -> Iterator[None]:
    """Isolate one optional step so its failure does not skip the others."""
    try:
        yield
    except Exception:
        logger.debug("Enrichment step %s failed", step, exc_info=True)


def is_self_call(ctx: HookContext) -> bool:
    return ctx.tool_name == "Skill" and ctx.input_field("skill") == SELF_SKILL


def input_summary(ctx: HookContext) -> str:
    fields = SUMMARY_FIELDS.get(ctx.tool_name)
    if not fields:
        return ""
    return excerpt(ctx.input_field(*fields), 200)


def run_hook(event: str, ctx: HookContext, runtime: HookRuntime) -> HookResult:
    """Dispatch to the handler registered for event.

    Raises:
        KeyError: If no handler is registered for event.
    """
    return HANDLERS[event](ctx, runtime)


# =============================================================================
# Session Lifecycle
# =============================================================================


@hook("session-start")
def session_start(ctx: HookContext, runtime: HookRuntime) -> HookResult:
    session = runtime.resolver.start(ctx.session_id or None)
    store = session.store

    existing = store.read_meta()
    if existing.get("start_time_ms"):
        logger.debug("Session %s already started", session.session_id)
    else:
        working_dir = runtime.resolver.working_dir(ctx.cwd or None)
        git = get_git_metadata(working_dir)
        # a tool hook may have cached the tier before start ran
        tier = runtime.tier(session)
        meta = SessionMeta(
            session_id=session.session_id,
            working_dir=excerpt(working_dir, 500),
            git_branch=git["git_branch"],
            git_commit=git["git_commit"],
            collection_tier=tier.value,
        )
        store.write_meta(meta.to_dict())

    aggregator = StatsAggregator(store)
    if store.read_stats_document() is None:
        start_ms = store.read_meta().get("start_time_ms", now_ms())
        aggregator.save(SessionStats(extra={"start_time_ms": start_ms}))

    return HookResult(message=REMINDER if runtime.config.show_reminder else "")


@hook("session-stop")
def session_stop(ctx: HookContext, runtime: HookRuntime) -> HookResult:
    session = runtime.session(ctx)
    store = session.store
    if not store.directory.is_dir():
        return HookResult()
    global_store = session.global_store
    config = runtime.config

    stats = StatsAggregator(store).reduce(
        extra={"stop_time": now_iso(), "stop_time_ms": now_ms()}
    )

    detector = AnomalyDetector(AnomalyThresholds.from_config(config))
    for alert in detector.check_stats(stats, session.session_id):
        global_store.append_alert(alert)

    with enrichment("baseline comparison"):
        events = list(store.iter_security_events())
        if events:
            baseline = BaselineStore(global_store, config.baseline_max_age_days).load_or_build(
                exclude=session.session_id
            )
            comparison = compare_to_baseline(events, baseline, config.baseline_factor)
            alert = detector.check_baseline(comparison, session.session_id)
            if alert is not None:
                global_store.append_alert(alert)

    with enrichment("history aggregates"):
        records = list(global_store.iter_history())
        if records:
            global_store.write_aggregates(HistoryAggregator().aggregate(records).to_dict())

    with enrichment("correlation sweep"):
        runtime.tracker(session).sweep()

    return HookResult()


def security_summary(events: List[SecurityEvent]) -> Dict[str, int]:
    if not events:
        return {}
    return {
        "security_events_count": len(events),
        "critical_count": sum(1 for e in events if e.severity == Severity.CRITICAL),
        "high_count": sum(1 for e in events if e.severity == Severity.HIGH),
        "blocked_count": sum(1 for e in events if e.action == Action.BLOCKED),
    }


@hook("session-end")
def session_end(ctx: HookContext, runtime: HookRuntime) -> HookResult:
    session = runtime.session(ctx)
    store = session.store
    if not store.directory.is_dir():
        return HookResult()

    meta = store.read_meta()
    tier = runtime.tier(session)

    if tier == CollectionTier.COLLECTOR:
        with enrichment("collector merge"):
            merger = OtlpMerger(session.global_store.export_dir, store, tier)
            result = merger.merge(int(meta.get("start_time_ms", 0) or 0))
            for event in map_spans(result.spans, session.session_id):
                store.append_security_event(event)

    now = now_ms()
    start_ms = int(meta.get("start_time_ms", 0) or 0)
    extra = {
        "end_time": now_iso(),
        "end_time_ms": now,
        "duration_ms": max(now - start_ms, 0) if start_ms else 0,
        "tool_trace_count": count_lines(store.path(SessionStore.TOOL_TRACES)),
        "api_trace_count": count_lines(store.path(SessionStore.API_TRACES)),
        "otel_span_count": count_lines(store.path(SessionStore.SPANS)),
        "collection_tier": tier.value,
    }
    extra.update(security_summary(list(store.iter_security_events())))
    stats = StatsAggregator(store).reduce(extra=extra)

    record = {"session_id": session.session_id}
    record.update(stats.to_dict())
    record.pop("consumed_batches", None)
    session.global_store.append_history(record)

    runtime.tracker(session).clear()
    store.clear_parent_span()
    return HookResult()


# =============================================================================
# Tool Calls
# =============================================================================


@hook("pre-tool")
def pre_tool(ctx: HookContext, runtime: HookRuntime) -> HookResult:
    if is_self_call(ctx):
        return HookResult()
    session = runtime.session(ctx)
    store = session.store
    store.ensure()

    tool = ctx.tool_name or "unknown"
    now = now_ms()
    correlation = runtime.tracker(session).begin(tool, ctx.input_text, now)

    record = ToolInvocation(
        phase=Phase.PRE,
        tool=excerpt(tool, 50),
        timestamp_ms=now,
        trace_id=correlation.trace_id,
        correlation_key=correlation.key,
        input_tokens_est=estimate_tokens(ctx.input_text),
        input_summary=input_summary(ctx),
    )
    if correlation.collided:
        record.data["key_collision"] = True
    store.append_trace(record)
    return HookResult()


def _response_failed(ctx: HookContext) -> bool:
    response = ctx.tool_response
    return isinstance(response, dict) and bool(response.get("is_error") or response.get("error"))


def _complete_call(ctx: HookContext, runtime: HookRuntime, failed: bool) -> HookResult:
    """Shared body of post-tool and tool-failure."""
    if is_self_call(ctx):
        return HookResult()
    session = runtime.session(ctx)
    store = session.store
    store.ensure()

    tool = ctx.tool_name or "unknown"
    now = now_ms()
    tracker = runtime.tracker(session)
    completion = tracker.end(tracker.key_for(tool, ctx.input_text), now)

    result_text = ctx.result_text
    result_tokens = estimate_tokens(result_text)
    input_tokens = estimate_tokens(ctx.input_text)
    has_error = failed or _response_failed(ctx)

    record = ToolInvocation(
        phase=Phase.FAILURE if failed else Phase.POST,
        tool=excerpt(tool, 50),
        timestamp_ms=now,
        trace_id=completion.trace_id,
        correlation_key=completion.key,
        duration_ms=completion.elapsed_ms,
        result_tokens_est=result_tokens,
        has_error=has_error,
        incomplete=not completion.matched,
    )
    if failed:
        record.error_snippet = excerpt(ctx.error or result_text, 200)
    store.append_trace(record)

    StatsAggregator(store).record(StatsDelta(
        tool=excerpt(tool, 50),
        tokens=result_tokens,
        error=1 if has_error else 0,
        duration_ms=completion.elapsed_ms,
    ))

    with enrichment("trace rotation"):
        config = runtime.config
        traces = store.path(SessionStore.TOOL_TRACES)
        rotated = rotate_jsonl(traces, config.max_trace_lines, config.rotation_keep_lines)
        if rotated:
            store.append_trace(ToolInvocation(
                phase=Phase.ROTATION, tool="", timestamp_ms=now,
                data={"rotated_lines": rotated},
            ))

    with enrichment("span synthesis"):
        SpanSynthesizer(store, session.session_id, runtime.tier(session)).emit(
            tool,
            start_ms=completion.start_ms if completion.matched else now,
            end_ms=now,
            input_tokens=input_tokens,
            output_tokens=result_tokens,
            status=SpanStatus.ERROR if has_error else SpanStatus.OK,
            incomplete=not completion.matched,
        )

    if runtime.config.dlp_enabled and not failed:
        with enrichment("output DLP"):
            findings = sorted(c.value for c in scan_for_secrets(result_text))
            if findings:
                joined = " ".join(findings)
                session.global_store.append_alert(Alert(
                    severity=Severity.CRITICAL,
                    type=AlertType.DLP_VIOLATION,
                    message=f"Sensitive data in tool output: {joined}",
                    session_id=session.session_id,
                    details={"tool": record.tool, "findings": joined},
                ))
                store.append_security_event(SecurityEvent(
                    timestamp_ms=now,
                    category=SecurityCategory.DLP_OUTPUT,
                    severity=Severity.CRITICAL,
                    tool=record.tool,
                    findings=findings,
                    trace_id=completion.trace_id,
                    session_id=session.session_id,
                ))
    return HookResult()


@hook("post-tool")
def post_tool(ctx: HookContext, runtime: HookRuntime) -> HookResult:
    return _complete_call(ctx, runtime, failed=False)


@hook("tool-failure")
def tool_failure(ctx: HookContext, runtime: HookRuntime) -> HookResult:
    return _complete_call(ctx, runtime, failed=True)


@hook("security-check")
def security_check(ctx: HookContext, runtime: HookRuntime) -> HookResult:
    config = runtime.config
    tool = ctx.tool_name
    if tool not in GATED_TOOLS or is_self_call(ctx):
        return HookResult()
    if not (config.security_enabled or config.dlp_enabled):
        return HookResult()

    policy = SecurityPolicy(block_enabled=config.block_enabled)
    if tool == "Bash":
        subject = ctx.input_field("command")
        category = SecurityCategory.PRE_COMMAND_CHECK
        decision = policy.evaluate_command(subject)
    else:
        subject = ctx.input_field("file_path", "path")
        category = SecurityCategory.SENSITIVE_WRITE
        decision = policy.evaluate_write(subject)
    if not subject:
        return HookResult()
    if not config.security_enabled:
        # DLP only
        decision = ALLOW

    session = runtime.session(ctx)
    now = now_ms()

    if decision.flagged:
        with enrichment("security event"):
            session.store.append_security_event(SecurityEvent(
                timestamp_ms=now,
                category=category,
                severity=decision.severity,
                tool=tool,
                excerpt=excerpt(subject, 300),
                action=Action.BLOCKED if decision.denied else Action.LOGGED,
                pattern=decision.category,
                session_id=session.session_id,
            ))

    if tool == "Bash" and config.dlp_enabled:
        with enrichment("input DLP"):
            findings = sorted(c.value for c in scan_for_secrets(subject))
            if findings:
                joined = " ".join(findings)
                session.global_store.append_alert(Alert(
                    severity=Severity.HIGH,
                    type=AlertType.DLP_INPUT,
                    message=f"Sensitive data in Bash command: {joined}",
                    session_id=session.session_id,
                    details={"tool": tool},
                ))
                session.store.append_security_event(SecurityEvent(
                    timestamp_ms=now,
                    category=SecurityCategory.DLP_INPUT,
                    severity=Severity.HIGH,
                    tool=tool,
                    findings=findings,
                    session_id=session.session_id,
                ))

    if not decision.denied:
        return HookResult()

    with enrichment("blocked-call alert"):
        what = "command" if tool == "Bash" else "write to sensitive path"
        session.global_store.append_alert(Alert(
            severity=Severity.CRITICAL,
            type=decision.alert_type,
            message=f"Blocked CRITICAL risk {what}: {excerpt(subject, 100)}",
            session_id=session.session_id,
            details={"tool": tool},
        ))
    return HookResult.deny(decision.reason)


# =============================================================================
# Sub-agents and Model Calls
# =============================================================================


@hook("subagent-stop")
def subagent_stop(ctx: HookContext, runtime: HookRuntime) -> HookResult:
    session = runtime.session(ctx)
    store = session.store
    if not store.directory.is_dir():
        return HookResult()

    now = now_ms()
    agent_name = excerpt(ctx.agent_name or "unknown", 100)
    agent_type = excerpt(ctx.agent_type or "unknown", 50)
    result_tokens = estimate_tokens(ctx.result_text)
    tool = f"Subagent:{agent_name}"

    store.append_trace(ToolInvocation(
        phase=Phase.SUBAGENT,
        tool=tool,
        timestamp_ms=now,
        result_tokens_est=result_tokens,
        incomplete=True,
        data={"agent_name": agent_name, "agent_type": agent_type},
    ))

    with enrichment("span synthesis"):
        # no start event exists for sub-agents
        SpanSynthesizer(store, session.session_id, runtime.tier(session)).emit(
            tool,
            start_ms=now,
            end_ms=now,
            output_tokens=result_tokens,
            incomplete=True,
            attributes={"gen_ai.agent.name": agent_name, "gen_ai.agent.type": agent_type},
        )

    StatsAggregator(store).record(StatsDelta(tool=tool, tokens=result_tokens))
    return HookResult()


@hook("notification")
def notification(ctx: HookContext, runtime: HookRuntime) -> HookResult:
    session = runtime.session(ctx)
    store = session.store
    if not store.directory.is_dir():
        return HookResult()

    now = now_ms()
    trace = ApiTrace.from_notification(ctx.notification, now)
    if not (trace.model or trace.input_tokens or trace.output_tokens):
        # not a model-call notification
        return HookResult()
    store.append_api_trace(trace)

    with enrichment("span synthesis"):
        SpanSynthesizer(store, session.session_id, runtime.tier(session)).emit(
            "chat",
            start_ms=max(now - trace.latency_ms, 0),
            end_ms=now,
            input_tokens=trace.input_tokens,
            output_tokens=trace.output_tokens,
            attributes={"gen_ai.request.model": trace.model},
        )
    return HookResult()


def available_events() -> List[str]:
    return sorted(HANDLERS)
