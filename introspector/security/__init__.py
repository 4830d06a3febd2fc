"""Introspector Security - command/write classification, DLP, policy, static scanning."""

from .classifier import (
    COMMAND_RULES,
    WRITE_RULES,
    CommandRule,
    WriteRule,
    classify_command,
    classify_write_path,
    match_command,
    match_write_path,
    scan_for_secrets,
)
from .otel_mapper import map_span, map_spans
from .policy import Decision, PolicyDecision, SecurityPolicy
from .scanner import Finding, PluginScanner, ScanReport

__all__ = [
    "COMMAND_RULES",
    "CommandRule",
    "Decision",
    "Finding",
    "PluginScanner",
    "PolicyDecision",
    "ScanReport",
    "SecurityPolicy",
    "WRITE_RULES",
    "WriteRule",
    "classify_command",
    "classify_write_path",
    "map_span",
    "map_spans",
    "match_command",
    "match_write_path",
    "scan_for_secrets",
]
