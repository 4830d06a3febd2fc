"""Introspector Core - records, session context, and the file-resident store."""

from .records import (
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
    max_severity,
    now_iso,
    now_ms,
)
from .redaction import Redactor, SecretCategory, configure_redaction, excerpt, redact, sanitize
from .schema import (
    CURRENT_VERSION,
    MIN_SUPPORTED_VERSION,
    VERSION_HISTORY,
    SchemaMigrator,
    SchemaVersionError,
    get_version_info,
    upgrade,
    validate_version,
)
from .session import SessionContext, SessionMeta, SessionResolver
from .store import GlobalStore, SessionStore

__all__ = [
    "Action",
    "Alert",
    "AlertType",
    "ApiTrace",
    "CURRENT_VERSION",
    "GlobalStore",
    "MIN_SUPPORTED_VERSION",
    "Phase",
    "Redactor",
    "SchemaMigrator",
    "SchemaVersionError",
    "SecretCategory",
    "SecurityCategory",
    "SecurityEvent",
    "SessionContext",
    "SessionMeta",
    "SessionResolver",
    "SessionStore",
    "Severity",
    "StatsDelta",
    "ToolInvocation",
    "VERSION_HISTORY",
    "configure_redaction",
    "estimate_tokens",
    "excerpt",
    "get_version_info",
    "max_severity",
    "now_iso",
    "now_ms",
    "redact",
    "sanitize",
    "upgrade",
    "validate_version",
]
