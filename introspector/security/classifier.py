"""Command, write-path, and secret classification.

Command and write rules are ordered lists evaluated top to bottom; the first
matching rule decides. The lists are sorted CRITICAL, HIGH, MEDIUM, so a command
matching both a CRITICAL and a MEDIUM rule is always CRITICAL. Anything that
matches no rule is LOW.
"""

import fnmatch
import re
from dataclasses import dataclass
from typing import FrozenSet, Optional, Pattern, Sequence, Tuple

from ..core.records import Severity
from ..core.redaction import Redactor, SecretCategory


@dataclass(frozen=True)
class CommandRule:
    """A regex that assigns a severity to a shell command."""
    pattern: Pattern[str]
    severity: Severity
    category: str

    def matches(self, command: str) -> bool:
        return self.pattern.search(command) is not None


@dataclass(frozen=True)
class WriteRule:
    """A glob over absolute file paths that assigns a severity to a write."""
    glob: str
    severity: Severity
    category: str

    def matches(self, path: str) -> bool:
        return fnmatch.fnmatchcase(path, self.glob)


def _rule(pattern: str, severity: Severity, category: str) -> CommandRule:
    return CommandRule(re.compile(pattern), severity, category)


C, H, M = Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM

COMMAND_RULES: Tuple[CommandRule, ...] = (
    # data exfiltration, reverse shells, credential reads, dynamic evaluation
    _rule(r"curl\s.*(-X\s*POST|--data|-d\s)", C, "data_exfiltration"),
    _rule(r"curl\s.*(-F\s|--form\b|-T\s|--upload-file\b)", C, "data_exfiltration"),
    _rule(r"wget\s.*--post", C, "data_exfiltration"),
    _rule(r"nslookup.*base64", C, "data_exfiltration"),
    _rule(r"\bnc\s+-e", C, "reverse_shell"),
    _rule(r"\bncat\s", C, "reverse_shell"),
    _rule(r"mkfifo.*\bnc\b", C, "reverse_shell"),
    _rule(r"bash\s+-i.*>&", C, "reverse_shell"),
    _rule(r"\b(cat|less|more|head|tail|cp|scp)\s.*"
          r"(~|\$HOME|\$\{HOME\}|/home/[^/\s]+|/root)/\.(ssh|aws|gnupg)/", C, "credential_access"),
    _rule(r"/etc/shadow", C, "credential_access"),
    _rule(r"base64\s.*(-d|--decode).*\|\s*(ba)?sh\b", C, "code_evaluation"),
    _rule(r"\beval\s", C, "code_evaluation"),
    # privilege escalation, environment dumping, permission loosening, credential archiving
    _rule(r"^\s*(sudo|su)\s", H, "privilege_escalation"),
    _rule(r"chown\s.*\broot\b", H, "privilege_escalation"),
    _rule(r"printenv|/proc/self/environ", H, "credential_harvest"),
    _rule(r"\benv\s*\|", H, "credential_harvest"),
    _rule(r"tar\s.*\.(ssh|aws|gnupg)", H, "credential_archive"),
    _rule(r"chmod\s+(-R\s+)?(777|666|a\+rwx)", H, "permission_loosening"),
    _rule(r"(pip3?|npm)\s+install\s+-g", H, "package_install"),
    # network calls, package installs, inline interpreters, permission changes
    _rule(r"^\s*(curl|wget)\s", M, "network_access"),
    _rule(r"nslookup\s|^\s*dig\s", M, "network_access"),
    _rule(r"(pip3?|npm)\s+install", M, "package_install"),
    _rule(r"^\s*python3?\s+-c|^\s*node\s+-e", M, "code_execution"),
    _rule(r"^\s*(chmod|chown)\s", M, "permission_change"),
)

WRITE_RULES: Tuple[WriteRule, ...] = (
    WriteRule("*/.ssh/*", C, "credential_store"),
    WriteRule("*/.aws/*", C, "credential_store"),
    WriteRule("*/.gnupg/*", C, "credential_store"),
    WriteRule("*/.env", H, "environment_file"),
    WriteRule("*/.env.*", H, "environment_file"),
    WriteRule("*/etc/passwd", C, "system_account"),
    WriteRule("*/etc/shadow", C, "system_account"),
    WriteRule("*/.github/*", M, "ci_config"),
    WriteRule("*/Dockerfile*", M, "ci_config"),
    WriteRule("*/auth/*", M, "access_control"),
    WriteRule("*/permission*/*", M, "access_control"),
    WriteRule("*/security/*", M, "access_control"),
)


def match_command(command: str, rules: Sequence[CommandRule] = COMMAND_RULES) -> Optional[CommandRule]:
    """First rule matching command, or None."""
    if not command:
        return None
    for rule in rules:
        if rule.matches(command):
            return rule
    return None


def classify_command(command: str, rules: Sequence[CommandRule] = COMMAND_RULES) -> Severity:
    """Risk level of a shell command (LOW when no rule matches)."""
    rule = match_command(command, rules)
    return rule.severity if rule else Severity.LOW


def _normalize_path(path: str) -> str:
    # Relative paths get a leading slash so "*/.env" also matches ".env"
    path = path.strip()
    return path if path.startswith("/") else "/" + path


def match_write_path(path: str, rules: Sequence[WriteRule] = WRITE_RULES) -> Optional[WriteRule]:
    """First rule matching the write target, or None."""
    if not path:
        return None
    normalized = _normalize_path(path)
    for rule in rules:
        if rule.matches(normalized):
            return rule
    return None


def classify_write_path(path: str, rules: Sequence[WriteRule] = WRITE_RULES) -> Severity:
    """Risk level of writing to path (LOW when no rule matches)."""
    rule = match_write_path(path, rules)
    return rule.severity if rule else Severity.LOW


_secret_scanner = Redactor()


def scan_for_secrets(text: str) -> FrozenSet[SecretCategory]:
    """Categories of secret-shaped substrings in text; empty when clean.

    Only categories are returned; matched values never leave this function.
    """
    return _secret_scanner.find(text)
