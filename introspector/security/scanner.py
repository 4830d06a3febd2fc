"""Offline static scanner for a plugin's own files.

Scripts are checked against shell-pattern and secret rules, prompt files
against prompt-injection and secret rules, and agent definitions against
risky tool combinations plus the prompt-injection rules. The report's risk
score is the highest severity found, or CLEAN.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Pattern, Set, Tuple

import yaml

from ..core.records import SecurityCategory, SecurityEvent, Severity, max_severity, now_iso, now_ms
from ..core.redaction import excerpt, sanitize
from .classifier import scan_for_secrets

logger = logging.getLogger(__name__)

CLEAN = "CLEAN"

SCRIPT_GLOBS = ("scripts/*.sh", "*.sh", "hooks/*.py", "scripts/*.py")
PROMPT_GLOBS = ("SKILL.md", "skills/*/SKILL.md", "resources/*.md")
AGENT_GLOBS = ("agents/*.md",)


@dataclass(frozen=True)
class ScanRule:
    pattern: Pattern[str]
    severity: Severity
    type: str
    description: str


def _rules(entries: Iterable[Tuple[str, str, str, str]], flags: int = 0) -> Tuple[ScanRule, ...]:
    return tuple(
        ScanRule(re.compile(pat, flags), Severity(sev), typ, desc)
        for pat, sev, typ, desc in entries
    )


SCRIPT_RULES = _rules([
    (r"nslookup\s", "CRITICAL", "data_exfiltration", "DNS tunneling via nslookup"),
    (r"\bdig\s", "CRITICAL", "data_exfiltration", "DNS tunneling via dig"),
    (r"curl\s.*POST", "CRITICAL", "data_exfiltration", "HTTP POST data exfiltration"),
    (r"wget\s.*--post", "CRITICAL", "data_exfiltration", "HTTP POST data exfiltration via wget"),
    (r"\bnc\s+-e", "CRITICAL", "reverse_shell", "Reverse shell via netcat"),
    (r"\bncat\s", "CRITICAL", "reverse_shell", "Network connection via ncat"),
    (r"base64.*nslookup", "CRITICAL", "data_exfiltration", "Base64-encoded DNS exfiltration"),
    (r"\benv\s.*grep.*(KEY|SECRET|TOKEN|PASSWORD)", "CRITICAL", "credential_harvest",
     "Environment variable credential harvesting"),
    (r"printenv", "HIGH", "credential_harvest", "Full environment dump"),
    (r"/proc/self/environ", "HIGH", "credential_harvest", "Process environment access"),
    (r"cat.*\.ssh/", "CRITICAL", "credential_theft", "SSH key read attempt"),
    (r"cat.*\.aws/", "CRITICAL", "credential_theft", "AWS credentials read attempt"),
    (r"cat.*\.gnupg/", "CRITICAL", "credential_theft", "GPG key read attempt"),
    (r"tar.*\.ssh", "HIGH", "credential_theft", "SSH directory archive"),
    (r"tar.*\.aws", "HIGH", "credential_theft", "AWS credentials archive"),
    (r"zip.*\.ssh", "HIGH", "credential_theft", "SSH directory compression"),
    (r"chmod\s+777", "HIGH", "permission_escalation", "World-writable permission set"),
    (r"chmod\s+666", "HIGH", "permission_escalation", "World-readable/writable permission set"),
    (r"sudo\s", "HIGH", "permission_escalation", "Sudo privilege escalation"),
    (r"python3?.*-c.*import", "MEDIUM", "code_execution", "Python inline code execution"),
    (r"node.*-e", "MEDIUM", "code_execution", "Node.js inline code execution"),
    (r"\beval\s", "CRITICAL", "code_execution", "Dynamic code evaluation"),
    (r"/etc/passwd", "HIGH", "system_access", "System password file access"),
    (r"/etc/shadow", "CRITICAL", "system_access", "System shadow file access"),
    (r"curl\s", "MEDIUM", "network_access", "HTTP request via curl"),
    (r"wget\s", "MEDIUM", "network_access", "HTTP request via wget"),
    (r"\.env[^a-zA-Z]", "MEDIUM", "config_access", "Environment file reference"),
    (r"GITHUB_TOKEN", "MEDIUM", "credential_reference", "GitHub token reference"),
    (r"AWS_SECRET", "MEDIUM", "credential_reference", "AWS secret key reference"),
    (r"ANTHROPIC_API_KEY", "MEDIUM", "credential_reference", "Anthropic API key reference"),
])

PROMPT_RULES = _rules([
    (r"cat\s+~/\.ssh", "CRITICAL", "prompt_injection", "SSH key read instruction in prompt"),
    (r"cat\s+~/\.aws", "CRITICAL", "prompt_injection", "AWS credential read instruction in prompt"),
    (r"id_rsa", "HIGH", "prompt_injection", "SSH private key reference in prompt"),
    (r"\.aws/credentials", "HIGH", "prompt_injection", "AWS credentials reference in prompt"),
    (r"chmod\s+600.*\.ssh", "HIGH", "prompt_injection", "SSH permission change instruction"),
    (r"run\s+as\s+root", "HIGH", "prompt_injection", "Root privilege instruction"),
    (r"sudo\s+", "HIGH", "prompt_injection", "Sudo instruction in prompt"),
    (r"upload.*endpoint", "MEDIUM", "prompt_injection", "Data upload instruction"),
    (r"send\s+to\s+", "MEDIUM", "prompt_injection", "Data sending instruction"),
    (r"post\s+to\s+https?://", "MEDIUM", "prompt_injection", "HTTP POST instruction"),
    (r"curl\s+-X\s+POST", "HIGH", "prompt_injection", "HTTP POST command in prompt"),
    (r"ignore\s+(previous|above)\s+instructions", "CRITICAL", "prompt_injection",
     "Instruction override attempt"),
    (r"disregard.*instructions", "CRITICAL", "prompt_injection", "Instruction override attempt"),
    (r"you\s+are\s+now\s+", "HIGH", "prompt_injection", "Role reassignment attempt"),
    (r"forget.*rules", "HIGH", "prompt_injection", "Rule override attempt"),
], re.IGNORECASE)

# Pairs of declared capabilities that together allow fetch-and-execute
RISKY_TOOL_COMBOS: Tuple[Tuple[str, str, Severity, str], ...] = (
    ("Bash", "WebFetch", Severity.HIGH,
     "Agent has Bash+WebFetch: can execute code and fetch external data"),
)


@dataclass
class Finding:
    """One static-scan hit."""
    severity: Severity
    type: str
    file: str
    description: str
    line: Optional[int] = None
    pattern: str = ""
    content: str = ""
    agent: str = ""

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "severity": self.severity.value,
            "type": self.type,
            "file": self.file,
            "description": self.description,
        }
        if self.line is not None:
            d["line"] = self.line
        if self.pattern:
            d["pattern"] = self.pattern
        if self.content:
            d["content"] = self.content
        if self.agent:
            d["agent"] = self.agent
        return d


@dataclass
class ScanReport:
    """Aggregate result of scanning one plugin directory."""
    plugin: str
    scan_time: str = field(default_factory=now_iso)
    findings: List[Finding] = field(default_factory=list)
    agents_with_bash: List[str] = field(default_factory=list)
    agents_with_webfetch: List[str] = field(default_factory=list)
    high_risk_combinations: List[str] = field(default_factory=list)
    files_scanned: int = 0

    @property
    def max_severity(self) -> Optional[Severity]:
        return max_severity(f.severity for f in self.findings)

    @property
    def risk_score(self) -> str:
        severity = self.max_severity
        return severity.value if severity else CLEAN

    def count_by_severity(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in Severity}
        for f in self.findings:
            counts[f.severity.value] += 1
        return counts

    def security_events(self, session_id: str = "", timestamp_ms: Optional[int] = None) -> List[SecurityEvent]:
        """One static_scan event per finding, tagged with the plugin and location."""
        stamp = timestamp_ms if timestamp_ms is not None else now_ms()
        events = []
        for f in self.findings:
            where = f"{f.file}:{f.line}" if f.line is not None else f.file
            events.append(SecurityEvent(
                timestamp_ms=stamp,
                category=SecurityCategory.STATIC_SCAN,
                severity=f.severity,
                tool=self.plugin,
                excerpt=f"{where} {f.description}",
                pattern=f.type,
                session_id=session_id,
                source="scanner",
            ))
        return events

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plugin": self.plugin,
            "scan_time": self.scan_time,
            "risk_score": self.risk_score,
            "finding_count": len(self.findings),
            "files_scanned": self.files_scanned,
            "findings": [f.to_dict() for f in self.findings],
            "tool_permission_audit": {
                "agents_with_bash": self.agents_with_bash,
                "agents_with_webfetch": self.agents_with_webfetch,
                "high_risk_combinations": self.high_risk_combinations,
            },
        }

    def summary(self) -> str:
        """Generate a human-readable summary."""
        lines = [
            f"=== Security Scan: {self.plugin} ===",
            f"Risk score: {self.risk_score}",
            f"Files scanned: {self.files_scanned}",
            f"Findings: {len(self.findings)}",
        ]
        ranked = sorted(self.findings, key=lambda f: f.severity.rank, reverse=True)
        for f in ranked:
            where = f"{f.file}:{f.line}" if f.line is not None else f.file
            lines.append(f"  [{f.severity.value}] {f.type} {where} - {f.description}")
        if self.high_risk_combinations:
            lines.append("")
            lines.append("High-risk tool combinations:")
            for combo in self.high_risk_combinations:
                lines.append(f"  {combo}")
        return "\n".join(lines)


def split_front_matter(text: str) -> Tuple[Dict[str, Any], str]:
    """Parse a leading '---' YAML block. Returns ({}, text) when absent or invalid."""
    if not text.startswith("---"):
        return {}, text
    parts = text.split("\n---", 1)
    if len(parts) != 2:
        return {}, text
    header = parts[0][3:]
    body = parts[1].split("\n", 1)[1] if "\n" in parts[1] else ""
    try:
        data = yaml.safe_load(header)
    except yaml.YAMLError as e:
        logger.debug("Invalid front matter: %s", e)
        return {}, text
    return (data if isinstance(data, dict) else {}), body


def declared_tools(front_matter: Dict[str, Any]) -> Optional[Set[str]]:
    """Tool names declared in agent front matter, or None if not declared."""
    tools = front_matter.get("tools")
    if tools is None:
        return None
    if isinstance(tools, str):
        return {t.strip() for t in re.split(r"[,\s]+", tools) if t.strip()}
    if isinstance(tools, list):
        return {str(t).strip() for t in tools if str(t).strip()}
    return None


class PluginScanner:
    """Scans a plugin directory and builds a ScanReport.

    Usage:
        report = PluginScanner(Path("my-plugin")).scan()
        print(report.risk_score)
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def _files(self, globs: Iterable[str]) -> List[Path]:
        seen: Set[Path] = set()
        files = []
        for pattern in globs:
            for path in sorted(self.root.glob(pattern)):
                if path.is_file() and path not in seen:
                    seen.add(path)
                    files.append(path)
        return files

    def _relative(self, path: Path) -> str:
        try:
            return str(path.relative_to(self.root))
        except ValueError:
            return str(path)

    @staticmethod
    def _read_lines(path: Path) -> List[str]:
        try:
            return path.read_text(encoding="utf-8", errors="replace").splitlines()
        except OSError as e:
            logger.debug("Cannot read %s: %s", path, e)
            return []

    def _scan_lines(
        self, path: Path, lines: List[str], rules: Tuple[ScanRule, ...], agent: str = ""
    ) -> List[Finding]:
        findings = []
        name = self._relative(path)
        for line_no, line in enumerate(lines, 1):
            for rule in rules:
                if rule.pattern.search(line):
                    findings.append(Finding(
                        severity=rule.severity,
                        type=rule.type,
                        file=name,
                        description=rule.description,
                        line=line_no,
                        pattern=sanitize(rule.pattern.pattern, 100),
                        content=excerpt(line, 150),
                        agent=agent,
                    ))
        return findings

    def _scan_secrets(self, path: Path, lines: List[str]) -> List[Finding]:
        findings = []
        name = self._relative(path)
        for line_no, line in enumerate(lines, 1):
            for category in sorted(scan_for_secrets(line), key=lambda c: c.value):
                findings.append(Finding(
                    severity=Severity.CRITICAL,
                    type="hardcoded_secret",
                    file=name,
                    description=f"Hardcoded secret: {category.value}",
                    line=line_no,
                    content=excerpt(line, 150),
                ))
        return findings

    def _scan_agent(self, path: Path, report: ScanReport) -> None:
        agent = path.stem
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.debug("Cannot read %s: %s", path, e)
            return
        front_matter, _ = split_front_matter(text)
        tools = declared_tools(front_matter)

        if tools is not None:
            names = {name.lower() for name in tools}
            has_bash, has_webfetch = "bash" in names, "webfetch" in names
        else:
            lowered = text.lower()
            has_bash, has_webfetch = "bash" in lowered, "webfetch" in lowered
        if has_bash:
            report.agents_with_bash.append(agent)
        if has_webfetch:
            report.agents_with_webfetch.append(agent)

        for first, second, severity, description in RISKY_TOOL_COMBOS:
            if tools is not None:
                risky = first in tools and second in tools
            else:
                risky = bool(re.search(f"{first}.*{second}|{second}.*{first}", text, re.DOTALL))
            if risky:
                report.findings.append(Finding(
                    severity=severity,
                    type="risky_tool_combo",
                    file=self._relative(path),
                    description=description,
                    agent=agent,
                ))
                report.high_risk_combinations.append(f"{first}+{second} in {agent} agent")

        report.findings.extend(
            self._scan_lines(path, text.splitlines(), PROMPT_RULES, agent=agent)
        )

    def scan(self) -> ScanReport:
        """Scan the plugin root.

        Raises:
            FileNotFoundError: If the root is not a directory.
        """
        if not self.root.is_dir():
            raise FileNotFoundError(f"Plugin directory not found: {self.root}")

        report = ScanReport(plugin=self.root.resolve().name)

        for path in self._files(SCRIPT_GLOBS):
            lines = self._read_lines(path)
            report.findings.extend(self._scan_lines(path, lines, SCRIPT_RULES))
            report.findings.extend(self._scan_secrets(path, lines))
            report.files_scanned += 1

        for path in self._files(PROMPT_GLOBS):
            lines = self._read_lines(path)
            report.findings.extend(self._scan_lines(path, lines, PROMPT_RULES))
            report.findings.extend(self._scan_secrets(path, lines))
            report.files_scanned += 1

        for path in self._files(AGENT_GLOBS):
            self._scan_agent(path, report)
            report.files_scanned += 1

        logger.debug("Scanned %d files in %s: %s", report.files_scanned, self.root, report.risk_score)
        return report
