"""Redaction helpers - keep raw secrets and control characters out of stored excerpts."""

import re
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Optional, Pattern, Tuple

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


class SecretCategory(str, Enum):
    """Categories of secret-shaped substrings."""
    AWS_KEY = "AWS_KEY"
    AWS_SECRET = "AWS_SECRET"
    API_KEY = "API_KEY"
    PRIVATE_KEY = "PRIVATE_KEY"
    GITHUB_TOKEN = "GITHUB_TOKEN"
    GITHUB_PAT = "GITHUB_PAT"
    PASSWORD = "PASSWORD"
    JWT = "JWT"
    BEARER_TOKEN = "BEARER_TOKEN"


# Order matters for redaction only: longer, more specific shapes first.
SECRET_PATTERNS: Tuple[Tuple[SecretCategory, Pattern[str]], ...] = (
    (SecretCategory.PRIVATE_KEY, re.compile(r"-----BEGIN[A-Z ]*PRIVATE KEY-----[\s\S]*?(?:-----END[A-Z ]*PRIVATE KEY-----|$)|BEGIN[A-Z ]*PRIVATE KEY")),
    (SecretCategory.AWS_SECRET, re.compile(r"aws_secret_access_key\s*=\s*[A-Za-z0-9/+=]{40}", re.IGNORECASE)),
    (SecretCategory.AWS_KEY, re.compile(r"AKIA[0-9A-Z]{16}")),
    (SecretCategory.GITHUB_PAT, re.compile(r"github_pat_[a-zA-Z0-9_]{82}")),
    (SecretCategory.GITHUB_TOKEN, re.compile(r"ghp_[a-zA-Z0-9]{36}")),
    (SecretCategory.API_KEY, re.compile(r"sk-[a-zA-Z0-9_-]{20,}")),
    (SecretCategory.JWT, re.compile(r"eyJ[a-zA-Z0-9_-]{10,}\.[a-zA-Z0-9_-]{10,}\.[a-zA-Z0-9_-]*")),
    (SecretCategory.BEARER_TOKEN, re.compile(r"[Bb]earer\s+[A-Za-z0-9\-._~+/]{20,}=*")),
    (SecretCategory.PASSWORD, re.compile(r"(?:password|passwd|pwd)\s*[=:]\s*\S+", re.IGNORECASE)),
)


@dataclass
class Redactor:
    """Replaces secret-shaped substrings with category placeholders.

    Usage:
        redactor = Redactor()
        redactor.redact("token=ghp_...")  # "token=[REDACTED:GITHUB_TOKEN]"
    """

    patterns: Tuple[Tuple[SecretCategory, Pattern[str]], ...] = SECRET_PATTERNS
    placeholder: str = "[REDACTED:{category}]"

    def find(self, text: str) -> FrozenSet[SecretCategory]:
        """Return the categories of every secret shape present in text."""
        if not text:
            return frozenset()
        return frozenset(
            category for category, pattern in self.patterns if pattern.search(text)
        )

    def redact(self, text: str) -> str:
        """Return text with every secret shape replaced by its placeholder."""
        if not text:
            return ""
        for category, pattern in self.patterns:
            text = pattern.sub(self.placeholder.format(category=category.value), text)
        return text


_default_redactor = Redactor()


def configure_redaction(placeholder: Optional[str] = None) -> Redactor:
    """Replace the module-level redactor (used by redact())."""
    global _default_redactor
    _default_redactor = Redactor(placeholder=placeholder or Redactor.placeholder)
    return _default_redactor


def redact(text: str) -> str:
    """Redact secrets using the module-level redactor."""
    return _default_redactor.redact(text)


def sanitize(value: object, max_length: int = 200) -> str:
    """Truncate to max_length and strip control characters.

    Args:
        value: Any value; converted with str(). None becomes "".
        max_length: Maximum number of characters kept.

    Returns:
        A single-line string safe to embed in a JSON record.
    """
    if value is None:
        return ""
    text = str(value)[:max_length]
    return _CONTROL_CHARS.sub("", text)


def excerpt(value: object, max_length: int = 200) -> str:
    """Redact secrets, then sanitize. Use for anything persisted from tool I/O."""
    if value is None:
        return ""
    # Redact before truncating so a secret cut in half is still caught.
    return sanitize(redact(str(value)), max_length)
