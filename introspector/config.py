"""Introspector configuration.

Resolution order (later wins):
1. Field defaults below
2. Optional YAML file at <home>/config.yaml
3. PI_* environment variables

Handlers and components receive the resolved IntrospectorConfig; nothing below
this module reads the environment or parses configuration files.
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_HOME = "~/.claude/plugin-introspector"
CONFIG_FILENAME = "config.yaml"
LOG_FILENAME = "introspector.log"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}

# field name -> environment variable
ENV_VARS = {
    "home": "PI_HOME",
    "dlp_enabled": "PI_ENABLE_DLP",
    "security_enabled": "PI_ENABLE_SECURITY",
    "block_enabled": "PI_SECURITY_BLOCK",
    "show_reminder": "PI_SHOW_REMINDER",
    "baseline_max_age_days": "PI_BASELINE_MAX_AGE",
    "error_rate_threshold": "PI_ERROR_RATE_THRESHOLD",
    "min_calls_for_error_rate": "PI_MIN_CALLS",
    "token_cap": "PI_TOKEN_CAP",
    "baseline_factor": "PI_BASELINE_FACTOR",
    "max_trace_lines": "PI_MAX_TRACE_LINES",
    "rotation_keep_lines": "PI_ROTATION_KEEP",
    "correlation_ttl_seconds": "PI_CORRELATION_TTL",
    "debug": "PI_DEBUG",
}


@dataclass
class IntrospectorConfig:
    """Resolved settings for one handler invocation."""
    home: Path = Path(DEFAULT_HOME).expanduser()
    dlp_enabled: bool = False
    security_enabled: bool = False
    block_enabled: bool = False
    show_reminder: bool = True
    baseline_max_age_days: int = 30
    error_rate_threshold: float = 0.20
    min_calls_for_error_rate: int = 5
    token_cap: int = 100000
    baseline_factor: float = 2.0
    max_trace_lines: int = 1000
    rotation_keep_lines: int = 800
    correlation_ttl_seconds: int = 3600
    debug: bool = False

    @classmethod
    def load(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        config_file: Optional[Path] = None,
    ) -> "IntrospectorConfig":
        """Resolve defaults, then the YAML file, then the environment."""
        environ = os.environ if environ is None else environ
        config = cls()

        home_env = environ.get(ENV_VARS["home"])
        if home_env:
            config.home = Path(home_env).expanduser()

        path = config_file or (config.home / CONFIG_FILENAME)
        config.apply(_load_yaml(path))

        env_values = {
            name: environ[var] for name, var in ENV_VARS.items() if var in environ
        }
        config.apply(env_values)

        if config.rotation_keep_lines > config.max_trace_lines:
            logger.warning(
                "rotation_keep_lines (%d) exceeds max_trace_lines (%d); clamping",
                config.rotation_keep_lines, config.max_trace_lines,
            )
            config.rotation_keep_lines = config.max_trace_lines
        return config

    def apply(self, values: Dict[str, Any]) -> None:
        """Coerce and set known fields; unknown keys are ignored."""
        types = {f.name: f.type for f in fields(self)}
        for name, raw in values.items():
            if name not in types:
                continue
            current = getattr(self, name)
            try:
                setattr(self, name, _coerce(raw, current))
            except ValueError:
                logger.warning("Invalid value for %s: %r, keeping %r", name, raw, current)

    @property
    def log_file(self) -> Path:
        return self.home / LOG_FILENAME

    def to_dict(self) -> Dict[str, Any]:
        d = {f.name: getattr(self, f.name) for f in fields(self)}
        d["home"] = str(self.home)
        return d


def _coerce(raw: Any, current: Any) -> Any:
    if isinstance(current, bool):
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ValueError(f"not a boolean: {raw!r}")
    if isinstance(current, Path):
        return Path(str(raw)).expanduser()
    if isinstance(current, int):
        value = int(str(raw).strip())
        if value < 0:
            raise ValueError(f"negative: {raw!r}")
        return value
    if isinstance(current, float):
        value = float(str(raw).strip())
        if value < 0:
            raise ValueError(f"negative: {raw!r}")
        return value
    return raw


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.is_file():
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Failed to load %s, using defaults: %s", path, e)
        return {}
    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: expected a mapping, got %s", path, type(data).__name__)
        return {}
    return data


def setup_logging(config: IntrospectorConfig, quiet: bool = False) -> None:
    """Configure the package logger. Called by the CLI, never on import.

    With debug set, everything goes to <home>/introspector.log. Otherwise
    WARNING and above go to stderr, unless quiet (hook commands) is set.
    """
    package_logger = logging.getLogger("introspector")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.propagate = False

    if config.debug:
        try:
            config.home.mkdir(parents=True, exist_ok=True)
            handler: logging.Handler = logging.FileHandler(config.log_file, encoding="utf-8")
            package_logger.setLevel(logging.DEBUG)
        except OSError:
            handler = logging.NullHandler()
    elif quiet:
        handler = logging.NullHandler()
    else:
        handler = logging.StreamHandler()
        package_logger.setLevel(logging.WARNING)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    package_logger.addHandler(handler)
