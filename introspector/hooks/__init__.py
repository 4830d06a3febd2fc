"""Introspector Hooks - lifecycle handlers and the host boundary."""

from .context import EXIT_DENY, EXIT_OK, HookContext, HookResult
from .handlers import HANDLERS, HookRuntime, available_events, run_hook

__all__ = [
    "EXIT_DENY",
    "EXIT_OK",
    "HANDLERS",
    "HookContext",
    "HookResult",
    "HookRuntime",
    "available_events",
    "run_hook",
]
