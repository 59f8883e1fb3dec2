"""
Host-facing API: lifecycle hooks.

The memory manager itself is exported from the top-level package.
"""

from rmm_memory.api.hooks import (
    HookContext,
    HookEvent,
    HookRegistry,
    get_hook_registry,
    on_event,
)

__all__ = [
    "HookContext",
    "HookEvent",
    "HookRegistry",
    "get_hook_registry",
    "on_event",
]
