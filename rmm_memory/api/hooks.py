"""
Lifecycle hooks for reflective memory.

A small pub/sub layer so hosts can observe:
- turns being buffered
- reflections being triggered, retried, completed or dropped
- memories being added or merged
- reranker updates

Hook failures are collected and returned, never raised into the memory path.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from rmm_memory.models.base import now_ms

logger = logging.getLogger(__name__)


class HookEvent(str, Enum):
    """Observable events."""

    # Ingestion
    TURN_BUFFERED = "turn_buffered"

    # Reflection
    REFLECTION_TRIGGERED = "reflection_triggered"
    REFLECTION_RETRY = "reflection_retry"
    REFLECTION_COMPLETED = "reflection_completed"
    REFLECTION_DROPPED = "reflection_dropped"

    # Memory bank
    MEMORY_ADDED = "memory_added"
    MEMORY_MERGED = "memory_merged"

    # Retrieval / learning
    MEMORIES_RETRIEVED = "memories_retrieved"
    RERANKER_UPDATED = "reranker_updated"


@dataclass
class HookContext:
    """What a hook callback receives."""

    event: HookEvent
    owner_id: str | None = None
    timestamp: int = field(default_factory=now_ms)
    memory_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


HookCallback = Callable[[HookContext], None]
AsyncHookCallback = Callable[[HookContext], Awaitable[None]]


class HookRegistry:
    """
    Per-event lists of sync and async callbacks, plus global callbacks that
    see every event.
    """

    def __init__(self):
        self._sync_hooks: dict[HookEvent, list[HookCallback]] = {}
        self._async_hooks: dict[HookEvent, list[AsyncHookCallback]] = {}
        self._global_hooks: list[HookCallback] = []
        self._enabled = True

    def register(self, event: HookEvent, callback: HookCallback) -> None:
        """Call ``callback`` synchronously whenever ``event`` fires."""
        self._sync_hooks.setdefault(event, []).append(callback)

    def register_async(self, event: HookEvent, callback: AsyncHookCallback) -> None:
        """Await ``callback`` whenever ``event`` fires through ``trigger_async``."""
        self._async_hooks.setdefault(event, []).append(callback)

    def register_global(self, callback: HookCallback) -> None:
        self._global_hooks.append(callback)

    def unregister(self, event: HookEvent, callback: HookCallback | AsyncHookCallback) -> bool:
        """
        Remove a callback registered for ``event``.

        Returns:
            True if it was registered
        """
        for hooks in (self._sync_hooks.get(event, []), self._async_hooks.get(event, [])):
            if callback in hooks:
                hooks.remove(callback)
                return True
        return False

    def trigger(self, context: HookContext) -> list[Exception]:
        """
        Run global and sync callbacks for the event.

        Returns:
            Exceptions raised by callbacks
        """
        if not self._enabled:
            return []

        errors: list[Exception] = []
        for callback in [*self._global_hooks, *self._sync_hooks.get(context.event, [])]:
            try:
                callback(context)
            except Exception as e:
                errors.append(e)
        return errors

    async def trigger_async(self, context: HookContext) -> list[Exception]:
        """Run sync callbacks, then await async ones."""
        if not self._enabled:
            return []

        errors = self.trigger(context)
        for callback in list(self._async_hooks.get(context.event, [])):
            try:
                await callback(context)
            except Exception as e:
                errors.append(e)
        if errors:
            logger.debug(f"{len(errors)} hook(s) failed for {context.event.value}")
        return errors

    def enable(self) -> None:
        self._enabled = True

    def disable(self) -> None:
        """Stop firing hooks (callbacks stay registered)."""
        self._enabled = False

    def clear(self, event: HookEvent | None = None) -> None:
        """Drop callbacks for one event, or everything."""
        if event:
            self._sync_hooks.pop(event, None)
            self._async_hooks.pop(event, None)
        else:
            self._sync_hooks.clear()
            self._async_hooks.clear()
            self._global_hooks.clear()

    def get_hook_count(self, event: HookEvent | None = None) -> int:
        if event:
            return len(self._sync_hooks.get(event, [])) + len(self._async_hooks.get(event, []))
        return (
            len(self._global_hooks)
            + sum(len(hooks) for hooks in self._sync_hooks.values())
            + sum(len(hooks) for hooks in self._async_hooks.values())
        )


# Process-wide registry used when no registry is passed explicitly
_global_registry = HookRegistry()


def get_hook_registry() -> HookRegistry:
    return _global_registry


def on_event(event: HookEvent):
    """
    Decorator registering a sync hook on the global registry.

    Usage:
        @on_event(HookEvent.REFLECTION_DROPPED)
        def alert(context: HookContext):
            print(f"dropped {context.data['message_count']} messages")
    """
    def decorator(func: HookCallback) -> HookCallback:
        _global_registry.register(event, func)
        return func
    return decorator
