"""
Shared rate-limit backoff for chat models.

Several wrapped models can share one coordinator. When any of them hits a
rate limit, every caller waits until the shared backoff window passes. The
window escalates through ``backoff_seconds`` on consecutive rate limits and
resets after the next successful call.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal, Sequence

import httpx

from rmm_memory.storage.base import ChatModel

logger = logging.getLogger(__name__)

DEFAULT_BACKOFF_SECONDS = (300.0, 900.0, 1800.0, 3600.0)

_RATE_LIMIT_MARKERS = (
    "429",
    "rate limit",
    "too many requests",
    "quota",
    "resource exhausted",
    "usage limit",
)


@dataclass
class RateLimitEvent:
    kind: Literal[
        "rate_limited",
        "backoff_scheduled",
        "backoff_already_active",
        "waiting_for_backoff",
        "backoff_reset",
    ]
    scope: str | None = None
    attempt: int | None = None
    message: str | None = None
    wait_s: float | None = None


RateLimitEventCallback = Callable[[RateLimitEvent], Awaitable[None] | None]


def is_rate_limit_error(error: BaseException) -> bool:
    """Heuristic: 429 status codes or rate/quota wording in the error."""
    if isinstance(error, httpx.HTTPStatusError) and error.response.status_code == 429:
        return True

    message = str(error).lower()
    if any(marker in message for marker in _RATE_LIMIT_MARKERS):
        return True

    response = getattr(error, "response", None)
    statuses = [
        getattr(error, "status", None),
        getattr(error, "status_code", None),
        getattr(response, "status", None),
        getattr(response, "status_code", None),
    ]
    if any(str(status) == "429" for status in statuses if status is not None):
        return True

    code = str(getattr(error, "code", "") or "").lower()
    return "rate" in code or "quota" in code or code == "429"


class SharedRateLimitCoordinator:
    """Escalating backoff window shared by every wrapped model."""

    def __init__(
        self,
        backoff_seconds: Sequence[float] = DEFAULT_BACKOFF_SECONDS,
        on_event: RateLimitEventCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        configured = [float(s) for s in backoff_seconds if s > 0]
        self.backoff_seconds = configured or list(DEFAULT_BACKOFF_SECONDS)
        self.on_event = on_event
        self._clock = clock
        self._sleep = sleep

        self._next_allowed_at = 0.0
        self._backoff_index = 0
        self._gate = asyncio.Lock()

    async def _emit(self, event: RateLimitEvent) -> None:
        if self.on_event is None:
            return
        outcome = self.on_event(event)
        if asyncio.iscoroutine(outcome):
            await outcome

    @property
    def backoff_level(self) -> int:
        return self._backoff_index

    async def wait_for_slot(self, scope: str | None = None) -> None:
        """Block until no backoff window is active."""
        while True:
            async with self._gate:
                wait = max(0.0, self._next_allowed_at - self._clock())
            if wait <= 0:
                return
            await self._emit(RateLimitEvent("waiting_for_backoff", scope=scope, wait_s=wait))
            await self._sleep(wait)

    async def register_rate_limit(
        self,
        error: BaseException,
        scope: str | None = None,
        attempt: int | None = None,
    ) -> None:
        """Open (or keep) a backoff window after a rate-limit error."""
        await self._emit(RateLimitEvent("rate_limited", scope=scope, attempt=attempt, message=str(error)))
        async with self._gate:
            now = self._clock()
            if now < self._next_allowed_at:
                await self._emit(
                    RateLimitEvent(
                        "backoff_already_active", scope=scope, attempt=attempt,
                        wait_s=self._next_allowed_at - now,
                    )
                )
                return
            delay = self.backoff_seconds[min(self._backoff_index, len(self.backoff_seconds) - 1)]
            self._next_allowed_at = now + delay
            self._backoff_index += 1
        logger.warning(f"Rate limited{f' ({scope})' if scope else ''}; backing off {delay:.0f}s")
        await self._emit(
            RateLimitEvent("backoff_scheduled", scope=scope, attempt=attempt, wait_s=delay)
        )

    async def reset_after_success(self, scope: str | None = None) -> None:
        async with self._gate:
            if self._next_allowed_at == 0.0 and self._backoff_index == 0:
                return
            self._next_allowed_at = 0.0
            self._backoff_index = 0
        await self._emit(RateLimitEvent("backoff_reset", scope=scope))


class RateLimitRetryModel:
    """
    Chat model decorator: waits for the shared window, retries rate-limited
    calls, and re-raises everything else.
    """

    def __init__(
        self,
        model: ChatModel,
        coordinator: SharedRateLimitCoordinator,
        scope: str | None = None,
        max_attempts: int | None = None,
    ):
        self.model = model
        self.coordinator = coordinator
        self.scope = scope
        self.max_attempts = max_attempts

    async def ainvoke(self, input: Any, **kwargs: Any) -> Any:
        attempt = 0
        while True:
            attempt += 1
            await self.coordinator.wait_for_slot(self.scope)
            try:
                result = await self.model.ainvoke(input, **kwargs)
            except Exception as e:
                if not is_rate_limit_error(e):
                    raise
                if self.max_attempts is not None and attempt >= self.max_attempts:
                    raise
                await self.coordinator.register_rate_limit(e, scope=self.scope, attempt=attempt)
                continue
            await self.coordinator.reset_after_success(self.scope)
            return result
