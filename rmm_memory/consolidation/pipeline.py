"""
Staged reflection pipeline.

Turns accumulate in a per-owner live buffer. When the trigger policy fires,
the live buffer is copied to a staging buffer and then reset, and a
background task consolidates the staged batch into the memory bank:

    live --(swap)--> staging --(extract, add/merge)--> vector store
                        |
                        +-- retry with exponential backoff, then drop

The staging buffer is the only input of a run; the live buffer is never read
or written by consolidation, so new turns keep flowing while a reflection is
in flight.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from pydantic import BaseModel, Field

from rmm_memory.api.hooks import HookContext, HookEvent, HookRegistry, get_hook_registry
from rmm_memory.config import ReflectionConfig
from rmm_memory.consolidation.extraction import extract_memories
from rmm_memory.consolidation.update import process_memory_update
from rmm_memory.models.base import now_ms
from rmm_memory.models.buffer import BufferedMessage, MessageBuffer
from rmm_memory.storage.base import ChatModel, MemoryVectorStore, StorageError
from rmm_memory.storage.buffers import MessageBufferStorage

logger = logging.getLogger(__name__)


class ConsolidationError(Exception):
    """A consolidation attempt failed and should be retried."""

    pass


class ReflectionRunResult(BaseModel):
    """Outcome of one reflection over a staged batch."""

    owner_id: str
    started_at: int = Field(default_factory=now_ms)
    completed_at: int | None = None
    message_count: int = 0
    attempts: int = 0
    candidates: int = 0
    added: int = 0
    merged: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)
    success: bool = False
    dropped: bool = False


def check_reflection_triggers(
    buffer: MessageBuffer,
    config: ReflectionConfig,
    now: int | None = None,
) -> bool:
    """
    Decide whether the live buffer should be reflected on.

    Reaching ``max_turns`` or ``max_inactivity_ms`` always triggers. Below
    that, strict mode needs both ``min_turns`` and ``min_inactivity_ms``,
    relaxed mode either one. A buffer without human turns never triggers.
    """
    count = buffer.human_message_count
    if buffer.is_empty or count == 0:
        return False

    now = now_ms() if now is None else now
    inactivity = now - buffer.last_message_timestamp

    if count >= config.max_turns or inactivity >= config.max_inactivity_ms:
        return True

    turns_met = count >= config.min_turns
    inactivity_met = inactivity >= config.min_inactivity_ms
    if config.mode == "strict":
        return turns_met and inactivity_met
    return turns_met or inactivity_met


class StagedReflectionPipeline:
    """
    Owns the live/staging protocol and the background consolidation tasks.

    Buffer mutations for one owner are serialized by a per-owner lock;
    different owners never contend.
    """

    def __init__(
        self,
        buffers: MessageBufferStorage,
        vector_store: MemoryVectorStore,
        chat_model: ChatModel,
        config: ReflectionConfig | None = None,
        hooks: HookRegistry | None = None,
        max_tracked_results: int = 1024,
    ):
        self.buffers = buffers
        self.vector_store = vector_store
        self.chat_model = chat_model
        self.config = config or ReflectionConfig()
        self.hooks = hooks or get_hook_registry()

        self.max_tracked_results = max_tracked_results

        # Owner locks live only while held or awaited: (lock, holders + waiters).
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._last_results: dict[str, ReflectionRunResult] = {}

    @asynccontextmanager
    async def _lock(self, owner_id: str):
        lock, users = self._locks.get(owner_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[owner_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[owner_id]
            if users == 1:
                del self._locks[owner_id]
            else:
                self._locks[owner_id] = (lock, users - 1)

    def _record_result(self, owner_id: str, result: ReflectionRunResult) -> None:
        # Insertion order doubles as recency; the oldest owner is evicted first.
        self._last_results.pop(owner_id, None)
        self._last_results[owner_id] = result
        while len(self._last_results) > self.max_tracked_results:
            del self._last_results[next(iter(self._last_results))]

    def is_reflecting(self, owner_id: str) -> bool:
        task = self._tasks.get(owner_id)
        return task is not None and not task.done()

    def last_result(self, owner_id: str) -> ReflectionRunResult | None:
        return self._last_results.get(owner_id)

    async def append_messages(
        self,
        owner_id: str,
        messages: list[BufferedMessage],
        now: int | None = None,
    ) -> MessageBuffer:
        """
        Append messages to the live buffer.

        Returns the buffer as written. A failed write is logged and the turn
        is lost from memory, never from the conversation.
        """
        async with self._lock(owner_id):
            live = await self.buffers.load_buffer(owner_id)
            updated = live.appended(messages, now=now)
            if not await self.buffers.save_buffer(owner_id, updated):
                logger.warning(f"Could not buffer {len(messages)} message(s) for {owner_id}")
        await self.hooks.trigger_async(
            HookContext(
                event=HookEvent.TURN_BUFFERED,
                owner_id=owner_id,
                data={"message_count": len(messages), "buffered": len(updated.messages)},
            )
        )
        return updated

    async def maybe_reflect(
        self,
        owner_id: str,
        now: int | None = None,
        force: bool = False,
    ) -> asyncio.Task | None:
        """
        Check the trigger and, if it fires, swap live into staging and start
        consolidation in the background.

        A staging batch left over from an interrupted run is consolidated
        first, before any new swap. ``force`` skips the trigger policy but
        still requires a non-empty live buffer.

        Returns:
            The consolidation task, or None when nothing was started
        """
        async with self._lock(owner_id):
            if self.is_reflecting(owner_id):
                logger.debug(f"Reflection already in flight for {owner_id}")
                return None

            try:
                leftover = await self.buffers.load_staging_buffer(owner_id)
            except StorageError as e:
                logger.warning(f"{e}; reflection skipped, staged batch kept")
                return None
            if leftover is not None:
                logger.info(
                    f"Resuming staged batch of {len(leftover.messages)} message(s) for {owner_id}"
                )
                return self._dispatch(owner_id)

            live = await self.buffers.load_buffer(owner_id)
            if live.is_empty:
                return None
            if not force and not check_reflection_triggers(live, self.config, now):
                return None

            staged = live.model_copy(update={"retry_count": None})
            if not await self.buffers.stage_buffer(owner_id, staged):
                logger.warning(f"Could not stage buffer for {owner_id}, reflection skipped")
                return None
            if not await self.buffers.clear_buffer(owner_id):
                # Live still holds the turns; undo the stage so they are not consolidated twice.
                logger.warning(f"Could not reset live buffer for {owner_id}, reflection skipped")
                await self.buffers.clear_staging(owner_id)
                return None

            task = self._dispatch(owner_id)

        await self.hooks.trigger_async(
            HookContext(
                event=HookEvent.REFLECTION_TRIGGERED,
                owner_id=owner_id,
                data={"message_count": len(staged.messages), "forced": force},
            )
        )
        return task

    def _dispatch(self, owner_id: str) -> asyncio.Task:
        task = asyncio.create_task(self._consolidate(owner_id), name=f"rmm-reflection-{owner_id}")
        self._tasks[owner_id] = task

        def _forget(done: asyncio.Task) -> None:
            if self._tasks.get(owner_id) is done:
                del self._tasks[owner_id]

        task.add_done_callback(_forget)
        return task

    async def _consolidate(self, owner_id: str) -> ReflectionRunResult:
        """Consolidate the staging buffer with retry-then-drop."""
        result = ReflectionRunResult(owner_id=owner_id)
        try:
            staged = await self.buffers.load_staging_buffer(owner_id)
        except StorageError as e:
            # Staging stays in place and is resumed on the next trigger check.
            logger.warning(f"{e}; reflection postponed")
            result.errors.append(f"StorageError: {e}")
            result.completed_at = now_ms()
            self._record_result(owner_id, result)
            return result
        if staged is None:
            result.success = True
            result.completed_at = now_ms()
            self._record_result(owner_id, result)
            return result

        result.message_count = len(staged.messages)
        session_id = f"{owner_id}:{staged.created_at}"
        failures = staged.retry_count or 0
        max_retries = self.config.max_retries

        while True:
            result.attempts += 1
            try:
                await self._run_attempt(owner_id, staged.messages, session_id, result)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                failures += 1
                result.errors.append(f"{type(e).__name__}: {e}")
                if failures > max_retries:
                    await self._drop(owner_id, result)
                    break
                await self.buffers.stage_buffer(
                    owner_id, staged.model_copy(update={"retry_count": failures})
                )
                delay = self.config.retry_delay_ms * 2 ** (failures - 1) / 1000
                logger.warning(
                    f"Reflection attempt {failures}/{max_retries + 1} failed for {owner_id}: {e}; "
                    f"retrying in {delay:.2f}s"
                )
                await self.hooks.trigger_async(
                    HookContext(
                        event=HookEvent.REFLECTION_RETRY,
                        owner_id=owner_id,
                        data={"retry_count": failures, "delay_s": delay, "error": str(e)},
                    )
                )
                await asyncio.sleep(delay)
                continue

            await self.buffers.clear_staging(owner_id)
            result.success = True
            logger.info(
                f"Reflection for {owner_id} committed {result.added} added, "
                f"{result.merged} merged from {result.message_count} message(s)"
            )
            await self.hooks.trigger_async(
                HookContext(
                    event=HookEvent.REFLECTION_COMPLETED,
                    owner_id=owner_id,
                    data=result.model_dump(include={"candidates", "added", "merged", "attempts"}),
                )
            )
            break

        result.completed_at = now_ms()
        self._record_result(owner_id, result)
        return result

    async def _drop(self, owner_id: str, result: ReflectionRunResult) -> None:
        max_retries = self.config.max_retries
        await self.buffers.clear_staging(owner_id, retry_count=max_retries)
        result.dropped = True
        logger.warning(
            f"Reflection for {owner_id} failed after {max_retries} retries; "
            f"dropped {result.message_count} staged message(s)"
        )
        await self.hooks.trigger_async(
            HookContext(
                event=HookEvent.REFLECTION_DROPPED,
                owner_id=owner_id,
                data={"message_count": result.message_count, "errors": list(result.errors)},
            )
        )

    async def _run_attempt(
        self,
        owner_id: str,
        messages: list[BufferedMessage],
        session_id: str,
        result: ReflectionRunResult,
    ) -> None:
        if self.config.attempt_timeout_s is None:
            await self._commit_batch(owner_id, messages, session_id, result)
            return
        try:
            await asyncio.wait_for(
                self._commit_batch(owner_id, messages, session_id, result),
                timeout=self.config.attempt_timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise ConsolidationError(
                f"attempt exceeded {self.config.attempt_timeout_s}s"
            ) from e

    async def _commit_batch(
        self,
        owner_id: str,
        messages: list[BufferedMessage],
        session_id: str,
        result: ReflectionRunResult,
    ) -> None:
        result.added = result.merged = result.skipped = 0
        candidates = []
        for speaker in self.config.speakers:
            extracted = await extract_memories(messages, self.chat_model, speaker, session_id)
            if extracted is None:
                raise ConsolidationError(f"extraction failed for {speaker}")
            candidates.extend(extracted)
        result.candidates = len(candidates)

        for candidate in candidates:
            outcome = await process_memory_update(
                candidate, self.vector_store, self.chat_model, k=self.config.similar_memories_k
            )
            if outcome.skipped:
                result.skipped += 1
            for memory_id in outcome.added:
                result.added += 1
                await self.hooks.trigger_async(
                    HookContext(event=HookEvent.MEMORY_ADDED, owner_id=owner_id, memory_id=memory_id)
                )
            for memory_id in outcome.merged:
                result.merged += 1
                await self.hooks.trigger_async(
                    HookContext(event=HookEvent.MEMORY_MERGED, owner_id=owner_id, memory_id=memory_id)
                )
            if not outcome.ok:
                raise ConsolidationError(f"vector store rejected memory {candidate.id}")

    async def wait_for_reflections(self, owner_id: str | None = None) -> list[ReflectionRunResult]:
        """Await in-flight reflections (one owner, or all)."""
        if owner_id is not None:
            tasks = [self._tasks[owner_id]] if owner_id in self._tasks else []
        else:
            tasks = list(self._tasks.values())
        if not tasks:
            return []
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        results = []
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                logger.error(f"Reflection task failed: {outcome!r}")
            else:
                results.append(outcome)
        return results

    async def shutdown(self, cancel: bool = False) -> None:
        """
        Stop background work.

        With ``cancel`` the in-flight runs are cancelled; their staging
        buffers stay in place and are resumed on the next trigger check.
        """
        if cancel:
            for task in list(self._tasks.values()):
                task.cancel()
        await self.wait_for_reflections()
