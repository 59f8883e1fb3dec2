"""
Content-addressed cache for chat model invocations.

Records live in one JSON-lines file, ``{"k": key, "r": {"text", "content"}}``
per line, keyed by sha256(namespace + "\\n" + normalized prompt). Empty
completions are never cached: the call is retried a bounded number of times
and an empty result is returned uncached.
"""

import asyncio
import copy
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Literal

from langchain_core.messages import AIMessage, BaseMessage, messages_to_dict
from langchain_core.prompt_values import PromptValue

from rmm_memory.encoding.cached_embeddings import CacheStats
from rmm_memory.models.base import content_hash, response_text
from rmm_memory.storage.base import ChatModel, StorageError

logger = logging.getLogger(__name__)


@dataclass
class CacheEvent:
    """Emitted for every cache decision, for tracing evaluation runs."""

    kind: Literal["hit", "miss", "write", "skip_write", "retry_empty"]
    key: str
    namespace: str
    prompt: str
    response_text: str | None = None
    reason: str | None = None


CacheEventCallback = Callable[[CacheEvent], Awaitable[None] | None]


def normalize_prompt(prompt: Any) -> str:
    """Canonical text for a prompt: strings as-is, everything else as sorted JSON."""
    if isinstance(prompt, str):
        return prompt
    if isinstance(prompt, PromptValue):
        prompt = prompt.to_messages()
    if isinstance(prompt, list) and all(isinstance(m, BaseMessage) for m in prompt):
        prompt = messages_to_dict(prompt)
    return json.dumps(prompt, sort_keys=True, default=str)


def _json_content(response: Any) -> Any:
    content = getattr(response, "content", response if isinstance(response, str) else "")
    try:
        json.dumps(content)
    except (TypeError, ValueError):
        return response_text(response)
    return content


class CachedChatModelStore:
    """Append-only JSON-lines store of normalized responses."""

    def __init__(self, cache_path: Path | str):
        self.cache_path = Path(cache_path)
        self._entries: dict[str, dict[str, Any]] = {}
        self._file = None
        self._write_lock = asyncio.Lock()
        self._stats = CacheStats()

    async def open(self) -> "CachedChatModelStore":
        if self._file is not None:
            return self
        self.cache_path.parent.mkdir(parents=True, exist_ok=True)
        self._load()
        self._file = open(self.cache_path, "a", encoding="utf-8")
        return self

    async def close(self) -> None:
        if self._file is None:
            return
        async with self._write_lock:
            self._file.close()
            self._file = None

    async def __aenter__(self) -> "CachedChatModelStore":
        return await self.open()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def get_stats(self) -> CacheStats:
        return CacheStats(**self._stats.to_dict())

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> dict[str, Any] | None:
        found = self._entries.get(key)
        if found is None:
            return None
        self._stats.hits += 1
        return copy.deepcopy(found)

    def mark_miss(self) -> None:
        self._stats.misses += 1

    async def set(self, key: str, text: str, content: Any) -> None:
        """Record a response; a key already present is left untouched."""
        if self._file is None:
            raise StorageError(f"Chat cache {self.cache_path} is not open")
        if key in self._entries:
            return
        record = {"text": text, "content": copy.deepcopy(content)}
        self._entries[key] = record
        async with self._write_lock:
            self._file.write(json.dumps({"k": key, "r": record}) + "\n")
            self._file.flush()
            await asyncio.to_thread(os.fsync, self._file.fileno())
            self._stats.writes += 1

    def _load(self) -> None:
        if not self.cache_path.exists():
            return
        with open(self.cache_path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if (
                    isinstance(record, dict)
                    and isinstance(record.get("k"), str)
                    and isinstance(record.get("r"), dict)
                    and isinstance(record["r"].get("text"), str)
                ):
                    self._entries[record["k"]] = record["r"]


class CachedChatModel:
    """
    Chat model decorator that answers repeated prompts from a CachedChatModelStore.

    Cached answers come back as ``AIMessage`` objects.
    """

    def __init__(
        self,
        model: ChatModel,
        store: CachedChatModelStore,
        namespace: str,
        empty_response_retry_count: int = 1,
        on_event: CacheEventCallback | None = None,
    ):
        self.model = model
        self.store = store
        self.namespace = namespace
        self.empty_response_retry_count = max(0, empty_response_retry_count)
        self.on_event = on_event

    async def _emit(self, event: CacheEvent) -> None:
        if self.on_event is None:
            return
        outcome = self.on_event(event)
        if asyncio.iscoroutine(outcome):
            await outcome

    def make_key(self, prompt: Any) -> str:
        return content_hash(self.namespace, normalize_prompt(prompt))

    async def ainvoke(self, input: Any, **kwargs: Any) -> Any:
        prompt = normalize_prompt(input)
        key = content_hash(self.namespace, prompt)

        cached = self.store.get(key)
        if cached is not None:
            await self._emit(CacheEvent("hit", key, self.namespace, prompt, response_text=cached["text"]))
            return AIMessage(content=cached["content"])

        self.store.mark_miss()
        await self._emit(CacheEvent("miss", key, self.namespace, prompt))

        response: Any = None
        text = ""
        for attempt in range(self.empty_response_retry_count + 1):
            response = await self.model.ainvoke(input, **kwargs)
            text = response_text(response)
            if text.strip():
                break
            if attempt < self.empty_response_retry_count:
                await self._emit(
                    CacheEvent(
                        "retry_empty", key, self.namespace, prompt,
                        reason=f"empty_response_text_attempt_{attempt + 1}",
                    )
                )

        if not text.strip():
            logger.warning(f"Model returned empty text for {key[:12]}, not caching")
            await self._emit(CacheEvent("skip_write", key, self.namespace, prompt, reason="empty_response_text"))
            return response

        content = _json_content(response)
        await self.store.set(key, text, content)
        await self._emit(CacheEvent("write", key, self.namespace, prompt, response_text=text))
        return AIMessage(content=content)
