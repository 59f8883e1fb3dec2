"""
Reflective memory manager: the host-facing entry point.

Per conversation turn the host calls:

    context = await manager.retrieve(owner_id, user_query)      # before the model call
    prompt = context.build_prompt()                              # or its own prompt with context.memories_block()
    response = await model.ainvoke(prompt)
    await manager.apply_reward(context, response_text(response)) # after the model call
    await manager.ingest_turn(owner_id, [human_message, ai_message])

Ingestion checks the reflection trigger and buffers the turn; consolidation
runs in the background. Retrieval reranks top-K similarity results down to
top-M, and the reward step learns from the citations in the response.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np
from langchain_core.messages import BaseMessage

from rmm_memory.api.hooks import HookContext, HookEvent, HookRegistry, get_hook_registry
from rmm_memory.config import RMMConfig
from rmm_memory.consolidation.pipeline import ReflectionRunResult, StagedReflectionPipeline
from rmm_memory.consolidation.prompts import format_memories, generate_with_citations_prompt
from rmm_memory.encoding.providers import EmbeddingDimensionValidator
from rmm_memory.models.base import response_text
from rmm_memory.models.buffer import BufferedMessage, MessageBuffer
from rmm_memory.models.memory import RetrievedMemory
from rmm_memory.models.reranker import RerankerState
from rmm_memory.retrieval.citations import CitationKind, CitationResult, extract_citations
from rmm_memory.retrieval.reranker import (
    DimensionMismatchError,
    RerankerEngine,
    RerankerSelection,
    as_vector,
)
from rmm_memory.storage.base import ChatModel, EmbeddingsProvider, KeyValueStore, MemoryVectorStore
from rmm_memory.storage.buffers import MessageBufferStorage
from rmm_memory.storage.kv import InMemoryKeyValueStore
from rmm_memory.storage.weights import WeightStorage

logger = logging.getLogger(__name__)


def _dialogue_turns(raw_dialogue: str) -> list[tuple[str, str]]:
    turns = []
    for line in raw_dialogue.splitlines():
        line = line.strip()
        if not line:
            continue
        speaker, sep, text = line.partition(": ")
        turns.append((speaker, text) if sep else ("", line))
    return turns


@dataclass
class RetrievalContext:
    """Memories shown to the model for one turn, and what the reward step needs."""

    owner_id: str
    query: str
    memories: list[RetrievedMemory] = field(default_factory=list)
    selection: RerankerSelection | None = None
    state: RerankerState | None = None

    @property
    def rerankable(self) -> bool:
        return self.selection is not None and self.state is not None and len(self.selection) > 0

    def memories_block(self) -> str:
        return format_memories(
            (m.topic_summary, _dialogue_turns(m.raw_dialogue)) for m in self.memories
        )

    def build_prompt(self) -> str:
        return generate_with_citations_prompt(self.query, self.memories_block())


def to_buffered(messages: Sequence[BufferedMessage | BaseMessage]) -> list[BufferedMessage]:
    return [
        m if isinstance(m, BufferedMessage) else BufferedMessage.from_langchain(m)
        for m in messages
    ]


class ReflectiveMemoryManager:
    """
    Ties together buffering, staged reflection, reranked retrieval and
    citation-rewarded learning for any number of owners.

    Store and model outages never raise from ``ingest_turn``, ``retrieve``
    or ``apply_reward``; they degrade to no memory or no update. An
    embedding dimension that disagrees with persisted reranker weights does
    raise (DimensionMismatchError).
    """

    def __init__(
        self,
        vector_store: MemoryVectorStore,
        embeddings: EmbeddingsProvider,
        chat_model: ChatModel,
        kv_store: KeyValueStore | None = None,
        config: RMMConfig | None = None,
        hooks: HookRegistry | None = None,
        rng: np.random.Generator | None = None,
        max_cached_states: int = 256,
    ):
        self.config = config or RMMConfig()
        self.vector_store = vector_store
        self.embeddings = embeddings
        self.chat_model = chat_model
        self.kv_store = kv_store if kv_store is not None else InMemoryKeyValueStore()
        self.hooks = hooks or get_hook_registry()

        scope = self.config.owner_scope
        self.buffers = MessageBufferStorage(self.kv_store, scope=scope)
        self.weights = WeightStorage(self.kv_store, scope=scope)
        self.engine = RerankerEngine(self.config.reranker, rng=rng)
        self.pipeline = StagedReflectionPipeline(
            self.buffers,
            vector_store,
            chat_model,
            config=self.config.reflection,
            hooks=self.hooks,
        )

        # Most recently used reranker states; evicted owners reload from WeightStorage.
        self.max_cached_states = max_cached_states
        self._states: dict[str, RerankerState] = {}
        self._dimension_validator = (
            EmbeddingDimensionValidator(embeddings, self.config.embedding_dimension)
            if self.config.embedding_dimension
            else None
        )

        if self.config.debug:
            logging.getLogger("rmm_memory").setLevel(logging.DEBUG)

    # Ingestion

    async def ingest_turn(
        self,
        owner_id: str,
        messages: Sequence[BufferedMessage | BaseMessage],
        now: int | None = None,
    ) -> asyncio.Task | None:
        """
        Check the reflection trigger, then buffer the turn.

        The trigger runs before the append so inactivity is measured since
        the previous turn.

        Returns:
            The background reflection task if one was started
        """
        task = await self.pipeline.maybe_reflect(owner_id, now=now)
        await self.pipeline.append_messages(owner_id, to_buffered(messages), now=now)
        return task

    async def flush(self, owner_id: str) -> ReflectionRunResult | None:
        """Reflect on whatever is buffered now, ignoring the trigger policy, and wait for it."""
        await self.pipeline.wait_for_reflections(owner_id)
        result = None
        # A leftover staged batch is resumed first; the second pass takes the live buffer.
        for _ in range(2):
            task = await self.pipeline.maybe_reflect(owner_id, force=True)
            if task is None:
                break
            result = await task
        return result

    async def get_buffer(self, owner_id: str) -> MessageBuffer:
        return await self.buffers.load_buffer(owner_id)

    # Retrieval

    def _remember_state(self, owner_id: str, state: RerankerState) -> None:
        self._states.pop(owner_id, None)
        self._states[owner_id] = state
        while len(self._states) > self.max_cached_states:
            del self._states[next(iter(self._states))]

    async def _load_state(self, owner_id: str, dimension: int) -> RerankerState:
        state = self._states.get(owner_id)
        if state is None:
            state = await self.weights.load(owner_id)
            if state is None:
                logger.debug(f"Initializing reranker for {owner_id} at dimension {dimension}")
                state = self.engine.initialize_state(dimension)
        if state.dimension != dimension:
            raise DimensionMismatchError(
                f"Reranker for {owner_id} was trained at dimension {state.dimension}, "
                f"embeddings have dimension {dimension}"
            )
        if state.config != self.config.reranker:
            state = state.model_copy(update={"config": self.config.reranker})
        self._remember_state(owner_id, state)
        return state

    async def retrieve(self, owner_id: str, query: str) -> RetrievalContext:
        """
        Fetch top-K by similarity and rerank to top-M.

        When embeddings are unavailable the similarity order is kept and no
        learning happens for this turn.
        """
        context = RetrievalContext(owner_id=owner_id, query=query)
        if not query.strip():
            return context

        if self._dimension_validator is not None:
            await self._dimension_validator.validate()

        reranker = self.config.reranker
        try:
            docs = await self.vector_store.asimilarity_search(query, k=reranker.top_k)
        except Exception as e:
            logger.warning(f"Similarity search failed for {owner_id}: {e}")
            return context
        candidates = [
            RetrievedMemory.from_document(doc, fallback_id=f"candidate-{i}")
            for i, doc in enumerate(docs)
        ]
        if not candidates:
            return context

        try:
            query_embedding = as_vector(await self.embeddings.aembed_query(query), "query embedding")
            raw_embeddings = await self.embeddings.aembed_documents(
                [c.topic_summary for c in candidates]
            )
            if len(raw_embeddings) != len(candidates):
                raise ValueError(f"{len(raw_embeddings)} embeddings for {len(candidates)} memories")
            memory_embeddings = [as_vector(v, "memory embedding") for v in raw_embeddings]
        except Exception as e:
            logger.warning(f"Embedding failed for {owner_id}, using similarity order: {e}")
            context.memories = candidates[: reranker.top_m]
            return context

        state = await self._load_state(owner_id, int(query_embedding.shape[0]))
        selection = self.engine.select_top_m(candidates, query_embedding, memory_embeddings, state)
        context.selection = selection
        context.state = state
        context.memories = list(selection.memories)

        await self.hooks.trigger_async(
            HookContext(
                event=HookEvent.MEMORIES_RETRIEVED,
                owner_id=owner_id,
                data={"candidates": len(candidates), "selected": len(context.memories)},
            )
        )
        return context

    # Learning

    async def apply_reward(
        self, context: RetrievalContext, response: str | BaseMessage
    ) -> CitationResult:
        """
        Parse citations from the model's response and update the reranker.

        The updated weights are persisted best-effort.
        """
        citation = extract_citations(response_text(response))
        if not context.rerankable:
            return citation
        if citation.kind == CitationKind.MALFORMED:
            logger.debug(f"Malformed citations for {context.owner_id}, skipping update")
            return citation

        owner_id = context.owner_id
        state = self._states.get(owner_id, context.state)
        updated = self.engine.update(context.selection, citation, state)
        if updated is state:
            return citation

        self._remember_state(owner_id, updated)
        saved = await self.weights.save(owner_id, updated)
        await self.hooks.trigger_async(
            HookContext(
                event=HookEvent.RERANKER_UPDATED,
                owner_id=owner_id,
                data={
                    "citation": citation.kind.value,
                    "indices": list(citation.indices),
                    "persisted": saved,
                },
            )
        )
        return citation

    async def get_reranker_state(self, owner_id: str) -> RerankerState | None:
        return self._states.get(owner_id) or await self.weights.load(owner_id)

    # Lifecycle

    async def wait_for_reflections(self, owner_id: str | None = None) -> list[ReflectionRunResult]:
        return await self.pipeline.wait_for_reflections(owner_id)

    async def close(self, cancel: bool = False) -> None:
        await self.pipeline.shutdown(cancel=cancel)

    async def __aenter__(self) -> "ReflectiveMemoryManager":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
