"""
RMM Memory - Reflective Memory Management for conversational agents

A long-term memory core implementing:
- Staged reflection: buffered turns are consolidated in the background
  into speaker-attributed topic memories, with bounded retries
- Add/merge memory bank updates that are safe to replay
- A learned reranker that narrows top-K similarity results to top-M
- Citation-rewarded (REINFORCE) updates from the model's own responses
- Content-addressed caches for embeddings and chat completions

Quick Start:
    from langchain_core.vectorstores import InMemoryVectorStore
    from rmm_memory import ReflectiveMemoryManager, RMMConfig
    from rmm_memory.encoding import (
        create_cached_chat_model,
        create_cached_embeddings,
        create_chat_model,
        create_embeddings,
    )

    config = RMMConfig.from_file("rmm.json")
    embeddings = await create_cached_embeddings(create_embeddings(config.embedding), config.cache)
    manager = ReflectiveMemoryManager(
        vector_store=InMemoryVectorStore(embeddings),
        embeddings=embeddings,
        chat_model=await create_cached_chat_model(create_chat_model(config.llm), config.cache),
        config=config,
    )

    context = await manager.retrieve("user1", "Where did I go hiking?")
    response = await model.ainvoke(context.build_prompt())
    await manager.apply_reward(context, response.content)
    await manager.ingest_turn("user1", [HumanMessage(...), AIMessage(...)])
"""

from rmm_memory.config import (
    CacheConfig,
    ConfigurationError,
    EmbeddingConfig,
    LLMConfig,
    ReflectionConfig,
    RerankerConfig,
    RMMConfig,
)
from rmm_memory.models import (
    BufferedMessage,
    MemoryEntry,
    MessageBuffer,
    MessageRole,
    RerankerState,
    RerankerWeights,
    RetrievedMemory,
)
from rmm_memory.retrieval import (
    CitationKind,
    CitationResult,
    DimensionMismatchError,
    RerankerEngine,
    extract_citations,
    validate_citations,
)
from rmm_memory.storage import (
    InMemoryKeyValueStore,
    MessageBufferStorage,
    SQLiteKeyValueStore,
    StorageError,
    WeightStorage,
)
from rmm_memory.consolidation import (
    ReflectionRunResult,
    StagedReflectionPipeline,
    check_reflection_triggers,
)
from rmm_memory.api.hooks import HookContext, HookEvent, HookRegistry, get_hook_registry, on_event
from rmm_memory.api.memory_manager import ReflectiveMemoryManager, RetrievalContext

__version__ = "0.1.0"

__all__ = [
    # Config
    "CacheConfig",
    "ConfigurationError",
    "EmbeddingConfig",
    "LLMConfig",
    "RMMConfig",
    "ReflectionConfig",
    "RerankerConfig",
    # Models
    "BufferedMessage",
    "MemoryEntry",
    "MessageBuffer",
    "MessageRole",
    "RerankerState",
    "RerankerWeights",
    "RetrievedMemory",
    # Retrieval
    "CitationKind",
    "CitationResult",
    "DimensionMismatchError",
    "RerankerEngine",
    "extract_citations",
    "validate_citations",
    # Storage
    "InMemoryKeyValueStore",
    "MessageBufferStorage",
    "SQLiteKeyValueStore",
    "StorageError",
    "WeightStorage",
    # Reflection
    "ReflectionRunResult",
    "StagedReflectionPipeline",
    "check_reflection_triggers",
    # API
    "HookContext",
    "HookEvent",
    "HookRegistry",
    "ReflectiveMemoryManager",
    "RetrievalContext",
    "get_hook_registry",
    "on_event",
]
