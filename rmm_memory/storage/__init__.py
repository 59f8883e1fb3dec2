"""
Storage for the RMM memory core.

Provides:
- Collaborator protocols (chat model, embeddings, vector store, key-value store)
- In-memory and SQLite key-value backends
- Live/staging buffer storage and reranker weight storage
"""

from rmm_memory.storage.base import (
    BaseKeyValueStore,
    ChatModel,
    EmbeddingsProvider,
    KeyValueStore,
    MemoryVectorStore,
    StorageError,
)
from rmm_memory.storage.buffers import BUFFER_KEY, MessageBufferStorage
from rmm_memory.storage.kv import InMemoryKeyValueStore
from rmm_memory.storage.sqlite import SQLiteKeyValueStore
from rmm_memory.storage.weights import WEIGHTS_KEY, WeightStorage

__all__ = [
    # Base
    "BaseKeyValueStore",
    "ChatModel",
    "EmbeddingsProvider",
    "KeyValueStore",
    "MemoryVectorStore",
    "StorageError",
    # Implementations
    "BUFFER_KEY",
    "InMemoryKeyValueStore",
    "MessageBufferStorage",
    "SQLiteKeyValueStore",
    "WEIGHTS_KEY",
    "WeightStorage",
]
