"""
Data models for the RMM memory core.
"""

from rmm_memory.models.base import content_hash, now_ms
from rmm_memory.models.buffer import BufferedMessage, MessageBuffer, MessageRole
from rmm_memory.models.memory import MemoryEntry, RetrievedMemory, make_memory_id
from rmm_memory.models.reranker import RerankerState, RerankerWeights

__all__ = [
    "BufferedMessage",
    "MemoryEntry",
    "MessageBuffer",
    "MessageRole",
    "RerankerState",
    "RerankerWeights",
    "RetrievedMemory",
    "content_hash",
    "make_memory_id",
    "now_ms",
]
