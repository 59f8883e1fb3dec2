"""
Encoding layer: provider adapters and the caching / retry decorators around them.
"""

from rmm_memory.encoding.cached_chat_model import (
    CachedChatModel,
    CachedChatModelStore,
    CacheEvent,
    normalize_prompt,
)
from rmm_memory.encoding.cached_embeddings import CachedEmbeddings, CacheStats
from rmm_memory.encoding.providers import (
    EmbeddingDimensionValidator,
    OllamaEmbeddings,
    create_cached_chat_model,
    create_cached_embeddings,
    create_chat_model,
    create_embeddings,
    validate_embedding_dimension,
)
from rmm_memory.encoding.rate_limit import (
    RateLimitRetryModel,
    SharedRateLimitCoordinator,
    is_rate_limit_error,
)

__all__ = [
    "CacheEvent",
    "CacheStats",
    "CachedChatModel",
    "CachedChatModelStore",
    "CachedEmbeddings",
    "EmbeddingDimensionValidator",
    "OllamaEmbeddings",
    "RateLimitRetryModel",
    "SharedRateLimitCoordinator",
    "create_cached_chat_model",
    "create_cached_embeddings",
    "create_chat_model",
    "create_embeddings",
    "is_rate_limit_error",
    "normalize_prompt",
    "validate_embedding_dimension",
]
