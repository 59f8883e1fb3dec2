"""
Provider adapters for embeddings and chat models.

Supports:
- Ollama embeddings over HTTP (LangChain ``Embeddings`` compatible)
- Ollama chat models through langchain-ollama
- Cache decorators built from CacheConfig
- Lazy embedding-dimension validation
"""

import asyncio
import logging

import httpx
from langchain_core.embeddings import Embeddings
from langchain_ollama import ChatOllama

from rmm_memory.config import CacheConfig, ConfigurationError, EmbeddingConfig, LLMConfig
from rmm_memory.encoding.cached_chat_model import CachedChatModel, CachedChatModelStore
from rmm_memory.encoding.cached_embeddings import CachedEmbeddings
from rmm_memory.storage.base import ChatModel, EmbeddingsProvider

logger = logging.getLogger(__name__)


class OllamaEmbeddings(Embeddings):
    """
    Ollama-based embeddings for local embedding generation.

    Uses Ollama's embedding API with models like:
    - nomic-embed-text (768 dimensions)
    - mxbai-embed-large (1024 dimensions)
    - all-minilm (384 dimensions)
    """

    def __init__(self, config: EmbeddingConfig | None = None):
        self.config = config or EmbeddingConfig()
        self.base_url = self.config.ollama_base_url.rstrip("/")
        self._client: httpx.AsyncClient | None = None

    def _payload(self, text: str) -> dict[str, str]:
        return {"model": self.config.model, "prompt": text}

    @staticmethod
    def _parse(response: httpx.Response) -> list[float]:
        response.raise_for_status()
        embedding = response.json().get("embedding")
        if not embedding:
            raise ValueError("No embedding returned")
        return embedding

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout)
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def aembed_query(self, text: str) -> list[float]:
        client = await self._get_client()
        response = await client.post(f"{self.base_url}/api/embeddings", json=self._payload(text))
        return self._parse(response)

    async def aembed_documents(self, texts: list[str]) -> list[list[float]]:
        # No native batch endpoint; requests run concurrently
        return list(await asyncio.gather(*(self.aembed_query(text) for text in texts)))

    def embed_query(self, text: str) -> list[float]:
        with httpx.Client(timeout=self.config.timeout) as client:
            response = client.post(f"{self.base_url}/api/embeddings", json=self._payload(text))
            return self._parse(response)

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self.embed_query(text) for text in texts]

    async def __aenter__(self) -> "OllamaEmbeddings":
        await self._get_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()


def create_embeddings(config: EmbeddingConfig | None = None) -> Embeddings:
    """
    Factory for the configured embeddings provider.

    Raises:
        ConfigurationError: for an unknown provider
    """
    config = config or EmbeddingConfig()
    providers = {
        "ollama": OllamaEmbeddings,
    }
    embeddings_class = providers.get(config.provider)
    if embeddings_class is None:
        raise ConfigurationError(f"Unknown embedding provider: {config.provider}")
    return embeddings_class(config)


def create_chat_model(config: LLMConfig | None = None) -> ChatOllama:
    """Factory for the extraction / update chat model."""
    config = config or LLMConfig()
    if config.provider != "ollama":
        raise ConfigurationError(f"Unknown LLM provider: {config.provider}")
    return ChatOllama(
        model=config.model,
        temperature=config.temperature,
        base_url=config.ollama_base_url,
    )


async def create_cached_embeddings(
    embeddings: EmbeddingsProvider,
    config: CacheConfig,
) -> EmbeddingsProvider:
    """
    Wrap ``embeddings`` in an opened CachedEmbeddings when a cache path is configured.

    The caller owns the returned cache and closes it with ``close()``.
    """
    if config.embeddings_cache_path is None:
        return embeddings
    cache = CachedEmbeddings(embeddings, config.embeddings_cache_path, config.namespace)
    return await cache.open()


async def create_cached_chat_model(model: ChatModel, config: CacheConfig) -> ChatModel:
    """
    Wrap ``model`` in a CachedChatModel over an opened store when a cache path is configured.

    Close the store through ``cached.store.close()``.
    """
    if config.chat_cache_path is None:
        return model
    store = await CachedChatModelStore(config.chat_cache_path).open()
    return CachedChatModel(
        model,
        store,
        namespace=config.namespace,
        empty_response_retry_count=config.empty_response_retry_count,
    )


async def validate_embedding_dimension(
    embeddings: EmbeddingsProvider,
    expected_dimension: int,
    sample_text: str = "dimension check",
) -> bool:
    """
    Embed a sample string and compare its size with the configured dimension.

    Returns:
        True when the sizes agree, False when the provider could not be reached

    Raises:
        ConfigurationError: If the provider returns a different dimension
    """
    try:
        vector = await embeddings.aembed_query(sample_text)
    except Exception as e:
        logger.warning(f"Could not validate embedding dimension: {e}")
        return False
    if len(vector) != expected_dimension:
        raise ConfigurationError(
            f"Embedding dimension mismatch: expected {expected_dimension}, "
            f"provider returned {len(vector)}"
        )
    return True


class EmbeddingDimensionValidator:
    """
    Checks the provider's embedding size once, on first use.

    A size mismatch is a configuration error and is raised. A provider that
    cannot be reached is logged and checked again next time.
    """

    def __init__(self, embeddings: EmbeddingsProvider, expected_dimension: int):
        self.embeddings = embeddings
        self.expected_dimension = expected_dimension
        self._validated = False

    @property
    def validated(self) -> bool:
        return self._validated

    async def validate(self, sample_text: str = "dimension check") -> None:
        if not self._validated:
            self._validated = await validate_embedding_dimension(
                self.embeddings, self.expected_dimension, sample_text
            )
