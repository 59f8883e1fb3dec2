"""
Collaborator interfaces and base classes for storage backends.

The RMM core only ever calls a handful of methods on its collaborators. They
are declared here as narrow protocols shaped like LangChain's async surface,
so LangChain chat models, embeddings and vector stores (and LangGraph-style
key-value stores) plug in without adapters.
"""

from abc import ABC, abstractmethod
from typing import Any, Protocol, Sequence, runtime_checkable

from langchain_core.documents import Document


Namespace = tuple[str, ...]


# Custom exceptions
class StorageError(Exception):
    """Base exception for storage errors."""

    pass


class ConnectionError(StorageError):
    """Raised when a storage backend is used before it is connected."""

    pass


@runtime_checkable
class ChatModel(Protocol):
    """Anything with LangChain's ``ainvoke``; returns a str or a message."""

    async def ainvoke(self, input: Any, **kwargs: Any) -> Any: ...


@runtime_checkable
class EmbeddingsProvider(Protocol):
    """LangChain ``Embeddings`` async surface."""

    async def aembed_query(self, text: str) -> list[float]: ...

    async def aembed_documents(self, texts: list[str]) -> list[list[float]]: ...


@runtime_checkable
class MemoryVectorStore(Protocol):
    """
    LangChain ``VectorStore`` async surface.

    ``adelete`` is optional; callers check for it with ``getattr``.
    """

    async def aadd_documents(self, documents: list[Document], **kwargs: Any) -> list[str]: ...

    async def asimilarity_search(self, query: str, k: int = 4, **kwargs: Any) -> list[Document]: ...


@runtime_checkable
class KeyValueStore(Protocol):
    """Namespaced key-value store holding JSON-compatible dict values."""

    async def aget(self, namespace: Namespace, key: str) -> Any: ...

    async def aput(self, namespace: Namespace, key: str, value: dict[str, Any]) -> None: ...

    async def adelete(self, namespace: Namespace, key: str) -> None: ...


def unwrap_item(item: Any) -> Any:
    """Return the stored value, unwrapping LangGraph-style items with ``.value``."""
    if item is None:
        return None
    if isinstance(item, dict):
        return item
    return getattr(item, "value", item)


class BaseKeyValueStore(ABC):
    """
    Abstract base class for key-value backends.

    Values are JSON-compatible dicts replaced as whole values on every put.
    """

    @abstractmethod
    async def aget(self, namespace: Namespace, key: str) -> dict[str, Any] | None:
        """
        Read a value.

        Returns:
            The stored dict, or None if absent
        """
        pass

    @abstractmethod
    async def aput(self, namespace: Namespace, key: str, value: dict[str, Any]) -> None:
        """Write (replace) a value."""
        pass

    @abstractmethod
    async def adelete(self, namespace: Namespace, key: str) -> None:
        """Delete a value; deleting a missing key is not an error."""
        pass

    @abstractmethod
    async def alist_keys(self, namespace: Namespace) -> list[str]:
        """List keys stored directly under a namespace."""
        pass


def validate_namespace(namespace: Sequence[str]) -> Namespace:
    """Namespaces are non-empty tuples of non-empty strings."""
    ns = tuple(namespace)
    if not ns or not all(isinstance(part, str) and part for part in ns):
        raise StorageError(f"Invalid namespace: {namespace!r}")
    return ns
