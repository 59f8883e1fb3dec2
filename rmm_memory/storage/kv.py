"""
In-process key-value store.
"""

import asyncio
import copy
from typing import Any

from rmm_memory.storage.base import BaseKeyValueStore, Namespace, validate_namespace


class InMemoryKeyValueStore(BaseKeyValueStore):
    """
    Dict-backed key-value store.

    Values are deep-copied on the way in and out so callers can never mutate
    stored state in place.
    """

    def __init__(self):
        self._data: dict[Namespace, dict[str, dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    async def aget(self, namespace: Namespace, key: str) -> dict[str, Any] | None:
        ns = validate_namespace(namespace)
        value = self._data.get(ns, {}).get(key)
        return copy.deepcopy(value) if value is not None else None

    async def aput(self, namespace: Namespace, key: str, value: dict[str, Any]) -> None:
        ns = validate_namespace(namespace)
        async with self._lock:
            self._data.setdefault(ns, {})[key] = copy.deepcopy(value)

    async def adelete(self, namespace: Namespace, key: str) -> None:
        ns = validate_namespace(namespace)
        async with self._lock:
            self._data.get(ns, {}).pop(key, None)

    async def alist_keys(self, namespace: Namespace) -> list[str]:
        ns = validate_namespace(namespace)
        return sorted(self._data.get(ns, {}))

    def __len__(self) -> int:
        return sum(len(keys) for keys in self._data.values())
