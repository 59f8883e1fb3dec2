"""
Content-addressed, append-only embedding cache.

On disk, for a base path ``P``:
    P.bin          float32 vectors, appended back to back
    P.index.jsonl  one {"k": key, "o": byte offset, "l": float count} per vector

Keys are sha256(namespace + "\\n" + text). The index is read fully at open;
records pointing past the end of the data file (a write cut short) are
dropped. Writes go through a single lock, and each key is written at most once.
"""

import asyncio
import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path

import numpy as np
from langchain_core.embeddings import Embeddings

from rmm_memory.models.base import content_hash
from rmm_memory.retrieval.reranker import as_vector
from rmm_memory.storage.base import EmbeddingsProvider, StorageError

logger = logging.getLogger(__name__)

_FLOAT_BYTES = 4


def _as_stored(vector: np.ndarray) -> list[float]:
    """The vector as a later cache hit will return it (float32 precision)."""
    return vector.astype("<f4").astype(np.float64).tolist()


@dataclass
class CacheStats:
    """Hit / miss / write counters."""

    hits: int = 0
    misses: int = 0
    writes: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class CachedEmbeddings(Embeddings):
    """
    Embeddings decorator backed by an append-only file pair.

    Usage:
        async with CachedEmbeddings(OllamaEmbeddings(), "cache/embeddings", "nomic") as emb:
            vector = await emb.aembed_query("hello")
    """

    def __init__(self, base: EmbeddingsProvider, cache_path: Path | str, namespace: str):
        self.base = base
        self.namespace = namespace
        base_path = Path(cache_path)
        self.data_path = base_path.with_name(base_path.name + ".bin")
        self.index_path = base_path.with_name(base_path.name + ".index.jsonl")

        self._index: dict[str, tuple[int, int]] = {}
        self._data_file = None
        self._index_file = None
        self._next_offset = 0
        self._write_lock = asyncio.Lock()
        self._stats = CacheStats()

    # Lifecycle

    async def open(self) -> "CachedEmbeddings":
        if self._data_file is not None:
            return self
        self.data_path.parent.mkdir(parents=True, exist_ok=True)
        self._load_index()
        self._data_file = open(self.data_path, "a+b")
        self._index_file = open(self.index_path, "a", encoding="utf-8")
        self._next_offset = self.data_path.stat().st_size
        self._drop_truncated(self._next_offset)
        logger.debug(f"Opened embedding cache {self.data_path} with {len(self._index)} vectors")
        return self

    async def close(self) -> None:
        """Wait for pending writes, then close both files."""
        if self._data_file is None:
            return
        async with self._write_lock:
            self._data_file.close()
            self._index_file.close()
            self._data_file = None
            self._index_file = None

    async def __aenter__(self) -> "CachedEmbeddings":
        return await self.open()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def is_open(self) -> bool:
        return self._data_file is not None

    def get_stats(self) -> CacheStats:
        return CacheStats(**self._stats.to_dict())

    def __len__(self) -> int:
        return len(self._index)

    # Embeddings interface

    def make_key(self, text: str) -> str:
        return content_hash(self.namespace, text)

    async def aembed_query(self, text: str) -> list[float]:
        output, missing, missing_texts = self._lookup([text])
        if missing_texts:
            vector = await self.base.aembed_query(text)
            await self._persist(self._fill(output, missing, [vector]))
        return output[0]  # type: ignore[return-value]

    async def aembed_documents(self, texts: list[str]) -> list[list[float]]:
        """
        Embed a batch, calling the provider once for all cache misses.
        """
        output, missing, missing_texts = self._lookup(texts)
        if missing_texts:
            computed = await self.base.aembed_documents(missing_texts)
            pending = self._fill(output, missing, computed)
            await self._persist(pending)
        return output  # type: ignore[return-value]

    def embed_query(self, text: str) -> list[float]:
        output, missing, missing_texts = self._lookup([text])
        if missing_texts:
            vector = self._sync_base("embed_query")(text)
            self._persist_sync(self._fill(output, missing, [vector]))
        return output[0]  # type: ignore[return-value]

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """
        Blocking variant for callers on the sync LangChain API.

        Misses go to the provider's own ``embed_documents``.
        """
        output, missing, missing_texts = self._lookup(texts)
        if missing_texts:
            computed = self._sync_base("embed_documents")(missing_texts)
            self._persist_sync(self._fill(output, missing, computed))
        return output  # type: ignore[return-value]

    def _sync_base(self, name: str):
        method = getattr(self.base, name, None)
        if method is None:
            raise NotImplementedError(f"{type(self.base).__name__} has no sync {name}; use a{name}")
        return method

    def _lookup(
        self, texts: list[str]
    ) -> tuple[list[list[float] | None], dict[str, list[int]], list[str]]:
        self._ensure_open()
        output: list[list[float] | None] = [None] * len(texts)
        missing: dict[str, list[int]] = {}
        missing_texts: list[str] = []
        for i, text in enumerate(texts):
            key = self.make_key(text)
            cached = self._read_vector(key)
            if cached is not None:
                self._stats.hits += 1
                output[i] = cached
            elif key in missing:
                missing[key].append(i)
            else:
                missing[key] = [i]
                missing_texts.append(text)
        self._stats.misses += len(missing_texts)
        return output, missing, missing_texts

    def _fill(
        self,
        output: list[list[float] | None],
        missing: dict[str, list[int]],
        computed: list[list[float]],
    ) -> list[tuple[str, np.ndarray]]:
        if len(computed) != len(missing):
            raise StorageError(
                f"Embeddings provider returned {len(computed)} vectors for {len(missing)} texts"
            )
        pending = []
        for (key, positions), raw in zip(missing.items(), computed):
            vector = as_vector(raw, f"document embedding {positions[0]}")
            for position in positions:
                output[position] = _as_stored(vector)
            pending.append((key, vector))
        return pending

    # File handling

    def _ensure_open(self) -> None:
        if self._data_file is None:
            raise StorageError(f"Embedding cache {self.data_path} is not open")

    def _load_index(self) -> None:
        if not self.index_path.exists():
            return
        with open(self.index_path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if not isinstance(record, dict):
                    continue
                key, offset, length = record.get("k"), record.get("o"), record.get("l")
                if (
                    isinstance(key, str)
                    and isinstance(offset, int)
                    and isinstance(length, int)
                    and offset >= 0
                    and length > 0
                ):
                    self._index[key] = (offset, length)

    def _drop_truncated(self, data_size: int) -> None:
        truncated = [
            key for key, (offset, length) in self._index.items()
            if offset + length * _FLOAT_BYTES > data_size
        ]
        for key in truncated:
            del self._index[key]
        if truncated:
            logger.warning(f"Dropped {len(truncated)} truncated entries from {self.index_path}")

    def _read_vector(self, key: str) -> list[float] | None:
        entry = self._index.get(key)
        if entry is None:
            return None
        offset, length = entry
        self._data_file.seek(offset)
        raw = self._data_file.read(length * _FLOAT_BYTES)
        if len(raw) != length * _FLOAT_BYTES:
            del self._index[key]
            return None
        return np.frombuffer(raw, dtype="<f4").astype(np.float64).tolist()

    def _append(self, vectors: list[tuple[str, np.ndarray]]) -> dict[str, tuple[int, int]]:
        """Append unseen vectors to the data file; returns their index entries."""
        self._ensure_open()
        written: dict[str, tuple[int, int]] = {}
        for key, vector in vectors:
            # A concurrent batch may have written this key while we waited.
            if key in self._index or key in written:
                continue
            data = np.asarray(vector, dtype="<f4").tobytes()
            self._data_file.write(data)
            written[key] = (self._next_offset, int(vector.shape[0]))
            self._next_offset += len(data)
        self._data_file.flush()
        return written

    def _commit(self, written: dict[str, tuple[int, int]]) -> None:
        for key, (offset, length) in written.items():
            self._index_file.write(json.dumps({"k": key, "o": offset, "l": length}) + "\n")
        self._index_file.flush()
        self._index.update(written)
        self._stats.writes += len(written)

    async def _persist(self, vectors: list[tuple[str, np.ndarray]]) -> None:
        if not vectors:
            return
        async with self._write_lock:
            written = self._append(vectors)
            if not written:
                return
            # Vectors are durable before the index entries that point at them.
            await asyncio.to_thread(os.fsync, self._data_file.fileno())
            self._commit(written)
            await asyncio.to_thread(os.fsync, self._index_file.fileno())

    def _persist_sync(self, vectors: list[tuple[str, np.ndarray]]) -> None:
        written = self._append(vectors)
        if not written:
            return
        os.fsync(self._data_file.fileno())
        self._commit(written)
        os.fsync(self._index_file.fileno())
