"""
Tests for storage backends.
"""

import numpy as np
import pytest

from rmm_memory.models.buffer import BufferedMessage, MessageBuffer, MessageRole
from rmm_memory.models.reranker import RerankerState, RerankerWeights
from rmm_memory.storage.base import ConnectionError, StorageError
from rmm_memory.storage.buffers import BUFFER_KEY, MessageBufferStorage
from rmm_memory.storage.sqlite import SQLiteKeyValueStore
from rmm_memory.storage.weights import WEIGHTS_KEY, WeightStorage

from fakes import FailingKeyValueStore, FlakyReadKeyValueStore


@pytest.fixture
def temp_db_path(temp_directory):
    """Create a temporary database path."""
    return temp_directory / "nested" / "rmm.db"


@pytest.fixture
async def sqlite_store(temp_db_path):
    """Create and connect a SQLite store."""
    store = SQLiteKeyValueStore(temp_db_path)
    await store.connect()
    yield store
    await store.disconnect()


def buffer_with(*contents: str, now: int = 0) -> MessageBuffer:
    messages = [BufferedMessage(role=MessageRole.HUMAN, content=c) for c in contents]
    return MessageBuffer.empty(now=now).appended(messages, now=now)


class TestInMemoryKeyValueStore:
    """Tests for the in-process store."""

    @pytest.mark.asyncio
    async def test_put_get_delete(self, kv_store):
        await kv_store.aput(("rmm", "u1"), "k", {"a": 1})

        assert await kv_store.aget(("rmm", "u1"), "k") == {"a": 1}

        await kv_store.adelete(("rmm", "u1"), "k")
        assert await kv_store.aget(("rmm", "u1"), "k") is None

    @pytest.mark.asyncio
    async def test_values_are_copied(self, kv_store):
        """Test that mutating a read or written value never changes the store."""
        value = {"items": [1]}
        await kv_store.aput(("ns",), "k", value)
        value["items"].append(2)

        loaded = await kv_store.aget(("ns",), "k")
        loaded["items"].append(3)

        assert await kv_store.aget(("ns",), "k") == {"items": [1]}

    @pytest.mark.asyncio
    async def test_namespaces_are_isolated(self, kv_store):
        await kv_store.aput(("rmm", "u1"), "k", {"owner": "u1"})
        await kv_store.aput(("rmm", "u2"), "k", {"owner": "u2"})

        assert (await kv_store.aget(("rmm", "u1"), "k"))["owner"] == "u1"
        assert await kv_store.alist_keys(("rmm", "u2")) == ["k"]
        assert len(kv_store) == 2

    @pytest.mark.asyncio
    async def test_invalid_namespace(self, kv_store):
        with pytest.raises(StorageError):
            await kv_store.aput((), "k", {})
        with pytest.raises(StorageError):
            await kv_store.aget(("rmm", ""), "k")


class TestSQLiteKeyValueStore:
    """Tests for the SQLite store."""

    @pytest.mark.asyncio
    async def test_connect_creates_database(self, temp_db_path):
        """Test that connecting creates the database file and its parents."""
        store = SQLiteKeyValueStore(temp_db_path)

        assert not temp_db_path.exists()

        await store.connect()

        assert temp_db_path.exists()
        assert await store.is_connected()

        await store.disconnect()
        assert not await store.is_connected()

    @pytest.mark.asyncio
    async def test_requires_connection(self, temp_db_path):
        store = SQLiteKeyValueStore(temp_db_path)
        with pytest.raises(ConnectionError):
            await store.aget(("rmm",), "k")

    @pytest.mark.asyncio
    async def test_upsert_replaces_value(self, sqlite_store):
        await sqlite_store.aput(("rmm", "u1", "buffer"), BUFFER_KEY, {"v": 1})
        await sqlite_store.aput(("rmm", "u1", "buffer"), BUFFER_KEY, {"v": 2})

        assert await sqlite_store.aget(("rmm", "u1", "buffer"), BUFFER_KEY) == {"v": 2}
        assert await sqlite_store.alist_keys(("rmm", "u1", "buffer")) == [BUFFER_KEY]

    @pytest.mark.asyncio
    async def test_delete(self, sqlite_store):
        await sqlite_store.aput(("rmm",), "k", {"v": 1})
        await sqlite_store.adelete(("rmm",), "k")
        await sqlite_store.adelete(("rmm",), "missing")

        assert await sqlite_store.aget(("rmm",), "k") is None

    @pytest.mark.asyncio
    async def test_persists_across_connections(self, temp_db_path):
        async with SQLiteKeyValueStore(temp_db_path) as store:
            await store.aput(("rmm", "u1"), "k", {"nested": {"x": [1, 2]}})

        async with SQLiteKeyValueStore(temp_db_path) as store:
            assert await store.aget(("rmm", "u1"), "k") == {"nested": {"x": [1, 2]}}

    @pytest.mark.asyncio
    async def test_separator_in_namespace_rejected(self, sqlite_store):
        """Test that ('a/b',) cannot collide with ('a', 'b')."""
        with pytest.raises(StorageError):
            await sqlite_store.aput(("a/b",), "k", {})

    @pytest.mark.asyncio
    async def test_unserializable_value(self, sqlite_store):
        with pytest.raises(StorageError):
            await sqlite_store.aput(("rmm",), "k", {"v": object()})

    @pytest.mark.asyncio
    async def test_corrupt_value(self, sqlite_store):
        await sqlite_store._connection.execute(
            "INSERT INTO kv_store (namespace, key, value_json, updated_at) VALUES (?, ?, ?, ?)",
            ("rmm", "bad", "{not json", "2024-01-01"),
        )
        await sqlite_store._connection.commit()

        with pytest.raises(StorageError):
            await sqlite_store.aget(("rmm",), "bad")


class TestMessageBufferStorage:
    """Tests for live and staging buffers."""

    @pytest.mark.asyncio
    async def test_missing_live_buffer_is_empty(self, kv_store, sample_user_id):
        buffers = MessageBufferStorage(kv_store)
        assert (await buffers.load_buffer(sample_user_id)).is_empty

    @pytest.mark.asyncio
    async def test_live_and_staging_are_separate(self, kv_store, sample_user_id):
        buffers = MessageBufferStorage(kv_store, scope="app")

        assert await buffers.save_buffer(sample_user_id, buffer_with("live"))
        assert await buffers.stage_buffer(sample_user_id, buffer_with("staged"))

        assert (await buffers.load_buffer(sample_user_id)).messages[0].content == "live"
        assert (await buffers.load_staging_buffer(sample_user_id)).messages[0].content == "staged"
        assert await kv_store.aget(("app", sample_user_id, "buffer", "staging"), BUFFER_KEY) is not None

    @pytest.mark.asyncio
    async def test_unreadable_staging_raises(self, sample_user_id):
        buffers = MessageBufferStorage(FlakyReadKeyValueStore(fail_suffix=("staging",)))
        await buffers.stage_buffer(sample_user_id, buffer_with("staged"))

        with pytest.raises(StorageError):
            await buffers.load_staging_buffer(sample_user_id)
        assert (await buffers.load_staging_buffer(sample_user_id)).messages[0].content == "staged"

    @pytest.mark.asyncio
    async def test_invalid_staging_reads_as_none(self, kv_store, sample_user_id):
        buffers = MessageBufferStorage(kv_store)
        await kv_store.aput(buffers.staging_namespace(sample_user_id), BUFFER_KEY, {"messages": "garbage"})

        assert await buffers.load_staging_buffer(sample_user_id) is None

    @pytest.mark.asyncio
    async def test_empty_staging_reads_as_none(self, kv_store, sample_user_id):
        buffers = MessageBufferStorage(kv_store)
        await buffers.clear_staging(sample_user_id, retry_count=3)

        assert await buffers.load_staging_buffer(sample_user_id) is None
        cleared = await buffers.load_staging_buffer(sample_user_id, include_empty=True)
        assert cleared.is_empty
        assert cleared.retry_count == 3

    @pytest.mark.asyncio
    async def test_invalid_live_buffer_reads_as_empty(self, kv_store, sample_user_id):
        buffers = MessageBufferStorage(kv_store)
        await kv_store.aput(buffers.live_namespace(sample_user_id), BUFFER_KEY, {"messages": "nope"})

        assert (await buffers.load_buffer(sample_user_id)).is_empty

    @pytest.mark.asyncio
    async def test_write_failure_is_reported(self, sample_user_id):
        buffers = MessageBufferStorage(FailingKeyValueStore(fail_suffix=("buffer",)))

        assert not await buffers.save_buffer(sample_user_id, buffer_with("x"))
        assert await buffers.stage_buffer(sample_user_id, buffer_with("x"))

    @pytest.mark.asyncio
    async def test_clear_buffer(self, kv_store, sample_user_id):
        buffers = MessageBufferStorage(kv_store)
        await buffers.save_buffer(sample_user_id, buffer_with("x"))

        assert await buffers.clear_buffer(sample_user_id)
        assert (await buffers.load_buffer(sample_user_id)).is_empty


class TestWeightStorage:
    """Tests for reranker weight persistence."""

    def make_state(self) -> RerankerState:
        return RerankerState(
            weights=RerankerWeights(
                query_transform=np.eye(3) * 0.1,
                memory_transform=np.eye(3) * 0.2,
            )
        )

    @pytest.mark.asyncio
    async def test_save_and_load(self, kv_store, sample_user_id):
        weights = WeightStorage(kv_store)

        assert await weights.save(sample_user_id, self.make_state())
        loaded = await weights.load(sample_user_id)

        assert loaded.dimension == 3
        np.testing.assert_allclose(loaded.weights.memory_transform, np.eye(3) * 0.2)
        raw = await kv_store.aget(("rmm", sample_user_id, "reranker"), WEIGHTS_KEY)
        assert isinstance(raw["updated_at"], int)

    @pytest.mark.asyncio
    async def test_missing_weights(self, kv_store, sample_user_id):
        assert await WeightStorage(kv_store).load(sample_user_id) is None

    @pytest.mark.asyncio
    async def test_invalid_weights_are_discarded(self, kv_store, sample_user_id):
        weights = WeightStorage(kv_store)
        await kv_store.aput(weights.namespace(sample_user_id), WEIGHTS_KEY, {"weights": {"query_transform": [1]}})

        assert await weights.load(sample_user_id) is None

    @pytest.mark.asyncio
    async def test_save_failure_is_reported(self, sample_user_id):
        weights = WeightStorage(FailingKeyValueStore(fail_suffix=("reranker",)))
        assert not await weights.save(sample_user_id, self.make_state())

    @pytest.mark.asyncio
    async def test_owners_are_isolated(self, kv_store):
        weights = WeightStorage(kv_store)
        await weights.save("alice", self.make_state())

        assert await weights.load("bob") is None
