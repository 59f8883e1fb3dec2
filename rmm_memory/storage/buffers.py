"""
Live and staging message buffers in a key-value store.

Layout per owner:
    (scope, owner, "buffer")             / "message-buffer"   live buffer
    (scope, owner, "buffer", "staging")  / "message-buffer"   staging buffer

Live reads degrade to an empty buffer and writes report success as a bool, so
the conversational path never raises for store unavailability. A staging read
that fails raises StorageError instead: an unreadable batch must not be
mistaken for an absent one and overwritten.
"""

import logging

from pydantic import ValidationError

from rmm_memory.models.buffer import MessageBuffer
from rmm_memory.storage.base import KeyValueStore, Namespace, StorageError, unwrap_item

logger = logging.getLogger(__name__)

BUFFER_KEY = "message-buffer"


class MessageBufferStorage:
    """Owner-namespaced access to live and staging buffers."""

    def __init__(self, store: KeyValueStore, scope: str = "rmm"):
        self.store = store
        self.scope = scope

    def live_namespace(self, owner_id: str) -> Namespace:
        return (self.scope, owner_id, "buffer")

    def staging_namespace(self, owner_id: str) -> Namespace:
        return (self.scope, owner_id, "buffer", "staging")

    async def _load(self, namespace: Namespace) -> MessageBuffer | None:
        value = unwrap_item(await self.store.aget(namespace, BUFFER_KEY))
        if value is None:
            return None
        return MessageBuffer.from_store(value)

    async def _save(self, namespace: Namespace, buffer: MessageBuffer) -> bool:
        try:
            await self.store.aput(namespace, BUFFER_KEY, buffer.to_store())
            return True
        except Exception as e:
            logger.warning(f"Failed to write buffer {namespace}: {e}")
            return False

    async def load_buffer(self, owner_id: str) -> MessageBuffer:
        """Live buffer, or an empty one when absent, invalid or unreadable."""
        try:
            buffer = await self._load(self.live_namespace(owner_id))
        except ValidationError as e:
            logger.warning(f"Invalid live buffer for {owner_id}, starting empty: {e}")
            return MessageBuffer.empty()
        except Exception as e:
            logger.warning(f"Failed to load live buffer for {owner_id}: {e}")
            return MessageBuffer.empty()
        return buffer if buffer is not None else MessageBuffer.empty()

    async def load_staging_buffer(
        self, owner_id: str, include_empty: bool = False
    ) -> MessageBuffer | None:
        """
        Staging buffer.

        Returns None when absent or invalid, and also when it holds no
        messages unless ``include_empty`` is set.

        Raises:
            StorageError: If the store could not be read
        """
        try:
            buffer = await self._load(self.staging_namespace(owner_id))
        except ValidationError as e:
            logger.warning(f"Invalid staging buffer for {owner_id}, discarding: {e}")
            return None
        except Exception as e:
            raise StorageError(f"Failed to load staging buffer for {owner_id}: {e}") from e
        if buffer is None or (buffer.is_empty and not include_empty):
            return None
        return buffer

    async def save_buffer(self, owner_id: str, buffer: MessageBuffer) -> bool:
        return await self._save(self.live_namespace(owner_id), buffer)

    async def stage_buffer(self, owner_id: str, buffer: MessageBuffer) -> bool:
        return await self._save(self.staging_namespace(owner_id), buffer)

    async def clear_buffer(self, owner_id: str) -> bool:
        """Reset the live buffer to an empty one with a fresh created_at."""
        return await self._save(self.live_namespace(owner_id), MessageBuffer.empty())

    async def clear_staging(self, owner_id: str, retry_count: int | None = None) -> bool:
        """Replace staging with an empty buffer, optionally recording retries."""
        empty = MessageBuffer.empty().model_copy(update={"retry_count": retry_count})
        return await self._save(self.staging_namespace(owner_id), empty)
