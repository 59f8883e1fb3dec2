"""
Reranker weight persistence.

Best-effort: a missing, invalid or unreadable state loads as None (the caller
initializes fresh weights) and a failed save is reported, never raised.
"""

import logging

from rmm_memory.models.base import now_ms
from rmm_memory.models.reranker import RerankerState
from rmm_memory.storage.base import KeyValueStore, Namespace, unwrap_item

logger = logging.getLogger(__name__)

WEIGHTS_KEY = "weights"


class WeightStorage:
    """Owner-namespaced reranker state."""

    def __init__(self, store: KeyValueStore, scope: str = "rmm"):
        self.store = store
        self.scope = scope

    def namespace(self, owner_id: str) -> Namespace:
        return (self.scope, owner_id, "reranker")

    async def load(self, owner_id: str) -> RerankerState | None:
        try:
            value = unwrap_item(await self.store.aget(self.namespace(owner_id), WEIGHTS_KEY))
        except Exception as e:
            logger.warning(f"Failed to load reranker weights for {owner_id}: {e}")
            return None
        if value is None:
            return None
        try:
            return RerankerState.from_store(value)
        except Exception as e:
            logger.warning(f"Discarding invalid reranker weights for {owner_id}: {e}")
            return None

    async def save(self, owner_id: str, state: RerankerState) -> bool:
        payload = state.to_store()
        payload["updated_at"] = now_ms()
        try:
            await self.store.aput(self.namespace(owner_id), WEIGHTS_KEY, payload)
            return True
        except Exception as e:
            logger.warning(f"Failed to save reranker weights for {owner_id}: {e}")
            return False
