"""
Memory bank mutations: add and merge.

Both actions favor liveness over consistency. Store errors are logged and
swallowed; the boolean result tells the reflection pipeline whether the write
landed so it can retry the batch.
"""

import logging

from rmm_memory.models.base import now_ms
from rmm_memory.models.memory import MemoryEntry
from rmm_memory.storage.base import MemoryVectorStore

logger = logging.getLogger(__name__)


async def add_memory(entry: MemoryEntry, vector_store: MemoryVectorStore) -> bool:
    """
    Add a memory as a document keyed by its id.

    Returns:
        True if the store accepted the document
    """
    try:
        await vector_store.aadd_documents([entry.to_document()], ids=[entry.id])
    except Exception as e:
        logger.warning(f"Failed to add memory {entry.id}: {e}")
        return False
    logger.debug(f"Added memory {entry.id}")
    return True


async def merge_memory(
    existing: MemoryEntry,
    merged_summary: str,
    vector_store: MemoryVectorStore,
) -> bool:
    """
    Replace an existing memory with a merged summary under the same id.

    Metadata is rebuilt from ``existing`` rather than re-fetched from the
    store. The old document is deleted first when the store supports it;
    a missing or failing delete still lets the add go through.

    Returns:
        True if the merged document was written
    """
    merged_summary = merged_summary.strip()
    if not merged_summary:
        logger.warning(f"Refusing to merge memory {existing.id} with an empty summary")
        return False

    merged = MemoryEntry(
        id=existing.id,
        session_id=existing.session_id,
        timestamp=now_ms(),
        topic_summary=merged_summary,
        raw_dialogue=existing.raw_dialogue or merged_summary,
        turn_references=list(existing.turn_references),
    )

    delete = getattr(vector_store, "adelete", None)
    if delete is None:
        logger.warning(
            f"Vector store has no delete; merging {existing.id} relies on upsert and may duplicate"
        )
    else:
        try:
            await delete(ids=[existing.id])
        except Exception as e:
            logger.warning(f"Delete before merge failed for {existing.id}, adding anyway: {e}")

    try:
        await vector_store.aadd_documents([merged.to_document()], ids=[merged.id])
    except Exception as e:
        logger.warning(f"Failed to write merged memory {existing.id}: {e}")
        return False
    logger.debug(f"Merged memory {existing.id}")
    return True
