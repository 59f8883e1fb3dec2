"""
Add-or-merge decision for new candidate memories.

Each candidate is compared against its nearest existing memories. When there
are none the candidate is added; otherwise the model answers with one action
per line, ``Add()`` or ``Merge(index, merged_summary)``.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Literal

from rmm_memory.consolidation.actions import add_memory, merge_memory
from rmm_memory.consolidation.prompts import update_memory_prompt
from rmm_memory.models.base import response_text
from rmm_memory.models.memory import MemoryEntry, RetrievedMemory
from rmm_memory.storage.base import ChatModel, MemoryVectorStore

logger = logging.getLogger(__name__)

_MERGE_ACTION = re.compile(r"^Merge\((\d+),\s*([^)]+)\)$")


@dataclass(frozen=True)
class UpdateAction:
    """A parsed Add() or Merge(index, merged_summary) line."""

    action: Literal["add", "merge"]
    index: int | None = None
    merged_summary: str | None = None

    @classmethod
    def add(cls) -> "UpdateAction":
        return cls("add")

    @classmethod
    def merge(cls, index: int, merged_summary: str) -> "UpdateAction":
        return cls("merge", index, merged_summary)


@dataclass
class UpdateResult:
    """What happened to one candidate."""

    added: list[str] = field(default_factory=list)
    merged: list[str] = field(default_factory=list)
    skipped: bool = False
    ok: bool = True


async def find_similar_memories(
    memory: MemoryEntry,
    vector_store: MemoryVectorStore,
    k: int = 5,
) -> list[RetrievedMemory]:
    """Nearest existing memories by summary; [] when the search fails."""
    try:
        docs = await vector_store.asimilarity_search(memory.topic_summary, k=k)
    except Exception as e:
        logger.warning(f"Similarity search failed, treating memory as new: {e}")
        return []
    return [RetrievedMemory.from_document(doc, fallback_id=f"similar-{i}") for i, doc in enumerate(docs)]


def parse_update_actions(output: str, history_length: int = 0) -> list[UpdateAction]:
    """
    Parse one action per line.

    Unknown lines and merges pointing outside the history are ignored.
    """
    actions: list[UpdateAction] = []
    for line in output.strip().splitlines():
        line = line.strip()
        if line == "Add()":
            actions.append(UpdateAction.add())
            continue
        match = _MERGE_ACTION.match(line)
        if not match:
            continue
        index = int(match.group(1))
        summary = match.group(2).strip()
        if 0 <= index < history_length and summary:
            actions.append(UpdateAction.merge(index, summary))
        else:
            logger.debug(f"Merge index {index} out of range for {history_length} summaries")
    return actions


async def decide_update_action(
    memory: MemoryEntry,
    similar: list[RetrievedMemory],
    chat_model: ChatModel,
) -> list[UpdateAction]:
    """Ask the model; a failed call yields [] and the caller falls back to add."""
    prompt = update_memory_prompt([m.topic_summary for m in similar], memory.topic_summary)
    try:
        response = await chat_model.ainvoke(prompt)
    except Exception as e:
        logger.warning(f"Update decision failed, defaulting to add: {e}")
        return []
    return parse_update_actions(response_text(response), len(similar))


async def process_memory_update(
    memory: MemoryEntry,
    vector_store: MemoryVectorStore,
    chat_model: ChatModel,
    k: int = 5,
) -> UpdateResult:
    """
    Commit one candidate through add or merge.

    A candidate whose id is already among its neighbours was written by an
    earlier attempt of the same batch and is skipped. Merge wins over add,
    and duplicate merge targets keep only the first action.
    """
    similar = await find_similar_memories(memory, vector_store, k=k)
    if any(existing.id == memory.id for existing in similar):
        logger.debug(f"Memory {memory.id} already stored, skipping")
        return UpdateResult(skipped=True)

    result = UpdateResult()
    actions = await decide_update_action(memory, similar, chat_model) if similar else []
    merges = [a for a in actions if a.action == "merge"]

    if not merges:
        if await add_memory(memory, vector_store):
            result.added.append(memory.id)
        else:
            result.ok = False
        return result

    seen: set[int] = set()
    for action in merges:
        if action.index in seen:
            logger.warning(f"Duplicate merge index {action.index} skipped")
            continue
        seen.add(action.index)
        target = similar[action.index]
        if await merge_memory(target, action.merged_summary, vector_store):
            result.merged.append(target.id)
        else:
            result.ok = False
    return result
