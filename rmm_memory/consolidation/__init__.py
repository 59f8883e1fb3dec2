"""
Reflection: turning buffered conversation into durable memories.

Provides:
- Staged live/staging buffer protocol with retry-then-drop
- Speaker-attributed memory extraction
- Add/merge decisions and idempotent memory bank mutations
"""

from rmm_memory.consolidation.actions import add_memory, merge_memory
from rmm_memory.consolidation.extraction import extract_memories, format_session, group_turns
from rmm_memory.consolidation.pipeline import (
    ConsolidationError,
    ReflectionRunResult,
    StagedReflectionPipeline,
    check_reflection_triggers,
)
from rmm_memory.consolidation.update import (
    UpdateAction,
    decide_update_action,
    find_similar_memories,
    parse_update_actions,
    process_memory_update,
)

__all__ = [
    "ConsolidationError",
    "ReflectionRunResult",
    "StagedReflectionPipeline",
    "UpdateAction",
    "add_memory",
    "check_reflection_triggers",
    "decide_update_action",
    "extract_memories",
    "find_similar_memories",
    "format_session",
    "group_turns",
    "merge_memory",
    "parse_update_actions",
    "process_memory_update",
]
