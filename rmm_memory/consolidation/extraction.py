"""
Prospective reflection: turn a staged session into candidate memories.

The session is rendered as numbered turns, the extraction prompt is run once
per configured speaker, and the model's JSON answer is validated into
MemoryEntry candidates. ``NO_TRAIT`` means nothing worth remembering.
"""

import json
import logging
import re
from typing import Annotated, Literal

from pydantic import BaseModel, Field, ValidationError
from ulid import ULID

from rmm_memory.consolidation.prompts import NO_TRAIT, SPEAKER_1, SPEAKER_2, extraction_prompt
from rmm_memory.models.base import response_text
from rmm_memory.models.buffer import BufferedMessage, MessageRole
from rmm_memory.models.memory import MemoryEntry, make_memory_id
from rmm_memory.storage.base import ChatModel

logger = logging.getLogger(__name__)

SpeakerName = Literal["speaker_1", "speaker_2"]

SPEAKER_LABELS: dict[str, str] = {
    "speaker_1": SPEAKER_1,
    "speaker_2": SPEAKER_2,
}

_ROLE_LABELS = {
    MessageRole.HUMAN: SPEAKER_1,
    MessageRole.AI: SPEAKER_2,
}

_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)
_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


class ExtractedSummary(BaseModel):
    """One item of the model's extraction output."""

    summary: str = Field(..., min_length=1)
    reference: list[Annotated[int, Field(ge=0)]] = Field(default_factory=list)


class ExtractionOutput(BaseModel):
    """Top-level extraction output."""

    extracted_memories: list[ExtractedSummary]


def group_turns(messages: list[BufferedMessage]) -> list[list[BufferedMessage]]:
    """
    Group messages into turns.

    A turn opens at each human message and collects the replies that follow.
    System and tool messages are not part of the dialogue.
    """
    turns: list[list[BufferedMessage]] = []
    for message in messages:
        if message.role not in _ROLE_LABELS:
            continue
        if message.role == MessageRole.HUMAN or not turns:
            turns.append([])
        turns[-1].append(message)
    return turns


def format_session(turns: list[list[BufferedMessage]]) -> str:
    """Render turns in the ``* Turn i:`` layout the extraction prompt expects."""
    lines = []
    for index, turn in enumerate(turns):
        lines.append(f"* Turn {index}:")
        for message in turn:
            lines.append(f"  – {_ROLE_LABELS[message.role]}: {message.content}")
    return "\n".join(lines)


def parse_extraction_output(text: str) -> list[ExtractedSummary] | None:
    """
    Parse the model's answer.

    Returns:
        [] for NO_TRAIT, the validated items, or None when the answer is not
        the expected JSON structure
    """
    stripped = text.strip()
    if stripped.strip("`\"' .") == NO_TRAIT:
        return []

    fenced = _FENCED_JSON.search(stripped)
    if fenced:
        stripped = fenced.group(1).strip()

    try:
        data = json.loads(stripped)
    except json.JSONDecodeError:
        json_match = _JSON_OBJECT.search(stripped)
        if not json_match:
            logger.warning(f"Extraction output is not JSON: {text[:200]!r}")
            return None
        try:
            data = json.loads(json_match.group())
        except json.JSONDecodeError:
            logger.warning(f"Extraction output is not JSON: {text[:200]!r}")
            return None

    try:
        return ExtractionOutput.model_validate(data).extracted_memories
    except ValidationError as e:
        logger.warning(f"Invalid extraction output structure: {e}")
        return None


def _raw_dialogue(turns: list[list[BufferedMessage]], references: list[int]) -> str:
    lines = []
    for ref in references:
        if ref < len(turns):
            lines.extend(f"{_ROLE_LABELS[m.role]}: {m.content}" for m in turns[ref])
    return "\n".join(lines)


async def extract_memories(
    messages: list[BufferedMessage],
    chat_model: ChatModel,
    speaker: SpeakerName = "speaker_1",
    session_id: str | None = None,
) -> list[MemoryEntry] | None:
    """
    Extract candidate memories for one speaker.

    Args:
        messages: The staged session, in order
        chat_model: Model that answers the extraction prompt
        speaker: Whose personal facts to extract
        session_id: Stable id of the staged session; ids derived from it make
            retried extractions produce the same memory ids

    Returns:
        Candidates ([] when there is nothing to remember), or None when the
        model call failed or its answer could not be parsed
    """
    turns = group_turns(messages)
    if not turns:
        return []

    label = SPEAKER_LABELS[speaker]
    prompt = extraction_prompt(label, format_session(turns))
    try:
        response = await chat_model.ainvoke(prompt)
    except Exception as e:
        logger.warning(f"Extraction model call failed for {label}: {e}")
        return None

    items = parse_extraction_output(response_text(response))
    if items is None:
        return None

    session_id = session_id or str(ULID())
    candidates = []
    for item in items:
        summary = item.summary.strip()
        if not summary:
            continue
        references = [ref for ref in item.reference if ref < len(turns)]
        if len(references) != len(item.reference):
            logger.debug(f"Dropped out-of-range turn references for {summary[:50]!r}")
        candidates.append(
            MemoryEntry(
                id=make_memory_id(session_id, label, summary),
                session_id=session_id,
                topic_summary=summary,
                raw_dialogue=_raw_dialogue(turns, references) or summary,
                turn_references=references,
            )
        )
    logger.debug(f"Extracted {len(candidates)} candidate memories for {label}")
    return candidates
