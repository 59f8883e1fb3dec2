"""
Memory bank entries.

A MemoryEntry is one consolidated topic summary together with the dialogue it
was extracted from. In the vector store the summary is the page content and
the remaining fields travel as document metadata.
"""

from typing import Annotated, Any

from langchain_core.documents import Document
from pydantic import BaseModel, ConfigDict, Field, field_validator

from rmm_memory.models.base import content_hash, now_ms


def make_memory_id(session_id: str, speaker: str, topic_summary: str) -> str:
    """
    Deterministic memory id.

    Re-running extraction over the same staged session yields the same ids,
    so a retried consolidation upserts instead of duplicating.
    """
    return content_hash(session_id, speaker, topic_summary.strip())


class MemoryEntry(BaseModel):
    """A consolidated memory."""

    id: str = Field(..., min_length=1, description="Unique within a memory bank")
    session_id: str = Field(default="", description="Session the memory came from")
    timestamp: int = Field(
        default_factory=now_ms,
        description="Creation or last-merge time in epoch milliseconds",
    )
    topic_summary: str = Field(..., description="Natural-language summary")
    raw_dialogue: str = Field(default="", description="Source dialogue excerpt")
    turn_references: list[Annotated[int, Field(ge=0)]] = Field(
        default_factory=list,
        description="Turn indices the summary was extracted from",
    )

    @field_validator("topic_summary")
    @classmethod
    def _summary_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("topic_summary must not be empty")
        return value

    def to_metadata(self) -> dict[str, Any]:
        """Vector-store metadata for this entry."""
        return {
            "id": self.id,
            "session_id": self.session_id,
            "timestamp": self.timestamp,
            "turn_references": list(self.turn_references),
            "raw_dialogue": self.raw_dialogue,
        }

    def to_document(self) -> Document:
        """Convert to a LangChain document (summary as page content)."""
        return Document(page_content=self.topic_summary, metadata=self.to_metadata(), id=self.id)


class RetrievedMemory(MemoryEntry):
    """A memory returned by retrieval, with its similarity score."""

    model_config = ConfigDict(frozen=True)

    relevance_score: float = Field(
        default=-1.0,
        description="Similarity score reported by the vector store, -1 when unknown",
    )

    @classmethod
    def from_document(cls, doc: Document, fallback_id: str) -> "RetrievedMemory":
        """Build from a similarity-search result, tolerating sparse metadata."""
        metadata = doc.metadata or {}
        score = metadata.get("score")
        return cls(
            id=str(metadata.get("id") or doc.id or fallback_id),
            session_id=str(metadata.get("session_id", "")),
            timestamp=int(metadata.get("timestamp") or now_ms()),
            topic_summary=doc.page_content,
            raw_dialogue=str(metadata.get("raw_dialogue", "")),
            turn_references=list(metadata.get("turn_references") or []),
            relevance_score=float(score) if isinstance(score, (int, float)) else -1.0,
        )

    def to_entry(self) -> MemoryEntry:
        """Drop the retrieval score."""
        return MemoryEntry.model_validate(self.model_dump(exclude={"relevance_score"}))
