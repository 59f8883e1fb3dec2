"""
Citation extraction from model responses.

The response model is asked to end with ``[i, j, ...]`` naming the memories it
used, or ``[NO_CITE]`` when none helped. The parsed result drives the reranker
reward.
"""

import re
from dataclasses import dataclass, field
from enum import Enum

NO_CITE = "NO_CITE"

# Negated character class: linear scan, no backtracking on adversarial input.
_BRACKET_GROUP = re.compile(r"\[([^\]]*)\]")


class CitationKind(str, Enum):
    """Outcome of parsing a response for citations."""

    CITED = "cited"
    NO_CITE = "no_cite"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class CitationResult:
    """Parsed citations. ``indices`` is only populated for CITED."""

    kind: CitationKind
    indices: tuple[int, ...] = field(default_factory=tuple)

    @classmethod
    def cited(cls, indices: list[int]) -> "CitationResult":
        return cls(CitationKind.CITED, tuple(indices))

    @classmethod
    def no_cite(cls) -> "CitationResult":
        return cls(CitationKind.NO_CITE)

    @classmethod
    def malformed(cls) -> "CitationResult":
        return cls(CitationKind.MALFORMED)


def _parse_group(group: str) -> list[int] | None:
    values = []
    for part in group.split(","):
        token = part.strip()
        if not token.isdigit() or not token.isascii():
            return None
        values.append(int(token))
    return values


def extract_citations(text: str) -> CitationResult:
    """
    Parse every bracketed group in ``text``.

    Any group that is exactly NO_CITE, with no surrounding spaces, wins. Otherwise every group must be a
    comma-separated list of non-negative integers; the indices from all groups
    are merged and de-duplicated in first-seen order. Anything else, including
    empty text or text with no brackets, is malformed.
    """
    if not text or not text.strip():
        return CitationResult.malformed()

    groups = _BRACKET_GROUP.findall(text)
    if not groups:
        return CitationResult.malformed()

    if NO_CITE in groups:
        return CitationResult.no_cite()

    seen: set[int] = set()
    indices: list[int] = []
    for group in groups:
        parsed = _parse_group(group)
        if parsed is None:
            return CitationResult.malformed()
        for index in parsed:
            if index not in seen:
                seen.add(index)
                indices.append(index)

    return CitationResult.cited(indices)


def validate_citations(indices: list[int] | tuple[int, ...], top_m: int) -> bool:
    """True when every index is a distinct integer in [0, top_m)."""
    if not indices:
        return True
    if len(set(indices)) != len(indices):
        return False
    return all(
        isinstance(i, int) and not isinstance(i, bool) and 0 <= i < top_m
        for i in indices
    )
