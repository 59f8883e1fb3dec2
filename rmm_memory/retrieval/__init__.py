"""
Retrieval-time components: citation parsing and the learned reranker.
"""

from rmm_memory.retrieval.citations import (
    NO_CITE,
    CitationKind,
    CitationResult,
    extract_citations,
    validate_citations,
)
from rmm_memory.retrieval.reranker import (
    DimensionMismatchError,
    InvalidEmbeddingError,
    RerankerEngine,
    RerankerSelection,
    as_vector,
    softmax,
)

__all__ = [
    "NO_CITE",
    "CitationKind",
    "CitationResult",
    "DimensionMismatchError",
    "InvalidEmbeddingError",
    "RerankerEngine",
    "RerankerSelection",
    "as_vector",
    "extract_citations",
    "softmax",
    "validate_citations",
]
