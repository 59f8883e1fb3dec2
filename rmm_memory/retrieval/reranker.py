"""
Citation-rewarded retrieval reranker.

Scores a query against each candidate memory through two learned residual
transforms:

    q' = q + W_q q
    m' = m + W_m m
    score = q' . m'

and learns W_q / W_m online with a REINFORCE-style update whose reward comes
from the citations in the model's response.
"""

import logging
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np

from rmm_memory.config import RerankerConfig
from rmm_memory.models.memory import RetrievedMemory
from rmm_memory.models.reranker import RerankerState, RerankerWeights
from rmm_memory.retrieval.citations import CitationKind, CitationResult, validate_citations

logger = logging.getLogger(__name__)

INIT_STD = 0.01
_GUMBEL_EPS = 1e-10


class DimensionMismatchError(ValueError):
    """An embedding does not match the reranker's fixed dimension."""


class InvalidEmbeddingError(ValueError):
    """An embedding is empty, not one-dimensional, or has non-finite values."""


def as_vector(values: Sequence[float] | np.ndarray, name: str = "embedding") -> np.ndarray:
    """Validate and convert an embedding to a float64 vector."""
    try:
        vector = np.asarray(values, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise InvalidEmbeddingError(f"{name} is not numeric: {e}") from e
    if vector.ndim != 1 or vector.size == 0:
        raise InvalidEmbeddingError(f"{name} must be a non-empty vector, got shape {vector.shape}")
    if not np.all(np.isfinite(vector)):
        raise InvalidEmbeddingError(f"{name} contains non-finite values")
    return vector


def _check_dimension(vector: np.ndarray, state: RerankerState, name: str) -> None:
    if vector.shape[0] != state.dimension:
        raise DimensionMismatchError(
            f"{name} has dimension {vector.shape[0]}, reranker state expects {state.dimension}"
        )


def softmax(scores: np.ndarray, temperature: float) -> np.ndarray:
    """Numerically stable softmax of scores / temperature."""
    if temperature <= 0:
        raise ValueError(f"temperature must be > 0, got {temperature}")
    scaled = np.asarray(scores, dtype=np.float64) / temperature
    if scaled.size == 0:
        return scaled
    exp = np.exp(scaled - scaled.max())
    return exp / exp.sum()


@dataclass
class RerankerSelection:
    """The top-M memories chosen for one model call, plus what the update needs."""

    memories: list[RetrievedMemory]
    query_embedding: np.ndarray
    memory_embeddings: list[np.ndarray]
    scores: list[float]
    candidate_ranks: list[int] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.memories)


class RerankerEngine:
    """
    Stateless scoring plus state-returning learning.

    The engine never holds weights itself; every call takes a RerankerState
    and ``update`` returns a new one for the caller to persist.
    """

    def __init__(
        self,
        config: RerankerConfig | None = None,
        rng: np.random.Generator | None = None,
    ):
        self.config = config or RerankerConfig()
        self._rng = rng or np.random.default_rng()

    def initialize_state(self, dimension: int) -> RerankerState:
        """Fresh state with N(0, 0.01) entries."""
        if dimension < 1:
            raise ValueError(f"dimension must be >= 1, got {dimension}")
        weights = RerankerWeights(
            query_transform=self._rng.normal(0.0, INIT_STD, size=(dimension, dimension)),
            memory_transform=self._rng.normal(0.0, INIT_STD, size=(dimension, dimension)),
        )
        return RerankerState(weights=weights, config=self.config)

    def adapt_query(self, query_embedding, state: RerankerState) -> np.ndarray:
        q = as_vector(query_embedding, "query embedding")
        _check_dimension(q, state, "query embedding")
        return q + state.weights.query_transform @ q

    def adapt_memory(self, memory_embedding, state: RerankerState) -> np.ndarray:
        m = as_vector(memory_embedding, "memory embedding")
        _check_dimension(m, state, "memory embedding")
        return m + state.weights.memory_transform @ m

    def score(self, query_embedding, memory_embedding, state: RerankerState) -> float:
        """Dot product of the adapted query and adapted memory."""
        return float(self.adapt_query(query_embedding, state) @ self.adapt_memory(memory_embedding, state))

    def selection_probabilities(self, scores: Sequence[float], state: RerankerState) -> np.ndarray:
        """Softmax over scores at the state's temperature."""
        return softmax(np.asarray(scores, dtype=np.float64), state.config.temperature)

    def select_top_m(
        self,
        candidates: list[RetrievedMemory],
        query_embedding,
        memory_embeddings: list,
        state: RerankerState,
    ) -> RerankerSelection:
        """
        Pick the top-M candidates.

        Deterministic mode ranks by score descending with ties broken by the
        original similarity rank. Gumbel mode samples M candidates without
        replacement from softmax(score / temperature).
        """
        if len(candidates) != len(memory_embeddings):
            raise ValueError(
                f"{len(candidates)} candidates but {len(memory_embeddings)} embeddings"
            )

        q = as_vector(query_embedding, "query embedding")
        _check_dimension(q, state, "query embedding")
        q_adapted = q + state.weights.query_transform @ q

        vectors = []
        scores = []
        for i, embedding in enumerate(memory_embeddings):
            m = as_vector(embedding, f"memory embedding {i}")
            _check_dimension(m, state, f"memory embedding {i}")
            vectors.append(m)
            scores.append(float(q_adapted @ (m + state.weights.memory_transform @ m)))

        if not candidates:
            return RerankerSelection([], q, [], [], [])

        top_m = min(state.config.top_m, len(candidates))
        keys = np.asarray(scores, dtype=np.float64) / state.config.temperature
        if state.config.selection == "gumbel":
            u = self._rng.uniform(_GUMBEL_EPS, 1.0 - _GUMBEL_EPS, size=keys.shape)
            keys = keys - np.log(-np.log(u))

        # Stable sort on the negated key keeps similarity order among ties.
        order = np.argsort(-keys, kind="stable")[:top_m]
        ranks = [int(i) for i in order]
        return RerankerSelection(
            memories=[candidates[i] for i in ranks],
            query_embedding=q,
            memory_embeddings=[vectors[i] for i in ranks],
            scores=[scores[i] for i in ranks],
            candidate_ranks=ranks,
        )

    def rewards_for(self, selection: RerankerSelection, citation: CitationResult) -> np.ndarray | None:
        """
        Reward vector over the selection, or None when no update should happen.

        Malformed citations, and cited indices that fall outside what was
        shown, produce None.
        """
        count = len(selection)
        if count == 0 or citation.kind == CitationKind.MALFORMED:
            return None
        if citation.kind == CitationKind.NO_CITE:
            return -np.ones(count)
        if not validate_citations(citation.indices, count):
            logger.warning(
                f"Ignoring citations {list(citation.indices)} outside [0, {count})"
            )
            return None
        rewards = -np.ones(count)
        rewards[list(citation.indices)] = 1.0
        return rewards

    def update(
        self,
        selection: RerankerSelection,
        citation: CitationResult,
        state: RerankerState,
    ) -> RerankerState:
        """
        Apply one REINFORCE step.

        For each selected memory i with reward R_i the ascent direction of
        q'.m'_i is added, scaled by lr * (R_i - baseline):

            W_q += lr * (R_i - b) * outer(m'_i, q)
            W_m += lr * (R_i - b) * outer(q', m_i)

        Weights are clipped afterwards. Returns ``state`` unchanged when the
        citation carries no usable signal.
        """
        rewards = self.rewards_for(selection, citation)
        if rewards is None:
            return state

        q = as_vector(selection.query_embedding, "query embedding")
        _check_dimension(q, state, "query embedding")
        w_q = state.weights.query_transform
        w_m = state.weights.memory_transform
        q_adapted = q + w_q @ q

        grad_q = np.zeros_like(w_q)
        grad_m = np.zeros_like(w_m)
        for reward, embedding in zip(rewards, selection.memory_embeddings):
            m = as_vector(embedding, "memory embedding")
            _check_dimension(m, state, "memory embedding")
            advantage = reward - state.config.baseline
            m_adapted = m + w_m @ m
            grad_q += advantage * np.outer(m_adapted, q)
            grad_m += advantage * np.outer(q_adapted, m)

        lr = state.config.learning_rate
        clip = state.config.clip_threshold
        new_weights = RerankerWeights(
            query_transform=np.clip(w_q + lr * grad_q, -clip, clip),
            memory_transform=np.clip(w_m + lr * grad_m, -clip, clip),
        )
        cited = int((rewards > 0).sum())
        logger.debug(f"Reranker update: {cited}/{len(rewards)} memories rewarded")
        return state.model_copy(update={"weights": new_weights})
