"""
Tests for the citation-rewarded reranker.
"""

import numpy as np
import pytest

from rmm_memory.config import RerankerConfig
from rmm_memory.models.memory import RetrievedMemory
from rmm_memory.models.reranker import RerankerState, RerankerWeights
from rmm_memory.retrieval.citations import CitationResult
from rmm_memory.retrieval.reranker import (
    DimensionMismatchError,
    InvalidEmbeddingError,
    RerankerEngine,
    as_vector,
    softmax,
)


def make_candidates(count: int) -> list[RetrievedMemory]:
    return [
        RetrievedMemory(id=f"m{i}", topic_summary=f"memory {i}", relevance_score=1.0 - i * 0.1)
        for i in range(count)
    ]


def zero_state(dimension: int, **config) -> RerankerState:
    return RerankerState(
        weights=RerankerWeights(
            query_transform=np.zeros((dimension, dimension)),
            memory_transform=np.zeros((dimension, dimension)),
        ),
        config=RerankerConfig(**config),
    )


@pytest.fixture
def orthogonal_setup():
    """Zero weights, three orthogonal memories and a query equally close to each."""
    config = {"top_k": 3, "top_m": 3, "learning_rate": 0.01}
    engine = RerankerEngine(RerankerConfig(**config), rng=np.random.default_rng(7))
    state = zero_state(4, **config)
    memories = [np.eye(4)[i] for i in range(3)]
    query = np.array([1.0, 1.0, 1.0, 0.0])
    selection = engine.select_top_m(make_candidates(3), query, memories, state)
    return engine, state, selection, query, memories


class TestInitialization:
    """Tests for fresh reranker state."""

    def test_shapes(self):
        state = RerankerEngine(rng=np.random.default_rng(0)).initialize_state(8)

        assert state.dimension == 8
        assert state.weights.query_transform.shape == (8, 8)
        assert state.weights.memory_transform.shape == (8, 8)

    def test_small_gaussian_entries(self):
        """Test that entries look like N(0, 0.01)."""
        state = RerankerEngine(rng=np.random.default_rng(42)).initialize_state(64)
        entries = np.concatenate(
            [state.weights.query_transform.ravel(), state.weights.memory_transform.ravel()]
        )

        assert abs(entries.mean()) < 0.001
        assert 0.009 < entries.std() < 0.011

    def test_transforms_are_independent(self):
        state = RerankerEngine(rng=np.random.default_rng(1)).initialize_state(4)
        assert not np.allclose(state.weights.query_transform, state.weights.memory_transform)

    def test_invalid_dimension(self):
        with pytest.raises(ValueError):
            RerankerEngine().initialize_state(0)


class TestScoring:
    """Tests for adaptation, scoring and softmax."""

    def test_zero_weights_reduce_to_dot_product(self):
        engine = RerankerEngine()
        state = zero_state(3)

        assert engine.score([1.0, 2.0, 0.0], [3.0, 1.0, 5.0], state) == pytest.approx(5.0)

    def test_residual_transform(self):
        """Test q' = q + W_q q."""
        engine = RerankerEngine()
        state = RerankerState(
            weights=RerankerWeights(query_transform=np.eye(2), memory_transform=np.zeros((2, 2)))
        )

        np.testing.assert_allclose(engine.adapt_query([1.0, 2.0], state), [2.0, 4.0])

    def test_softmax_sums_to_one(self):
        probs = softmax(np.array([1.0, 2.0, 3.0]), temperature=0.5)

        assert probs.sum() == pytest.approx(1.0)
        assert probs[2] > probs[1] > probs[0]

    def test_softmax_is_stable_for_large_scores(self):
        probs = softmax(np.array([1000.0, 1001.0]), temperature=0.01)
        assert np.all(np.isfinite(probs))

    def test_softmax_rejects_non_positive_temperature(self):
        with pytest.raises(ValueError):
            softmax(np.array([1.0]), temperature=0.0)

    def test_as_vector_rejects_bad_input(self):
        with pytest.raises(InvalidEmbeddingError):
            as_vector([])
        with pytest.raises(InvalidEmbeddingError):
            as_vector([1.0, float("nan")])
        with pytest.raises(InvalidEmbeddingError):
            as_vector([[1.0, 2.0]])


class TestSelection:
    """Tests for top-M selection."""

    def test_deterministic_orders_by_score(self):
        engine = RerankerEngine(RerankerConfig(top_k=4, top_m=2))
        state = zero_state(2, top_k=4, top_m=2)
        memories = [[0.1, 0.0], [0.9, 0.0], [0.5, 0.0], [0.7, 0.0]]

        selection = engine.select_top_m(make_candidates(4), [1.0, 0.0], memories, state)

        assert selection.candidate_ranks == [1, 3]
        assert [m.id for m in selection.memories] == ["m1", "m3"]
        assert selection.scores == pytest.approx([0.9, 0.7])
        assert len(selection) == 2

    def test_ties_keep_similarity_order(self, orthogonal_setup):
        _, _, selection, _, _ = orthogonal_setup
        assert selection.candidate_ranks == [0, 1, 2]

    def test_fewer_candidates_than_top_m(self):
        engine = RerankerEngine()
        state = zero_state(2)

        selection = engine.select_top_m(make_candidates(2), [1.0, 0.0], [[1.0, 0.0], [0.0, 1.0]], state)

        assert len(selection) == 2

    def test_empty_candidates(self):
        selection = RerankerEngine().select_top_m([], [1.0, 0.0], [], zero_state(2))
        assert len(selection) == 0

    def test_gumbel_returns_distinct_candidates(self):
        config = {"top_k": 5, "top_m": 3, "selection": "gumbel"}
        engine = RerankerEngine(RerankerConfig(**config), rng=np.random.default_rng(3))
        state = zero_state(2, **config)
        memories = [[float(i), 1.0] for i in range(5)]

        selection = engine.select_top_m(make_candidates(5), [1.0, 0.0], memories, state)

        assert len(selection) == 3
        assert len(set(selection.candidate_ranks)) == 3

    def test_gumbel_follows_dominant_scores(self):
        """Test that with a large score gap sampling agrees with sorting."""
        config = {"top_k": 3, "top_m": 1, "selection": "gumbel", "temperature": 0.01}
        engine = RerankerEngine(RerankerConfig(**config), rng=np.random.default_rng(11))
        state = zero_state(2, **config)
        memories = [[0.0, 1.0], [10.0, 0.0], [0.0, 2.0]]

        picks = {
            engine.select_top_m(make_candidates(3), [1.0, 0.0], memories, state).candidate_ranks[0]
            for _ in range(20)
        }

        assert picks == {1}

    def test_dimension_mismatch(self):
        engine = RerankerEngine()
        state = zero_state(4)

        with pytest.raises(DimensionMismatchError):
            engine.select_top_m(make_candidates(1), [1.0, 0.0, 0.0], [[1.0, 0.0, 0.0]], state)

    def test_embedding_count_mismatch(self):
        with pytest.raises(ValueError):
            RerankerEngine().select_top_m(make_candidates(2), [1.0, 0.0], [[1.0, 0.0]], zero_state(2))


class TestUpdate:
    """Tests for the REINFORCE update."""

    def test_cited_memory_score_rises(self, orthogonal_setup):
        """Test that the cited memory gains score and uncited ones lose it."""
        engine, state, selection, query, memories = orthogonal_setup
        before = [engine.score(query, m, state) for m in memories]

        updated = engine.update(selection, CitationResult.cited([0]), state)
        after = [engine.score(query, m, updated) for m in memories]

        assert after[0] > before[0]
        assert after[1] < before[1]
        assert after[2] < before[2]

    def test_no_cite_lowers_every_score(self, orthogonal_setup):
        engine, state, selection, query, memories = orthogonal_setup

        updated = engine.update(selection, CitationResult.no_cite(), state)

        for m in memories:
            assert engine.score(query, m, updated) < engine.score(query, m, state)

    def test_gradient_values(self, orthogonal_setup):
        """Test one step against the closed-form gradient at zero weights."""
        engine, state, selection, query, memories = orthogonal_setup
        lr = state.config.learning_rate
        advantages = [1.0 - 0.5, -1.0 - 0.5, -1.0 - 0.5]

        updated = engine.update(selection, CitationResult.cited([0]), state)

        expected_q = lr * sum(a * np.outer(m, query) for a, m in zip(advantages, memories))
        expected_m = lr * sum(a * np.outer(query, m) for a, m in zip(advantages, memories))
        np.testing.assert_allclose(updated.weights.query_transform, expected_q)
        np.testing.assert_allclose(updated.weights.memory_transform, expected_m)

    def test_update_returns_new_state(self, orthogonal_setup):
        engine, state, selection, _, _ = orthogonal_setup

        updated = engine.update(selection, CitationResult.cited([1]), state)

        assert updated is not state
        assert np.all(state.weights.query_transform == 0.0)

    def test_malformed_is_a_no_op(self, orthogonal_setup):
        engine, state, selection, _, _ = orthogonal_setup
        assert engine.update(selection, CitationResult.malformed(), state) is state

    def test_out_of_range_citation_is_a_no_op(self, orthogonal_setup):
        """Test that citing a memory that was never shown changes nothing."""
        engine, state, selection, _, _ = orthogonal_setup
        assert engine.update(selection, CitationResult.cited([3]), state) is state

    def test_empty_citation_list_penalizes_all(self, orthogonal_setup):
        engine, state, selection, _, _ = orthogonal_setup
        rewards = engine.rewards_for(selection, CitationResult.cited([]))
        np.testing.assert_array_equal(rewards, [-1.0, -1.0, -1.0])

    def test_weights_are_clipped(self):
        config = {"top_k": 1, "top_m": 1, "learning_rate": 1000.0, "clip_threshold": 0.5}
        engine = RerankerEngine(RerankerConfig(**config))
        state = zero_state(2, **config)
        selection = engine.select_top_m(make_candidates(1), [3.0, 4.0], [[5.0, 6.0]], state)

        updated = engine.update(selection, CitationResult.cited([0]), state)

        assert np.abs(updated.weights.query_transform).max() == pytest.approx(0.5)
        assert np.abs(updated.weights.memory_transform).max() <= 0.5
