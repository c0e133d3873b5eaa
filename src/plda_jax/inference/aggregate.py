from __future__ import annotations

"""plda_jax.inference.aggregate
================================

Distributed reductions used between Gibbs iterations.  Both aggregators
follow the same three-step protocol so that partitions can be reduced in
any order and partial results merged recursively:

* ``accumulate(state, ...)`` – fold one document into a partition-local state.
* ``merge(state1, state2)``  – combine two states (commutative, associative).
* ``finalize(state)``        – turn the merged state into the result.

``None`` is the empty state for both aggregators and the identity of
``merge``.
"""

from dataclasses import dataclass
from typing import NamedTuple, Optional, Sequence

import numpy as np
import jax.numpy as jnp

from plda_jax.models.lda import LDAModel, ModelCounts
from plda_jax.utils.process import DocumentShapeError

__all__ = [
    "TopicCountAggregator",
    "PerplexityState",
    "PerplexityAggregator",
]

################################################################################
# Topic counts #################################################################
################################################################################

@dataclass(frozen=True)
class TopicCountAggregator:
    """Rebuild the flat ``(V+1) x K`` model from per-document assignments.

    The state is an ``int64`` numpy vector so that merges stay exact integer
    additions for any corpus size.
    """

    voc_size: int
    topic_num: int

    def init_state(self) -> Optional[np.ndarray]:
        return None

    def _zeros(self) -> np.ndarray:
        return np.zeros(((self.voc_size + 1) * self.topic_num,), dtype=np.int64)

    def accumulate(
        self,
        state: Optional[np.ndarray],
        words: Sequence[int],
        counts: Sequence[int],
        topic_assignment: Sequence[int],
    ) -> np.ndarray:
        """Add one count per token occurrence to its word row and the totals row.

        ``state`` belongs to the reduce and is updated in place.
        """
        words  = np.asarray(words, dtype=np.int64)
        counts = np.asarray(counts, dtype=np.int64)
        z = np.asarray(topic_assignment, dtype=np.int64)
        V, K = self.voc_size, self.topic_num
        if words.shape != counts.shape:
            raise DocumentShapeError(f"words{words.shape} and counts{counts.shape} differ in shape")
        tokens = np.repeat(words, counts)
        if tokens.shape != z.shape:
            raise DocumentShapeError(
                f"{tokens.size} token occurrences but {z.size} topic assignments"
            )
        if words.size and (words.min() < 0 or words.max() >= V):
            raise DocumentShapeError(f"word id outside [0, {V})")
        if z.size and (z.min() < 0 or z.max() >= K):
            raise DocumentShapeError(f"topic id outside [0, {K})")

        if state is None:
            state = self._zeros()
        grid = state.reshape(V + 1, K)
        np.add.at(grid, (tokens, z), 1)
        np.add.at(grid[V], z, 1)
        return state

    def merge(
        self, state1: Optional[np.ndarray], state2: Optional[np.ndarray]
    ) -> Optional[np.ndarray]:
        if state1 is None:
            return state2
        if state2 is None:
            return state1
        if state1.shape != state2.shape:
            raise ValueError(f"cannot merge states of shape {state1.shape} and {state2.shape}")
        return state1 + state2

    def finalize(self, state: Optional[np.ndarray]) -> np.ndarray:
        """The merged matrix *is* the new model (all zeros when nothing was seen)."""
        if state is None:
            state = self._zeros()
        return np.asarray(state, dtype=np.int64)

################################################################################
# Perplexity ###################################################################
################################################################################

class PerplexityState(NamedTuple):
    log_likelihood: float
    token_count: int


@dataclass(frozen=True)
class PerplexityAggregator:
    """Held-out log-likelihood and token count under a fixed model."""

    hyper: LDAModel

    def init_state(self) -> Optional[PerplexityState]:
        return None

    def accumulate(
        self,
        state: Optional[PerplexityState],
        words: Sequence[int],
        counts: Sequence[int],
        topic_count: Sequence[int],
        model: ModelCounts,
    ) -> PerplexityState:
        if state is None:
            state = PerplexityState(0.0, 0)
        K, V = self.hyper.topic_num, self.hyper.voc_size
        alpha, beta = self.hyper.alpha, self.hyper.beta

        words  = np.asarray(words, dtype=np.int64)
        counts = np.asarray(counts, dtype=np.int64)
        n_dk   = np.asarray(topic_count)
        if n_dk.shape != (K,):
            raise ValueError(f"topic_count has shape {n_dk.shape}, expected ({K},)")
        wordcount = int(counts.sum())
        if wordcount == 0:
            return state

        theta = (jnp.asarray(n_dk) + alpha) / (wordcount + K * alpha)            # (K,)
        phi = (jnp.asarray(model.word_topic_count[words]) + beta) / (
            jnp.asarray(model.topic_total) + V * beta
        )                                                                          # (W,K)
        ll = jnp.sum(jnp.asarray(counts) * jnp.log(phi @ theta))
        return PerplexityState(state.log_likelihood + float(ll), state.token_count + wordcount)

    def merge(
        self, state1: Optional[PerplexityState], state2: Optional[PerplexityState]
    ) -> Optional[PerplexityState]:
        if state1 is None:
            return state2
        if state2 is None:
            return state1
        return PerplexityState(
            state1.log_likelihood + state2.log_likelihood,
            state1.token_count + state2.token_count,
        )

    def finalize(self, state: Optional[PerplexityState]) -> float:
        if state is None or state.token_count == 0:
            raise ValueError("Perplexity is undefined for zero tokens.")
        return float(np.exp(-state.log_likelihood / state.token_count))
