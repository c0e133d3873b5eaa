from __future__ import annotations

"""plda_jax.models.lda
======================

Collapsed-Gibbs building blocks for **partition-parallel** LDA.

----------------------------------------------------------------------
Data structures
----------------------------------------------------------------------

``LDAModel``
    Immutable hyper-parameters ``voc_size``, ``topic_num``, ``alpha``,
    ``beta`` (symmetric priors).

``ModelCounts``
    The decoded model, two mutable ``numpy`` tensors:

    ====================== ============== ===================================
    field                  shape / dtype  notes
    ====================== ============== ===================================
    ``word_topic_count``   ``(V,K) int``  tokens of word ``w`` in topic ``k``
    ``topic_total``        ``(K,)  int``  column sums of the above
    ====================== ============== ===================================

    On the wire the model is a single flat ``int`` vector: ``V + 1`` rows of
    ``K`` columns, row-major, with row ``V`` holding ``topic_total``.

``DocTopic``
    ``(topic_count, topic_assignment)`` for one document; the assignment is
    grouped by expanding ``words`` / ``counts`` in order.

----------------------------------------------------------------------
Key API
----------------------------------------------------------------------

* :func:`random_assign` – uniform topic per token (iteration-0 seed).
* :func:`sample_document` – one or more Gibbs sweeps over one document,
  mutating the shared :class:`ModelCounts` in place.

Counts are ``numpy`` because the sampler mutates them token by token; JAX is
used for the random draws so that runs are reproducible from a PRNG key.
"""

from dataclasses import dataclass
from typing import NamedTuple, Optional, Sequence

import numpy as np
import jax
import jax.numpy as jnp
from jax import Array

from plda_jax.utils.process import Document, validate_topic_document

__all__ = [
    "SamplingError",
    "LDAModel",
    "ModelCounts",
    "DocTopic",
    "TrainedModel",
    "random_assign",
    "init_doc_topic",
    "sample_document",
]

################################################################################
# Containers ###################################################################
################################################################################

class SamplingError(RuntimeError):
    """Model counts went inconsistent during sampling (negative or zero mass)."""


@dataclass(frozen=True)
class LDAModel:
    """Fixed hyper-parameters of the LDA generative model."""

    voc_size: int    # V
    topic_num: int   # K
    alpha: float = 0.1  # symmetric Dir_K(alpha)
    beta: float = 0.1   # symmetric Dir_V(beta)

    def __post_init__(self):
        if self.voc_size <= 0 or self.topic_num <= 0:
            raise ValueError(
                f"`voc_size` and `topic_num` must be positive, got {self.voc_size} and {self.topic_num}."
            )
        if not (self.alpha > 0 and self.beta > 0):
            raise ValueError(f"`alpha` and `beta` must be positive, got {self.alpha} and {self.beta}.")

    @property
    def flat_size(self) -> int:
        """Length of the flattened model vector."""
        return (self.voc_size + 1) * self.topic_num


class ModelCounts(NamedTuple):
    """Decoded model: word-topic counts and per-topic totals."""

    word_topic_count: np.ndarray  # (V,K)
    topic_total: np.ndarray       # (K,)

    @classmethod
    def zeros(cls, voc_size: int, topic_num: int) -> "ModelCounts":
        return cls(
            np.zeros((voc_size, topic_num), dtype=np.int64),
            np.zeros((topic_num,), dtype=np.int64),
        )

    @classmethod
    def from_flat(cls, flat, voc_size: int, topic_num: int) -> "ModelCounts":
        """Decode a flat ``(V+1)*K`` vector into a fresh, writable pair."""
        arr = np.array(flat, dtype=np.int64)
        if arr.shape != ((voc_size + 1) * topic_num,):
            raise ValueError(
                f"flat model has shape {arr.shape}, expected ({(voc_size + 1) * topic_num},)"
            )
        arr = arr.reshape(voc_size + 1, topic_num)
        return cls(arr[:voc_size].copy(), arr[voc_size].copy())

    def to_flat(self) -> np.ndarray:
        return np.vstack([self.word_topic_count, self.topic_total[None, :]]).ravel()

    def copy(self) -> "ModelCounts":
        return ModelCounts(self.word_topic_count.copy(), self.topic_total.copy())

    def total_tokens(self) -> int:
        return int(self.topic_total.sum())

    def add_tokens(self, tokens: np.ndarray, assignment: np.ndarray, sign: int = 1) -> None:
        """Add (``sign=1``) or remove (``sign=-1``) token assignments in place."""
        np.add.at(self.word_topic_count, (tokens, assignment), sign)
        np.add.at(self.topic_total, assignment, sign)
        if sign < 0 and assignment.size and (
            self.word_topic_count[tokens, assignment].min() < 0
            or self.topic_total[assignment].min() < 0
        ):
            raise SamplingError("removing tokens left negative model counts")


class DocTopic(NamedTuple):
    """Per-document topic data."""

    topic_count: np.ndarray       # (K,)
    topic_assignment: np.ndarray  # (wordcount,)


class TrainedModel(NamedTuple):
    """Persisted result of a training run: hyper-parameters plus the flat model."""

    voc_size: int
    topic_num: int
    alpha: float
    beta: float
    model: np.ndarray   # ((V+1)*K,) int, row V = topic totals
    iter_num: int

    @property
    def hyper(self) -> LDAModel:
        return LDAModel(self.voc_size, self.topic_num, self.alpha, self.beta)

    def counts(self) -> ModelCounts:
        return ModelCounts.from_flat(self.model, self.voc_size, self.topic_num)

    def phi(self) -> np.ndarray:
        """Smoothed P(word | topic), shape (V, K); each column sums to one."""
        c = self.counts()
        return (c.word_topic_count + self.beta) / (c.topic_total + self.voc_size * self.beta)

################################################################################
# Random initialisation ########################################################
################################################################################

def random_assign(wordcount: int, topic_num: int, *, key: Array) -> np.ndarray:
    """Draw ``wordcount`` iid topics uniformly from ``[0, topic_num)``."""
    z = jax.random.randint(key, shape=(wordcount,), minval=0, maxval=topic_num, dtype=jnp.int32)
    return np.asarray(z, dtype=np.int64)


def init_doc_topic(doc: Document, topic_num: int, *, key: Array) -> DocTopic:
    """Random ``DocTopic`` for a document that has no prior assignment."""
    z = random_assign(doc.wordcount, topic_num, key=key)
    return DocTopic(np.bincount(z, minlength=topic_num).astype(np.int64), z)

################################################################################
# Collapsed Gibbs kernel #######################################################
################################################################################

def _draw_uniforms(key: Array, sweep_count: int, wordcount: int) -> np.ndarray:
    u = jax.random.uniform(key, shape=(sweep_count, wordcount))
    return np.asarray(u, dtype=np.float64)


def sample_document(
    words: Sequence[int],
    counts: Sequence[int],
    doc_topic: DocTopic,
    model: ModelCounts,
    hyper: LDAModel,
    *,
    key: Optional[Array] = None,
    uniforms: Optional[np.ndarray] = None,
    sweep_count: int = 1,
    docid: int = -1,
) -> DocTopic:
    """Resample every token of one document, updating ``model`` in place.

    Parameters
    ----------
    words, counts
        Distinct vocab ids and their occurrence counts.
    doc_topic
        Current ``(topic_count, topic_assignment)``; not modified.
    model
        Shared counts for the scan. The document's current assignment must
        already be included in it.
    hyper
        ``LDAModel`` with ``alpha``, ``beta``, ``voc_size``, ``topic_num``.
    key
        JAX PRNG key used to draw the uniforms.
    uniforms
        Explicit ``(sweep_count, wordcount)`` draws in ``[0, 1)``; takes
        precedence over ``key``. Replaying the same draws against the same
        model reproduces the same assignment.
    sweep_count
        Number of full passes over the document's tokens.

    Returns
    -------
    DocTopic
        New topic counts and assignment for the document.
    """
    if sweep_count < 1:
        raise ValueError("`sweep_count` must be at least 1.")
    words  = np.asarray(words, dtype=np.int64)
    counts = np.asarray(counts, dtype=np.int64)
    K, V = hyper.topic_num, hyper.voc_size
    wordcount = int(counts.sum())
    doc = Document(docid, wordcount, words, counts)
    validate_topic_document(doc, doc_topic.topic_count, doc_topic.topic_assignment, V, K)

    topic_count = np.array(doc_topic.topic_count, dtype=np.int64)
    assignment  = np.array(doc_topic.topic_assignment, dtype=np.int64)
    if wordcount == 0:
        return DocTopic(topic_count, assignment)

    if uniforms is None:
        if key is None:
            raise ValueError("Either `key` or `uniforms` must be provided.")
        uniforms = _draw_uniforms(key, sweep_count, wordcount)
    uniforms = np.asarray(uniforms, dtype=np.float64)
    if uniforms.shape != (sweep_count, wordcount):
        raise ValueError(f"`uniforms` has shape {uniforms.shape}, expected {(sweep_count, wordcount)}.")

    n_wk, n_k = model.word_topic_count, model.topic_total
    alpha, beta, v_beta = hyper.alpha, hyper.beta, V * hyper.beta
    tokens = np.repeat(words, counts)

    for sweep in range(sweep_count):
        for i, w in enumerate(tokens):
            old = assignment[i]
            if n_wk[w, old] <= 0 or n_k[old] <= 0:
                raise SamplingError(
                    f"doc {docid}: model has no count for word {w} in topic {old}; "
                    "the document's assignment is not part of the model"
                )
            # Remove token -------------------------------------------------
            n_wk[w, old] -= 1
            n_k[old] -= 1
            topic_count[old] -= 1

            # Sample new topic (inverse CDF) -------------------------------
            weights = (topic_count + alpha) * (n_wk[w] + beta) / (n_k + v_beta)
            cdf = np.cumsum(weights)
            total = cdf[-1]
            if not (np.isfinite(total) and total > 0) or weights.min() <= 0:
                raise SamplingError(f"doc {docid}: degenerate sampling weights {weights}")
            new = min(int(np.searchsorted(cdf, uniforms[sweep, i] * total, side="right")), K - 1)

            # Add token back -----------------------------------------------
            n_wk[w, new] += 1
            n_k[new] += 1
            topic_count[new] += 1
            assignment[i] = new

    return DocTopic(topic_count, assignment)
