from __future__ import annotations

"""plda_jax.utils.generator
=================================

**Synthetic data generation** – draw bag-of-words corpora from the LDA
generative model for unit tests and benchmarking.
"""
from typing import List, NamedTuple, Sequence, Tuple, Union

import numpy as np
import jax
from jax import Array
import jax.numpy as jnp

from .process import Document

################################################################################
# 1. Synthetic LDA generator ####################################################
################################################################################

class LDASynthetic(NamedTuple):
    """Return object for :func:`generate_lda_corpus`."""

    documents: List[Document]
    theta:     Array  # (D, K) document–topic dists
    phi:       Array  # (K, V) topic–word dists

# -----------------------------------------------------------------------------
# Utility: Dirichlet draw that returns (next_key, sample)
# -----------------------------------------------------------------------------

def _draw_dirichlet(key: Array, alpha: Array, shape: Tuple[int, ...]) -> Tuple[Array, Array]:
    key, sub = jax.random.split(key)
    return key, jax.random.dirichlet(sub, alpha, shape=shape)


def generate_lda_corpus(
    key: Array,
    *,
    num_docs: int,
    num_topics: int,
    vocab_size: int,
    doc_length: Union[int, Sequence[int]],
    alpha: float = 0.1,
    beta: float = 0.1,
) -> LDASynthetic:
    """Draw a corpus from the standard LDA generative model."""

    # 1. φ  ~ Dir_V(beta)
    key, phi = _draw_dirichlet(key, jnp.full((vocab_size,), beta), (num_topics,))

    # 2. θ  ~ Dir_K(alpha)
    key, theta = _draw_dirichlet(key, jnp.full((num_topics,), alpha), (num_docs,))

    # 3. Document lengths
    if isinstance(doc_length, int):
        doc_lengths = [doc_length] * num_docs
    else:
        doc_lengths = [int(n) for n in doc_length]
        if len(doc_lengths) != num_docs:
            raise ValueError("`doc_length` must have one entry per document.")

    # 4. Sample individual documents and collapse to (words, counts) --------
    keys = jax.random.split(key, num_docs)
    documents = []
    for d in range(num_docs):
        sub1, sub2 = jax.random.split(keys[d])
        z_dn = jax.random.categorical(sub1, jnp.log(theta[d]), shape=(doc_lengths[d],))
        w_dn = jax.random.categorical(sub2, jnp.log(phi[z_dn]), axis=-1)
        words, counts = np.unique(np.asarray(w_dn, dtype=np.int64), return_counts=True)
        documents.append(Document(d, int(counts.sum()), words, counts.astype(np.int64)))

    return LDASynthetic(documents, theta, phi)
