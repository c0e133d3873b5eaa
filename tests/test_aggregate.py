from __future__ import annotations

"""Aggregators: merge order must not matter, perplexity must match the closed form."""

from functools import reduce

import numpy as np
import jax
import pytest

from plda_jax.inference.aggregate import (
    PerplexityAggregator,
    PerplexityState,
    TopicCountAggregator,
)
from plda_jax.models.lda import LDAModel, ModelCounts, init_doc_topic
from plda_jax.utils.generator import generate_lda_corpus
from plda_jax.utils.process import DocumentShapeError

V, K = 15, 3


@pytest.fixture(scope="module")
def topic_docs():
    synth = generate_lda_corpus(
        jax.random.PRNGKey(11), num_docs=9, num_topics=K, vocab_size=V, doc_length=[5, 8, 0, 13, 7, 9, 4, 6, 10]
    )
    keys = jax.random.split(jax.random.PRNGKey(12), len(synth.documents))
    return [(doc, init_doc_topic(doc, K, key=k)) for doc, k in zip(synth.documents, keys)]


def _count_state(agg, docs):
    state = agg.init_state()
    for doc, dt in docs:
        state = agg.accumulate(state, doc.words, doc.counts, dt.topic_assignment)
    return state


def _ppl_state(agg, docs, model):
    state = agg.init_state()
    for doc, dt in docs:
        state = agg.accumulate(state, doc.words, doc.counts, dt.topic_count, model)
    return state

################################################################################
# Topic counts #################################################################
################################################################################

def test_topic_count_accumulate_matches_assignments(topic_docs):
    agg = TopicCountAggregator(V, K)
    flat = agg.finalize(_count_state(agg, topic_docs))
    counts = ModelCounts.from_flat(flat, V, K)

    expected = np.zeros((V, K), dtype=np.int64)
    for doc, dt in topic_docs:
        np.add.at(expected, (doc.tokens(), dt.topic_assignment), 1)
    np.testing.assert_array_equal(counts.word_topic_count, expected)
    np.testing.assert_array_equal(counts.topic_total, expected.sum(axis=0))


def test_topic_count_merge_is_order_independent(topic_docs):
    agg = TopicCountAggregator(V, K)
    g1, g2, g3 = topic_docs[:3], topic_docs[3:5], topic_docs[5:]
    s1, s2, s3 = (_count_state(agg, g) for g in (g1, g2, g3))
    whole = agg.finalize(_count_state(agg, topic_docs))

    np.testing.assert_array_equal(agg.finalize(agg.merge(agg.merge(s1, s2), s3)), whole)
    np.testing.assert_array_equal(agg.finalize(agg.merge(s1, agg.merge(s2, s3))), whole)
    np.testing.assert_array_equal(agg.finalize(agg.merge(s3, agg.merge(s2, s1))), whole)
    np.testing.assert_array_equal(agg.finalize(agg.merge(None, s1)), agg.finalize(s1))


def test_topic_count_empty_state():
    agg = TopicCountAggregator(2, 2)
    np.testing.assert_array_equal(agg.finalize(agg.init_state()), np.zeros(6))
    state = agg.accumulate(None, [], [], [])
    np.testing.assert_array_equal(agg.finalize(state), np.zeros(6))


def test_topic_count_rejects_mismatched_shapes():
    agg = TopicCountAggregator(3, 2)
    with pytest.raises(ValueError):
        agg.accumulate(None, [0, 1], [2, 1], [0, 1])
    with pytest.raises(ValueError):
        agg.merge(TopicCountAggregator(3, 2).accumulate(None, [0], [1], [0]),
                  TopicCountAggregator(4, 2).accumulate(None, [0], [1], [0]))


@pytest.mark.parametrize(
    "words, counts, assignment",
    [
        ([3], [1], [0]),       # word id equal to voc_size would land in the totals row
        ([-1], [1], [0]),
        ([0], [1], [2]),       # topic id equal to topic_num
        ([0], [1], [-1]),
        ([0, 1], [1], [0]),    # words / counts length mismatch
    ],
)
def test_topic_count_rejects_out_of_range_ids(words, counts, assignment):
    agg = TopicCountAggregator(3, 2)
    state = agg.accumulate(None, [0], [1], [1])
    before = state.copy()
    with pytest.raises(DocumentShapeError):
        agg.accumulate(state, words, counts, assignment)
    np.testing.assert_array_equal(state, before)


def test_topic_count_merge_is_exact_past_int32():
    agg = TopicCountAggregator(1, 1)
    big = np.array([2**31 - 1, 2**31 - 1], dtype=np.int64)
    state = agg.accumulate(big.copy(), [0], [3], [0, 0, 0])
    assert state.dtype == np.int64
    merged = agg.finalize(agg.merge(state, big))
    assert merged.tolist() == [2**32 + 1, 2**32 + 1]


################################################################################
# Perplexity ###################################################################
################################################################################

def test_perplexity_merge_is_order_independent(topic_docs):
    hyper = LDAModel(V, K, alpha=0.3, beta=0.05)
    counts_agg = TopicCountAggregator(V, K)
    model = ModelCounts.from_flat(counts_agg.finalize(_count_state(counts_agg, topic_docs)), V, K)
    agg = PerplexityAggregator(hyper)

    groups = [topic_docs[:4], topic_docs[4:6], topic_docs[6:]]
    states = [_ppl_state(agg, g, model) for g in groups]
    whole = _ppl_state(agg, topic_docs, model)

    for merged in (reduce(agg.merge, states), reduce(agg.merge, reversed(states)),
                   agg.merge(states[0], agg.merge(states[2], states[1]))):
        assert merged.token_count == whole.token_count
        assert merged.log_likelihood == pytest.approx(whole.log_likelihood, rel=1e-6)
        assert agg.finalize(merged) == pytest.approx(agg.finalize(whole), rel=1e-6)


def test_single_topic_perplexity_closed_form():
    hyper = LDAModel(voc_size=3, topic_num=1, alpha=0.1, beta=0.1)
    model = ModelCounts(np.array([[2], [2], [3]]), np.array([7]))
    agg = PerplexityAggregator(hyper)
    state = agg.accumulate(None, [0, 2], [1, 2], [3], model)

    phi = (np.array([2.0, 2.0, 3.0]) + 0.1) / (7 + 3 * 0.1)
    expected = np.exp(-(1 * np.log(phi[0]) + 2 * np.log(phi[2])) / 3)
    assert state.token_count == 3
    assert agg.finalize(state) == pytest.approx(expected, rel=1e-5)


def test_perplexity_of_nothing_is_an_error():
    agg = PerplexityAggregator(LDAModel(voc_size=2, topic_num=2))
    model = ModelCounts.zeros(2, 2)
    with pytest.raises(ValueError):
        agg.finalize(agg.init_state())
    state = agg.accumulate(None, [], [], [0, 0], model)
    assert state == PerplexityState(0.0, 0)
    with pytest.raises(ValueError):
        agg.finalize(state)
