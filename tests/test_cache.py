from __future__ import annotations

"""Partition-local model cache and the document helpers it is fed with."""

import numpy as np
import pytest

from plda_jax.models.cache import ModelCache
from plda_jax.models.lda import LDAModel
from plda_jax.utils.process import (
    DocumentShapeError,
    documents_from_triples,
    partition,
    validate_document,
)

FLAT = np.array([1, 0, 0, 2, 1, 2])  # V=2, K=2


def test_acquire_decodes_once_per_scan():
    cache = ModelCache(LDAModel(voc_size=2, topic_num=2))
    first = cache.acquire(FLAT, ("q", 0, 0))
    first.word_topic_count[0, 0] += 5
    again = cache.acquire(FLAT, ("q", 0, 0))
    assert again is first
    assert again.word_topic_count[0, 0] == 6
    # the caller's flat model is never written to
    assert FLAT[0] == 1


def test_distinct_scans_do_not_share_state():
    cache = ModelCache(LDAModel(voc_size=2, topic_num=2))
    a = cache.acquire(FLAT, ("q", 0, 0))
    b = cache.acquire(FLAT, ("q", 1, 0))
    a.topic_total[1] = 99
    assert b.topic_total[1] == 2
    assert len(cache) == 2

    cache.release(("q", 0, 0))
    assert ("q", 0, 0) not in cache
    fresh = cache.acquire(FLAT, ("q", 0, 0))
    assert fresh.topic_total[1] == 2
    cache.release(("missing",))


def test_scan_releases_on_error():
    cache = ModelCache(LDAModel(voc_size=2, topic_num=2))
    with pytest.raises(RuntimeError):
        with cache.scan(FLAT, "s") as model:
            assert "s" in cache
            model.topic_total[:] = 0
            raise RuntimeError("partition failed")
    assert len(cache) == 0


def test_scan_id_cannot_be_reused_while_active():
    cache = ModelCache(LDAModel(voc_size=2, topic_num=2))
    with cache.scan(FLAT, "s"):
        with pytest.raises(KeyError):
            with cache.scan(FLAT, "s"):
                pass


def test_acquire_rejects_wrong_model_length():
    cache = ModelCache(LDAModel(voc_size=3, topic_num=2))
    with pytest.raises(ValueError):
        cache.acquire(FLAT, "s")
    assert len(cache) == 0

################################################################################
# Document helpers #############################################################
################################################################################

def test_documents_from_triples_groups_and_sums():
    docs = documents_from_triples([(7, 2, 1), (3, 1, 2), (7, 0, 4), (7, 2, 2), (3, 0, 0)])
    assert [d.docid for d in docs] == [3, 7]
    assert docs[0].words.tolist() == [1] and docs[0].counts.tolist() == [2]
    assert docs[1].words.tolist() == [0, 2] and docs[1].counts.tolist() == [4, 3]
    assert docs[1].wordcount == 7
    assert docs[1].tokens().tolist() == [0, 0, 0, 0, 2, 2, 2]

    with pytest.raises(DocumentShapeError):
        documents_from_triples([(1, 0, -1)])


def test_validate_document_wordcount():
    (doc,) = documents_from_triples([(1, 0, 2), (1, 1, 1)])
    validate_document(doc, voc_size=2)
    with pytest.raises(DocumentShapeError):
        validate_document(doc._replace(wordcount=4), voc_size=2)
    with pytest.raises(DocumentShapeError):
        validate_document(doc, voc_size=1)


def test_partition_is_contiguous_and_complete():
    items = list(range(10))
    shards = partition(items, 3)
    assert len(shards) == 3
    assert [x for s in shards for x in s] == items
    assert max(map(len, shards)) - min(map(len, shards)) <= 1

    assert partition([1, 2], 4) == [[], [1], [], [2]]
    with pytest.raises(ValueError):
        partition(items, 0)
