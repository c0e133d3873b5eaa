from __future__ import annotations

"""plda_jax.utils.process
=================================

Document containers and light-weight helpers around them:

1. **Containers** – :class:`Document` (bag-of-words row) and
   :class:`TopicDocument` (the same row plus its topic data).
2. **Validation** – shape checks that must pass before a document is allowed
   to touch a shared model.
3. **Reference codec** – group raw ``(docid, wordid, count)`` triples into
   :class:`Document` rows.
4. **Partitioning** – split a document sequence into contiguous shards.
"""
from typing import Iterable, List, NamedTuple, Sequence, Tuple, TypeVar
from collections import defaultdict

import numpy as np

__all__ = [
    "DocumentShapeError",
    "Document",
    "TopicDocument",
    "validate_document",
    "validate_topic_document",
    "documents_from_triples",
    "partition",
]

T = TypeVar("T")

################################################################################
# 1. Containers ################################################################
################################################################################

class DocumentShapeError(ValueError):
    """Document arrays disagree in length or in total token count."""


class Document(NamedTuple):
    """One bag-of-words document."""

    docid:     int
    wordcount: int
    words:     np.ndarray   # (W,) distinct vocab ids
    counts:    np.ndarray   # (W,) occurrences per word, all > 0

    def tokens(self) -> np.ndarray:
        """Vocab id of every token occurrence, in expansion order."""
        return np.repeat(self.words, self.counts)


class TopicDocument(NamedTuple):
    """A document together with its current topic data."""

    docid:            int
    wordcount:        int
    words:            np.ndarray
    counts:           np.ndarray
    topic_count:      np.ndarray   # (K,)
    topic_assignment: np.ndarray   # (wordcount,)

    @property
    def document(self) -> Document:
        return Document(self.docid, self.wordcount, self.words, self.counts)

################################################################################
# 2. Validation ################################################################
################################################################################

def validate_document(doc: Document, voc_size: int) -> None:
    """Raise :class:`DocumentShapeError` unless ``doc`` is well formed."""
    words, counts = np.asarray(doc.words), np.asarray(doc.counts)
    if words.ndim != 1 or words.shape != counts.shape:
        raise DocumentShapeError(
            f"doc {doc.docid}: words{words.shape} and counts{counts.shape} differ in shape"
        )
    if counts.size and counts.min() <= 0:
        raise DocumentShapeError(f"doc {doc.docid}: counts must be positive")
    if int(counts.sum()) != doc.wordcount:
        raise DocumentShapeError(
            f"doc {doc.docid}: sum(counts)={int(counts.sum())} != wordcount={doc.wordcount}"
        )
    if words.size and (words.min() < 0 or words.max() >= voc_size):
        raise DocumentShapeError(f"doc {doc.docid}: word id outside [0, {voc_size})")


def validate_topic_document(
    doc: Document,
    topic_count: np.ndarray,
    topic_assignment: np.ndarray,
    voc_size: int,
    topic_num: int,
) -> None:
    """Shape checks for a document plus its ``(topic_count, topic_assignment)``."""
    validate_document(doc, voc_size)
    topic_count = np.asarray(topic_count)
    topic_assignment = np.asarray(topic_assignment, dtype=np.int64)
    if topic_count.shape != (topic_num,):
        raise DocumentShapeError(
            f"doc {doc.docid}: topic_count has shape {topic_count.shape}, expected ({topic_num},)"
        )
    if topic_assignment.shape != (doc.wordcount,):
        raise DocumentShapeError(
            f"doc {doc.docid}: topic_assignment has length {topic_assignment.size}, "
            f"expected {doc.wordcount}"
        )
    if int(topic_count.sum()) != doc.wordcount:
        raise DocumentShapeError(f"doc {doc.docid}: sum(topic_count) != wordcount")
    if topic_assignment.size and (topic_assignment.min() < 0 or topic_assignment.max() >= topic_num):
        raise DocumentShapeError(f"doc {doc.docid}: topic id outside [0, {topic_num})")
    if not np.array_equal(np.bincount(topic_assignment, minlength=topic_num), topic_count):
        raise DocumentShapeError(f"doc {doc.docid}: topic_count does not match topic_assignment")

################################################################################
# 3. Reference codec ###########################################################
################################################################################

def documents_from_triples(triples: Iterable[Tuple[int, int, int]]) -> List[Document]:
    """Group ``(docid, wordid, count)`` rows into documents sorted by ``docid``.

    Word ids are assumed to be dense already. Repeated ``(docid, wordid)``
    pairs are summed; zero counts are dropped.
    """
    grouped: dict[int, dict[int, int]] = defaultdict(lambda: defaultdict(int))
    for docid, wordid, count in triples:
        if count < 0:
            raise DocumentShapeError(f"doc {docid}: negative count for word {wordid}")
        grouped[int(docid)][int(wordid)] += int(count)

    docs = []
    for docid in sorted(grouped):
        pairs = sorted((w, c) for w, c in grouped[docid].items() if c > 0)
        words  = np.asarray([w for w, _ in pairs], dtype=np.int64)
        counts = np.asarray([c for _, c in pairs], dtype=np.int64)
        docs.append(Document(docid, int(counts.sum()), words, counts))
    return docs

################################################################################
# 4. Partitioning ##############################################################
################################################################################

def partition(items: Sequence[T], num_partitions: int) -> List[List[T]]:
    """Split ``items`` into ``num_partitions`` contiguous, near-equal shards."""
    if num_partitions < 1:
        raise ValueError("`num_partitions` must be at least 1.")
    bounds = np.linspace(0, len(items), num_partitions + 1).astype(int)
    return [list(items[lo:hi]) for lo, hi in zip(bounds[:-1], bounds[1:])]
