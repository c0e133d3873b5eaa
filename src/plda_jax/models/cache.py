"""Partition-local cache of the decoded model.

A scan over one partition decodes the flat model once and then lets the
sampler mutate the decoded tensors document after document. The mutated state
is scratch: the authoritative next model is aggregated from the emitted
per-document topic data.
"""

import logging
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator

from plda_jax.models.lda import LDAModel, ModelCounts

__all__ = ["ModelCache"]

logger = logging.getLogger(__name__)


class ModelCache:
    """Decoded models keyed by scan identity, e.g. ``(query, iteration, partition)``."""

    def __init__(self, hyper: LDAModel) -> None:
        self.hyper = hyper
        self._entries: Dict[Hashable, ModelCounts] = {}

    def acquire(self, model_flat, scan_id: Hashable) -> ModelCounts:
        """Return the decoded model for ``scan_id``, decoding on first use."""
        counts = self._entries.get(scan_id)
        if counts is None:
            logger.debug("Decoding model for scan %r", scan_id)
            counts = ModelCounts.from_flat(model_flat, self.hyper.voc_size, self.hyper.topic_num)
            self._entries[scan_id] = counts
        return counts

    def release(self, scan_id: Hashable) -> None:
        """Drop the scan's decoded model; unknown ids are ignored."""
        self._entries.pop(scan_id, None)

    @contextmanager
    def scan(self, model_flat, scan_id: Hashable) -> Iterator[ModelCounts]:
        """Hold the decoded model for the duration of one scan."""
        if scan_id in self._entries:
            raise KeyError(f"scan {scan_id!r} is already active")
        try:
            yield self.acquire(model_flat, scan_id)
        finally:
            self.release(scan_id)

    def __contains__(self, scan_id: Hashable) -> bool:
        return scan_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
