from __future__ import annotations

"""plda_jax.inference.sampler
================================

High-level driver that **orchestrates partition-parallel Gibbs sampling**
for the kernels in :pymod:`plda_jax.models.lda`.  One training iteration is

1. split the documents into partitions;
2. for each partition, decode a private copy of the previous model (via a
   :class:`~plda_jax.models.cache.ModelCache`), sweep its documents in order
   and locally accumulate the emitted topic assignments;
3. merge the partition states into the next model.

Partitions never see each other's updates during a sweep.  This is the
usual *approximate distributed Gibbs* trade-off: results agree with a
single-partition run in aggregate, not token by token.

Partition work is dispatched through ``map_fn`` (the builtin :func:`map` by
default); any ``Executor.map`` can be plugged in.
"""

import logging
from dataclasses import dataclass, field
from functools import partial, reduce
from typing import Callable, Hashable, Iterable, List, NamedTuple, Optional, Sequence, Tuple

import jax
import numpy as np
from jax import Array
from tqdm import tqdm

from plda_jax.inference.aggregate import PerplexityAggregator, PerplexityState, TopicCountAggregator
from plda_jax.models.cache import ModelCache
from plda_jax.models.lda import (
    DocTopic,
    LDAModel,
    ModelCounts,
    TrainedModel,
    init_doc_topic,
    sample_document,
)
from plda_jax.utils.process import (
    Document,
    TopicDocument,
    partition,
    validate_document,
    validate_topic_document,
)

__all__ = [
    "TrainConfig",
    "PartitionTask",
    "sample_frozen_document",
    "sweep_partition",
    "GibbsTrainer",
    "train",
    "predict",
    "perplexity",
]

logger = logging.getLogger(__name__)

MapFn = Callable[..., Iterable]

################################################################################
# Config dataclass #############################################################
################################################################################

@dataclass(slots=True)
class TrainConfig:
    """Run-time settings of a training or prediction run."""

    iter_num: int                    # full sweeps over the corpus
    num_partitions: int = 1          # shards swept independently per iteration
    rng_key: Array | None = None     # seed for reproducibility
    show_progress: bool = False      # tqdm progress bar

    def __post_init__(self):
        if self.iter_num <= 0:
            raise ValueError(f"`iter_num` must be positive, got {self.iter_num}.")
        if self.num_partitions < 1:
            raise ValueError(f"`num_partitions` must be at least 1, got {self.num_partitions}.")

################################################################################
# Partition sweep ##############################################################
################################################################################

class PartitionTask(NamedTuple):
    """Everything one partition needs for a scan; picklable for process pools."""

    scan_id: Hashable
    hyper: LDAModel
    model_flat: np.ndarray
    docs: Sequence[TopicDocument]
    key: Array
    sweep_count: int = 1
    frozen: bool = False   # prediction: discard this document's model delta


def sample_frozen_document(
    doc: TopicDocument,
    model: ModelCounts,
    hyper: LDAModel,
    *,
    key: Array,
    sweep_count: int = 1,
) -> DocTopic:
    """Gibbs-sample a document against ``model`` without leaving a trace in it.

    The document's current assignment is added to ``model``, swept, and its
    final assignment removed again, so ``model`` ends as it started.
    """
    validate_topic_document(
        doc.document, doc.topic_count, doc.topic_assignment, hyper.voc_size, hyper.topic_num
    )
    tokens = doc.document.tokens()
    model.add_tokens(tokens, np.asarray(doc.topic_assignment, dtype=np.int64))
    dt = sample_document(
        doc.words,
        doc.counts,
        DocTopic(doc.topic_count, doc.topic_assignment),
        model,
        hyper,
        key=key,
        sweep_count=sweep_count,
        docid=doc.docid,
    )
    model.add_tokens(tokens, dt.topic_assignment, sign=-1)
    return dt


def sweep_partition(
    task: PartitionTask, cache: Optional[ModelCache] = None
) -> Tuple[List[TopicDocument], Optional[np.ndarray]]:
    """Sweep one partition sequentially and locally accumulate its topic counts.

    ``cache`` is owned by this scan alone; a fresh one is built when none is
    given. Returns the updated documents and the partition's
    :class:`TopicCountAggregator` state (``None`` for frozen scans).
    """
    cache = cache if cache is not None else ModelCache(task.hyper)
    hyper = task.hyper
    agg = TopicCountAggregator(hyper.voc_size, hyper.topic_num)
    state = agg.init_state()
    out: List[TopicDocument] = []
    key = task.key

    with cache.scan(task.model_flat, task.scan_id) as model:
        for doc in task.docs:
            key, sub = jax.random.split(key)
            if task.frozen:
                dt = sample_frozen_document(doc, model, hyper, key=sub, sweep_count=task.sweep_count)
            else:
                dt = sample_document(
                    doc.words,
                    doc.counts,
                    DocTopic(doc.topic_count, doc.topic_assignment),
                    model,
                    hyper,
                    key=sub,
                    sweep_count=task.sweep_count,
                    docid=doc.docid,
                )
                state = agg.accumulate(state, doc.words, doc.counts, dt.topic_assignment)
            out.append(doc._replace(topic_count=dt.topic_count, topic_assignment=dt.topic_assignment))

    logger.debug("Scan %r swept %d documents", task.scan_id, len(out))
    return out, state


def _seed_partition(
    hyper: LDAModel, docs: Sequence[Document], key: Array
) -> Tuple[List[TopicDocument], Optional[np.ndarray]]:
    """Random iteration-0 assignment plus its local topic-count state."""
    agg = TopicCountAggregator(hyper.voc_size, hyper.topic_num)
    state = agg.init_state()
    out = []
    for doc in docs:
        key, sub = jax.random.split(key)
        dt = init_doc_topic(doc, hyper.topic_num, key=sub)
        state = agg.accumulate(state, doc.words, doc.counts, dt.topic_assignment)
        out.append(TopicDocument(*doc, dt.topic_count, dt.topic_assignment))
    return out, state


def _perplexity_partition(
    hyper: LDAModel, model_flat: np.ndarray, docs: Sequence[TopicDocument]
) -> Optional[PerplexityState]:
    agg = PerplexityAggregator(hyper)
    model = ModelCounts.from_flat(model_flat, hyper.voc_size, hyper.topic_num)
    state = agg.init_state()
    for doc in docs:
        state = agg.accumulate(state, doc.words, doc.counts, doc.topic_count, model)
    return state

################################################################################
# Trainer ######################################################################
################################################################################

@dataclass
class GibbsTrainer:
    """Runs training iterations and keeps the current model between them.

    Parameters
    ----------
    hyper
        ``LDAModel`` holding hyper-parameters.
    config
        Iterations, partition count, rng and progress settings.
    map_fn
        ``map``-compatible callable used to run partition sweeps.
    """

    hyper: LDAModel
    config: TrainConfig
    map_fn: MapFn = map

    _rng_key: Array = field(init=False, repr=False)

    def __post_init__(self):
        self._rng_key = (
            self.config.rng_key if self.config.rng_key is not None else jax.random.PRNGKey(0)
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _split_keys(self, n: int) -> Array:
        self._rng_key, sub = jax.random.split(self._rng_key)
        return jax.random.split(sub, n)

    def _merge(self, states: Iterable[Optional[np.ndarray]]) -> np.ndarray:
        agg = TopicCountAggregator(self.hyper.voc_size, self.hyper.topic_num)
        return agg.finalize(reduce(agg.merge, states, agg.init_state()))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def initialize(self, documents: Sequence[Document]) -> Tuple[np.ndarray, List[TopicDocument]]:
        """Validate, randomly seed every document and build the iteration-0 model."""
        for doc in documents:
            validate_document(doc, self.hyper.voc_size)
        shards = partition(documents, self.config.num_partitions)
        keys = self._split_keys(len(shards))
        results = list(self.map_fn(partial(_seed_partition, self.hyper), shards, keys))
        outputs = [d for docs, _ in results for d in docs]
        return self._merge(s for _, s in results), outputs

    def iterate(
        self, model_flat: np.ndarray, docs: Sequence[TopicDocument], iteration: int
    ) -> Tuple[np.ndarray, List[TopicDocument]]:
        """One sweep over all partitions followed by the merge."""
        shards = partition(docs, self.config.num_partitions)
        keys = self._split_keys(len(shards))
        tasks = [
            PartitionTask(("train", iteration, p), self.hyper, model_flat, shard, k)
            for p, (shard, k) in enumerate(zip(shards, keys))
        ]
        results = list(self.map_fn(sweep_partition, tasks))
        outputs = [d for out, _ in results for d in out]
        return self._merge(s for _, s in results), outputs

    def run(self, documents: Sequence[Document]) -> Tuple[TrainedModel, List[TopicDocument]]:
        """Execute ``config.iter_num`` iterations from a random start."""
        logger.info(
            "Training LDA: %d docs, V=%d, K=%d, %d iterations over %d partitions",
            len(documents), self.hyper.voc_size, self.hyper.topic_num,
            self.config.iter_num, self.config.num_partitions,
        )
        model_flat, outputs = self.initialize(documents)

        iterator = range(self.config.iter_num)
        if self.config.show_progress:
            iterator = tqdm(iterator, desc="Gibbs")

        for it in iterator:
            model_flat, outputs = self.iterate(model_flat, outputs, it)
            logger.debug("Iteration %d done, %d tokens in model", it, int(model_flat[-self.hyper.topic_num:].sum()))

        h = self.hyper
        trained = TrainedModel(h.voc_size, h.topic_num, h.alpha, h.beta, model_flat, self.config.iter_num)
        return trained, outputs

################################################################################
# Entry points #################################################################
################################################################################

def train(
    documents: Sequence[Document],
    voc_size: int,
    topic_num: int,
    iter_num: int,
    alpha: float,
    beta: float,
    *,
    num_partitions: int = 1,
    key: Array | None = None,
    map_fn: MapFn = map,
    show_progress: bool = False,
) -> Tuple[TrainedModel, List[TopicDocument]]:
    """Fit LDA and return the model with every document's final topic data."""
    hyper = LDAModel(voc_size, topic_num, alpha, beta)
    config = TrainConfig(iter_num, num_partitions, key, show_progress)
    return GibbsTrainer(hyper, config, map_fn).run(documents)


def predict(
    documents: Sequence[Document],
    model: TrainedModel,
    iter_num: int,
    *,
    num_partitions: int = 1,
    key: Array | None = None,
    map_fn: MapFn = map,
) -> List[TopicDocument]:
    """Infer topic data for new documents against a frozen trained model.

    Each document is seeded randomly, folded into its partition's scratch
    copy of the model, swept ``iter_num`` times and removed again, so
    ``model`` itself is never changed.
    """
    hyper = model.hyper
    config = TrainConfig(iter_num, num_partitions, key)
    rng = config.rng_key if config.rng_key is not None else jax.random.PRNGKey(0)
    for doc in documents:
        validate_document(doc, hyper.voc_size)

    seed_key, sweep_key = jax.random.split(rng)
    seeded = []
    for doc, k in zip(documents, jax.random.split(seed_key, max(len(documents), 1))):
        dt = init_doc_topic(doc, hyper.topic_num, key=k)
        seeded.append(TopicDocument(*doc, dt.topic_count, dt.topic_assignment))

    shards = partition(seeded, num_partitions)
    keys = jax.random.split(sweep_key, len(shards))
    tasks = [
        PartitionTask(("predict", p), hyper, model.model, shard, k, sweep_count=iter_num, frozen=True)
        for p, (shard, k) in enumerate(zip(shards, keys))
    ]
    results = list(map_fn(sweep_partition, tasks))
    logger.info("Predicted topics for %d documents", len(documents))
    return [d for out, _ in results for d in out]


def perplexity(
    model: TrainedModel,
    outputs: Sequence[TopicDocument],
    *,
    num_partitions: int = 1,
    map_fn: MapFn = map,
) -> float:
    """Perplexity of ``outputs`` under ``model``; lower is better."""
    hyper = model.hyper
    agg = PerplexityAggregator(hyper)
    shards = partition(outputs, num_partitions)
    states = map_fn(partial(_perplexity_partition, hyper, model.model), shards)
    return agg.finalize(reduce(agg.merge, states, agg.init_state()))
