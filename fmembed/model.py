"""Factorization-machine embeddings trained with asynchronous SGD.

One engine owns the parameter store (biases, latent vectors, AdaGrad
accumulators) and the gradient-step primitive; the training objective is
injected:

- :class:`Pointwise`: the observed (context, item) pair is a positive,
  ``negatives`` sampled contexts are negatives.  Classification by
  default, regression on ``log(1 + rating)`` with count-based weighting.
- :class:`Pairwise`: BPR: the observed item must outscore a sampled item
  for the same context.

Concurrency (Hogwild)::

    every pass:  dataset -> blocks -> prange workers over contiguous ranges
                 workers read and write biases / vectors / gradient lengths
                 with no locks; each keeps its own loss/accuracy row and
                 minstd random state; rows are merged after the pass

Two examples touching the same dense id race on read-modify-write.  The
updates are small and sparse, so the model tolerates the lost updates;
serialising them would cost the parallel speed-up.

::

    model = Factorization(dimensions=32, iterations=5, negatives=5)
    history = model.train(trainset, features, mapper.num_features)
    model.evaluate(testset, features)           # -> LossAverager
"""

from __future__ import annotations

import math
import sys
import time
from contextlib import closing
from dataclasses import dataclass
from functools import reduce

import numba
import numpy as np
from numba import njit, prange

from .dataset import BLOCK_SIZE, Dataset
from .errors import ConfigError
from .loss import get_loss, loss_derivative, loss_value
from .metric import Accuracy, LossAverager, bin_index
from .sparse import SparseVector, pack_features

DEFAULT_BINS = (10, 20, 50, 100, 1000, 5000, 100000)
TABLE_SIZE = 10_000_000
ADAGRAD_EPS = 1e-6


# ── objectives ───────────────────────────────────────────────────────────────


@njit(cache=True)
def _count_weight(rating, min_count, alpha):
    """(rating / min_count) ** alpha up to min_count, 1 above."""
    if rating <= min_count:
        return (rating / min_count) ** alpha
    return 1.0


@dataclass(frozen=True)
class Pointwise:
    """Positives against sampled contexts.

    With ``regression`` the target is ``log(1 + rating)`` and examples are
    down-weighted by :meth:`weight` so that rare pairs count less.
    """

    regression: bool = False
    min_count: int = 100

    def weight(self, rating: float, alpha: float) -> float:
        return _count_weight(float(rating), float(self.min_count),
                             float(alpha))


@dataclass(frozen=True)
class Pairwise:
    """Bayesian personalised ranking against one sampled item."""

    def weight(self, rating: float, alpha: float) -> float:
        return 1.0


# ── sampling table ───────────────────────────────────────────────────────────


@njit(cache=True)
def _fill_sampling_table(counts, alpha, table):
    total = 0.0
    for i in range(len(counts)):
        total += math.pow(float(counts[i]), alpha)
    size = len(table)
    index = 0
    cumulative = 0.0
    for i in range(len(counts)):
        if counts[i] > 0:
            cumulative += math.pow(float(counts[i]), alpha) / total
            while index < size and cumulative > index / size:
                table[index] = i
                index += 1
    return index


def build_sampling_table(counts, alpha: float, table_size: int) -> np.ndarray:
    """Table whose uniform sampling follows ``count ** alpha``.

    Ids are laid out in increasing order; ids with zero count get no slot.
    Example: counts ``[0, 10, 20, 30, 40]``, alpha 1, size 6 gives
    ``[1, 2, 3, 3, 4, 4]``.
    """
    counts = np.asarray(counts, dtype=np.int64)
    if table_size < 1:
        raise ConfigError(f"table size must be positive, got {table_size}")
    positive = np.flatnonzero(counts > 0)
    if len(positive) == 0:
        raise ValueError("cannot build a sampling table from all-zero counts")
    table = np.zeros(table_size, np.int32)
    filled = _fill_sampling_table(counts, float(alpha), table)
    # cumulative rounding can leave the tail short of 1.0
    table[filled:] = positive[-1]
    return table


# ── kernels ──────────────────────────────────────────────────────────────────


@njit(cache=True)
def _minstd(state):
    return (state * np.int64(48271)) % np.int64(2147483647)


@njit(cache=True)
def _fill_example(keys, vals, ctx, item, feat_ptr, feat_keys, feat_vals):
    """Active features: context, item, then the item's side features."""
    keys[0] = ctx
    vals[0] = 1.0
    keys[1] = item
    vals[1] = 1.0
    n = 2
    for j in range(feat_ptr[item], feat_ptr[item + 1]):
        keys[n] = feat_keys[j]
        vals[n] = feat_vals[j]
        n += 1
    return n


@njit(fastmath=True, cache=True)
def _fm_score(keys, vals, n, biases, vectors):
    """Linear terms plus pairwise latent dot products, O(n^2) in n."""
    dim = vectors.shape[1]
    score = 0.0
    for a in range(n):
        ka = keys[a]
        va = vals[a]
        score += va * biases[ka]
        for b in range(a + 1, n):
            kb = keys[b]
            dot = 0.0
            for d in range(dim):
                dot += vectors[ka, d] * vectors[kb, d]
            score += va * vals[b] * dot
    return score


@njit(fastmath=True, cache=True)
def _gradient_step(keys, vals, n, error, biases, vectors, grad_len,
                   learn_rate, lambda1, lambda2, vsum, grad):
    """Update every active feature for the (signed) loss derivative.

    The pairwise-term gradient of feature i is
    ``value_i * (vsum - value_i * v_i)`` with ``vsum = sum_k value_k * v_k``
    computed once.  Vector and bias share the feature's AdaGrad rate.
    """
    dim = vectors.shape[1]
    for d in range(dim):
        vsum[d] = 0.0
    for k in range(n):
        key = keys[k]
        v = vals[k]
        for d in range(dim):
            vsum[d] += v * vectors[key, d]

    for k in range(n):
        key = keys[k]
        v = vals[k]
        sq = 0.0
        for d in range(dim):
            g = ((v * vsum[d] - v * v * vectors[key, d]) * error
                 + lambda2 * vectors[key, d])
            grad[d] = g
            sq += g * g
        grad_len[key] += sq / dim
        rate = learn_rate / math.sqrt(grad_len[key] + ADAGRAD_EPS)
        for d in range(dim):
            vectors[key, d] -= rate * grad[d]
        current = biases[key]
        biases[key] = current - rate * (v * error + lambda1 * current)


@njit(parallel=True, fastmath=True, cache=True)
def _pointwise_pass(contexts, items, ratings,
                    feat_ptr, feat_keys, feat_vals,
                    biases, vectors, grad_len,
                    table, item_count, bins,
                    loss_kind, learn_rate, lambda1, lambda2,
                    negatives, regression, min_count, alpha,
                    update, threshold, max_active,
                    rng_states, loss_sums, loss_counts, acc):
    """One block of the pointwise objective; trains when ``update``.

    Worker w owns rows ``[w]`` of rng_states, loss_sums, loss_counts, acc.
    acc[w] rows: positives, positives correct, negatives, negatives correct.
    """
    n_ex = len(contexts)
    workers = len(rng_states)
    dim = vectors.shape[1]
    table_size = len(table)

    for w in prange(workers):
        start = n_ex * w // workers
        end = n_ex * (w + 1) // workers
        state = rng_states[w]
        keys = np.empty(max_active, np.int32)
        vals = np.empty(max_active, np.float32)
        vsum = np.empty(dim, np.float32)
        grad = np.empty(dim, np.float32)

        for e in range(start, end):
            ctx = contexts[e]
            item = items[e]
            rating = np.float64(ratings[e])
            b = bin_index(bins, item_count[item])
            n = _fill_example(keys, vals, ctx, item,
                              feat_ptr, feat_keys, feat_vals)

            if regression:
                measured = math.log1p(rating)
                weight = _count_weight(rating, min_count, alpha)
            else:
                measured = 1.0
                weight = rating
            predicted = _fm_score(keys, vals, n, biases, vectors)
            if update:
                error = weight * loss_derivative(loss_kind, predicted,
                                                 measured)
                _gradient_step(keys, vals, n, error, biases, vectors,
                               grad_len, learn_rate, lambda1, lambda2,
                               vsum, grad)
            loss_sums[w, b] += weight * loss_value(loss_kind, predicted,
                                                   measured)
            loss_counts[w, b] += 1
            acc[w, 0, b] += 1
            if predicted > threshold:
                acc[w, 1, b] += 1

            # negatives: same item and side features, sampled context
            remaining = negatives
            for s in range(negatives):
                state = _minstd(state)
                neg = table[state % table_size]
                if neg == ctx:
                    remaining -= 1
                    continue
                keys[0] = neg
                if regression:
                    measured = 0.0
                    weight = _count_weight(1.0, min_count, alpha)
                else:
                    measured = -1.0
                    weight = rating / remaining
                predicted = _fm_score(keys, vals, n, biases, vectors)
                if update:
                    error = weight * loss_derivative(loss_kind, predicted,
                                                     measured)
                    _gradient_step(keys, vals, n, error, biases, vectors,
                                   grad_len, learn_rate, lambda1, lambda2,
                                   vsum, grad)
                loss_sums[w, b] += weight * loss_value(loss_kind, predicted,
                                                       measured)
                loss_counts[w, b] += 1
                acc[w, 2, b] += 1
                if predicted < threshold:
                    acc[w, 3, b] += 1

        rng_states[w] = state


@njit(parallel=True, fastmath=True, cache=True)
def _pairwise_pass(contexts, items, ratings,
                   feat_ptr, feat_keys, feat_vals,
                   biases, vectors, grad_len,
                   table, item_count, bins,
                   loss_kind, learn_rate, lambda1, lambda2,
                   update, threshold, max_active,
                   rng_states, loss_sums, loss_counts, acc):
    """One block of the pairwise objective; trains when ``update``.

    score = f(context, item) - f(context, sampled item), target +1.  The
    error drives the positive features down the gradient and the sampled
    ones up.
    """
    n_ex = len(contexts)
    workers = len(rng_states)
    dim = vectors.shape[1]
    table_size = len(table)

    for w in prange(workers):
        start = n_ex * w // workers
        end = n_ex * (w + 1) // workers
        state = rng_states[w]
        pos_keys = np.empty(max_active, np.int32)
        pos_vals = np.empty(max_active, np.float32)
        neg_keys = np.empty(max_active, np.int32)
        neg_vals = np.empty(max_active, np.float32)
        vsum = np.empty(dim, np.float32)
        grad = np.empty(dim, np.float32)

        for e in range(start, end):
            ctx = contexts[e]
            item = items[e]
            rating = np.float64(ratings[e])
            b = bin_index(bins, item_count[item])

            state = _minstd(state)
            neg_item = table[state % table_size]
            n_pos = _fill_example(pos_keys, pos_vals, ctx, item,
                                  feat_ptr, feat_keys, feat_vals)
            n_neg = _fill_example(neg_keys, neg_vals, ctx, neg_item,
                                  feat_ptr, feat_keys, feat_vals)

            predicted = (_fm_score(pos_keys, pos_vals, n_pos, biases, vectors)
                         - _fm_score(neg_keys, neg_vals, n_neg, biases,
                                     vectors))
            if update:
                error = rating * loss_derivative(loss_kind, predicted, 1.0)
                _gradient_step(pos_keys, pos_vals, n_pos, error, biases,
                               vectors, grad_len, learn_rate, lambda1,
                               lambda2, vsum, grad)
                _gradient_step(neg_keys, neg_vals, n_neg, -error, biases,
                               vectors, grad_len, learn_rate, lambda1,
                               lambda2, vsum, grad)
            loss_sums[w, b] += loss_value(loss_kind, predicted, 1.0)
            loss_counts[w, b] += 1
            acc[w, 0, b] += 1
            if predicted > threshold:
                acc[w, 1, b] += 1

        rng_states[w] = state


@njit(cache=True)
def _count_block(contexts, items, context_count, item_count):
    for e in range(len(contexts)):
        context_count[contexts[e]] += 1
        item_count[items[e]] += 1


# ── engine ───────────────────────────────────────────────────────────────────


class Factorization:
    """Factorization machine over dense ids with Hogwild AdaGrad SGD.

    Call order: :meth:`init_parameters`, :meth:`count`,
    :meth:`init_sampling_table`, then passes; :meth:`train` runs all of
    them.  Skipping a step is not guarded against.
    """

    __slots__ = ("dimensions", "learn_rate", "lambda1", "lambda2",
                 "iterations", "negatives", "loss", "objective",
                 "table_size", "alpha", "bins", "threads", "seed",
                 "block_size", "verbose",
                 "biases", "latent_vectors", "gradient_lengths",
                 "sampling_table", "item_count", "context_count", "_rng")

    def __init__(self, *, dimensions: int = 10, learn_rate: float = 0.01,
                 lambda1: float = 0.0, lambda2: float = 0.0,
                 iterations: int = 5, negatives: int = 5,
                 loss="logistic", objective=None,
                 table_size: int = TABLE_SIZE, alpha: float = 0.75,
                 bins=DEFAULT_BINS, threads: int = 0, seed: int = 0,
                 block_size: int = BLOCK_SIZE, verbose: int = 2):
        if dimensions < 1:
            raise ConfigError(f"dimensions must be positive, got {dimensions}")
        objective = Pointwise() if objective is None else objective
        if not isinstance(objective, (Pointwise, Pairwise)):
            raise ConfigError(f"unknown objective: {objective!r}")
        self.dimensions = dimensions
        self.learn_rate, self.lambda1, self.lambda2 = learn_rate, lambda1, lambda2
        self.iterations, self.negatives = iterations, negatives
        self.loss = get_loss(loss)
        self.objective = objective
        self.table_size, self.alpha = table_size, alpha
        self.bins = LossAverager(bins).bins
        self.threads, self.seed = threads, seed
        self.block_size, self.verbose = block_size, verbose

        self.biases = self.latent_vectors = self.gradient_lengths = None
        self.sampling_table = self.item_count = self.context_count = None
        self._rng = np.random.RandomState(seed)

    def _log(self, msg: str):
        if self.verbose > 0:
            print(msg, file=sys.stderr)

    def _workers(self) -> int:
        if self.threads > 0:
            numba.set_num_threads(
                min(self.threads, numba.config.NUMBA_NUM_THREADS))
        return numba.get_num_threads()

    # ── state setup ───────────────────────────────────────────────────────

    def init_parameters(self, num_features: int, dimensions: int | None = None):
        """Zero biases, N(0, 1) / dimensions vectors, empty AdaGrad sums."""
        self._log("initializing parameters...")
        dim = self.dimensions if dimensions is None else dimensions
        self._rng = np.random.RandomState(self.seed)
        self.biases = np.zeros(num_features, np.float32)
        self.latent_vectors = (self._rng.standard_normal((num_features, dim))
                               / dim).astype(np.float32)
        self.gradient_lengths = np.zeros(num_features, np.float32)

    def count(self, num_features: int, dataset: Dataset):
        """Occurrences of every dense id as item and as context."""
        self._log("counting item occurrence...")
        self.item_count = np.zeros(num_features, np.int64)
        self.context_count = np.zeros(num_features, np.int64)
        with closing(dataset.iter_blocks(self.block_size)) as blocks:
            for ctx, items, _ in blocks:
                _count_block(ctx, items, self.context_count,
                             self.item_count)

    def init_sampling_table(self, counts, alpha: float | None = None,
                            table_size: int | None = None):
        self._log("initializing sampling table...")
        self.sampling_table = build_sampling_table(
            counts, self.alpha if alpha is None else alpha,
            self.table_size if table_size is None else table_size)

    def sample(self, rng=None) -> int:
        """Draw one id from the sampling table."""
        rng = self._rng if rng is None else rng
        return int(self.sampling_table[rng.randint(len(self.sampling_table))])

    def weight(self, rating: float) -> float:
        return self.objective.weight(rating, self.alpha)

    # ── single examples ───────────────────────────────────────────────────

    def predict(self, sparse_vector: SparseVector) -> float:
        """Factorization-machine score of one active feature set."""
        return float(_fm_score(sparse_vector.keys, sparse_vector.values,
                               len(sparse_vector), self.biases,
                               self.latent_vectors))

    def train_step(self, sparse_vector: SparseVector, measured: float,
                   weight: float) -> float:
        """One SGD step; returns the weighted, unregularised loss."""
        keys, vals, n = sparse_vector.keys, sparse_vector.values, len(sparse_vector)
        predicted = _fm_score(keys, vals, n, self.biases, self.latent_vectors)
        kind = int(self.loss)
        error = weight * loss_derivative(kind, predicted, float(measured))
        dim = self.latent_vectors.shape[1]
        _gradient_step(keys, vals, n, error, self.biases, self.latent_vectors,
                       self.gradient_lengths, float(self.learn_rate),
                       float(self.lambda1), float(self.lambda2),
                       np.empty(dim, np.float32), np.empty(dim, np.float32))
        return weight * loss_value(kind, predicted, float(measured))

    # ── passes ────────────────────────────────────────────────────────────

    def train(self, dataset: Dataset, features, num_features: int
              ) -> list[LossAverager]:
        """Fit on ``dataset``; returns the merged loss of every pass.

        ``features`` holds optional side features indexed by dense item id
        (see :meth:`DenseMapper.map_features`) or is None.
        """
        self.init_parameters(num_features, self.dimensions)
        self.count(num_features, dataset)
        self._check_bins()
        if isinstance(self.objective, Pairwise):
            self.init_sampling_table(self.item_count)
        elif self.negatives > 0:
            self.init_sampling_table(self.context_count)

        packed = pack_features(features, num_features)
        history = []
        t0 = time.time()
        for it in range(1, self.iterations + 1):
            self._log(f"Iteration {it} start...")
            losses, _ = self._pass(dataset, packed, update=True)
            history.append(losses)
            self._log(f"pass={it}/{self.iterations}  train loss: {losses}"
                      f" ({time.time() - t0:.1f}s)")
        return history

    def evaluate(self, dataset: Dataset, features) -> LossAverager:
        """Binned loss on a (dense) data set without updating parameters."""
        losses, _ = self._pass(dataset, pack_features(features,
                                                      len(self.biases)),
                               update=False)
        return losses

    def accuracy(self, dataset: Dataset, features,
                 threshold: float = 0.0) -> Accuracy:
        """Binned share of positives above and negatives below threshold."""
        _, acc = self._pass(dataset, pack_features(features,
                                                   len(self.biases)),
                            update=False, threshold=threshold)
        return acc

    def _check_bins(self):
        if len(self.item_count):
            LossAverager(self.bins).bin(int(self.item_count.max()))

    def _pass(self, dataset: Dataset, packed, update: bool,
              threshold: float = 0.0) -> tuple[LossAverager, Accuracy]:
        self._check_bins()
        feat_ptr, feat_keys, feat_vals = packed
        workers = self._workers()
        nb = len(self.bins)
        loss_sums = np.zeros((workers, nb), np.float64)
        loss_counts = np.zeros((workers, nb), np.int64)
        acc = np.zeros((workers, 4, nb), np.int64)
        table = (self.sampling_table if self.sampling_table is not None
                 else np.zeros(1, np.int32))
        max_active = 2 + (int(np.diff(feat_ptr).max()) if len(feat_ptr) > 1
                          else 0)
        rng_states = self._rng.randint(1, 2147483647, size=workers
                                       ).astype(np.int64)
        common = (self.biases, self.latent_vectors, self.gradient_lengths,
                  table, self.item_count, self.bins, int(self.loss),
                  float(self.learn_rate), float(self.lambda1),
                  float(self.lambda2))

        with closing(dataset.iter_blocks(self.block_size)) as blocks:
            for ctx, items, ratings in blocks:
                if isinstance(self.objective, Pairwise):
                    _pairwise_pass(ctx, items, ratings,
                                   feat_ptr, feat_keys, feat_vals, *common,
                                   update, float(threshold), max_active,
                                   rng_states, loss_sums, loss_counts, acc)
                else:
                    obj = self.objective
                    _pointwise_pass(ctx, items, ratings,
                                    feat_ptr, feat_keys, feat_vals, *common,
                                    int(self.negatives), bool(obj.regression),
                                    float(obj.min_count), float(self.alpha),
                                    update, float(threshold), max_active,
                                    rng_states, loss_sums, loss_counts, acc)

        losses = reduce(LossAverager.merge,
                        (LossAverager(self.bins, loss_counts[w], loss_sums[w])
                         for w in range(workers)))
        accs = reduce(Accuracy.merge,
                      (Accuracy(self.bins, *acc[w]) for w in range(workers)))
        return losses, accs

    # ── export ────────────────────────────────────────────────────────────

    def vectors(self, mapping: dict) -> dict:
        """Original id -> latent vector, for a dense mapping."""
        return {orig: self.latent_vectors[dense]
                for orig, dense in mapping.items()}

    def feature_vectors(self, feature_map: dict, features: dict) -> dict:
        """Original item id -> value-weighted sum of its feature vectors."""
        out = {}
        for item_id, vec in features.items():
            total = np.zeros(self.latent_vectors.shape[1], np.float32)
            for entry in vec:
                total += entry.value * self.latent_vectors[feature_map[entry.key]]
            out[item_id] = total
        return out

    def summed_vectors(self, mapping: dict, feature_map: dict,
                       features: dict) -> dict:
        """Item/context vectors plus their items' feature vectors."""
        out = {}
        for orig, dense in mapping.items():
            total = self.latent_vectors[dense].copy()
            vec = features.get(orig)
            if vec is not None:
                for entry in vec:
                    total += (entry.value
                              * self.latent_vectors[feature_map[entry.key]])
            out[orig] = total
        return out
