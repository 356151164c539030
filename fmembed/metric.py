"""Binned metrics keyed by item occurrence count.

Long-tail items are expected to predict worse than items with lots of
signal, so losses and accuracies are tracked per occurrence bucket.  Every
accumulator merges by bucket-wise addition, which is associative and
commutative: worker-local partial results combine in any order.
"""

from __future__ import annotations

import numpy as np
from numba import njit

from .errors import BinRangeError, ConfigError


@njit(cache=True)
def bin_index(bins, count):
    """First boundary index strictly greater than count, -1 when none."""
    for i in range(len(bins)):
        if count < bins[i]:
            return i
    return -1


def _check_bins(bins) -> np.ndarray:
    bins = np.asarray(bins, dtype=np.int64)
    if bins.ndim != 1 or len(bins) == 0:
        raise ConfigError("bins must be a non-empty sequence of ints")
    if np.any(np.diff(bins) <= 0):
        raise ConfigError(f"bins must be strictly ascending: {bins.tolist()}")
    return bins


class _Binned:
    __slots__ = ("bins",)

    def __init__(self, bins):
        self.bins = _check_bins(bins)

    def bin(self, count: int) -> int:
        i = bin_index(self.bins, int(count))
        if i < 0:
            raise BinRangeError(f"{count} is outside the bins")
        return i

    def _same_bins(self, other):
        if not np.array_equal(self.bins, other.bins):
            raise ValueError("cannot merge accumulators with different bins")


class LossAverager(_Binned):
    """Per-bin loss sums and counts."""

    __slots__ = ("counts", "losses")

    def __init__(self, bins, counts=None, losses=None):
        super().__init__(bins)
        n = len(self.bins)
        self.counts = (np.zeros(n, np.int64) if counts is None
                       else np.asarray(counts, dtype=np.int64).copy())
        self.losses = (np.zeros(n, np.float64) if losses is None
                       else np.asarray(losses, dtype=np.float64).copy())

    def add(self, loss: float, count: int):
        i = self.bin(count)
        self.losses[i] += loss
        self.counts[i] += 1

    def merge(self, other: LossAverager) -> LossAverager:
        """Bucket-wise sum as a new accumulator; neither operand changes."""
        self._same_bins(other)
        return LossAverager(self.bins, self.counts + other.counts,
                            self.losses + other.losses)

    __add__ = merge

    def average(self) -> float:
        return float(self.losses.sum() / self.counts.sum())

    def per_bin_average(self) -> np.ndarray:
        """Average per bin; NaN where a bin is empty."""
        with np.errstate(invalid="ignore", divide="ignore"):
            return self.losses / self.counts

    def __eq__(self, other) -> bool:
        if not isinstance(other, LossAverager):
            return NotImplemented
        return (np.array_equal(self.bins, other.bins)
                and np.array_equal(self.counts, other.counts)
                and np.array_equal(self.losses, other.losses))

    def __str__(self) -> str:
        parts = [f"{self.average():.4f} --> "]
        for b, loss, n in zip(self.bins, self.per_bin_average(), self.counts):
            parts.append(f"bin-{b}:{loss:.4f} ({n}) | ")
        return "".join(parts)


class Accuracy(_Binned):
    """Per-bin share of positives scored above and negatives below a threshold."""

    __slots__ = ("pos", "pos_correct", "neg", "neg_correct")

    def __init__(self, bins, pos=None, pos_correct=None, neg=None,
                 neg_correct=None):
        super().__init__(bins)
        n = len(self.bins)

        def _arr(a):
            return (np.zeros(n, np.int64) if a is None
                    else np.asarray(a, dtype=np.int64).copy())

        self.pos, self.pos_correct = _arr(pos), _arr(pos_correct)
        self.neg, self.neg_correct = _arr(neg), _arr(neg_correct)

    def add_pos(self, value: float, threshold: float, count: int):
        i = self.bin(count)
        self.pos[i] += 1
        if value > threshold:
            self.pos_correct[i] += 1

    def add_neg(self, value: float, threshold: float, count: int):
        i = self.bin(count)
        self.neg[i] += 1
        if value < threshold:
            self.neg_correct[i] += 1

    def merge(self, other: Accuracy) -> Accuracy:
        self._same_bins(other)
        return Accuracy(self.bins, self.pos + other.pos,
                        self.pos_correct + other.pos_correct,
                        self.neg + other.neg,
                        self.neg_correct + other.neg_correct)

    __add__ = merge

    def average(self) -> float:
        """Percentage of correct predictions over all bins."""
        total = self.pos.sum() + self.neg.sum()
        return float(100.0 * (self.pos_correct.sum()
                              + self.neg_correct.sum()) / total)

    def per_bin(self) -> tuple[np.ndarray, np.ndarray]:
        """(positive %, negative %) per bin; NaN where a bin is empty."""
        with np.errstate(invalid="ignore", divide="ignore"):
            return (100.0 * self.pos_correct / self.pos,
                    100.0 * self.neg_correct / self.neg)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Accuracy):
            return NotImplemented
        return all(np.array_equal(getattr(self, a), getattr(other, a))
                   for a in ("bins", "pos", "pos_correct", "neg",
                             "neg_correct"))

    def __str__(self) -> str:
        pos_pct, neg_pct = self.per_bin()
        parts = [f"{self.average():.2f}% --> "]
        for i, b in enumerate(self.bins):
            parts.append(f"bin-{b}: p:{pos_pct[i]:.2f}%({self.pos[i]}) "
                         f"n:{neg_pct[i]:.2f}%({self.neg[i]}) | ")
        return "".join(parts)
