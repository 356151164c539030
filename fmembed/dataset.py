"""Interchangeable containers and producers of training examples.

Every dataset can be iterated any number of times (each ``iter`` starts a
fresh cursor at the beginning) and streamed as contiguous numpy blocks via
:meth:`Dataset.iter_blocks`, which the engine splits by count across its
worker threads.
"""

from __future__ import annotations

import sys
from abc import ABC, abstractmethod
from typing import Iterator

import numpy as np
from numba import njit

from .errors import ConfigError, UnsupportedOperationError
from .sparse import DataPoint

BLOCK_SIZE = 1 << 16

Block = tuple[np.ndarray, np.ndarray, np.ndarray]


class Dataset(ABC):
    """A sized, restartable sequence of :class:`DataPoint`."""

    @abstractmethod
    def add_datapoint(self, data_point: DataPoint) -> bool:
        ...

    @abstractmethod
    def size(self) -> int:
        ...

    @abstractmethod
    def __iter__(self) -> Iterator[DataPoint]:
        ...

    def __len__(self) -> int:
        return self.size()

    def iter_blocks(self, block_size: int = BLOCK_SIZE) -> Iterator[Block]:
        """Yield ``(contexts, items, ratings)`` blocks of up to block_size."""
        ctx = np.empty(block_size, np.int32)
        items = np.empty(block_size, np.int32)
        ratings = np.empty(block_size, np.float32)
        n = 0
        points = iter(self)
        try:
            for dp in points:
                ctx[n], items[n], ratings[n] = (dp.context_id, dp.item_id,
                                                dp.rating)
                n += 1
                if n == block_size:
                    yield ctx.copy(), items.copy(), ratings.copy()
                    n = 0
        finally:
            # release file cursors even when the consumer stops early
            close = getattr(points, "close", None)
            if close is not None:
                close()
        if n:
            yield ctx[:n].copy(), items[:n].copy(), ratings[:n].copy()


class ListDataset(Dataset):
    """Data points held as Python objects; only for small data sets."""

    def __init__(self, data_points=None):
        self.data_points = [] if data_points is None else list(data_points)

    def add_datapoint(self, data_point: DataPoint) -> bool:
        self.data_points.append(data_point)
        return True

    def size(self) -> int:
        return len(self.data_points)

    def __iter__(self) -> Iterator[DataPoint]:
        return iter(self.data_points)


class ArrayDataset(Dataset):
    """Data points stored column-wise in primitive numpy arrays."""

    def __init__(self, capacity: int = 1024):
        capacity = max(int(capacity), 1)
        self.contexts = np.empty(capacity, np.int32)
        self.items = np.empty(capacity, np.int32)
        self.ratings = np.empty(capacity, np.float32)
        self._size = 0

    @classmethod
    def from_arrays(cls, contexts, items, ratings) -> ArrayDataset:
        ds = cls(len(contexts))
        n = len(contexts)
        ds.contexts[:n] = contexts
        ds.items[:n] = items
        ds.ratings[:n] = ratings
        ds._size = n
        return ds

    def _grow(self):
        cap = 2 * len(self.contexts)
        self.contexts = np.resize(self.contexts, cap)
        self.items = np.resize(self.items, cap)
        self.ratings = np.resize(self.ratings, cap)

    def add_datapoint(self, data_point: DataPoint) -> bool:
        if self._size == len(self.contexts):
            self._grow()
        i = self._size
        self.contexts[i] = data_point.context_id
        self.items[i] = data_point.item_id
        self.ratings[i] = data_point.rating
        self._size += 1
        return True

    def extend(self, contexts, items, ratings):
        """Append whole columns at once."""
        n = len(contexts)
        while self._size + n > len(self.contexts):
            self._grow()
        end = self._size + n
        self.contexts[self._size:end] = contexts
        self.items[self._size:end] = items
        self.ratings[self._size:end] = ratings
        self._size = end

    def size(self) -> int:
        return self._size

    def __iter__(self) -> Iterator[DataPoint]:
        for i in range(self._size):
            yield DataPoint(int(self.contexts[i]), int(self.items[i]),
                            float(self.ratings[i]))

    def iter_blocks(self, block_size: int = BLOCK_SIZE) -> Iterator[Block]:
        for start in range(0, self._size, block_size):
            end = min(start + block_size, self._size)
            yield (self.contexts[start:end], self.items[start:end],
                   self.ratings[start:end])


class DiskDataset(Dataset):
    """Data points streamed line by line from a text file.

    Suited for data sets that do not fit into memory.  ``size`` is supplied
    by the caller (pre-counted); appending truncates the file on the first
    write and counts the lines written.  Call :meth:`close` (or use the
    dataset as a context manager) to flush appended lines.
    """

    def __init__(self, path: str, size: int = 0):
        self.path = path
        self._size = int(size)
        self._writer = None

    def add_datapoint(self, data_point: DataPoint) -> bool:
        if self._writer is None:
            self._writer = open(self.path, "w", encoding="utf-8")
            self._size = 0
        self._writer.write(f"{data_point}\n")
        self._size += 1
        return True

    def close(self):
        if self._writer is not None:
            self._writer.close()
            self._writer = None

    def __enter__(self) -> DiskDataset:
        return self

    def __exit__(self, *exc):
        self.close()

    def size(self) -> int:
        return self._size

    def __iter__(self) -> Iterator[DataPoint]:
        with open(self.path, encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    yield DataPoint.from_line(line)


# ── window generation ────────────────────────────────────────────────────────
#
# 48-bit linear congruential generator (multiplier 0x5DEECE66D, increment
# 0xB).  Given the same seed the window walk reproduces the reference pair
# sequence bit for bit, which downstream pair counts depend on.

_LCG_MULT = np.uint64(0x5DEECE66D)
_LCG_ADD = np.uint64(0xB)
_LCG_MASK = np.uint64((1 << 48) - 1)


def lcg_seed(seed: int) -> int:
    """Scramble a user seed into the generator's initial 48-bit state."""
    return (int(seed) ^ 0x5DEECE66D) & ((1 << 48) - 1)


@njit(cache=True)
def lcg_next_int(state, bound):
    """Uniform int in [0, bound). Returns (value, new_state)."""
    state = (state * _LCG_MULT + _LCG_ADD) & _LCG_MASK
    bits = np.int64(state >> np.uint64(17))
    if (bound & -bound) == bound:
        return (bound * bits) >> 31, state
    val = bits % bound
    # reject draws from the incomplete last bucket of the 31-bit range
    while bits - val + (bound - 1) > 2147483647:
        state = (state * _LCG_MULT + _LCG_ADD) & _LCG_MASK
        bits = np.int64(state >> np.uint64(17))
        val = bits % bound
    return val, state


@njit(cache=True)
def _window_fill(flat, offsets, window, cursor, out_ctx, out_item):
    """Resume the walk saved in ``cursor`` and emit up to len(out_ctx) pairs.

    cursor = [line, item, context, sampled_window, lcg_state].  Context ids
    are item ids + 1 (the paired context slot).  Returns the pair count.
    """
    n_lines = len(offsets) - 1
    line = cursor[0]
    item = cursor[1]
    context = cursor[2]
    sampled = cursor[3]
    state = np.uint64(cursor[4])
    n = 0
    while n < len(out_ctx) and line < n_lines:
        start = offsets[line]
        length = offsets[line + 1] - start
        out_ctx[n] = flat[start + context] + 1
        out_item[n] = flat[start + item]
        n += 1

        context += 1
        if context == item:
            context += 1
        if context - item > sampled or context == length:
            item += 1
            r, state = lcg_next_int(state, window)
            sampled = r + 1
            context = max(0, item - sampled)
        if item == length:
            line += 1
            if line < n_lines:
                item = 0
                context = 1
                r, state = lcg_next_int(state, window)
                sampled = r + 1

    cursor[0] = line
    cursor[1] = item
    cursor[2] = context
    cursor[3] = sampled
    cursor[4] = np.int64(state)
    return n


class WindowDataset(Dataset):
    """Co-occurrence pairs generated on the fly from rows of dense item ids.

    For every position of a row, a window size is drawn uniformly from
    ``[1, window]`` and the row's neighbours inside it (clamped at the row
    start, self excluded) become (context, item) pairs with rating 1.
    Nothing is materialised; the same seed always yields the same sequence.
    Rows with fewer than two ids produce no pairs and are dropped.
    """

    def __init__(self, rows, window: int, seed: int, verbose: int = 0):
        if window < 1:
            raise ConfigError(f"window must be >= 1, got {window}")
        kept = [np.asarray(r, dtype=np.int32) for r in rows if len(r) >= 2]
        self.offsets = np.zeros(len(kept) + 1, np.int64)
        for i, r in enumerate(kept):
            self.offsets[i + 1] = self.offsets[i] + len(r)
        self.flat = (np.concatenate(kept) if kept
                     else np.zeros(0, np.int32))
        self.window = int(window)
        self.seed = int(seed)
        self._size = self._compute_size()
        if verbose > 0:
            print(f"Number of positive data points: {self._size}",
                  file=sys.stderr)

    def _cursor(self) -> np.ndarray:
        r, state = lcg_next_int(np.uint64(lcg_seed(self.seed)),
                                np.int64(self.window))
        return np.array([0, 0, 1, r + 1, np.int64(state)], np.int64)

    def _compute_size(self) -> int:
        cursor = self._cursor()
        ctx = np.empty(BLOCK_SIZE, np.int32)
        items = np.empty(BLOCK_SIZE, np.int32)
        total = 0
        while True:
            n = _window_fill(self.flat, self.offsets, self.window, cursor,
                             ctx, items)
            if n == 0:
                return total
            total += n

    def add_datapoint(self, data_point: DataPoint) -> bool:
        raise UnsupportedOperationError(
            "window generated datasets are read-only")

    def size(self) -> int:
        return self._size

    def iter_blocks(self, block_size: int = BLOCK_SIZE) -> Iterator[Block]:
        cursor = self._cursor()
        ctx = np.empty(block_size, np.int32)
        items = np.empty(block_size, np.int32)
        while True:
            n = _window_fill(self.flat, self.offsets, self.window, cursor,
                             ctx, items)
            if n == 0:
                return
            yield ctx[:n].copy(), items[:n].copy(), np.ones(n, np.float32)

    def __iter__(self) -> Iterator[DataPoint]:
        for ctx, items, _ in self.iter_blocks(4096):
            for c, i in zip(ctx.tolist(), items.tolist()):
                yield DataPoint(c, i, 1.0)
