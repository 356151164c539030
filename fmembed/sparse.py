"""Sparse feature vectors and single training examples."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, NamedTuple

import numpy as np


class SparseEntry(NamedTuple):
    key: int
    value: float


class SparseVector:
    """Fixed-capacity, insertion-ordered list of (key, value) entries.

    Slots are caller-validated: writing past the capacity is a programming
    error and surfaces as numpy's IndexError.
    """

    __slots__ = ("keys", "values")

    def __init__(self, capacity: int = 0):
        self.keys = np.zeros(capacity, np.int32)
        self.values = np.zeros(capacity, np.float32)

    @classmethod
    def from_entries(cls, keys, values) -> SparseVector:
        vec = cls(0)
        vec.keys = np.asarray(keys, dtype=np.int32).copy()
        vec.values = np.asarray(values, dtype=np.float32).copy()
        return vec

    def set(self, slot: int, key: int, value: float):
        self.keys[slot] = key
        self.values[slot] = value

    def get(self, slot: int) -> SparseEntry:
        return SparseEntry(int(self.keys[slot]), float(self.values[slot]))

    def size(self) -> int:
        return len(self.keys)

    def __len__(self) -> int:
        return len(self.keys)

    def __iter__(self) -> Iterator[SparseEntry]:
        for slot in range(len(self.keys)):
            yield self.get(slot)

    def __eq__(self, other) -> bool:
        if not isinstance(other, SparseVector):
            return NotImplemented
        return (np.array_equal(self.keys, other.keys)
                and np.array_equal(self.values, other.values))

    def __repr__(self) -> str:
        return " ".join(f"{e.key}:{e.value}" for e in self)


@dataclass
class DataPoint:
    """One (context, item, rating) interaction; rating is a raw weight."""

    context_id: int = 0
    item_id: int = 0
    rating: float = 0.0

    @classmethod
    def from_line(cls, line: str) -> DataPoint:
        """Parse ``context \\t item \\t rating``."""
        ctx, item, rating = line.rstrip("\r\n").split("\t")[:3]
        return cls(int(ctx), int(item), float(rating))

    def to_sparse_vector(self, features: SparseVector | None = None
                         ) -> SparseVector:
        """Context and item as unit features, then the item's side features."""
        n_extra = 0 if features is None else len(features)
        vec = SparseVector(2 + n_extra)
        vec.set(0, self.context_id, 1.0)
        vec.set(1, self.item_id, 1.0)
        if n_extra:
            vec.keys[2:] = features.keys
            vec.values[2:] = features.values
        return vec

    def __str__(self) -> str:
        rating = np.format_float_positional(np.float32(self.rating), trim="0")
        return f"{self.context_id}\t{self.item_id}\t{rating}"


def pack_features(features, num_features: int
                  ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Flatten per-id side features into CSR arrays for the kernels.

    ``features`` is indexable by dense id (entries may be None) or None.
    Returns (ptr, keys, values) with ``ptr`` of length num_features + 1.
    """
    ptr = np.zeros(num_features + 1, np.int64)
    if features is None:
        return ptr, np.zeros(0, np.int32), np.zeros(0, np.float32)
    for i in range(min(num_features, len(features))):
        vec = features[i]
        ptr[i + 1] = 0 if vec is None else len(vec)
    np.cumsum(ptr, out=ptr)
    keys = np.empty(ptr[-1], np.int32)
    values = np.empty(ptr[-1], np.float32)
    for i in range(min(num_features, len(features))):
        vec = features[i]
        if vec is not None and len(vec):
            keys[ptr[i]:ptr[i + 1]] = vec.keys
            values[ptr[i]:ptr[i + 1]] = vec.values
    return ptr, keys, values
