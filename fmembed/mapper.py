"""Remap sparse external ids onto a contiguous dense id space.

Layout: the k-th item gets dense id ``2k`` and its context role ``2k + 1``,
so every entity owns an item and a context embedding inside one flat
parameter array.  Side features follow from ``2 * n_items``.  A dense
representation lets the engine use arrays instead of dicts; the mappings
are kept so the remapping can be reversed on export.
"""

from __future__ import annotations

import sys

import numpy as np

from .dataset import ArrayDataset, Dataset
from .sparse import DataPoint, SparseVector


def _lookup(mapping: dict, ids: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Vectorised dict lookup. Returns (dense ids, found mask)."""
    ids = np.asarray(ids, dtype=np.int64)
    if not mapping:
        return np.zeros(len(ids), np.int64), np.zeros(len(ids), bool)
    keys = np.fromiter(mapping.keys(), np.int64, len(mapping))
    vals = np.fromiter(mapping.values(), np.int64, len(mapping))
    order = np.argsort(keys)
    keys, vals = keys[order], vals[order]
    pos = np.minimum(np.searchsorted(keys, ids), len(keys) - 1)
    found = keys[pos] == ids
    return vals[pos], found


def inverse(mapping: dict) -> dict:
    """Dense id -> original id."""
    return {dense: orig for orig, dense in mapping.items()}


class DenseMapper:

    def __init__(self, verbose: int = 0):
        self.contexts: set[int] = set()
        self.items: set[int] = set()
        self.features: set[int] = set()
        self.context_map: dict[int, int] = {}
        self.item_map: dict[int, int] = {}
        self.feature_map: dict[int, int] = {}
        self.num_features = 0
        self.verbose = verbose

    # ── learning the mapping ─────────────────────────────────────────────

    def learn(self, dataset: Dataset, features: dict | None = None) -> int:
        """Detect ids of a column-based data set and build the mapping."""
        self.detect(dataset)
        self.detect_features(features or {})
        return self._create_and_log()

    def learn_rows(self, rows, features: dict | None = None) -> int:
        """Detect ids of a row-based data set and build the mapping."""
        self.detect_rows(rows)
        self.detect_features(features or {})
        return self._create_and_log()

    def _create_and_log(self) -> int:
        n = self.create_map(self.contexts, self.items, self.features)
        if self.verbose > 0:
            print(f"{len(self.contexts)} contexts, {len(self.items)} items, "
                  f"{len(self.features)} features found (total: {n})",
                  file=sys.stderr)
        return n

    def detect(self, dataset: Dataset):
        self.contexts, self.items = set(), set()
        for ctx, items, _ in dataset.iter_blocks():
            self.contexts.update(np.unique(ctx).tolist())
            self.items.update(np.unique(items).tolist())

    def detect_rows(self, rows):
        """Every id of a row is both an item and a context."""
        ids: set[int] = set()
        for row in rows:
            ids.update(np.unique(np.asarray(row)).tolist())
        self.contexts, self.items = ids, set(ids)

    def detect_features(self, features: dict):
        self.features = set()
        for vec in features.values():
            self.features.update(vec.keys.tolist())

    def create_map(self, contexts, items, features) -> int:
        """Assign dense ids in ascending original-id order.

        Slots are allocated per item; a context id obtains its slot through
        the item with the same original id, so contexts that never occur as
        items stay unmapped.  Returns the total number of dense ids.
        """
        item_ids = sorted(items)
        self.item_map = {orig: 2 * k for k, orig in enumerate(item_ids)}
        self.context_map = {orig: 2 * k + 1 for k, orig in enumerate(item_ids)}
        base = 2 * len(item_ids)
        self.feature_map = {orig: base + k
                            for k, orig in enumerate(sorted(features))}
        self.num_features = base + len(self.feature_map)
        return self.num_features

    # ── applying the mapping ─────────────────────────────────────────────

    def _map_block(self, ctx, items):
        dense_ctx, ctx_found = _lookup(self.context_map, ctx)
        dense_items, item_found = _lookup(self.item_map, items)
        return dense_ctx, dense_items, ctx_found & item_found

    def map(self, dataset: Dataset) -> ArrayDataset:
        """Dense copy of a data set; entries with unknown ids are dropped."""
        mapped = ArrayDataset(dataset.size())
        for ctx, items, ratings in dataset.iter_blocks():
            dense_ctx, dense_items, keep = self._map_block(ctx, items)
            mapped.extend(dense_ctx[keep], dense_items[keep], ratings[keep])
        return mapped

    def map_rows(self, rows):
        """Rewrite row-based ids to dense item ids in place."""
        for row in rows:
            dense, found = _lookup(self.item_map, row)
            if not found.all():
                missing = np.asarray(row)[~found][0]
                raise KeyError(f"id {missing} has no dense mapping")
            if isinstance(row, np.ndarray):
                row[:] = dense
            else:
                row[:] = dense.tolist()
        if self.verbose > 0:
            print("Mapped row based data set to dense representation",
                  file=sys.stderr)

    def map_features(self, features: dict) -> list:
        """Side features indexed by dense item id, keys remapped.

        Items without a dense id are left out; ids without side features
        hold None.
        """
        mapped: list = [None] * self.num_features
        for item_id, vec in features.items():
            dense_item = self.item_map.get(item_id)
            if dense_item is None:
                continue
            out = SparseVector(len(vec))
            for slot, entry in enumerate(vec):
                out.set(slot, self.feature_map[entry.key], entry.value)
            mapped[dense_item] = out
        return mapped

    def write(self, dataset: Dataset, sink) -> int:
        """Stream the dense form of a data set as text lines to ``sink``."""
        n = 0
        for ctx, items, ratings in dataset.iter_blocks():
            dense_ctx, dense_items, keep = self._map_block(ctx, items)
            for c, i, r in zip(dense_ctx[keep].tolist(),
                               dense_items[keep].tolist(),
                               ratings[keep]):
                sink.write(f"{DataPoint(c, i, r)}\n")
                n += 1
        if self.verbose > 0:
            print(f"Wrote {n} dense mapped data points", file=sys.stderr)
        return n
