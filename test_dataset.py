"""Dataset family: in-memory, columnar, disk-streamed and window-generated."""

import os
import tempfile

import numpy as np
import pytest

from fmembed.dataset import (ArrayDataset, DiskDataset, ListDataset,
                             WindowDataset)
from fmembed.errors import ConfigError, UnsupportedOperationError
from fmembed.sparse import DataPoint

POINTS = [DataPoint(1, 2, 1.0), DataPoint(3, 4, 2.5), DataPoint(5, 6, 0.5)]

ROWS = [[0, 2, 4, 6], [8, 10, 12], [0, 2]]
EXPECTED_PAIRS = [(3, 0), (5, 0), (1, 2), (5, 2), (3, 4), (7, 4), (5, 6),
                  (11, 8), (9, 10), (13, 10), (9, 12), (11, 12),
                  (3, 0), (1, 2)]


@pytest.fixture
def disk_path():
    fd, path = tempfile.mkstemp(suffix=".tsv", prefix="fm_disk_")
    os.close(fd)
    yield path
    os.unlink(path)


class TestInMemory:

    @pytest.mark.parametrize("cls", [ListDataset, ArrayDataset])
    def test_add_and_iterate_twice(self, cls):
        ds = cls()
        for dp in POINTS:
            assert ds.add_datapoint(dp)
        assert ds.size() == len(ds) == 3
        assert list(ds) == POINTS
        assert list(ds) == POINTS

    def test_array_dataset_grows(self):
        ds = ArrayDataset(1)
        for dp in POINTS * 5:
            ds.add_datapoint(dp)
        assert ds.size() == 15
        assert list(ds)[-1] == POINTS[-1]

    def test_blocks_cover_everything(self):
        ds = ArrayDataset.from_arrays([1, 3, 5], [2, 4, 6], [1.0, 2.5, 0.5])
        blocks = list(ds.iter_blocks(2))
        assert [len(b[0]) for b in blocks] == [2, 1]
        ctx = np.concatenate([b[0] for b in blocks])
        assert ctx.tolist() == [1, 3, 5]

    def test_generic_blocks(self):
        blocks = list(ListDataset(POINTS).iter_blocks(2))
        assert blocks[0][1].tolist() == [2, 4]
        assert blocks[1][2].tolist() == [0.5]


class TestDiskDataset:

    def test_append_then_reiterate(self, disk_path):
        with DiskDataset(disk_path) as ds:
            for dp in POINTS:
                ds.add_datapoint(dp)
        assert ds.size() == 3
        assert list(ds) == POINTS
        assert list(ds) == POINTS

    def test_external_size(self, disk_path):
        with open(disk_path, "w") as f:
            f.write("1\t2\t1.0\n3\t4\t2.5\n")
        ds = DiskDataset(disk_path, 2)
        assert len(ds) == 2
        assert [dp.item_id for dp in ds] == [2, 4]

    def test_missing_file(self):
        ds = DiskDataset("/nonexistent/fm_data.tsv", 1)
        with pytest.raises(OSError):
            list(ds)


class TestWindowDataset:

    def test_reference_sequence(self):
        ds = WindowDataset(ROWS, window=2, seed=1)
        assert ds.size() == 14
        pairs = [(dp.context_id, dp.item_id) for dp in ds]
        assert pairs == EXPECTED_PAIRS
        assert all(dp.rating == 1.0 for dp in ds)

    def test_deterministic_and_restartable(self):
        ds = WindowDataset(ROWS, window=3, seed=7)
        first = [(dp.context_id, dp.item_id) for dp in ds]
        again = [(dp.context_id, dp.item_id) for dp in ds]
        other = WindowDataset(ROWS, window=3, seed=7)
        assert first == again == [(dp.context_id, dp.item_id) for dp in other]
        assert len(first) == ds.size()

    def test_blocks_resume_walk(self):
        ds = WindowDataset(ROWS, window=2, seed=1)
        ctx = np.concatenate([b[0] for b in ds.iter_blocks(3)])
        items = np.concatenate([b[1] for b in ds.iter_blocks(3)])
        assert list(zip(ctx.tolist(), items.tolist())) == EXPECTED_PAIRS

    def test_context_is_neighbour_plus_one(self):
        ds = WindowDataset([[0, 2, 4, 6, 8, 10]], window=5, seed=3)
        for dp in ds:
            assert dp.context_id % 2 == 1
            assert dp.context_id - 1 != dp.item_id

    def test_short_rows_dropped(self):
        ds = WindowDataset(ROWS + [[14]], window=2, seed=1)
        assert ds.size() == 14

    def test_read_only(self):
        ds = WindowDataset(ROWS, window=2, seed=1)
        with pytest.raises(UnsupportedOperationError):
            ds.add_datapoint(DataPoint(1, 0, 1.0))

    def test_invalid_window(self):
        with pytest.raises(ConfigError):
            WindowDataset(ROWS, window=0, seed=1)
