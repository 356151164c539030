"""SparseVector / DataPoint semantics and the CSR packing used by kernels."""

import numpy as np
import pytest

from fmembed.sparse import DataPoint, SparseEntry, SparseVector, pack_features


class TestSparseVector:

    def test_set_get_in_slot_order(self):
        vec = SparseVector(3)
        vec.set(0, 7, 1.0)
        vec.set(1, 3, 0.5)
        vec.set(2, 9, 2.0)
        assert vec.get(1) == SparseEntry(3, 0.5)
        assert list(vec) == [(7, 1.0), (3, 0.5), (9, 2.0)]
        assert len(vec) == vec.size() == 3

    def test_positional_equality(self):
        a = SparseVector.from_entries([1, 2], [1.0, 0.5])
        b = SparseVector.from_entries([1, 2], [1.0, 0.5])
        c = SparseVector.from_entries([2, 1], [0.5, 1.0])
        assert a == b
        assert a != c

    def test_write_past_capacity_fails(self):
        vec = SparseVector(1)
        with pytest.raises(IndexError):
            vec.set(1, 0, 1.0)

    def test_repr(self):
        assert repr(SparseVector.from_entries([4], [0.5])) == "4:0.5"


class TestDataPoint:

    def test_parse_and_format(self):
        dp = DataPoint.from_line("12\t34\t3.0\n")
        assert dp == DataPoint(12, 34, 3.0)
        assert str(dp) == "12\t34\t3.0"
        assert str(DataPoint(1, 2, 0.1)) == "1\t2\t0.1"

    def test_to_sparse_vector(self):
        features = SparseVector.from_entries([10, 11], [0.5, 0.25])
        vec = DataPoint(3, 4, 1.0).to_sparse_vector(features)
        assert list(vec) == [(3, 1.0), (4, 1.0), (10, 0.5), (11, 0.25)]
        assert list(DataPoint(3, 4, 1.0).to_sparse_vector()) == [(3, 1.0),
                                                                 (4, 1.0)]


class TestPackFeatures:

    def test_csr_layout(self):
        features = [SparseVector.from_entries([5, 6], [1.0, 2.0]), None,
                    SparseVector.from_entries([7], [0.5])]
        ptr, keys, values = pack_features(features, 4)
        assert ptr.tolist() == [0, 2, 2, 3, 3]
        assert keys.tolist() == [5, 6, 7]
        assert values.tolist() == [1.0, 2.0, 0.5]

    def test_no_features(self):
        ptr, keys, values = pack_features(None, 3)
        assert ptr.tolist() == [0, 0, 0, 0]
        assert len(keys) == len(values) == 0
        assert ptr.dtype == np.int64
