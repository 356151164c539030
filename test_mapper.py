"""Dense id remapping: parity layout, dropping, rows, features, round trip."""

import io

import numpy as np
import pytest

from fmembed.dataset import ListDataset
from fmembed.mapper import DenseMapper, inverse
from fmembed.sparse import DataPoint, SparseVector


@pytest.fixture
def dataset():
    return ListDataset([DataPoint(2, 3, 1.0), DataPoint(3, 2, 2.0),
                        DataPoint(1, 2, 1.0), DataPoint(3, 5, 4.0)])


class TestCreateMap:

    def test_parity_layout(self, dataset):
        mapper = DenseMapper()
        n = mapper.learn(dataset)
        assert mapper.item_map == {2: 0, 3: 2, 5: 4}
        assert mapper.context_map == {2: 1, 3: 3, 5: 5}
        assert n == mapper.num_features == 6

    def test_features_follow_items(self, dataset):
        features = {3: SparseVector.from_entries([200, 100], [0.5, 1.0])}
        mapper = DenseMapper()
        assert mapper.learn(dataset, features) == 8
        assert mapper.feature_map == {100: 6, 200: 7}

    def test_context_only_ids_unmapped(self, dataset):
        mapper = DenseMapper()
        mapper.learn(dataset)
        assert 1 not in mapper.context_map


class TestMapping:

    def test_map_drops_unknown(self, dataset):
        mapper = DenseMapper()
        mapper.learn(dataset)
        mapped = mapper.map(dataset)
        assert [(dp.context_id, dp.item_id, dp.rating) for dp in mapped] == [
            (1, 2, 1.0), (3, 0, 2.0), (3, 4, 4.0)]

    def test_round_trip(self, dataset):
        mapper = DenseMapper()
        mapper.learn(dataset)
        inv_ctx = inverse(mapper.context_map)
        inv_item = inverse(mapper.item_map)
        back = [(inv_ctx[dp.context_id], inv_item[dp.item_id])
                for dp in mapper.map(dataset)]
        assert back == [(2, 3), (3, 2), (3, 5)]

    def test_map_features(self, dataset):
        features = {3: SparseVector.from_entries([200, 100], [0.5, 1.0]),
                    99: SparseVector.from_entries([100], [1.0])}
        mapper = DenseMapper()
        mapper.learn(dataset, features)
        dense = mapper.map_features(features)
        assert len(dense) == mapper.num_features
        assert list(dense[2]) == [(7, 0.5), (6, 1.0)]
        assert dense[0] is None

    def test_write(self, dataset):
        mapper = DenseMapper()
        mapper.learn(dataset)
        sink = io.StringIO()
        assert mapper.write(dataset, sink) == 3
        assert sink.getvalue().splitlines()[0] == "1\t2\t1.0"


class TestRows:

    def test_rows_in_place(self):
        rows = [np.array([10, 20]), [20, 30, 10]]
        mapper = DenseMapper()
        assert mapper.learn_rows(rows) == 6
        mapper.map_rows(rows)
        assert rows[0].tolist() == [0, 2]
        assert rows[1] == [2, 4, 0]

    def test_unknown_row_id(self):
        mapper = DenseMapper()
        mapper.learn_rows([[10, 20]])
        with pytest.raises(KeyError):
            mapper.map_rows([[10, 99]])
