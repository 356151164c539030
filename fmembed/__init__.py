"""fmembed: factorization-machine embeddings from co-occurrence data.

Items, contexts and optional side features are remapped to dense ids and
embedded by a factorization machine trained with Hogwild SGD, AdaGrad rates
and negative sampling::

    mapper = DenseMapper()
    mapper.learn(dataset, features)
    model = Factorization(dimensions=32, iterations=5)
    model.train(mapper.map(dataset), mapper.map_features(features),
                mapper.num_features)

Requires only **numpy** and **numba**.
"""

from .dataset import (ArrayDataset, Dataset, DiskDataset, ListDataset,
                      WindowDataset)
from .errors import BinRangeError, ConfigError, UnsupportedOperationError
from .loss import Loss, get_loss
from .mapper import DenseMapper
from .metric import Accuracy, LossAverager
from .model import Factorization, Pairwise, Pointwise, build_sampling_table
from .sparse import DataPoint, SparseEntry, SparseVector

__version__ = "0.1.0"

__all__ = [
    "Accuracy", "ArrayDataset", "BinRangeError", "ConfigError", "DataPoint",
    "Dataset", "DenseMapper", "DiskDataset", "Factorization", "ListDataset",
    "Loss", "LossAverager", "Pairwise", "Pointwise", "SparseEntry",
    "SparseVector", "UnsupportedOperationError", "WindowDataset",
    "build_sampling_table", "get_loss",
]
