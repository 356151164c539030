"""Text formats at the boundary of the library.

- column based  ``context \\t item \\t rating``
- row based     ``id \\t id \\t id ...`` (one session / user per line)
- features      ``item \\t feature:value \\t feature:value ...``
- vectors       ``id v1 v2 ...`` (``%.4f``, ``#`` lines are comments)
- biases        one ``%.4f`` value per line, dense id order

Every function takes a path or an already open text file object.
"""

from __future__ import annotations

import sys
from contextlib import contextmanager
from typing import Iterator

import numpy as np

from .dataset import Dataset
from .sparse import DataPoint, SparseVector


@contextmanager
def _open(src, mode: str = "r"):
    if hasattr(src, "read") or hasattr(src, "write"):
        yield src
    else:
        with open(src, mode, encoding="utf-8") as f:
            yield f


def iter_lines(src) -> Iterator[list[str]]:
    """Yield tab-separated fields of every non-blank line."""
    with _open(src) as f:
        for line in f:
            line = line.rstrip("\r\n")
            if line.strip():
                yield line.split("\t")


def number_of_lines(src) -> int:
    with _open(src) as f:
        return sum(1 for line in f if line.strip())


def read_column_based(src, dataset: Dataset, verbose: int = 0) -> Dataset:
    """Append every ``context \\t item \\t rating`` line to ``dataset``."""
    n = 0
    with _open(src) as f:
        for line in f:
            if not line.strip():
                continue
            dataset.add_datapoint(DataPoint.from_line(line))
            n += 1
            if verbose > 0 and n % 10_000_000 == 0:
                print(f"\rReading line: {n}", end="", file=sys.stderr)
    if verbose > 0:
        print(f"\rread {n} datapoints", file=sys.stderr)
    return dataset


def read_row_based(src, verbose: int = 0) -> list[np.ndarray]:
    rows = [np.array(fields, dtype=np.int64) for fields in iter_lines(src)]
    if verbose > 0:
        print(f"read {len(rows)} rows", file=sys.stderr)
    return rows


def read_features(src) -> dict[int, SparseVector]:
    """Item id -> side features in insertion order."""
    features = {}
    for fields in iter_lines(src):
        vec = SparseVector(len(fields) - 1)
        for slot, entry in enumerate(fields[1:]):
            key, value = entry.split(":")
            vec.set(slot, int(key), float(value))
        features[int(fields[0])] = vec
    return features


def write_vectors(vectors: dict, dst):
    with _open(dst, "w") as f:
        for key, vec in vectors.items():
            values = " ".join(f"{v:.4f}" for v in np.asarray(vec).tolist())
            f.write(f"{key} {values}\n")


def write_biases(biases: np.ndarray, dst):
    with _open(dst, "w") as f:
        for b in np.asarray(biases).tolist():
            f.write(f"{b:.4f}\n")


def read_vectors(src) -> dict[int, np.ndarray]:
    vectors = {}
    with _open(src) as f:
        for line in f:
            if line.startswith("#") or not line.strip():
                continue
            fields = line.split()
            vectors[int(fields[0])] = np.array(fields[1:], dtype=np.float32)
    return vectors


def shuffle(src, dst, buffer_size: int = 10_000_000, seed: int | None = None):
    """Shuffle lines within consecutive chunks of ``buffer_size`` lines.

    Only a chunk is held in memory, so files larger than RAM are mixed
    locally rather than globally.
    """
    rng = np.random.RandomState(seed)

    def flush(lines, out):
        for i in rng.permutation(len(lines)):
            out.write(lines[i])

    with _open(src) as f, _open(dst, "w") as out:
        chunk = []
        for line in f:
            chunk.append(line if line.endswith("\n") else line + "\n")
            if len(chunk) >= buffer_size:
                flush(chunk, out)
                chunk = []
        flush(chunk, out)


def split_to_file(src, first, second, ratio: float,
                  seed: int | None = None) -> tuple[int, int]:
    """Send each line to ``first`` with probability ``ratio``, else ``second``.

    Returns the line counts written to each.
    """
    rng = np.random.RandomState(seed)
    counts = [0, 0]
    with _open(src) as f, _open(first, "w") as a, _open(second, "w") as b:
        for line in f:
            if not line.endswith("\n"):
                line += "\n"
            if rng.random_sample() < ratio:
                a.write(line)
                counts[0] += 1
            else:
                b.write(line)
                counts[1] += 1
    return counts[0], counts[1]
