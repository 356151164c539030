"""Command-line driver.

::

    fmembed preprocess data.tsv --train train.tsv --test test.tsv --ratio 0.9
    fmembed train train.tsv -o out/ --testset test.tsv --dimensions 32
    fmembed similar out/item_feature_embeddings.tsv 17 42 -k 10

``train`` writes the dense form of a column-based train set next to it
(``<trainset>.mapped``) and six files into the output directory: biases
and the context, item, feature, context+feature and item+feature vectors.
"""

from __future__ import annotations

import argparse
import os
import sys
import time

import numpy as np

from . import io
from .dataset import ArrayDataset, DiskDataset, WindowDataset
from .errors import ConfigError
from .mapper import DenseMapper
from .model import DEFAULT_BINS, TABLE_SIZE, Factorization, Pairwise, Pointwise

MAPPED_SUFFIX = ".mapped"


def _log(verbose: int, msg: str):
    if verbose > 0:
        print(msg, file=sys.stderr)


def get_dataset(path: str, stream: bool, verbose: int = 0):
    """Disk-streamed or in-memory column-based data set."""
    n = io.number_of_lines(path)
    if stream:
        _log(verbose, f"Streaming {n} data points from {path}")
        return DiskDataset(path, n)
    _log(verbose, f"Reading {path}")
    return io.read_column_based(path, ArrayDataset(n), verbose)


def most_similar(vectors: dict, query: int, k: int = 10
                 ) -> list[tuple[int, float]]:
    """Top-k ids by cosine similarity to ``query`` (itself included)."""
    ids = np.fromiter(vectors.keys(), np.int64, len(vectors))
    mat = np.stack([vectors[i] for i in ids.tolist()]).astype(np.float64)
    q = np.asarray(vectors[query], dtype=np.float64)
    with np.errstate(invalid="ignore", divide="ignore"):
        sims = mat @ q / (np.linalg.norm(mat, axis=1) * np.linalg.norm(q))
    sims = np.nan_to_num(sims, nan=-np.inf)
    top = np.argsort(-sims, kind="stable")[:k]
    return [(int(ids[i]), float(sims[i])) for i in top]


# ── sub-commands ─────────────────────────────────────────────────────────────


def train(args) -> Factorization:
    v = args.verbose
    features = {}
    if args.features:
        _log(v, "Reading optional features...")
        features = io.read_features(args.features)
        _log(v, f"read features for {len(features)} items")

    _log(v, "Creating dense data set...")
    mapper = DenseMapper(verbose=v)
    if args.row_based:
        rows = io.read_row_based(args.trainset, v)
        mapper.learn_rows(rows, features)
        mapper.map_rows(rows)
        trainset = WindowDataset(rows, args.window, args.seed, verbose=v)
    else:
        raw = get_dataset(args.trainset, args.stream, v)
        mapper.learn(raw, features)
        mapped_path = args.trainset + MAPPED_SUFFIX
        with open(mapped_path, "w", encoding="utf-8") as f:
            mapper.write(raw, f)
        trainset = get_dataset(mapped_path, args.stream, v)
    dense_features = mapper.map_features(features)

    objective = (Pairwise() if args.pairwise
                 else Pointwise(regression=args.regression,
                                min_count=args.min_count))
    model = Factorization(
        dimensions=args.dimensions, learn_rate=args.learn_rate,
        lambda1=args.lambda1, lambda2=args.lambda2,
        iterations=args.iterations, negatives=args.negatives,
        loss=args.loss, objective=objective, table_size=args.table_size,
        alpha=args.alpha, bins=args.bins, threads=args.threads,
        seed=args.seed, verbose=v)
    t0 = time.time()
    model.train(trainset, dense_features, mapper.num_features)
    _log(v, f"Done ({time.time() - t0:.1f}s)")

    if args.testset:
        n = io.number_of_lines(args.testset)
        if n > 0:
            testset = mapper.map(DiskDataset(args.testset, n))
            pct = 100.0 * testset.size() / n
            _log(v, f"{testset.size()} out of {n} ({pct:.2f}%) data points "
                    f"predictable from test set")
            if testset.size():
                _log(v, f"test loss: {model.evaluate(testset, dense_features)}")
                _log(v, f"test accuracy: "
                        f"{model.accuracy(testset, dense_features)}")

    out = args.output
    os.makedirs(out, exist_ok=True)
    _log(v, "Writing biases to file...")
    io.write_biases(model.biases, os.path.join(out, "biases.tsv"))
    _log(v, "Writing latent features to file...")
    io.write_vectors(model.vectors(mapper.context_map),
                     os.path.join(out, "context_embeddings.tsv"))
    io.write_vectors(model.vectors(mapper.item_map),
                     os.path.join(out, "item_embeddings.tsv"))
    io.write_vectors(model.feature_vectors(mapper.feature_map, features),
                     os.path.join(out, "feature_embeddings.tsv"))
    io.write_vectors(model.summed_vectors(mapper.context_map,
                                          mapper.feature_map, features),
                     os.path.join(out, "context_feature_embeddings.tsv"))
    io.write_vectors(model.summed_vectors(mapper.item_map,
                                          mapper.feature_map, features),
                     os.path.join(out, "item_feature_embeddings.tsv"))
    return model


def preprocess(args):
    shuffled = args.dataset + "-shuffled"
    _log(args.verbose, "Shuffling dataset")
    io.shuffle(args.dataset, shuffled, args.buffer_size, args.seed)
    if args.ratio < 1.0:
        _log(args.verbose, "Splitting data set into train and test set...")
        n_train, n_test = io.split_to_file(shuffled, args.train, args.test,
                                           args.ratio, args.seed)
        _log(args.verbose, f"{n_train} train / {n_test} test lines")


def similar(args):
    vectors = io.read_vectors(args.vectors)
    for item in args.ids:
        if item not in vectors:
            print(f"{item}\tunknown", file=sys.stderr)
            continue
        hits = most_similar(vectors, item, args.k)
        print(f"{item}\t" + " ".join(f"{i} {s:.4f}" for i, s in hits))


# ── CLI ──────────────────────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="fmembed")
    sub = p.add_subparsers(dest="cmd")

    tr = sub.add_parser("train")
    tr.add_argument("trainset")
    tr.add_argument("-o", "--output", required=True)
    tr.add_argument("--testset")
    tr.add_argument("--features")
    tr.add_argument("--row-based",   action="store_true")
    tr.add_argument("--window",      type=int,   default=5)
    tr.add_argument("--stream",      action="store_true")
    tr.add_argument("--dimensions",  type=int,   default=10)
    tr.add_argument("--learn-rate",  type=float, default=0.01)
    tr.add_argument("--lambda1",     type=float, default=0.0)
    tr.add_argument("--lambda2",     type=float, default=0.0)
    tr.add_argument("--iterations",  type=int,   default=5)
    tr.add_argument("--negatives",   type=int,   default=5)
    tr.add_argument("--loss",                    default="logistic")
    tr.add_argument("--regression",  action="store_true")
    tr.add_argument("--pairwise",    action="store_true")
    tr.add_argument("--table-size",  type=int,   default=TABLE_SIZE)
    tr.add_argument("--min-count",   type=int,   default=100)
    tr.add_argument("--alpha",       type=float, default=0.75)
    tr.add_argument("--bins",        type=int,   nargs="+",
                    default=list(DEFAULT_BINS))
    tr.add_argument("--threads",     type=int,   default=0)
    tr.add_argument("--seed",        type=int,   default=0)
    tr.add_argument("--verbose",     type=int,   default=2)

    pp = sub.add_parser("preprocess")
    pp.add_argument("dataset")
    pp.add_argument("--train", required=True)
    pp.add_argument("--test", required=True)
    pp.add_argument("--ratio",       type=float, default=1.0)
    pp.add_argument("--buffer-size", type=int,   default=10_000_000)
    pp.add_argument("--seed",        type=int,   default=None)
    pp.add_argument("--verbose",     type=int,   default=2)

    sm = sub.add_parser("similar")
    sm.add_argument("vectors")
    sm.add_argument("ids", type=int, nargs="+")
    sm.add_argument("-k", type=int, default=10)
    return p


def main(argv=None):
    p = build_parser()
    args = p.parse_args(argv)
    try:
        if args.cmd == "train":
            train(args)
        elif args.cmd == "preprocess":
            preprocess(args)
        elif args.cmd == "similar":
            similar(args)
        else:
            p.print_help()
    except ConfigError as e:
        p.error(str(e))


if __name__ == "__main__":
    main()
