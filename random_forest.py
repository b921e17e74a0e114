from __future__ import annotations

import argparse
import itertools
import logging
import math
import operator
import os
import shlex
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable

import numpy as np

from class_predict_error import ClassPredictError
from dataset import Dataset
from decision_tree import DecisionTree
from exceptions import DimensionMismatchError, ForestConfigError, ModelFormatError
from feature_selectors import FeatureSelectorFactory, NormalFactoryStream
from persistence import read_archive, write_archive

logger = logging.getLogger(__name__)

ProgressSink = Callable[[int, int], None]

_INT_FIELDS = ("num_trees", "num_features", "seed", "max_depth", "min_split", "sample_size", "n_jobs")
_OPTIONAL_FIELDS = ("num_features", "max_depth", "sample_size", "n_jobs")

# Below this many rows the trees vote on the calling thread.
PARALLEL_VOTE_ROWS = 1024


class Method(str, Enum):
    BAGGING = "BAGGING"  # every tree votes with weight 1
    WEIGHTED = "WEIGHTED"  # trees vote with their out-of-bag accuracy


@dataclass(frozen=True)
class RandomForestParms:
    num_trees: int = 50
    num_features: int | None = None  # None: ceil(sqrt(eligible features)) per tree
    method: Method = Method.BAGGING
    seed: int = 142857
    max_depth: int | None = None
    min_split: int = 2
    sample_size: int | None = None  # None: one row drawn per training row
    min_gain: float = 1e-12
    n_jobs: int | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.method, Method):
            try:
                object.__setattr__(self, "method", Method(str(self.method).upper()))
            except ValueError as e:
                raise ForestConfigError(f"unknown method: {self.method}") from e
        for name in _INT_FIELDS:
            value = getattr(self, name)
            if value is None and name in _OPTIONAL_FIELDS:
                continue
            try:
                object.__setattr__(self, name, operator.index(value))
            except TypeError as e:
                raise ForestConfigError(f"{name} must be an integer, got {value!r}") from e
        try:
            object.__setattr__(self, "min_gain", float(self.min_gain))
        except (TypeError, ValueError) as e:
            raise ForestConfigError(f"min_gain must be a number, got {self.min_gain!r}") from e
        if self.num_trees <= 0:
            raise ForestConfigError("num_trees must be positive")
        if self.num_features is not None and self.num_features <= 0:
            raise ForestConfigError("num_features must be positive")
        if self.seed < 0:
            raise ForestConfigError("seed must be non-negative")
        if self.max_depth is not None and self.max_depth <= 0:
            raise ForestConfigError("max_depth must be positive")
        if self.min_split < 2:
            raise ForestConfigError("min_split must be at least 2")
        if self.sample_size is not None and self.sample_size <= 0:
            raise ForestConfigError("sample_size must be positive")
        if self.min_gain < 0.0:
            raise ForestConfigError("min_gain must be >= 0")
        if self.n_jobs is not None and self.n_jobs <= 0:
            raise ForestConfigError("n_jobs must be positive")

    @classmethod
    def for_dataset(cls, dataset: Dataset, **overrides: Any) -> RandomForestParms:
        values: dict[str, Any] = {
            "num_features": max(1, math.ceil(math.sqrt(max(dataset.num_features, 1)))),
            "sample_size": dataset.rows if dataset.rows > 0 else None,
        }
        values.update(overrides)
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        values = asdict(self)
        values["method"] = self.method.value
        return values

    @classmethod
    def from_dict(cls, values: dict[str, Any]) -> RandomForestParms:
        return cls(**values)

    @classmethod
    def from_file(cls, path: str | Path) -> RandomForestParms:
        """Read parameters written as command-line options, one or more per line."""
        tokens: list[str] = []
        with open(path, encoding="utf-8") as handle:
            for line in handle:
                line = line.split("#", 1)[0].strip()
                if line:
                    tokens.extend(shlex.split(line))

        parser = _ParmsParser(prog=str(path), add_help=False)
        parser.add_argument("--num-trees", "--numTrees", dest="num_trees", type=int)
        parser.add_argument("--num-features", "--numFeatures", dest="num_features", type=int)
        parser.add_argument("--method", type=str.upper, choices=[m.value for m in Method])
        parser.add_argument("--seed", type=int)
        parser.add_argument("--max-depth", "--maxDepth", dest="max_depth", type=int)
        parser.add_argument("--min-split", "--minSplit", dest="min_split", type=int)
        parser.add_argument("--sample-size", "--sampleSize", dest="sample_size", type=int)
        parser.add_argument("--min-gain", "--minGain", dest="min_gain", type=float)
        parser.add_argument("--n-jobs", "--jobs", dest="n_jobs", type=int)
        args = parser.parse_args(tokens)

        values = {k: v for k, v in vars(args).items() if v is not None}
        logger.info("Forest parameters read from %s: %s", path, values)
        return cls(**values)


class _ParmsParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        raise ForestConfigError(f"{self.prog}: {message}")


def get_useful_features(dataset: Dataset) -> np.ndarray:
    """Indices of the columns holding at least two distinct finite values."""
    useful = []
    for feature_idx in range(dataset.num_features):
        column = dataset.features[:, feature_idx]
        finite = column[np.isfinite(column)]
        if finite.size > 1 and finite.min() < finite.max():
            useful.append(feature_idx)
    return np.asarray(useful, dtype=np.int32)


def _grow_tree(
    dataset: Dataset,
    parms: RandomForestParms,
    factory: FeatureSelectorFactory,
    tree_idx: int,
) -> tuple[DecisionTree, float]:
    # The trailing 1 keeps the bootstrap stream apart from selector seeds (seed, tree_idx).
    rng = np.random.default_rng([parms.seed, tree_idx, 1])
    sample_size = parms.sample_size or dataset.rows
    rows = rng.integers(0, dataset.rows, size=sample_size, dtype=np.int64)
    tree = DecisionTree(dataset, parms, factory, rows)

    weight = 1.0
    if parms.method is Method.WEIGHTED:
        oob = tree.oob_rows()
        if oob.size > 0:
            guesses = ClassPredictError.compute_best_rows(tree.predict(dataset.features[oob]))
            weight = float(np.mean(guesses == dataset.label_indices[oob]))
    logger.debug("Tree %d: %d nodes, weight %.4f.", tree_idx, tree.node_count, weight)
    return tree, weight


class RandomForest:
    """Bagged ensemble of DecisionTrees built in parallel from one shared Dataset."""

    get_useful_features = staticmethod(get_useful_features)

    def __init__(
        self,
        dataset: Dataset,
        parms: RandomForestParms | None = None,
        factories: Iterable[FeatureSelectorFactory] | None = None,
        progress: ProgressSink | None = None,
    ) -> None:
        if parms is None:
            parms = RandomForestParms.for_dataset(dataset)
        self._validate(dataset, parms)

        if factories is None:
            factories = NormalFactoryStream(parms.seed, get_useful_features(dataset), parms.num_trees)
        factory_list = list(itertools.islice(iter(factories), parms.num_trees))
        if len(factory_list) < parms.num_trees:
            raise ForestConfigError(
                f"{parms.num_trees} trees requested but only {len(factory_list)} selector factories supplied"
            )

        self.parms = parms
        self.num_features = dataset.num_features
        self.num_classes = dataset.num_classes
        self.label_names = dataset.label_names
        self.feature_names = dataset.feature_names
        self.trees, self.weights = self._build(dataset, factory_list, progress)

    @staticmethod
    def _validate(dataset: Dataset, parms: RandomForestParms) -> None:
        if dataset.rows == 0:
            raise ForestConfigError("cannot build a forest from an empty dataset")
        if not dataset.is_classification:
            raise ForestConfigError("random forests require a one-hot class encoding")
        if parms.num_features is not None and parms.num_features > dataset.num_features:
            raise ForestConfigError(
                f"num_features {parms.num_features} exceeds the {dataset.num_features} available columns"
            )

    def _pool_width(self) -> int:
        return self.parms.n_jobs or os.cpu_count() or 1

    def _build(
        self,
        dataset: Dataset,
        factories: list[FeatureSelectorFactory],
        progress: ProgressSink | None,
    ) -> tuple[list[DecisionTree], np.ndarray]:
        total = len(factories)
        width = min(self._pool_width(), total)
        logger.info(
            "Building %d trees from %d rows and %d features with %d workers.",
            total,
            dataset.rows,
            dataset.num_features,
            width,
        )
        start = time.perf_counter()

        with ThreadPoolExecutor(max_workers=width) as executor:
            futures = [
                executor.submit(_grow_tree, dataset, self.parms, factory, tree_idx)
                for tree_idx, factory in enumerate(factories)
            ]
            try:
                for completed, future in enumerate(as_completed(futures), start=1):
                    future.result()
                    if progress is not None:
                        progress(completed, total)
            except BaseException:
                for future in futures:
                    future.cancel()
                raise
            # Submission order, not completion order.
            results = [future.result() for future in futures]

        trees = [tree for tree, _weight in results]
        weights = np.asarray([weight for _tree, weight in results], dtype=np.float64)
        if weights.sum() <= 0.0:
            weights = np.ones_like(weights)
        weights.setflags(write=False)

        logger.info(
            "Forest of %d trees built in %.3f seconds (%d nodes).",
            total,
            time.perf_counter() - start,
            sum(tree.node_count for tree in trees),
        )
        return trees, weights

    def __len__(self) -> int:
        return len(self.trees)

    def _check_width(self, X: np.ndarray) -> np.ndarray:
        X = np.asarray(X, dtype=np.float64)
        if X.ndim != 2 or X.shape[1] != self.num_features:
            raise DimensionMismatchError(
                f"expected rows of width {self.num_features}, got shape {X.shape}"
            )
        return X

    def _tree_votes(self, X: np.ndarray) -> list[np.ndarray]:
        # Each tree votes into its own buffer; the caller reduces them in tree order.
        width = min(self._pool_width(), len(self.trees))
        if width <= 1 or X.shape[0] < PARALLEL_VOTE_ROWS:
            return [tree.predict(X) for tree in self.trees]
        with ThreadPoolExecutor(max_workers=width) as executor:
            return list(executor.map(lambda tree: tree.predict(X), self.trees))

    def vote(self, X: np.ndarray, accumulator: np.ndarray) -> None:
        """Add the weighted, unnormalized forest vote for each row into ``accumulator``."""
        X = self._check_width(X)
        expected = (X.shape[0], self.num_classes)
        if accumulator.shape != expected:
            raise DimensionMismatchError(
                f"accumulator shape {accumulator.shape} does not match {expected}"
            )
        for weight, votes in zip(self.weights, self._tree_votes(X)):
            accumulator += weight * votes

    def predict(self, X: np.ndarray) -> np.ndarray:
        X = self._check_width(X)
        totals = np.zeros((X.shape[0], self.num_classes), dtype=np.float64)
        self.vote(X, totals)
        sums = totals.sum(axis=1, keepdims=True)
        return np.divide(totals, sums, out=np.zeros_like(totals), where=sums > 0.0)

    def compute_impact(self) -> np.ndarray:
        impact = np.zeros(self.num_features, dtype=np.float64)
        for weight, tree in zip(self.weights, self.trees):
            impact += weight * tree.compute_impact()
        return impact / float(self.weights.sum())

    def get_accuracy(self, dataset: Dataset) -> float:
        tracker = ClassPredictError(self.num_classes)
        tracker.accumulate(dataset.labels, self.predict(dataset.features))
        return tracker.accuracy

    def oob_accuracy(self, dataset: Dataset) -> float:
        """Accuracy on the training rows, each judged only by trees that never saw it."""
        X = self._check_width(dataset.features)
        for tree in self.trees:
            if tree.training_rows != dataset.rows:
                raise DimensionMismatchError("out-of-bag accuracy needs the training dataset")

        votes = np.zeros((dataset.rows, self.num_classes), dtype=np.float64)
        for weight, tree in zip(self.weights, self.trees):
            oob = tree.oob_rows()
            if oob.size > 0:
                votes[oob] += weight * tree.predict(X[oob])

        covered = votes.sum(axis=1) > 0.0
        if not np.any(covered):
            return float("nan")
        tracker = ClassPredictError(self.num_classes)
        tracker.accumulate(dataset.labels[covered], votes[covered])
        return tracker.accuracy

    def save(self, path: str | Path) -> None:
        header = {
            "parms": self.parms.to_dict(),
            "num_trees": len(self.trees),
            "num_features": self.num_features,
            "num_classes": self.num_classes,
            "feature_names": list(self.feature_names) if self.feature_names else None,
            "label_names": list(self.label_names) if self.label_names else None,
        }
        arrays = {"weights": np.array(self.weights)}
        for tree_idx, tree in enumerate(self.trees):
            for name, array in tree.to_arrays().items():
                arrays[f"tree{tree_idx}.{name}"] = array
        write_archive(path, "forest", header, arrays)
        logger.info("Forest of %d trees saved to %s.", len(self.trees), path)

    @classmethod
    def load(cls, path: str | Path) -> RandomForest:
        header, arrays = read_archive(path, "forest")
        try:
            parms = RandomForestParms.from_dict(header["parms"])
            num_trees = int(header["num_trees"])
            num_features = int(header["num_features"])
            num_classes = int(header["num_classes"])
            weights = np.asarray(arrays["weights"], dtype=np.float64)
        except (KeyError, TypeError, ValueError) as e:
            raise ModelFormatError(f"{path} has a malformed forest header: {e}") from e
        if weights.shape != (num_trees,):
            raise ModelFormatError(f"{path} has {weights.size} weights for {num_trees} trees")

        trees = []
        for tree_idx in range(num_trees):
            prefix = f"tree{tree_idx}."
            tree_arrays = {
                name[len(prefix):]: array for name, array in arrays.items() if name.startswith(prefix)
            }
            tree = DecisionTree.from_arrays(tree_arrays)
            if tree.num_features != num_features or tree.num_classes != num_classes:
                raise ModelFormatError(f"tree {tree_idx} in {path} has the wrong dimensions")
            trees.append(tree)

        forest = cls.__new__(cls)
        forest.parms = parms
        forest.num_features = num_features
        forest.num_classes = num_classes
        forest.feature_names = tuple(header["feature_names"]) if header.get("feature_names") else None
        forest.label_names = tuple(header["label_names"]) if header.get("label_names") else None
        forest.trees = trees
        weights.setflags(write=False)
        forest.weights = weights
        logger.info("Forest of %d trees loaded from %s.", num_trees, path)
        return forest
