from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np

from dataset import Dataset
from exceptions import DimensionMismatchError, ForestConfigError, ModelFormatError
from feature_selectors import FeatureSelectorFactory
from persistence import read_archive, write_archive
from split_search import GiniSplitSearch

if TYPE_CHECKING:
    from random_forest import RandomForestParms

logger = logging.getLogger(__name__)

ARENA_FIELDS = ("feature", "threshold", "left", "right", "value", "gain", "n_rows")


@dataclass
class NodeArena:
    """Flat node table; node 0 is the root and a feature of -1 marks a leaf."""

    feature: np.ndarray
    threshold: np.ndarray
    left: np.ndarray
    right: np.ndarray
    value: np.ndarray
    gain: np.ndarray
    n_rows: np.ndarray

    def __len__(self) -> int:
        return int(self.feature.size)

    @property
    def is_leaf(self) -> np.ndarray:
        return self.feature < 0


@dataclass
class _ArenaBuilder:
    num_classes: int
    feature: list[int] = field(default_factory=list)
    threshold: list[float] = field(default_factory=list)
    left: list[int] = field(default_factory=list)
    right: list[int] = field(default_factory=list)
    value: list[np.ndarray] = field(default_factory=list)
    gain: list[float] = field(default_factory=list)
    n_rows: list[int] = field(default_factory=list)

    def add(self) -> int:
        self.feature.append(-1)
        self.threshold.append(0.0)
        self.left.append(-1)
        self.right.append(-1)
        self.value.append(np.zeros(self.num_classes, dtype=np.float64))
        self.gain.append(0.0)
        self.n_rows.append(0)
        return len(self.feature) - 1

    def freeze(self) -> NodeArena:
        arena = NodeArena(
            feature=np.asarray(self.feature, dtype=np.int32),
            threshold=np.asarray(self.threshold, dtype=np.float64),
            left=np.asarray(self.left, dtype=np.int32),
            right=np.asarray(self.right, dtype=np.int32),
            value=np.vstack(self.value).astype(np.float64),
            gain=np.asarray(self.gain, dtype=np.float64),
            n_rows=np.asarray(self.n_rows, dtype=np.int64),
        )
        for name in ARENA_FIELDS:
            getattr(arena, name).setflags(write=False)
        return arena


class DecisionTree:
    """Binary classification tree over a shared, read-only Dataset.

    The tree is grown from ``rows`` (a bootstrap sample of row indices, all
    rows when omitted) using the selector produced by ``factory``. Leaves hold
    the one-hot distribution of their majority class.
    """

    def __init__(
        self,
        dataset: Dataset,
        parms: RandomForestParms,
        factory: FeatureSelectorFactory,
        rows: np.ndarray | None = None,
    ) -> None:
        if not dataset.is_classification:
            raise ForestConfigError("decision trees require a one-hot class encoding")
        if dataset.rows == 0:
            raise ForestConfigError("cannot build a tree from an empty dataset")
        if factory.eligible.size > 0 and factory.eligible[-1] >= dataset.num_features:
            raise ForestConfigError("eligible feature index exceeds the dataset width")

        if rows is None:
            rows = np.arange(dataset.rows, dtype=np.int64)
        else:
            rows = np.array(rows, dtype=np.int64)
            if rows.size == 0:
                raise ForestConfigError("cannot build a tree from an empty sample")

        self.num_features = dataset.num_features
        self.num_classes = dataset.num_classes
        self.training_rows = dataset.rows
        self.eligible = np.array(factory.eligible, dtype=np.int32)
        self.sample = rows
        self.sample.setflags(write=False)
        self._impact: np.ndarray | None = None

        if parms.num_features is not None:
            self.features_per_split = parms.num_features
        else:
            self.features_per_split = max(1, math.ceil(math.sqrt(max(self.eligible.size, 1))))
        self.max_depth = parms.max_depth
        self.min_split = parms.min_split
        self.min_gain = parms.min_gain

        self.nodes = self._build(dataset, factory)

    @staticmethod
    def best_label(dataset: Dataset, rows: np.ndarray | None = None) -> int:
        """Majority class of ``rows`` (all rows when omitted); ties go to the lowest index."""
        y = dataset.label_indices if rows is None else dataset.label_indices[rows]
        counts = np.bincount(y, minlength=dataset.num_classes)
        return int(np.argmax(counts))

    def _is_splittable(self, n_rows: int, pure: bool, depth: int, eligible: np.ndarray) -> bool:
        if n_rows < self.min_split:
            return False
        if pure:
            return False
        if self.max_depth is not None and depth >= self.max_depth:
            return False
        if eligible.size == 0:
            return False
        return True

    def _build(self, dataset: Dataset, factory: FeatureSelectorFactory) -> NodeArena:
        selector = factory.create()
        X = dataset.features
        y = dataset.label_indices
        builder = _ArenaBuilder(self.num_classes)

        root = builder.add()
        stack = [(root, self.sample, self.eligible, 0)]

        while stack:
            node, rows, eligible, depth = stack.pop()
            label = self.best_label(dataset, rows)
            builder.value[node][label] = 1.0
            builder.n_rows[node] = int(rows.size)

            if not self._is_splittable(int(rows.size), bool(np.all(y[rows] == label)), depth, eligible):
                continue

            candidates = selector.choose(eligible, min(self.features_per_split, eligible.size))
            result = GiniSplitSearch(
                node_rows=rows,
                candidate_features=candidates,
                X=X,
                y=y,
                num_classes=self.num_classes,
                min_gain=self.min_gain,
            ).search()

            # A feature constant here stays constant in every descendant.
            if result.constant_features:
                eligible = np.setdiff1d(eligible, result.constant_features).astype(np.int32)
            if result.arm is None:
                continue

            left = builder.add()
            right = builder.add()
            builder.feature[node] = result.arm.feature
            builder.threshold[node] = result.arm.threshold
            builder.gain[node] = result.gain
            builder.left[node] = left
            builder.right[node] = right

            stack.append((right, result.right_rows, eligible, depth + 1))
            stack.append((left, result.left_rows, eligible, depth + 1))

        arena = builder.freeze()
        logger.debug(
            "Tree built from %d rows: %d nodes, %d leaves.",
            self.sample.size,
            len(arena),
            int(np.count_nonzero(arena.is_leaf)),
        )
        return arena

    @property
    def node_count(self) -> int:
        return len(self.nodes)

    @property
    def leaf_count(self) -> int:
        return int(np.count_nonzero(self.nodes.is_leaf))

    @property
    def depth(self) -> int:
        depths = np.zeros(len(self.nodes), dtype=np.int64)
        # Children always have larger ids than their parent.
        for node in range(len(self.nodes)):
            if self.nodes.feature[node] >= 0:
                depths[self.nodes.left[node]] = depths[node] + 1
                depths[self.nodes.right[node]] = depths[node] + 1
        return int(depths.max())

    def _check_width(self, X: np.ndarray) -> np.ndarray:
        X = np.asarray(X, dtype=np.float64)
        if X.ndim != 2 or X.shape[1] != self.num_features:
            raise DimensionMismatchError(
                f"expected rows of width {self.num_features}, got shape {X.shape}"
            )
        return X

    def leaves_for(self, X: np.ndarray) -> np.ndarray:
        """Leaf id reached by each input row."""
        X = self._check_width(X)
        feature = self.nodes.feature
        node = np.zeros(X.shape[0], dtype=np.int64)
        active = np.flatnonzero(feature[node] >= 0)
        while active.size > 0:
            current = node[active]
            go_left = X[active, feature[current]] <= self.nodes.threshold[current]
            node[active] = np.where(go_left, self.nodes.left[current], self.nodes.right[current])
            active = active[feature[node[active]] >= 0]
        return node

    def vote(self, X: np.ndarray, accumulator: np.ndarray) -> None:
        X = self._check_width(X)
        expected = (X.shape[0], self.num_classes)
        if accumulator.shape != expected:
            raise DimensionMismatchError(
                f"accumulator shape {accumulator.shape} does not match {expected}"
            )
        accumulator += self.nodes.value[self.leaves_for(X)]

    def predict(self, X: np.ndarray) -> np.ndarray:
        X = self._check_width(X)
        votes = np.zeros((X.shape[0], self.num_classes), dtype=np.float64)
        self.vote(X, votes)
        return votes

    def compute_impact(self) -> np.ndarray:
        if self._impact is None:
            internal = ~self.nodes.is_leaf
            impact = np.bincount(
                self.nodes.feature[internal],
                weights=self.nodes.gain[internal],
                minlength=self.num_features,
            ).astype(np.float64)
            impact.setflags(write=False)
            self._impact = impact
        return self._impact.copy()

    def oob_rows(self) -> np.ndarray:
        """Training rows that are absent from this tree's bootstrap sample."""
        return np.setdiff1d(np.arange(self.training_rows, dtype=np.int64), self.sample)

    def to_arrays(self) -> dict[str, np.ndarray]:
        arrays = {name: np.array(getattr(self.nodes, name)) for name in ARENA_FIELDS}
        arrays["eligible"] = np.array(self.eligible)
        arrays["sample"] = np.array(self.sample)
        arrays["dims"] = np.array(
            [self.num_features, self.num_classes, self.training_rows, self.features_per_split],
            dtype=np.int64,
        )
        return arrays

    @classmethod
    def from_arrays(cls, arrays: dict[str, np.ndarray]) -> DecisionTree:
        missing = [k for k in (*ARENA_FIELDS, "eligible", "sample", "dims") if k not in arrays]
        if missing:
            raise ModelFormatError(f"tree arrays are missing: {', '.join(missing)}")

        dims = np.asarray(arrays["dims"], dtype=np.int64)
        if dims.shape != (4,):
            raise ModelFormatError("tree dimension record is malformed")
        arena = NodeArena(
            feature=np.asarray(arrays["feature"], dtype=np.int32),
            threshold=np.asarray(arrays["threshold"], dtype=np.float64),
            left=np.asarray(arrays["left"], dtype=np.int32),
            right=np.asarray(arrays["right"], dtype=np.int32),
            value=np.asarray(arrays["value"], dtype=np.float64),
            gain=np.asarray(arrays["gain"], dtype=np.float64),
            n_rows=np.asarray(arrays["n_rows"], dtype=np.int64),
        )
        _validate_arena(arena, num_features=int(dims[0]), num_classes=int(dims[1]))
        for name in ARENA_FIELDS:
            getattr(arena, name).setflags(write=False)

        tree = cls.__new__(cls)
        tree.num_features = int(dims[0])
        tree.num_classes = int(dims[1])
        tree.training_rows = int(dims[2])
        tree.features_per_split = int(dims[3])
        tree.eligible = np.asarray(arrays["eligible"], dtype=np.int32)
        tree.sample = np.asarray(arrays["sample"], dtype=np.int64)
        tree.sample.setflags(write=False)
        tree.max_depth = None
        tree.min_split = None
        tree.min_gain = None
        tree.nodes = arena
        tree._impact = None
        return tree

    def save(self, path: str | Path) -> None:
        write_archive(path, "tree", {}, self.to_arrays())
        logger.info("Tree with %d nodes saved to %s.", self.node_count, path)

    @classmethod
    def load(cls, path: str | Path) -> DecisionTree:
        _header, arrays = read_archive(path, "tree")
        return cls.from_arrays(arrays)


def _validate_arena(arena: NodeArena, num_features: int, num_classes: int) -> None:
    n = len(arena)
    if n == 0:
        raise ModelFormatError("tree has no nodes")
    for name in ARENA_FIELDS:
        if getattr(arena, name).shape[0] != n:
            raise ModelFormatError(f"node array {name} has the wrong length")
    if arena.value.ndim != 2 or arena.value.shape[1] != num_classes:
        raise ModelFormatError("leaf distributions have the wrong width")

    internal = arena.feature >= 0
    ids = np.arange(n)
    if np.any(arena.feature[internal] >= num_features):
        raise ModelFormatError("split feature index out of range")
    for child in (arena.left, arena.right):
        if np.any(child[internal] <= ids[internal]) or np.any(child[internal] >= n):
            raise ModelFormatError("child reference out of range")
        if np.any(child[~internal] != -1):
            raise ModelFormatError("leaf node has a child reference")
    # A split sends every row of a node to exactly one child.
    split_rows = arena.n_rows[arena.left[internal]] + arena.n_rows[arena.right[internal]]
    if np.any(arena.n_rows[internal] != split_rows):
        raise ModelFormatError("child row counts do not add up to their parent")
