from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np


@dataclass(frozen=True)
class SplitArm:
    feature: int
    threshold: float


@dataclass
class SplitSearchResult:
    arm: SplitArm | None
    gain: float
    left_rows: np.ndarray | None = None
    right_rows: np.ndarray | None = None
    # Candidates with a single distinct value among the node rows.
    constant_features: list[int] = field(default_factory=list)


def weighted_gini(counts: np.ndarray) -> np.ndarray:
    """Row-count weighted Gini impurity, n * (1 - sum(p^2)), along the last axis."""
    counts = np.asarray(counts, dtype=np.float64)
    n = counts.sum(axis=-1)
    squares = np.square(counts).sum(axis=-1)
    safe_n = np.where(n > 0.0, n, 1.0)
    return np.where(n > 0.0, n - squares / safe_n, 0.0)


class GiniSplitSearch:
    """Exhaustive midpoint split search for one node of a classification tree."""

    def __init__(
        self,
        node_rows: np.ndarray,
        candidate_features: np.ndarray,
        X: np.ndarray,
        y: np.ndarray,
        num_classes: int,
        min_gain: float = 0.0,
    ) -> None:
        self.node_rows = np.asarray(node_rows, dtype=np.int64)
        self.candidate_features = np.sort(np.asarray(candidate_features, dtype=np.int32))
        self.X = X
        self.y = y
        self.num_classes = num_classes
        self.min_gain = min_gain

        self.n_node = int(self.node_rows.size)
        self.node_y = self.y[self.node_rows]
        self.node_counts = np.bincount(self.node_y, minlength=num_classes).astype(np.float64)
        self.node_impurity = float(weighted_gini(self.node_counts))

    def _best_for_feature(self, feature: int) -> tuple[float, float, int] | None:
        """Best (gain, threshold, left size) for one feature, or None if it is constant."""
        values = self.X[self.node_rows, feature]
        order = np.argsort(values, kind="stable")
        sorted_values = values[order]

        boundaries = np.flatnonzero(sorted_values[:-1] < sorted_values[1:])
        if boundaries.size == 0:
            return None

        onehot = np.zeros((self.n_node, self.num_classes), dtype=np.float64)
        onehot[np.arange(self.n_node), self.node_y[order]] = 1.0
        left_counts = np.cumsum(onehot, axis=0)[boundaries]
        right_counts = self.node_counts - left_counts

        gains = self.node_impurity - weighted_gini(left_counts) - weighted_gini(right_counts)
        # argmax keeps the first, i.e. lowest, threshold among equal gains.
        best = int(np.argmax(gains))
        pos = int(boundaries[best])

        low = float(sorted_values[pos])
        high = float(sorted_values[pos + 1])
        threshold = (low + high) * 0.5
        if not low <= threshold < high:
            threshold = low
        return float(gains[best]), threshold, pos + 1

    def search(self) -> SplitSearchResult:
        best_arm = None
        best_gain = -float("inf")
        constant: list[int] = []

        for feature in self.candidate_features:
            found = self._best_for_feature(int(feature))
            if found is None:
                constant.append(int(feature))
                continue
            gain, threshold, _n_left = found
            # Strict comparison keeps the lowest feature index on ties.
            if gain > best_gain:
                best_gain = gain
                best_arm = SplitArm(feature=int(feature), threshold=threshold)

        if best_arm is None or not np.isfinite(best_gain) or best_gain <= self.min_gain:
            return SplitSearchResult(None, max(best_gain, 0.0), constant_features=constant)

        go_left = self.X[self.node_rows, best_arm.feature] <= best_arm.threshold
        left_rows = self.node_rows[go_left]
        right_rows = self.node_rows[~go_left]
        if left_rows.size == 0 or right_rows.size == 0:
            return SplitSearchResult(None, 0.0, constant_features=constant)

        return SplitSearchResult(best_arm, best_gain, left_rows, right_rows, constant)
