from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Sequence

import numpy as np
import pandas as pd

from exceptions import DatasetError, ForestConfigError

logger = logging.getLogger(__name__)


def _as_indices(values: Sequence[int] | np.ndarray) -> np.ndarray:
    indices = np.unique(np.asarray(values, dtype=np.int32))
    if indices.size > 0 and indices[0] < 0:
        raise ForestConfigError("feature indices must be non-negative")
    return indices


class FeatureSelector(ABC):
    """Chooses the candidate features tested at one tree node."""

    def __init__(self, rng: np.random.Generator) -> None:
        self.rng = rng

    def choose(self, eligible: np.ndarray, count: int) -> np.ndarray:
        eligible = np.asarray(eligible, dtype=np.int32)
        if count < 0 or count > eligible.size:
            raise ForestConfigError(
                f"cannot choose {count} features from {eligible.size} eligible"
            )
        if count == eligible.size:
            return np.sort(eligible)
        chosen = self._choose(eligible, count)
        return np.asarray(np.sort(chosen), dtype=np.int32)

    @abstractmethod
    def _choose(self, eligible: np.ndarray, count: int) -> np.ndarray:
        ...


class NormalFeatureSelector(FeatureSelector):
    def _choose(self, eligible: np.ndarray, count: int) -> np.ndarray:
        return self.rng.choice(eligible, size=count, replace=False)


@dataclass(frozen=True)
class RootedPolicy:
    rank_power: float = 1.0
    # None gives unranked features the weight of the lowest-ranked feature.
    unranked_weight: float | None = None

    def __post_init__(self) -> None:
        if self.rank_power < 0.0:
            raise ForestConfigError("rank_power must be >= 0")
        if self.unranked_weight is not None and self.unranked_weight < 0.0:
            raise ForestConfigError("unranked_weight must be >= 0")


class RootedFeatureSelector(FeatureSelector):
    """Biases the choice toward features ranked high in an external importance table."""

    def __init__(
        self,
        rng: np.random.Generator,
        ranks: dict[int, int],
        policy: RootedPolicy | None = None,
    ) -> None:
        super().__init__(rng)
        self.ranks = dict(ranks)
        self.policy = policy or RootedPolicy()

    def weights(self, eligible: np.ndarray) -> np.ndarray:
        ranked = np.array([int(f) in self.ranks for f in eligible], dtype=bool)
        weights = np.zeros(eligible.size, dtype=np.float64)
        for i, f in enumerate(eligible):
            rank = self.ranks.get(int(f))
            if rank is not None:
                weights[i] = (1.0 / (rank + 1.0)) ** self.policy.rank_power

        if self.policy.unranked_weight is not None:
            unranked_weight = self.policy.unranked_weight
        elif np.any(ranked):
            unranked_weight = float(np.min(weights[ranked]))
        else:
            unranked_weight = 1.0
        weights[~ranked] = unranked_weight
        return weights

    def _choose(self, eligible: np.ndarray, count: int) -> np.ndarray:
        weights = self.weights(eligible)
        positive = weights > 0.0
        n_weighted = min(count, int(np.count_nonzero(positive)))

        chosen = np.array([], dtype=np.int32)
        if n_weighted > 0:
            p = weights[positive] / weights[positive].sum()
            chosen = self.rng.choice(eligible[positive], size=n_weighted, replace=False, p=p)

        remainder = count - n_weighted
        if remainder > 0:
            rest = self.rng.choice(eligible[~positive], size=remainder, replace=False)
            chosen = np.concatenate([chosen, rest])
        return chosen


class FeatureSelectorFactory(ABC):
    """Produces the selector for one tree, together with the features it may use."""

    def __init__(self, seed: int | Sequence[int], eligible: Sequence[int] | np.ndarray) -> None:
        self.seed = seed
        self.eligible = _as_indices(eligible)

    def _rng(self) -> np.random.Generator:
        return np.random.default_rng(self.seed)

    @abstractmethod
    def create(self) -> FeatureSelector:
        ...


class NormalFeatureSelectorFactory(FeatureSelectorFactory):
    def create(self) -> FeatureSelector:
        return NormalFeatureSelector(self._rng())


class RootedFeatureSelectorFactory(FeatureSelectorFactory):
    def __init__(
        self,
        seed: int | Sequence[int],
        eligible: Sequence[int] | np.ndarray,
        ranking: Sequence[int],
        policy: RootedPolicy | None = None,
    ) -> None:
        super().__init__(seed, eligible)
        self.ranks: dict[int, int] = {}
        for feature in ranking:
            self.ranks.setdefault(int(feature), len(self.ranks))
        self.policy = policy or RootedPolicy()

    def create(self) -> FeatureSelector:
        return RootedFeatureSelector(self._rng(), self.ranks, self.policy)


class _FactoryStream(ABC):
    def __init__(self, seed: int, num_trees: int) -> None:
        if num_trees <= 0:
            raise ForestConfigError("num_trees must be positive")
        self.seed = int(seed)
        self.num_trees = num_trees
        self._next_tree = 0

    def __iter__(self) -> Iterator[FeatureSelectorFactory]:
        return self

    def __next__(self) -> FeatureSelectorFactory:
        if self._next_tree >= self.num_trees:
            raise StopIteration
        tree_idx = self._next_tree
        self._next_tree += 1
        return self._factory((self.seed, tree_idx))

    def __len__(self) -> int:
        return self.num_trees - self._next_tree

    @abstractmethod
    def _factory(self, seed: tuple[int, int]) -> FeatureSelectorFactory:
        ...


class NormalFactoryStream(_FactoryStream):
    """One uniform-selection factory per tree, seeded from (seed, tree index)."""

    def __init__(self, seed: int, eligible: Sequence[int] | np.ndarray, num_trees: int) -> None:
        super().__init__(seed, num_trees)
        self.eligible = _as_indices(eligible)

    def _factory(self, seed: tuple[int, int]) -> FeatureSelectorFactory:
        return NormalFeatureSelectorFactory(seed, self.eligible)

    def __repr__(self) -> str:
        return f"NormalFactoryStream(seed={self.seed}, features={self.eligible.size})"


class RootedFactoryStream(_FactoryStream):
    """One rank-biased factory per tree; the ranking is given as feature names."""

    def __init__(
        self,
        seed: int,
        feature_names: Sequence[str],
        ranked_names: Sequence[str],
        num_trees: int,
        policy: RootedPolicy | None = None,
        eligible: Sequence[int] | np.ndarray | None = None,
    ) -> None:
        super().__init__(seed, num_trees)
        positions = {name: i for i, name in enumerate(feature_names)}
        if eligible is None:
            eligible = np.arange(len(feature_names))
        self.eligible = _as_indices(eligible)
        self.policy = policy or RootedPolicy()

        self.ranking: list[int] = []
        skipped = 0
        for name in ranked_names:
            idx = positions.get(name)
            if idx is None:
                skipped += 1
            else:
                self.ranking.append(idx)
        if skipped:
            logger.warning("%d ranked features are not in the dataset and were skipped.", skipped)

    def _factory(self, seed: tuple[int, int]) -> FeatureSelectorFactory:
        return RootedFeatureSelectorFactory(seed, self.eligible, self.ranking, self.policy)

    def __repr__(self) -> str:
        return f"RootedFactoryStream(seed={self.seed}, ranked={len(self.ranking)})"


def read_ranking(path: str | Path, column: str | int = 0) -> list[str]:
    """Read a ranking column, best feature first, from a tab-delimited table."""
    try:
        frame = pd.read_csv(path, sep="\t", dtype=str, keep_default_na=False)
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise DatasetError(f"cannot read ranking file {path}: {e}") from e
    if isinstance(column, int):
        if column >= frame.shape[1]:
            raise DatasetError(f"ranking file {path} has no column {column}")
        values = frame.iloc[:, column]
    else:
        if column not in frame.columns:
            raise DatasetError(f"ranking file {path} has no column {column}")
        values = frame[column]
    return [v for v in values.tolist() if v]
