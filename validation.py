from __future__ import annotations

import logging
from typing import Iterator

import numpy as np

from dataset import Dataset
from exceptions import ForestConfigError
from random_forest import RandomForest, RandomForestParms

logger = logging.getLogger(__name__)


def train_test_split(
    dataset: Dataset,
    test_size: float,
    seed: int,
    stratify: bool = False,
) -> tuple[Dataset, Dataset]:
    if not 0.0 < test_size < 1.0:
        raise ValueError("test_size must be between 0 and 1")
    rng = np.random.default_rng(seed)

    if stratify:
        y = dataset.label_indices
        train_parts = []
        test_parts = []
        for c in np.unique(y):
            idx = np.flatnonzero(y == c)
            rng.shuffle(idx)
            n_test = max(1, int(round(idx.size * test_size)))
            test_parts.append(idx[:n_test])
            train_parts.append(idx[n_test:])
        train_idx = np.concatenate(train_parts)
        test_idx = np.concatenate(test_parts)
        rng.shuffle(train_idx)
        rng.shuffle(test_idx)
    else:
        idx = np.arange(dataset.rows)
        rng.shuffle(idx)
        n_test = max(1, int(round(dataset.rows * test_size)))
        test_idx = idx[:n_test]
        train_idx = idx[n_test:]

    return dataset.select_rows(train_idx), dataset.select_rows(test_idx)


def k_fold_indices(n: int, k: int, seed: int) -> Iterator[tuple[np.ndarray, np.ndarray]]:
    """Yield (train_rows, test_rows) for k shuffled, nearly equal folds."""
    if k < 2 or k > n:
        raise ValueError(f"cannot make {k} folds from {n} rows")
    order = np.random.default_rng(seed).permutation(n)
    for fold in np.array_split(order, k):
        train = np.setdiff1d(order, fold)
        yield train, np.sort(fold)


def cross_validate(parms: RandomForestParms, dataset: Dataset, k_fold: int) -> float:
    """Interquartile range of the fold accuracies of k forests."""
    if parms.num_features is not None and parms.num_features > dataset.num_features:
        raise ForestConfigError("num_features exceeds the dataset width")

    accuracies = []
    for fold_idx, (train_rows, test_rows) in enumerate(
        k_fold_indices(dataset.rows, k_fold, parms.seed), start=1
    ):
        logger.info("Testing fold %d of %d.", fold_idx, k_fold)
        forest = RandomForest(dataset.select_rows(train_rows), parms)
        accuracies.append(forest.get_accuracy(dataset.select_rows(test_rows)))

    q75, q25 = np.percentile(np.asarray(accuracies, dtype=np.float64), [75.0, 25.0])
    iqr = float(q75 - q25)
    logger.info("Fold accuracies %s give IQR %.4f.", np.round(accuracies, 4).tolist(), iqr)
    return iqr
