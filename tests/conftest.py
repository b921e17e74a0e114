import numpy as np
import pytest

from dataset import Dataset

IRIS_MEANS = np.array(
    [
        [5.0, 3.4, 1.5, 0.2],
        [5.9, 2.8, 4.3, 1.3],
        [6.6, 3.0, 5.6, 2.0],
    ]
)
IRIS_SCALES = np.array([0.35, 0.35, 0.35, 0.2])


def make_iris_like(seed: int, rows_per_class: int = 50, constant_column: bool = False) -> Dataset:
    rng = np.random.default_rng(seed)
    X = np.vstack(
        [rng.normal(loc=m, scale=IRIS_SCALES, size=(rows_per_class, 4)) for m in IRIS_MEANS]
    )
    if constant_column:
        X = np.column_stack([X[:, :2], np.full(X.shape[0], 7.5), X[:, 2:]])
    y = np.repeat(np.arange(3), rows_per_class)
    return Dataset.from_class_indices(X, y, 3)


@pytest.fixture
def iris():
    return make_iris_like(142857)


@pytest.fixture
def iris_with_constant():
    return make_iris_like(142857, constant_column=True)
