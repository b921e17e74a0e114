from __future__ import annotations

import numpy as np

from exceptions import DimensionMismatchError


class ClassPredictError:
    """Tracks predicted-vs-actual classes for one-hot or vote matrices."""

    def __init__(self, num_classes: int) -> None:
        if num_classes <= 0:
            raise ValueError("num_classes must be positive")
        self.num_classes = num_classes
        self.confusion = np.zeros((num_classes, num_classes), dtype=np.int64)

    @staticmethod
    def compute_best(row: np.ndarray) -> int:
        """Column of the largest value; ties go to the lowest index."""
        row = np.asarray(row, dtype=np.float64)
        if row.ndim != 1 or row.size == 0:
            raise DimensionMismatchError("compute_best expects a non-empty 1D row")
        return int(np.argmax(row))

    @staticmethod
    def compute_best_rows(matrix: np.ndarray) -> np.ndarray:
        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.ndim != 2 or matrix.shape[1] == 0:
            raise DimensionMismatchError("compute_best_rows expects a 2D matrix with columns")
        return np.argmax(matrix, axis=1).astype(np.int64)

    def accumulate(self, expected: np.ndarray, predicted: np.ndarray) -> None:
        expected = np.asarray(expected, dtype=np.float64)
        predicted = np.asarray(predicted, dtype=np.float64)
        if expected.shape != predicted.shape:
            raise DimensionMismatchError(
                f"expected shape {expected.shape} differs from predicted shape {predicted.shape}"
            )
        if expected.ndim != 2 or expected.shape[1] != self.num_classes:
            raise DimensionMismatchError(
                f"matrices must have {self.num_classes} columns"
            )
        actual = self.compute_best_rows(expected)
        guess = self.compute_best_rows(predicted)
        np.add.at(self.confusion, (actual, guess), 1)

    @property
    def count(self) -> int:
        return int(self.confusion.sum())

    @property
    def accuracy(self) -> float:
        total = self.count
        if total == 0:
            return float("nan")
        return float(np.trace(self.confusion)) / total

    @property
    def error(self) -> float:
        return 1.0 - self.accuracy

    def reset(self) -> None:
        self.confusion[:] = 0
