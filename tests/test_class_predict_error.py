import numpy as np
import pytest

from class_predict_error import ClassPredictError
from exceptions import DimensionMismatchError


def test_compute_best():
    assert ClassPredictError.compute_best(np.array([0.2, 0.5, 0.3])) == 1
    assert ClassPredictError.compute_best(np.array([0.5, 0.5, 0.0])) == 0
    assert ClassPredictError.compute_best([0.0, 0.0, 1.0]) == 2


def test_compute_best_rows():
    matrix = np.array([[0.2, 0.5, 0.3], [0.5, 0.5, 0.0], [0.1, 0.1, 0.8]])
    assert ClassPredictError.compute_best_rows(matrix).tolist() == [1, 0, 2]

    with pytest.raises(DimensionMismatchError):
        ClassPredictError.compute_best(np.zeros((2, 2)))
    with pytest.raises(DimensionMismatchError):
        ClassPredictError.compute_best_rows(np.zeros(3))


def test_accuracy_and_confusion():
    expected = np.eye(3)[[0, 1, 2, 2]]
    predicted = np.array(
        [
            [0.9, 0.1, 0.0],
            [0.2, 0.3, 0.5],
            [0.0, 0.0, 1.0],
            [0.3, 0.3, 0.4],
        ]
    )
    tracker = ClassPredictError(3)
    tracker.accumulate(expected, predicted)

    assert tracker.count == 4
    assert tracker.accuracy == 0.75
    assert tracker.error == 0.25
    assert tracker.confusion[1, 2] == 1
    assert np.trace(tracker.confusion) == 3

    tracker.accumulate(expected[:1], predicted[:1])
    assert tracker.count == 5

    tracker.reset()
    assert tracker.count == 0
    assert np.isnan(tracker.accuracy)


def test_accumulate_rejects_mismatched_shapes():
    tracker = ClassPredictError(3)
    with pytest.raises(DimensionMismatchError):
        tracker.accumulate(np.eye(3), np.eye(3)[:2])
    with pytest.raises(DimensionMismatchError):
        tracker.accumulate(np.eye(2), np.eye(2))
