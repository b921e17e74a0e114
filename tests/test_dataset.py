import numpy as np
import pytest

from dataset import Dataset, load_tabbed
from exceptions import DatasetError

TABLE = (
    "sample_id\tsepal_length\tsepal_width\tspecies\tdensity\n"
    "s1\t6.0\t3.4\tversicolor\t0.5\n"
    "s2\t5.1\t3.5\tsetosa\t0.7\n"
    "s3\t6.7\t3.1\tvirginica\t0.1\n"
    "s4\t4.9\t3.0\tsetosa\t0.2\n"
)


def test_dataset_shape_and_rows():
    X = np.arange(12.0).reshape(4, 3)
    dataset = Dataset.from_class_indices(X, np.array([0, 2, 1, 2]), 3, metadata=["a", "b", "c", "d"])

    assert dataset.rows == 4
    assert len(dataset) == 4
    assert dataset.num_features == 3
    assert dataset.num_classes == 3
    assert dataset.is_classification
    assert dataset.label_indices.tolist() == [0, 2, 1, 2]

    features, labels, meta = dataset.row(1)
    assert features.tolist() == [3.0, 4.0, 5.0]
    assert labels.tolist() == [0.0, 0.0, 1.0]
    assert meta == "b"


def test_dataset_is_read_only():
    X = np.ones((3, 2))
    dataset = Dataset.from_class_indices(X, np.array([0, 1, 1]), 2)
    X[0, 0] = 5.0

    assert dataset.features[0, 0] == 1.0
    with pytest.raises(ValueError):
        dataset.features[0, 0] = 2.0
    with pytest.raises(ValueError):
        dataset.labels[0, 0] = 2.0


def test_best_label_ties_go_to_lowest_index():
    dataset = Dataset.from_class_indices(np.zeros((4, 1)), np.array([2, 1, 2, 1]), 3)
    assert dataset.best_label() == 1


def test_invalid_datasets_are_rejected():
    with pytest.raises(DatasetError):
        Dataset(np.ones(3), np.ones((3, 2)))
    with pytest.raises(DatasetError):
        Dataset(np.ones((3, 2)), np.ones((2, 2)) * 0.5)
    with pytest.raises(DatasetError):
        Dataset(np.ones((2, 2)), np.array([[1.0, 1.0], [0.0, 1.0]]))
    with pytest.raises(DatasetError):
        Dataset(np.ones((2, 2)), np.eye(2), metadata=["only one"])
    with pytest.raises(DatasetError):
        Dataset.from_class_indices(np.ones((2, 2)), np.array([0, 3]), 2)


def test_scalar_labels_are_carried():
    dataset = Dataset(np.ones((3, 2)), np.array([1.5, 2.5, 3.0]))
    assert dataset.num_classes == 1
    assert not dataset.is_classification
    with pytest.raises(DatasetError):
        dataset.label_indices


def test_select_rows_and_restrict_features():
    X = np.arange(12.0).reshape(4, 3)
    dataset = Dataset.from_class_indices(
        X, np.array([0, 1, 1, 0]), 2, metadata=["a", "b", "c", "d"], feature_names=["x", "y", "z"]
    )
    subset = dataset.select_rows(np.array([3, 3, 0]))
    assert subset.rows == 3
    assert subset.metadata == ("d", "d", "a")
    assert subset.label_indices.tolist() == [0, 0, 0]

    narrow = dataset.restrict_features(np.array([2, 0]))
    assert narrow.feature_names == ("z", "x")
    assert narrow.features[:, 0].tolist() == [2.0, 5.0, 8.0, 11.0]


def test_load_tabbed_one_hot(tmp_path):
    path = tmp_path / "iris.tbl"
    path.write_text(TABLE)
    dataset = load_tabbed(path, "species", ["virginica", "versicolor", "setosa"], ["sample_id", "density"])

    assert dataset.rows == 4
    assert dataset.num_features == 2
    assert dataset.feature_names == ("sepal_length", "sepal_width")
    assert dataset.label_names == ("virginica", "versicolor", "setosa")
    assert dataset.features[0].tolist() == [6.0, 3.4]
    assert dataset.label_indices.tolist() == [1, 2, 0, 2]
    assert dataset.best_label() == 2
    assert dataset.metadata[0] == ("s1", "0.5")


def test_load_tabbed_scalar_label(tmp_path):
    path = tmp_path / "iris.tbl"
    path.write_text(TABLE)
    dataset = load_tabbed(path, "density", meta_columns=["sample_id", "species"])

    assert dataset.num_classes == 1
    assert dataset.labels[:, 0].tolist() == [0.5, 0.7, 0.1, 0.2]


def test_load_tabbed_errors(tmp_path):
    path = tmp_path / "iris.tbl"
    path.write_text(TABLE)
    with pytest.raises(DatasetError):
        load_tabbed(path, "species", ["setosa", "virginica"], ["sample_id", "density"])
    with pytest.raises(DatasetError):
        load_tabbed(path, "species", ["virginica", "versicolor", "setosa"], ["sample_id", "color"])
    with pytest.raises(DatasetError):
        load_tabbed(path, "species", ["virginica", "versicolor", "setosa"])
    with pytest.raises(DatasetError):
        load_tabbed(tmp_path / "missing.tbl", "species")
