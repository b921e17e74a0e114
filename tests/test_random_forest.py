import time

import numpy as np
import pytest

from dataset import Dataset
from exceptions import DimensionMismatchError, ForestConfigError, ModelFormatError
from feature_selectors import (
    FeatureSelectorFactory,
    NormalFactoryStream,
    RootedFactoryStream,
)
import random_forest
from random_forest import Method, RandomForest, RandomForestParms, get_useful_features


class _DelayedFactory(FeatureSelectorFactory):
    """Wraps a factory so its tree finishes after a fixed delay."""

    def __init__(self, inner, delay):
        super().__init__(inner.seed, inner.eligible)
        self.inner = inner
        self.delay = delay

    def create(self):
        time.sleep(self.delay)
        return self.inner.create()


class _FailingFactory(FeatureSelectorFactory):
    def create(self):
        raise RuntimeError("selector construction failed")


def _parms(dataset, **overrides):
    values = {"num_trees": 20, "num_features": 2, "seed": 142857, "n_jobs": 4}
    values.update(overrides)
    return RandomForestParms.for_dataset(dataset, **values)


def _arrays_equal(forest_a, forest_b):
    assert len(forest_a) == len(forest_b)
    for tree_a, tree_b in zip(forest_a.trees, forest_b.trees):
        a = tree_a.to_arrays()
        b = tree_b.to_arrays()
        for name in a:
            assert np.array_equal(a[name], b[name]), name


def test_forest_classifies_iris_like_table(iris):
    parms = _parms(iris, num_trees=50)
    factories = NormalFactoryStream(142857, get_useful_features(iris), parms.num_trees)
    forest = RandomForest(iris, parms, factories)

    assert len(forest) == 50
    assert forest.get_accuracy(iris) > 0.90

    predictions = forest.predict(iris.features)
    assert predictions.shape == (iris.rows, iris.num_classes)
    assert np.allclose(predictions.sum(axis=1), 1.0)


def test_same_seed_builds_identical_forests(iris):
    first = RandomForest(iris, _parms(iris))
    second = RandomForest(iris, _parms(iris, n_jobs=1))
    _arrays_equal(first, second)

    assert np.array_equal(first.predict(iris.features), second.predict(iris.features))


def test_different_seeds_build_different_forests(iris):
    first = RandomForest(iris, _parms(iris))
    second = RandomForest(iris, _parms(iris, seed=7))
    assert not np.array_equal(first.trees[0].sample, second.trees[0].sample)


def test_completion_order_does_not_change_results(iris):
    parms = _parms(iris, num_trees=6, n_jobs=6)
    eligible = get_useful_features(iris)

    plain = RandomForest(iris, parms, NormalFactoryStream(11, eligible, 6))

    # Later trees finish first.
    delayed = [
        _DelayedFactory(factory, 0.05 * (6 - i))
        for i, factory in enumerate(NormalFactoryStream(11, eligible, 6))
    ]
    completed = []
    reordered = RandomForest(
        iris, parms, delayed, progress=lambda done, total: completed.append((done, total))
    )

    _arrays_equal(plain, reordered)
    assert np.array_equal(plain.predict(iris.features), reordered.predict(iris.features))
    assert np.array_equal(plain.compute_impact(), reordered.compute_impact())
    assert completed == [(i, 6) for i in range(1, 7)]


def test_forest_round_trip(iris, tmp_path):
    forest = RandomForest(iris, _parms(iris, method=Method.WEIGHTED))
    path = tmp_path / "forest.npz"
    forest.save(path)
    loaded = RandomForest.load(path)

    assert loaded.parms == forest.parms
    assert np.array_equal(loaded.weights, forest.weights)
    assert np.array_equal(loaded.predict(iris.features), forest.predict(iris.features))
    assert np.array_equal(loaded.compute_impact(), forest.compute_impact())

    rng = np.random.default_rng(1)
    X = rng.normal(loc=4.0, scale=2.0, size=(40, 4))
    assert np.array_equal(loaded.predict(X), forest.predict(X))


def test_tree_file_is_not_a_forest(iris, tmp_path):
    forest = RandomForest(iris, _parms(iris, num_trees=2))
    path = tmp_path / "tree.npz"
    forest.trees[0].save(path)
    with pytest.raises(ModelFormatError):
        RandomForest.load(path)


def test_corrupt_forest_file_is_rejected(tmp_path):
    path = tmp_path / "forest.npz"
    path.write_bytes(b"not a model")
    with pytest.raises(ModelFormatError):
        RandomForest.load(path)


def test_zero_variance_column_has_no_impact(iris_with_constant):
    dataset = iris_with_constant
    forest = RandomForest(dataset, _parms(dataset))
    impact = forest.compute_impact()

    assert impact.shape == (5,)
    assert impact[2] == 0.0
    assert np.all(impact >= 0.0)

    # Still zero when the constant column is offered to every tree.
    everything = NormalFactoryStream(3, np.arange(5), 20)
    forest = RandomForest(dataset, _parms(dataset), everything)
    assert forest.compute_impact()[2] == 0.0


def test_features_never_eligible_have_no_impact(iris):
    forest = RandomForest(iris, _parms(iris), NormalFactoryStream(3, [1, 2, 3], 20))
    impact = forest.compute_impact()
    assert impact[0] == 0.0
    assert np.all(impact[1:] > 0.0)


def test_bagging_impact_is_mean_of_tree_impacts(iris):
    forest = RandomForest(iris, _parms(iris, num_trees=5))
    expected = np.mean([tree.compute_impact() for tree in forest.trees], axis=0)
    assert np.allclose(forest.compute_impact(), expected)
    assert np.all(forest.weights == 1.0)


def test_weighted_method_uses_out_of_bag_accuracy(iris):
    forest = RandomForest(iris, _parms(iris, method="weighted"))
    assert forest.parms.method is Method.WEIGHTED
    assert np.all((forest.weights >= 0.0) & (forest.weights <= 1.0))
    assert np.any(forest.weights < 1.0)
    assert forest.get_accuracy(iris) > 0.9


def test_oob_accuracy(iris):
    forest = RandomForest(iris, _parms(iris, num_trees=30))
    accuracy = forest.oob_accuracy(iris)
    assert 0.8 < accuracy <= 1.0


def test_rooted_selection_forest(iris):
    names = ["sepal_length", "sepal_width", "petal_length", "petal_width"]
    factories = RootedFactoryStream(5, names, ["petal_length", "petal_width"], 20)
    forest = RandomForest(iris, _parms(iris), factories)
    impact = forest.compute_impact()

    assert forest.get_accuracy(iris) > 0.9
    assert impact[2] + impact[3] > impact[0] + impact[1]


def test_configuration_errors_fail_before_building(iris):
    with pytest.raises(ForestConfigError):
        RandomForestParms(num_trees=0)
    with pytest.raises(ForestConfigError):
        RandomForestParms(num_features=0)
    with pytest.raises(ForestConfigError):
        RandomForestParms(method="boosted")
    with pytest.raises(ForestConfigError):
        RandomForest(iris, _parms(iris, num_features=5))
    with pytest.raises(ForestConfigError):
        RandomForest(iris.select_rows(np.array([], dtype=int)), RandomForestParms())
    with pytest.raises(ForestConfigError):
        RandomForest(iris, _parms(iris, num_trees=5), NormalFactoryStream(1, [0, 1], 2))

    scalar = Dataset(iris.features, iris.features[:, 0])
    with pytest.raises(ForestConfigError):
        RandomForest(scalar, RandomForestParms(num_features=2))


def test_worker_failure_fails_whole_build(iris):
    factories = list(NormalFactoryStream(1, np.arange(4), 8))
    factories[5] = _FailingFactory(factories[5].seed, factories[5].eligible)
    with pytest.raises(RuntimeError, match="selector construction failed"):
        RandomForest(iris, _parms(iris, num_trees=8), factories)


def test_predict_rejects_wrong_width(iris):
    forest = RandomForest(iris, _parms(iris, num_trees=3))
    with pytest.raises(DimensionMismatchError):
        forest.predict(np.zeros((2, 5)))
    with pytest.raises(DimensionMismatchError):
        forest.predict(np.zeros(4))


def test_get_useful_features():
    X = np.column_stack(
        [
            np.arange(6.0),
            np.full(6, 3.0),
            np.array([np.nan, 1.0, 1.0, 1.0, np.nan, 1.0]),
            np.array([0.0, 0.0, 0.0, 0.0, 0.0, 1.0]),
        ]
    )
    dataset = Dataset.from_class_indices(X, np.array([0, 1, 0, 1, 0, 1]), 2)
    assert get_useful_features(dataset).tolist() == [0, 3]
    assert RandomForest.get_useful_features(dataset).tolist() == [0, 3]


def test_parms_defaults_for_dataset(iris):
    parms = RandomForestParms.for_dataset(iris)
    assert parms.num_features == 2
    assert parms.sample_size == iris.rows
    assert parms.num_trees == 50
    assert parms.method is Method.BAGGING


def test_parms_from_file(tmp_path):
    path = tmp_path / "parms.prm"
    path.write_text(
        "# forest options\n"
        "--numTrees 20\n"
        "--method weighted --num-features 3\n"
        "--maxDepth 6   # shallow trees\n"
    )
    parms = RandomForestParms.from_file(path)
    assert parms.num_trees == 20
    assert parms.num_features == 3
    assert parms.method is Method.WEIGHTED
    assert parms.max_depth == 6
    assert parms.seed == 142857

    path.write_text("--numTrees 20 --leafCount 4\n")
    with pytest.raises(ForestConfigError):
        RandomForestParms.from_file(path)


def test_numpy_typed_parms_are_saved(iris, tmp_path):
    parms = RandomForestParms(
        num_trees=np.int64(3),
        num_features=np.int32(2),
        seed=np.int64(5),
        min_gain=np.float64(0.0),
        n_jobs=np.int64(2),
    )
    assert type(parms.seed) is int
    assert type(parms.num_trees) is int
    assert type(parms.min_gain) is float

    forest = RandomForest(iris, parms)
    path = tmp_path / "forest.npz"
    forest.save(path)
    loaded = RandomForest.load(path)

    assert loaded.parms == parms
    assert np.array_equal(loaded.predict(iris.features), forest.predict(iris.features))


@pytest.mark.parametrize(
    "overrides",
    [
        {"num_trees": 2.5},
        {"seed": "5"},
        {"num_features": 1.0},
        {"min_gain": "small"},
        {"num_trees": None},
    ],
)
def test_non_integer_parms_are_rejected(overrides):
    with pytest.raises(ForestConfigError):
        RandomForestParms(**overrides)


def test_small_inputs_vote_without_a_pool(iris, monkeypatch):
    forest = RandomForest(iris, _parms(iris, num_trees=4))
    expected = forest.predict(iris.features)

    def no_pool(*args, **kwargs):
        raise AssertionError("a thread pool was started for a small vote")

    monkeypatch.setattr(random_forest, "ThreadPoolExecutor", no_pool)
    assert np.array_equal(forest.predict(iris.features), expected)
