import argparse
import logging
import sys
import time
from pathlib import Path

import numpy as np

# Allow running as: python experiments/quick_forest_eval.py
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dataset import Dataset, load_tabbed
from feature_selectors import NormalFactoryStream, RootedFactoryStream, read_ranking
from random_forest import Method, RandomForest, RandomForestParms, get_useful_features
from validation import cross_validate, train_test_split

logger = logging.getLogger("quick_forest_eval")

IRIS_MEANS = np.array(
    [
        [5.0, 3.4, 1.5, 0.2],
        [5.9, 2.8, 4.3, 1.3],
        [6.6, 3.0, 5.6, 2.0],
    ]
)
IRIS_SCALES = np.array([0.35, 0.35, 0.35, 0.2])


def synthetic_iris(random_state: int, rows_per_class: int = 50) -> Dataset:
    rng = np.random.default_rng(random_state)
    X = np.vstack(
        [rng.normal(loc=m, scale=IRIS_SCALES, size=(rows_per_class, 4)) for m in IRIS_MEANS]
    )
    y = np.repeat(np.arange(3), rows_per_class)
    return Dataset.from_class_indices(
        X,
        y,
        3,
        feature_names=["sepal_length", "sepal_width", "petal_length", "petal_width"],
        label_names=["setosa", "versicolor", "virginica"],
    )


def load_dataset(args: argparse.Namespace, seed: int) -> Dataset:
    if args.input is None:
        return synthetic_iris(seed)
    labels = args.labels.split(",") if args.labels else None
    meta = args.meta.split(",") if args.meta else []
    return load_tabbed(args.input, args.label_column, labels, meta)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Train a random forest on a tab-delimited table (or a synthetic iris table) and score it"
    )
    parser.add_argument("--input", type=Path, default=None)
    parser.add_argument("--label-column", type=str, default="species")
    parser.add_argument("--labels", type=str, default="", help="Comma-separated label values, in order.")
    parser.add_argument("--meta", type=str, default="", help="Comma-separated metadata columns.")
    parser.add_argument("--parms", type=Path, default=None, help="Parameter file of forest options.")
    parser.add_argument("--num-trees", type=int, default=None)
    parser.add_argument("--num-features", type=int, default=None)
    parser.add_argument("--method", type=str.upper, choices=[m.value for m in Method], default=None)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--jobs", type=int, default=None)
    parser.add_argument("--ranking", type=Path, default=None, help="Feature ranking table for rooted selection.")
    parser.add_argument("--test-size", type=float, default=0.2)
    parser.add_argument("--folds", type=int, default=0, help="Also cross-validate with this many folds.")
    parser.add_argument("--save", type=Path, default=None)
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

    values = {}
    if args.parms is not None:
        file_values = RandomForestParms.from_file(args.parms).to_dict()
        values.update({k: v for k, v in file_values.items() if v is not None})
    cli_values = {
        "num_trees": args.num_trees,
        "num_features": args.num_features,
        "method": args.method,
        "seed": args.seed,
        "n_jobs": args.jobs,
    }
    values.update({k: v for k, v in cli_values.items() if v is not None})
    seed = values.setdefault("seed", RandomForestParms.seed)

    dataset = load_dataset(args, seed)
    train, test = train_test_split(dataset, args.test_size, seed, stratify=True)
    parms = RandomForestParms.for_dataset(train, **values)

    useful = get_useful_features(train)
    logger.info("%d of %d features are useful.", useful.size, train.num_features)
    if args.ranking is not None:
        if train.feature_names is None:
            raise ValueError("rooted selection needs named features")
        factories = RootedFactoryStream(
            seed,
            train.feature_names,
            read_ranking(args.ranking),
            parms.num_trees,
            eligible=useful,
        )
    else:
        factories = NormalFactoryStream(seed, useful, parms.num_trees)

    t0 = time.perf_counter()
    forest = RandomForest(
        train,
        parms,
        factories,
        progress=lambda done, total: logger.debug("%d of %d trees built.", done, total),
    )
    fit_time = time.perf_counter() - t0

    logger.info("Fit time: %.3f seconds.", fit_time)
    logger.info("Training accuracy: %.4f", forest.get_accuracy(train))
    logger.info("Out-of-bag accuracy: %.4f", forest.oob_accuracy(train))
    logger.info("Testing accuracy: %.4f", forest.get_accuracy(test))

    impact = forest.compute_impact()
    names = train.feature_names or [str(i) for i in range(train.num_features)]
    for idx in np.argsort(-impact, kind="stable")[:10]:
        logger.info("Impact of %s is %.4f.", names[idx], impact[idx])

    if args.folds > 1:
        iqr = cross_validate(parms, dataset, args.folds)
        logger.info("Cross-validation IQR over %d folds: %.4f", args.folds, iqr)

    if args.save is not None:
        forest.save(args.save)


if __name__ == "__main__":
    main()
