from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Sequence

import numpy as np
import pandas as pd

from exceptions import DatasetError

logger = logging.getLogger(__name__)


def _frozen(array: np.ndarray) -> np.ndarray:
    array = np.ascontiguousarray(array)
    array.setflags(write=False)
    return array


class Dataset:
    """Immutable feature matrix with a one-hot (or scalar) label matrix.

    The arrays are flagged read-only so a single instance can be shared by
    every tree of a forest while they are built concurrently.
    """

    def __init__(
        self,
        features: np.ndarray,
        labels: np.ndarray,
        metadata: Sequence[Any] | None = None,
        feature_names: Sequence[str] | None = None,
        label_names: Sequence[str] | None = None,
    ) -> None:
        features = np.array(features, dtype=np.float64)
        labels = np.array(labels, dtype=np.float64)
        if features.ndim != 2:
            raise DatasetError("features must be a 2D array")
        if labels.ndim == 1:
            labels = labels.reshape(-1, 1)
        if labels.ndim != 2:
            raise DatasetError("labels must be a 1D or 2D array")
        if labels.shape[0] != features.shape[0]:
            raise DatasetError(
                f"{labels.shape[0]} label rows do not match {features.shape[0]} feature rows"
            )
        if labels.shape[1] > 1 and labels.shape[0] > 0:
            sums = labels.sum(axis=1)
            bad = np.flatnonzero(np.abs(sums - 1.0) > 1e-6)
            if bad.size > 0:
                raise DatasetError(f"label row {int(bad[0])} does not sum to 1")
        if metadata is not None and len(metadata) != features.shape[0]:
            raise DatasetError("metadata must have one entry per row")
        if feature_names is not None and len(feature_names) != features.shape[1]:
            raise DatasetError("feature_names must have one entry per column")
        if label_names is not None and len(label_names) != labels.shape[1]:
            raise DatasetError("label_names must have one entry per label column")

        self._features = _frozen(features)
        self._labels = _frozen(labels)
        self._metadata = tuple(metadata) if metadata is not None else None
        self._feature_names = tuple(feature_names) if feature_names is not None else None
        self._label_names = tuple(label_names) if label_names is not None else None
        if self.is_classification:
            self._label_indices = _frozen(np.argmax(self._labels, axis=1).astype(np.int32))
        else:
            self._label_indices = None

    @classmethod
    def from_class_indices(
        cls,
        features: np.ndarray,
        y: np.ndarray,
        num_classes: int | None = None,
        **kwargs: Any,
    ) -> Dataset:
        y = np.asarray(y, dtype=np.int64)
        if y.ndim != 1:
            raise DatasetError("class indices must be a 1D array")
        if y.size > 0 and y.min() < 0:
            raise DatasetError("class indices must be non-negative")
        if num_classes is None:
            num_classes = int(y.max()) + 1 if y.size > 0 else 0
        if y.size > 0 and int(y.max()) >= num_classes:
            raise DatasetError("class index out of range")
        labels = np.zeros((y.size, num_classes), dtype=np.float64)
        labels[np.arange(y.size), y] = 1.0
        return cls(features, labels, **kwargs)

    @property
    def features(self) -> np.ndarray:
        return self._features

    @property
    def labels(self) -> np.ndarray:
        return self._labels

    @property
    def metadata(self) -> tuple | None:
        return self._metadata

    @property
    def feature_names(self) -> tuple[str, ...] | None:
        return self._feature_names

    @property
    def label_names(self) -> tuple[str, ...] | None:
        return self._label_names

    @property
    def rows(self) -> int:
        return int(self._features.shape[0])

    @property
    def num_features(self) -> int:
        return int(self._features.shape[1])

    @property
    def num_classes(self) -> int:
        return int(self._labels.shape[1])

    @property
    def is_classification(self) -> bool:
        return self.num_classes > 1

    @property
    def label_indices(self) -> np.ndarray:
        if self._label_indices is None:
            raise DatasetError("scalar labels have no class indices")
        return self._label_indices

    def __len__(self) -> int:
        return self.rows

    def row(self, i: int) -> tuple[np.ndarray, np.ndarray, Any]:
        meta = self._metadata[i] if self._metadata is not None else None
        return self._features[i], self._labels[i], meta

    def best_label(self) -> int:
        """Majority class over all rows; ties go to the lowest class index."""
        counts = np.bincount(self.label_indices, minlength=self.num_classes)
        return int(np.argmax(counts))

    def select_rows(self, indices: np.ndarray) -> Dataset:
        indices = np.asarray(indices, dtype=np.int64)
        metadata = None
        if self._metadata is not None:
            metadata = [self._metadata[int(i)] for i in indices]
        return Dataset(
            self._features[indices],
            self._labels[indices],
            metadata=metadata,
            feature_names=self._feature_names,
            label_names=self._label_names,
        )

    def restrict_features(self, indices: np.ndarray) -> Dataset:
        indices = np.asarray(indices, dtype=np.int64)
        names = None
        if self._feature_names is not None:
            names = [self._feature_names[int(i)] for i in indices]
        return Dataset(
            self._features[:, indices],
            self._labels,
            metadata=self._metadata,
            feature_names=names,
            label_names=self._label_names,
        )


def load_tabbed(
    path: str | Path,
    label_column: str,
    labels: Sequence[str] | None = None,
    meta_columns: Sequence[str] = (),
) -> Dataset:
    """Load a tab-delimited table with a header line into a Dataset.

    With ``labels`` the label column is one-hot encoded in that order;
    without it the label column is read as a scalar value. Meta columns are
    carried per row and every other column becomes a feature.
    """
    path = Path(path)
    try:
        frame = pd.read_csv(path, sep="\t", dtype=str, keep_default_na=False)
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise DatasetError(f"cannot read {path}: {e}") from e

    missing = [c for c in [label_column, *meta_columns] if c not in frame.columns]
    if missing:
        raise DatasetError(f"{path} is missing columns: {', '.join(missing)}")

    feature_cols = [c for c in frame.columns if c != label_column and c not in meta_columns]
    try:
        features = frame[feature_cols].apply(pd.to_numeric).to_numpy(dtype=np.float64)
    except ValueError as e:
        raise DatasetError(f"non-numeric feature value in {path}: {e}") from e

    raw_labels = frame[label_column].to_numpy()
    if labels is not None:
        positions = {name: i for i, name in enumerate(labels)}
        unknown = sorted({v for v in raw_labels if v not in positions})
        if unknown:
            raise DatasetError(f"unknown labels in {path}: {', '.join(unknown)}")
        y = np.array([positions[v] for v in raw_labels], dtype=np.int64)
        label_matrix = np.zeros((y.size, len(labels)), dtype=np.float64)
        label_matrix[np.arange(y.size), y] = 1.0
        label_names = list(labels)
    else:
        try:
            label_matrix = pd.to_numeric(frame[label_column]).to_numpy(dtype=np.float64)
        except ValueError as e:
            raise DatasetError(f"non-numeric label value in {path}: {e}") from e
        label_names = [label_column]

    metadata = None
    if meta_columns:
        metadata = [tuple(r) for r in frame[list(meta_columns)].itertuples(index=False)]

    logger.info(
        "Read %d rows with %d features from %s.", len(frame), len(feature_cols), path
    )
    return Dataset(
        features,
        label_matrix,
        metadata=metadata,
        feature_names=feature_cols,
        label_names=label_names,
    )
