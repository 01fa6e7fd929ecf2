"""
Purpose: This module contains the core functions that transform the ordered records into the
tensor-ready arrays required by the model.

Content:

- fit_vocabulary(), cyclical_hour(), encode_features()   -> feature encoding
- fit_scaler(), apply_scaler(), inverse_scale_labels()   -> min-max scaling (train-only statistics)
- build_windows(), expected_window_count()               -> lookback/horizon windows

Scaler and CategoryVocabulary are immutable values: they are returned by the fitting functions
and passed explicitly to whatever applies them.
"""

import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.preprocessing import MinMaxScaler

from .config import CATEGORICAL_FIELDS, CYCLICAL_FIELDS, HORIZON, LOOKBACK, NUMERIC_FIELDS


# -------- Categorical vocabulary --------

@dataclass(frozen=True)
class CategoryVocabulary:
    """Sorted observed values per categorical field; fixes one-hot width and column order."""
    categories: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)

    def __post_init__(self):
        frozen = MappingProxyType({name: tuple(values) for name, values in self.categories.items()})
        object.__setattr__(self, "categories", frozen)

    __hash__ = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Sequence[str]]) -> "CategoryVocabulary":
        return cls({name: tuple(values) for name, values in payload.items()})

    def values_for(self, name: str) -> Tuple[str, ...]:
        return self.categories.get(name, ())

    @property
    def width(self) -> int:
        return sum(len(values) for values in self.categories.values())

    def feature_names(self) -> List[str]:
        return [f"{name}_{value}" for name in CATEGORICAL_FIELDS for value in self.values_for(name)]

    def as_dict(self) -> Dict[str, List[str]]:
        return {name: list(values) for name, values in self.categories.items()}


def fit_vocabulary(records: pd.DataFrame) -> CategoryVocabulary:
    return CategoryVocabulary(
        {name: tuple(sorted(records[name].astype(str).unique())) for name in CATEGORICAL_FIELDS}
    )


# -------- Feature encoding --------

@dataclass(frozen=True, eq=False)
class EncodedSeries:
    """Row-aligned features (N, F), labels (N,) and epoch-ms timestamps (N,)."""
    features: np.ndarray
    labels: np.ndarray
    timestamps: np.ndarray
    feature_names: Tuple[str, ...]

    def __len__(self) -> int:
        return len(self.labels)

    def take(self, rows: slice) -> "EncodedSeries":
        return EncodedSeries(self.features[rows], self.labels[rows], self.timestamps[rows], self.feature_names)


def cyclical_hour(hour) -> Tuple[np.ndarray, np.ndarray]:
    """
    Encode hour-of-day on the unit circle so that 23h and 0h are neighbours.

    angle = 2*pi*(hour mod 24)/24 ; returns (sin(angle), cos(angle)).
    """
    angle = 2 * np.pi * np.mod(np.asarray(hour, dtype=float), 24) / 24.0
    return np.sin(angle), np.cos(angle)


def encode_features(records: pd.DataFrame, vocabulary: CategoryVocabulary) -> EncodedSeries:
    """
    Expand each record into [numeric..., hour_sin, hour_cos, one-hot(season)..., one-hot(holiday)...,
    one-hot(functioning_day)...], keeping the record order.

    A categorical value missing from the vocabulary leaves its one-hot group all zero.
    """
    numeric = records[NUMERIC_FIELDS].to_numpy(dtype=float)
    hour_sin, hour_cos = cyclical_hour(records["hour"].to_numpy())

    one_hot = []
    for name in CATEGORICAL_FIELDS:
        observed = records[name].astype(str).to_numpy()
        for value in vocabulary.values_for(name):
            one_hot.append((observed == value).astype(float))

    columns = [numeric, hour_sin[:, None], hour_cos[:, None]]
    if one_hot:
        columns.append(np.column_stack(one_hot))
    features = np.hstack(columns)

    feature_names = tuple(NUMERIC_FIELDS + CYCLICAL_FIELDS + vocabulary.feature_names())
    return EncodedSeries(
        features=features,
        labels=records["label"].to_numpy(dtype=float),
        timestamps=records["timestamp"].to_numpy(dtype=np.int64),
        feature_names=feature_names,
    )


# -------- Min-max scaling --------

def _min_max_scale(values: np.ndarray, lo, hi) -> np.ndarray:
    span = np.asarray(hi, dtype=float) - np.asarray(lo, dtype=float)
    safe_span = np.where(span > 0, span, 1.0)
    scaled = (np.asarray(values, dtype=float) - lo) / safe_span
    return np.where(span > 0, scaled, 0.0)


def _finite_min_max(values: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Column-wise data_min_/data_max_ of a MinMaxScaler fitted on the finite entries only.
    A column without any finite entry gets (0, 0).
    """
    values = np.asarray(values, dtype=float)
    if values.ndim == 1:
        values = values.reshape(-1, 1)
    # MinMaxScaler skips NaN but rejects inf
    masked = np.where(np.isfinite(values), values, np.nan)
    empty = np.isnan(masked).all(axis=0)
    masked[:, empty] = 0.0
    fitted = MinMaxScaler().fit(masked)
    return fitted.data_min_, fitted.data_max_


@dataclass(frozen=True, eq=False)
class Scaler:
    """
    Per-feature-column and label min/max fitted on the training partition.

    Immutable once built: the arrays are copied and made read-only, and the same instance is
    applied to the training and the test partition.
    """
    feature_min: np.ndarray
    feature_max: np.ndarray
    label_min: float
    label_max: float
    feature_names: Tuple[str, ...] = ()

    def __post_init__(self):
        for name in ("feature_min", "feature_max"):
            arr = np.array(getattr(self, name), dtype=float)
            arr.setflags(write=False)
            object.__setattr__(self, name, arr)
        object.__setattr__(self, "label_min", float(self.label_min))
        object.__setattr__(self, "label_max", float(self.label_max))

        if self.feature_min.shape != self.feature_max.shape:
            raise ValueError("feature_min and feature_max must have the same shape.")
        names = tuple(self.feature_names) or tuple(f"feature_{i}" for i in range(self.feature_min.size))
        if len(names) != self.feature_min.size:
            raise ValueError(
                f"Got {len(names)} feature names for {self.feature_min.size} scaled columns."
            )
        object.__setattr__(self, "feature_names", names)

    def __eq__(self, other):
        if not isinstance(other, Scaler):
            return NotImplemented
        return (
            np.array_equal(self.feature_min, other.feature_min)
            and np.array_equal(self.feature_max, other.feature_max)
            and self.label_min == other.label_min
            and self.label_max == other.label_max
            and self.feature_names == other.feature_names
        )

    __hash__ = None

    def transform_features(self, features: np.ndarray) -> np.ndarray:
        return _min_max_scale(features, self.feature_min, self.feature_max)

    def transform_labels(self, labels: np.ndarray) -> np.ndarray:
        return _min_max_scale(labels, self.label_min, self.label_max)

    def inverse_transform_labels(self, scaled: np.ndarray) -> np.ndarray:
        """Exact inverse of transform_labels; a degenerate scaler (max == min) always returns min."""
        span = self.label_max - self.label_min
        scaled = np.asarray(scaled, dtype=float)
        if span <= 0:
            return np.full_like(scaled, self.label_min)
        return scaled * span + self.label_min

    def as_dict(self) -> Dict[str, object]:
        return {
            "features": {
                name: {"min": float(lo), "max": float(hi)}
                for name, lo, hi in zip(self.feature_names, self.feature_min, self.feature_max)
            },
            "label": {"min": self.label_min, "max": self.label_max},
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Dict]) -> "Scaler":
        features = payload["features"]
        names = list(features.keys())
        return cls(
            feature_min=[features[n]["min"] for n in names],
            feature_max=[features[n]["max"] for n in names],
            label_min=payload["label"]["min"],
            label_max=payload["label"]["max"],
            feature_names=names,
        )


def fit_scaler(features: np.ndarray, labels: np.ndarray, feature_names: Sequence[str] = ()) -> Scaler:
    """Fit min/max statistics. Callers pass the training partition only."""
    features = np.asarray(features, dtype=float)
    labels = np.asarray(labels, dtype=float)
    if features.shape[0] == 0:
        raise ValueError("Cannot fit a scaler on an empty training partition.")
    feature_min, feature_max = _finite_min_max(features)
    label_min, label_max = _finite_min_max(labels)
    return Scaler(feature_min, feature_max, float(label_min[0]), float(label_max[0]), tuple(feature_names))


def apply_scaler(series: EncodedSeries, scaler: Scaler) -> EncodedSeries:
    return EncodedSeries(
        features=scaler.transform_features(series.features),
        labels=scaler.transform_labels(series.labels),
        timestamps=series.timestamps,
        feature_names=series.feature_names,
    )


def inverse_scale_labels(scaled: np.ndarray, scaler: Scaler) -> np.ndarray:
    """Map normalized labels or predictions back to rentals per hour."""
    return scaler.inverse_transform_labels(scaled)


# -------- Windows --------

@dataclass(frozen=True, eq=False)
class WindowBatch:
    """
    inputs:  (n, lookback, F) normalized features covering [t - lookback, t)
    targets: (n, horizon)     normalized labels covering [t, t + horizon)
    anchors: (n,)             timestamp of step t, the first predicted hour
    """
    inputs: np.ndarray
    targets: np.ndarray
    anchors: np.ndarray

    def __len__(self) -> int:
        return self.inputs.shape[0]


def expected_window_count(n_rows: int, lookback: int, horizon: int, stride: int) -> int:
    if n_rows < lookback + horizon:
        return 0
    return math.floor((n_rows - lookback - horizon) / stride) + 1


def build_windows(
    features: np.ndarray,
    labels: np.ndarray,
    timestamps: np.ndarray,
    lookback: int = LOOKBACK,
    horizon: int = HORIZON,
    stride: int = 1,
) -> WindowBatch:
    """
    Sliding window generator over one partition.

    Start indices t run from ``lookback`` in steps of ``stride`` while t + horizon <= M.
    Training uses stride 1 (overlapping samples); test uses stride = horizon so that the
    forecast blocks tile the test period without double counting.

    A partition shorter than lookback + horizon yields zero windows.
    """
    if lookback <= 0 or horizon <= 0 or stride <= 0:
        raise ValueError("lookback, horizon and stride must be positive integers.")
    features = np.asarray(features, dtype=float)
    labels = np.asarray(labels, dtype=float)
    timestamps = np.asarray(timestamps, dtype=np.int64)
    n_rows = labels.shape[0]
    if features.shape[0] != n_rows or timestamps.shape[0] != n_rows:
        raise ValueError(
            f"features, labels and timestamps must have equal length, got "
            f"{features.shape[0]}, {n_rows}, {timestamps.shape[0]}"
        )
    n_features = features.shape[1] if features.ndim == 2 else 0

    starts = list(range(lookback, n_rows - horizon + 1, stride))
    if not starts:
        return WindowBatch(
            np.empty((0, lookback, n_features)),
            np.empty((0, horizon)),
            np.empty((0,), dtype=np.int64),
        )

    inputs = np.stack([features[t - lookback:t] for t in starts], axis=0)
    targets = np.stack([labels[t:t + horizon] for t in starts], axis=0)
    anchors = timestamps[starts]
    return WindowBatch(inputs, targets, anchors)


__all__ = [
    "CategoryVocabulary", "EncodedSeries", "Scaler", "WindowBatch",
    "fit_vocabulary", "cyclical_hour", "encode_features",
    "fit_scaler", "apply_scaler", "inverse_scale_labels",
    "build_windows", "expected_window_count",
]
