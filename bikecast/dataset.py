"""
Purpose: To bridge the gap between the prepared NumPy windows and the PyTorch framework.

- class WindowDataset      -> serves (input window, target block) pairs to a DataLoader
- class PreparedDataset    -> owns the materialized tensors of one pipeline run
- class DatasetSlot        -> holds the current PreparedDataset; replacing it releases the old one
"""

import logging
from contextlib import contextmanager
from typing import Dict, Optional, Tuple

import numpy as np
import torch
from torch.utils.data import Dataset

from .errors import SkippedRows
from .preprocessing import CategoryVocabulary, Scaler, WindowBatch

logger = logging.getLogger(__name__)


class WindowDataset(Dataset):
    """
    Dataset over already-normalized windows:
      X: (N, lookback, F)
      Y: (N, horizon)
    """

    def __init__(self, X: torch.Tensor, Y: torch.Tensor):
        if X.shape[0] != Y.shape[0]:
            raise ValueError(f"X and Y disagree on sample count: {X.shape[0]} vs {Y.shape[0]}")
        self.X = X
        self.Y = Y

    def __len__(self):
        return self.X.shape[0]

    def __getitem__(self, idx):
        return self.X[idx], self.Y[idx]


def _as_tensor(arr: np.ndarray) -> torch.Tensor:
    return torch.from_numpy(np.ascontiguousarray(arr, dtype=np.float32))


class PreparedDataset:
    """
    The complete product of one load: train/test window tensors, feature names, the fitted
    scaler and vocabulary, and the anchor timestamps needed to put test forecasts back on a
    time axis.

    The instance owns its tensors. ``release()`` drops them exactly once; it refuses while the
    dataset is borrowed by a training or prediction call (see ``borrow()``).
    """

    def __init__(
        self,
        train: WindowBatch,
        test: WindowBatch,
        feature_names: Tuple[str, ...],
        scaler: Scaler,
        vocabulary: CategoryVocabulary,
        lookback: int,
        horizon: int,
        skipped: Optional[SkippedRows] = None,
        n_records: int = 0,
    ):
        self.feature_names = tuple(feature_names)
        self.scaler = scaler
        self.vocabulary = vocabulary
        self.lookback = lookback
        self.horizon = horizon
        self.skipped = skipped or SkippedRows()
        self.n_records = n_records
        self.train_anchors = np.asarray(train.anchors, dtype=np.int64)
        self.test_anchors = np.asarray(test.anchors, dtype=np.int64)

        self._tensors: Optional[Dict[str, torch.Tensor]] = {
            "train_X": _as_tensor(train.inputs),
            "train_Y": _as_tensor(train.targets),
            "test_X": _as_tensor(test.inputs),
            "test_Y": _as_tensor(test.targets),
        }
        self._borrowers = 0

    # --- tensor access ---

    def _tensor(self, key: str) -> torch.Tensor:
        if self._tensors is None:
            raise RuntimeError("Dataset has been released; load a new file to continue.")
        return self._tensors[key]

    @property
    def train_X(self) -> torch.Tensor:
        return self._tensor("train_X")

    @property
    def train_Y(self) -> torch.Tensor:
        return self._tensor("train_Y")

    @property
    def test_X(self) -> torch.Tensor:
        return self._tensor("test_X")

    @property
    def test_Y(self) -> torch.Tensor:
        return self._tensor("test_Y")

    @property
    def num_features(self) -> int:
        return len(self.feature_names)

    @property
    def num_train_windows(self) -> int:
        return len(self.train_anchors)

    @property
    def num_test_windows(self) -> int:
        return len(self.test_anchors)

    def train_dataset(self) -> WindowDataset:
        return WindowDataset(self.train_X, self.train_Y)

    def test_dataset(self) -> WindowDataset:
        return WindowDataset(self.test_X, self.test_Y)

    # --- lifecycle ---

    @property
    def released(self) -> bool:
        return self._tensors is None

    @contextmanager
    def borrow(self):
        """Mark the dataset as in use for the duration of a training or prediction call."""
        if self.released:
            raise RuntimeError("Cannot use a released dataset.")
        self._borrowers += 1
        try:
            yield self
        finally:
            self._borrowers -= 1

    def release(self):
        if self._tensors is None:
            raise RuntimeError("Dataset was already released.")
        if self._borrowers:
            raise RuntimeError("Dataset is in use by a training or prediction call; release it afterwards.")
        self._tensors = None
        logger.info("Released dataset tensors (%d train / %d test windows)",
                    self.num_train_windows, self.num_test_windows)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if not self.released:
            self.release()
        return False

    def summary(self) -> Dict[str, object]:
        return {
            "n_records": self.n_records,
            "train_windows": self.num_train_windows,
            "test_windows": self.num_test_windows,
            "lookback": self.lookback,
            "horizon": self.horizon,
            "num_features": self.num_features,
            "skipped_rows": self.skipped.as_dict(),
        }


class DatasetSlot:
    """Single owner of the current dataset. Putting a new one in drops the previous one."""

    def __init__(self):
        self._current: Optional[PreparedDataset] = None

    @property
    def current(self) -> Optional[PreparedDataset]:
        return self._current

    def replace(self, dataset: Optional[PreparedDataset]) -> None:
        previous = self._current
        if previous is not None and previous is not dataset and not previous.released:
            previous.release()
        self._current = dataset

    def reset(self) -> None:
        self.replace(None)
