"""
This module contains high-level "manager" or "helper" classes that are used throughout the pipeline to manage workflow, not to transform data.

Contents:
- class DataManager
- class ExperimentTracker
"""
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd

from .dataset import PreparedDataset
from .errors import SkippedRows
from .preprocessing import CategoryVocabulary, Scaler, WindowBatch

logger = logging.getLogger(__name__)

_ARRAY_KEYS = ("train_X", "train_Y", "test_X", "test_Y", "train_anchors", "test_anchors")


def _jsonable(o):
    if isinstance(o, (np.floating, np.integer)):
        return o.item()
    if isinstance(o, (np.ndarray,)):
        return o.tolist()
    if isinstance(o, dict):
        return {k: _jsonable(v) for k, v in o.items()}
    if isinstance(o, (list, tuple)):
        return [_jsonable(v) for v in o]
    return o


class DataManager:
    """Handles saving and loading of prepared window arrays.

    Creating a DataManager only fixes the directory where arrays and their metadata live;
    the directory is created if it does not exist yet.
    """

    def __init__(self, data_dir: str = "data"):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def save_dataset(
        self,
        dataset: PreparedDataset,
        filename_prefix: str = "bike_windows",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Path:
        """Save the window tensors as .npy files plus a JSON metadata file."""
        with dataset.borrow():
            arrays = {
                "train_X": dataset.train_X.numpy(),
                "train_Y": dataset.train_Y.numpy(),
                "test_X": dataset.test_X.numpy(),
                "test_Y": dataset.test_Y.numpy(),
                "train_anchors": dataset.train_anchors,
                "test_anchors": dataset.test_anchors,
            }
        for key, arr in arrays.items():
            np.save(self.data_dir / f"{filename_prefix}_{key}.npy", arr)

        metadata_payload = {
            "saved_at": datetime.now().isoformat(),
            "shapes": {key: list(arr.shape) for key, arr in arrays.items()},
            "feature_names": list(dataset.feature_names),
            "scaler": dataset.scaler.as_dict(),
            "vocabulary": dataset.vocabulary.as_dict(),
            **dataset.summary(),
        }
        if metadata is not None:
            metadata_payload.update(metadata)

        metadata_path = self.data_dir / f"{filename_prefix}_metadata.json"
        with open(metadata_path, 'w') as f:
            json.dump(_jsonable(metadata_payload), f, indent=2)

        logger.info(f"Saved arrays to {self.data_dir}/{filename_prefix}_*.npy")
        logger.info(f"train_X shape: {arrays['train_X'].shape}, test_X shape: {arrays['test_X'].shape}")
        return metadata_path

    def load_arrays(self, filename_prefix: str = "bike_windows"):
        """Load saved arrays and metadata. Returns (arrays dict, metadata dict)."""
        arrays = {key: np.load(self.data_dir / f"{filename_prefix}_{key}.npy") for key in _ARRAY_KEYS}

        metadata: Dict[str, Any] = {}
        metadata_path = self.data_dir / f"{filename_prefix}_metadata.json"
        if metadata_path.exists():
            with open(metadata_path, 'r') as f:
                metadata = json.load(f)
        else:
            logger.warning("Metadata file %s missing; returning arrays only.", metadata_path)

        logger.info(f"Loaded arrays from {self.data_dir}/{filename_prefix}_*.npy")
        return arrays, metadata

    def load_dataset(self, filename_prefix: str = "bike_windows") -> PreparedDataset:
        """Rebuild a PreparedDataset (windows, scaler, vocabulary) from a saved prefix."""
        arrays, metadata = self.load_arrays(filename_prefix)
        if not metadata:
            raise FileNotFoundError(
                f"Metadata for '{filename_prefix}' not found in {self.data_dir}; "
                f"the scaler cannot be restored without it."
            )
        skipped = metadata.get("skipped_rows", {})
        return PreparedDataset(
            train=WindowBatch(arrays["train_X"], arrays["train_Y"], arrays["train_anchors"]),
            test=WindowBatch(arrays["test_X"], arrays["test_Y"], arrays["test_anchors"]),
            feature_names=tuple(metadata["feature_names"]),
            scaler=Scaler.from_dict(metadata["scaler"]),
            vocabulary=CategoryVocabulary.from_dict(metadata["vocabulary"]),
            lookback=int(metadata["lookback"]),
            horizon=int(metadata["horizon"]),
            skipped=SkippedRows(
                field_count=int(skipped.get("field_count", 0)),
                invalid_value=int(skipped.get("invalid_value", 0)),
            ),
            n_records=int(metadata.get("n_records", 0)),
        )


class ExperimentTracker:
    """Track experiments and save their results.

    Every run gets its own timestamped folder, so configuration, training history, metrics and
    predictions of one run always sit together.
    """

    def __init__(self, experiment_name: str, base_dir: str = "experiments"):
        self.experiment_name = experiment_name
        self.timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.exp_dir = Path(base_dir) / f"{experiment_name}_{self.timestamp}"
        self.exp_dir.mkdir(parents=True, exist_ok=True)

        self.config: Dict[str, Any] = {}
        self.results: Dict[str, Any] = {}

    def save_config(self, config: Dict):
        """Save experiment configuration."""
        self.config = config
        with open(self.exp_dir / "config.json", 'w') as f:
            json.dump(_jsonable(config), f, indent=2)

    def save_training_history(self, history: Dict):
        with open(self.exp_dir / "history.json", 'w') as f:
            json.dump(_jsonable(history), f)

    def save_metrics(self, metrics: Dict, split: str = "test"):
        with open(self.exp_dir / f"metrics_{split}.json", 'w') as f:
            json.dump(_jsonable(metrics), f, indent=2)
        self.results[split] = metrics

    def save_predictions(self, frame: pd.DataFrame, split: str = "test"):
        """Persist the chronological actual-vs-predicted table."""
        if frame.empty:
            logger.warning("Prediction table for %s is empty; nothing to save.", split)
            return None
        path = self.exp_dir / f"predictions_{split}.csv"
        frame.to_csv(path, index=False)
        return path

    def summarize_results(self, extra: Optional[Dict[str, Any]] = None):
        summary = {
            "experiment": self.experiment_name,
            "timestamp": self.timestamp,
            "config": self.config,
            "results": self.results,
        }
        if extra:
            summary.update(extra)
        with open(self.exp_dir / "summary.json", 'w') as f:
            json.dump(_jsonable(summary), f, indent=2)
        return summary
