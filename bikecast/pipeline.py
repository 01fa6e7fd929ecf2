"""
Contains the high-level functions and the class that orchestrate the end-to-end process for a single run:
raw file -> prepared dataset -> trained model -> scored test forecasts.

- prepare_dataset() and its file/text/async front doors
- class BikeDemandPipeline
"""
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence, Union

import pandas as pd
import torch.nn as nn
from torch.utils.data import DataLoader

from .config import (
    DATE_FORMATS,
    HORIZON,
    LOOKBACK,
    TRAIN_FRACTION,
    TRAIN_STRIDE,
    VOCABULARY_SCOPE,
    VOCABULARY_SCOPES,
    resolve_config,
)
from .data_preparation import (
    chronological_split,
    normalize_records,
    parse_csv_text,
    read_source_text,
    read_source_text_async,
    split_index,
)
from .dataset import DatasetSlot, PreparedDataset
from .engine import EpochCallback, evaluate_model, train_model
from .errors import EmptyDatasetError, SkippedRows
from .models import DemandLSTM
from .preprocessing import apply_scaler, build_windows, encode_features, fit_scaler, fit_vocabulary
from .utils import DataManager, ExperimentTracker

# Setup logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def prepare_dataset(
    raw: pd.DataFrame,
    lookback: int = LOOKBACK,
    horizon: int = HORIZON,
    train_fraction: float = TRAIN_FRACTION,
    vocabulary_scope: str = VOCABULARY_SCOPE,
    train_stride: int = TRAIN_STRIDE,
    test_stride: Optional[int] = None,
    date_formats: Iterable[str] = DATE_FORMATS,
    parse_skipped: Optional[SkippedRows] = None,
) -> PreparedDataset:
    """
    Run stages normalize -> encode -> split -> scale -> window on parsed records.

    Either a complete dataset comes back or an exception is raised; nothing partial.

    Raises:
        EmptyDatasetError: no valid rows, fewer than lookback + horizon + 1 of them, or a training
            partition too short for a single window.
    """
    if vocabulary_scope not in VOCABULARY_SCOPES:
        raise ValueError(f"vocabulary_scope must be one of {VOCABULARY_SCOPES}, got {vocabulary_scope!r}")
    test_stride = horizon if test_stride is None else test_stride

    records, skipped = normalize_records(raw, date_formats=date_formats, min_rows=lookback + horizon + 1)
    if parse_skipped is not None:
        skipped.field_count += parse_skipped.field_count

    minimum_rows = lookback + horizon + 1
    if len(records) < minimum_rows:
        raise EmptyDatasetError(
            f"Need at least {minimum_rows} valid hourly rows (lookback + horizon + 1), "
            f"found {len(records)}."
        )

    # Vocabulary first: with the "train" scope it must only see the training prefix.
    cut = split_index(len(records), train_fraction)
    vocabulary = fit_vocabulary(records if vocabulary_scope == "full" else records.iloc[:cut])
    encoded = encode_features(records, vocabulary)
    train, test = chronological_split(encoded, train_fraction)

    if len(train) < lookback + horizon:
        raise EmptyDatasetError(
            f"Training partition has {len(train)} rows, fewer than lookback + horizon = "
            f"{lookback + horizon}; at least {minimum_rows} valid rows are needed overall "
            f"and a larger train_fraction may be required."
        )

    # --- Feature scaling (fit on TRAIN only) ---
    scaler = fit_scaler(train.features, train.labels, encoded.feature_names)
    train_scaled = apply_scaler(train, scaler)
    test_scaled = apply_scaler(test, scaler)

    train_windows = build_windows(
        train_scaled.features, train_scaled.labels, train_scaled.timestamps,
        lookback=lookback, horizon=horizon, stride=train_stride,
    )
    test_windows = build_windows(
        test_scaled.features, test_scaled.labels, test_scaled.timestamps,
        lookback=lookback, horizon=horizon, stride=test_stride,
    )
    if len(test_windows) == 0:
        logger.warning(
            "Test partition (%d rows) is too short for a single window; evaluation will be skipped.",
            len(test),
        )

    logger.info(
        "Prepared %d train windows and %d test windows with %d features",
        len(train_windows), len(test_windows), len(encoded.feature_names),
    )
    if skipped.total:
        logger.warning("Skipped rows: %s", skipped.as_dict())

    return PreparedDataset(
        train=train_windows,
        test=test_windows,
        feature_names=encoded.feature_names,
        scaler=scaler,
        vocabulary=vocabulary,
        lookback=lookback,
        horizon=horizon,
        skipped=skipped,
        n_records=len(records),
    )


def prepare_dataset_from_text(text: str, **kwargs) -> PreparedDataset:
    raw, parse_skipped = parse_csv_text(text)
    return prepare_dataset(raw, parse_skipped=parse_skipped, **kwargs)


def prepare_dataset_from_file(path: Union[str, Path], **kwargs) -> PreparedDataset:
    return prepare_dataset_from_text(read_source_text(path), **kwargs)


async def prepare_dataset_from_file_async(path: Union[str, Path], **kwargs) -> PreparedDataset:
    """Await the file read, then run the synchronous stages to completion."""
    text = await read_source_text_async(path)
    return prepare_dataset_from_text(text, **kwargs)


# Main Pipeline

class BikeDemandPipeline:
    """Complete pipeline for bike-demand forecasting experiments"""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = resolve_config(config)
        self.slot = DatasetSlot()
        self.model: Optional[nn.Module] = None
        self.history: Optional[Dict] = None

    @property
    def dataset(self) -> Optional[PreparedDataset]:
        return self.slot.current

    def load(self, path: Union[str, Path]) -> PreparedDataset:
        """Replace the current dataset with one built from ``path``."""
        # The previous tensors go before the new ones are built.
        self.reset()
        dataset = prepare_dataset_from_file(
            path,
            lookback=self.config["lookback"],
            horizon=self.config["horizon"],
            train_fraction=self.config["train_fraction"],
            vocabulary_scope=self.config["vocabulary_scope"],
        )
        self.slot.replace(dataset)
        return dataset

    def load_cached(self, filename_prefix: Optional[str] = None) -> PreparedDataset:
        """Replace the current dataset with windows previously saved by DataManager."""
        self.reset()
        dataset = DataManager(self.config["data_dir"]).load_dataset(
            filename_prefix or self.config["data_prefix"]
        )
        if (dataset.lookback, dataset.horizon) != (self.config["lookback"], self.config["horizon"]):
            logger.warning(
                "Cached windows use lookback=%d/horizon=%d, config asks for %d/%d; using the cache.",
                dataset.lookback, dataset.horizon, self.config["lookback"], self.config["horizon"],
            )
            self.config["lookback"], self.config["horizon"] = dataset.lookback, dataset.horizon
        self.slot.replace(dataset)
        return dataset

    def reset(self):
        self.slot.reset()
        self.model = None
        self.history = None

    def create_model(self, input_size: int) -> nn.Module:
        model_type = self.config.get("model_type", "LSTM")
        model_config = self.config.get("model_config", {})
        if model_type == "LSTM":
            return DemandLSTM(
                input_size=input_size,
                horizon=self.config["horizon"],
                hidden_sizes=model_config.get("hidden_sizes", (64, 32)),
                dropout=model_config.get("dropout", 0.2),
            )
        raise ValueError(f"Unknown model type: {model_type}")

    def _require_dataset(self) -> PreparedDataset:
        if self.dataset is None:
            raise RuntimeError("No dataset loaded. Call load() first.")
        return self.dataset

    def train(self, callbacks: Sequence[EpochCallback] = ()) -> Dict:
        dataset = self._require_dataset()
        batch_size = self.config["batch_size"]

        with dataset.borrow():
            train_loader = DataLoader(dataset.train_dataset(), batch_size=batch_size,
                                      shuffle=self.config["shuffle"])
            val_loader = DataLoader(dataset.test_dataset(), batch_size=batch_size, shuffle=False)

            self.model = self.create_model(dataset.num_features)
            logger.info(f"Model parameters: {sum(p.numel() for p in self.model.parameters()):,}")

            self.history = train_model(
                self.model,
                train_loader,
                val_loader,
                num_epochs=self.config["num_epochs"],
                learning_rate=self.config["learning_rate"],
                device=self.config["device"],
                callbacks=callbacks,
                log_every=self.config["log_every"],
                early_stopping_patience=self.config["early_stopping_patience"],
            )
        return self.history

    def evaluate(self):
        dataset = self._require_dataset()
        if self.model is None:
            raise RuntimeError("No trained model. Call train() first.")
        return evaluate_model(self.model, dataset, device=self.config["device"])

    def run(self, path: Optional[Union[str, Path]] = None, callbacks: Sequence[EpochCallback] = (),
            save_arrays: bool = False, from_cache: bool = False):
        """
        Load, train, evaluate and record one experiment.

        With ``from_cache`` the windows written by 01_prepare_data.py are used instead of
        parsing ``path`` again.
        """
        if path is None and not from_cache:
            raise ValueError("Either an input path or from_cache=True is required.")
        tracker = ExperimentTracker(
            experiment_name=self.config["experiment_name"],
            base_dir=self.config["experiments_dir"],
        )
        source = f"cache:{self.config['data_prefix']}" if from_cache else str(path)
        tracker.save_config({**self.config, "input_csv": source})

        logger.info("Loading data...")
        if from_cache:
            dataset = self.load_cached()
        else:
            dataset = self.load(path)
            if save_arrays:
                DataManager(self.config["data_dir"]).save_dataset(
                    dataset, filename_prefix=self.config["data_prefix"], metadata={"input_csv": source}
                )

        history = self.train(callbacks=callbacks)
        tracker.save_training_history(history)

        metrics, _, _, frame = self.evaluate()
        tracker.save_metrics(metrics, split="test")
        tracker.save_predictions(frame, split="test")

        summary = tracker.summarize_results(extra={"dataset": dataset.summary()})
        logger.info("\n=== Experiment Summary ===")
        for name in ("MAE", "RMSE", "MAPE"):
            value = metrics.get(name)
            logger.info(f"  {name}: {value:.4f}" if value is not None else f"  {name}: n/a")
        return summary
