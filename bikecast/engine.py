"""
The "engine" is responsible for the actual mechanics of training (forward pass, backward pass, optimization, evaluation).
The pipeline will use the engine, but it doesn't need to know the fine details of its operation.
Isolates the logic of a training loop from the rest of the pipeline.
"""
import copy
import logging
from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
import torch
import torch.nn as nn
import torch.nn.functional as F
import torch.optim as optim
from sklearn.metrics import mean_absolute_error, mean_squared_error
from torch.utils.data import DataLoader

from .dataset import PreparedDataset
from .preprocessing import Scaler

logger = logging.getLogger(__name__)

MS_PER_HOUR = 3_600_000


@dataclass
class EpochMetrics:
    """What a progress sink receives after every epoch."""
    epoch: int
    num_epochs: int
    loss: float
    mae: float
    val_loss: Optional[float] = None
    val_mae: Optional[float] = None

    @property
    def progress(self) -> float:
        return 100.0 * self.epoch / max(self.num_epochs, 1)

    def as_dict(self):
        out = asdict(self)
        out["progress"] = self.progress
        return out


EpochCallback = Callable[[EpochMetrics], None]


def _move_to_device(obj, device):
    """Recursively move tensors (or collections of tensors) to device."""
    if torch.is_tensor(obj):
        return obj.to(device)
    if isinstance(obj, (list, tuple)):
        return type(obj)(_move_to_device(v, device) for v in obj)
    return obj


def _extract_xy(batch):
    """Accept (X, Y) or [X, Y]. Returns (X_tensor, Y_tensor)."""
    if isinstance(batch, (list, tuple)) and len(batch) == 2:
        return batch[0], batch[1]
    raise TypeError("Batch format not recognized. Expected (X, Y).")


def _run_epoch(model, loader, criterion, device, optimizer=None):
    """One pass over ``loader``; trains when an optimizer is given. Returns (avg loss, avg MAE)."""
    training = optimizer is not None
    model.train(training)
    total_loss, total_mae, batches = 0.0, 0.0, 0

    with torch.set_grad_enabled(training):
        for batch in loader:
            Xb, Yb = _extract_xy(batch)
            if not (torch.isfinite(Xb).all() and torch.isfinite(Yb).all()):
                raise ValueError("Non-finite values found in a batch. Check the preprocessing output.")
            Xb, Yb = _move_to_device(Xb, device), _move_to_device(Yb, device)

            if training:
                optimizer.zero_grad()
            outputs = model(Xb)
            loss = criterion(outputs, Yb)
            if training:
                loss.backward()
                # prevents exploding gradients
                torch.nn.utils.clip_grad_norm_(model.parameters(), max_norm=1.0)
                optimizer.step()

            total_loss += loss.item()
            total_mae += F.l1_loss(outputs, Yb).item()
            batches += 1

    return total_loss / max(batches, 1), total_mae / max(batches, 1)


# Training Functions

def train_model(model: nn.Module, train_loader: DataLoader, val_loader: Optional[DataLoader] = None,
                num_epochs: int = 30, learning_rate: float = 0.001, device: str = 'cpu',
                callbacks: Sequence[EpochCallback] = (), log_every: int = 10,
                early_stopping_patience: Optional[int] = None) -> Dict[str, List[float]]:
    """
    Train with Adam on MSE, tracking MAE alongside.

    Each callback is called once per epoch with an EpochMetrics record; the engine does not
    interpret what the callback does with it.

    With ``early_stopping_patience`` set and a non-empty ``val_loader``, training stops after that
    many epochs without a lower validation loss and the best weights are restored.
    """
    device = torch.device(device)
    model = model.to(device)
    criterion = nn.MSELoss()
    optimizer = optim.Adam(model.parameters(), lr=learning_rate)

    history = {'train_loss': [], 'val_loss': [], 'train_mae': [], 'val_mae': []}
    best_val_loss = float('inf')
    best_model_state = None
    patience_counter = 0

    for epoch in range(num_epochs):
        train_loss, train_mae = _run_epoch(model, train_loader, criterion, device, optimizer)
        val_loss = val_mae = None
        if val_loader is not None and len(val_loader.dataset) > 0:
            val_loss, val_mae = _run_epoch(model, val_loader, criterion, device)

        history['train_loss'].append(train_loss)
        history['train_mae'].append(train_mae)
        history['val_loss'].append(val_loss)
        history['val_mae'].append(val_mae)

        record = EpochMetrics(epoch + 1, num_epochs, train_loss, train_mae, val_loss, val_mae)
        for callback in callbacks:
            callback(record)

        if log_every and (epoch + 1) % log_every == 0:
            logger.info(
                f"Epoch [{epoch+1}/{num_epochs}] - "
                f"Train Loss: {train_loss:.6f}, Train MAE: {train_mae:.6f}, "
                f"Val Loss: {val_loss if val_loss is not None else float('nan'):.6f}, "
                f"Val MAE: {val_mae if val_mae is not None else float('nan'):.6f}"
            )

        if early_stopping_patience is not None and val_loss is not None:
            if val_loss < best_val_loss:
                best_val_loss = val_loss
                patience_counter = 0
                best_model_state = copy.deepcopy(model.state_dict())
            else:
                patience_counter += 1
            if patience_counter >= early_stopping_patience:
                logger.info(f"Early stopping at epoch {epoch+1}")
                break

    if best_model_state is not None:
        model.load_state_dict(best_model_state)
    return history


def predict(model: nn.Module, X: torch.Tensor, device: str = 'cpu', batch_size: int = 256) -> np.ndarray:
    """Normalized forecasts, shape (n_windows, horizon)."""
    device = torch.device(device)
    model = model.to(device)
    model.eval()
    outputs = []
    with torch.no_grad():
        for start in range(0, X.shape[0], batch_size):
            Xb = _move_to_device(X[start:start + batch_size], device)
            outputs.append(model(Xb).detach().cpu().numpy())
    if not outputs:
        return np.empty((0, getattr(model, "horizon", 0)), dtype=np.float32)
    return np.concatenate(outputs, axis=0)


def compute_metrics(y_true: np.ndarray, y_pred: np.ndarray, eps: float = 1e-8) -> Dict[str, Optional[object]]:
    """
    MAE, MSE, RMSE and MAPE (in %) between forecasts and truth, both in rentals per hour.

    ``eps`` keeps MAPE defined on hours with zero rentals.
    """
    y_true = np.asarray(y_true, dtype=float)
    y_pred = np.asarray(y_pred, dtype=float)
    if y_true.size == 0:
        logger.info("Skipping metrics calculation for an empty test set.")
        return {"MAE": None, "MSE": None, "RMSE": None, "MAPE": None, "per_horizon_MAE": None}

    mae = mean_absolute_error(y_true.reshape(-1), y_pred.reshape(-1))
    mse = mean_squared_error(y_true.reshape(-1), y_pred.reshape(-1))
    mape = np.mean(np.abs(y_true - y_pred) / (np.abs(y_true) + eps)) * 100.0
    # how accuracy degrades further into the horizon
    per_h_mae = np.mean(np.abs(y_pred - y_true), axis=0) if y_true.ndim == 2 else None
    return {
        "MAE": float(mae),
        "MSE": float(mse),
        "RMSE": float(np.sqrt(mse)),
        "MAPE": float(mape),
        "per_horizon_MAE": per_h_mae.tolist() if per_h_mae is not None else None,
    }


def build_prediction_frame(anchors: np.ndarray, y_true: np.ndarray, y_pred: np.ndarray) -> pd.DataFrame:
    """
    One row per forecast hour: window index, step within the horizon, target_time, actual and
    predicted rentals, ordered chronologically.
    """
    y_true = np.asarray(y_true, dtype=float)
    y_pred = np.asarray(y_pred, dtype=float)
    anchors = np.asarray(anchors, dtype=np.int64)
    n_windows = y_true.shape[0]
    horizon = y_true.shape[1] if y_true.ndim == 2 else 0

    steps = np.tile(np.arange(horizon), n_windows)
    windows = np.repeat(np.arange(n_windows), horizon)
    target_ms = np.repeat(anchors, horizon) + steps * MS_PER_HOUR

    frame = pd.DataFrame({
        "window": windows,
        "step": steps,
        "target_time": pd.to_datetime(target_ms, unit="ms"),
        "actual": y_true.reshape(-1),
        "predicted": y_pred.reshape(-1),
    })
    return frame.sort_values(["target_time", "window"], kind="mergesort").reset_index(drop=True)


def _inverse(values: np.ndarray, scaler: Optional[Scaler]) -> np.ndarray:
    if scaler is None:
        return values
    return scaler.inverse_transform_labels(values)


def evaluate_model(model: nn.Module, dataset: PreparedDataset, device: str = 'cpu', batch_size: int = 256):
    """
    Forecast every test window and score it in original units.

    Returns (metrics, y_pred, y_true, frame); y_pred and y_true are (n_test_windows, horizon).
    """
    with dataset.borrow():
        pred_scaled = predict(model, dataset.test_X, device=device, batch_size=batch_size)
        true_scaled = dataset.test_Y.numpy()

    y_pred = _inverse(pred_scaled, dataset.scaler)
    y_true = _inverse(true_scaled, dataset.scaler)
    metrics = compute_metrics(y_true, y_pred)
    frame = build_prediction_frame(dataset.test_anchors, y_true, y_pred)
    return metrics, y_pred, y_true, frame
