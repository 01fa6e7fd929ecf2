import numpy as np
import pandas as pd
import pytest
import torch
import torch.nn as nn
from torch.utils.data import DataLoader, TensorDataset

from bikecast.engine import (
    MS_PER_HOUR,
    build_prediction_frame,
    compute_metrics,
    evaluate_model,
    predict,
    train_model,
)
from bikecast.models import DemandLSTM


class ZeroForecaster(nn.Module):
    def __init__(self, horizon=24):
        super().__init__()
        self.horizon = horizon

    def forward(self, x):
        return torch.zeros(x.shape[0], self.horizon)


def small_loader(n=16, lookback=6, n_features=3, horizon=4, batch_size=4):
    torch.manual_seed(0)
    X = torch.rand(n, lookback, n_features)
    Y = torch.rand(n, horizon)
    return DataLoader(TensorDataset(X, Y), batch_size=batch_size, shuffle=False)


# ------ model ------

def test_lstm_output_shape():
    model = DemandLSTM(input_size=13)
    assert tuple(model(torch.zeros(4, 24, 13)).shape) == (4, 24)


def test_lstm_single_layer():
    model = DemandLSTM(input_size=3, horizon=5, hidden_sizes=[8])
    assert tuple(model(torch.zeros(2, 6, 3)).shape) == (2, 5)
    with pytest.raises(ValueError):
        DemandLSTM(input_size=3, hidden_sizes=[])


# ------ training ------

def test_train_model_reports_every_epoch():
    records = []
    model = DemandLSTM(input_size=3, horizon=4, hidden_sizes=[8])

    history = train_model(model, small_loader(), num_epochs=3, callbacks=[records.append], log_every=1)

    assert [r.epoch for r in records] == [1, 2, 3]
    assert records[-1].progress == pytest.approx(100.0)
    assert all(np.isfinite(r.loss) and np.isfinite(r.mae) for r in records)
    assert len(history["train_loss"]) == 3
    assert history["val_loss"] == [None, None, None]
    assert records[0].as_dict()["progress"] == pytest.approx(100.0 / 3)


def test_train_model_with_validation():
    model = DemandLSTM(input_size=3, horizon=4, hidden_sizes=[8])
    history = train_model(model, small_loader(), small_loader(n=8), num_epochs=2, log_every=0)
    assert all(v is not None for v in history["val_loss"])


def test_non_finite_batch_is_rejected():
    X = torch.rand(4, 6, 3)
    X[1, 2, 0] = float("nan")
    loader = DataLoader(TensorDataset(X, torch.rand(4, 4)), batch_size=2)
    with pytest.raises(ValueError):
        train_model(DemandLSTM(input_size=3, horizon=4, hidden_sizes=[8]), loader, num_epochs=1)


def test_predict_handles_empty_input():
    out = predict(ZeroForecaster(horizon=24), torch.zeros(0, 24, 5))
    assert out.shape == (0, 24)


# ------ metrics ------

def test_compute_metrics_values():
    y_true = np.array([[1.0, 2.0], [3.0, 4.0]])
    y_pred = np.array([[2.0, 2.0], [3.0, 2.0]])

    metrics = compute_metrics(y_true, y_pred)

    assert metrics["MAE"] == pytest.approx(0.75)
    assert metrics["MSE"] == pytest.approx(1.25)
    assert metrics["RMSE"] == pytest.approx(np.sqrt(1.25))
    assert metrics["MAPE"] == pytest.approx(37.5)
    assert metrics["per_horizon_MAE"] == pytest.approx([0.5, 1.0])


def test_compute_metrics_on_empty_set():
    metrics = compute_metrics(np.empty((0, 24)), np.empty((0, 24)))
    assert all(value is None for value in metrics.values())


def test_prediction_frame_is_chronological():
    anchors = np.array([24 * MS_PER_HOUR, 0], dtype=np.int64)
    y_true = np.array([[10.0, 11.0], [1.0, 2.0]])
    y_pred = y_true + 0.5

    frame = build_prediction_frame(anchors, y_true, y_pred)

    assert len(frame) == 4
    assert frame["target_time"].is_monotonic_increasing
    assert frame["target_time"].iloc[0] == pd.Timestamp("1970-01-01 00:00")
    assert frame["target_time"].iloc[1] == pd.Timestamp("1970-01-01 01:00")
    assert frame["actual"].tolist() == [1.0, 2.0, 10.0, 11.0]
    assert (frame["predicted"] - frame["actual"]).eq(0.5).all()


# ------ evaluation ------

def test_evaluate_model_reports_original_units(prepared_dataset):
    metrics, y_pred, y_true, frame = evaluate_model(ZeroForecaster(), prepared_dataset)

    scaler = prepared_dataset.scaler
    assert y_pred.shape == y_true.shape == (2, 24)
    np.testing.assert_allclose(y_pred, scaler.label_min)
    assert y_true.min() >= scaler.label_min - 1e-3
    assert len(frame) == 48
    assert metrics["MAE"] == pytest.approx(np.mean(np.abs(y_true - scaler.label_min)))
    assert not prepared_dataset.released


def test_early_stopping_halts_on_plateau():
    model = DemandLSTM(input_size=3, horizon=4, hidden_sizes=[8])

    # a zero learning rate leaves the weights, and so the validation loss, unchanged
    history = train_model(model, small_loader(), small_loader(n=8), num_epochs=10,
                          learning_rate=0.0, log_every=0, early_stopping_patience=2)

    assert len(history["train_loss"]) == 3
    assert history["val_loss"][0] == history["val_loss"][2]
