import asyncio
import json

import numpy as np
import pytest

from bikecast.config import LSTM_CONFIG, resolve_config
from bikecast.errors import EmptyDatasetError, ParseError
from bikecast.pipeline import (
    BikeDemandPipeline,
    prepare_dataset_from_file,
    prepare_dataset_from_file_async,
    prepare_dataset_from_text,
)
from bikecast.utils import DataManager

HOUR_MS = 3_600_000


def test_hundred_rows_end_to_end(make_rows, csv_text):
    rows = make_rows(100, constant_weather=True)

    with prepare_dataset_from_text(csv_text(rows), train_fraction=0.8) as dataset:
        assert dataset.num_train_windows == 33
        assert dataset.num_test_windows == 0
        # constant columns collapse to zero
        assert float(dataset.train_X[:, :, :8].abs().max()) == 0.0

        labels = np.array([float(row[2]) for row in rows])
        restored = dataset.scaler.inverse_transform_labels(dataset.train_Y.numpy())
        for i in range(33):
            t = 24 + i
            np.testing.assert_allclose(restored[i], labels[t:t + 24], atol=1e-3)
        assert dataset.train_anchors[0] == dataset.train_anchors[1] - HOUR_MS


def test_test_windows_are_day_blocks(prepared_dataset):
    assert prepared_dataset.num_train_windows == 273
    assert np.diff(prepared_dataset.test_anchors).tolist() == [24 * HOUR_MS]
    assert prepared_dataset.test_anchors[0] > prepared_dataset.train_anchors[-1]


def test_malformed_rows_are_tallied(make_rows, csv_text):
    rows = make_rows(100)
    rows[3][5] = "windy"
    rows[10].append("extra")

    with prepare_dataset_from_text(csv_text(rows)) as dataset:
        assert dataset.n_records == 98
        assert dataset.skipped.as_dict() == {"field_count": 1, "invalid_value": 1, "total": 2}
        assert dataset.num_train_windows == 78 - 48 + 1


def test_scaler_ignores_the_test_period(make_rows, csv_text):
    rows = make_rows(100)
    changed = make_rows(100)
    for row in changed[80:]:
        row[2] = "99999"
        row[3] = "80.0"

    with prepare_dataset_from_text(csv_text(rows)) as base, prepare_dataset_from_text(csv_text(changed)) as other:
        assert base.scaler == other.scaler
        np.testing.assert_array_equal(base.train_X.numpy(), other.train_X.numpy())


@pytest.mark.parametrize("scope, has_spring", [("full", True), ("train", False)])
def test_vocabulary_scope(make_rows, csv_text, scope, has_spring):
    rows = make_rows(200, season=lambda i: "Winter" if i < 160 else "Spring")

    with prepare_dataset_from_text(csv_text(rows), vocabulary_scope=scope) as dataset:
        assert ("season_Spring" in dataset.feature_names) is has_spring
        assert dataset.train_X.shape[2] == dataset.num_features


def test_too_few_rows(make_rows, csv_text):
    with pytest.raises(EmptyDatasetError, match="49"):
        prepare_dataset_from_text(csv_text(make_rows(40)))


def test_training_partition_too_short(make_rows, csv_text):
    with pytest.raises(EmptyDatasetError):
        prepare_dataset_from_text(csv_text(make_rows(60)), train_fraction=0.5)


def test_bad_scope_is_rejected(make_rows, csv_text):
    with pytest.raises(ValueError):
        prepare_dataset_from_text(csv_text(make_rows(100)), vocabulary_scope="all")


def test_missing_file(tmp_path):
    with pytest.raises(ParseError):
        prepare_dataset_from_file(tmp_path / "nope.csv")


def test_async_load_matches_sync(write_csv, make_rows):
    path = write_csv(make_rows(120))

    with prepare_dataset_from_file(path) as sync_ds, asyncio.run(prepare_dataset_from_file_async(path)) as async_ds:
        assert async_ds.num_train_windows == sync_ds.num_train_windows
        assert async_ds.scaler == sync_ds.scaler


# ------ config ------

def test_resolve_config_overrides():
    config = resolve_config({"num_epochs": 2, "model_config": {"dropout": 0.0}, "device": None})
    assert config["num_epochs"] == 2
    assert config["model_config"] == {"hidden_sizes": [64, 32], "dropout": 0.0}
    assert config["device"] == "cpu"
    assert LSTM_CONFIG["model_config"]["dropout"] == 0.2


def test_resolve_config_rejects_bad_values():
    with pytest.raises(KeyError):
        resolve_config({"epochs": 3})
    with pytest.raises(ValueError):
        resolve_config({"vocabulary_scope": "test"})
    with pytest.raises(ValueError):
        resolve_config({"train_fraction": 1.0})


# ------ full run ------

def test_pipeline_run_writes_experiment(write_csv, make_rows, tmp_path):
    path = write_csv(make_rows(400))
    progress = []
    pipeline = BikeDemandPipeline({
        "num_epochs": 1,
        "log_every": 1,
        "model_config": {"hidden_sizes": [8]},
        "experiments_dir": str(tmp_path / "exp"),
        "data_dir": str(tmp_path / "data"),
    })

    summary = pipeline.run(path, callbacks=[progress.append], save_arrays=True)

    assert [r.epoch for r in progress] == [1]
    assert summary["dataset"]["train_windows"] == 273
    assert summary["results"]["test"]["MAE"] is not None

    (exp_dir,) = list((tmp_path / "exp").iterdir())
    for name in ("config.json", "history.json", "metrics_test.json", "predictions_test.csv", "summary.json"):
        assert (exp_dir / name).exists()
    with open(exp_dir / "config.json") as f:
        assert json.load(f)["input_csv"] == str(path)
    assert (tmp_path / "data" / "bike_windows_metadata.json").exists()

    pipeline.reset()


def test_evaluate_requires_training(write_csv, make_rows, tmp_path):
    pipeline = BikeDemandPipeline({"experiments_dir": str(tmp_path / "exp")})
    with pytest.raises(RuntimeError):
        pipeline.evaluate()
    pipeline.load(write_csv(make_rows(100)))
    with pytest.raises(RuntimeError):
        pipeline.evaluate()
    pipeline.reset()


def test_early_stopping_is_configurable():
    assert resolve_config()["early_stopping_patience"] is None
    assert resolve_config({"early_stopping_patience": 3})["early_stopping_patience"] == 3


def test_run_from_cached_arrays(write_csv, make_rows, tmp_path):
    path = write_csv(make_rows(400))
    with prepare_dataset_from_file(path) as prepared:
        DataManager(tmp_path / "data").save_dataset(prepared, filename_prefix="bike_windows")
        expected_scaler = prepared.scaler
        expected_names = prepared.feature_names

    pipeline = BikeDemandPipeline({
        "num_epochs": 1,
        "model_config": {"hidden_sizes": [8]},
        "experiments_dir": str(tmp_path / "exp"),
        "data_dir": str(tmp_path / "data"),
    })
    summary = pipeline.run(from_cache=True)

    assert summary["dataset"]["train_windows"] == 273
    assert summary["results"]["test"]["MAE"] is not None
    assert pipeline.dataset.scaler == expected_scaler
    assert pipeline.dataset.feature_names == expected_names
    pipeline.reset()


def test_run_needs_a_source(tmp_path):
    pipeline = BikeDemandPipeline({"experiments_dir": str(tmp_path / "exp")})
    with pytest.raises(ValueError):
        pipeline.run()
