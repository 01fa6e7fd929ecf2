"""
Central configuration for the bike-demand forecasting experiments.
Keeping all core settings in one place helps ensure reproducibility.
"""

import copy
from typing import Any, Dict, List, Optional

# ---------------------------------------------------------------------------
# Data & feature settings
# ---------------------------------------------------------------------------

RAW_DATA_PATH = "data/raw/SeoulBikeData.csv"

LOOKBACK = 24        # hours of history per sample
HORIZON = 24         # hours predicted per sample
TRAIN_FRACTION = 0.8
TRAIN_STRIDE = 1         # dense, overlapping training windows
TEST_STRIDE = HORIZON    # non-overlapping day blocks for reporting

# Tried in order; the public dataset ships dd/mm/yyyy.
DATE_FORMATS = ("%d/%m/%Y", "%Y-%m-%d")

# "full" fits the one-hot vocabulary on every row (observed behaviour),
# "train" fits it on the training prefix only.
VOCABULARY_SCOPE = "full"
VOCABULARY_SCOPES = ("full", "train")

# Canonical column names of the input file.
DATE_COL = "Date"
HOUR_COL = "Hour"
LABEL_COL = "Rented Bike Count"
SEASON_COL = "Seasons"
HOLIDAY_COL = "Holiday"
FUNCTIONING_DAY_COL = "Functioning Day"

# canonical column -> normalized field, in feature order
NUMERIC_COLUMNS: Dict[str, str] = {
    "Temperature(°C)": "temperature",
    "Humidity(%)": "humidity",
    "Wind speed (m/s)": "wind_speed",
    "Visibility (10m)": "visibility",
    "Dew point temperature(°C)": "dew_point_temperature",
    "Solar Radiation (MJ/m2)": "solar_radiation",
    "Rainfall(mm)": "rainfall",
    "Snowfall (cm)": "snowfall",
}
NUMERIC_FIELDS: List[str] = list(NUMERIC_COLUMNS.values())
CATEGORICAL_FIELDS: List[str] = ["season", "holiday", "functioning_day"]
CYCLICAL_FIELDS: List[str] = ["hour_sin", "hour_cos"]

REQUIRED_COLUMNS: List[str] = [
    DATE_COL,
    HOUR_COL,
    LABEL_COL,
    *NUMERIC_COLUMNS.keys(),
    SEASON_COL,
    HOLIDAY_COL,
    FUNCTIONING_DAY_COL,
]

# Header repair: applied after non-ASCII characters are stripped, so the
# degree sign and other unit annotations may already be gone.
HEADER_PATTERNS = [
    (r"Temperature.*C\)?", "Temperature(°C)"),
    (r"Humidity.*%\)?", "Humidity(%)"),
    (r"Wind speed.*m/s\)?", "Wind speed (m/s)"),
    (r"Visibility.*10m\)?", "Visibility (10m)"),
    (r"Dew point temperature.*C\)?", "Dew point temperature(°C)"),
    (r"Solar Radiation.*MJ/m2\)?", "Solar Radiation (MJ/m2)"),
    (r"Rainfall.*mm\)?", "Rainfall(mm)"),
    (r"Snowfall.*cm\)?", "Snowfall (cm)"),
]

DEFAULT_DATA_PREFIX = "bike_windows"

# ---------------------------------------------------------------------------
# Experiment presets
# ---------------------------------------------------------------------------

LSTM_CONFIG: Dict[str, Any] = {
    "experiment_name": "bike_lstm",
    "model_type": "LSTM",
    "model_config": {
        "hidden_sizes": [64, 32],
        "dropout": 0.2,
    },
    "data_prefix": DEFAULT_DATA_PREFIX,
    "lookback": LOOKBACK,
    "horizon": HORIZON,
    "train_fraction": TRAIN_FRACTION,
    "vocabulary_scope": VOCABULARY_SCOPE,
    "batch_size": 32,
    "num_epochs": 30,
    "learning_rate": 0.001,
    "shuffle": False,  # keep temporal order inside each epoch
    "early_stopping_patience": None,  # epochs without val improvement; None trains all epochs
    "log_every": 10,
    "device": "cpu",
    "data_dir": "data",
    "experiments_dir": "experiments",
}


def resolve_config(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return a copy of LSTM_CONFIG with ``overrides`` applied on top."""
    config = copy.deepcopy(LSTM_CONFIG)
    for key, value in (overrides or {}).items():
        if key not in config:
            raise KeyError(
                f"Unknown config key '{key}'. Available: {sorted(config.keys())}"
            )
        if value is None:
            continue
        if key == "model_config":
            config["model_config"].update(value)
        else:
            config[key] = value

    if config["vocabulary_scope"] not in VOCABULARY_SCOPES:
        raise ValueError(
            f"vocabulary_scope must be one of {VOCABULARY_SCOPES}, "
            f"got {config['vocabulary_scope']!r}"
        )
    if not 0.0 < float(config["train_fraction"]) < 1.0:
        raise ValueError("train_fraction must lie strictly between 0 and 1.")
    return config
