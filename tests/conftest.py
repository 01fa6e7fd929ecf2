import math
from datetime import datetime, timedelta

import pytest

HEADER = [
    "Date",
    "Hour",
    "Rented Bike Count",
    "Temperature(°C)",
    "Humidity(%)",
    "Wind speed (m/s)",
    "Visibility (10m)",
    "Dew point temperature(°C)",
    "Solar Radiation (MJ/m2)",
    "Rainfall(mm)",
    "Snowfall (cm)",
    "Seasons",
    "Holiday",
    "Functioning Day",
]

START = datetime(2017, 12, 1)


def sinusoidal_label(i):
    return 500.0 + 400.0 * math.sin(2 * math.pi * i / 24)


def build_rows(n_rows, start=START, label=sinusoidal_label, constant_weather=False, season=lambda i: "Winter"):
    rows = []
    for i in range(n_rows):
        moment = start + timedelta(hours=i)
        if constant_weather:
            weather = [5.0, 50.0, 1.5, 2000.0, -3.0, 0.0, 0.0, 0.0]
        else:
            weather = [
                -5.0 + (i % 17),
                30.0 + (i % 41),
                0.5 + (i % 7) * 0.3,
                1000.0 + (i % 13) * 50,
                -10.0 + (i % 11),
                (i % 24) * 0.1,
                float(i % 5 == 0),
                0.0,
            ]
        rows.append([
            moment.strftime("%d/%m/%Y"),
            str(moment.hour),
            f"{label(i):.6f}",
            *[f"{v}" for v in weather],
            season(i),
            "Holiday" if (i // 24) % 7 == 3 else "No Holiday",
            "Yes",
        ])
    return rows


def to_csv_text(rows, header=HEADER):
    lines = [",".join(header)]
    lines.extend(",".join(row) for row in rows)
    return "\n".join(lines) + "\n"


@pytest.fixture
def make_rows():
    return build_rows


@pytest.fixture
def csv_text():
    return to_csv_text


@pytest.fixture
def prepared_dataset():
    """400 hourly rows: 273 training windows and 2 test windows."""
    from bikecast.pipeline import prepare_dataset_from_text

    dataset = prepare_dataset_from_text(to_csv_text(build_rows(400)))
    yield dataset
    if not dataset.released:
        dataset.release()


@pytest.fixture
def write_csv(tmp_path):
    def _write(rows, name="bikes.csv", header=HEADER):
        path = tmp_path / name
        path.write_text(to_csv_text(rows, header=header), encoding="utf-8")
        return path
    return _write
