"""
Purpose: This module is responsible for turning a raw rental export into clean, chronologically
ordered records and for defining the train/test split over them.

Content
- read_source_text() / read_source_text_async()
- repair_header()
- parse_csv_text() / load_raw_records()
- normalize_records()
- split_index() / chronological_split()

Every later stage assumes what this module guarantees: typed, finite, sorted rows.
"""

import asyncio
import csv
import logging
import math
import re
from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from .config import (
    DATE_COL,
    DATE_FORMATS,
    FUNCTIONING_DAY_COL,
    HEADER_PATTERNS,
    HOLIDAY_COL,
    HORIZON,
    HOUR_COL,
    LABEL_COL,
    LOOKBACK,
    NUMERIC_COLUMNS,
    REQUIRED_COLUMNS,
    SEASON_COL,
    TRAIN_FRACTION,
)
from .errors import EmptyDatasetError, ParseError, SkippedRows

logger = logging.getLogger(__name__)

_NON_ASCII = re.compile(r"[^\x00-\x7F]")
_HEADER_RULES = [(re.compile(pattern), canonical) for pattern, canonical in HEADER_PATTERNS]


# ------ Reading ------

def read_source_text(path: Union[str, Path], encoding: str = "utf-8") -> str:
    """
    Read the whole file as text.

    Undecodable bytes are replaced rather than rejected: exports of the public dataset are often
    written in a legacy code page, which only damages the unit annotations in the header.
    """
    try:
        raw = Path(path).read_bytes()
    except OSError as exc:
        raise ParseError(f"Could not read input file '{path}': {exc}") from exc
    return raw.decode(encoding, errors="replace")


async def read_source_text_async(path: Union[str, Path], encoding: str = "utf-8") -> str:
    """Same as read_source_text, but the blocking read runs in a worker thread."""
    return await asyncio.to_thread(read_source_text, path, encoding)


# ------ Parsing ------

def repair_header(name: str) -> str:
    """Strip non-ASCII characters and map unit-suffix variants to the canonical column name."""
    cleaned = _NON_ASCII.sub("", name).strip()
    for pattern, canonical in _HEADER_RULES:
        if pattern.fullmatch(cleaned):
            return canonical
    return cleaned


def _split_line(line: str) -> Optional[List[str]]:
    """Fields of one physical line; quoting never spans lines. None if the quoting is broken."""
    try:
        return next(csv.reader([line], strict=True))
    except csv.Error:
        return None


def parse_csv_text(text: str) -> Tuple[pd.DataFrame, SkippedRows]:
    """
    Split delimited text into string records keyed by the repaired header.

    Each line is one record. Quoted fields may contain commas; an unbalanced quote only
    damages its own line. A row whose field count does not match the header, or whose
    quoting cannot be read, is dropped and counted, never raised.

    Returns:
        raw: DataFrame of str, one row per accepted record, columns = repaired header.
        skipped: counts of dropped rows.
    """
    skipped = SkippedRows()
    lines = [line for line in text.splitlines() if line.strip()]
    if not lines:
        return pd.DataFrame(), skipped

    header_fields = _split_line(lines[0])
    if header_fields is None:
        raise ParseError(f"Header line could not be split into columns: {lines[0]!r}")
    header = [repair_header(h) for h in header_fields]

    accepted: List[List[str]] = []
    for line in lines[1:]:
        row = _split_line(line)
        if row is None or len(row) != len(header):
            skipped.field_count += 1
            continue
        if not any(field.strip() for field in row):
            continue
        accepted.append([field.strip() for field in row])

    if skipped.field_count:
        logger.warning("Dropped %d rows with a field count different from the header", skipped.field_count)
    logger.debug("Repaired header: %s", header)

    raw = pd.DataFrame(accepted, columns=header, dtype=str)
    return raw, skipped


def load_raw_records(path: Union[str, Path]) -> Tuple[pd.DataFrame, SkippedRows]:
    raw, skipped = parse_csv_text(read_source_text(path))
    logger.info(f"Loaded {len(raw):,} raw records from {path}")
    return raw, skipped


# ------ Normalization ------

def _parse_dates(values: pd.Series, date_formats: Iterable[str]) -> pd.Series:
    """Try each format in order; a row keeps the first format that parses it."""
    parsed = pd.Series(pd.NaT, index=values.index, dtype="datetime64[ns]")
    for fmt in date_formats:
        pending = parsed.isna()
        if not pending.any():
            break
        parsed[pending] = pd.to_datetime(values[pending], format=fmt, errors="coerce")
    return parsed


def normalize_records(
    raw: pd.DataFrame,
    date_formats: Iterable[str] = DATE_FORMATS,
    min_rows: int = LOOKBACK + HORIZON + 1,
) -> Tuple[pd.DataFrame, SkippedRows]:
    """
    Cast raw string records into typed rows and sort them chronologically.

    Rows with a non-finite measurement or label, a negative label, an unparseable date or an
    hour outside 0-23 are excluded before sorting. Nothing is imputed.

    Returns:
        records: DataFrame with columns
            timestamp (int64 epoch ms), date, hour, label, <numeric fields>,
            season, holiday, functioning_day
        skipped: count of excluded rows.

    Raises:
        EmptyDatasetError: when no row survives.
    """
    skipped = SkippedRows()
    if raw.empty:
        raise EmptyDatasetError("Input contains no data rows.")

    missing = [c for c in REQUIRED_COLUMNS if c not in raw.columns]
    if missing:
        logger.error("Missing required columns %s. Available: %s", missing, list(raw.columns))
        raise EmptyDatasetError(
            f"Missing required columns {missing}; no row can be normalized."
        )

    dates = _parse_dates(raw[DATE_COL], date_formats)
    hour = pd.to_numeric(raw[HOUR_COL], errors="coerce")
    label = pd.to_numeric(raw[LABEL_COL], errors="coerce")
    numeric = pd.DataFrame(
        {field: pd.to_numeric(raw[col], errors="coerce") for col, field in NUMERIC_COLUMNS.items()},
        index=raw.index,
    )

    # Row-level validity, evaluated before any ordering.
    # Series.to_numpy() may hand back a read-only view, so the mask is never updated in place.
    hour_values = hour.to_numpy(dtype=float)
    label_values = label.to_numpy(dtype=float)
    valid = (
        dates.notna().to_numpy(dtype=bool)
        & (hour_values == np.floor(hour_values))  # NaN compares False
        & (hour_values >= 0) & (hour_values <= 23)
        & np.isfinite(label_values) & (label_values >= 0)
        & np.isfinite(numeric.to_numpy(dtype=float)).all(axis=1)
    )

    skipped.invalid_value = int((~valid).sum())
    if skipped.invalid_value:
        logger.warning(f"Removed {skipped.invalid_value} rows with invalid or non-finite values")
    if not valid.any():
        raise EmptyDatasetError(
            f"No valid rows remain after removing {skipped.invalid_value} malformed records; "
            f"at least {min_rows} valid hourly rows (lookback + horizon + 1) are required."
        )

    kept_dates = dates[valid]
    kept_hours = hour[valid].astype(int)
    moments = kept_dates + pd.to_timedelta(kept_hours, unit="h")

    records = pd.DataFrame(
        {
            "timestamp": ((moments - pd.Timestamp("1970-01-01")) // pd.Timedelta(milliseconds=1)).astype("int64"),
            "date": kept_dates,
            "hour": kept_hours,
            "label": label[valid].astype(float),
        }
    )
    for field in numeric.columns:
        records[field] = numeric.loc[valid, field].astype(float)
    records["season"] = raw.loc[valid, SEASON_COL].astype(str)
    records["holiday"] = (raw.loc[valid, HOLIDAY_COL] == "Holiday").astype(int)
    records["functioning_day"] = (raw.loc[valid, FUNCTIONING_DAY_COL] == "Yes").astype(int)

    records = records.sort_values(["timestamp", "hour"], kind="mergesort").reset_index(drop=True)

    logger.info(f"Normalized {len(records):,} records")
    logger.info(
        "Date range: %s to %s",
        pd.to_datetime(records["timestamp"].iloc[0], unit="ms"),
        pd.to_datetime(records["timestamp"].iloc[-1], unit="ms"),
    )
    return records, skipped


# ------ Splitting ------

def split_index(n_rows: int, train_fraction: float = TRAIN_FRACTION) -> int:
    """Length of the training prefix: floor(n_rows * train_fraction)."""
    if not 0.0 < train_fraction < 1.0:
        raise ValueError(f"train_fraction must lie strictly between 0 and 1, got {train_fraction}")
    return int(math.floor(n_rows * train_fraction))


def chronological_split(series, train_fraction: float = TRAIN_FRACTION):
    """
    Perform a fixed chronological train/test split.

    The training partition is the leading prefix and the test partition the remaining suffix, so
    every test row lies in the future of every training row. No shuffling.

    ``series`` is anything exposing ``__len__`` and ``take(slice)``, such as EncodedSeries.
    """
    cut = split_index(len(series), train_fraction)
    train = series.take(slice(0, cut))
    test = series.take(slice(cut, len(series)))

    logger.info("Chronological split at %.2f: train=%d rows, test=%d rows", train_fraction, len(train), len(test))
    if len(train) == 0 or len(test) == 0:
        logger.warning("One of the partitions is empty!")
    return train, test
