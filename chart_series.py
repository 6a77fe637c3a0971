from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd

from config import load_config

log = logging.getLogger(__name__)

CONFIG = load_config()

# Bucket widths in seconds, RAW passes readings through untouched
RESOLUTIONS = {
    "RAW": 0,
    "HOURLY": 3600,
    "DAILY": 86400,
    "WEEKLY": 604800,
}

RESOLUTION_LABELS = {
    "RAW": "Raw Data",
    "HOURLY": "Hourly Sum",
    "DAILY": "Daily Sum",
    "WEEKLY": "Weekly Sum",
}


@dataclass(frozen=True)
class TimeRange:
    start: Optional[int] = None
    end: Optional[int] = None

    @property
    def is_bounded(self) -> bool:
        return self.start is not None and self.end is not None

    def contains(self, period_start: int, period_end: int) -> bool:
        """True if [period_start, period_end] lies entirely inside the range."""
        if not self.is_bounded:
            return False
        return self.start <= period_start and period_end <= self.end


def resolution_width(resolution: str) -> int:
    try:
        return RESOLUTIONS[resolution.upper()]
    except KeyError:
        raise ValueError(f"Unknown resolution {resolution!r}, expected one of {list(RESOLUTIONS)}")


def bucket_keys(timestamps: pd.Series, width: int) -> pd.Series:
    """floor(timestamp / width) * width"""
    return (timestamps // width) * width


# ────────────────────────────────────────────────────────────────────────────────
# RESOLUTION AGGREGATION
# ────────────────────────────────────────────────────────────────────────────────


def select_range(readings: pd.DataFrame, time_range: Optional[TimeRange]) -> pd.DataFrame:
    """Keep readings inside the closed view range; open bounds don't restrict."""
    if time_range is None or readings.empty:
        return readings
    mask = pd.Series(True, index=readings.index)
    if time_range.start is not None:
        mask &= readings["timestamp"] >= time_range.start
    if time_range.end is not None:
        mask &= readings["timestamp"] <= time_range.end
    if mask.all():
        return readings
    return readings[mask].reset_index(drop=True)


def aggregate(readings: pd.DataFrame, resolution: str) -> pd.DataFrame:
    """
    Sum value and cost into fixed-width time buckets.

    RAW returns the input unchanged, duplicate timestamps included. Other
    resolutions emit one row per occupied bucket, ascending by bucket start,
    with ``duration`` set to the bucket width. Totals are conserved and
    re-aggregating at the same width returns the same series.

    Args:
        readings: Reading frame with timestamp, value and cost columns
        resolution: RAW, HOURLY, DAILY or WEEKLY

    Returns:
        Aggregated reading frame
    """
    width = resolution_width(resolution)
    if width == 0:
        return readings

    if readings.empty:
        return pd.DataFrame({col: pd.Series(dtype="int64")
                             for col in ["timestamp", "value", "cost", "duration"]})

    buckets = (
        readings.assign(timestamp=bucket_keys(readings["timestamp"], width))
        .groupby("timestamp", sort=True)[["value", "cost"]]
        .sum()
        .reset_index()
    )
    buckets["duration"] = width
    log.debug("Aggregated %d readings into %d %s buckets", len(readings), len(buckets), resolution)
    return buckets


# ────────────────────────────────────────────────────────────────────────────────
# LARGEST-TRIANGLE-THREE-BUCKETS DOWNSAMPLING
# ────────────────────────────────────────────────────────────────────────────────


def _lttb_indices(t: np.ndarray, v: np.ndarray, threshold: int) -> np.ndarray:
    n = len(t)
    bucket_size = (n - 2) / (threshold - 2)

    selected = np.empty(threshold, dtype=np.int64)
    selected[0] = 0
    selected[-1] = n - 1
    anchor = 0

    for i in range(threshold - 2):
        range_start = int(np.floor(i * bucket_size)) + 1
        next_start = int(np.floor((i + 1) * bucket_size)) + 1
        next_end = min(int(np.floor((i + 2) * bucket_size)) + 1, n - 1)

        # centroid of the following bucket, the last point closes the series
        if next_end > next_start:
            avg_t = t[next_start:next_end].mean()
            avg_v = v[next_start:next_end].mean()
        else:
            avg_t, avg_v = t[n - 1], v[n - 1]

        cand_t = t[range_start:next_start]
        cand_v = v[range_start:next_start]
        area = np.abs(
            (t[anchor] - avg_t) * (cand_v - v[anchor])
            - (t[anchor] - cand_t) * (avg_v - v[anchor])
        )
        anchor = range_start + int(np.argmax(area))
        selected[i + 1] = anchor

    return selected


def downsample_lttb(series: pd.DataFrame, threshold: int) -> pd.DataFrame:
    """
    Reduce a series to ``threshold`` rows while keeping its visual shape.

    Series at or below the threshold come back unchanged. Otherwise the
    first and last rows are always kept and every other kept row is an
    original row (no interpolation), so the result is deterministic.

    Args:
        series: Frame with timestamp and value columns, ascending
        threshold: Number of rows wanted

    Returns:
        Downsampled frame
    """
    if threshold <= 0:
        raise ValueError(f"threshold must be positive, got {threshold}")

    n = len(series)
    if n <= threshold:
        return series

    if threshold == 1:
        indices = np.array([0])
    elif threshold == 2:
        indices = np.array([0, n - 1])
    else:
        t = series["timestamp"].to_numpy(dtype=np.float64)
        v = series["value"].to_numpy(dtype=np.float64)
        indices = _lttb_indices(t, v, threshold)

    return series.iloc[indices].reset_index(drop=True)


def brush_series(readings: pd.DataFrame, max_points: Optional[int] = None) -> pd.DataFrame:
    """Timestamp/value overview for the range selector."""
    if max_points is None:
        max_points = CONFIG["chart"]["brush_points"]
    if readings.empty:
        return pd.DataFrame({"timestamp": pd.Series(dtype="int64"), "value": pd.Series(dtype="int64")})
    return downsample_lttb(readings[["timestamp", "value"]], max_points)


def prepare_chart_series(readings: pd.DataFrame, resolution: str,
                         time_range: Optional[TimeRange] = None,
                         threshold: Optional[int] = None) -> pd.DataFrame:
    """View-range selection, then aggregation, then LTTB reduction."""
    if threshold is None:
        threshold = CONFIG["chart"]["max_points"]
    selected = select_range(readings, time_range)
    aggregated = aggregate(selected, resolution)
    chart = downsample_lttb(aggregated, threshold)
    log.info("Chart series: %d readings → %d buckets → %d points",
             len(selected), len(aggregated), len(chart))
    return chart
