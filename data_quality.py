"""
Data quality module for energy analysis.

This module turns producer output into a reading frame and reports on the
quality of what was loaded. It never reorders or deduplicates readings.
"""
import pandas as pd
import numpy as np
import logging
from typing import Dict, Iterable, Any, Optional, Union
from dataclasses import dataclass

logger = logging.getLogger(__name__)

READING_COLUMNS = ["timestamp", "value", "cost"]


class ParseFailure(Exception):
    """Raised when reading input is empty or malformed"""
    pass


@dataclass
class DataQualityMetrics:
    """Data quality metrics container."""
    total_records: int = 0
    valid_records: int = 0
    duplicate_timestamps: int = 0
    out_of_order: int = 0
    first_timestamp: Optional[int] = None
    last_timestamp: Optional[int] = None
    median_interval: Optional[float] = None

    @property
    def validity_ratio(self) -> float:
        """Calculate the ratio of valid records to total records."""
        return self.valid_records / self.total_records if self.total_records > 0 else 0.0

    @property
    def is_sorted(self) -> bool:
        return self.out_of_order == 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to a dictionary."""
        return {
            "total_records": self.total_records,
            "valid_records": self.valid_records,
            "validity_ratio": self.validity_ratio,
            "duplicate_timestamps": self.duplicate_timestamps,
            "out_of_order": self.out_of_order,
            "first_timestamp": self.first_timestamp,
            "last_timestamp": self.last_timestamp,
            "median_interval": self.median_interval,
        }

    def print_summary(self) -> None:
        """Print a summary of data quality metrics."""
        print("\n" + "="*80)
        print(" "*30 + "DATA QUALITY SUMMARY")
        print("="*80)

        print(f"\nData Completeness:")
        print(f"  Total records: {self.total_records}")
        print(f"  Valid records: {self.valid_records} ({self.validity_ratio:.2%})")
        print(f"  Duplicate timestamps: {self.duplicate_timestamps}")
        print(f"  Out-of-order pairs: {self.out_of_order}")

        if self.first_timestamp is not None:
            first = pd.Timestamp(self.first_timestamp, unit="s", tz="UTC")
            last = pd.Timestamp(self.last_timestamp, unit="s", tz="UTC")
            print(f"\nCoverage: {first} → {last}")

        if self.median_interval is not None:
            print(f"  Median reading interval: {self.median_interval / 60:.1f} minutes")

        print("\n" + "="*80)


def readings_frame(records: Union[pd.DataFrame, Iterable[Dict[str, Any]]]) -> pd.DataFrame:
    """
    Build a reading frame from producer output.

    Args:
        records: DataFrame or iterable of dicts with timestamp, value and
            optionally cost and duration

    Returns:
        DataFrame with int64 timestamp, value, cost (and duration if present)

    Raises:
        ParseFailure: If the input is empty, lacks required fields or holds
            non-numeric values
    """
    if isinstance(records, pd.DataFrame):
        df = records.copy()
    else:
        try:
            df = pd.DataFrame(list(records))
        except (TypeError, ValueError) as e:
            raise ParseFailure(f"Reading input is not a list of records: {e}") from e

    if df.empty:
        raise ParseFailure("No readings found")

    missing = [col for col in ("timestamp", "value") if col not in df.columns]
    if missing:
        raise ParseFailure(f"Readings missing required fields: {missing}")

    if "cost" not in df.columns:
        df["cost"] = 0
    df["cost"] = df["cost"].fillna(0)

    columns = READING_COLUMNS + (["duration"] if "duration" in df.columns else [])
    df = df[columns].copy()

    for col in columns:
        converted = pd.to_numeric(df[col], errors="coerce")
        fractional = int((converted.dropna() % 1 != 0).sum())
        if fractional:
            raise ParseFailure(f"{fractional} readings have a fractional {col}, expected whole units")
        if col == "duration":
            df[col] = converted.astype("Int64")
            continue
        if converted.isna().any():
            bad = int(converted.isna().sum())
            raise ParseFailure(f"{bad} readings have a non-numeric {col}")
        df[col] = converted.astype("int64")

    return df.reset_index(drop=True)


def validate_readings(df: pd.DataFrame, total_records: Optional[int] = None) -> DataQualityMetrics:
    """
    Validate a reading frame and calculate quality metrics.

    Ordering problems are reported, not repaired.

    Args:
        df: Reading frame
        total_records: Number of raw records the frame was built from

    Returns:
        DataQualityMetrics
    """
    metrics = DataQualityMetrics(
        total_records=len(df) if total_records is None else total_records,
        valid_records=len(df),
    )
    if df.empty:
        return metrics

    ts = df["timestamp"]
    diffs = ts.diff().dropna()

    metrics.duplicate_timestamps = int(ts.duplicated().sum())
    metrics.out_of_order = int((diffs < 0).sum())
    metrics.first_timestamp = int(ts.min())
    metrics.last_timestamp = int(ts.max())

    positive = diffs[diffs > 0]
    if not positive.empty:
        metrics.median_interval = float(np.median(positive))

    if metrics.out_of_order:
        logger.warning("Readings are not in ascending order (%d pairs out of order)", metrics.out_of_order)
    if metrics.duplicate_timestamps:
        logger.info("Found %d duplicate timestamps (kept as-is)", metrics.duplicate_timestamps)

    return metrics
