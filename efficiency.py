"""
Weather-normalized efficiency for energy analysis.

Energy use is compared against heating and cooling degree units derived
from the temperature overlay. An index of 100 means the period used as much
energy per degree unit as the baseline, higher is better.
"""
import numpy as np
import pandas as pd
import logging
from typing import Callable, Dict, Hashable, Optional

from config import load_config

logger = logging.getLogger(__name__)

CONFIG = load_config()


def _settings(overrides: Dict) -> Dict:
    settings = dict(CONFIG["efficiency"])
    settings.update({k: v for k, v in overrides.items() if v is not None})
    return settings


def _index(baseline_rate: float, energy: pd.Series, degree_units: pd.Series, settings: Dict) -> pd.Series:
    """baseline/actual * 100, clamped; missing where degree units are too small."""
    valid = degree_units > settings["min_degree_units"]
    index = pd.Series(pd.NA, index=energy.index, dtype="Int64")
    if baseline_rate <= 0 or not valid.any():
        return index
    actual_rate = energy[valid] / degree_units[valid]
    raw = np.floor(baseline_rate / actual_rate * 100 + 0.5)
    index[valid] = raw.clip(settings["index_floor"], settings["index_ceiling"]).astype("int64")
    return index


def calculate_efficiency(series: pd.DataFrame, temperatures: Dict[int, float],
                         balance_point_c: Optional[float] = None,
                         heating: Optional[bool] = None,
                         cooling: Optional[bool] = None) -> pd.DataFrame:
    """
    Calculate efficiency metrics for an energy series.

    For hourly data the degree values are degree hours.

    Args:
        series: Frame with timestamp and value columns
        temperatures: Bucket start → temperature in °C, as from aggregate_weather
        balance_point_c: Temperature where no heating or cooling is needed
        heating: Count heating degree units
        cooling: Count cooling degree units

    Returns:
        DataFrame with timestamp, energy, temperature_c, hdd, cdd,
        degree_units and efficiency_index (missing for mild periods).
        Rows without a temperature are dropped.
    """
    settings = _settings({
        "balance_point_c": balance_point_c,
        "heating_enabled": heating,
        "cooling_enabled": cooling,
    })

    df = pd.DataFrame({
        "timestamp": series["timestamp"],
        "energy": series["value"],
        "temperature_c": series["timestamp"].map(temperatures),
    }).dropna(subset=["temperature_c"]).reset_index(drop=True)

    balance = settings["balance_point_c"]
    df["hdd"] = (balance - df["temperature_c"]).clip(lower=0) if settings["heating_enabled"] else 0.0
    df["cdd"] = (df["temperature_c"] - balance).clip(lower=0) if settings["cooling_enabled"] else 0.0
    df["degree_units"] = df["hdd"] + df["cdd"]

    # baseline only from periods with a meaningful heating/cooling load
    loaded = df[df["degree_units"] > settings["min_degree_units"]]
    total_units = loaded["degree_units"].sum()
    baseline_rate = loaded["energy"].sum() / total_units if total_units > 0 else 0.0

    df["efficiency_index"] = _index(baseline_rate, df["energy"], df["degree_units"], settings)
    logger.debug("Efficiency baseline %.3f Wh per degree unit over %d periods", baseline_rate, len(loaded))
    return df


def aggregate_efficiency(efficiency: pd.DataFrame,
                         key_fn: Callable[[int], Hashable]) -> pd.DataFrame:
    """
    Recalculate efficiency on grouped totals.

    Args:
        efficiency: Output of calculate_efficiency
        key_fn: Maps a timestamp to its group key

    Returns:
        DataFrame indexed by group key with total_energy, total_degree_units
        and efficiency_index
    """
    settings = _settings({})
    if efficiency.empty:
        return pd.DataFrame(columns=["total_energy", "total_degree_units", "efficiency_index"])

    groups = efficiency.groupby(efficiency["timestamp"].map(key_fn)).agg(
        total_energy=("energy", "sum"),
        total_degree_units=("degree_units", "sum"),
    )
    loaded = groups[groups["total_degree_units"] > settings["min_degree_units"]]
    total_units = loaded["total_degree_units"].sum()
    baseline_rate = loaded["total_energy"].sum() / total_units if total_units > 0 else 0.0

    groups["efficiency_index"] = _index(
        baseline_rate, groups["total_energy"], groups["total_degree_units"], settings)
    return groups


def efficiency_label(index) -> str:
    """Human-readable label for an efficiency index."""
    if index is None or pd.isna(index):
        return "N/A (mild weather)"
    if index >= 130:
        return "Excellent"
    if index >= 110:
        return "Good"
    if index >= 90:
        return "Average"
    if index >= 70:
        return "Below Average"
    return "Poor"
