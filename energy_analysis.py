from __future__ import annotations
import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple, Union

import numpy as np
import pandas as pd
from zoneinfo import ZoneInfo

from chart_series import RESOLUTION_LABELS, TimeRange, prepare_chart_series, resolution_width
from config import load_config
from data_quality import DataQualityMetrics, readings_frame, validate_readings
from scheduler import GenerationCounter, ResultSlot, StaleComputation, run_in_chunks

# ────────────────────────────────────────────────────────────────────────────────
# CONFIG
# ────────────────────────────────────────────────────────────────────────────────

log = logging.getLogger(__name__)

CONFIG = load_config()

DAYS_OF_WEEK = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
MONTHS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]

GROUP_COUNTS = {"hour": 24, "dayOfWeek": 7, "month": 12}

# calendar identity of one timeline instance
INSTANCE_FIELDS = {
    "month": ["year", "month"],
    "dayOfWeek": ["year", "month", "day"],
    "hour": ["year", "month", "day", "hour"],
}

CATEGORY_FIELD = {"month": "month", "dayOfWeek": "weekday", "hour": "hour"}


def _zone(tz: Union[str, ZoneInfo, None]) -> ZoneInfo:
    if tz is None:
        tz = CONFIG["timezone"]
    return tz if isinstance(tz, ZoneInfo) else ZoneInfo(tz)


def _check_group_by(group_by: str) -> None:
    if group_by not in GROUP_COUNTS:
        raise ValueError(f"Unknown group_by {group_by!r}, expected one of {list(GROUP_COUNTS)}")


def category_labels(group_by: str) -> List[str]:
    _check_group_by(group_by)
    if group_by == "dayOfWeek":
        return list(DAYS_OF_WEEK)
    if group_by == "month":
        return list(MONTHS)
    return [f"{h}:00" for h in range(24)]


@dataclass
class AnalysisFilters:
    days_of_week: Set[int] = field(default_factory=set)   # 0 = Sunday
    months: Set[int] = field(default_factory=set)         # 0 = January
    hour_start: int = 0
    hour_end: int = 23

    def __post_init__(self):
        self.days_of_week = set(self.days_of_week)
        self.months = set(self.months)
        if not self.days_of_week <= set(range(7)):
            raise ValueError(f"days_of_week must be within 0..6, got {sorted(self.days_of_week)}")
        if not self.months <= set(range(12)):
            raise ValueError(f"months must be within 0..11, got {sorted(self.months)}")
        if not (0 <= self.hour_start <= 23 and 0 <= self.hour_end <= 23):
            raise ValueError(f"hour range must be within 0..23, got {self.hour_start}-{self.hour_end}")

    @property
    def has_hour_filter(self) -> bool:
        return self.hour_start > 0 or self.hour_end < 23

    @property
    def is_empty(self) -> bool:
        return not self.days_of_week and not self.months and not self.has_hour_filter


@dataclass(frozen=True)
class AnalysisResult:
    filtered: pd.DataFrame
    timeline: pd.DataFrame
    averages: pd.DataFrame
    generation: int = 0


TIMELINE_COLUMNS = ["timestamp", "value", "cost", "label", "count",
                    "period_start", "period_end", "category_key", "is_complete"]


def _empty_timeline() -> pd.DataFrame:
    return pd.DataFrame({col: pd.Series(dtype="object" if col == "label" else "int64")
                         for col in TIMELINE_COLUMNS}).astype({"is_complete": bool})


# ────────────────────────────────────────────────────────────────────────────────
# FILTERING
# ────────────────────────────────────────────────────────────────────────────────


def local_fields(timestamps: pd.Series, tz: Union[str, ZoneInfo, None] = None) -> pd.DataFrame:
    """Calendar fields of epoch-second timestamps in local time."""
    local = pd.to_datetime(timestamps, unit="s", utc=True).dt.tz_convert(_zone(tz))
    return pd.DataFrame({
        "year": local.dt.year,
        "month": local.dt.month - 1,
        "day": local.dt.day,
        "hour": local.dt.hour,
        "weekday": (local.dt.dayofweek + 1) % 7,  # pandas counts from Monday
    }, index=timestamps.index)


def filter_readings(readings: pd.DataFrame, filters: AnalysisFilters,
                    tz: Union[str, ZoneInfo, None] = None) -> pd.DataFrame:
    """Keep readings matching every active calendar predicate."""
    if filters.is_empty or readings.empty:
        return readings

    fields = local_fields(readings["timestamp"], tz)
    mask = pd.Series(True, index=readings.index)
    if filters.days_of_week:
        mask &= fields["weekday"].isin(filters.days_of_week)
    if filters.months:
        mask &= fields["month"].isin(filters.months)
    if filters.has_hour_filter:
        mask &= fields["hour"].between(filters.hour_start, filters.hour_end)
    return readings[mask]


# ────────────────────────────────────────────────────────────────────────────────
# TIMELINE
# ────────────────────────────────────────────────────────────────────────────────


@dataclass
class _PeriodAccumulator:
    value: int
    cost: int
    count: int
    category_key: int


class TimelineArena:
    """
    Per-instance totals keyed by calendar identity.

    Chunks are folded in one at a time; ``to_timeline`` turns the records
    into the sorted timeline frame.
    """

    def __init__(self, group_by: str, tz: Union[str, ZoneInfo, None] = None):
        _check_group_by(group_by)
        self.group_by = group_by
        self.tz = _zone(tz)
        self.records: Dict[Tuple[int, ...], _PeriodAccumulator] = {}

    def __len__(self) -> int:
        return len(self.records)

    def add(self, chunk: pd.DataFrame) -> None:
        if chunk.empty:
            return
        keys = INSTANCE_FIELDS[self.group_by]
        fields = local_fields(chunk["timestamp"], self.tz)
        frame = fields[keys].assign(
            value=chunk["value"],
            cost=chunk["cost"],
            category=fields[CATEGORY_FIELD[self.group_by]],
        )
        grouped = frame.groupby(keys, sort=False).agg(
            value=("value", "sum"),
            cost=("cost", "sum"),
            n=("value", "size"),
            category=("category", "first"),
        )
        for key, row in zip(grouped.index, grouped.itertuples(index=False)):
            key = tuple(int(k) for k in key)
            acc = self.records.get(key)
            if acc is None:
                self.records[key] = _PeriodAccumulator(
                    int(row.value), int(row.cost), int(row.n), int(row.category))
            else:
                acc.value += int(row.value)
                acc.cost += int(row.cost)
                acc.count += int(row.n)

    def period_bounds(self, key: Tuple[int, ...]) -> Tuple[int, int]:
        """First and last second of the instance, in epoch seconds."""
        if self.group_by == "month":
            year, month = key
            start = datetime(year, month + 1, 1, tzinfo=self.tz)
            following = datetime(year + (month == 11), (month + 1) % 12 + 1, 1, tzinfo=self.tz)
            return int(start.timestamp()), int(following.timestamp()) - 1
        if self.group_by == "dayOfWeek":
            year, month, day = key
            start = int(datetime(year, month + 1, day, tzinfo=self.tz).timestamp())
            return start, start + 86399
        year, month, day, hour = key
        start = int(datetime(year, month + 1, day, hour, tzinfo=self.tz).timestamp())
        # a repeated DST fall-back hour is one instance but still ends one hour after its first occurrence
        return start, start + 3599

    def label(self, key: Tuple[int, ...], category_key: int) -> str:
        if self.group_by == "month":
            year, month = key
            return f"{MONTHS[month]} {year}"
        short_date = f"{key[1] + 1}/{key[2]}/{key[0] % 100:02d}"
        if self.group_by == "dayOfWeek":
            return f"{DAYS_OF_WEEK[category_key]} {short_date}"
        return f"{short_date} {key[3]}:00"

    def to_timeline(self, view_range: Optional[TimeRange] = None) -> pd.DataFrame:
        """
        Sorted timeline of instance totals.

        ``is_complete`` marks instances whose whole calendar interval lies
        inside the view range. Without a bounded view range every instance
        counts as complete.
        """
        if not self.records:
            return _empty_timeline()

        bounded = view_range is not None and view_range.is_bounded
        rows = []
        for key, acc in self.records.items():
            start, end = self.period_bounds(key)
            rows.append({
                "timestamp": start,
                "value": acc.value,
                "cost": acc.cost,
                "label": self.label(key, acc.category_key),
                "count": acc.count,
                "period_start": start,
                "period_end": end,
                "category_key": acc.category_key,
                "is_complete": view_range.contains(start, end) if bounded else True,
            })
        timeline = pd.DataFrame(rows, columns=TIMELINE_COLUMNS)
        return timeline.sort_values("period_start", kind="stable").reset_index(drop=True)


def build_timeline(readings: pd.DataFrame, group_by: str,
                   view_range: Optional[TimeRange] = None,
                   tz: Union[str, ZoneInfo, None] = None) -> pd.DataFrame:
    arena = TimelineArena(group_by, tz)
    arena.add(readings)
    return arena.to_timeline(view_range)


# ────────────────────────────────────────────────────────────────────────────────
# CATEGORY AVERAGES
# ────────────────────────────────────────────────────────────────────────────────


def _round_half_up(values: pd.Series) -> pd.Series:
    return np.floor(values + 0.5).astype("int64")


def category_averages(timeline: pd.DataFrame, group_by: str) -> pd.DataFrame:
    """
    Average the complete instance totals of every category.

    Categories without a complete instance get zeros and ``has_data`` False,
    so "no data" stays distinguishable from "zero usage".
    """
    labels = category_labels(group_by)
    group_count = GROUP_COUNTS[group_by]

    complete = timeline[timeline["is_complete"]]
    stats = (
        complete.groupby("category_key")
        .agg(average=("value", "mean"), avg_cost=("cost", "mean"), count=("value", "size"))
        .reindex(range(group_count))
    )

    averages = pd.DataFrame({
        "key": range(group_count),
        "label": labels,
        "average": _round_half_up(stats["average"].fillna(0)).to_numpy(),
        "avg_cost": _round_half_up(stats["avg_cost"].fillna(0)).to_numpy(),
        "count": stats["count"].fillna(0).astype("int64").to_numpy(),
    })
    averages["has_data"] = averages["count"] > 0
    return averages


def analyze(readings: pd.DataFrame, filters: Optional[AnalysisFilters] = None,
            group_by: str = "month", view_range: Optional[TimeRange] = None,
            tz: Union[str, ZoneInfo, None] = None) -> AnalysisResult:
    """
    Filter readings, build the timeline and derive category averages in one go.

    Args:
        readings: Range-selected reading frame
        filters: Calendar filters, None means no restriction
        group_by: hour, dayOfWeek or month
        view_range: Active view range used for completeness
        tz: Timezone for calendar fields (config default if None)

    Returns:
        AnalysisResult
    """
    _check_group_by(group_by)
    filters = filters or AnalysisFilters()
    filtered = filter_readings(readings, filters, tz)
    timeline = build_timeline(filtered, group_by, view_range, tz)
    return AnalysisResult(filtered, timeline, category_averages(timeline, group_by))


class AnalysisRunner:
    """
    Chunked, cancellable analysis on the event loop.

    Every ``run`` supersedes the previous one. A superseded run stops at its
    next chunk boundary, publishes nothing and returns None.
    """

    def __init__(self, tz: Union[str, ZoneInfo, None] = None,
                 filter_chunk_size: Optional[int] = None,
                 aggregate_chunk_size: Optional[int] = None,
                 pause: Optional[float] = None,
                 on_publish: Optional[Callable[[AnalysisResult], None]] = None):
        processing = CONFIG["processing"]
        self.tz = _zone(tz)
        self.filter_chunk_size = filter_chunk_size or processing["filter_chunk_size"]
        self.aggregate_chunk_size = aggregate_chunk_size or processing["aggregate_chunk_size"]
        self.pause = processing["yield_seconds"] if pause is None else pause
        self.counter = GenerationCounter()
        self.results: ResultSlot[AnalysisResult] = ResultSlot()
        self._on_publish = on_publish

    @property
    def latest(self) -> Optional[AnalysisResult]:
        return self.results.value

    def cancel(self) -> None:
        """Invalidate whatever run is in flight."""
        self.counter.advance()

    async def run(self, readings: pd.DataFrame, filters: Optional[AnalysisFilters] = None,
                  group_by: str = "month",
                  view_range: Optional[TimeRange] = None) -> Optional[AnalysisResult]:
        _check_group_by(group_by)
        token = self.counter.advance()
        filters = filters or AnalysisFilters()

        parts: List[pd.DataFrame] = []
        arena = TimelineArena(group_by, self.tz)
        try:
            await run_in_chunks(
                readings, self.filter_chunk_size,
                lambda chunk: parts.append(filter_readings(chunk, filters, self.tz)),
                self.counter, token, self.pause,
            )
            filtered = pd.concat(parts) if parts else readings.iloc[0:0]
            await asyncio.sleep(self.pause)
            await run_in_chunks(filtered, self.aggregate_chunk_size, arena.add,
                                self.counter, token, self.pause)
        except StaleComputation as stale:
            log.debug("Analysis abandoned: %s", stale)
            return None

        timeline = arena.to_timeline(view_range)
        result = AnalysisResult(filtered, timeline, category_averages(timeline, group_by), token)
        if not self.results.publish(self.counter, token, result):
            return None
        log.info("Analysis %d: %d readings kept, %d %s instances",
                 token, len(filtered), len(timeline), group_by)
        if self._on_publish is not None:
            self._on_publish(result)
        return result


# ────────────────────────────────────────────────────────────────────────────────
# DESCRIPTION
# ────────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ChartDescription:
    main: str
    filters: List[str]


def _hour_display(hour: int) -> str:
    if hour == 0:
        return "12 AM"
    if hour == 12:
        return "12 PM"
    return f"{hour} AM" if hour < 12 else f"{hour - 12} PM"


def describe_analysis(view: str, group_by: str, metric: str,
                      filters: AnalysisFilters) -> ChartDescription:
    """Plain-text caption for an averages or timeline chart."""
    _check_group_by(group_by)
    metric = "energy" if metric == "energy" else "cost"
    group_label = {"hour": "hour", "dayOfWeek": "day of week", "month": "month"}[group_by]

    if view == "averages":
        main = f"Average {metric} by {group_label}"
    else:
        period = {"hour": "Hourly", "dayOfWeek": "Daily", "month": "Monthly"}[group_by]
        main = f"{period} {metric} timeline"

    parts = []
    days = filters.days_of_week
    if 0 < len(days) < 7:
        if days == {1, 2, 3, 4, 5}:
            parts.append("weekdays only")
        elif days == {0, 6}:
            parts.append("weekends only")
        else:
            parts.append(", ".join(DAYS_OF_WEEK[d] for d in sorted(days)))

    months = filters.months
    if 0 < len(months) < 12:
        if len(months) <= 3:
            parts.append(", ".join(MONTHS[m] for m in sorted(months)))
        else:
            parts.append(f"{len(months)} months")

    if filters.has_hour_filter:
        parts.append(f"{_hour_display(filters.hour_start)}–{_hour_display(filters.hour_end)}")

    return ChartDescription(main, parts)


# ────────────────────────────────────────────────────────────────────────────────
# COMMAND LINE
# ────────────────────────────────────────────────────────────────────────────────


def load_readings(file_path: str | Path) -> Tuple[pd.DataFrame, DataQualityMetrics]:
    """Load a JSON array of readings → reading frame with data quality metrics."""
    fp = Path(file_path)
    log.info("Reading %s", fp)
    with fp.open("r", encoding="utf-8") as f:
        raw = json.load(f)
    df = readings_frame(raw)
    quality_metrics = validate_readings(df, total_records=len(raw))
    log.info("Valid rows: %d", len(df))
    return df, quality_metrics


async def _temperature_overlay(chart: pd.DataFrame, resolution: str,
                               location_query: str) -> Tuple[pd.DataFrame, Dict[int, float]]:
    from weather import OpenMeteoClient, WeatherService, aggregate_weather, join_temperature
    from weather_cache import WeatherCache

    cache = WeatherCache(CONFIG["weather"]["cache_path"])
    async with OpenMeteoClient() as client:
        location = await client.geocode(location_query)
        log.info("Weather location: %s, %s", location.name, location.country)
        service = WeatherService(client, cache)
        hourly = await service.get_weather_data(
            location.latitude, location.longitude,
            int(chart["timestamp"].min()), int(chart["timestamp"].max()),
        )
    weather_resolution = "HOURLY" if resolution.upper() == "RAW" else resolution
    temperatures = aggregate_weather(hourly, weather_resolution)
    return join_temperature(chart, temperatures), temperatures


def main(path: str | Path, resolution: str = "HOURLY", group_by: str = "month",
         threshold: Optional[int] = None, location: Optional[str] = None,
         output_dir: str | Path = "csv_output", tz: Optional[str] = None) -> None:
    """
    Main analysis function.

    Args:
        path: Path to input JSON file
        resolution: Chart resolution (RAW, HOURLY, DAILY, WEEKLY)
        group_by: Analysis grouping (hour, dayOfWeek, month)
        threshold: Maximum chart points
        location: Place name or postal code for the temperature overlay
        output_dir: Directory for CSV output
        tz: Timezone for calendar fields
    """
    start_time = datetime.now()
    log.info("Starting energy analysis...")
    resolution_width(resolution)
    log.info("Chart resolution: %s", RESOLUTION_LABELS[resolution.upper()])

    df, quality_metrics = load_readings(path)
    quality_metrics.print_summary()

    view_range = TimeRange(int(df["timestamp"].min()), int(df["timestamp"].max()))
    chart = prepare_chart_series(df, resolution, view_range, threshold)
    efficiency = None
    if location:
        from efficiency import calculate_efficiency

        chart, temperatures = asyncio.run(_temperature_overlay(chart, resolution, location))
        efficiency = calculate_efficiency(chart, temperatures)

    result = analyze(df, AnalysisFilters(), group_by, view_range, tz)

    csv_dir = Path(output_dir)
    csv_dir.mkdir(parents=True, exist_ok=True)
    chart.to_csv(csv_dir / f"chart_{resolution.lower()}.csv", index=False)
    if efficiency is not None:
        efficiency.to_csv(csv_dir / f"efficiency_{resolution.lower()}.csv", index=False)
    result.timeline.to_csv(csv_dir / f"timeline_{group_by}.csv", index=False)
    result.averages.to_csv(csv_dir / f"averages_{group_by}.csv", index=False)

    for row in result.averages.itertuples(index=False):
        if row.has_data:
            log.info("  %-6s avg %8d Wh over %d periods", row.label, row.average, row.count)
        else:
            log.info("  %-6s no complete periods", row.label)

    elapsed = (datetime.now() - start_time).total_seconds()
    log.info("Done in %.2f seconds. CSV files saved in %s", elapsed, csv_dir.resolve())


if __name__ == "__main__":
    import argparse

    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s · %(levelname)s · %(message)s"
    )

    parser = argparse.ArgumentParser(description="Energy consumption analysis")
    parser.add_argument("--input", "-i", required=True,
                        help="Input JSON file with an array of readings")
    parser.add_argument("--resolution", "-r", default=CONFIG["chart"]["default_resolution"],
                        choices=["RAW", "HOURLY", "DAILY", "WEEKLY"],
                        help="Chart bucket width")
    parser.add_argument("--group-by", "-g", default="month",
                        choices=list(GROUP_COUNTS), help="Analysis grouping")
    parser.add_argument("--max-points", type=int, default=None,
                        help="Maximum number of chart points")
    parser.add_argument("--location", "-l", default=None,
                        help="Place name or postal code for the temperature overlay")
    parser.add_argument("--timezone", default=None,
                        help="Timezone for calendar grouping")
    parser.add_argument("--output", "-o", default="csv_output",
                        help="Directory for CSV output")
    args = parser.parse_args()

    main(args.input, resolution=args.resolution, group_by=args.group_by,
         threshold=args.max_points, location=args.location,
         output_dir=args.output, tz=args.timezone)
