"""
Weather cache for the temperature overlay.

Hourly temperature ranges are stored under a composite key of rounded
coordinates and the covered dates, and persisted to a JSON file so they
survive between sessions.
"""
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import pandas as pd

logger = logging.getLogger(__name__)

HOURLY_COLUMNS = ["timestamp", "temperature_c"]

CacheKey = Tuple[float, float, str, str]


def round_coordinate(value: float) -> float:
    """Coordinates are matched at 2 decimal places (~1 km)."""
    return round(float(value), 2)


def empty_hourly() -> pd.DataFrame:
    return pd.DataFrame({
        "timestamp": pd.Series(dtype="int64"),
        "temperature_c": pd.Series(dtype="float64"),
    })


@dataclass
class WeatherCacheEntry:
    latitude: float
    longitude: float
    start_date: str    # YYYY-MM-DD
    end_date: str      # YYYY-MM-DD
    hourly: pd.DataFrame = field(default_factory=empty_hourly)
    fetched_at: float = field(default_factory=time.time)
    utc_offset_seconds: int = 0

    def __post_init__(self):
        self.latitude = round_coordinate(self.latitude)
        self.longitude = round_coordinate(self.longitude)

    @property
    def key(self) -> CacheKey:
        return (self.latitude, self.longitude, self.start_date, self.end_date)

    def overlaps(self, start_date: str, end_date: str) -> bool:
        return self.start_date <= end_date and self.end_date >= start_date

    def to_dict(self) -> Dict:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "fetched_at": self.fetched_at,
            "utc_offset_seconds": self.utc_offset_seconds,
            "hourly": self.hourly[HOURLY_COLUMNS].values.tolist(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "WeatherCacheEntry":
        hourly = pd.DataFrame(data.get("hourly", []), columns=HOURLY_COLUMNS)
        hourly = hourly.astype({"timestamp": "int64", "temperature_c": "float64"})
        return cls(
            latitude=data["latitude"],
            longitude=data["longitude"],
            start_date=data["start_date"],
            end_date=data["end_date"],
            hourly=hourly,
            fetched_at=data.get("fetched_at", 0.0),
            utc_offset_seconds=data.get("utc_offset_seconds", 0),
        )


class WeatherCache:
    """
    Composite-keyed weather store.

    Args:
        path: JSON file backing the cache, None keeps it in memory only
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path is not None else None
        self._entries: Dict[CacheKey, WeatherCacheEntry] = {}
        self._load()

    def __len__(self) -> int:
        return len(self._entries)

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            with self.path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
            if not isinstance(raw, dict):
                raise TypeError(f"expected a JSON object, got {type(raw).__name__}")
            for item in raw.get("entries", []):
                entry = WeatherCacheEntry.from_dict(item)
                self._entries[entry.key] = entry
            logger.info("Loaded %d weather cache entries from %s", len(self._entries), self.path)
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as e:
            logger.error("Error loading weather cache %s: %s", self.path, e)
            logger.info("Starting with an empty weather cache")
            self._entries = {}

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as f:
            json.dump({"entries": [e.to_dict() for e in self._entries.values()]}, f)

    def get(self, latitude: float, longitude: float,
            start_date: str, end_date: str) -> Optional[WeatherCacheEntry]:
        """Exact composite-key lookup."""
        key = (round_coordinate(latitude), round_coordinate(longitude), start_date, end_date)
        return self._entries.get(key)

    def get_all_for_location(self, latitude: float, longitude: float) -> List[WeatherCacheEntry]:
        """All entries at the rounded location, oldest fetch first."""
        lat, lon = round_coordinate(latitude), round_coordinate(longitude)
        entries = [e for e in self._entries.values() if e.latitude == lat and e.longitude == lon]
        return sorted(entries, key=lambda e: e.fetched_at)

    def upsert(self, entry: WeatherCacheEntry) -> None:
        self._entries[entry.key] = entry
        self._save()
        logger.debug("Cached weather %s", entry.key)

    def clear(self) -> None:
        self._entries = {}
        self._save()
        logger.info("Weather cache cleared")
