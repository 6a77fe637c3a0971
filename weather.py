"""
Temperature overlay: Open-Meteo geocoding and archive access, cache-first
lookup of hourly temperatures, and aggregation onto the energy buckets.
"""
import asyncio
import json
import logging
import re
import time
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import aiohttp
import pandas as pd
from zoneinfo import ZoneInfo

from chart_series import bucket_keys
from config import load_config
from scheduler import GenerationCounter
from weather_cache import WeatherCache, WeatherCacheEntry, empty_hourly

logger = logging.getLogger(__name__)

CONFIG = load_config()

EPOCH_DAY = date(1970, 1, 1)

WEATHER_WIDTHS = {
    "RAW": 3600,
    "HOURLY": 3600,
    "DAILY": 86400,
    "WEEKLY": 604800,
}


class WeatherError(Exception):
    """Base class for temperature overlay failures"""
    pass


class LocationNotFound(WeatherError):
    """Raised when geocoding finds no match"""
    pass


class RangeUnavailable(WeatherError):
    """Raised when the requested span lies outside the archive"""
    pass


class TransientFetchError(WeatherError):
    """Raised when a network or API request fails for reasons other than the date range"""
    pass


@dataclass(frozen=True)
class GeocodingResult:
    latitude: float
    longitude: float
    name: str
    country: str = ""
    admin1: Optional[str] = None

    @classmethod
    def from_api(cls, result: Dict[str, Any]) -> "GeocodingResult":
        return cls(
            latitude=result["latitude"],
            longitude=result["longitude"],
            name=result.get("name", ""),
            country=result.get("country", ""),
            admin1=result.get("admin1"),
        )


# ────────────────────────────────────────────────────────────────────────────────
# OPEN-METEO CLIENT
# ────────────────────────────────────────────────────────────────────────────────


class OpenMeteoClient:
    """
    Async client for the Open-Meteo geocoding and archive APIs.

    Use as an async context manager, or call ``close`` when done.
    """

    def __init__(self, geocoding_url: Optional[str] = None,
                 archive_url: Optional[str] = None,
                 timeout: Optional[float] = None):
        settings = CONFIG["weather"]
        self.geocoding_url = geocoding_url or settings["geocoding_url"]
        self.archive_url = archive_url or settings["archive_url"]
        self.timeout = timeout or settings["request_timeout"]
        self.postal_code_country = settings["postal_code_country"]
        self.result_count = settings["geocoding_results"]
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "OpenMeteoClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session"""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"Accept": "application/json"},
            )
        return self.session

    async def _get_json(self, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        GET ``url`` and decode the JSON body.

        API error payloads (``{"error": true, "reason": ...}``) are returned
        as-is so callers can inspect the reason.
        """
        try:
            session = await self._get_session()
            logger.debug("GET %s %s", url, params)
            async with session.get(url, params=params) as response:
                try:
                    data = await response.json(content_type=None)
                except (json.JSONDecodeError, ValueError):
                    data = None
                is_api_error = isinstance(data, dict) and data.get("error")
                if response.status != 200 and not is_api_error:
                    raise TransientFetchError(f"Weather API error: HTTP {response.status}")
                if not isinstance(data, dict):
                    raise TransientFetchError("Weather API returned an invalid response")
                return data
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientFetchError(f"Weather request failed: {e}") from e

    async def _search(self, name: str) -> List[Dict[str, Any]]:
        data = await self._get_json(self.geocoding_url, {
            "name": name,
            "count": self.result_count,
            "language": "en",
            "format": "json",
        })
        if data.get("error"):
            raise TransientFetchError(str(data.get("reason") or "Geocoding failed"))
        return data.get("results") or []

    async def geocode(self, query: str) -> GeocodingResult:
        """
        Look up a place name or postal code.

        A 5-digit postal code without a direct match is retried once with the
        country appended.

        Raises:
            LocationNotFound: If nothing matches
            TransientFetchError: If the request fails
        """
        query = query.strip()
        if not query:
            raise LocationNotFound("Empty location query")

        results = await self._search(query)
        if not results and re.fullmatch(r"\d{5}", query):
            logger.info("No match for %s, retrying with %s", query, self.postal_code_country)
            results = await self._search(f"{query} {self.postal_code_country}")

        if not results:
            raise LocationNotFound(f"Location not found: {query}")
        return GeocodingResult.from_api(results[0])

    async def fetch_archive(self, latitude: float, longitude: float,
                            start_date: date, end_date: date) -> Dict[str, Any]:
        """Raw archive payload for hourly 2 m temperatures."""
        return await self._get_json(self.archive_url, {
            "latitude": latitude,
            "longitude": longitude,
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
            "hourly": "temperature_2m",
            "timezone": "auto",
        })

    async def close(self) -> None:
        """Close the aiohttp session"""
        if self.session and not self.session.closed:
            await self.session.close()
            logger.debug("Open-Meteo session closed")


def parse_archive_response(payload: Dict[str, Any]) -> Tuple[pd.DataFrame, int]:
    """
    Turn an archive payload into an hourly frame.

    Archive times are local wall-clock times; ``utc_offset_seconds`` maps
    them back to epoch seconds. Hours without a temperature are dropped.

    Returns:
        Tuple of (hourly frame, utc offset in seconds)
    """
    hourly = payload.get("hourly") or {}
    times = hourly.get("time")
    temps = hourly.get("temperature_2m")
    if times is None or temps is None or len(times) != len(temps):
        raise TransientFetchError("Invalid weather data response")

    offset = int(payload.get("utc_offset_seconds") or 0)
    if not times:
        return empty_hourly(), offset

    local = pd.to_datetime(pd.Series(times), format="ISO8601")
    epoch = (local - pd.Timestamp("1970-01-01")) // pd.Timedelta(seconds=1) - offset
    frame = pd.DataFrame({
        "timestamp": epoch.astype("int64"),
        "temperature_c": pd.to_numeric(pd.Series(temps), errors="coerce").astype("float64"),
    })
    return frame.dropna(subset=["temperature_c"]).reset_index(drop=True), offset


# ────────────────────────────────────────────────────────────────────────────────
# CACHE-FIRST WEATHER LOOKUP
# ────────────────────────────────────────────────────────────────────────────────


def _utc_date(ts: int) -> date:
    return datetime.fromtimestamp(ts, tz=timezone.utc).date()


def _epoch_day(d: date) -> int:
    return (d - EPOCH_DAY).days


def _local_days(hourly: pd.DataFrame, utc_offset_seconds: int) -> pd.Series:
    """Archive-local calendar day of each point, as days since the epoch."""
    return (hourly["timestamp"] + utc_offset_seconds) // 86400


def _is_out_of_range(reason: str) -> bool:
    return "end_date" in reason and "out of allowed range" in reason


def clamp_date_range(start_date: date, end_date: date,
                     min_date: date, max_date: date) -> Tuple[date, date]:
    """
    Clamp a date span to what the archive can serve.

    Raises:
        RangeUnavailable: If nothing of the span is left after clamping
    """
    start = max(start_date, min_date)
    end = min(end_date, max_date)
    if start > end:
        raise RangeUnavailable(
            f"Requested date range {start_date} – {end_date} is outside available "
            f"weather data ({min_date} to {max_date})"
        )
    return start, end


def _covers(entries: List[WeatherCacheEntry], start: date, end: date) -> bool:
    """True if the entries' date spans cover [start, end] without a gap."""
    cursor = start
    for entry in sorted(entries, key=lambda e: e.start_date):
        if date.fromisoformat(entry.start_date) > cursor:
            return False
        cursor = max(cursor, date.fromisoformat(entry.end_date) + timedelta(days=1))
        if cursor > end:
            return True
    return cursor > end


class WeatherService:
    """
    Hourly temperatures for a location and time span, cache first.

    Args:
        client: Open-Meteo client (anything with ``fetch_archive``)
        cache: Weather cache store
        today: Returns the current date, used for the archive's end limit
        min_date: Earliest archive date
        end_date_offsets: Days back from today to try as the end limit
    """

    def __init__(self, client: OpenMeteoClient, cache: WeatherCache,
                 today: Optional[Callable[[], date]] = None,
                 min_date: Optional[date] = None,
                 end_date_offsets: Optional[List[int]] = None):
        settings = CONFIG["weather"]
        self.client = client
        self.cache = cache
        self._today = today or date.today
        self.min_date = min_date or date.fromisoformat(settings["archive_min_date"])
        self.end_date_offsets = list(end_date_offsets or settings["end_date_offsets"])

    def archive_max_date(self, days_offset: int) -> date:
        return self._today() - timedelta(days=days_offset)

    async def get_weather_data(self, latitude: float, longitude: float,
                               start_ts: int, end_ts: int) -> pd.DataFrame:
        """
        Hourly temperatures covering the UTC dates of [start_ts, end_ts].

        Raises:
            RangeUnavailable: If the span is outside the archive
            TransientFetchError: If the archive request fails
        """
        start_date, end_date = _utc_date(start_ts), _utc_date(end_ts)
        start, end = clamp_date_range(start_date, end_date, self.min_date,
                                      self.archive_max_date(self.end_date_offsets[0]))

        exact = self.cache.get(latitude, longitude, start.isoformat(), end.isoformat())
        if exact is not None:
            logger.info("Weather cache hit (exact)")
            return exact.hourly.copy()

        merged = self._from_overlapping(latitude, longitude, start, end)
        if merged is not None:
            logger.info("Weather cache hit (from overlapping ranges)")
            return merged

        logger.info("Fetching weather data from Open-Meteo (%s to %s)...", start_date, end_date)
        hourly, offset = await self._fetch_with_retry(latitude, longitude, start_date, end_date)

        if not hourly.empty:
            days = _local_days(hourly, offset)
            self.cache.upsert(WeatherCacheEntry(
                latitude=latitude,
                longitude=longitude,
                start_date=(EPOCH_DAY + timedelta(days=int(days.min()))).isoformat(),
                end_date=(EPOCH_DAY + timedelta(days=int(days.max()))).isoformat(),
                hourly=hourly,
                fetched_at=time.time(),
                utc_offset_seconds=offset,
            ))
        return hourly

    def _from_overlapping(self, latitude: float, longitude: float,
                          start: date, end: date) -> Optional[pd.DataFrame]:
        entries = [
            e for e in self.cache.get_all_for_location(latitude, longitude)
            if e.overlaps(start.isoformat(), end.isoformat())
        ]
        if not entries or not _covers(entries, start, end):
            return None

        # entries come oldest first, so later fetches win on duplicate hours
        merged = pd.concat(
            [e.hourly.assign(day=_local_days(e.hourly, e.utc_offset_seconds)) for e in entries],
            ignore_index=True,
        ).drop_duplicates("timestamp", keep="last")
        merged = merged[merged["day"].between(_epoch_day(start), _epoch_day(end))]
        return merged.sort_values("timestamp").drop(columns="day").reset_index(drop=True)

    async def _fetch_with_retry(self, latitude: float, longitude: float,
                                start_date: date, end_date: date) -> Tuple[pd.DataFrame, int]:
        last_reason = None
        for days_offset in self.end_date_offsets:
            max_date = self.archive_max_date(days_offset)
            start, end = clamp_date_range(start_date, end_date, self.min_date, max_date)
            if (start, end) != (start_date, end_date):
                logger.info("Weather date range clamped to %s - %s (max date: %s)", start, end, max_date)

            payload = await self.client.fetch_archive(latitude, longitude, start, end)
            if payload.get("error"):
                reason = str(payload.get("reason") or "Unknown error")
                if _is_out_of_range(reason):
                    logger.info("Weather API date %s not available yet, trying an earlier end date", end)
                    last_reason = reason
                    continue
                raise TransientFetchError(reason)

            return parse_archive_response(payload)

        raise RangeUnavailable(last_reason or "Failed to fetch weather data")


# ────────────────────────────────────────────────────────────────────────────────
# AGGREGATION
# ────────────────────────────────────────────────────────────────────────────────


def aggregate_weather(hourly: pd.DataFrame, resolution: str,
                      tz: Union[str, ZoneInfo, None] = None) -> Dict[int, float]:
    """
    Average temperature per bucket start.

    HOURLY, DAILY and WEEKLY use the same epoch-floor buckets as the energy
    aggregation so the result joins straight onto it. MONTHLY buckets start
    at local midnight on the first of the month.

    Args:
        hourly: Frame with timestamp and temperature_c
        resolution: RAW, HOURLY, DAILY, WEEKLY or MONTHLY
        tz: Timezone for MONTHLY buckets

    Returns:
        Mapping of bucket start → mean temperature in °C
    """
    resolution = resolution.upper()
    if resolution != "MONTHLY" and resolution not in WEATHER_WIDTHS:
        raise ValueError(f"Unknown weather resolution {resolution!r}")
    if hourly.empty:
        return {}

    if resolution == "MONTHLY":
        zone = tz if isinstance(tz, ZoneInfo) else ZoneInfo(tz or CONFIG["timezone"])
        local = pd.to_datetime(hourly["timestamp"], unit="s", utc=True).dt.tz_convert(zone)
        month_starts = {}
        for year, month in set(zip(local.dt.year, local.dt.month)):
            month_starts[(year, month)] = int(datetime(year, month, 1, tzinfo=zone).timestamp())
        keys = pd.Series(
            [month_starts[ym] for ym in zip(local.dt.year, local.dt.month)],
            index=hourly.index,
        )
    else:
        keys = bucket_keys(hourly["timestamp"], WEATHER_WIDTHS[resolution])

    means = hourly["temperature_c"].groupby(keys).mean()
    return {int(ts): float(temp) for ts, temp in means.items()}


def join_temperature(series: pd.DataFrame, temperatures: Dict[int, float]) -> pd.DataFrame:
    """Attach the bucket temperature to each row of an energy series (NaN if unknown)."""
    return series.assign(temperature_c=series["timestamp"].map(temperatures))


# ────────────────────────────────────────────────────────────────────────────────
# OVERLAY STATE
# ────────────────────────────────────────────────────────────────────────────────


class LocationStore:
    """
    Persisted weather location preference.

    Args:
        path: JSON file, None keeps the preference in memory only
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path is not None else None
        self._memory: Optional[Dict[str, Any]] = None

    def load(self) -> Optional[Dict[str, Any]]:
        if self.path is None:
            return self._memory
        if not self.path.exists():
            return None
        try:
            with self.path.open("r", encoding="utf-8") as f:
                preference = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable location preference %s: %s", self.path, e)
            return None
        if not isinstance(preference, dict):
            logger.warning("Ignoring location preference %s: expected a JSON object", self.path)
            return None
        return preference

    def save(self, query: str, location: GeocodingResult, enabled: bool) -> None:
        preference = {"query": query, "location": asdict(location), "enabled": enabled}
        if self.path is None:
            self._memory = preference
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as f:
            json.dump(preference, f, indent=4)

    def clear(self) -> None:
        self._memory = None
        if self.path is not None and self.path.exists():
            self.path.unlink()


class WeatherOverlay:
    """
    Weather state for one chart session.

    Restores the saved location on creation, refetches only when the
    location or span changes, and ignores fetches that were superseded.
    """

    NOT_FOUND_MESSAGE = "Location not found. Try city name or different format."

    def __init__(self, service: WeatherService, store: Optional[LocationStore] = None,
                 tz: Union[str, ZoneInfo, None] = None):
        self.service = service
        self.store = store if store is not None else LocationStore(CONFIG["weather"]["location_path"])
        self.tz = tz
        self.enabled = False
        self.query = ""
        self.location: Optional[GeocodingResult] = None
        self.hourly = empty_hourly()
        self.error: Optional[str] = None
        self.is_loading = False
        self._fetched: Optional[Tuple[int, int, float, float]] = None
        self._counter = GenerationCounter()
        self._restore()

    def _restore(self) -> None:
        saved = self.store.load()
        if not saved or not saved.get("location"):
            return
        try:
            self.location = GeocodingResult(**saved["location"])
        except TypeError as e:
            logger.warning("Ignoring saved location: %s", e)
            return
        self.query = saved.get("query", "")
        self.enabled = saved.get("enabled", True)

    def _reset_data(self) -> None:
        self._fetched = None
        self.hourly = empty_hourly()

    async def set_location(self, query: str) -> Optional[GeocodingResult]:
        """
        Geocode ``query`` and make it the active location.

        An empty query clears the location.

        Raises:
            LocationNotFound: If nothing matches (state and cache untouched)
        """
        if not query.strip():
            self.clear_location()
            return None

        self.is_loading = True
        self.error = None
        try:
            result = await self.service.client.geocode(query)
        except LocationNotFound:
            self.error = self.NOT_FOUND_MESSAGE
            raise
        except WeatherError as e:
            self.error = str(e)
            raise
        finally:
            self.is_loading = False

        self._counter.advance()
        self._reset_data()
        self.query = query
        self.location = result
        self.enabled = True
        self.store.save(query, result, True)
        return result

    def toggle_enabled(self, enabled: bool) -> None:
        self.enabled = enabled
        if self.location is not None:
            self.store.save(self.query, self.location, enabled)

    def clear_location(self) -> None:
        self._counter.advance()
        self._reset_data()
        self.enabled = False
        self.query = ""
        self.location = None
        self.error = None
        self.is_loading = False
        self.store.clear()

    async def refresh(self, start_ts: Optional[int], end_ts: Optional[int]) -> pd.DataFrame:
        """
        Load hourly temperatures for the span if the location or span changed.

        Returns:
            Current hourly frame (unchanged if nothing needed fetching or the
            fetch was superseded)

        Raises:
            WeatherError: If the lookup fails and has not been superseded
        """
        if self.location is None or start_ts is None or end_ts is None:
            return self.hourly

        request = (start_ts, end_ts, self.location.latitude, self.location.longitude)
        if request == self._fetched:
            return self.hourly

        token = self._counter.advance()
        self.is_loading = True
        self.error = None
        try:
            data = await self.service.get_weather_data(
                self.location.latitude, self.location.longitude, start_ts, end_ts)
        except WeatherError as e:
            if not self._counter.is_current(token):
                logger.debug("Discarding failure of superseded weather fetch %d: %s", token, e)
                return self.hourly
            self.error = str(e) or "Failed to fetch weather data"
            self._reset_data()
            self.is_loading = False
            raise

        if not self._counter.is_current(token):
            logger.debug("Discarding superseded weather fetch %d", token)
            return self.hourly

        self._fetched = request
        self.hourly = data
        self.is_loading = False
        return data

    def temperature_map(self, resolution: str) -> Dict[int, float]:
        return aggregate_weather(self.hourly, resolution, self.tz)

    def aggregated_weather(self, resolution: str) -> pd.DataFrame:
        temperatures = self.temperature_map(resolution)
        return pd.DataFrame(
            sorted(temperatures.items()), columns=["timestamp", "temperature_c"]
        )
