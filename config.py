"""
Configuration file for energy analysis.
"""
import copy
import json
from typing import Dict, Any

# Default configuration
DEFAULT_CONFIG = {
    # Calendar fields (weekday, month, hour) are derived in this timezone
    "timezone": "UTC",

    # Cooperative processing
    "processing": {
        "filter_chunk_size": 5000,
        "aggregate_chunk_size": 3000,
        "yield_seconds": 0.0,        # pause between chunks, 0 = just yield to the loop
    },

    # Chart series settings
    "chart": {
        "max_points": 800,           # LTTB threshold for the main chart
        "brush_points": 200,         # LTTB threshold for the range selector overview
        "default_resolution": "HOURLY",
    },

    # Weather overlay
    "weather": {
        "geocoding_url": "https://geocoding-api.open-meteo.com/v1/search",
        "archive_url": "https://archive-api.open-meteo.com/v1/archive",
        "archive_min_date": "1940-01-01",
        "end_date_offsets": [1, 2, 3, 5],   # days back from today, tried in order
        "postal_code_country": "USA",
        "geocoding_results": 5,
        "request_timeout": 30,
        "cache_path": "data_cache/weather_cache.json",
        "location_path": "data_cache/weather_location.json",
    },

    # Weather-normalized efficiency
    "efficiency": {
        "balance_point_c": 18.0,     # ~65°F, no heating or cooling needed
        "heating_enabled": True,
        "cooling_enabled": True,
        "min_degree_units": 0.5,
        "index_floor": 20,
        "index_ceiling": 200,
    },
}

def load_config(config_path: str = "energy_config.json") -> Dict[str, Any]:
    """
    Load configuration from file or return default if file doesn't exist.

    Args:
        config_path: Path to configuration file

    Returns:
        Configuration dictionary
    """
    try:
        with open(config_path, 'r') as f:
            config = json.load(f)
            # Merge with defaults to ensure all required keys exist
            merged_config = copy.deepcopy(DEFAULT_CONFIG)
            _deep_update(merged_config, config)
            return merged_config
    except (FileNotFoundError, json.JSONDecodeError):
        return copy.deepcopy(DEFAULT_CONFIG)

def save_config(config: Dict[str, Any], config_path: str = "energy_config.json") -> None:
    """
    Save configuration to file.

    Args:
        config: Configuration dictionary
        config_path: Path to save configuration file
    """
    with open(config_path, 'w') as f:
        json.dump(config, f, indent=4)

def _deep_update(source: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    """
    Update a nested dictionary with another nested dictionary.

    Args:
        source: Source dictionary to be updated
        update: Dictionary with updates

    Returns:
        Updated source dictionary
    """
    for key, value in update.items():
        if key in source and isinstance(source[key], dict) and isinstance(value, dict):
            _deep_update(source[key], value)
        else:
            source[key] = value
    return source
