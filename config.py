"""
Configuration file for meter consumption statistics.
"""
import copy
from typing import Dict, Any
import json

# Default configuration
DEFAULT_CONFIG = {
    # Zone used for naive timestamps and calendar bucketing
    "timezone": "UTC",

    # Reporting periods (trailing window length in days)
    "periods": {
        "week": 7,
        "month": 30,
        "year": 365,
    },
    "default_period": "month",

    # Maximum number of chart buckets kept per period
    "bucket_limits": {
        "week": 7,
        "month": 30,
        "year": 12,
    },

    "alerts": {
        "sensitivity_k": 3.0,   # threshold = median + k * MAD
        "min_samples": 7,       # minimum positive per-day values before judging
        "max_alerts": 2,        # most recent candidates returned
    },

    "trend": {
        "min_samples": 6,            # halves comparison needs this many values
        "two_week_min_samples": 14,  # last 7 vs previous 7 per-day rates
    },

    "readings": {
        "default_cost_per_unit": 220,  # CLP per kWh when neither reading nor meter has one
        "max_jump": 5000,              # largest accepted increase for a new reading (kWh)
    },

    # Days since last reading before a meter is flagged
    "freshness": {
        "warning_days": 30,
        "critical_days": 60,
    },

    "budget": {
        "monthly": 30000,
    },

    "visualization": {
        "color_palette": [
            "#2563EB", "#10B981", "#F59E0B", "#EF4444", "#8B5CF6",
            "#14B8A6", "#F97316", "#22C55E", "#3B82F6", "#E11D48"
        ],
        "max_labels": 8,
    },
}

def load_config(config_path: str = "meter_stats_config.json") -> Dict[str, Any]:
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

def save_config(config: Dict[str, Any], config_path: str = "meter_stats_config.json") -> None:
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
