"""
Data quality module for meter readings.

This module provides functions for assessing and reporting on the quality of
stored readings: dates that had to be defaulted, non-numeric dial values,
meter rollovers, reading cadence and meters that have not been read lately.
"""
import pandas as pd
import numpy as np
import logging
from typing import Dict, List, Any, Iterable, Optional
from dataclasses import dataclass, field

from config import load_config
from meter_readings import parse_timestamp, to_number, localize, now_in_zone

logger = logging.getLogger(__name__)

CONFIG = load_config()


@dataclass
class DataQualityMetrics:
    """Data quality metrics container."""
    total_records: int = 0
    valid_records: int = 0
    missing_date: int = 0
    unparseable_date: int = 0
    non_numeric_value: int = 0
    rollover_readings: List[str] = field(default_factory=list)
    meters_with_rollover: List[str] = field(default_factory=list)
    readings_per_meter: Dict[str, int] = field(default_factory=dict)
    reading_frequency: Dict[str, pd.Timedelta] = field(default_factory=dict)

    @property
    def validity_ratio(self) -> float:
        """Calculate the ratio of valid records to total records."""
        return self.valid_records / self.total_records if self.total_records > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to a dictionary."""
        return {
            "total_records": self.total_records,
            "valid_records": self.valid_records,
            "validity_ratio": self.validity_ratio,
            "missing_date": self.missing_date,
            "unparseable_date": self.unparseable_date,
            "non_numeric_value": self.non_numeric_value,
            "rollover_readings": self.rollover_readings,
            "meters_with_rollover": self.meters_with_rollover,
            "readings_per_meter": self.readings_per_meter,
            "avg_reading_frequency": {
                meter: freq.total_seconds() / 86400  # Convert to days
                for meter, freq in self.reading_frequency.items()
            }
        }

    def print_summary(self) -> None:
        """Print a summary of data quality metrics."""
        print("\n" + "="*80)
        print(" "*30 + "DATA QUALITY SUMMARY")
        print("="*80)

        print(f"\nData Completeness:")
        print(f"  Total records: {self.total_records}")
        print(f"  Valid records: {self.valid_records} ({self.validity_ratio:.2%})")
        print(f"  Missing date (defaulted to now): {self.missing_date}")
        print(f"  Unparseable date (defaulted to now): {self.unparseable_date}")
        print(f"  Non-numeric value (defaulted to 0): {self.non_numeric_value}")

        if self.meters_with_rollover:
            print(f"\nMeters with dial rollover: {len(self.meters_with_rollover)}")
            print(f"  Readings counted from reset: {len(self.rollover_readings)}")

        print(f"\nReading Frequency:")
        avg_readings = np.mean(list(self.readings_per_meter.values())) if self.readings_per_meter else 0
        print(f"  Average readings per meter: {avg_readings:.1f}")

        if self.reading_frequency:
            avg_freq = np.mean([freq.total_seconds() / 86400 for freq in self.reading_frequency.values()])
            print(f"  Average reading interval: {avg_freq:.1f} days")

        print("\n" + "="*80)


def calculate_meter_reading_frequency(df: pd.DataFrame) -> Dict[str, pd.Timedelta]:
    """
    Calculate the average time between readings for each meter.

    Args:
        df: DataFrame with meter_id and timestamp columns

    Returns:
        Dictionary mapping meter_id to average reading interval
    """
    freqs = {}
    for meter, group in df.groupby('meter_id'):
        # Sort by timestamp
        group = group.sort_values('timestamp')
        # Calculate time differences
        time_diffs = group['timestamp'].diff().dropna()
        if not time_diffs.empty:
            # Calculate mean interval (excluding outliers)
            q1, q3 = time_diffs.quantile([0.25, 0.75])
            iqr = q3 - q1
            valid_diffs = time_diffs[(time_diffs >= q1 - 1.5 * iqr) & (time_diffs <= q3 + 1.5 * iqr)]
            if not valid_diffs.empty:
                freqs[meter] = valid_diffs.mean()
    return freqs


def validate_raw_readings(raw_readings: Iterable[Dict[str, Any]],
                          tz: Optional[str] = None) -> DataQualityMetrics:
    """
    Validate raw stored readings and calculate quality metrics.

    Counts the records the normalizer will have to repair. Nothing is raised:
    these are diagnostics only.

    Args:
        raw_readings: List of raw reading records
        tz: Timezone string

    Returns:
        DataQualityMetrics
    """
    raw_readings = list(raw_readings)
    metrics = DataQualityMetrics(total_records=len(raw_readings))

    meter_readings = {}

    for rec in raw_readings:
        meter_id = rec.get("meterId", rec.get("meter_id"))
        if meter_id is not None:
            meter_readings[meter_id] = meter_readings.get(meter_id, 0) + 1

        valid = True

        raw_date = rec.get("date", rec.get("timestamp"))
        if raw_date is None:
            metrics.missing_date += 1
            valid = False
        elif parse_timestamp(raw_date, tz) is None:
            metrics.unparseable_date += 1
            valid = False

        if to_number(rec.get("value")) is None:
            metrics.non_numeric_value += 1
            valid = False

        if valid:
            metrics.valid_records += 1

    metrics.readings_per_meter = meter_readings

    return metrics


def validate_normalized_readings(df: pd.DataFrame) -> DataQualityMetrics:
    """
    Validate the normalized reading table and calculate quality metrics.

    Args:
        df: DataFrame produced by meter_readings.normalize_readings

    Returns:
        DataQualityMetrics
    """
    metrics = DataQualityMetrics(total_records=len(df), valid_records=len(df))
    if df.empty:
        return metrics

    metrics.readings_per_meter = df.groupby('meter_id').size().to_dict()

    # A rollover is a reading whose dial went down against its predecessor
    ordered = df.sort_values(['meter_id', 'timestamp'])
    previous = ordered.groupby('meter_id')['value'].shift()
    rollover = ordered[ordered['value'] < previous]
    metrics.rollover_readings = rollover['id'].tolist()
    metrics.meters_with_rollover = sorted(rollover['meter_id'].unique().tolist())

    metrics.reading_frequency = calculate_meter_reading_frequency(df)

    return metrics


def meter_freshness(df: pd.DataFrame, now: Optional[pd.Timestamp] = None,
                    warning_days: Optional[int] = None,
                    critical_days: Optional[int] = None) -> pd.DataFrame:
    """
    Days since each meter was last read, with a status flag.

    Args:
        df: Normalized reading table
        now: Evaluation instant
        warning_days: Days without reading before "warning"
        critical_days: Days without reading before "critical"

    Returns:
        DataFrame with meter_id, meter_name, last_timestamp, days_since, status
    """
    columns = ["meter_id", "meter_name", "last_timestamp", "days_since", "status"]
    if df.empty:
        return pd.DataFrame(columns=columns)

    freshness = CONFIG.get("freshness", {})
    if warning_days is None:
        warning_days = freshness.get("warning_days", 30)
    if critical_days is None:
        critical_days = freshness.get("critical_days", 60)
    now = localize(now) if now is not None else now_in_zone()

    last = (
        df.sort_values("timestamp")
        .groupby("meter_id")
        .agg(meter_name=("meter_name", "last"), last_timestamp=("timestamp", "last"))
        .reset_index()
    )
    last["days_since"] = ((now - last["last_timestamp"]).dt.total_seconds() // 86400).astype(int)
    last["status"] = np.select(
        [last["days_since"] >= critical_days, last["days_since"] >= warning_days],
        ["critical", "warning"],
        default="ok"
    )

    stale = last[last["status"] != "ok"]
    for _, row in stale.iterrows():
        logger.warning("Meter %s not read for %d days (%s)", row["meter_id"], row["days_since"], row["status"])

    return last[columns]
