"""
Anomaly detection for meter consumption data.

This module flags readings whose per-day consumption rate is far above the
typical rate of the current window. The threshold is built from the median
and the Median Absolute Deviation (MAD) rather than mean and standard
deviation: a handful of readings with long gaps produce heavy-tailed spikes,
and those spikes would inflate the very spread used to detect them.
"""
import numpy as np
import pandas as pd
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging

from config import load_config

# Setup logging
logger = logging.getLogger(__name__)

CONFIG = load_config()


def lower_median(values: Sequence[float]) -> float:
    """
    Median that always picks an element of ``values``.

    For even counts the lower of the two middle elements is used.
    """
    ordered = np.sort(np.asarray(values, dtype=float))
    if ordered.size == 0:
        return 0.0
    return float(ordered[(ordered.size - 1) // 2])


def mad_threshold(values: Sequence[float], k: float = 3.0) -> Tuple[float, float, float]:
    """
    Robust upper threshold of a sample.

    Args:
        values: Sample of per-day rates
        k: Sensitivity; larger values flag fewer readings

    Returns:
        Tuple of (median, MAD, threshold) with threshold = median + k * MAD
    """
    values = np.asarray(values, dtype=float)
    median = lower_median(values)
    mad = lower_median(np.abs(values - median))
    return median, mad, median + k * mad


def detect_high_consumption(rated: pd.DataFrame, k: Optional[float] = None,
                            min_samples: Optional[int] = None,
                            max_alerts: Optional[int] = None) -> List[Dict[str, Any]]:
    """
    Detect readings with an unusually high per-day consumption rate.

    Args:
        rated: Windowed readings with a per_day column, sorted by timestamp
        k: MAD multiplier for the threshold
        min_samples: Minimum number of positive rates needed to judge
        max_alerts: Number of most recent candidates returned

    Returns:
        List of alerts (oldest first) with reading_id, meter_id, meter_name,
        per_day, over_by_percent and timestamp
    """
    alert_config = CONFIG.get("alerts", {})
    if k is None:
        k = alert_config.get("sensitivity_k", 3.0)
    if min_samples is None:
        min_samples = alert_config.get("min_samples", 7)
    if max_alerts is None:
        max_alerts = alert_config.get("max_alerts", 2)

    if rated.empty or "per_day" not in rated.columns:
        return []

    positive = rated[rated["per_day"] > 0]
    if len(positive) < min_samples:
        logger.debug("Only %d positive rates, need %d for anomaly detection", len(positive), min_samples)
        return []

    median, mad, threshold = mad_threshold(positive["per_day"].to_numpy(), k)

    candidates = positive[positive["per_day"] > threshold]
    if candidates.empty or max_alerts <= 0:
        return []
    candidates = candidates.sort_values("timestamp", kind="mergesort").tail(max_alerts)

    alerts = []
    for _, row in candidates.iterrows():
        per_day = float(row["per_day"])
        over_by = (per_day - median) / median * 100 if median > 0 else 0.0
        alert = {
            "reading_id": row["id"],
            "meter_id": row["meter_id"],
            "meter_name": row["meter_name"],
            "per_day": round(per_day, 2),
            "over_by_percent": round(over_by, 1),
            "timestamp": row["timestamp"],
        }
        logger.warning(
            "High consumption: meter %s - %.2f kWh/day at %s (median %.2f, threshold %.2f)",
            alert["meter_name"], per_day, alert["timestamp"], median, threshold
        )
        alerts.append(alert)

    return alerts


def alert_counts(rated: pd.DataFrame, ks: Sequence[float],
                 min_samples: Optional[int] = None) -> Dict[float, int]:
    """
    Number of readings above the threshold for each sensitivity in ``ks``.

    Counts every candidate, not only the most recent ones, which makes it
    suitable for tuning ``alerts.sensitivity_k``.
    """
    if min_samples is None:
        min_samples = CONFIG.get("alerts", {}).get("min_samples", 7)

    counts = {}
    positive = rated[rated["per_day"] > 0] if "per_day" in rated.columns else rated.iloc[0:0]
    for k in ks:
        if len(positive) < min_samples:
            counts[k] = 0
            continue
        _, _, threshold = mad_threshold(positive["per_day"].to_numpy(), k)
        counts[k] = int((positive["per_day"] > threshold).sum())
    return counts


def save_alerts_to_csv(alerts: List[Dict[str, Any]], file_path: str) -> None:
    """
    Save detected alerts to CSV file for auditing.

    Args:
        alerts: List of alert dictionaries
        file_path: Path to save the CSV file
    """
    import os

    if not alerts:
        logger.info("No alerts detected to save")
        return

    alert_df = pd.DataFrame(alerts)

    directory = os.path.dirname(file_path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    # Format timestamp columns for better readability
    if "timestamp" in alert_df.columns:
        alert_df["timestamp"] = alert_df["timestamp"].astype(str)

    alert_df.to_csv(file_path, index=False)
    logger.info("Saved %d alert records to %s", len(alerts), file_path)
