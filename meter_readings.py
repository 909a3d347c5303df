"""
Meter reading normalization.

Turns raw stored readings (heterogeneous date representations, optional cost
fields) into a tidy DataFrame with a resolved timestamp and the consumption
derived from consecutive dial values of each meter.
"""
from __future__ import annotations
import datetime
import logging
import math
from typing import Any, Dict, Iterable, Optional

import numpy as np
import pandas as pd

from config import load_config

log = logging.getLogger(__name__)

CONFIG = load_config()

READING_COLUMNS = [
    "id", "meter_id", "meter_name", "timestamp",
    "value", "consumption", "cost_per_unit", "cost",
]


class ReadingValidationError(ValueError):
    """Raised when a new reading cannot be accepted for a meter."""


# ────────────────────────────────────────────────────────────────────────────────
# TIMESTAMPS
# ────────────────────────────────────────────────────────────────────────────────


def _zone(tz: Optional[str] = None) -> str:
    return tz or CONFIG.get("timezone", "UTC")


def localize(ts: Any, tz: Optional[str] = None) -> pd.Timestamp:
    """Return ``ts`` as a Timestamp in ``tz``; naive values are taken as local to ``tz``."""
    ts = pd.Timestamp(ts)
    if ts.tzinfo is None:
        return ts.tz_localize(_zone(tz))
    return ts.tz_convert(_zone(tz))


def now_in_zone(tz: Optional[str] = None) -> pd.Timestamp:
    return pd.Timestamp.now(tz=_zone(tz))


def parse_timestamp(raw: Any, tz: Optional[str] = None) -> Optional[pd.Timestamp]:
    """
    Parse a stored reading date.

    Accepted forms are datetime-like objects, objects exposing ``to_datetime()``
    or ``ToDatetime()`` (document-store timestamp wrappers), ``{"seconds": ...,
    "nanoseconds": ...}`` mappings as found in JSON exports, epoch milliseconds
    and ISO-8601 strings.

    Args:
        raw: Stored date value
        tz: Target timezone (defaults to the configured one)

    Returns:
        Timestamp in ``tz``, or None when the value is missing or unparseable
    """
    if raw is None or isinstance(raw, bool):
        return None

    try:
        if isinstance(raw, (pd.Timestamp, datetime.datetime, datetime.date)):
            ts = pd.Timestamp(raw)
        elif callable(getattr(raw, "to_datetime", None)):
            ts = pd.Timestamp(raw.to_datetime())
        elif callable(getattr(raw, "ToDatetime", None)):
            ts = pd.Timestamp(raw.ToDatetime())
            if ts.tzinfo is None:
                ts = ts.tz_localize("UTC")
        elif isinstance(raw, dict):
            seconds = raw.get("seconds", raw.get("_seconds"))
            if seconds is None:
                return None
            nanos = raw.get("nanoseconds", raw.get("_nanoseconds", 0)) or 0
            ts = pd.Timestamp(int(seconds) * 10**9 + int(nanos), unit="ns", tz="UTC")
        elif isinstance(raw, (int, float, np.integer, np.floating)):
            if not math.isfinite(raw):
                return None
            ts = pd.Timestamp(int(raw), unit="ms", tz="UTC")
        elif isinstance(raw, str):
            if not raw.strip():
                return None
            ts = pd.Timestamp(raw.strip())
        else:
            return None
    except (ValueError, TypeError, OverflowError) as e:
        log.debug("Unparseable date %r: %s", raw, e)
        return None

    if pd.isna(ts):
        return None
    return localize(ts, tz)


def resolve_timestamp(raw: Any, tz: Optional[str] = None,
                      now: Optional[pd.Timestamp] = None) -> pd.Timestamp:
    """Parse ``raw``; missing or bad dates fall back to ``now`` instead of raising."""
    ts = parse_timestamp(raw, tz)
    if ts is None:
        fallback = localize(now, tz) if now is not None else now_in_zone(tz)
        log.warning("Reading date %r could not be resolved, using %s", raw, fallback)
        return fallback
    return ts


def to_number(raw: Any) -> Optional[float]:
    """Coerce a stored numeric field; None for missing, non-numeric or non-finite values."""
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


# ────────────────────────────────────────────────────────────────────────────────
# CONSUMPTION AND COST
# ────────────────────────────────────────────────────────────────────────────────


def calculate_consumption(previous_value: float, current_value: float) -> float:
    """
    Energy used between two dial values.

    A dial that went down (rollover or replaced meter) is taken to have
    restarted from zero, so the whole current value counts as consumption.
    """
    if current_value < previous_value:
        return current_value
    return current_value - previous_value


def calculate_cost(consumption: float, cost_per_unit: float) -> float:
    return consumption * cost_per_unit


def format_currency(amount: float) -> str:
    """Format as Chilean pesos, e.g. ``$30.000``."""
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.0f}".replace(",", ".")


def derive_consumption(df: pd.DataFrame) -> pd.DataFrame:
    """
    Derive per-reading consumption from consecutive dial values of each meter.

    The first reading of a meter is its baseline and gets 0. A decreasing dial
    is handled as in :func:`calculate_consumption`.

    Args:
        df: DataFrame with meter_id, timestamp and value columns

    Returns:
        Copy of ``df`` sorted by meter and timestamp with a consumption column
    """
    if df.empty:
        out = df.copy()
        out["consumption"] = pd.Series(dtype=float)
        return out

    df = df.sort_values(["meter_id", "timestamp"]).copy()
    previous = df.groupby("meter_id")["value"].shift()
    delta = df["value"] - previous
    rollover = delta < 0

    df["consumption"] = np.where(
        previous.isna(), 0.0, np.where(rollover, df["value"], delta)
    ).astype(float)

    if rollover.any():
        for meter_id, count in df[rollover].groupby("meter_id").size().items():
            log.warning(
                "Meter %s - %d dial decrease(s), counted as consumption since reset",
                meter_id, count
            )

    return df


# ────────────────────────────────────────────────────────────────────────────────
# NORMALIZATION
# ────────────────────────────────────────────────────────────────────────────────


def empty_readings() -> pd.DataFrame:
    return pd.DataFrame(columns=READING_COLUMNS)


def normalize_readings(raw_readings: Iterable[Dict[str, Any]],
                       meter: Optional[Dict[str, Any]] = None,
                       tz: Optional[str] = None,
                       now: Optional[pd.Timestamp] = None) -> pd.DataFrame:
    """
    Convert raw stored readings into the canonical reading table.

    Readings may come from several meters when each record carries its
    ``meterId``; otherwise ``meter`` supplies id, name and tariff. Bad dates
    default to ``now`` and non-numeric values to 0, both logged.

    Args:
        raw_readings: Records with id, value, date and optional cost/costPerUnit
        meter: Owning meter record used to fill missing fields
        tz: Timezone for timestamps
        now: Instant used for missing dates (defaults to the current time)

    Returns:
        DataFrame with READING_COLUMNS sorted by timestamp
    """
    meter = meter or {}
    now = localize(now, tz) if now is not None else now_in_zone(tz)
    default_cpu = CONFIG["readings"]["default_cost_per_unit"]
    meter_cpu = to_number(meter.get("costPerUnit", meter.get("costPerKwh")))

    rows = []
    stored_costs = []
    for i, rec in enumerate(raw_readings):
        meter_id = rec.get("meterId", rec.get("meter_id", meter.get("id")))
        meter_name = rec.get("meterName", rec.get("meter_name", meter.get("name")))

        value = to_number(rec.get("value"))
        if value is None:
            log.warning("Reading %s has non-numeric value %r, using 0", rec.get("id"), rec.get("value"))
            value = 0.0

        cpu = to_number(rec.get("costPerUnit", rec.get("costPerKwh", rec.get("cost_per_unit"))))
        if cpu is None:
            cpu = meter_cpu if meter_cpu is not None else float(default_cpu)

        rows.append({
            "id": rec.get("id", f"{meter_id}-{i}"),
            "meter_id": meter_id,
            "meter_name": meter_name if meter_name is not None else meter_id,
            "timestamp": resolve_timestamp(rec.get("date", rec.get("timestamp")), tz, now),
            "value": value,
            "cost_per_unit": cpu,
        })
        stored_costs.append(to_number(rec.get("cost")))

    if not rows:
        return empty_readings()

    df = pd.DataFrame(rows)
    df["stored_cost"] = pd.Series(stored_costs, dtype=float)
    df = derive_consumption(df)

    derived = df["consumption"] * df["cost_per_unit"]
    df["cost"] = df["stored_cost"].where(df["stored_cost"].notna(), derived).astype(float)

    df = df.sort_values(["timestamp", "meter_id"]).reset_index(drop=True)
    log.info("Normalized %d readings for %d meter(s)", len(df), df["meter_id"].nunique())
    return df[READING_COLUMNS]


# ────────────────────────────────────────────────────────────────────────────────
# NEW READINGS
# ────────────────────────────────────────────────────────────────────────────────


def validate_new_reading(meter: Dict[str, Any], value: Any,
                         max_jump: Optional[float] = None) -> float:
    """
    Check a dial value typed in for ``meter`` before it is stored.

    Args:
        meter: Meter record with lastReading
        value: Entered value
        max_jump: Largest accepted increase over the last reading

    Returns:
        The value as float

    Raises:
        ReadingValidationError: if the value is not numeric, not positive,
            not above the last reading, or implausibly high
    """
    if max_jump is None:
        max_jump = CONFIG["readings"]["max_jump"]

    reading = to_number(value)
    if reading is None:
        raise ReadingValidationError("Reading must be a valid number")
    if reading <= 0:
        raise ReadingValidationError("Reading must be greater than 0")

    last = to_number(meter.get("lastReading"))
    if last is not None:
        if reading <= last:
            raise ReadingValidationError(
                f"Reading must be greater than {last:g} kWh (previous reading)"
            )
        if reading > last + max_jump:
            raise ReadingValidationError(
                f"Reading is more than {max_jump:g} kWh above the previous one"
            )
    return reading


def preview_reading(meter: Dict[str, Any], value: Any) -> Dict[str, float]:
    """
    Consumption and cost a new reading would record, plus the meter's updated cache.

    Args:
        meter: Meter record with lastReading and costPerUnit
        value: Entered value, validated with :func:`validate_new_reading`

    Returns:
        Dictionary with consumption, cost, cost_per_unit, last_reading, last_cost
    """
    reading = validate_new_reading(meter, value)
    last = to_number(meter.get("lastReading")) or 0.0
    cpu = to_number(meter.get("costPerUnit", meter.get("costPerKwh")))
    if cpu is None:
        cpu = float(CONFIG["readings"]["default_cost_per_unit"])

    consumption = calculate_consumption(last, reading)
    cost = calculate_cost(consumption, cpu)
    return {
        "previous_reading": last,
        "consumption": consumption,
        "cost": cost,
        "cost_per_unit": cpu,
        "last_reading": reading,
        "last_cost": cost,
    }
