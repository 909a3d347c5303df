"""
Consumption statistics over normalized meter readings.

Window selection, per-day rate normalization and the aggregates behind the
statistics view: KPIs, bucketed chart series, per-meter distribution and
monthly comparisons. Every function returns new objects and leaves its
input DataFrames untouched.
"""
from __future__ import annotations
import logging
import zlib
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from config import load_config
from meter_readings import localize, now_in_zone

log = logging.getLogger(__name__)

CONFIG = load_config()

ALL_METERS = "all"
UNIT_CONSUMPTION = "kWh"
UNIT_COST = "cost"


# ────────────────────────────────────────────────────────────────────────────────
# WINDOW FILTER
# ────────────────────────────────────────────────────────────────────────────────


def resolve_period(period: Optional[str]) -> str:
    """Return ``period`` if known, else the configured default period."""
    periods = CONFIG["periods"]
    if period in periods:
        return period
    default = CONFIG.get("default_period", "month")
    log.warning("Unknown period %r, using %s", period, default)
    return default


def window_days(period: Optional[str], periods: Optional[Dict[str, int]] = None) -> int:
    periods = periods or CONFIG["periods"]
    if period in periods:
        return int(periods[period])
    return int(periods[resolve_period(period)])


def in_scope(df: pd.DataFrame, scope: Any = ALL_METERS) -> pd.DataFrame:
    """Readings of one meter, or all of them when ``scope`` is "all"."""
    if scope == ALL_METERS or df.empty:
        return df.copy()
    scoped = df[df["meter_id"] == scope]
    if scoped.empty:
        log.warning("No readings for meter %r", scope)
    return scoped.copy()


def filter_window(df: pd.DataFrame, scope: Any = ALL_METERS, period: str = "month",
                  now: Optional[pd.Timestamp] = None,
                  periods: Optional[Dict[str, int]] = None) -> pd.DataFrame:
    """
    Select the readings of ``scope`` taken within the trailing period.

    When fewer than two readings fall inside the window, the two most recent
    readings of the scope are returned instead, so a consumption pair is
    always available for charts. A scope with fewer than two readings in
    total returns what it has.

    Args:
        df: Normalized reading table
        scope: "all" or a meter id
        period: "week", "month" or "year"
        now: End of the window (defaults to the current time)
        periods: Override of the period → days mapping

    Returns:
        DataFrame sorted by timestamp ascending
    """
    scoped = in_scope(df, scope)
    if scoped.empty:
        return scoped.reset_index(drop=True)

    now = localize(now) if now is not None else now_in_zone()
    start = now - pd.Timedelta(days=window_days(period, periods))

    scoped = scoped.sort_values("timestamp", kind="mergesort")
    windowed = scoped[scoped["timestamp"] > start]

    if len(windowed) < 2:
        log.info(
            "Only %d reading(s) for scope %s in the last %s, using the latest %d",
            len(windowed), scope, period, min(2, len(scoped))
        )
        windowed = scoped.tail(2)

    return windowed.reset_index(drop=True)


# ────────────────────────────────────────────────────────────────────────────────
# PER-DAY RATES
# ────────────────────────────────────────────────────────────────────────────────


def per_day_rates(windowed: pd.DataFrame, history: pd.DataFrame) -> pd.DataFrame:
    """
    Normalize each reading's consumption to a per-day rate.

    The elapsed time is measured against the reading's predecessor for the
    same meter in the full ``history``, not just the window, in whole days
    with a floor of one day. Readings without a predecessor, or without
    positive consumption, get a rate of 0.

    Args:
        windowed: Readings to rate (a subset of ``history``)
        history: Complete normalized reading table

    Returns:
        Copy of ``windowed`` with days and per_day columns
    """
    out = windowed.copy()
    if out.empty:
        out["days"] = pd.Series(dtype=float)
        out["per_day"] = pd.Series(dtype=float)
        return out

    ordered = history.sort_values(["meter_id", "timestamp"])
    previous = ordered.groupby("meter_id")["timestamp"].shift()
    elapsed = (ordered["timestamp"] - previous).dt.total_seconds() / 86400
    # reading ids are only unique within a meter
    elapsed = elapsed.set_axis(pd.MultiIndex.from_frame(ordered[["meter_id", "id"]]))
    elapsed = elapsed[~elapsed.index.duplicated(keep="first")]

    keys = pd.MultiIndex.from_frame(out[["meter_id", "id"]])
    out_elapsed = pd.Series(elapsed.reindex(keys).to_numpy(), index=out.index)
    has_previous = out_elapsed.notna()

    out["days"] = np.floor(out_elapsed.fillna(1.0)).clip(lower=1.0)
    out["per_day"] = np.where(
        has_previous & (out["consumption"] > 0),
        out["consumption"] / out["days"],
        0.0
    )
    return out


# ────────────────────────────────────────────────────────────────────────────────
# AGGREGATES
# ────────────────────────────────────────────────────────────────────────────────


def _qualifying(df: pd.DataFrame) -> pd.DataFrame:
    if df.empty:
        return df
    return df[df["consumption"] > 0]


def _pct_change(previous: float, current: float) -> float:
    if previous <= 0:
        return 0.0
    change = (current - previous) / previous * 100
    return float(change) if np.isfinite(change) else 0.0


def consumption_trend(values: Sequence[float], min_samples: Optional[int] = None) -> float:
    """
    Percentage change between the older and the newer half of ``values``.

    The ordered values are split into two halves of ``len // 2`` items (the
    middle item of an odd-length list belongs to neither). Fewer than
    ``min_samples`` values give 0. Positive means consumption is rising.
    """
    if min_samples is None:
        min_samples = CONFIG["trend"]["min_samples"]
    values = list(values)
    if len(values) < max(2, min_samples):
        return 0.0

    half = len(values) // 2
    previous = float(np.mean(values[:half]))
    recent = float(np.mean(values[-half:]))
    return round(_pct_change(previous, recent), 1)


def period_kpis(windowed: pd.DataFrame, trend_min_samples: Optional[int] = None) -> Dict[str, float]:
    """
    Scalar KPIs of a windowed reading set.

    Only readings with positive consumption count; the baseline reading of a
    meter never does.

    Returns:
        Dictionary with total_consumption, total_cost, average_consumption, trend
    """
    qualifying = _qualifying(windowed)
    if qualifying.empty:
        return {
            "total_consumption": 0.0,
            "total_cost": 0.0,
            "average_consumption": 0.0,
            "trend": 0.0,
        }

    consumption = qualifying["consumption"].to_numpy(dtype=float)
    total = float(consumption.sum())
    return {
        "total_consumption": round(total, 2),
        "total_cost": round(float(qualifying["cost"].sum()), 2),
        "average_consumption": round(total / len(consumption), 2),
        "trend": consumption_trend(consumption, trend_min_samples),
    }


def _reading_ref(row: pd.Series) -> Dict[str, Any]:
    return {
        "reading_id": row["id"],
        "meter_id": row["meter_id"],
        "meter_name": row["meter_name"],
        "consumption": round(float(row["consumption"]), 2),
        "timestamp": row["timestamp"],
    }


def rate_summary(rated: pd.DataFrame, two_week_min_samples: Optional[int] = None) -> Dict[str, Any]:
    """
    Per-day rate KPIs of a rated window.

    Returns:
        Dictionary with average_per_day, delta_2w (last 7 rates against the 7
        before, 0 below ``two_week_min_samples``), peak and valley readings
    """
    if two_week_min_samples is None:
        two_week_min_samples = CONFIG["trend"]["two_week_min_samples"]

    qualifying = _qualifying(rated)
    rates = qualifying["per_day"].to_numpy(dtype=float) if not qualifying.empty else np.array([])
    rates = rates[rates > 0]

    delta_2w = 0.0
    if len(rates) >= max(14, two_week_min_samples):
        delta_2w = round(_pct_change(float(rates[-14:-7].mean()), float(rates[-7:].mean())), 1)

    peak = valley = None
    if not qualifying.empty:
        by_consumption = qualifying.sort_values("consumption", ascending=False, kind="mergesort")
        peak = _reading_ref(by_consumption.iloc[0])
        valley = _reading_ref(by_consumption.iloc[-1])

    return {
        "average_per_day": round(float(rates.mean()), 2) if len(rates) else 0.0,
        "delta_2w": delta_2w,
        "peak": peak,
        "valley": valley,
    }


def _value_column(unit: str) -> str:
    if unit == UNIT_CONSUMPTION:
        return "consumption"
    if unit == UNIT_COST:
        return "cost"
    log.warning("Unknown unit %r, using %s", unit, UNIT_CONSUMPTION)
    return "consumption"


def bucketed_series(windowed: pd.DataFrame, period: str = "month", unit: str = UNIT_CONSUMPTION,
                    limits: Optional[Dict[str, int]] = None) -> Dict[str, List]:
    """
    Sum consumption (or cost) per calendar bucket for bar charts.

    Buckets are calendar days for "week"/"month" and calendar months for
    "year", sorted chronologically and cut to the most recent ``limits[period]``
    buckets. A chart may therefore show less than the window's total.

    Returns:
        Dictionary with keys (bucket ids), labels and values
    """
    period = resolve_period(period)
    limits = limits or CONFIG["bucket_limits"]
    column = _value_column(unit)

    qualifying = _qualifying(windowed)
    if qualifying.empty:
        return {"keys": [], "labels": [], "values": []}

    key_format = "%Y-%m" if period == "year" else "%Y-%m-%d"
    keys = qualifying["timestamp"].dt.strftime(key_format)
    totals = qualifying.groupby(keys)[column].sum().sort_index()
    totals = totals.tail(int(limits.get(period, len(totals))))

    bucket_starts = pd.to_datetime(totals.index, format=key_format)
    label_format = "%b" if period == "year" else "%d/%m"
    return {
        "keys": totals.index.tolist(),
        "labels": [ts.strftime(label_format) for ts in bucket_starts],
        "values": [round(float(v), 2) for v in totals.to_numpy()],
    }


def thin_labels(labels: Sequence[str], max_labels: Optional[int] = None) -> List[str]:
    """Blank all but every n-th label so at most ``max_labels`` remain visible."""
    if max_labels is None:
        max_labels = CONFIG["visualization"]["max_labels"]
    if not labels:
        return []
    step = max(1, -(-len(labels) // max(1, max_labels)))
    return [label if i % step == 0 else "" for i, label in enumerate(labels)]


def rate_series(rated: pd.DataFrame, period: str = "month",
                max_labels: Optional[int] = None) -> Dict[str, List]:
    """
    Per-reading per-day rates for the line chart.

    Returns:
        Dictionary with labels (thinned) and values
    """
    period = resolve_period(period)
    if rated.empty:
        return {"labels": [], "values": []}

    label_format = {"week": "%a", "month": "%d/%m", "year": "%b"}[period]
    labels = rated["timestamp"].dt.strftime(label_format).tolist()
    return {
        "labels": thin_labels(labels, max_labels),
        "values": [round(float(v), 2) for v in rated["per_day"].to_numpy()],
    }


def previous_window_rates(history: pd.DataFrame, scope: Any = ALL_METERS, period: str = "month",
                          now: Optional[pd.Timestamp] = None, n: int = 0) -> List[float]:
    """
    Per-day rates of the window preceding the current one, for overlay.

    Only returned when the previous window holds at least ``n`` readings, in
    which case its last ``n`` rates are returned; otherwise an empty list.
    """
    if history.empty or n <= 0:
        return []

    now = localize(now) if now is not None else now_in_zone()
    span = pd.Timedelta(days=window_days(period))
    scoped = in_scope(history, scope)
    previous = scoped[(scoped["timestamp"] > now - 2 * span) & (scoped["timestamp"] <= now - span)]
    previous = previous.sort_values("timestamp", kind="mergesort")
    if len(previous) < n:
        return []

    rated = per_day_rates(previous, history)
    return [round(float(v), 2) for v in rated["per_day"].to_numpy()[-n:]]


def meter_color(meter_id: Any, palette: Optional[Sequence[str]] = None) -> str:
    """Stable colour for a meter, derived from its id."""
    palette = palette or CONFIG["visualization"]["color_palette"]
    return palette[zlib.crc32(str(meter_id).encode("utf-8")) % len(palette)]


def meter_distribution(windowed: pd.DataFrame, scope: Any = ALL_METERS,
                       palette: Optional[Sequence[str]] = None) -> List[Dict[str, Any]]:
    """
    Consumption share per meter for the breakdown chart.

    Only meaningful across meters: returns an empty list for a single-meter
    scope or when fewer than two meters have consumption in the window.

    Returns:
        List of dicts with meter_id, meter_name, total, color_token, largest first
    """
    if scope != ALL_METERS:
        return []
    qualifying = _qualifying(windowed)
    if qualifying.empty or qualifying["meter_id"].nunique() < 2:
        return []

    totals = (
        qualifying.groupby("meter_id", sort=True)
        .agg(meter_name=("meter_name", "last"), total=("consumption", "sum"))
        .reset_index()
        .sort_values("total", ascending=False, kind="mergesort")
    )
    return [
        {
            "meter_id": row.meter_id,
            "meter_name": row.meter_name,
            "total": round(float(row.total), 2),
            "color_token": meter_color(row.meter_id, palette),
        }
        for row in totals.itertuples(index=False)
    ]


# ────────────────────────────────────────────────────────────────────────────────
# MONTHLY
# ────────────────────────────────────────────────────────────────────────────────


def monthly_stats(readings: pd.DataFrame) -> pd.DataFrame:
    """Consumption, cost and reading count per ``YYYY-MM`` month."""
    qualifying = _qualifying(readings)
    if qualifying.empty:
        return pd.DataFrame(columns=["consumption", "cost", "count"], index=pd.Index([], name="month"))

    months = qualifying["timestamp"].dt.strftime("%Y-%m").rename("month")
    return qualifying.groupby(months).agg(
        consumption=("consumption", "sum"),
        cost=("cost", "sum"),
        count=("consumption", "size"),
    ).sort_index()


def available_months(readings: pd.DataFrame) -> List[str]:
    """Months with consumption, newest first."""
    return sorted(monthly_stats(readings).index.tolist(), reverse=True)


def monthly_comparison(readings: pd.DataFrame, month_key: Optional[str] = None,
                       meter_id: Any = None, now: Optional[pd.Timestamp] = None) -> Dict[str, Any]:
    """
    Compare a month with the one before it.

    Uses the full history passed in, not a reporting window. The percentage
    difference is 0 when the previous month had no consumption.

    Args:
        readings: Normalized readings (typically a meter's full history)
        month_key: "YYYY-MM"; the current month when None or invalid
        meter_id: Restrict to one meter
        now: Instant defining the current month

    Returns:
        Dictionary with month, previous_month, current, previous,
        consumption_diff, cost_diff and percentage_diff
    """
    now = localize(now) if now is not None else now_in_zone()
    try:
        month = pd.Period(month_key, freq="M") if month_key else None
    except ValueError:
        log.warning("Invalid month key %r, using the current month", month_key)
        month = None
    if month is None:
        month = pd.Period(now.strftime("%Y-%m"), freq="M")

    if meter_id is not None:
        readings = in_scope(readings, meter_id)
    stats = monthly_stats(readings)

    def _totals(key: str) -> Dict[str, float]:
        if key in stats.index:
            row = stats.loc[key]
            return {
                "consumption": round(float(row["consumption"]), 2),
                "cost": round(float(row["cost"]), 2),
                "count": int(row["count"]),
            }
        return {"consumption": 0.0, "cost": 0.0, "count": 0}

    current_key = month.strftime("%Y-%m")
    previous_key = (month - 1).strftime("%Y-%m")
    current = _totals(current_key)
    previous = _totals(previous_key)

    consumption_diff = current["consumption"] - previous["consumption"]
    return {
        "month": current_key,
        "previous_month": previous_key,
        "current": current,
        "previous": previous,
        "consumption_diff": round(consumption_diff, 2),
        "cost_diff": round(current["cost"] - previous["cost"], 2),
        "percentage_diff": round(_pct_change(previous["consumption"], current["consumption"]), 1),
    }


def budget_progress(readings: pd.DataFrame, monthly_budget: Optional[float] = None,
                    now: Optional[pd.Timestamp] = None) -> Dict[str, float]:
    """Cost accrued in the current calendar month against the monthly budget."""
    if monthly_budget is None:
        monthly_budget = CONFIG["budget"]["monthly"]
    now = localize(now) if now is not None else now_in_zone()

    qualifying = _qualifying(readings)
    month_cost = 0.0
    if not qualifying.empty:
        this_month = qualifying["timestamp"].dt.strftime("%Y-%m") == now.strftime("%Y-%m")
        month_cost = float(qualifying.loc[this_month, "cost"].sum())

    progress = float(np.clip(month_cost / monthly_budget, 0.0, 1.0)) if monthly_budget > 0 else 0.0
    return {
        "month_cost": round(month_cost, 2),
        "budget": float(monthly_budget),
        "progress": progress,
    }
