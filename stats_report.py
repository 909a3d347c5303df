"""
Meter consumption report.

Loads a meters/readings export, fetches each meter's readings concurrently,
runs the statistics and alert pipeline for one filter selection and prints
the result, optionally saving the tables as CSV files.
"""
from __future__ import annotations
import concurrent.futures
import datetime
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pandas as pd

from config import load_config
from meter_readings import normalize_readings, format_currency, localize, now_in_zone
from data_quality import validate_raw_readings, validate_normalized_readings, meter_freshness
from consumption_stats import (
    ALL_METERS, UNIT_CONSUMPTION, filter_window, per_day_rates, period_kpis, rate_summary,
    bucketed_series, rate_series, previous_window_rates, meter_distribution,
    monthly_comparison, available_months, monthly_stats, budget_progress, resolve_period,
)
from anomaly_detection import detect_high_consumption, save_alerts_to_csv

log = logging.getLogger(__name__)

CONFIG = load_config()

FetchReadings = Callable[[Any], List[Dict[str, Any]]]


# ────────────────────────────────────────────────────────────────────────────────
# DATA LOADING
# ────────────────────────────────────────────────────────────────────────────────


def load_export(file_path: str | Path) -> Tuple[List[Dict[str, Any]], Dict[Any, List[Dict[str, Any]]]]:
    """
    Load a meters/readings export.

    The file holds ``{"meters": [...], "readings": {meter_id: [...]}}``; a flat
    reading list whose records carry ``meterId`` is accepted as well.

    Returns:
        Tuple of (meters, readings grouped by meter id)
    """
    fp = Path(file_path)
    log.info("Reading %s", fp)
    try:
        with fp.open("r", encoding="utf-8") as f:
            raw = json.load(f)
    except json.JSONDecodeError as e:
        log.error("JSON parse error: %s", e)
        raise

    meters = raw.get("meters", [])
    readings = raw.get("readings", {})
    if isinstance(readings, list):
        grouped: Dict[Any, List[Dict[str, Any]]] = {}
        for rec in readings:
            grouped.setdefault(rec.get("meterId"), []).append(rec)
        readings = grouped

    log.info("Loaded %d meters, %d readings", len(meters), sum(len(v) for v in readings.values()))
    return meters, readings


def collect_readings(meters: List[Dict[str, Any]], fetch_readings: FetchReadings,
                     max_workers: int = 8) -> List[Dict[str, Any]]:
    """
    Fetch the readings of every meter concurrently and merge them.

    Each reading is tagged with its meter's id and name. A meter whose fetch
    fails is logged and contributes no readings.

    Args:
        meters: Meter records
        fetch_readings: Callable returning the raw readings of one meter id
        max_workers: Thread pool size

    Returns:
        Flat list of raw readings
    """
    def _fetch(meter: Dict[str, Any]) -> List[Dict[str, Any]]:
        try:
            readings = fetch_readings(meter["id"]) or []
        except Exception as e:
            log.warning("Error loading readings for meter %s: %s", meter.get("id"), e)
            return []
        return [
            {
                **rec,
                "meterId": meter["id"],
                "meterName": meter.get("name", meter["id"]),
                "costPerUnit": rec.get("costPerUnit", rec.get("costPerKwh", meter.get("costPerUnit"))),
            }
            for rec in readings
        ]

    if not meters:
        return []

    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as pool:
        by_meter = list(pool.map(_fetch, meters))

    return [rec for readings in by_meter for rec in readings]


# ────────────────────────────────────────────────────────────────────────────────
# REPORT
# ────────────────────────────────────────────────────────────────────────────────


def build_report(readings: pd.DataFrame, period: str = "month", scope: Any = ALL_METERS,
                 unit: str = UNIT_CONSUMPTION, month_key: Optional[str] = None,
                 now: Optional[pd.Timestamp] = None) -> Dict[str, Any]:
    """
    Run the statistics pipeline for one filter selection.

    Args:
        readings: Normalized reading table (all meters, full history)
        period: "week", "month" or "year"
        scope: "all" or a meter id
        unit: "kWh" or "cost" for the bucketed series
        month_key: Month for the monthly comparison ("YYYY-MM")
        now: Evaluation instant

    Returns:
        Dictionary with kpis, rates, series, rate_series, previous_rates,
        distribution, alerts, monthly, months and budget
    """
    period = resolve_period(period)
    now = localize(now) if now is not None else now_in_zone()

    windowed = filter_window(readings, scope, period, now)
    rated = per_day_rates(windowed, readings)
    line = rate_series(rated, period)

    scoped_history = readings if scope == ALL_METERS else readings[readings["meter_id"] == scope]

    return {
        "period": period,
        "scope": scope,
        "window": rated,
        "kpis": period_kpis(windowed),
        "rates": rate_summary(rated),
        "series": bucketed_series(windowed, period, unit),
        "rate_series": line,
        "previous_rates": previous_window_rates(readings, scope, period, now, len(line["values"])),
        "distribution": meter_distribution(windowed, scope),
        "alerts": detect_high_consumption(rated),
        "monthly": monthly_comparison(scoped_history, month_key, now=now),
        "months": available_months(scoped_history),
        "budget": budget_progress(scoped_history, now=now),
    }


def print_report(report: Dict[str, Any]) -> None:
    kpis = report["kpis"]
    rates = report["rates"]

    print("\n" + "="*80)
    print(" "*28 + "METER CONSUMPTION REPORT")
    print("="*80)
    print(f"Period: {report['period']}   Scope: {report['scope']}")

    print("\n1. KPIs")
    print("-"*50)
    print(f"Total consumption : {kpis['total_consumption']:.2f} kWh")
    print(f"Total cost        : {format_currency(kpis['total_cost'])}")
    print(f"Average/reading   : {kpis['average_consumption']:.2f} kWh")
    print(f"Trend             : {'↑' if kpis['trend'] >= 0 else '↓'} {abs(kpis['trend'])}%")
    print(f"Average per day   : {rates['average_per_day']:.2f} kWh/day")
    print(f"Last 7 vs prev 7  : {rates['delta_2w']}%")
    if rates["peak"]:
        print(f"Peak              : {rates['peak']['meter_name']} {rates['peak']['consumption']} kWh")
        print(f"Valley            : {rates['valley']['meter_name']} {rates['valley']['consumption']} kWh")

    print("\n2. SERIES")
    print("-"*50)
    for label, value in zip(report["series"]["labels"], report["series"]["values"]):
        print(f"{label:>10}: {value:,.2f}")

    if report["distribution"]:
        print("\n3. DISTRIBUTION BY METER")
        print("-"*50)
        for item in report["distribution"]:
            print(f"{item['meter_name']:>20}: {item['total']:,.2f} kWh ({item['color_token']})")

    print("\n4. HIGH CONSUMPTION ALERTS")
    print("-"*50)
    if not report["alerts"]:
        print("No unusual consumption detected")
    for alert in report["alerts"]:
        print(
            f"{alert['meter_name']:>20}: {alert['per_day']:.2f} kWh/day "
            f"(+{alert['over_by_percent']}%) at {alert['timestamp']:%d/%m/%Y %H:%M}"
        )

    monthly = report["monthly"]
    print("\n5. MONTHLY COMPARISON")
    print("-"*50)
    print(f"{monthly['month']}: {monthly['current']['consumption']:.2f} kWh, "
          f"{format_currency(monthly['current']['cost'])}")
    print(f"{monthly['previous_month']}: {monthly['previous']['consumption']:.2f} kWh, "
          f"{format_currency(monthly['previous']['cost'])}")
    sign = "+" if monthly["percentage_diff"] > 0 else ""
    print(f"Difference: {monthly['consumption_diff']:+.2f} kWh ({sign}{monthly['percentage_diff']}%)")

    budget = report["budget"]
    print("\n6. MONTHLY BUDGET")
    print("-"*50)
    print(f"{format_currency(budget['month_cost'])} of {format_currency(budget['budget'])} "
          f"({budget['progress']:.0%})")

    print("\n" + "="*80 + "\n")


# ────────────────────────────────────────────────────────────────────────────────
# MAIN
# ────────────────────────────────────────────────────────────────────────────────


def main(path: str | Path = "meters_export.json", period: str = "month", meter: Any = ALL_METERS,
         unit: str = UNIT_CONSUMPTION, month_key: Optional[str] = None,
         output_csv: bool = True, csv_dir: str | Path = "csv_output") -> Dict[str, Any]:
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s · %(levelname)s · %(message)s"
    )
    start_time = datetime.datetime.now()

    meters, grouped = load_export(path)
    raw = collect_readings(meters, lambda meter_id: grouped.get(meter_id, []))

    quality = validate_raw_readings(raw)
    readings = normalize_readings(raw)
    normalized_quality = validate_normalized_readings(readings)
    quality.meters_with_rollover = normalized_quality.meters_with_rollover
    quality.rollover_readings = normalized_quality.rollover_readings
    quality.reading_frequency = normalized_quality.reading_frequency
    quality.print_summary()

    now = now_in_zone()
    report = build_report(readings, period, meter, unit, month_key, now)
    print_report(report)

    freshness = meter_freshness(readings, now)

    if output_csv:
        csv_dir = Path(csv_dir)
        csv_dir.mkdir(parents=True, exist_ok=True)
        if not readings.empty:
            readings.to_csv(csv_dir / "readings.csv", index=False)
            report["window"].to_csv(csv_dir / "window_rates.csv", index=False)
            monthly_stats(readings).to_csv(csv_dir / "monthly_stats.csv")
        if not freshness.empty:
            freshness.to_csv(csv_dir / "meter_freshness.csv", index=False)
        pd.DataFrame(report["series"]).to_csv(csv_dir / "series.csv", index=False)
        save_alerts_to_csv(report["alerts"], str(csv_dir / "alerts.csv"))
        log.info("CSV files saved in %s", csv_dir.resolve())

    execution_time = datetime.datetime.now() - start_time
    log.info(f"Report completed in {execution_time.total_seconds():.2f} seconds")
    return report


def cli() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Meter consumption statistics report")
    parser.add_argument("--input", "-i", default="meters_export.json",
                      help="Input JSON export with meters and readings")
    parser.add_argument("--period", "-p", default=CONFIG.get("default_period", "month"),
                      choices=sorted(CONFIG["periods"]), help="Reporting period")
    parser.add_argument("--meter", "-m", default=ALL_METERS,
                      help="Meter id, or 'all'")
    parser.add_argument("--unit", "-u", default=UNIT_CONSUMPTION, choices=["kWh", "cost"],
                      help="Unit of the bucketed series")
    parser.add_argument("--month", default=None,
                      help="Month for the monthly comparison (YYYY-MM)")
    parser.add_argument("--no-csv", action="store_true",
                      help="Disable CSV output")
    args = parser.parse_args()

    main(args.input, period=args.period, meter=args.meter, unit=args.unit,
         month_key=args.month, output_csv=not args.no_csv)


if __name__ == "__main__":
    cli()
