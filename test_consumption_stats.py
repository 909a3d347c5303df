import unittest
from datetime import datetime, timedelta

import pandas as pd

from meter_readings import normalize_readings
from consumption_stats import (
    available_months, budget_progress, bucketed_series, consumption_trend, filter_window,
    meter_color, meter_distribution, monthly_comparison, monthly_stats, per_day_rates,
    period_kpis, previous_window_rates, rate_series, rate_summary, thin_labels, window_days,
)


class StatsTestCase(unittest.TestCase):

    def setUp(self):
        self.base = datetime(2025, 3, 1, 12, 0)
        self.now = pd.Timestamp("2025-03-11 12:00", tz="UTC")

    def _raw(self, points, meter_id="m1", cost_per_unit=200):
        """points: iterable of (day offset, dial value)."""
        return [
            {"id": f"{meter_id}-{day}", "meterId": meter_id, "meterName": meter_id.upper(),
             "value": value, "costPerUnit": cost_per_unit,
             "date": self.base + timedelta(days=day)}
            for day, value in points
        ]

    def _history(self, *raws):
        raw = [rec for r in raws for rec in r]
        return normalize_readings(raw, tz="UTC", now=self.now)


class TestWindowFilter(StatsTestCase):

    def test_trailing_window(self):
        history = self._history(self._raw([(d, 100 + 10 * d) for d in range(10)]))
        windowed = filter_window(history, "all", "week", self.now)
        # now - 7 days = day 3, strictly after it
        self.assertEqual(windowed["id"].tolist(), [f"m1-{d}" for d in range(4, 10)])
        self.assertTrue(windowed["timestamp"].is_monotonic_increasing)

    def test_period_lengths(self):
        self.assertEqual(window_days("week"), 7)
        self.assertEqual(window_days("month"), 30)
        self.assertEqual(window_days("year"), 365)
        self.assertEqual(window_days("decade"), 30)

    def test_scope_single_meter(self):
        history = self._history(
            self._raw([(d, 100 + d) for d in range(8)], "m1"),
            self._raw([(d, 500 + d) for d in range(8)], "m2"),
        )
        windowed = filter_window(history, "m2", "month", self.now)
        self.assertEqual(set(windowed["meter_id"]), {"m2"})
        self.assertEqual(len(windowed), 8)

    def test_fallback_with_empty_window(self):
        history = self._history(self._raw([(-100, 10), (-90, 20), (-80, 35)]))
        windowed = filter_window(history, "m1", "week", self.now)
        self.assertEqual(windowed["id"].tolist(), ["m1--90", "m1--80"])

    def test_fallback_with_single_reading_in_window(self):
        history = self._history(self._raw([(-100, 10), (-90, 20), (8, 35)]))
        windowed = filter_window(history, "m1", "week", self.now)
        self.assertEqual(windowed["id"].tolist(), ["m1--90", "m1-8"])

    def test_small_scopes_return_what_exists(self):
        history = self._history(self._raw([(-100, 10)], "m1"), self._raw([(1, 5), (2, 6)], "m2"))
        self.assertEqual(len(filter_window(history, "m1", "week", self.now)), 1)
        self.assertEqual(len(filter_window(history, "missing", "week", self.now)), 0)

    def test_unknown_meter_is_logged(self):
        history = self._history(self._raw([(0, 100), (9, 120)]))
        with self.assertLogs("consumption_stats", level="WARNING") as captured:
            self.assertTrue(filter_window(history, "3", "month", self.now).empty)
        self.assertIn("No readings for meter '3'", captured.output[0])


class TestPerDayRates(StatsTestCase):

    def test_rate_scales_with_elapsed_days(self):
        history = self._history(self._raw([(0, 0), (2, 10), (12, 20)]))
        rated = per_day_rates(history, history)
        self.assertEqual(rated["days"].tolist(), [1.0, 2.0, 10.0])
        self.assertEqual(rated["per_day"].tolist(), [0.0, 5.0, 1.0])

    def test_predecessor_outside_window(self):
        history = self._history(self._raw([(-20, 100), (9, 158)]))
        windowed = history[history["id"] == "m1-9"]
        rated = per_day_rates(windowed, history)
        self.assertEqual(rated["days"].iloc[0], 29.0)
        self.assertEqual(rated["per_day"].iloc[0], 2.0)

    def test_same_day_readings_use_one_day(self):
        raw = self._raw([(0, 100)])
        raw.append({"id": "later", "meterId": "m1", "value": 112,
                    "date": self.base + timedelta(hours=5)})
        history = self._history(raw)
        rated = per_day_rates(history, history)
        self.assertEqual(rated["per_day"].tolist(), [0.0, 12.0])

    def test_predecessor_is_per_meter(self):
        def readings(meter_id, points):
            return [
                {"id": f"r{i}", "meterId": meter_id, "value": value,
                 "date": self.base + timedelta(days=day)}
                for i, (day, value) in enumerate(points)
            ]

        # both meters number their readings r0, r1
        history = self._history(
            readings("m1", [(0, 100), (10, 110)]),
            readings("m2", [(8, 500), (10, 520)]),
        )
        rated = per_day_rates(history, history).set_index(["meter_id", "id"])
        self.assertEqual(rated.loc[("m1", "r1"), "days"], 10.0)
        self.assertEqual(rated.loc[("m1", "r1"), "per_day"], 1.0)
        self.assertEqual(rated.loc[("m2", "r1"), "days"], 2.0)
        self.assertEqual(rated.loc[("m2", "r1"), "per_day"], 10.0)
        self.assertEqual(rated.loc[("m2", "r0"), "per_day"], 0.0)

        windowed = history[history["meter_id"] == "m2"]
        self.assertEqual(per_day_rates(windowed, history)["per_day"].tolist(), [0.0, 10.0])

    def test_input_not_mutated(self):
        history = self._history(self._raw([(0, 0), (2, 10)]))
        before = history.copy()
        per_day_rates(history, history)
        pd.testing.assert_frame_equal(history, before)


class TestKpis(StatsTestCase):

    def test_totals_exclude_baseline(self):
        history = self._history(self._raw([(0, 100), (1, 120), (2, 200)]))
        kpis = period_kpis(history)
        self.assertEqual(kpis["total_consumption"], 100.0)
        self.assertEqual(kpis["total_cost"], 20000.0)
        self.assertEqual(kpis["average_consumption"], 50.0)
        self.assertEqual(kpis["trend"], 0.0)

    def test_trend_halves(self):
        self.assertEqual(consumption_trend([10, 10, 10, 20, 20, 20]), 100.0)
        self.assertEqual(consumption_trend([20, 20, 20, 10, 10, 10]), -50.0)
        # odd length: the middle value is left out
        self.assertEqual(consumption_trend([10, 10, 10, 99, 5, 5, 5]), -50.0)
        self.assertEqual(consumption_trend([10, 20, 30, 40, 50]), 0.0)
        self.assertEqual(consumption_trend([0, 0, 0, 5, 5, 5]), 0.0)

    def test_empty_window(self):
        kpis = period_kpis(self._history([]))
        self.assertEqual(kpis, {
            "total_consumption": 0.0, "total_cost": 0.0,
            "average_consumption": 0.0, "trend": 0.0,
        })

    def test_idempotent(self):
        history = self._history(self._raw([(d, 100 + d * d) for d in range(10)]))
        windowed = filter_window(history, "all", "month", self.now)
        self.assertEqual(period_kpis(windowed), period_kpis(windowed))
        self.assertEqual(bucketed_series(windowed, "month"), bucketed_series(windowed, "month"))

    def test_rate_summary(self):
        points = [(d, 100 + 10 * d) for d in range(8)] + [(d, 170 + 20 * (d - 7)) for d in range(8, 15)]
        history = self._history(self._raw(points))
        rated = per_day_rates(history, history)
        summary = rate_summary(rated)

        self.assertAlmostEqual(summary["average_per_day"], round((7 * 10 + 7 * 20) / 14, 2))
        self.assertEqual(summary["delta_2w"], 100.0)
        self.assertEqual(summary["peak"]["consumption"], 20.0)
        self.assertEqual(summary["valley"]["consumption"], 10.0)

    def test_rate_summary_short_series(self):
        history = self._history(self._raw([(0, 100), (1, 110)]))
        summary = rate_summary(per_day_rates(history, history))
        self.assertEqual(summary["delta_2w"], 0.0)
        self.assertEqual(summary["peak"]["reading_id"], "m1-1")


class TestSeries(StatsTestCase):

    def test_daily_buckets(self):
        raw = self._raw([(0, 100), (1, 110), (2, 130)])
        raw.append({"id": "extra", "meterId": "m1", "value": 135, "costPerUnit": 200,
                    "date": self.base + timedelta(days=2, hours=3)})
        history = self._history(raw)
        series = bucketed_series(history, "month")
        self.assertEqual(series["keys"], ["2025-03-02", "2025-03-03"])
        self.assertEqual(series["labels"], ["02/03", "03/03"])
        self.assertEqual(series["values"], [10.0, 25.0])

        cost = bucketed_series(history, "month", "cost")
        self.assertEqual(cost["values"], [2000.0, 5000.0])

    def test_bucket_cap(self):
        history = self._history(self._raw([(d, 100 + d) for d in range(12)]))
        series = bucketed_series(history, "week")
        self.assertEqual(len(series["values"]), 7)
        self.assertEqual(series["keys"][-1], "2025-03-12")

    def test_monthly_buckets_for_year(self):
        history = self._history(self._raw([(0, 100), (20, 150), (40, 170), (70, 200)]))
        series = bucketed_series(history, "year")
        self.assertEqual(series["keys"], ["2025-03", "2025-04", "2025-05"])
        self.assertEqual(series["labels"], ["Mar", "Apr", "May"])
        self.assertEqual(series["values"], [50.0, 20.0, 30.0])

    def test_thin_labels(self):
        labels = [str(i) for i in range(16)]
        thinned = thin_labels(labels, 8)
        self.assertEqual(sum(1 for label in thinned if label), 8)
        self.assertEqual(thinned[:3], ["0", "", "2"])
        self.assertEqual(thin_labels([], 8), [])

    def test_rate_series(self):
        history = self._history(self._raw([(0, 0), (2, 10), (12, 20)]))
        series = rate_series(per_day_rates(history, history), "month")
        self.assertEqual(series["values"], [0.0, 5.0, 1.0])
        self.assertEqual(series["labels"], ["01/03", "03/03", "13/03"])

    def test_previous_window_rates(self):
        history = self._history(self._raw([(-12, 100), (-2, 120), (0, 130), (5, 140), (9, 160)]))
        # previous week: after day -4, up to and including day 3
        self.assertEqual(previous_window_rates(history, "m1", "week", self.now, 2), [2.0, 5.0])
        self.assertEqual(previous_window_rates(history, "m1", "week", self.now, 3), [])


class TestDistribution(StatsTestCase):

    def test_per_meter_totals_and_stable_colors(self):
        history = self._history(
            self._raw([(0, 100), (1, 110), (2, 130)], "m1"),
            self._raw([(0, 10), (2, 15)], "m2"),
        )
        dist = meter_distribution(history, "all")
        self.assertEqual([d["meter_id"] for d in dist], ["m1", "m2"])
        self.assertEqual([d["total"] for d in dist], [30.0, 5.0])
        self.assertEqual(dist[0]["color_token"], meter_color("m1"))
        self.assertEqual(meter_distribution(history, "all"), dist)

    def test_single_meter_has_no_distribution(self):
        history = self._history(self._raw([(0, 100), (1, 110)], "m1"))
        self.assertEqual(meter_distribution(history, "all"), [])
        two = self._history(self._raw([(0, 100), (1, 110)], "m1"), self._raw([(0, 1), (1, 3)], "m2"))
        self.assertEqual(meter_distribution(two, "m1"), [])

    def test_color_is_deterministic(self):
        palette = ["#000000", "#111111", "#222222"]
        self.assertEqual(meter_color("abc", palette), meter_color("abc", palette))
        self.assertIn(meter_color("abc", palette), palette)


class TestMonthly(StatsTestCase):

    def test_previous_month_without_consumption(self):
        history = self._history(self._raw([(0, 100), (14, 150)]))
        comparison = monthly_comparison(history, "2025-03")
        self.assertEqual(comparison["previous_month"], "2025-02")
        self.assertEqual(comparison["current"]["consumption"], 50.0)
        self.assertEqual(comparison["consumption_diff"], 50.0)
        self.assertEqual(comparison["percentage_diff"], 0.0)

    def test_month_over_month(self):
        history = self._history(self._raw([(-20, 60), (-5, 100), (10, 130), (20, 150)]))
        comparison = monthly_comparison(history, "2025-03", meter_id="m1")
        self.assertEqual(comparison["previous"]["consumption"], 40.0)
        self.assertEqual(comparison["current"]["consumption"], 50.0)
        self.assertEqual(comparison["percentage_diff"], 25.0)
        self.assertEqual(comparison["cost_diff"], 2000.0)

    def test_invalid_month_uses_current(self):
        history = self._history(self._raw([(0, 100), (5, 150)]))
        comparison = monthly_comparison(history, "not-a-month", now=self.now)
        self.assertEqual(comparison["month"], "2025-03")

    def test_monthly_stats_and_months(self):
        history = self._history(self._raw([(-20, 60), (-5, 100), (10, 130)]))
        stats = monthly_stats(history)
        self.assertEqual(stats.loc["2025-02", "count"], 1)
        self.assertEqual(available_months(history), ["2025-03", "2025-02"])

    def test_budget_progress(self):
        history = self._history(self._raw([(-20, 60), (0, 100), (5, 150)]))
        budget = budget_progress(history, 30000, self.now)
        self.assertEqual(budget["month_cost"], 18000.0)
        self.assertAlmostEqual(budget["progress"], 0.6)
        self.assertEqual(budget_progress(history, 5000, self.now)["progress"], 1.0)
        self.assertEqual(budget_progress(history, 0, self.now)["progress"], 0.0)


if __name__ == "__main__":
    unittest.main()
