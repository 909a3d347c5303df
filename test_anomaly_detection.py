import os
import tempfile
import unittest
from datetime import datetime, timedelta

import pandas as pd

from meter_readings import normalize_readings
from consumption_stats import per_day_rates
from anomaly_detection import (
    alert_counts, detect_high_consumption, lower_median, mad_threshold, save_alerts_to_csv,
)


class TestAnomalyDetection(unittest.TestCase):

    def setUp(self):
        self.base = pd.Timestamp("2025-03-01 12:00", tz="UTC")
        self.rates = [10, 11, 9, 10, 12, 10, 11, 50, 10, 60, 10, 55]

    def _rated(self, rates, meter_id="m1"):
        return pd.DataFrame({
            "id": [f"r{i}" for i in range(len(rates))],
            "meter_id": [meter_id] * len(rates),
            "meter_name": ["Casa"] * len(rates),
            "timestamp": [self.base + pd.Timedelta(days=i) for i in range(len(rates))],
            "consumption": [float(r) for r in rates],
            "per_day": [float(r) for r in rates],
        })

    def test_lower_median(self):
        self.assertEqual(lower_median([4, 1, 3, 2]), 2.0)
        self.assertEqual(lower_median([5, 1, 3]), 3.0)
        self.assertEqual(lower_median([]), 0.0)

    def test_mad_threshold(self):
        median, mad, threshold = mad_threshold(self.rates, k=3)
        self.assertEqual(median, 10.0)
        self.assertEqual(mad, 1.0)
        self.assertEqual(threshold, 13.0)

    def test_scenario_three_readings(self):
        """100 → 120 → 200 on consecutive days flags the last reading at +300%."""
        start = datetime(2025, 3, 1, 12, 0)
        raw = [
            {"id": f"r{i}", "meterId": "m1", "meterName": "Casa", "value": v,
             "date": start + timedelta(days=i)}
            for i, v in enumerate([100, 120, 200])
        ]
        history = normalize_readings(raw, tz="UTC", now=pd.Timestamp("2025-03-05", tz="UTC"))
        rated = per_day_rates(history, history)
        self.assertEqual(rated["per_day"].tolist(), [0.0, 20.0, 80.0])

        alerts = detect_high_consumption(rated, k=3, min_samples=2)
        self.assertEqual(len(alerts), 1)
        self.assertEqual(alerts[0]["reading_id"], "r2")
        self.assertEqual(alerts[0]["per_day"], 80.0)
        self.assertEqual(alerts[0]["over_by_percent"], 300.0)

        self.assertEqual(detect_high_consumption(rated, k=3), [])

    def test_insufficient_samples(self):
        rated = self._rated([10, 10, 10, 10, 10, 90])
        self.assertEqual(detect_high_consumption(rated, k=3, min_samples=7), [])

    def test_zero_rates_do_not_count_as_samples(self):
        rated = self._rated([0, 0, 0, 10, 10, 10, 10, 10, 90])
        self.assertEqual(detect_high_consumption(rated, k=3, min_samples=7), [])

    def test_returns_two_most_recent(self):
        alerts = detect_high_consumption(self._rated(self.rates), k=3, min_samples=7)
        self.assertEqual([a["reading_id"] for a in alerts], ["r9", "r11"])
        self.assertEqual([a["over_by_percent"] for a in alerts], [500.0, 450.0])
        self.assertEqual(alerts[0]["meter_name"], "Casa")
        self.assertEqual(alerts[1]["timestamp"], self.base + pd.Timedelta(days=11))

    def test_larger_k_never_adds_alerts(self):
        rated = self._rated(self.rates)
        ks = [0.5, 1, 2, 3, 5, 10, 40, 60]
        thresholds = [mad_threshold(self.rates, k)[2] for k in ks]
        self.assertEqual(thresholds, sorted(thresholds))

        counts = alert_counts(rated, ks, min_samples=7)
        values = [counts[k] for k in ks]
        self.assertEqual(values, sorted(values, reverse=True))
        self.assertEqual(counts[3], 3)
        self.assertEqual(counts[60], 0)

    def test_flat_series_has_no_alerts(self):
        self.assertEqual(detect_high_consumption(self._rated([5] * 10), k=3, min_samples=7), [])

    def test_missing_rates(self):
        self.assertEqual(detect_high_consumption(pd.DataFrame()), [])

    def test_save_alerts_to_csv(self):
        alerts = detect_high_consumption(self._rated(self.rates), k=3, min_samples=7)
        with tempfile.TemporaryDirectory() as temp_dir:
            path = os.path.join(temp_dir, "out", "alerts.csv")
            save_alerts_to_csv(alerts, path)
            saved = pd.read_csv(path)
            self.assertEqual(saved["reading_id"].tolist(), ["r9", "r11"])
            self.assertIn("over_by_percent", saved.columns)


if __name__ == "__main__":
    unittest.main()
