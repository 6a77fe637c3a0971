import asyncio
import json
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

import numpy as np
import pandas as pd

from chart_series import TimeRange
from energy_analysis import (
    AnalysisFilters, AnalysisRunner, TimelineArena, analyze, build_timeline,
    category_averages, describe_analysis, filter_readings, local_fields, main
)


def ts(*args):
    return int(datetime(*args, tzinfo=timezone.utc).timestamp())


class TestFilters(unittest.TestCase):

    def setUp(self):
        # two weeks of hourly readings starting Monday 2024-01-01
        count = 24 * 14
        self.readings = pd.DataFrame({
            "timestamp": ts(2024, 1, 1) + np.arange(count) * 3600,
            "value": np.full(count, 100),
            "cost": np.full(count, 10),
        })

    def test_weekday_numbering_starts_on_sunday(self):
        fields = local_fields(pd.Series([ts(2024, 1, 7, 12), ts(2024, 1, 8, 12)]), "UTC")
        self.assertEqual(fields["weekday"].tolist(), [0, 1])
        self.assertEqual(fields["month"].tolist(), [0, 0])

    def test_day_filter(self):
        filters = AnalysisFilters(days_of_week={1, 2, 3, 4, 5})
        result = filter_readings(self.readings, filters, "UTC")
        weekdays = local_fields(result["timestamp"], "UTC")["weekday"]
        self.assertEqual(len(result), 24 * 10)
        self.assertTrue(weekdays.between(1, 5).all())

    def test_hour_filter_is_inclusive(self):
        filters = AnalysisFilters(hour_start=9, hour_end=17)
        result = filter_readings(self.readings, filters, "UTC")
        hours = local_fields(result["timestamp"], "UTC")["hour"]
        self.assertEqual(len(result), 9 * 14)
        self.assertEqual(hours.min(), 9)
        self.assertEqual(hours.max(), 17)

    def test_month_filter_can_empty_the_set(self):
        result = filter_readings(self.readings, AnalysisFilters(months={1}), "UTC")
        self.assertTrue(result.empty)

    def test_no_filters_is_passthrough(self):
        self.assertIs(filter_readings(self.readings, AnalysisFilters(), "UTC"), self.readings)

    def test_invalid_filters(self):
        with self.assertRaises(ValueError):
            AnalysisFilters(months={12})
        with self.assertRaises(ValueError):
            AnalysisFilters(days_of_week={7})
        with self.assertRaises(ValueError):
            AnalysisFilters(hour_start=-1)


class TestTimeline(unittest.TestCase):

    def test_month_instances_are_separate_per_year(self):
        readings = pd.DataFrame({
            "timestamp": [ts(2023, 1, 10), ts(2023, 1, 20), ts(2024, 1, 10)],
            "value": [100, 150, 400],
            "cost": [10, 15, 40],
        })
        timeline = build_timeline(readings, "month", tz="UTC")
        self.assertEqual(timeline["label"].tolist(), ["Jan 2023", "Jan 2024"])
        self.assertEqual(timeline["value"].tolist(), [250, 400])
        self.assertEqual(timeline["count"].tolist(), [2, 1])
        self.assertEqual(timeline["category_key"].tolist(), [0, 0])

    def test_period_bounds(self):
        months = TimelineArena("month", "UTC")
        self.assertEqual(months.period_bounds((2024, 1)), (ts(2024, 2, 1), ts(2024, 3, 1) - 1))
        self.assertEqual(months.period_bounds((2023, 11)), (ts(2023, 12, 1), ts(2024, 1, 1) - 1))

        days = TimelineArena("dayOfWeek", "UTC")
        self.assertEqual(days.period_bounds((2024, 0, 15)), (ts(2024, 1, 15), ts(2024, 1, 15) + 86399))

        hours = TimelineArena("hour", "UTC")
        self.assertEqual(hours.period_bounds((2024, 0, 15, 14)),
                         (ts(2024, 1, 15, 14), ts(2024, 1, 15, 14) + 3599))

    def test_labels(self):
        readings = pd.DataFrame({"timestamp": [ts(2024, 1, 15, 14, 30)], "value": [5], "cost": [1]})
        self.assertEqual(build_timeline(readings, "month", tz="UTC")["label"].tolist(), ["Jan 2024"])
        self.assertEqual(build_timeline(readings, "dayOfWeek", tz="UTC")["label"].tolist(), ["Mon 1/15/24"])
        self.assertEqual(build_timeline(readings, "hour", tz="UTC")["label"].tolist(), ["1/15/24 14:00"])

    def test_chunked_accumulation_matches_single_pass(self):
        rng = np.random.default_rng(3)
        count = 24 * 40
        readings = pd.DataFrame({
            "timestamp": ts(2024, 1, 1) + np.arange(count) * 3600,
            "value": rng.integers(0, 1000, count),
            "cost": rng.integers(0, 100, count),
        })
        arena = TimelineArena("dayOfWeek", "UTC")
        for start in range(0, count, 97):
            arena.add(readings.iloc[start:start + 97])
        pd.testing.assert_frame_equal(arena.to_timeline(),
                                      build_timeline(readings, "dayOfWeek", tz="UTC"))

    def test_empty_timeline(self):
        empty = pd.DataFrame({"timestamp": [], "value": [], "cost": []}, dtype="int64")
        self.assertTrue(build_timeline(empty, "hour", tz="UTC").empty)


class TestCategoryAverages(unittest.TestCase):

    def setUp(self):
        # one reading per day at noon, 2023-01-01 .. 2024-01-15
        days = (ts(2024, 1, 15) - ts(2023, 1, 1)) // 86400 + 1
        self.readings = pd.DataFrame({
            "timestamp": ts(2023, 1, 1, 12) + np.arange(days) * 86400,
            "value": np.full(days, 10),
            "cost": np.full(days, 2),
        })
        self.view = TimeRange(ts(2023, 1, 1), ts(2024, 1, 15, 23, 59, 59))

    def test_partial_instances_are_excluded(self):
        result = analyze(self.readings, group_by="month", view_range=self.view, tz="UTC")
        jan = result.timeline[result.timeline["category_key"] == 0]
        self.assertEqual(jan["is_complete"].tolist(), [True, False])

        averages = result.averages.set_index("key")
        self.assertEqual(averages.loc[0, "count"], 1)
        self.assertEqual(averages.loc[0, "average"], 310)
        self.assertEqual(averages.loc[0, "avg_cost"], 62)
        self.assertEqual(averages.loc[1, "average"], 280)

    def test_unbounded_view_counts_everything(self):
        result = analyze(self.readings, group_by="month", tz="UTC")
        self.assertTrue(result.timeline["is_complete"].all())
        averages = result.averages.set_index("key")
        self.assertEqual(averages.loc[0, "count"], 2)
        self.assertEqual(averages.loc[0, "average"], (310 + 150) // 2)

    def test_no_data_is_flagged(self):
        readings = pd.DataFrame({"timestamp": [ts(2024, 1, 10)], "value": [0], "cost": [0]})
        averages = analyze(readings, group_by="month", tz="UTC").averages
        self.assertEqual(len(averages), 12)
        self.assertTrue(averages.loc[0, "has_data"])
        self.assertEqual(averages.loc[0, "average"], 0)
        self.assertFalse(averages.loc[1:, "has_data"].any())

    def test_round_half_up(self):
        readings = pd.DataFrame({
            "timestamp": [ts(2024, 1, 1, 0), ts(2024, 1, 2, 0), ts(2024, 1, 1, 1), ts(2024, 1, 2, 1)],
            "value": [1, 2, 2, 3],
            "cost": [0, 1, 0, 0],
        })
        averages = category_averages(build_timeline(readings, "hour", tz="UTC"), "hour")
        self.assertEqual(averages.loc[0, "average"], 2)
        self.assertEqual(averages.loc[1, "average"], 3)
        self.assertEqual(averages.loc[0, "avg_cost"], 1)
        self.assertEqual(averages["label"].iloc[14], "14:00")

    def test_day_of_week_categories(self):
        result = analyze(self.readings, group_by="dayOfWeek", view_range=self.view, tz="UTC")
        averages = result.averages
        self.assertEqual(averages["label"].tolist(), ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"])
        self.assertTrue((averages["average"] == 10).all())


class TestAnalysisRunner(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        rng = np.random.default_rng(11)
        count = 24 * 30
        self.readings = pd.DataFrame({
            "timestamp": ts(2024, 3, 1) + np.arange(count) * 3600,
            "value": rng.integers(0, 1000, count),
            "cost": rng.integers(0, 100, count),
        })
        self.published = []
        self.runner = AnalysisRunner(tz="UTC", filter_chunk_size=50, aggregate_chunk_size=40,
                                     pause=0, on_publish=self.published.append)

    async def test_matches_single_pass(self):
        filters = AnalysisFilters(hour_start=8, hour_end=20)
        result = await self.runner.run(self.readings, filters, "hour")
        expected = analyze(self.readings, filters, "hour", tz="UTC")

        pd.testing.assert_frame_equal(result.timeline, expected.timeline)
        pd.testing.assert_frame_equal(result.averages, expected.averages)
        self.assertIs(self.runner.latest, result)
        self.assertEqual(self.published, [result])

    async def test_newer_run_supersedes_older(self):
        first = asyncio.create_task(self.runner.run(self.readings, group_by="hour"))
        await asyncio.sleep(0)  # let the first run process its first chunk
        second = asyncio.create_task(self.runner.run(self.readings, group_by="month"))
        old, new = await asyncio.gather(first, second)

        self.assertIsNone(old, "Superseded run returned a result")
        self.assertIsNotNone(new)
        self.assertIs(self.runner.latest, new)
        self.assertEqual(new.generation, 2)
        self.assertEqual(self.published, [new])

    async def test_cancel(self):
        task = asyncio.create_task(self.runner.run(self.readings))
        await asyncio.sleep(0)
        self.runner.cancel()
        self.assertIsNone(await task)
        self.assertIsNone(self.runner.latest)
        self.assertEqual(self.published, [])


class TestDescribeAnalysis(unittest.TestCase):

    def test_averages_caption(self):
        filters = AnalysisFilters(days_of_week={1, 2, 3, 4, 5}, hour_start=9, hour_end=17)
        description = describe_analysis("averages", "hour", "energy", filters)
        self.assertEqual(description.main, "Average energy by hour")
        self.assertEqual(description.filters, ["weekdays only", "9 AM–5 PM"])

    def test_timeline_caption(self):
        filters = AnalysisFilters(days_of_week={0, 6}, months={0, 1, 11})
        description = describe_analysis("timeline", "month", "cost", filters)
        self.assertEqual(description.main, "Monthly cost timeline")
        self.assertEqual(description.filters, ["weekends only", "Jan, Feb, Dec"])

    def test_many_months(self):
        description = describe_analysis("averages", "month", "energy", AnalysisFilters(months=range(6)))
        self.assertEqual(description.filters, ["6 months"])


class TestMain(unittest.TestCase):

    def test_writes_csv_output(self):
        records = [
            {"timestamp": ts(2024, 1, 1) + i * 3600, "value": 100 + i % 7, "cost": 12}
            for i in range(24 * 10)
        ]
        with tempfile.TemporaryDirectory() as tmp:
            input_path = Path(tmp) / "readings.json"
            input_path.write_text(json.dumps(records), encoding="utf-8")
            out_dir = Path(tmp) / "out"

            main(input_path, resolution="DAILY", group_by="dayOfWeek", output_dir=out_dir, tz="UTC")

            chart = pd.read_csv(out_dir / "chart_daily.csv")
            averages = pd.read_csv(out_dir / "averages_dayOfWeek.csv")
            self.assertTrue((out_dir / "timeline_dayOfWeek.csv").exists())

        self.assertEqual(len(chart), 10)
        self.assertEqual(chart["value"].sum(), sum(r["value"] for r in records))
        self.assertEqual(len(averages), 7)


if __name__ == "__main__":
    unittest.main()
