import unittest
from datetime import timezone

from rewatch.models import RecordKind, SettingsRecord, StatsRecord, VideoRecord
from rewatch.stats import StatsAggregator, WatchDelta, apply_delta, compute_delta, local_day_key
from tests.helpers import DAY, T0, FakeClock, make_store


def vid(time, ts, duration=None, is_shorts=False):
    return VideoRecord(video_id="v1", time=time, timestamp=ts, duration=duration, is_shorts=is_shorts)


class TestStatsFold(unittest.TestCase):
    def test_day_key_is_local(self):
        self.assertEqual(local_day_key(T0, timezone.utc), "2024-03-10")

    def test_backward_seek_counts_zero(self):
        self.assertIsNone(compute_delta(vid(100, T0), vid(50, T0 + 1000), T0 + 1000))

    def test_daily_capped_at_seven_entries(self):
        stats = StatsRecord(daily={f"2024-03-0{d}": 10 for d in range(1, 10)})
        delta = WatchDelta(when_ms=T0, seconds=5)
        folded = apply_delta(stats, delta, T0, timezone.utc)
        self.assertLessEqual(len(folded.daily), 7)
        self.assertNotIn("2024-03-01", folded.daily)
        self.assertEqual(folded.daily["2024-03-10"], 5)

    def test_hour_bucket(self):
        folded = apply_delta(StatsRecord(), WatchDelta(when_ms=T0, seconds=42), T0, timezone.utc)
        self.assertEqual(folded.hourly[12], 42)
        self.assertEqual(sum(folded.hourly), 42)
        self.assertEqual(folded.total_watch_seconds, 42)


class TestStatsAggregator(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.store = make_store(self.clock)

    def aggregator(self, immediate=True):
        return StatsAggregator(
            self.store,
            self.clock,
            SettingsRecord(sync_immediate=immediate),
            tz=timezone.utc,
            cadence_seconds=3600,
        )

    async def test_daily_bucket_accumulates_then_evicts(self):
        agg = self.aggregator()
        first = vid(120, T0)
        await agg.record_write(None, first)
        second = vid(150, T0 + 60_000)
        await agg.record_write(first, second)

        stats = await self.store.get(RecordKind.STATS)
        self.assertEqual(stats.daily["2024-03-10"], 150)
        self.assertEqual(stats.total_watch_seconds, 150)

        # Eight local days later the bucket falls out of the window
        later = vid(160, T0 + 8 * DAY)
        await agg.record_write(second, later)
        stats = await self.store.get(RecordKind.STATS)
        self.assertNotIn("2024-03-10", stats.daily)
        self.assertEqual(stats.daily["2024-03-18"], 10)
        self.assertEqual(stats.total_watch_seconds, 160)

    async def test_counters(self):
        agg = self.aggregator()
        first = vid(30, T0, duration=100, is_shorts=True)
        await agg.record_write(None, first)
        await agg.record_write(first, vid(95, T0 + 1000, duration=100, is_shorts=True))
        counters = (await self.store.get(RecordKind.STATS)).counters
        self.assertEqual(counters.videos, 1)
        self.assertEqual(counters.shorts, 1)
        self.assertEqual(counters.total_duration_seconds, 100)
        self.assertEqual(counters.completed, 1)

    async def test_debounced_until_flush(self):
        agg = self.aggregator(immediate=False)
        await agg.record_write(None, vid(40, T0))

        self.assertEqual((await self.store.get(RecordKind.STATS)).total_watch_seconds, 0)
        self.assertEqual((await agg.get_stats()).total_watch_seconds, 40)
        self.assertEqual(agg.pending, 1)

        await agg.close()
        self.assertEqual((await self.store.get(RecordKind.STATS)).total_watch_seconds, 40)
        self.assertEqual(agg.pending, 0)

    async def test_flush_stamps_stats_record(self):
        agg = self.aggregator()
        await agg.record_write(None, vid(40, T0))
        self.assertEqual((await self.store.get(RecordKind.STATS)).timestamp, T0)


if __name__ == "__main__":
    unittest.main()
