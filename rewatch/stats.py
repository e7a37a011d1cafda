import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from typing import List, Optional

from .clock import MS_PER_SECOND, Clock
from .config import settings as default_settings
from .models import DAILY_RETENTION_DAYS, HOURS_PER_DAY, SINGLETON_ID, RecordKind, SettingsRecord, StatsRecord, VideoRecord

logger = logging.getLogger(__name__)

COMPLETION_RATIO = 0.9


def _local_datetime(ts_ms: int, tz: Optional[tzinfo] = None) -> datetime:
    # tz=None means the device's local timezone
    return datetime.fromtimestamp(ts_ms / MS_PER_SECOND, tz)


def local_day_key(ts_ms: int, tz: Optional[tzinfo] = None) -> str:
    return _local_datetime(ts_ms, tz).strftime("%Y-%m-%d")


def is_completed(record: Optional[VideoRecord]) -> bool:
    if record is None or not record.duration:
        return False
    return record.time >= record.duration * COMPLETION_RATIO


@dataclass
class WatchDelta:
    when_ms: int
    seconds: float
    is_new_video: bool = False
    is_shorts: bool = False
    duration_seconds: Optional[float] = None
    crossed_completed: bool = False


def compute_delta(previous: Optional[VideoRecord], current: VideoRecord, when_ms: int) -> Optional[WatchDelta]:
    """Watched-seconds increment between two writes of the same video. Backward seeks count as zero."""
    previous_time = previous.time if previous is not None else 0.0
    seconds = max(0.0, current.time - previous_time)
    delta = WatchDelta(
        when_ms=when_ms,
        seconds=seconds,
        is_new_video=previous is None,
        is_shorts=current.is_shorts,
        duration_seconds=current.duration,
        crossed_completed=is_completed(current) and not is_completed(previous),
    )
    if seconds <= 0 and not delta.is_new_video and not delta.crossed_completed:
        return None
    return delta


def apply_delta(stats: StatsRecord, delta: WatchDelta, now_ms: int, tz: Optional[tzinfo] = None) -> StatsRecord:
    """Folds one delta into a copy of the stats record."""
    stats = stats.model_copy(deep=True)
    when = _local_datetime(delta.when_ms, tz)
    day_key = when.strftime("%Y-%m-%d")

    if delta.seconds > 0:
        stats.total_watch_seconds = max(0, math.floor(stats.total_watch_seconds + delta.seconds))
        stats.daily[day_key] = max(0, math.floor(stats.daily.get(day_key, 0) + delta.seconds))
        if len(stats.hourly) != HOURS_PER_DAY:
            stats.hourly = [0] * HOURS_PER_DAY
        stats.hourly[when.hour] = max(0, math.floor(stats.hourly[when.hour] + delta.seconds))

    # Keep only the last 7 local days, oldest evicted first
    oldest_allowed = (when - timedelta(days=DAILY_RETENTION_DAYS - 1)).strftime("%Y-%m-%d")
    kept = sorted(k for k in stats.daily if oldest_allowed <= k)
    kept = kept[-DAILY_RETENTION_DAYS:]
    stats.daily = {k: stats.daily[k] for k in kept}

    counters = stats.counters
    if delta.is_new_video:
        counters.videos += 1
        if delta.is_shorts:
            counters.shorts += 1
        if delta.duration_seconds and math.isfinite(delta.duration_seconds):
            counters.total_duration_seconds += math.floor(delta.duration_seconds)
    if delta.crossed_completed:
        counters.completed += 1

    stats.last_updated = now_ms
    return stats


class StatsAggregator:
    """
    Derives watch-time rollups from video writes.

    Deltas are buffered in memory and written to the stats record on the sync cadence
    (or right away when immediate sync is on) to keep write volume off the sync quota.
    """

    def __init__(
        self,
        store,
        clock: Optional[Clock] = None,
        user_settings: Optional[SettingsRecord] = None,
        tz: Optional[tzinfo] = None,
        cadence_seconds: Optional[float] = None,
    ):
        self.store = store
        self.clock = clock or Clock()
        self.user_settings = user_settings or SettingsRecord()
        self.tz = tz
        self.cadence_seconds = cadence_seconds if cadence_seconds is not None else default_settings.SYNC_INTERVAL_SECONDS
        self._pending: List[WatchDelta] = []
        self._flush_task: Optional[asyncio.Task] = None
        self._flush_lock = asyncio.Lock()

    def settings_changed(self, user_settings: SettingsRecord):
        self.user_settings = user_settings

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def record_write(self, previous: Optional[VideoRecord], current: VideoRecord) -> Optional[WatchDelta]:
        delta = compute_delta(previous, current, current.timestamp or self.clock.now_ms())
        if delta is None:
            return None
        self._pending.append(delta)
        if self.user_settings.sync_immediate:
            await self.flush()
        else:
            self._schedule_flush()
        return delta

    def _schedule_flush(self):
        if self._flush_task is not None and not self._flush_task.done():
            return

        async def delayed():
            await asyncio.sleep(self.cadence_seconds)
            try:
                await self.flush()
            except Exception as e:
                logger.error(f"Deferred stats flush failed: {e}", exc_info=True)

        self._flush_task = asyncio.create_task(delayed())

    async def flush(self) -> Optional[StatsRecord]:
        async with self._flush_lock:
            if not self._pending:
                return None
            pending, self._pending = self._pending, []
            stats = await self.store.get(RecordKind.STATS)
            now_ms = self.clock.now_ms()
            for delta in pending:
                stats = apply_delta(stats, delta, now_ms, self.tz)
            try:
                stored = await self.store.put(RecordKind.STATS, SINGLETON_ID, stats.model_copy(update={"timestamp": None}))
            except Exception:
                # Keep the deltas for the next flush
                self._pending = pending + self._pending
                raise
            logger.debug(f"Flushed {len(pending)} stats delta(s), total {stored.total_watch_seconds}s")
            return stored

    async def get_stats(self) -> StatsRecord:
        stats = await self.store.get(RecordKind.STATS)
        now_ms = self.clock.now_ms()
        for delta in self._pending:
            stats = apply_delta(stats, delta, now_ms, self.tz)
        return stats

    async def close(self):
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
        self._flush_task = None
        await self.flush()
