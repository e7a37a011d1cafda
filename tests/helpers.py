from datetime import datetime, timezone

from rewatch.clock import MS_PER_DAY, MS_PER_SECOND
from rewatch.config import Settings
from rewatch.persistence import MemoryBackend
from rewatch.store import RecordStore

# 2024-03-10 12:00:00 UTC
T0 = int(datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc).timestamp() * MS_PER_SECOND)
DAY = MS_PER_DAY


class FakeClock:
    def __init__(self, now_ms: int = T0):
        self.now = now_ms
        self.mono = 1000.0

    def now_ms(self) -> int:
        return self.now

    def monotonic(self) -> float:
        return self.mono

    def advance(self, seconds: float):
        self.now += int(seconds * MS_PER_SECOND)
        self.mono += seconds


def make_config(**overrides) -> Settings:
    values = dict(
        PERSIST_RETRY_ATTEMPTS=0,
        LISTENER_TRIGGER_DELAY_SECONDS=0,
        SYNC_TRANSPORT="memory",
        HTTP_SERVER_TOKEN=None,
    )
    values.update(overrides)
    return Settings(**values)


def make_store(clock=None, device_id="dev-a", config=None, backend=None):
    return RecordStore(backend or MemoryBackend(), clock or FakeClock(), device_id, config or make_config())


def video(video_id, ts, time=30.0, **fields):
    return {"videoId": video_id, "time": time, "timestamp": ts, **fields}
