from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

SCHEMA_VERSION = 1
DAILY_RETENTION_DAYS = 7
HOURS_PER_DAY = 24


class RecordKind(str, Enum):
    VIDEO = "video"
    PLAYLIST = "playlist"
    SETTINGS = "settings"
    STATS = "stats"


# Kinds that are deleted into tombstones; the rest are singletons.
TOMBSTONE_KINDS = (RecordKind.VIDEO, RecordKind.PLAYLIST)
SINGLETON_KINDS = (RecordKind.SETTINGS, RecordKind.STATS)
SINGLETON_ID = "singleton"


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class Record(WireModel):
    # ms since epoch of the last local modification; None until the store stamps it
    timestamp: Optional[int] = None

    @property
    def ts(self) -> int:
        return self.timestamp or 0


class VideoRecord(Record):
    video_id: str
    title: str = "Unknown Title"
    url: Optional[str] = None
    channel_name: Optional[str] = None
    time: float = 0.0  # seconds watched
    duration: Optional[float] = None
    is_shorts: bool = False


class PlaylistRecord(Record):
    playlist_id: str
    title: str = "Unknown Playlist"
    url: Optional[str] = None
    ignored: bool = False


class SettingsRecord(Record):
    auto_clean_period: int = Field(90, ge=1, le=365)  # days
    pagination_count: int = Field(10, ge=1, le=100)
    theme_preference: Literal["system", "light", "dark"] = "system"
    overlay_title: str = Field("viewed", max_length=20)
    overlay_color: Literal["blue", "red", "green", "purple", "orange"] = "blue"
    overlay_label_size: Literal["small", "medium", "large", "xlarge"] = "medium"
    pause_history_in_playlists: bool = False
    sync_enabled: bool = False
    sync_immediate: bool = False
    debug: bool = False


class StatsCounters(WireModel):
    videos: int = 0
    shorts: int = 0
    total_duration_seconds: int = 0
    completed: int = 0


class StatsRecord(Record):
    total_watch_seconds: int = 0
    daily: Dict[str, int] = Field(default_factory=dict)  # local-day key -> seconds
    hourly: List[int] = Field(default_factory=lambda: [0] * HOURS_PER_DAY)
    counters: StatsCounters = Field(default_factory=StatsCounters)
    last_updated: int = 0

    @field_validator("hourly")
    @classmethod
    def _normalize_hourly(cls, v: List[int]) -> List[int]:
        if len(v) != HOURS_PER_DAY:
            return [0] * HOURS_PER_DAY
        return v


RECORD_TYPES: Dict[RecordKind, Type[Record]] = {
    RecordKind.VIDEO: VideoRecord,
    RecordKind.PLAYLIST: PlaylistRecord,
    RecordKind.SETTINGS: SettingsRecord,
    RecordKind.STATS: StatsRecord,
}


def parse_record(kind: RecordKind, data: Any) -> Record:
    if isinstance(data, RECORD_TYPES[kind]):
        return data
    return RECORD_TYPES[kind].model_validate(data)


class Tombstone(WireModel):
    kind: RecordKind
    entity_id: str
    deleted_at: int


class RecordEntry(WireModel):
    kind: RecordKind
    id: str
    record: Dict[str, Any]

    def parsed(self) -> Record:
        return parse_record(self.kind, self.record)


class SyncEnvelope(WireModel):
    device_id: str
    last_synced_at: Optional[int] = None
    schema_version: int = SCHEMA_VERSION
    records: List[RecordEntry] = Field(default_factory=list)
    tombstones: List[Tombstone] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.records and not self.tombstones


class ReplicaInfo(WireModel):
    device_id: str
    last_synced_at: int


class SyncMeta(WireModel):
    last_synced_at: Optional[int] = None
    chunk_bytes: Optional[int] = None
    replicas: List[ReplicaInfo] = Field(default_factory=list)


class SyncState(str, Enum):
    DISABLED = "disabled"
    INITIALIZING = "initializing"
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"


class SyncStatusReport(WireModel):
    state: SyncState
    enabled: bool
    last_synced_at: Optional[int] = None
    last_error: Optional[str] = None
    retryable: bool = True


@dataclass(frozen=True)
class Snapshot:
    """Immutable view of the whole store taken at the start of a merge round."""

    records: Dict[RecordKind, Dict[str, Record]] = field(default_factory=dict)
    tombstones: Dict[RecordKind, Dict[str, Tombstone]] = field(default_factory=dict)

    def records_of(self, kind: RecordKind) -> Dict[str, Record]:
        return self.records.get(kind, {})

    def tombstones_of(self, kind: RecordKind) -> Dict[str, Tombstone]:
        return self.tombstones.get(kind, {})

    def get(self, kind: RecordKind, entity_id: str) -> Optional[Record]:
        return self.records_of(kind).get(entity_id)

    def to_envelope(self, device_id: str, last_synced_at: Optional[int]) -> SyncEnvelope:
        entries = [
            RecordEntry(kind=kind, id=entity_id, record=record.to_wire())
            for kind, by_id in self.records.items()
            for entity_id, record in by_id.items()
        ]
        tombstones = [t for by_id in self.tombstones.values() for t in by_id.values()]
        return SyncEnvelope(
            device_id=device_id,
            last_synced_at=last_synced_at,
            records=entries,
            tombstones=tombstones,
        )

    @classmethod
    def from_envelope(cls, envelope: SyncEnvelope) -> "Snapshot":
        records: Dict[RecordKind, Dict[str, Record]] = {}
        tombstones: Dict[RecordKind, Dict[str, Tombstone]] = {}
        for entry in envelope.records:
            records.setdefault(entry.kind, {})[entry.id] = entry.parsed()
        for t in envelope.tombstones:
            tombstones.setdefault(t.kind, {})[t.entity_id] = t
        return cls(records=records, tombstones=tombstones)


class ExportDocument(WireModel):
    data_version: str = "1.1"
    exported_at: Optional[int] = None
    videos: List[VideoRecord] = Field(default_factory=list)
    playlists: List[PlaylistRecord] = Field(default_factory=list)
    settings: Optional[SettingsRecord] = None
    stats: Optional[StatsRecord] = None


TOMBSTONE_PREFIX = "deleted_"


def record_key(kind: RecordKind, entity_id: str) -> str:
    if kind in SINGLETON_KINDS:
        return kind.value
    return f"{kind.value}_{entity_id}"


def tombstone_key(kind: RecordKind, entity_id: str) -> str:
    return f"{TOMBSTONE_PREFIX}{kind.value}_{entity_id}"
