import logging
from datetime import tzinfo
from typing import Any, Dict, Optional

from .clock import MS_PER_DAY, Clock
from .config import Settings, settings as default_settings
from .exchange import build_export, document_to_snapshot, parse_import
from .merge import MergeEngine
from .models import (
    SINGLETON_ID,
    PlaylistRecord,
    RecordKind,
    SettingsRecord,
    StatsRecord,
    SyncStatusReport,
    Tombstone,
    VideoRecord,
)
from .scheduler import SyncScheduler
from .stats import StatsAggregator
from .store import RecordStore
from .timer import Timer
from .transport import SyncTransport

logger = logging.getLogger(__name__)

# Progress inside the last seconds of a video is saved this far from the end,
# so reopening it does not land on the end screen
END_MARGIN_SECONDS = 10


class WatchHistoryService:
    """Entry point for the tracking adapter and the UI. Owns the store, aggregator and scheduler."""

    def __init__(
        self,
        store: RecordStore,
        transport: SyncTransport,
        device_id: str,
        clock: Optional[Clock] = None,
        config: Settings = default_settings,
        tz: Optional[tzinfo] = None,
    ):
        self.store = store
        self.transport = transport
        self.device_id = device_id
        self.clock = clock or store.clock
        self.config = config
        self.user_settings = SettingsRecord()
        self.merge_engine = MergeEngine(store.tombstones, config)
        self.stats = StatsAggregator(
            store,
            self.clock,
            self.user_settings,
            tz=tz,
            cadence_seconds=config.SYNC_INTERVAL_SECONDS,
        )
        self.scheduler = SyncScheduler(
            store,
            transport,
            device_id,
            merge_engine=self.merge_engine,
            clock=self.clock,
            user_settings=self.user_settings,
            stats=self.stats,
            config=config,
            on_settings_merged=self._apply_settings,
        )
        self.housekeeping_timer = Timer(config.TOMBSTONE_SWEEP_INTERVAL_SECONDS, self.housekeeping, name="housekeeping")

    # --- lifecycle -------------------------------------------------------

    async def start(self):
        for kind in (RecordKind.SETTINGS, RecordKind.STATS):
            if await self.store.read_record(kind, SINGLETON_ID) is None:
                await self.store.put(kind, SINGLETON_ID, await self.store.get(kind))
        self._load_settings(await self.store.get(RecordKind.SETTINGS))
        # Replicas come from the stored sync meta; the first sweep must see them
        await self.scheduler.start()
        await self.housekeeping()
        self.housekeeping_timer.start()
        logger.info(f"Watch history service started (device {self.device_id})")

    async def stop(self):
        await self.housekeeping_timer.stop()
        await self.scheduler.stop()
        await self.stats.close()
        logger.info("Watch history service stopped")

    def _load_settings(self, user_settings: SettingsRecord):
        self.user_settings = user_settings
        self.stats.settings_changed(user_settings)
        self.scheduler.user_settings = user_settings
        logging.getLogger("rewatch").setLevel(logging.DEBUG if user_settings.debug else logging.NOTSET)

    async def _apply_settings(self, user_settings: SettingsRecord):
        self._load_settings(user_settings)
        await self.scheduler.settings_changed(user_settings)

    async def housekeeping(self):
        await self.auto_clean()
        await self.store.tombstones.sweep_expired(replicas=self.scheduler.known_replicas())

    # --- adapter surface -------------------------------------------------

    async def record_progress(
        self,
        video_id: str,
        partial: Dict[str, Any],
        playlist_id: Optional[str] = None,
    ) -> Optional[VideoRecord]:
        """
        Merges a progress update onto the stored video.
        Returns None when the update is dropped (time 0, or the playlist is paused).
        """
        update = VideoRecord.model_validate({**partial, "videoId": video_id}).model_dump(exclude_unset=True)
        update.pop("timestamp", None)
        if "time" in update and not update["time"]:
            logger.debug(f"Skipping zero progress for video {video_id}")
            return None

        if playlist_id and self.user_settings.pause_history_in_playlists:
            playlist = await self.store.get(RecordKind.PLAYLIST, playlist_id)
            if playlist is not None and playlist.ignored:
                logger.debug(f"History paused for playlist {playlist_id}, ignoring {video_id}")
                return None

        previous = await self.store.get(RecordKind.VIDEO, video_id)
        base = previous.model_dump() if previous is not None else {}
        record = VideoRecord.model_validate({**base, **update, "timestamp": None})

        if record.duration and record.time > record.duration - END_MARGIN_SECONDS:
            clamped = max(0.0, record.duration - END_MARGIN_SECONDS)
            logger.debug(f"Progress {record.time} of {video_id} is within the last {END_MARGIN_SECONDS}s, saving {clamped}")
            record = record.model_copy(update={"time": clamped})

        stored = await self.store.put(RecordKind.VIDEO, video_id, record)
        await self.stats.record_write(previous, stored)
        return stored

    async def record_playlist(self, playlist_id: str, partial: Dict[str, Any]) -> PlaylistRecord:
        update = PlaylistRecord.model_validate({**partial, "playlistId": playlist_id}).model_dump(exclude_unset=True)
        update.pop("timestamp", None)
        previous = await self.store.get(RecordKind.PLAYLIST, playlist_id)
        base = previous.model_dump() if previous is not None else {}
        record = PlaylistRecord.model_validate({**base, **update, "timestamp": None})
        return await self.store.put(RecordKind.PLAYLIST, playlist_id, record)

    async def get_video(self, video_id: str) -> Optional[VideoRecord]:
        return await self.store.get(RecordKind.VIDEO, video_id)

    async def get_all_videos(self) -> Dict[str, VideoRecord]:
        return await self.store.get_all(RecordKind.VIDEO)

    async def get_all_playlists(self) -> Dict[str, PlaylistRecord]:
        return await self.store.get_all(RecordKind.PLAYLIST)

    async def delete_video(self, video_id: str) -> Optional[Tombstone]:
        return await self.store.remove(RecordKind.VIDEO, video_id)

    async def delete_playlist(self, playlist_id: str) -> Optional[Tombstone]:
        return await self.store.remove(RecordKind.PLAYLIST, playlist_id)

    async def get_settings(self) -> SettingsRecord:
        return await self.store.get(RecordKind.SETTINGS)

    async def set_settings(self, patch: Dict[str, Any]) -> SettingsRecord:
        changes = SettingsRecord.model_validate(patch).model_dump(exclude_unset=True)
        changes.pop("timestamp", None)
        current = await self.store.get(RecordKind.SETTINGS)
        record = SettingsRecord.model_validate({**current.model_dump(), **changes, "timestamp": None})
        stored = await self.store.put(RecordKind.SETTINGS, SINGLETON_ID, record)
        logger.info(f"Settings updated: {sorted(changes)}")
        await self._apply_settings(stored)
        return stored

    async def get_stats(self) -> StatsRecord:
        return await self.stats.get_stats()

    # --- UI surface ------------------------------------------------------

    async def trigger_full_sync(self):
        return await self.scheduler.trigger_full_sync()

    def get_sync_status(self) -> SyncStatusReport:
        return self.scheduler.get_sync_status()

    async def export_all(self) -> Dict[str, Any]:
        videos = await self.get_all_videos()
        playlists = await self.get_all_playlists()
        document = build_export(
            list(videos.values()),
            list(playlists.values()),
            await self.get_settings(),
            await self.get_stats(),
            self.clock.now_ms(),
        )
        logger.info(f"Exported {len(videos)} videos and {len(playlists)} playlists")
        return document

    async def import_all(self, document: Any, replace: bool = False) -> Dict[str, int]:
        """
        Merges an export document into the store under the sync merge rules.
        With replace, local videos and playlists missing from the document are deleted first.
        The document is fully validated before anything is written.
        """
        parsed = parse_import(document)
        now_ms = self.clock.now_ms()
        remote = document_to_snapshot(parsed, now_ms, local_settings=self.user_settings)

        removed = 0
        if replace:
            for kind in (RecordKind.VIDEO, RecordKind.PLAYLIST):
                keep = remote.records_of(kind)
                for entity_id in list((await self.store.get_all(kind)).keys()):
                    if entity_id not in keep:
                        await self.store.remove(kind, entity_id)
                        removed += 1

        async with self.store.merge_window() as local:
            result = self.merge_engine.merge(local, remote, now_ms)
            failed = await self.store.apply_snapshot(local, result.snapshot)

        if RecordKind.SETTINGS in result.changed_kinds:
            await self._apply_settings(await self.store.get(RecordKind.SETTINGS))
        self.scheduler.schedule_round("import", full=True)

        summary = {
            "videos": len(parsed.videos),
            "playlists": len(parsed.playlists),
            "added": result.added,
            "updated": result.updated,
            "undeleted": result.undeleted,
            "removed": removed,
            "failed": len(failed),
        }
        logger.info(f"Imported document {parsed.data_version}: {summary}")
        return summary

    async def auto_clean(self, now_ms: Optional[int] = None) -> int:
        """Deletes videos not touched within the autoCleanPeriod."""
        now_ms = now_ms if now_ms is not None else self.clock.now_ms()
        cutoff = now_ms - self.user_settings.auto_clean_period * MS_PER_DAY
        removed = 0
        for video_id, record in (await self.get_all_videos()).items():
            if record.ts < cutoff:
                await self.store.remove(RecordKind.VIDEO, video_id)
                removed += 1
        if removed:
            logger.info(f"Auto-clean removed {removed} video(s) older than {self.user_settings.auto_clean_period} days")
        return removed

    async def clear_history_only(self) -> int:
        return await self.store.clear_history_only()

    async def clear(self):
        await self.stats.close()
        await self.store.clear()
        await self.store.put(RecordKind.SETTINGS, SINGLETON_ID, SettingsRecord(timestamp=0))
        await self.store.put(RecordKind.STATS, SINGLETON_ID, StatsRecord(timestamp=0))
        await self._apply_settings(await self.store.get(RecordKind.SETTINGS))

    async def metrics(self) -> Dict[str, Any]:
        status = self.get_sync_status()
        return {
            "videos": len(await self.get_all_videos()),
            "playlists": len(await self.get_all_playlists()),
            "tombstones": len(await self.store.get_all_tombstones()),
            "sync_rounds": self.scheduler.rounds,
            "last_synced_at": status.last_synced_at or 0,
            "sync_enabled": int(status.enabled),
            "pending_stats_deltas": self.stats.pending,
        }
