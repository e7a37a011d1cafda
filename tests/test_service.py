import logging
import unittest
from datetime import timezone

from pydantic import ValidationError

from rewatch.errors import ImportValidationError, SyncDisabledError
from rewatch.models import RecordKind, ReplicaInfo, SyncMeta, SyncState, Tombstone, tombstone_key
from rewatch.service import WatchHistoryService
from rewatch.transport import MemorySyncArea
from tests.helpers import DAY, T0, FakeClock, make_config, make_store


class ServiceTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.config = make_config()
        self.area = MemorySyncArea()
        self.services = []

    async def make_service(self, device_id="dev-a", start=True):
        store = make_store(self.clock, device_id, self.config)
        service = WatchHistoryService(store, self.area, device_id, self.clock, self.config, tz=timezone.utc)
        self.services.append(service)
        if start:
            await service.start()
        return service

    async def asyncTearDown(self):
        for service in self.services:
            await service.scheduler.drain()
            await service.stop()
        logging.getLogger("rewatch").setLevel(logging.NOTSET)


class TestRecordProgress(ServiceTestCase):
    async def test_creates_and_merges_partial(self):
        service = await self.make_service()
        await service.record_progress("v1", {"time": 30, "title": "Intro", "duration": 600})
        self.clock.advance(10)
        stored = await service.record_progress("v1", {"time": 45})

        self.assertEqual(stored.title, "Intro")
        self.assertEqual(stored.time, 45)
        self.assertEqual(stored.duration, 600)
        self.assertEqual(stored.timestamp, T0 + 10_000)

    async def test_zero_time_skipped(self):
        service = await self.make_service()
        self.assertIsNone(await service.record_progress("v1", {"time": 0}))
        self.assertIsNone(await service.get_video("v1"))

    async def test_end_of_video_clamped(self):
        service = await self.make_service()
        stored = await service.record_progress("v1", {"time": 595, "duration": 600})
        self.assertEqual(stored.time, 590)
        short = await service.record_progress("v2", {"time": 4, "duration": 5})
        self.assertEqual(short.time, 0)

    async def test_paused_in_ignored_playlist(self):
        service = await self.make_service()
        await service.set_settings({"pauseHistoryInPlaylists": True})
        await service.record_playlist("PL1", {"title": "Lectures", "ignored": True})

        self.assertIsNone(await service.record_progress("v1", {"time": 20}, playlist_id="PL1"))
        self.assertIsNotNone(await service.record_progress("v1", {"time": 20}, playlist_id="PL2"))

    async def test_stats_follow_progress(self):
        service = await self.make_service()
        await service.record_progress("v1", {"time": 120})
        await service.record_progress("v1", {"time": 150})
        stats = await service.get_stats()
        self.assertEqual(stats.daily["2024-03-10"], 150)
        self.assertEqual(stats.counters.videos, 1)

    async def test_delete_video(self):
        service = await self.make_service()
        await service.record_progress("v1", {"time": 20})
        self.clock.advance(1)
        tomb = await service.delete_video("v1")
        self.assertEqual(tomb.deleted_at, T0 + 1000)
        self.assertEqual(await service.get_all_videos(), {})


class TestSettings(ServiceTestCase):
    async def test_defaults_persisted_on_start(self):
        service = await self.make_service()
        self.assertIsNotNone(await service.store.read_record(RecordKind.SETTINGS, "singleton"))
        self.assertEqual((await service.get_settings()).auto_clean_period, 90)

    async def test_out_of_range_rejected(self):
        service = await self.make_service()
        with self.assertRaises(ValidationError):
            await service.set_settings({"paginationCount": 500})
        with self.assertRaises(ValidationError):
            await service.set_settings({"overlayTitle": "x" * 21})
        self.assertEqual((await service.get_settings()).pagination_count, 10)

    async def test_debug_raises_log_level(self):
        service = await self.make_service()
        await service.set_settings({"debug": True})
        self.assertEqual(logging.getLogger("rewatch").level, logging.DEBUG)

    async def test_enabling_sync_runs_first_round(self):
        service = await self.make_service()
        with self.assertRaises(SyncDisabledError):
            await service.trigger_full_sync()
        await service.set_settings({"syncEnabled": True})
        self.assertEqual(service.get_sync_status().state, SyncState.SUCCESS)
        self.assertIn("manifest", self.area.data)


class TestHousekeeping(ServiceTestCase):
    async def test_auto_clean_removes_old_videos(self):
        service = await self.make_service()
        await service.store.put(RecordKind.VIDEO, "old", {"videoId": "old", "time": 5, "timestamp": T0 - 91 * DAY})
        await service.store.put(RecordKind.VIDEO, "new", {"videoId": "new", "time": 5, "timestamp": T0 - DAY})
        self.assertEqual(await service.auto_clean(), 1)
        self.assertEqual(set(await service.get_all_videos()), {"new"})
        self.assertEqual([t.entity_id for t in await service.store.get_all_tombstones()], ["old"])

    async def seed_expired_tombstone(self, service, replica_synced_at):
        old = Tombstone(kind=RecordKind.VIDEO, entity_id="gone", deleted_at=T0 - 31 * DAY)
        await service.store.write_raw(tombstone_key(RecordKind.VIDEO, "gone"), old.to_wire())
        await service.store.save_sync_meta(SyncMeta(
            last_synced_at=T0 - DAY,
            replicas=[
                ReplicaInfo(device_id="dev-a", last_synced_at=T0 - DAY),
                ReplicaInfo(device_id="dev-b", last_synced_at=replica_synced_at),
            ],
        ))

    async def test_startup_sweep_held_by_stale_replica(self):
        service = await self.make_service(start=False)
        await self.seed_expired_tombstone(service, T0 - 30 * DAY)
        await service.start()

        self.assertEqual([r.device_id for r in service.scheduler.known_replicas()], ["dev-a", "dev-b"])
        self.assertEqual(len(await service.store.get_all_tombstones()), 1)

    async def test_startup_sweep_with_fresh_replicas(self):
        service = await self.make_service(start=False)
        await self.seed_expired_tombstone(service, T0 - DAY)
        await service.start()
        self.assertEqual(await service.store.get_all_tombstones(), [])

    async def test_clear_history_only(self):
        service = await self.make_service()
        await service.set_settings({"paginationCount": 30})
        await service.record_progress("v1", {"time": 20})
        await service.clear_history_only()
        self.assertEqual(await service.get_all_videos(), {})
        self.assertEqual((await service.get_settings()).pagination_count, 30)

    async def test_clear_resets_settings(self):
        service = await self.make_service()
        await service.set_settings({"paginationCount": 30})
        await service.clear()
        self.assertEqual((await service.get_settings()).pagination_count, 10)


class TestExportImport(ServiceTestCase):
    async def test_export_then_import_elsewhere(self):
        source = await self.make_service("dev-a")
        await source.record_progress("v1", {"time": 20, "title": "One"})
        await source.record_playlist("PL1", {"title": "List"})
        document = await source.export_all()
        self.assertEqual(document["dataVersion"], "1.1")
        self.assertIn("stats", document)

        target = await self.make_service("dev-b")
        summary = await target.import_all(document)
        self.assertEqual(summary["added"], 2)
        self.assertEqual((await target.get_video("v1")).title, "One")
        self.assertIn("PL1", await target.get_all_playlists())

    async def test_import_does_not_override_newer_local(self):
        service = await self.make_service()
        await service.record_progress("v1", {"time": 99})
        document = {"dataVersion": "1.1", "videos": [{"videoId": "v1", "time": 5, "timestamp": T0 - 1000}]}
        await service.import_all(document)
        self.assertEqual((await service.get_video("v1")).time, 99)

    async def test_import_legacy_list(self):
        service = await self.make_service()
        await service.import_all([{"videoId": "v1", "time": 12, "timestamp": T0 - 5}])
        self.assertEqual((await service.get_video("v1")).time, 12)

    async def test_invalid_import_writes_nothing(self):
        service = await self.make_service()
        bad = {"dataVersion": "1.1", "videos": [{"videoId": "v1", "time": 5}, {"time": 3}]}
        with self.assertRaises(ImportValidationError):
            await service.import_all(bad)
        self.assertEqual(await service.get_all_videos(), {})

        with self.assertRaises(ImportValidationError):
            await service.import_all({"dataVersion": "2.0", "videos": []})

    async def test_import_replace_deletes_missing(self):
        service = await self.make_service()
        await service.record_progress("keep", {"time": 10})
        await service.record_progress("drop", {"time": 10})
        self.clock.advance(1)
        await service.import_all({"dataVersion": "1.1", "videos": [{"videoId": "keep", "time": 10}]}, replace=True)
        self.assertEqual(set(await service.get_all_videos()), {"keep"})

    async def test_imported_settings_keep_local_sync_switches(self):
        service = await self.make_service()
        self.clock.advance(1)
        await service.import_all({"dataVersion": "1.1", "settings": {"paginationCount": 42, "syncEnabled": True}})
        user_settings = await service.get_settings()
        self.assertEqual(user_settings.pagination_count, 42)
        self.assertFalse(user_settings.sync_enabled)
        self.assertEqual(service.user_settings.pagination_count, 42)


class TestTwoDevices(ServiceTestCase):
    async def test_delete_propagates(self):
        a = await self.make_service("dev-a")
        b = await self.make_service("dev-b")
        await a.set_settings({"syncEnabled": True})
        await b.set_settings({"syncEnabled": True})

        await a.record_progress("v1", {"time": 20})
        await a.trigger_full_sync()
        await b.trigger_full_sync()
        self.assertIsNotNone(await b.get_video("v1"))

        self.clock.advance(5)
        await b.delete_video("v1")
        await b.trigger_full_sync()
        await a.trigger_full_sync()
        self.assertIsNone(await a.get_video("v1"))


if __name__ == "__main__":
    unittest.main()
