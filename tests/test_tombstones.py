import unittest

from rewatch.models import RecordKind, ReplicaInfo, Tombstone, VideoRecord
from rewatch.tombstones import TombstoneManager
from tests.helpers import DAY, T0, FakeClock, make_store, video


class TestMarkDeleted(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.store = make_store(self.clock)
        self.tombstones = self.store.tombstones

    async def test_idempotent_delete_keeps_first_stamp(self):
        await self.store.put(RecordKind.VIDEO, "v1", video("v1", ts=T0 - 10))
        first = await self.store.remove(RecordKind.VIDEO, "v1")
        self.clock.advance(60)
        second = await self.store.remove(RecordKind.VIDEO, "v1")

        self.assertEqual(first.deleted_at, T0)
        self.assertEqual(second.deleted_at, T0)
        self.assertEqual(len(await self.store.get_all_tombstones()), 1)

    async def test_deleted_at_never_before_record(self):
        # Record stamped in the future by a skewed clock
        await self.store.put(RecordKind.VIDEO, "v1", video("v1", ts=T0 + 5000))
        tomb = await self.store.remove(RecordKind.VIDEO, "v1")
        self.assertGreater(tomb.deleted_at, T0 + 5000)

    async def test_delete_unknown_id_still_tombstones(self):
        tomb = await self.store.remove(RecordKind.PLAYLIST, "p-never-seen")
        self.assertEqual(tomb.deleted_at, T0)
        self.assertEqual(tomb.kind, RecordKind.PLAYLIST)


class TestSweep(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.store = make_store(self.clock, device_id="dev-a")
        self.tombstones = self.store.tombstones

    async def _tombstone(self, entity_id, age_days):
        await self.store.write_raw(
            f"deleted_video_{entity_id}",
            Tombstone(kind=RecordKind.VIDEO, entity_id=entity_id, deleted_at=T0 - age_days * DAY).to_wire(),
        )

    async def test_expired_tombstones_swept(self):
        await self._tombstone("old", 31)
        await self._tombstone("young", 5)
        swept = await self.tombstones.sweep_expired(T0)
        self.assertEqual([t.entity_id for t in swept], ["old"])
        self.assertEqual([t.entity_id for t in await self.store.get_all_tombstones()], ["young"])

    async def test_stale_replica_blocks_sweep(self):
        await self._tombstone("old", 31)
        replicas = [ReplicaInfo(device_id="dev-b", last_synced_at=T0 - 30 * DAY)]
        self.assertEqual(await self.tombstones.sweep_expired(T0, replicas), [])
        self.assertEqual(len(await self.store.get_all_tombstones()), 1)

    async def test_fresh_replica_allows_sweep(self):
        await self._tombstone("old", 31)
        replicas = [ReplicaInfo(device_id="dev-b", last_synced_at=T0 - 2 * DAY)]
        self.assertEqual(len(await self.tombstones.sweep_expired(T0, replicas)), 1)

    async def test_own_replica_entry_ignored(self):
        await self._tombstone("old", 31)
        replicas = [ReplicaInfo(device_id="dev-a", last_synced_at=T0 - 60 * DAY)]
        self.assertEqual(len(await self.tombstones.sweep_expired(T0, replicas)), 1)

    def test_prune_forgets_long_silent_replicas(self):
        replicas = [
            ReplicaInfo(device_id="gone", last_synced_at=T0 - 91 * DAY),
            ReplicaInfo(device_id="stale", last_synced_at=T0 - 40 * DAY),
        ]
        kept = self.tombstones.prune_replicas(replicas, T0)
        self.assertEqual([r.device_id for r in kept], ["stale"])


class TestWinsOver(unittest.TestCase):
    def test_equal_stamp_record_wins(self):
        tomb = Tombstone(kind=RecordKind.VIDEO, entity_id="v", deleted_at=100)
        self.assertTrue(TombstoneManager.wins_over(tomb, VideoRecord(video_id="v", timestamp=99)))
        self.assertFalse(TombstoneManager.wins_over(tomb, VideoRecord(video_id="v", timestamp=100)))


if __name__ == "__main__":
    unittest.main()
