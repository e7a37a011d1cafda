import logging
from typing import TYPE_CHECKING, Iterable, List, Optional, Tuple

from .clock import MS_PER_DAY, Clock
from .config import Settings
from .models import TOMBSTONE_KINDS, Record, RecordKind, ReplicaInfo, Tombstone, record_key, tombstone_key

if TYPE_CHECKING:
    from .store import RecordStore

logger = logging.getLogger(__name__)


class TombstoneManager:
    """
    Owns deletion markers for video and playlist records.

    A tombstone must outlive every replica's potential staleness window: it is only
    swept once it is past retention and no known remote replica is stale.
    """

    def __init__(self, store: "RecordStore", clock: Clock, device_id: str, config: Settings):
        self.store = store
        self.clock = clock
        self.device_id = device_id
        self.config = config

    @property
    def retention_ms(self) -> int:
        return self.config.TOMBSTONE_RETENTION_DAYS * MS_PER_DAY

    @property
    def stale_ms(self) -> int:
        return self.config.STALE_THRESHOLD_DAYS * MS_PER_DAY

    @staticmethod
    def wins_over(tombstone: Tombstone, record: Record) -> bool:
        # Equal stamps mean the record was written after the deletion was issued
        return record.ts < tombstone.deleted_at

    def is_expired(self, tombstone: Tombstone, now_ms: int) -> bool:
        return now_ms - tombstone.deleted_at > self.retention_ms

    def stale_replicas(self, replicas: Iterable[ReplicaInfo], now_ms: int) -> List[ReplicaInfo]:
        return [
            r for r in replicas
            if r.device_id != self.device_id and now_ms - r.last_synced_at > self.stale_ms
        ]

    def sweep_allowed(self, replicas: Iterable[ReplicaInfo], now_ms: int) -> bool:
        stale = self.stale_replicas(replicas, now_ms)
        if stale:
            ids = ", ".join(r.device_id for r in stale)
            logger.info(f"Holding expired tombstones: replica(s) {ids} have not synced in {self.config.STALE_THRESHOLD_DAYS}+ days")
            return False
        return True

    def prune_replicas(self, replicas: Iterable[ReplicaInfo], now_ms: int) -> List[ReplicaInfo]:
        """Forgets replicas silent for longer than the forget window; they reset to remote state on return."""
        forget_ms = self.config.REPLICA_FORGET_DAYS * MS_PER_DAY
        kept = []
        for r in replicas:
            if now_ms - r.last_synced_at > forget_ms:
                logger.info(f"Forgetting replica {r.device_id}, last synced {(now_ms - r.last_synced_at) // MS_PER_DAY} days ago")
                continue
            kept.append(r)
        return kept

    async def mark_deleted(self, kind: RecordKind, entity_id: str) -> Tombstone:
        """
        Replaces the active record with a tombstone stamped now.
        Repeat deletes keep the first stamp and are no-ops.
        """
        tombstone, _ = await self.delete(kind, entity_id)
        return tombstone

    async def delete(self, kind: RecordKind, entity_id: str) -> Tuple[Tombstone, bool]:
        """Like mark_deleted, also reporting whether a new tombstone was written."""
        if kind not in TOMBSTONE_KINDS:
            raise ValueError(f"{kind.value} records cannot be tombstoned")

        key = record_key(kind, entity_id)
        async with self.store.lock_for(key):
            record = await self.store.read_record(kind, entity_id)
            existing = await self.store.read_tombstone(kind, entity_id)

            if existing is not None and (record is None or self.wins_over(existing, record)):
                if record is not None:
                    await self.store.delete_raw(key)
                logger.debug(f"{kind.value} {entity_id} already deleted at {existing.deleted_at}")
                return existing, False

            deleted_at = self.clock.now_ms()
            if record is not None:
                # Strictly after the record so the deletion beats it under the merge rules
                deleted_at = max(deleted_at, record.ts + 1)
            tombstone = Tombstone(kind=kind, entity_id=entity_id, deleted_at=deleted_at)

            # Tombstone first: a failure in between leaves both, which snapshot() resolves
            await self.store.write_raw(tombstone_key(kind, entity_id), tombstone.to_wire())
            if record is not None:
                await self.store.delete_raw(key)
        logger.info(f"Deleted {kind.value} {entity_id}")
        return tombstone, True

    async def sweep_expired(self, now_ms: Optional[int] = None, replicas: Iterable[ReplicaInfo] = ()) -> List[Tombstone]:
        now_ms = now_ms if now_ms is not None else self.clock.now_ms()
        expired = [t for t in await self.store.get_all_tombstones() if self.is_expired(t, now_ms)]
        if not expired:
            return []
        if not self.sweep_allowed(replicas, now_ms):
            return []

        swept = []
        for t in expired:
            key = tombstone_key(t.kind, t.entity_id)
            async with self.store.lock_for(key):
                await self.store.delete_raw(key)
            swept.append(t)
        logger.info(f"Swept {len(swept)} expired tombstone(s)")
        return swept
