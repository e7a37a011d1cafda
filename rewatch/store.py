import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple

from .clock import Clock
from .config import Settings, settings as default_settings
from .errors import BatchPersistenceError, PersistenceError
from .models import (
    SINGLETON_ID,
    SINGLETON_KINDS,
    TOMBSTONE_KINDS,
    TOMBSTONE_PREFIX,
    Record,
    RecordKind,
    SettingsRecord,
    Snapshot,
    StatsRecord,
    SyncMeta,
    Tombstone,
    parse_record,
    record_key,
    tombstone_key,
)
from .persistence import KeyValueBackend
from .tombstones import TombstoneManager

logger = logging.getLogger(__name__)

SYNC_META_KEY = "sync_meta"
ChangeListener = Callable[[RecordKind, str], None]


def parse_key(key: str) -> Optional[Tuple[bool, RecordKind, str]]:
    """Maps a storage key back to (is_tombstone, kind, id). Unknown keys yield None."""
    is_tombstone = key.startswith(TOMBSTONE_PREFIX)
    rest = key[len(TOMBSTONE_PREFIX):] if is_tombstone else key
    for kind in SINGLETON_KINDS:
        if not is_tombstone and rest == kind.value:
            return False, kind, SINGLETON_ID
    for kind in TOMBSTONE_KINDS:
        prefix = f"{kind.value}_"
        if rest.startswith(prefix) and len(rest) > len(prefix):
            return is_tombstone, kind, rest[len(prefix):]
    return None


def default_record(kind: RecordKind) -> Optional[Record]:
    # Defaults carry timestamp 0 so any real record from another device wins a merge
    if kind == RecordKind.SETTINGS:
        return SettingsRecord(timestamp=0)
    if kind == RecordKind.STATS:
        return StatsRecord(timestamp=0)
    return None


class RecordStore:
    def __init__(
        self,
        backend: KeyValueBackend,
        clock: Optional[Clock] = None,
        device_id: str = "local",
        config: Settings = default_settings,
    ):
        self.backend = backend
        self.clock = clock or Clock()
        self.config = config
        self.tombstones = TombstoneManager(self, self.clock, device_id, config)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._listeners: List[ChangeListener] = []

        # Merge window: mutations are deferred while a merge round holds the snapshot
        self._merging = False
        self._merge_lock = asyncio.Lock()
        self._pending: List[Tuple[str, RecordKind, str, Optional[Record]]] = []

    # --- listeners -------------------------------------------------------

    def add_listener(self, listener: ChangeListener):
        self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, kind: RecordKind, entity_id: str):
        for listener in list(self._listeners):
            try:
                listener(kind, entity_id)
            except Exception as e:
                logger.error(f"Error in store change listener: {e}", exc_info=True)

    # --- low level per-key access ---------------------------------------

    def lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def _retry(self, key: str, op):
        attempts = 1 + max(0, self.config.PERSIST_RETRY_ATTEMPTS)
        for attempt in range(1, attempts + 1):
            try:
                return await op()
            except PersistenceError as e:
                if attempt == attempts:
                    logger.error(f"Giving up on {key} after {attempts} attempt(s): {e}")
                    raise
                logger.warning(f"Retrying {key} after persistence error ({attempt}/{attempts}): {e}")

    async def read_raw(self, key: str):
        return await self._retry(key, lambda: self.backend.get(key))

    async def write_raw(self, key: str, value) -> None:
        await self._retry(key, lambda: self.backend.set(key, value))

    async def delete_raw(self, key: str) -> None:
        await self._retry(key, lambda: self.backend.remove(key))

    async def read_record(self, kind: RecordKind, entity_id: str) -> Optional[Record]:
        data = await self.read_raw(record_key(kind, entity_id))
        if data is None:
            return None
        return parse_record(kind, data)

    async def read_tombstone(self, kind: RecordKind, entity_id: str) -> Optional[Tombstone]:
        data = await self.read_raw(tombstone_key(kind, entity_id))
        if data is None:
            return None
        return Tombstone.model_validate(data)

    # --- public contract -------------------------------------------------

    def _pending_for(self, kind: RecordKind, entity_id: str):
        """Last queued op for a key during a merge window, so readers observe program order."""
        for op, k, i, record in reversed(self._pending):
            if k == kind and i == entity_id:
                return op, record
        return None

    async def get(self, kind: RecordKind, entity_id: str = SINGLETON_ID) -> Optional[Record]:
        if self._merging:
            pending = self._pending_for(kind, entity_id)
            if pending is not None:
                op, record = pending
                return record if op == "put" else None
        async with self.lock_for(record_key(kind, entity_id)):
            record = await self.read_record(kind, entity_id)
        if record is None:
            return default_record(kind)
        return record

    async def get_all(self, kind: RecordKind) -> Dict[str, Record]:
        if kind in SINGLETON_KINDS:
            record = await self.get(kind)
            return {SINGLETON_ID: record} if record is not None else {}

        result: Dict[str, Record] = {}
        for key, data in (await self.backend.items()).items():
            parsed = parse_key(key)
            if parsed is None or parsed[0] or parsed[1] != kind:
                continue
            try:
                result[parsed[2]] = parse_record(kind, data)
            except ValueError as e:
                logger.error(f"Skipping malformed record {key}: {e}")

        if self._merging:
            for op, k, entity_id, record in self._pending:
                if k != kind:
                    continue
                if op == "put":
                    result[entity_id] = record
                else:
                    result.pop(entity_id, None)
        return result

    async def get_all_tombstones(self, kind: Optional[RecordKind] = None) -> List[Tombstone]:
        result = []
        for key, data in (await self.backend.items()).items():
            parsed = parse_key(key)
            if parsed is None or not parsed[0]:
                continue
            if kind is not None and parsed[1] != kind:
                continue
            result.append(Tombstone.model_validate(data))
        return result

    async def put(self, kind: RecordKind, entity_id: str, record) -> Record:
        record = parse_record(kind, record)
        if record.timestamp is None:
            record = record.model_copy(update={"timestamp": self.clock.now_ms()})

        if self._merging:
            self._pending.append(("put", kind, entity_id, record))
            return record

        await self._apply_put(kind, entity_id, record)
        self._notify(kind, entity_id)
        return record

    async def _apply_put(self, kind: RecordKind, entity_id: str, record: Record):
        key = record_key(kind, entity_id)
        async with self.lock_for(key):
            await self.write_raw(key, record.to_wire())
            if kind in TOMBSTONE_KINDS:
                # A write after deletion is an undelete; keep one live representation
                await self.delete_raw(tombstone_key(kind, entity_id))

    async def put_many(self, items: List[Tuple[RecordKind, str, Record]]) -> List[Record]:
        """Writes every item independently; failed keys are reported after siblings are written."""
        written = []
        failed = []
        for kind, entity_id, record in items:
            try:
                written.append(await self.put(kind, entity_id, record))
            except PersistenceError:
                failed.append(record_key(kind, entity_id))
        if failed:
            raise BatchPersistenceError(failed)
        return written

    async def remove(self, kind: RecordKind, entity_id: str) -> Optional[Tombstone]:
        if kind not in TOMBSTONE_KINDS:
            raise ValueError(f"{kind.value} records cannot be deleted")

        if self._merging:
            self._pending.append(("remove", kind, entity_id, None))
            return None

        tombstone, created = await self.tombstones.delete(kind, entity_id)
        if created:
            self._notify(kind, entity_id)
        return tombstone

    async def clear_history_only(self):
        """Drops video and playlist records with their tombstones. Settings and stats survive."""
        removed = 0
        for key in list((await self.backend.items()).keys()):
            parsed = parse_key(key)
            if parsed is None or parsed[1] not in TOMBSTONE_KINDS:
                continue
            async with self.lock_for(key):
                await self.delete_raw(key)
            removed += 1
        logger.info(f"Cleared {removed} history entries")
        if removed:
            self._notify(RecordKind.VIDEO, "*")
        return removed

    async def clear(self):
        await self.backend.clear()
        logger.info("Cleared all stored data")
        self._notify(RecordKind.SETTINGS, SINGLETON_ID)

    # --- snapshots and merge window -------------------------------------

    async def snapshot(self) -> Snapshot:
        records: Dict[RecordKind, Dict[str, Record]] = {}
        tombstones: Dict[RecordKind, Dict[str, Tombstone]] = {}
        for key, data in (await self.backend.items()).items():
            parsed = parse_key(key)
            if parsed is None:
                continue
            is_tombstone, kind, entity_id = parsed
            try:
                if is_tombstone:
                    tombstones.setdefault(kind, {})[entity_id] = Tombstone.model_validate(data)
                else:
                    records.setdefault(kind, {})[entity_id] = parse_record(kind, data)
            except ValueError as e:
                logger.error(f"Skipping malformed entry {key}: {e}")

        # An interrupted delete or undelete can leave both; resolve it the way merge does
        for kind in TOMBSTONE_KINDS:
            for entity_id in list(tombstones.get(kind, {}).keys()):
                record = records.get(kind, {}).get(entity_id)
                if record is None:
                    continue
                if self.tombstones.wins_over(tombstones[kind][entity_id], record):
                    del records[kind][entity_id]
                else:
                    del tombstones[kind][entity_id]
        return Snapshot(records=records, tombstones=tombstones)

    @asynccontextmanager
    async def merge_window(self) -> AsyncIterator[Snapshot]:
        """
        Takes an immutable snapshot and defers every mutation until the block exits.
        Deferred writes are replayed afterwards, in order, on top of the committed merge.
        A second window (an import during a sync round) waits for the first to close.
        """
        async with self._merge_lock:
            self._merging = True
            try:
                yield await self.snapshot()
            finally:
                self._merging = False
                pending, self._pending = self._pending, []
                if pending:
                    logger.debug(f"Replaying {len(pending)} write(s) deferred during merge")
                for op, kind, entity_id, record in pending:
                    try:
                        if op == "put":
                            await self.put(kind, entity_id, record)
                        else:
                            await self.remove(kind, entity_id)
                    except PersistenceError as e:
                        logger.error(f"Failed to replay deferred {op} for {kind.value} {entity_id}: {e}")

    async def apply_snapshot(self, before: Snapshot, after: Snapshot) -> List[str]:
        """
        Persists the difference between two snapshots key by key.
        Returns the keys that failed; siblings are still written.
        """
        failed = []

        async def attempt(key: str, coro_factory):
            try:
                async with self.lock_for(key):
                    await coro_factory()
            except PersistenceError:
                failed.append(key)

        kinds = set(before.records) | set(after.records) | set(before.tombstones) | set(after.tombstones)
        for kind in kinds:
            old, new = before.records_of(kind), after.records_of(kind)
            for entity_id, record in new.items():
                prev = old.get(entity_id)
                if prev is None or prev.to_wire() != record.to_wire():
                    key = record_key(kind, entity_id)
                    await attempt(key, lambda key=key, record=record: self.write_raw(key, record.to_wire()))
            for entity_id in old.keys() - new.keys():
                key = record_key(kind, entity_id)
                await attempt(key, lambda key=key: self.delete_raw(key))

            old_t, new_t = before.tombstones_of(kind), after.tombstones_of(kind)
            for entity_id, tomb in new_t.items():
                prev = old_t.get(entity_id)
                if prev is None or prev.deleted_at != tomb.deleted_at:
                    key = tombstone_key(kind, entity_id)
                    await attempt(key, lambda key=key, tomb=tomb: self.write_raw(key, tomb.to_wire()))
            for entity_id in old_t.keys() - new_t.keys():
                key = tombstone_key(kind, entity_id)
                await attempt(key, lambda key=key: self.delete_raw(key))

        if failed:
            logger.error(f"Merge commit failed for {len(failed)} key(s): {failed}")
        return failed

    # --- sync bookkeeping -----------------------------------------------

    async def load_sync_meta(self) -> SyncMeta:
        try:
            data = await self.read_raw(SYNC_META_KEY)
        except PersistenceError as e:
            logger.error(f"Failed to load sync metadata: {e}. Starting fresh.")
            return SyncMeta()
        return SyncMeta.model_validate(data) if data else SyncMeta()

    async def save_sync_meta(self, meta: SyncMeta):
        await self.write_raw(SYNC_META_KEY, meta.to_wire())
