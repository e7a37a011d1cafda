import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple, Union

from .clock import MS_PER_DAY
from .config import Settings, settings as default_settings
from .models import (
    SINGLETON_ID,
    SINGLETON_KINDS,
    TOMBSTONE_KINDS,
    Record,
    RecordKind,
    Snapshot,
    StatsRecord,
    SyncEnvelope,
    Tombstone,
)
from .tombstones import TombstoneManager

logger = logging.getLogger(__name__)

# Per-id state on one side: an active record, a tombstone, or nothing
Entry = Union[Record, Tombstone, None]


@dataclass
class MergeResult:
    snapshot: Snapshot
    # (kind, id) pairs where the remote copy is missing or behind the merged state
    to_push: List[Tuple[RecordKind, str]] = field(default_factory=list)
    added: int = 0
    updated: int = 0
    deleted: int = 0
    undeleted: int = 0
    local_wins: int = 0
    remote_wins: int = 0
    swept: int = 0
    stale_local: bool = False
    # kinds whose local state differs after the merge
    changed_kinds: Set[RecordKind] = field(default_factory=set)


def _wire(entry: Entry):
    return entry.to_wire() if entry is not None else None


class MergeEngine:
    """
    Record-level last-write-wins merge between a local snapshot and a remote envelope.

    Rules per (kind, id):
      tombstone vs record: the tombstone wins when record.timestamp < deletedAt,
        otherwise the record wins and the tombstone is discarded (undelete by newer edit)
      record vs record: larger timestamp wins, ties go to the local copy
      tombstone vs tombstone: larger deletedAt is kept
    Settings and stats are singletons merged wholesale; stats keep the larger
    totalWatchSeconds of the two sides.
    """

    def __init__(self, tombstones: TombstoneManager, config: Settings = default_settings):
        self.tombstones = tombstones
        self.config = config

    def merge(
        self,
        local: Snapshot,
        remote: Union[SyncEnvelope, Snapshot, None],
        now_ms: int,
        last_synced_at: Optional[int] = None,
        sweep_allowed: bool = False,
    ) -> MergeResult:
        remote_snapshot = remote if isinstance(remote, Snapshot) else (
            Snapshot.from_envelope(remote) if remote is not None else Snapshot()
        )
        result = MergeResult(snapshot=Snapshot())

        stale_local = (
            last_synced_at is not None
            and now_ms - last_synced_at >= self.config.STALE_THRESHOLD_DAYS * MS_PER_DAY
            and bool(remote_snapshot.records or remote_snapshot.tombstones)
        )
        if stale_local:
            logger.warning(
                f"Local data is stale ({(now_ms - last_synced_at) // MS_PER_DAY} days since last sync). "
                "Replacing local history and tombstones with remote."
            )
            result.stale_local = True

        records: Dict[RecordKind, Dict[str, Record]] = {}
        tombstones: Dict[RecordKind, Dict[str, Tombstone]] = {}

        for kind in TOMBSTONE_KINDS:
            ids = (
                set(local.records_of(kind)) | set(local.tombstones_of(kind))
                | set(remote_snapshot.records_of(kind)) | set(remote_snapshot.tombstones_of(kind))
            )
            for entity_id in sorted(ids):
                local_entry = self._entry(local, kind, entity_id)
                remote_entry = self._entry(remote_snapshot, kind, entity_id)

                if stale_local:
                    merged = remote_entry
                else:
                    merged = self._resolve(local_entry, remote_entry, result)

                if isinstance(merged, Tombstone) and sweep_allowed and self.tombstones.is_expired(merged, now_ms):
                    result.swept += 1
                    merged = None

                self._account(kind, entity_id, local_entry, remote_entry, merged, result)
                if isinstance(merged, Tombstone):
                    tombstones.setdefault(kind, {})[entity_id] = merged
                elif merged is not None:
                    records.setdefault(kind, {})[entity_id] = merged

        for kind in SINGLETON_KINDS:
            local_record = local.get(kind, SINGLETON_ID)
            remote_record = remote_snapshot.get(kind, SINGLETON_ID)
            merged = self._resolve(local_record, remote_record, result)
            if kind == RecordKind.STATS and local_record is not None and remote_record is not None:
                merged = self._merge_stats(merged, local_record, remote_record)
            self._account(kind, SINGLETON_ID, local_record, remote_record, merged, result)
            if merged is not None:
                records.setdefault(kind, {})[SINGLETON_ID] = merged

        result.snapshot = Snapshot(records=records, tombstones=tombstones)
        logger.debug(
            f"Merge: +{result.added} ~{result.updated} -{result.deleted} undeleted={result.undeleted} "
            f"local_wins={result.local_wins} remote_wins={result.remote_wins} to_push={len(result.to_push)}"
        )
        return result

    @staticmethod
    def _entry(snapshot: Snapshot, kind: RecordKind, entity_id: str) -> Entry:
        record = snapshot.records_of(kind).get(entity_id)
        tomb = snapshot.tombstones_of(kind).get(entity_id)
        if record is not None and tomb is not None:
            return tomb if TombstoneManager.wins_over(tomb, record) else record
        return record if record is not None else tomb

    def _resolve(self, local: Entry, remote: Entry, result: MergeResult) -> Entry:
        if remote is None:
            return local
        if local is None:
            return remote

        # 1. Tombstone against active record
        if isinstance(local, Tombstone) and isinstance(remote, Record):
            if self.tombstones.wins_over(local, remote):
                result.local_wins += 1
                return local
            result.remote_wins += 1
            return remote
        if isinstance(local, Record) and isinstance(remote, Tombstone):
            if self.tombstones.wins_over(remote, local):
                result.remote_wins += 1
                return remote
            result.local_wins += 1
            return local

        # 3. Both tombstones
        if isinstance(local, Tombstone) and isinstance(remote, Tombstone):
            return remote if remote.deleted_at > local.deleted_at else local

        # 2. Both active, local wins ties
        if remote.ts > local.ts:
            result.remote_wins += 1
            return remote
        result.local_wins += 1
        return local

    @staticmethod
    def _merge_stats(winner: Record, local: StatsRecord, remote: StatsRecord) -> StatsRecord:
        # Both devices advance the total independently; never let it go backwards
        total = max(local.total_watch_seconds, remote.total_watch_seconds)
        if winner.total_watch_seconds == total:
            return winner
        return winner.model_copy(update={"total_watch_seconds": total})

    @staticmethod
    def _account(kind: RecordKind, entity_id: str, local: Entry, remote: Entry, merged: Entry, result: MergeResult):
        merged_wire = _wire(merged)
        if merged_wire != _wire(remote):
            result.to_push.append((kind, entity_id))

        if merged_wire == _wire(local):
            return
        result.changed_kinds.add(kind)
        if isinstance(merged, Record):
            if local is None:
                result.added += 1
            elif isinstance(local, Tombstone):
                result.undeleted += 1
            else:
                result.updated += 1
        elif isinstance(local, Record):
            result.deleted += 1
