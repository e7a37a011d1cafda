import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set

from .clock import MS_PER_DAY, Clock
from .config import Settings, settings as default_settings
from .errors import PersistenceError, QuotaExceededError, SyncDisabledError, TransportError
from .merge import MergeEngine, MergeResult
from .models import SINGLETON_ID, RecordKind, ReplicaInfo, SettingsRecord, SyncMeta, SyncState, SyncStatusReport
from .store import RecordStore
from .timer import Timer
from .transport import ChangeNotification, EnvelopeCodec, SyncTransport, notification_hash, removal_hash

logger = logging.getLogger(__name__)

# Republish our replica entry at least this often even when nothing changed,
# so other devices never mistake an idle replica for a stale one
REPLICA_HEARTBEAT_MS = MS_PER_DAY

StatusListener = Callable[[SyncStatusReport], None]
SettingsCallback = Callable[[SettingsRecord], Awaitable[None]]


class SyncScheduler:
    """
    Decides when to reconcile the local store with the synchronized area.

    Disabled -> Initializing -> Idle <-> Syncing -> {Success, Error} -> Idle

    Rounds are single-flight: a trigger that arrives while a round runs is folded
    into one follow-up round. Transient failures are left for the next timer tick.
    """

    def __init__(
        self,
        store: RecordStore,
        transport: SyncTransport,
        device_id: str,
        merge_engine: Optional[MergeEngine] = None,
        clock: Optional[Clock] = None,
        user_settings: Optional[SettingsRecord] = None,
        stats=None,
        config: Settings = default_settings,
        on_settings_merged: Optional[SettingsCallback] = None,
    ):
        self.store = store
        self.transport = transport
        self.device_id = device_id
        self.config = config
        self.merge_engine = merge_engine or MergeEngine(store.tombstones, config)
        self.clock = clock or store.clock
        self.user_settings = user_settings or SettingsRecord()
        self.stats = stats
        self.on_settings_merged = on_settings_merged
        self.codec = EnvelopeCodec()
        self.timer = Timer(config.SYNC_INTERVAL_SECONDS, self.on_timer, name="sync-timer")

        self.state = SyncState.DISABLED
        self.last_outcome: Optional[SyncState] = None
        self.last_synced_at: Optional[int] = None
        self.last_error: Optional[str] = None
        self.retryable = True
        self.last_result: Optional[MergeResult] = None
        self.rounds = 0

        self._round_lock = asyncio.Lock()
        self._rerun = False
        self._rerun_full = False
        self._local_dirty = True
        self._remote_dirty = False
        self._rounds_since_full = 0
        self._chunk_bytes = config.SYNC_CHUNK_BYTES
        self._replicas: List[ReplicaInfo] = []
        self._last_sweep_ms: Optional[int] = None

        # payload hash -> monotonic time of our own writes
        self._recent_writes: Dict[str, float] = {}
        self._write_counter = 0
        self._last_listener_round: Optional[float] = None

        self._background: Set[asyncio.Task] = set()
        self._status_listeners: List[StatusListener] = []
        self._started = False

    @property
    def enabled(self) -> bool:
        return self.state != SyncState.DISABLED

    @property
    def chunk_bytes(self) -> int:
        return self._chunk_bytes

    # --- lifecycle -------------------------------------------------------

    async def start(self):
        if self._started:
            return
        self._started = True
        meta = await self.store.load_sync_meta()
        self.last_synced_at = meta.last_synced_at
        self._replicas = list(meta.replicas)
        if meta.chunk_bytes:
            self._chunk_bytes = max(self.config.SYNC_MIN_CHUNK_BYTES, meta.chunk_bytes)
        self.store.add_listener(self.on_local_change)
        if self.user_settings.sync_enabled:
            await self.enable()

    async def enable(self):
        if self.enabled:
            return
        logger.info("Enabling sync")
        self._set_state(SyncState.INITIALIZING)
        self.transport.add_listener(self.on_remote_change)
        await self._drive("init", full=True)
        # A merged settings record may have switched sync off again during the first round
        if self.enabled:
            self.timer.start()

    async def disable(self):
        if not self.enabled:
            return
        logger.info("Disabling sync")
        self.transport.remove_listener(self.on_remote_change)
        await self.timer.stop()
        await self._cancel_background()
        self._set_state(SyncState.DISABLED)

    async def stop(self):
        await self.disable()
        self.store.remove_listener(self.on_local_change)
        self._started = False

    async def settings_changed(self, user_settings: SettingsRecord):
        self.user_settings = user_settings
        if user_settings.sync_enabled and not self.enabled:
            await self.enable()
        elif not user_settings.sync_enabled and self.enabled:
            await self.disable()

    # --- status ----------------------------------------------------------

    def on_status_change(self, listener: StatusListener):
        self._status_listeners.append(listener)

    def get_sync_status(self) -> SyncStatusReport:
        state = self.state
        if state == SyncState.IDLE and self.last_outcome is not None:
            state = self.last_outcome
        return SyncStatusReport(
            state=state,
            enabled=self.enabled,
            last_synced_at=self.last_synced_at,
            last_error=self.last_error,
            retryable=self.retryable,
        )

    def _set_state(self, state: SyncState):
        if state == self.state:
            return
        logger.debug(f"Sync state {self.state.value} -> {state.value}")
        self.state = state
        report = self.get_sync_status()
        for listener in list(self._status_listeners):
            try:
                listener(report)
            except Exception as e:
                logger.error(f"Error in sync status listener: {e}", exc_info=True)

    # --- triggers --------------------------------------------------------

    async def on_timer(self):
        if not self.enabled:
            return
        await self.request_round("timer")

    def on_local_change(self, kind: RecordKind, entity_id: str):
        self._local_dirty = True
        if self.enabled and self.user_settings.sync_immediate:
            self._spawn(self.request_round("immediate"))

    def on_remote_change(self, notification: ChangeNotification):
        if not self.enabled:
            return
        now = self.clock.monotonic()
        self._expire_recent_writes(now)
        if notification.payload_hash and notification.payload_hash in self._recent_writes:
            logger.debug(f"Ignoring change notification for our own write ({notification.keys})")
            return

        self._remote_dirty = True
        if (
            self._last_listener_round is not None
            and now - self._last_listener_round < self.config.LISTENER_MIN_INTERVAL_SECONDS
        ):
            logger.debug("Remote change noted; listener-triggered rounds are rate limited")
            return
        self._last_listener_round = now
        self._spawn(self._delayed_round("listener", self.config.LISTENER_TRIGGER_DELAY_SECONDS))

    async def trigger_full_sync(self) -> MergeResult:
        """User-requested round. Raises the failure instead of only recording it."""
        if not self.enabled:
            raise SyncDisabledError("Sync is disabled")
        error = await self._drive("user", full=True)
        if error is not None:
            raise error
        return self.last_result

    async def request_round(self, reason: str, full: bool = False) -> bool:
        """Runs a round now, or folds the request into the round in flight. Returns False when folded."""
        if not self.enabled:
            return False
        if self._round_lock.locked():
            self._rerun = True
            self._rerun_full = self._rerun_full or full
            logger.debug(f"Sync round in progress; {reason} trigger coalesced")
            return False
        await self._drive(reason, full)
        return True

    def schedule_round(self, reason: str, full: bool = False) -> Optional[asyncio.Task]:
        """Background variant of request_round for callers that must not wait on the transport."""
        self._local_dirty = True
        if not self.enabled:
            return None
        return self._spawn(self.request_round(reason, full))

    async def _delayed_round(self, reason: str, delay: float):
        # Lets bursts of writes from another device settle before reading
        if delay > 0:
            await asyncio.sleep(delay)
        await self.request_round(reason)

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self):
        """Waits for every background trigger to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _cancel_background(self):
        current = asyncio.current_task()
        tasks = [t for t in self._background if t is not current]
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # --- rounds ----------------------------------------------------------

    async def _drive(self, reason: str, full: bool) -> Optional[Exception]:
        async with self._round_lock:
            error = await self._run_round(reason, full)
            while self._rerun and self.enabled:
                rerun_full = self._rerun_full
                self._rerun = self._rerun_full = False
                await self._run_round("coalesced", rerun_full)
        return error

    async def _run_round(self, reason: str, full: bool = False) -> Optional[Exception]:
        if not self.enabled:
            return None
        full = full or self._rounds_since_full + 1 >= self.config.FULL_SYNC_EVERY_ROUNDS
        if not full and not self._local_dirty and not self._remote_dirty:
            self._rounds_since_full += 1
            logger.debug(f"Skipping {reason} sync round: no local or remote changes")
            return None

        if self.state != SyncState.INITIALIZING:
            self._set_state(SyncState.SYNCING)
        logger.debug(f"Starting {'full' if full else 'incremental'} sync round ({reason})")

        try:
            result = await self._sync_once()
        except Exception as e:
            # Whatever the round committed locally still has to reach the area
            self._local_dirty = True
            await self._record_failure(e)
            if self.enabled:
                self._set_state(SyncState.ERROR)
                self.last_outcome = SyncState.ERROR
                self._set_state(SyncState.IDLE)
            return e

        self.rounds += 1
        self._rounds_since_full = 0 if full else self._rounds_since_full + 1
        self.last_error = None
        self.retryable = True
        self.last_result = result
        logger.info(
            f"Sync round ({reason}) done: +{result.added} ~{result.updated} -{result.deleted} "
            f"undeleted={result.undeleted} pushed={len(result.to_push)}"
        )

        if RecordKind.SETTINGS in result.changed_kinds and self.on_settings_merged is not None:
            merged = result.snapshot.get(RecordKind.SETTINGS, SINGLETON_ID)
            if merged is not None:
                await self.on_settings_merged(merged)

        if self.enabled:
            self._set_state(SyncState.SUCCESS)
            self.last_outcome = SyncState.SUCCESS
            self._set_state(SyncState.IDLE)
        return None

    async def _record_failure(self, e: Exception):
        if isinstance(e, QuotaExceededError):
            shrunk = max(self.config.SYNC_MIN_CHUNK_BYTES, self._chunk_bytes // 2)
            if shrunk != self._chunk_bytes:
                logger.warning(f"Sync quota exceeded, reducing chunk size {self._chunk_bytes} -> {shrunk} bytes")
                self._chunk_bytes = shrunk
                try:
                    await self._save_meta(self.last_synced_at)
                except PersistenceError as pe:
                    logger.error(f"Failed to persist reduced chunk size: {pe}")
            self.retryable = True
        elif isinstance(e, TransportError):
            self.retryable = e.retryable
        elif isinstance(e, PersistenceError):
            self.retryable = True
        else:
            self.retryable = False

        self.last_error = str(e)
        if isinstance(e, (TransportError, PersistenceError)):
            logger.warning(f"Sync round failed ({'retryable' if self.retryable else 'not retryable'}): {e}")
        else:
            logger.error(f"Unexpected error in sync round: {e}", exc_info=True)

    async def _sync_once(self) -> MergeResult:
        now_ms = self.clock.now_ms()
        if self.stats is not None:
            await self.stats.flush()

        self._remote_dirty = False
        items = await self.transport.get_all()
        remote = self.codec.decode(items)

        known = self._merge_replicas(self._replicas, self.codec.replicas(items))
        replicas = self.store.tombstones.prune_replicas(known, now_ms)
        forgotten = [r.device_id for r in known if r not in replicas]
        sweep = self._sweep_due(now_ms) and self.store.tombstones.sweep_allowed(replicas, now_ms)

        async with self.store.merge_window() as local:
            self._local_dirty = False
            result = self.merge_engine.merge(
                local,
                remote,
                now_ms,
                last_synced_at=self.last_synced_at,
                sweep_allowed=sweep,
            )
            failed = await self.store.apply_snapshot(local, result.snapshot)
        if failed:
            raise PersistenceError(", ".join(failed), "merge commit incomplete")

        own = next((r for r in replicas if r.device_id == self.device_id), None)
        heartbeat_due = own is None or now_ms - own.last_synced_at >= REPLICA_HEARTBEAT_MS
        if remote is None or result.to_push or heartbeat_due or forgotten:
            await self._push(result, now_ms, list(items.keys()), forgotten)

        if sweep:
            self._last_sweep_ms = now_ms
            if result.swept:
                logger.info(f"Dropped {result.swept} expired tombstone(s) during merge")

        self._replicas = self._merge_replicas(
            replicas, [ReplicaInfo(device_id=self.device_id, last_synced_at=now_ms)]
        )
        self.last_synced_at = now_ms
        await self._save_meta(now_ms)
        return result

    async def _push(self, result: MergeResult, now_ms: int, existing_keys: List[str], forgotten: List[str]):
        envelope = result.snapshot.to_envelope(self.device_id, now_ms)
        self._write_counter += 1
        encoded = self.codec.encode(
            envelope,
            self._chunk_bytes,
            writer_token=f"{self.device_id}:{self._write_counter}",
            existing_keys=existing_keys,
        )
        # Register before writing: the area may notify before set_items returns
        self._remember_write(notification_hash(encoded.items))
        await self.transport.set_items(encoded.items)
        logger.debug(f"Pushed envelope: {encoded.chunk_count} chunk(s), {len(result.to_push)} changed entries")

        obsolete = encoded.obsolete_keys + [EnvelopeCodec.replica_key(d) for d in forgotten]
        if obsolete:
            self._remember_write(removal_hash(obsolete))
            await self.transport.remove(obsolete)

    def _sweep_due(self, now_ms: int) -> bool:
        if self._last_sweep_ms is None:
            return True
        return now_ms - self._last_sweep_ms >= self.config.TOMBSTONE_SWEEP_INTERVAL_SECONDS * 1000

    @staticmethod
    def _merge_replicas(*groups: List[ReplicaInfo]) -> List[ReplicaInfo]:
        latest: Dict[str, ReplicaInfo] = {}
        for group in groups:
            for r in group:
                seen = latest.get(r.device_id)
                if seen is None or r.last_synced_at > seen.last_synced_at:
                    latest[r.device_id] = r
        return sorted(latest.values(), key=lambda r: r.device_id)

    def known_replicas(self) -> List[ReplicaInfo]:
        return list(self._replicas)

    async def _save_meta(self, last_synced_at: Optional[int]):
        await self.store.save_sync_meta(
            SyncMeta(last_synced_at=last_synced_at, chunk_bytes=self._chunk_bytes, replicas=self._replicas)
        )

    def _remember_write(self, digest: str):
        now = self.clock.monotonic()
        self._expire_recent_writes(now)
        self._recent_writes[digest] = now

    def _expire_recent_writes(self, now: float):
        window = self.config.SELF_WRITE_WINDOW_SECONDS
        for digest, written_at in list(self._recent_writes.items()):
            if now - written_at > window:
                del self._recent_writes[digest]
