import copy
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .errors import PayloadRejectedError, QuotaExceededError, TransportError, TransportOfflineError
from .models import SCHEMA_VERSION, RecordEntry, ReplicaInfo, SyncEnvelope, Tombstone

logger = logging.getLogger(__name__)

MANIFEST_KEY = "manifest"
CHUNK_PREFIX = "chunk_"
REPLICA_PREFIX = "replica_"


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def payload_hash(value: Any) -> str:
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()


def notification_hash(items: Dict[str, Any]) -> str:
    """Hash identifying one write. The manifest alone identifies an envelope push."""
    if MANIFEST_KEY in items:
        return payload_hash(items[MANIFEST_KEY])
    return payload_hash(items)


def removal_hash(keys: List[str]) -> str:
    return payload_hash({"removed": sorted(keys)})


@dataclass
class ChangeNotification:
    keys: List[str]
    payload_hash: Optional[str] = None


ChangeListener = Callable[[ChangeNotification], None]


class SyncTransport:
    """A low-capacity key-value area shared by every device of the user."""

    def __init__(self):
        self._listeners: List[ChangeListener] = []

    async def get_all(self) -> Dict[str, Any]:
        raise NotImplementedError

    async def set_items(self, items: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def remove(self, keys: List[str]) -> None:
        raise NotImplementedError

    async def close(self):
        pass

    def add_listener(self, listener: ChangeListener):
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _fire(self, notification: ChangeNotification):
        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception as e:
                logger.error(f"Error in sync change listener: {e}", exc_info=True)


class MemorySyncArea(SyncTransport):
    """
    In-process synchronized area with the quota rules of browser sync storage.
    Several devices may share one instance; every write notifies every listener,
    including the writer's own.
    """

    def __init__(self, quota_bytes: int = 102400, quota_bytes_per_item: int = 8192):
        super().__init__()
        self.data: Dict[str, Any] = {}
        self.quota_bytes = quota_bytes
        self.quota_bytes_per_item = quota_bytes_per_item
        self.offline = False
        self.writes = 0

    def _check_online(self):
        if self.offline:
            raise TransportOfflineError("Sync area is offline")

    @staticmethod
    def _item_size(key: str, value: Any) -> int:
        return len(key) + len(canonical_json(value))

    def bytes_in_use(self) -> int:
        return sum(self._item_size(k, v) for k, v in self.data.items())

    async def get_all(self) -> Dict[str, Any]:
        self._check_online()
        return copy.deepcopy(self.data)

    async def set_items(self, items: Dict[str, Any]) -> None:
        self._check_online()
        for key, value in items.items():
            size = self._item_size(key, value)
            if size > self.quota_bytes_per_item:
                raise QuotaExceededError(f"Item {key} is {size} bytes, limit {self.quota_bytes_per_item}", per_item=True)

        projected = sum(self._item_size(k, v) for k, v in self.data.items() if k not in items)
        projected += sum(self._item_size(k, v) for k, v in items.items())
        if projected > self.quota_bytes:
            raise QuotaExceededError(f"Write would use {projected} bytes, quota {self.quota_bytes}")

        self.data.update(copy.deepcopy(items))
        self.writes += 1
        self._fire(ChangeNotification(keys=list(items.keys()), payload_hash=notification_hash(items)))

    async def remove(self, keys: List[str]) -> None:
        self._check_online()
        removed = [k for k in keys if self.data.pop(k, None) is not None]
        if removed:
            self._fire(ChangeNotification(keys=removed, payload_hash=removal_hash(removed)))


@dataclass
class EncodedEnvelope:
    items: Dict[str, Any]
    manifest: Dict[str, Any]
    chunk_count: int
    obsolete_keys: List[str] = field(default_factory=list)


class EnvelopeCodec:
    """
    Lays a SyncEnvelope out as a manifest plus bounded chunk entries.

    manifest    {deviceId, lastSyncedAt, schemaVersion, chunkCount, writerToken}
    chunk_<n>   list of entries, each {"type": "record"|"tombstone", ...}
    replica_<d> {deviceId, lastSyncedAt}
    """

    @staticmethod
    def _entries(envelope: SyncEnvelope) -> List[Dict[str, Any]]:
        entries = [dict(type="record", **e.to_wire()) for e in envelope.records]
        entries.extend(dict(type="tombstone", **t.to_wire()) for t in envelope.tombstones)
        return entries

    def encode(
        self,
        envelope: SyncEnvelope,
        chunk_bytes: int,
        writer_token: str,
        existing_keys: Optional[List[str]] = None,
    ) -> EncodedEnvelope:
        chunks: List[List[Dict[str, Any]]] = []
        current: List[Dict[str, Any]] = []
        current_size = 2  # []
        for entry in self._entries(envelope):
            size = len(canonical_json(entry)) + 1
            if current and current_size + size > chunk_bytes:
                chunks.append(current)
                current, current_size = [], 2
            current.append(entry)
            current_size += size
        if current:
            chunks.append(current)

        manifest = {
            "deviceId": envelope.device_id,
            "lastSyncedAt": envelope.last_synced_at,
            "schemaVersion": envelope.schema_version,
            "chunkCount": len(chunks),
            "writerToken": writer_token,
        }
        items: Dict[str, Any] = {f"{CHUNK_PREFIX}{i}": chunk for i, chunk in enumerate(chunks)}
        items[MANIFEST_KEY] = manifest
        if envelope.last_synced_at is not None:
            items[f"{REPLICA_PREFIX}{envelope.device_id}"] = {
                "deviceId": envelope.device_id,
                "lastSyncedAt": envelope.last_synced_at,
            }

        obsolete = []
        for key in existing_keys or []:
            index = self._chunk_index(key)
            if index is not None and index >= len(chunks):
                obsolete.append(key)
        return EncodedEnvelope(items=items, manifest=manifest, chunk_count=len(chunks), obsolete_keys=obsolete)

    @staticmethod
    def _chunk_index(key: str) -> Optional[int]:
        if not key.startswith(CHUNK_PREFIX):
            return None
        try:
            return int(key[len(CHUNK_PREFIX):])
        except ValueError:
            return None

    def decode(self, items: Dict[str, Any]) -> Optional[SyncEnvelope]:
        manifest = items.get(MANIFEST_KEY)
        if not manifest:
            return None

        schema_version = manifest.get("schemaVersion", SCHEMA_VERSION)
        if schema_version > SCHEMA_VERSION:
            raise PayloadRejectedError(f"Remote schema version {schema_version} is newer than supported {SCHEMA_VERSION}")

        records: List[RecordEntry] = []
        tombstones: List[Tombstone] = []
        for i in range(int(manifest.get("chunkCount", 0))):
            chunk = items.get(f"{CHUNK_PREFIX}{i}")
            if chunk is None:
                # Another device is mid-write; the next round will see a complete set
                raise TransportError(f"Remote envelope incomplete: missing chunk {i}")
            for entry in chunk:
                entry = dict(entry)
                entry_type = entry.pop("type", "record")
                try:
                    if entry_type == "tombstone":
                        tombstones.append(Tombstone.model_validate(entry))
                    else:
                        records.append(RecordEntry.model_validate(entry))
                except ValueError as e:
                    logger.warning(f"Skipping malformed remote entry in chunk {i}: {e}")

        return SyncEnvelope(
            device_id=manifest.get("deviceId", "unknown"),
            last_synced_at=manifest.get("lastSyncedAt"),
            schema_version=schema_version,
            records=records,
            tombstones=tombstones,
        )

    @staticmethod
    def replicas(items: Dict[str, Any]) -> List[ReplicaInfo]:
        result = []
        for key, value in items.items():
            if not key.startswith(REPLICA_PREFIX) or not isinstance(value, dict):
                continue
            try:
                result.append(ReplicaInfo.model_validate(value))
            except ValueError as e:
                logger.warning(f"Skipping malformed replica entry {key}: {e}")
        return result

    @staticmethod
    def replica_key(device_id: str) -> str:
        return f"{REPLICA_PREFIX}{device_id}"

