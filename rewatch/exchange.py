import logging
from typing import Any, Dict, List, Optional, Type

from pydantic import ValidationError

from .errors import ImportValidationError
from .models import (
    SINGLETON_ID,
    ExportDocument,
    PlaylistRecord,
    Record,
    RecordKind,
    SettingsRecord,
    Snapshot,
    StatsRecord,
    VideoRecord,
)

logger = logging.getLogger(__name__)

CURRENT_DATA_VERSION = "1.1"
SUPPORTED_MAJOR_VERSION = 1


def build_export(
    videos: List[VideoRecord],
    playlists: List[PlaylistRecord],
    user_settings: Optional[SettingsRecord],
    stats: Optional[StatsRecord],
    now_ms: int,
) -> Dict[str, Any]:
    document = ExportDocument(
        data_version=CURRENT_DATA_VERSION,
        exported_at=now_ms,
        videos=sorted(videos, key=lambda v: v.ts, reverse=True),
        playlists=sorted(playlists, key=lambda p: p.ts, reverse=True),
        settings=user_settings,
        stats=stats,
    )
    data = document.to_wire()
    data["_metadata"] = {
        "dataVersion": CURRENT_DATA_VERSION,
        "exportedAt": now_ms,
        "totalVideos": len(videos),
        "totalPlaylists": len(playlists),
    }
    return data


def _major_version(version: Any) -> int:
    try:
        return int(str(version).split(".")[0])
    except ValueError as e:
        raise ImportValidationError(f"Unreadable dataVersion: {version!r}") from e


def _records(raw: Any, model: Type[Record], id_field: str, label: str) -> List[Record]:
    """Accepts a list of records or an {id: record} map."""
    if raw is None:
        return []
    if isinstance(raw, dict):
        items = []
        for key, value in raw.items():
            if not isinstance(value, dict):
                raise ImportValidationError(f"{label} entry {key!r} is not an object")
            items.append({id_field: key, **value})
    elif isinstance(raw, list):
        items = raw
    else:
        raise ImportValidationError(f"{label} must be a list or an object keyed by id")

    result = []
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            raise ImportValidationError(f"{label}[{i}] is not an object")
        try:
            result.append(model.model_validate(item))
        except ValidationError as e:
            raise ImportValidationError(f"{label}[{i}] is invalid: {e.errors()[0].get('msg')}") from e
    return result


def _singleton(raw: Any, model: Type[Record], label: str) -> Optional[Record]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ImportValidationError(f"{label} must be an object")
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        raise ImportValidationError(f"{label} is invalid: {e.errors()[0].get('msg')}") from e


def parse_import(document: Any) -> ExportDocument:
    """
    Validates an export document of any supported version.

    1.0  {"_metadata": {...}, "history"|"videos": [...], "playlists": [...]}
    1.1  adds "dataVersion", "settings" and "stats"
    A bare list of videos is the legacy format.
    Nothing is returned unless the whole document is valid.
    """
    if isinstance(document, list):
        videos = _records(document, VideoRecord, "videoId", "videos")
        return ExportDocument(data_version="1.0", videos=videos)

    if not isinstance(document, dict):
        raise ImportValidationError("Expected an export document or a list of videos")

    metadata = document.get("_metadata")
    if not isinstance(metadata, dict):
        metadata = {}
    version = document.get("dataVersion") or metadata.get("dataVersion") or "1.0"
    major = _major_version(version)
    if major != SUPPORTED_MAJOR_VERSION:
        raise ImportValidationError(f"Unsupported dataVersion {version}")

    raw_videos = document.get("videos")
    if raw_videos is None:
        raw_videos = document.get("history")
    raw_playlists = document.get("playlists")
    if raw_videos is None and raw_playlists is None and "settings" not in document:
        raise ImportValidationError("Document has no videos, history, playlists or settings")

    exported_at = document.get("exportedAt") or metadata.get("exportedAt")
    return ExportDocument(
        data_version=str(version),
        exported_at=exported_at if isinstance(exported_at, int) else None,
        videos=_records(raw_videos, VideoRecord, "videoId", "videos"),
        playlists=_records(raw_playlists, PlaylistRecord, "playlistId", "playlists"),
        settings=_singleton(document.get("settings"), SettingsRecord, "settings"),
        stats=_singleton(document.get("stats"), StatsRecord, "stats"),
    )


def document_to_snapshot(
    document: ExportDocument,
    now_ms: int,
    local_settings: Optional[SettingsRecord] = None,
) -> Snapshot:
    """
    Turns an import into a remote-side snapshot for the merge engine.
    Records without a timestamp count as written at import time.
    """

    def stamped(record: Record) -> Record:
        if record.timestamp is None:
            return record.model_copy(update={"timestamp": now_ms})
        return record

    records: Dict[RecordKind, Dict[str, Record]] = {}
    for video in document.videos:
        records.setdefault(RecordKind.VIDEO, {})[video.video_id] = stamped(video)
    for playlist in document.playlists:
        records.setdefault(RecordKind.PLAYLIST, {})[playlist.playlist_id] = stamped(playlist)

    if document.settings is not None:
        imported = stamped(document.settings)
        if local_settings is not None:
            # Sync switches belong to this installation, not to the backup
            imported = imported.model_copy(update={
                "sync_enabled": local_settings.sync_enabled,
                "sync_immediate": local_settings.sync_immediate,
            })
        records[RecordKind.SETTINGS] = {SINGLETON_ID: imported}
    if document.stats is not None:
        records[RecordKind.STATS] = {SINGLETON_ID: stamped(document.stats)}

    logger.debug(
        f"Import document {document.data_version}: {len(document.videos)} videos, "
        f"{len(document.playlists)} playlists"
    )
    return Snapshot(records=records)
