import logging
from typing import Annotated, Any, Awaitable, Callable, Dict, Literal, Optional, Union

from pydantic import Field, TypeAdapter

from .models import WireModel

logger = logging.getLogger(__name__)


class RecordProgress(WireModel):
    type: Literal["recordProgress"] = "recordProgress"
    video_id: str
    partial: Dict[str, Any] = Field(default_factory=dict)
    playlist_id: Optional[str] = None


class RecordPlaylist(WireModel):
    type: Literal["recordPlaylist"] = "recordPlaylist"
    playlist_id: str
    partial: Dict[str, Any] = Field(default_factory=dict)


class GetVideo(WireModel):
    type: Literal["getVideo"] = "getVideo"
    video_id: str


class GetAllVideos(WireModel):
    type: Literal["getAllVideos"] = "getAllVideos"


class GetAllPlaylists(WireModel):
    type: Literal["getAllPlaylists"] = "getAllPlaylists"


class DeleteVideo(WireModel):
    type: Literal["deleteVideo"] = "deleteVideo"
    video_id: str


class DeletePlaylist(WireModel):
    type: Literal["deletePlaylist"] = "deletePlaylist"
    playlist_id: str


class GetSettings(WireModel):
    type: Literal["getSettings"] = "getSettings"


class SetSettings(WireModel):
    type: Literal["setSettings"] = "setSettings"
    patch: Dict[str, Any]


class GetStats(WireModel):
    type: Literal["getStats"] = "getStats"


class TriggerFullSync(WireModel):
    type: Literal["triggerFullSync"] = "triggerFullSync"


class GetSyncStatus(WireModel):
    type: Literal["getSyncStatus"] = "getSyncStatus"


class ExportAll(WireModel):
    type: Literal["exportAll"] = "exportAll"


class ImportAll(WireModel):
    type: Literal["importAll"] = "importAll"
    document: Any
    replace: bool = False


class ClearHistory(WireModel):
    type: Literal["clearHistory"] = "clearHistory"


class ClearAll(WireModel):
    type: Literal["clearAll"] = "clearAll"


Command = Annotated[
    Union[
        RecordProgress,
        RecordPlaylist,
        GetVideo,
        GetAllVideos,
        GetAllPlaylists,
        DeleteVideo,
        DeletePlaylist,
        GetSettings,
        SetSettings,
        GetStats,
        TriggerFullSync,
        GetSyncStatus,
        ExportAll,
        ImportAll,
        ClearHistory,
        ClearAll,
    ],
    Field(discriminator="type"),
]

command_adapter = TypeAdapter(Command)


def parse_command(data: Any) -> WireModel:
    """Raises pydantic.ValidationError for unknown types or bad fields."""
    return command_adapter.validate_python(data)


def _wire(value: Any) -> Any:
    if isinstance(value, WireModel):
        return value.to_wire()
    if isinstance(value, dict):
        return {k: _wire(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_wire(v) for v in value]
    return value


class CommandDispatcher:
    """Routes each command type to its service call and returns a JSON-ready result."""

    def __init__(self, service):
        self.service = service
        self._handlers: Dict[type, Callable[[Any], Awaitable[Any]]] = {
            RecordProgress: lambda c: service.record_progress(c.video_id, c.partial, playlist_id=c.playlist_id),
            RecordPlaylist: lambda c: service.record_playlist(c.playlist_id, c.partial),
            GetVideo: lambda c: service.get_video(c.video_id),
            GetAllVideos: lambda c: service.get_all_videos(),
            GetAllPlaylists: lambda c: service.get_all_playlists(),
            DeleteVideo: lambda c: service.delete_video(c.video_id),
            DeletePlaylist: lambda c: service.delete_playlist(c.playlist_id),
            GetSettings: lambda c: service.get_settings(),
            SetSettings: lambda c: service.set_settings(c.patch),
            GetStats: lambda c: service.get_stats(),
            TriggerFullSync: self._full_sync,
            GetSyncStatus: self._sync_status,
            ExportAll: lambda c: service.export_all(),
            ImportAll: lambda c: service.import_all(c.document, replace=c.replace),
            ClearHistory: lambda c: service.clear_history_only(),
            ClearAll: lambda c: service.clear(),
        }

    async def _full_sync(self, command: TriggerFullSync):
        result = await self.service.trigger_full_sync()
        return {
            "added": result.added,
            "updated": result.updated,
            "deleted": result.deleted,
            "undeleted": result.undeleted,
            "pushed": len(result.to_push),
        }

    async def _sync_status(self, command: GetSyncStatus):
        return self.service.get_sync_status()

    async def dispatch(self, data: Any) -> Any:
        command = data if isinstance(data, WireModel) else parse_command(data)
        handler = self._handlers[type(command)]
        logger.debug(f"Dispatching {command.type}")
        return _wire(await handler(command))
