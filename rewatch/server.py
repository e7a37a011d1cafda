from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError

from .commands import CommandDispatcher
from .config import settings
from .errors import ImportValidationError, SyncDisabledError, TransportError
from .service import WatchHistoryService

app = FastAPI(title="Rewatch Sync")
service: Optional[WatchHistoryService] = None


def get_token(x_token: Optional[str] = Header(None, alias="X-Token")):
    if settings.HTTP_SERVER_TOKEN and x_token != settings.HTTP_SERVER_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid token")


def get_service() -> WatchHistoryService:
    if service is None:
        raise HTTPException(status_code=503, detail="Service is starting")
    return service


@app.exception_handler(ImportValidationError)
async def import_error_handler(request: Request, exc: ImportValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": exc.errors(include_url=False, include_input=False, include_context=False)})


@app.exception_handler(SyncDisabledError)
async def sync_disabled_handler(request: Request, exc: SyncDisabledError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(TransportError)
async def transport_error_handler(request: Request, exc: TransportError):
    return JSONResponse(status_code=502, content={"detail": str(exc), "retryable": exc.retryable})


@app.get("/healthz")
def healthz():
    if not service:
        return {"status": "starting"}

    status = service.get_sync_status()
    if not status.enabled or status.last_synced_at is None:
        return {"status": "ok"}

    # Lenient: report lagging after three missed sync intervals
    age_ms = service.clock.now_ms() - status.last_synced_at
    if age_ms > (settings.SYNC_INTERVAL_SECONDS * 3 + 60) * 1000:
        return {"status": "lagging", "last_sync_age": age_ms / 1000}

    return {"status": "ok"}


@app.get("/status", dependencies=[Depends(get_token)])
def status():
    svc = get_service()
    return {
        "device_id": svc.device_id,
        "sync": svc.get_sync_status().to_wire(),
        "config": {
            "interval": settings.SYNC_INTERVAL_SECONDS,
            "transport": settings.SYNC_TRANSPORT,
        },
    }


@app.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    # Simple prometheus-style text format
    if not service:
        return ""

    values = await service.metrics()
    return "\n".join(f"rewatch_{name} {value}" for name, value in values.items())


@app.get("/videos", dependencies=[Depends(get_token)])
async def list_videos():
    videos = await get_service().get_all_videos()
    return {video_id: v.to_wire() for video_id, v in videos.items()}


@app.get("/videos/{video_id}", dependencies=[Depends(get_token)])
async def get_video(video_id: str):
    video = await get_service().get_video(video_id)
    if video is None:
        raise HTTPException(status_code=404, detail="Video not found")
    return video.to_wire()


@app.put("/videos/{video_id}", dependencies=[Depends(get_token)])
async def record_progress(video_id: str, partial: Dict[str, Any] = Body(...), playlist_id: Optional[str] = None):
    video = await get_service().record_progress(video_id, partial, playlist_id=playlist_id)
    return {"recorded": video is not None, "video": video.to_wire() if video else None}


@app.delete("/videos/{video_id}", dependencies=[Depends(get_token)])
async def delete_video(video_id: str):
    tombstone = await get_service().delete_video(video_id)
    return {"deleted": True, "deletedAt": tombstone.deleted_at if tombstone else None}


@app.get("/playlists", dependencies=[Depends(get_token)])
async def list_playlists():
    playlists = await get_service().get_all_playlists()
    return {playlist_id: p.to_wire() for playlist_id, p in playlists.items()}


@app.put("/playlists/{playlist_id}", dependencies=[Depends(get_token)])
async def record_playlist(playlist_id: str, partial: Dict[str, Any] = Body(...)):
    return (await get_service().record_playlist(playlist_id, partial)).to_wire()


@app.delete("/playlists/{playlist_id}", dependencies=[Depends(get_token)])
async def delete_playlist(playlist_id: str):
    tombstone = await get_service().delete_playlist(playlist_id)
    return {"deleted": True, "deletedAt": tombstone.deleted_at if tombstone else None}


@app.get("/settings", dependencies=[Depends(get_token)])
async def get_settings():
    return (await get_service().get_settings()).to_wire()


@app.patch("/settings", dependencies=[Depends(get_token)])
async def update_settings(patch: Dict[str, Any] = Body(...)):
    return (await get_service().set_settings(patch)).to_wire()


@app.get("/stats", dependencies=[Depends(get_token)])
async def get_stats():
    return (await get_service().get_stats()).to_wire()


@app.post("/sync/full", dependencies=[Depends(get_token)])
async def full_sync():
    dispatcher = CommandDispatcher(get_service())
    return await dispatcher.dispatch({"type": "triggerFullSync"})


@app.get("/export", dependencies=[Depends(get_token)])
async def export_all():
    return await get_service().export_all()


@app.post("/import", dependencies=[Depends(get_token)])
async def import_all(document: Any = Body(...), replace: bool = False):
    return await get_service().import_all(document, replace=replace)


@app.post("/commands", dependencies=[Depends(get_token)])
async def run_command(command: Dict[str, Any] = Body(...)):
    dispatcher = CommandDispatcher(get_service())
    return {"result": await dispatcher.dispatch(command)}
