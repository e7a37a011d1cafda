import asyncio
import logging
import signal
import sys

import uvicorn

from .clients.http_transport import HttpSyncTransport
from .clock import Clock, load_device_id
from .config import settings
from .persistence import JsonDirectoryBackend, MemoryBackend
from .service import WatchHistoryService
from .store import RecordStore
from .transport import MemorySyncArea, SyncTransport
from . import server

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
# Silence noisy libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("uvicorn").setLevel(logging.WARNING)

logger = logging.getLogger("main")


def build_transport() -> SyncTransport:
    if settings.SYNC_TRANSPORT == "http":
        return HttpSyncTransport()
    if settings.SYNC_TRANSPORT != "memory":
        logger.warning(f"Unknown SYNC_TRANSPORT {settings.SYNC_TRANSPORT!r}, using memory")
    return MemorySyncArea(settings.SYNC_QUOTA_BYTES, settings.SYNC_QUOTA_BYTES_PER_ITEM)


class RewatchApp:
    def __init__(self):
        self.clock = Clock()
        self.device_id = load_device_id(settings.DEVICE_ID_PATH if settings.PERSIST_ENABLED else None)
        backend = JsonDirectoryBackend(settings.STATE_DIR) if settings.PERSIST_ENABLED else MemoryBackend()
        self.store = RecordStore(backend, self.clock, self.device_id)
        self.transport = build_transport()
        self.service = WatchHistoryService(self.store, self.transport, self.device_id, self.clock)

        # Link service to server module
        server.service = self.service

    async def start(self):
        await self.service.start()
        if isinstance(self.transport, HttpSyncTransport):
            self.transport.start_polling()

        tasks = []
        if settings.HTTP_SERVER_ENABLED:
            config = uvicorn.Config(server.app, host="0.0.0.0", port=settings.HTTP_SERVER_PORT, log_level="warning")
            tasks.append(asyncio.create_task(uvicorn.Server(config).serve()))
        else:
            # Timers do the work; park until cancelled
            tasks.append(asyncio.create_task(asyncio.Event().wait()))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            pass
        finally:
            await self.service.stop()
            await self.transport.close()


def handle_sigterm(sig, frame):
    logger.info("Received SIGTERM, shutting down...")
    sys.exit(0)


def run():
    signal.signal(signal.SIGTERM, handle_sigterm)
    app = RewatchApp()
    try:
        asyncio.run(app.start())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")


if __name__ == "__main__":
    run()
