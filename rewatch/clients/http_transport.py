import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from ..config import Settings, settings as default_settings
from ..errors import (
    PayloadRejectedError,
    QuotaExceededError,
    TransportError,
    TransportOfflineError,
    TransportTimeoutError,
)
from ..transport import MANIFEST_KEY, ChangeNotification, SyncTransport, payload_hash

logger = logging.getLogger(__name__)


class HttpSyncTransport(SyncTransport):
    """
    Client of a remote key-value sync endpoint.

    GET  /api/sync/items[?keys=a,b]  -> {"items": {...}}
    PUT  /api/sync/items             <- {"items": {...}}
    POST /api/sync/items/delete      <- {"keys": [...]}

    The endpoint has no push channel, so change notifications come from polling the manifest.
    """

    def __init__(self, config: Settings = default_settings, client: Optional[httpx.AsyncClient] = None):
        super().__init__()
        if client is None:
            if not config.SYNC_BASE_URL:
                raise ValueError("SYNC_BASE_URL is required for the http transport")
            headers = {"Authorization": f"Bearer {config.SYNC_TOKEN}"} if config.SYNC_TOKEN else {}
            client = httpx.AsyncClient(
                base_url=config.SYNC_BASE_URL.rstrip("/"),
                headers=headers,
                timeout=config.REQUEST_TIMEOUT_SECONDS,
            )
        self.client = client
        self.config = config
        self._last_manifest_hash: Optional[str] = None
        self._poller: Optional[asyncio.Task] = None

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            resp = await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportTimeoutError(f"{method} {url} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransportOfflineError(f"{method} {url} failed: {e}") from e

        if resp.status_code == 413:
            raise QuotaExceededError(f"{method} {url}: item too large", per_item=True)
        if resp.status_code == 507:
            raise QuotaExceededError(f"{method} {url}: storage quota exceeded")
        if resp.status_code in (400, 409, 422):
            raise PayloadRejectedError(f"{method} {url} rejected: {resp.status_code} {resp.text[:200]}")
        if resp.status_code >= 500:
            raise TransportError(f"{method} {url} server error {resp.status_code}")
        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TransportError(f"{method} {url} failed: {e}", retryable=False) from e
        return resp

    async def get_all(self) -> Dict[str, Any]:
        resp = await self._request("GET", "/api/sync/items")
        return resp.json().get("items", {})

    async def get_items(self, keys: List[str]) -> Dict[str, Any]:
        resp = await self._request("GET", "/api/sync/items", params={"keys": ",".join(keys)})
        return resp.json().get("items", {})

    async def set_items(self, items: Dict[str, Any]) -> None:
        await self._request("PUT", "/api/sync/items", json={"items": items})
        if MANIFEST_KEY in items:
            # The poller must not report our own manifest back as a remote change
            self._last_manifest_hash = payload_hash(items[MANIFEST_KEY])
        logger.debug(f"Wrote {len(items)} sync item(s)")

    async def remove(self, keys: List[str]) -> None:
        if not keys:
            return
        await self._request("POST", "/api/sync/items/delete", json={"keys": keys})

    async def poll_once(self) -> Optional[ChangeNotification]:
        """Fires listeners when the remote manifest changed since the previous poll."""
        items = await self.get_items([MANIFEST_KEY])
        manifest = items.get(MANIFEST_KEY)
        if not manifest:
            return None
        digest = payload_hash(manifest)
        if digest == self._last_manifest_hash:
            return None
        first_poll = self._last_manifest_hash is None
        self._last_manifest_hash = digest
        if first_poll:
            return None
        notification = ChangeNotification(keys=[MANIFEST_KEY], payload_hash=digest)
        self._fire(notification)
        return notification

    async def run_poller(self):
        logger.info("Sync change poller started")
        while True:
            try:
                await self.poll_once()
            except TransportError as e:
                logger.debug(f"Sync poll failed: {e}")
            except Exception as e:
                logger.error(f"Error in sync poller: {e}", exc_info=True)
            await asyncio.sleep(self.config.SYNC_POLL_INTERVAL_SECONDS)

    def start_polling(self):
        if self._poller is None or self._poller.done():
            self._poller = asyncio.create_task(self.run_poller())

    async def close(self):
        if self._poller is not None:
            self._poller.cancel()
            try:
                await self._poller
            except asyncio.CancelledError:
                pass
            self._poller = None
        await self.client.aclose()
