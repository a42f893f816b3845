import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from ifilm_proxy.player.engine import RenderSurface
from ifilm_proxy.utils.http_utils import DownloadError, create_httpx_client, request_with_retry

logger = logging.getLogger(__name__)

PROGRESS_INTERVAL = 10.0
MIN_PROGRESS_DELTA = 1.0


class ProgressStore(ABC):
    """Watch-history persistence; both operations are best effort."""

    @abstractmethod
    async def get_progress(self, item_id: str) -> float:
        pass

    @abstractmethod
    async def save_progress(self, item_id: str, seconds: float, duration: float) -> None:
        pass


class WatchHistoryStore(ProgressStore):
    """Progress store backed by the watch-history HTTP API. Failures degrade to 0 / no-op."""

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        auth_token: Optional[str] = None,
        media_type: str = "movie",
    ):
        self.base_url = base_url.rstrip("/")
        self.client = client or create_httpx_client()
        self.headers = {"authorization": f"Bearer {auth_token}"} if auth_token else {}
        self.media_type = media_type

    async def get_progress(self, item_id: str) -> float:
        url = f"{self.base_url}/watch-history/progress/{item_id}"
        try:
            response = await request_with_retry(self.client, "GET", url, self.headers)
            return float(response.json().get("progress") or 0)
        except (DownloadError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Could not load saved progress for {item_id}: {e}")
            return 0.0

    async def save_progress(self, item_id: str, seconds: float, duration: float) -> None:
        payload = {
            "mediaId": item_id,
            "mediaType": self.media_type,
            "progress": int(seconds),
            "duration": int(duration),
        }
        try:
            await request_with_retry(
                self.client, "POST", f"{self.base_url}/watch-history/progress", self.headers, json=payload
            )
        except DownloadError as e:
            logger.warning(f"Could not save progress for {item_id}: {e}")

    async def close(self):
        await self.client.aclose()


class ProgressReporter:
    """
    Periodically saves the playback position of one item while it is playing.

    Saves that moved less than ``min_delta`` seconds since the last one are skipped. ``stop``
    cancels the timer and performs one final best-effort save.
    """

    def __init__(
        self,
        store: ProgressStore,
        item_id: str,
        surface: RenderSurface,
        interval: float = PROGRESS_INTERVAL,
        min_delta: float = MIN_PROGRESS_DELTA,
    ):
        self.store = store
        self.item_id = item_id
        self.surface = surface
        self.interval = interval
        self.min_delta = min_delta
        self.last_saved: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if not self.surface.paused:
                await self.flush()

    async def flush(self) -> bool:
        """Save the current position unless it barely moved. Returns whether a save was attempted."""
        position = self.surface.current_time or 0.0
        if position <= 0:
            return False
        if self.last_saved is not None and abs(position - self.last_saved) < self.min_delta:
            return False
        self.last_saved = position
        try:
            await self.store.save_progress(self.item_id, position, self.surface.duration or 0.0)
        except Exception as e:
            logger.warning(f"Progress save for {self.item_id} failed: {e}")
        return True

    async def stop(self, final_flush: bool = True) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if final_flush:
            await self.flush()
