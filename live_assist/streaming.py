"""Background screen streaming for connected clients."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Callable, Optional, Protocol

from .config import StreamSettings
from .models import Frame
from .utils import clamp

logger = logging.getLogger(__name__)

IDLE_POLL_SECONDS = 0.5
ERROR_BACKOFF_SECONDS = 0.5


class FrameSource(Protocol):
    def capture_jpeg(self, quality: int, max_width: int, max_height: int) -> bytes: ...


class FrameSlot:
    """Latest encoded frame, guarded by a lock separate from the operation lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._frame: Optional[Frame] = None
        self._last_id = 0

    def store(self, data: bytes) -> Frame:
        with self._lock:
            self._last_id += 1
            frame = Frame(data=data, frame_id=self._last_id, captured_at=time.time())
            self._frame = frame
        return frame

    def latest(self) -> Optional[Frame]:
        with self._lock:
            return self._frame


class FramePublisher:
    """Captures frames at a fixed rate while at least one client is connected."""

    def __init__(
        self,
        source: FrameSource,
        slot: FrameSlot,
        settings: StreamSettings,
        client_count: Callable[[], int],
    ) -> None:
        self.source = source
        self.slot = slot
        self.enabled = settings.enabled
        self.fps = int(clamp(settings.fps, 1, 30))
        self.quality = int(clamp(settings.jpeg_quality, 40, 95))
        self.max_width = int(clamp(settings.max_width, 320, 3840))
        self.max_height = int(clamp(settings.max_height, 240, 2160))
        self._client_count = client_count
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def period(self) -> float:
        return 1.0 / self.fps

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.enabled:
            logger.info("Screen streaming disabled.")
            return
        if self.running:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        self._stop.set()
        task, self._task = self._task, None
        if task is not None:
            await task

    async def _run(self) -> None:
        logger.info("Screen stream started (%d fps, quality %d)", self.fps, self.quality)
        while not self._stop.is_set():
            if self._client_count() <= 0:
                await self._wait(IDLE_POLL_SECONDS)
                continue
            started = time.monotonic()
            try:
                data = await asyncio.to_thread(self.source.capture_jpeg, self.quality, self.max_width, self.max_height)
            except Exception as exc:
                logger.warning("Screen stream capture failed: %s", exc)
                await self._wait(ERROR_BACKOFF_SECONDS)
                continue
            self.slot.store(data)
            await self._wait(max(0.0, self.period - (time.monotonic() - started)))
        logger.info("Screen stream stopped")

    async def _wait(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
