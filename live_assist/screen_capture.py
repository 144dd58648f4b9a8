"""Desktop screenshots for analysis and for the live frame stream."""

from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import Callable, Optional

from PIL import Image

from .errors import CaptureError
from .utils import clamp

logger = logging.getLogger(__name__)

try:  # pragma: no cover - optional dependency
    import mss  # type: ignore
except ModuleNotFoundError:  # pragma: no cover - optional dependency
    mss = None  # type: ignore

try:  # pragma: no cover - optional dependency
    from PIL import ImageGrab  # type: ignore
except ImportError:  # pragma: no cover - optional dependency
    ImageGrab = None  # type: ignore

GrabBackend = Callable[[], Image.Image]


class ScreenCapturer:
    """Grabs the primary monitor with ``mss``, falling back to Pillow's ImageGrab."""

    def __init__(self, *, monitor_index: int = 1) -> None:
        self.monitor_index = monitor_index
        self._backend: Optional[GrabBackend] = self._select_backend()

    @property
    def available(self) -> bool:
        return self._backend is not None

    def grab(self) -> Image.Image:
        if self._backend is None:
            raise CaptureError("Screen capture backend is not available.")
        try:
            return self._backend()
        except CaptureError:
            raise
        except Exception as exc:
            raise CaptureError(f"Screen capture failed: {exc}") from exc

    def capture_png(self, path: Path) -> Path:
        destination = Path(path)
        image = self.grab()
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            image.save(destination, format="PNG")
        except OSError as exc:
            raise CaptureError(f"Cannot write screenshot {destination.name}: {exc}") from exc
        logger.debug("Screenshot saved to %s (%dx%d)", destination, *image.size)
        return destination

    def capture_jpeg(self, quality: int, max_width: int, max_height: int) -> bytes:
        """Encode the current screen as JPEG, downscaled to fit the bounds."""

        quality = int(clamp(quality, 40, 95))
        max_width = int(clamp(max_width, 320, 3840))
        max_height = int(clamp(max_height, 240, 2160))
        image = self.grab()
        if image.width > max_width or image.height > max_height:
            image.thumbnail((max_width, max_height), Image.Resampling.BILINEAR)
        if image.mode != "RGB":
            image = image.convert("RGB")
        buffer = io.BytesIO()
        image.save(buffer, format="JPEG", quality=quality)
        return buffer.getvalue()

    # ------------------------------------------------------------------
    # Backend selection helpers
    # ------------------------------------------------------------------

    def _select_backend(self) -> Optional[GrabBackend]:
        if mss is not None:
            return self._grab_with_mss
        if ImageGrab is not None:
            return self._grab_with_pillow
        logger.warning("Neither mss nor Pillow ImageGrab is usable; screen capture disabled.")
        return None

    def _grab_with_mss(self) -> Image.Image:
        assert mss is not None  # for type checkers
        with mss.mss() as sct:
            monitors = sct.monitors
            index = min(max(self.monitor_index, 1), len(monitors) - 1)
            shot = sct.grab(monitors[index])
            return Image.frombytes("RGB", shot.size, shot.rgb)

    def _grab_with_pillow(self) -> Image.Image:
        assert ImageGrab is not None  # for type checkers
        return ImageGrab.grab()  # type: ignore[attr-defined]
