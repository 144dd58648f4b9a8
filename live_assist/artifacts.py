"""Per-capture session folders with bounded retention."""

from __future__ import annotations

import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Iterable, List

from .utils import generate_id

logger = logging.getLogger(__name__)

SESSION_PREFIX = "session"


class ArtifactStore:
    """Creates a fresh folder per capture and keeps only the newest ``keep`` of them."""

    def __init__(self, root: Path, keep: int = 5) -> None:
        self.root = Path(root)
        self.keep = max(1, keep)

    def sessions(self) -> List[Path]:
        if not self.root.is_dir():
            return []
        folders = [path for path in self.root.iterdir() if path.is_dir() and path.name.startswith(SESSION_PREFIX)]
        # names embed a sortable timestamp
        return sorted(folders, key=lambda path: path.name)

    def new_session_folder(self, preserve: Iterable[Path] = ()) -> Path:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        folder = self.root / f"{SESSION_PREFIX}_{stamp}_{generate_id('c', size=4)}"
        folder.mkdir(parents=True, exist_ok=False)
        self.prune(preserve)
        return folder

    def prune(self, preserve: Iterable[Path] = ()) -> List[Path]:
        """Remove folders beyond the newest ``keep``, sparing any in ``preserve``."""

        kept = {Path(path) for path in preserve}
        folders = self.sessions()
        stale = [folder for folder in folders[: max(0, len(folders) - self.keep)] if folder not in kept]
        for folder in stale:
            try:
                shutil.rmtree(folder)
            except OSError as exc:
                logger.warning("Could not remove old capture folder %s: %s", folder, exc)
            else:
                logger.debug("Removed old capture folder %s", folder)
        return stale
