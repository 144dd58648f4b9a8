"""Retrieval augmented generation glue: provider contract and local backend."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Iterable, List, Optional

from .config import RagSettings
from .errors import IndexBuildError, RetrievalError
from .index import LexicalIndex, LexicalIndexBuilder
from .models import RagPayload, RagProgress, RetrievalOutcome, ScoredChunk
from .preprocessor import chunk_text, iter_source_files, read_source_text, resolve_folder
from .utils import Signal, to_percent

logger = logging.getLogger(__name__)

CHUNK_SEPARATOR = "---"


def compose_context(hits: Iterable[ScoredChunk], max_chars: int) -> str:
    """Render hits as ``Source:`` headers plus bodies within ``max_chars``.

    A header is never split; the body following it may be truncated.
    """

    parts: List[str] = []
    length = 0
    for hit in hits:
        header = f"Source: {hit.source} (score {hit.score:.2f})"
        if length + len(header) + 2 > max_chars:
            break
        parts.append(header + "\n")
        length += len(header) + 1
        remaining = max(0, max_chars - length - len(CHUNK_SEPARATOR) - 2)
        body = hit.text[:remaining]
        parts.append(body + "\n" + CHUNK_SEPARATOR + "\n")
        length += len(body) + len(CHUNK_SEPARATOR) + 2
        if length >= max_chars:
            break
    return "".join(parts).strip()


class RagProvider:
    """Common contract for retrieval backends.

    ``progress`` and ``status`` are independent notification streams; hosts
    subscribe to them and must tolerate events arriving at any time.
    """

    def __init__(self, settings: RagSettings) -> None:
        self.settings = settings
        self.progress: Signal[RagProgress] = Signal()
        self.status: Signal[str] = Signal()

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    @property
    def is_ready(self) -> bool:
        raise NotImplementedError

    @property
    def use_for_audio(self) -> bool:
        return self.settings.use_for_audio

    @property
    def use_for_screenshot(self) -> bool:
        return self.settings.use_for_screenshot

    @property
    def use_for_follow_up(self) -> bool:
        return self.settings.use_for_follow_up

    @property
    def query_max_chars(self) -> int:
        return self.settings.query_max_chars

    @property
    def default_query(self) -> Optional[str]:
        return self.settings.default_query

    async def initialize(self, cancel_event: Optional[asyncio.Event] = None) -> None:
        raise NotImplementedError

    async def build_payload(self, query: Optional[str]) -> RagPayload:
        raise NotImplementedError

    async def retrieve(self, query: Optional[str]) -> RetrievalOutcome:
        try:
            payload = await self.build_payload(query)
        except RetrievalError as exc:
            logger.warning("RAG query failed: %s", exc)
            return RetrievalOutcome.failed(str(exc))
        if payload.is_empty:
            return RetrievalOutcome.empty()
        return RetrievalOutcome.found(payload)

    async def aclose(self) -> None:
        return None

    def _resolve_source_folder(self) -> Path:
        folder = resolve_folder(self.settings.folder)
        logger.info("RAG folder resolved to: %s", folder)
        if not folder.is_dir():
            raise IndexBuildError(f"folder not found: {folder}")
        return folder

    async def _list_sources(self, folder: Path, default_extensions=None) -> List[Path]:
        kwargs = {"allowed": self.settings.allowed_extensions, "max_files": self.settings.max_files}
        if default_extensions is not None:
            kwargs["default"] = default_extensions
        try:
            return await asyncio.to_thread(iter_source_files, folder, **kwargs)
        except OSError as exc:
            raise IndexBuildError(f"cannot list {folder}: {exc}") from exc

    @staticmethod
    def _check_cancelled(cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise asyncio.CancelledError()


class LocalRagProvider(RagProvider):
    """TF-IDF retrieval over a local folder; the reference backend."""

    def __init__(self, settings: RagSettings) -> None:
        super().__init__(settings)
        self._index: Optional[LexicalIndex] = None

    @property
    def is_ready(self) -> bool:
        return self._index is not None

    @property
    def index(self) -> Optional[LexicalIndex]:
        return self._index

    async def initialize(self, cancel_event: Optional[asyncio.Event] = None) -> None:
        if not self.enabled:
            self.status.publish("RAG: disabled")
            return
        folder = self._resolve_source_folder()
        files = await self._list_sources(folder)
        if not files:
            self._index = LexicalIndex([], {})
            self.progress.publish(RagProgress(100, "Ready"))
            self.status.publish("RAG: ready (no content)")
            return

        self.status.publish(f"RAG: indexing {len(files)} files...")
        self.progress.publish(RagProgress(0, "Starting..."))
        builder = LexicalIndexBuilder()
        for position, path in enumerate(files):
            self._check_cancelled(cancel_event)
            self.progress.publish(
                RagProgress(to_percent(position, len(files)), f"Indexing {path.name} ({position + 1}/{len(files)})")
            )
            text = await asyncio.to_thread(read_source_text, path, self.settings.max_file_size_mb)
            for chunk in chunk_text(text, self.settings.chunk_chars, self.settings.chunk_overlap):
                builder.add(path.name, chunk)

        self._index = builder.build()
        self.progress.publish(RagProgress(100, "Ready"))
        if len(self._index):
            self.status.publish(f"RAG: ready ({len(self._index)} chunks)")
        else:
            self.status.publish("RAG: ready (no content)")
        logger.info("RAG indexed %d chunks from %d files.", len(self._index), len(files))

    async def build_payload(self, query: Optional[str]) -> RagPayload:
        if not self.enabled or self._index is None or not query or not query.strip():
            return RagPayload()
        hits = self._index.search(query, top_k=self.settings.top_k, min_score=self.settings.min_score)
        context = compose_context(hits, self.settings.max_context_chars)
        return RagPayload(context=context) if context else RagPayload()
