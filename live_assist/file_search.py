"""Retrieval delegated to a Gemini File Search store attached as a model tool."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any, Dict, Optional, Tuple

from .config import RagSettings
from .errors import IndexBuildError, IndexingTimeoutError, RetrievalError
from .gemini_api import UPLOAD_URL, GeminiRestClient
from .models import RagPayload, RagProgress
from .preprocessor import DOCUMENT_EXTENSIONS, mime_type_for, read_source_bytes
from .rag import RagProvider
from .utils import clamp, to_percent

logger = logging.getLogger(__name__)

STORE_PREFIX = "fileSearchStores/"
_STORE_ID_RE = re.compile(r"[a-z0-9-]{1,40}")


def normalize_store_name(raw: Optional[str]) -> Optional[str]:
    """Return ``fileSearchStores/<id>`` for a valid id, else ``None``."""

    if not raw or not raw.strip():
        return None
    value = raw.strip()
    if value.lower().startswith(STORE_PREFIX.lower()):
        value = value[len(STORE_PREFIX) :]
    if not _STORE_ID_RE.fullmatch(value):
        return None
    return STORE_PREFIX + value


def parse_operation(body: Dict[str, Any]) -> Tuple[Optional[str], bool, Optional[str]]:
    error = body.get("error")
    message = error.get("message") if isinstance(error, dict) else None
    return body.get("name"), bool(body.get("done")), message


class GeminiFileSearchProvider(RagProvider):
    """Uploads the corpus to a managed store and hands the model a search tool."""

    def __init__(self, settings: RagSettings, rest: GeminiRestClient) -> None:
        super().__init__(settings)
        self._rest = rest
        self._store_name: Optional[str] = None
        self._ready = False

    @property
    def is_ready(self) -> bool:
        return self._ready and self._store_name is not None

    @property
    def store_name(self) -> Optional[str]:
        return self._store_name

    @property
    def operation_timeout(self) -> float:
        return max(30.0, self.settings.file_search_operation_timeout_seconds)

    @property
    def poll_interval(self) -> float:
        return float(clamp(self.settings.file_search_operation_poll_seconds, 1.0, 60.0))

    async def initialize(self, cancel_event: Optional[asyncio.Event] = None) -> None:
        self._ready = False
        if not self.enabled:
            self.status.publish("RAG: disabled")
            return
        if not self._rest.is_configured:
            raise IndexBuildError("Gemini File Search needs GEMINI_API_KEY.")

        raw_name = (self.settings.file_search_store_name or "").strip()
        self._store_name = normalize_store_name(raw_name)
        if self._store_name is None:
            display_name = self.settings.file_search_display_name
            if raw_name:
                display_name = raw_name
                logger.info(
                    "RAG Gemini: store name is not a valid resource id. Creating a store with displayName=%r.",
                    display_name,
                )
            self._store_name = await self._create_store(display_name)
            self.status.publish(f"RAG: Gemini store created: {self._store_name}")
        else:
            self.status.publish(f"RAG: Gemini store: {self._store_name}")

        if not self.settings.file_search_upload_on_start:
            self._ready = True
            self.status.publish("RAG: Gemini File Search ready (upload skipped).")
            await self._log_store_stats()
            return

        folder = self._resolve_source_folder()
        files = await self._list_sources(folder, DOCUMENT_EXTENSIONS)
        if not files:
            self._ready = True
            self.progress.publish(RagProgress(100, "Ready"))
            self.status.publish("RAG: ready (no content)")
            return

        self.status.publish(f"RAG: uploading {len(files)} files to Gemini store...")
        self.progress.publish(RagProgress(0, "Starting upload..."))
        for position, path in enumerate(files):
            self._check_cancelled(cancel_event)
            self.progress.publish(
                RagProgress(to_percent(position, len(files)), f"Uploading {path.name} ({position + 1}/{len(files)})")
            )
            data = await asyncio.to_thread(read_source_bytes, path, self.settings.max_file_size_mb)
            if not data:
                continue
            try:
                await self._upload(path.name, data, mime_type_for(path), cancel_event)
            except IndexingTimeoutError as exc:
                logger.warning("RAG Gemini indexing of %s: %s Continuing.", path.name, exc)

        await self._wait_for_documents_active(cancel_event)
        self._ready = True
        self.progress.publish(RagProgress(100, "Ready"))
        self.status.publish("RAG: Gemini File Search ready.")
        await self._log_store_stats()

    async def _create_store(self, display_name: str) -> str:
        logger.info("RAG Gemini: creating File Search store...")
        body = await self._rest.post_json("fileSearchStores", {"displayName": display_name}, error_cls=IndexBuildError)
        name = body.get("name")
        if not name:
            raise IndexBuildError("Gemini File Search store creation did not return a name.")
        logger.info("RAG Gemini store created: %s", name)
        return name

    def _chunking_config(self) -> Optional[Dict[str, Any]]:
        white_space = {}
        if self.settings.file_search_chunk_max_tokens > 0:
            white_space["maxTokensPerChunk"] = self.settings.file_search_chunk_max_tokens
        if self.settings.file_search_chunk_max_overlap_tokens > 0:
            white_space["maxOverlapTokens"] = self.settings.file_search_chunk_max_overlap_tokens
        return {"whiteSpaceConfig": white_space} if white_space else None

    async def _upload(
        self,
        display_name: str,
        data: bytes,
        mime_type: str,
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        logger.info("RAG Gemini uploading: %s", display_name)
        metadata: Dict[str, Any] = {"displayName": display_name, "mimeType": mime_type}
        chunking = self._chunking_config()
        if chunking:
            metadata["chunkingConfig"] = chunking
        body = await self._rest.resumable_upload(
            f"{UPLOAD_URL}{self._store_name}:uploadToFileSearchStore",
            data,
            mime_type,
            metadata,
            error_cls=IndexBuildError,
        )
        name, done, error = parse_operation(body)
        if error:
            raise IndexBuildError(error)
        if not done and name:
            logger.info("RAG Gemini waiting for indexing: %s", name)
            await self._wait_operation(name, cancel_event)

    async def _wait_operation(self, name: str, cancel_event: Optional[asyncio.Event]) -> None:
        deadline = time.monotonic() + self.operation_timeout
        while time.monotonic() < deadline:
            self._check_cancelled(cancel_event)
            await asyncio.sleep(self.poll_interval)
            body = await self._rest.get_json(name, error_cls=IndexBuildError)
            _, done, error = parse_operation(body)
            if error:
                raise IndexBuildError(error)
            if done:
                logger.info("RAG Gemini indexing done: %s", name)
                return
        raise IndexingTimeoutError("Gemini File Search indexing timed out.")

    async def _wait_for_documents_active(self, cancel_event: Optional[asyncio.Event]) -> None:
        deadline = time.monotonic() + self.operation_timeout
        while time.monotonic() < deadline:
            self._check_cancelled(cancel_event)
            stats = await self._document_stats()
            if stats is not None:
                active, pending, failed = stats
                logger.info("RAG Gemini docs: active=%d, pending=%d, failed=%d", active, pending, failed)
                if pending == 0:
                    return
            await asyncio.sleep(self.poll_interval)
        logger.warning("RAG Gemini docs: pending after timeout, continuing anyway.")

    async def _document_stats(self) -> Optional[Tuple[int, int, int]]:
        try:
            body = await self._rest.get_json(f"{self._store_name}/documents", params={"pageSize": 20}, error_cls=RetrievalError)
        except RetrievalError as exc:
            logger.warning("RAG Gemini list documents failed: %s", exc)
            return None
        states = [document.get("state") for document in body.get("documents") or [] if isinstance(document, dict)]
        return states.count("STATE_ACTIVE"), states.count("STATE_PENDING"), states.count("STATE_FAILED")

    async def _log_store_stats(self) -> None:
        try:
            body = await self._rest.get_json(self._store_name, error_cls=RetrievalError)
        except RetrievalError as exc:
            logger.warning("RAG Gemini store stats failed: %s", exc)
            return
        logger.info(
            "RAG Gemini store stats: active=%s, pending=%s, failed=%s, sizeBytes=%s",
            body.get("activeDocumentsCount", "?"),
            body.get("pendingDocumentsCount", "?"),
            body.get("failedDocumentsCount", "?"),
            body.get("sizeBytes", "?"),
        )

    async def build_payload(self, query: Optional[str]) -> RagPayload:
        if not self.enabled or not self.is_ready:
            return RagPayload()
        file_search: Dict[str, Any] = {"file_search_store_names": [self._store_name]}
        metadata_filter = (self.settings.file_search_metadata_filter or "").strip()
        if metadata_filter:
            file_search["metadata_filter"] = metadata_filter
        return RagPayload(tools=[{"file_search": file_search}])

    async def aclose(self) -> None:
        await self._rest.aclose()
