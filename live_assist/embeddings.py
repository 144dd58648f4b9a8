"""Retrieval backed by Gemini text embeddings and an in-memory dense index."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import List, Optional, Sequence, Tuple, Type

from .config import RagSettings
from .errors import AssistError, IndexBuildError, RetrievalError
from .gemini_api import GeminiRestClient
from .index import EmbeddingIndex
from .models import RagPayload, RagProgress
from .preprocessor import chunk_text, read_source_text
from .rag import RagProvider, compose_context
from .utils import clamp, to_percent

logger = logging.getLogger(__name__)

DOCUMENT_TASK = "RETRIEVAL_DOCUMENT"


def parse_embeddings(body: dict) -> List[List[float]]:
    """Vectors from a ``batchEmbedContents`` or ``embedContent`` response."""

    vectors = []
    for item in body.get("embeddings") or []:
        values = item.get("values") if isinstance(item, dict) else None
        if values:
            vectors.append([float(value) for value in values])
    if not vectors:
        single = body.get("embedding")
        if isinstance(single, dict) and single.get("values"):
            vectors.append([float(value) for value in single["values"]])
    return vectors


class GeminiEmbeddingsProvider(RagProvider):
    """Embeds local chunks remotely, ranks them locally by cosine similarity."""

    def __init__(self, settings: RagSettings, rest: GeminiRestClient) -> None:
        super().__init__(settings)
        self._rest = rest
        self._index: Optional[EmbeddingIndex] = None

    @property
    def is_ready(self) -> bool:
        return self._index is not None

    @property
    def batch_size(self) -> int:
        return int(clamp(self.settings.embedding_batch_size, 1, 64))

    async def initialize(self, cancel_event: Optional[asyncio.Event] = None) -> None:
        if not self.enabled:
            self.status.publish("RAG: disabled")
            return
        if not self._rest.is_configured:
            raise IndexBuildError("Gemini Embeddings needs GEMINI_API_KEY.")

        folder = self._resolve_source_folder()
        files = await self._list_sources(folder)
        if not files:
            self._index = EmbeddingIndex.from_vectors([], [])
            self.progress.publish(RagProgress(100, "Ready"))
            self.status.publish("RAG: ready (no content)")
            return

        self.status.publish(f"RAG: embedding {len(files)} files...")
        self.progress.publish(RagProgress(0, "Starting..."))
        items: List[Tuple[str, str]] = []
        vectors: List[List[float]] = []
        pending: List[Tuple[str, str]] = []
        for position, path in enumerate(files):
            self._check_cancelled(cancel_event)
            self.progress.publish(
                RagProgress(to_percent(position, len(files)), f"Indexing {path.name} ({position + 1}/{len(files)})")
            )
            text = await asyncio.to_thread(read_source_text, path, self.settings.max_file_size_mb)
            for chunk in chunk_text(text, self.settings.chunk_chars, self.settings.chunk_overlap):
                pending.append((path.name, chunk))
                if len(pending) >= self.batch_size:
                    await self._embed_pending(pending, items, vectors)
                    pending = []
        if pending:
            await self._embed_pending(pending, items, vectors)

        self._index = EmbeddingIndex.from_vectors(items, vectors)
        self.progress.publish(RagProgress(100, "Ready"))
        if len(self._index):
            self.status.publish(f"RAG: ready ({len(self._index)} chunks)")
        else:
            self.status.publish("RAG: ready (no content)")
        logger.info("RAG embeddings indexed %d chunks from %d files.", len(self._index), len(files))

    async def _embed_pending(
        self,
        pending: Sequence[Tuple[str, str]],
        items: List[Tuple[str, str]],
        vectors: List[List[float]],
    ) -> None:
        batch = await self._embed(
            [text for _, text in pending],
            [source for source, _ in pending],
            self.settings.embedding_task_document,
            IndexBuildError,
        )
        if len(batch) != len(pending):
            logger.warning("RAG embeddings batch mismatch: expected %d, got %d", len(pending), len(batch))
        count = min(len(batch), len(pending))
        items.extend(pending[:count])
        vectors.extend(batch[:count])

    async def _embed(
        self,
        texts: Sequence[str],
        titles: Optional[Sequence[str]],
        task_type: str,
        error_cls: Type[AssistError],
    ) -> List[List[float]]:
        model = self.settings.embedding_model
        requests = []
        for position, text in enumerate(texts):
            request = {"model": f"models/{model}", "content": {"parts": [{"text": text}]}, "taskType": task_type}
            if self.settings.embedding_output_dim > 0:
                request["outputDimensionality"] = self.settings.embedding_output_dim
            if task_type.upper() == DOCUMENT_TASK and titles and position < len(titles) and titles[position]:
                request["title"] = titles[position]
            requests.append(request)

        started = time.perf_counter()
        if len(requests) == 1:
            body = await self._rest.post_json(f"models/{model}:embedContent", requests[0], error_cls=error_cls)
        else:
            body = await self._rest.post_json(
                f"models/{model}:batchEmbedContents", {"requests": requests}, error_cls=error_cls
            )
        vectors = parse_embeddings(body)
        logger.debug(
            "RAG embeddings (%s) in %.0f ms, items=%d", task_type, (time.perf_counter() - started) * 1000, len(vectors)
        )
        return vectors

    async def build_payload(self, query: Optional[str]) -> RagPayload:
        if not self.enabled or not self._index or not query or not query.strip():
            return RagPayload()
        vectors = await self._embed([query], None, self.settings.embedding_task_query, RetrievalError)
        if not vectors:
            return RagPayload()
        hits = self._index.search(vectors[0], top_k=self.settings.top_k, min_score=self.settings.min_score)
        context = compose_context(hits, self.settings.max_context_chars)
        return RagPayload(context=context) if context else RagPayload()

    async def aclose(self) -> None:
        await self._rest.aclose()
