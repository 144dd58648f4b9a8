"""Startup selection of the retrieval backend."""

from __future__ import annotations

import logging
from typing import Optional

from .config import RagProviderKind, Settings, resolve_provider_kind
from .embeddings import GeminiEmbeddingsProvider
from .file_search import GeminiFileSearchProvider
from .gemini_api import GeminiRestClient
from .rag import LocalRagProvider, RagProvider

logger = logging.getLogger(__name__)


def create_provider(settings: Settings, *, rest: Optional[GeminiRestClient] = None) -> RagProvider:
    kind = resolve_provider_kind(settings.rag.enabled, settings.rag.provider)
    logger.info("RAG provider: %s", kind.value)
    if kind is RagProviderKind.LOCAL:
        return LocalRagProvider(settings.rag)
    if rest is None:
        rest = GeminiRestClient(settings.gemini.api_key, timeout=settings.gemini.timeout_seconds)
    if kind is RagProviderKind.REMOTE_EMBEDDING:
        return GeminiEmbeddingsProvider(settings.rag, rest)
    return GeminiFileSearchProvider(settings.rag, rest)
