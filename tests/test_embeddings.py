"""Tests for the Gemini embeddings provider against a mocked transport."""

from __future__ import annotations

import json

import httpx
import pytest

from live_assist.config import RagSettings
from live_assist.embeddings import GeminiEmbeddingsProvider, parse_embeddings
from live_assist.errors import IndexBuildError
from live_assist.gemini_api import GeminiRestClient
from live_assist.models import OutcomeKind


def vector_for(text: str):
    return [1.0, 0.0] if "apple" in text.lower() else [0.0, 1.0]


class EmbeddingService:
    """Fake ``embedContent`` / ``batchEmbedContents`` endpoints."""

    def __init__(self) -> None:
        self.requests = []
        self.fail_queries = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append((request.url.path, request.headers.get("x-goog-api-key"), body))
        if request.url.path.endswith(":batchEmbedContents"):
            return httpx.Response(
                200,
                json={"embeddings": [{"values": vector_for(item["content"]["parts"][0]["text"])} for item in body["requests"]]},
            )
        if self.fail_queries:
            return httpx.Response(429, json={"error": {"message": "quota exhausted"}})
        return httpx.Response(200, json={"embedding": {"values": vector_for(body["content"]["parts"][0]["text"])}})


@pytest.fixture
def corpus(tmp_path):
    (tmp_path / "fruit.txt").write_text("Apples grow in orchards.", encoding="utf-8")
    (tmp_path / "space.txt").write_text("Rockets need engines.", encoding="utf-8")
    return tmp_path


@pytest.fixture
def service():
    return EmbeddingService()


def make_provider(folder, service, api_key="test-key", **overrides):
    settings = RagSettings(enabled=True, provider="GeminiEmbeddings", folder=str(folder), min_score=0.5, **overrides)
    rest = GeminiRestClient(api_key, transport=httpx.MockTransport(service))
    return GeminiEmbeddingsProvider(settings, rest)


class TestParseEmbeddings:
    def test_batch_shape(self):
        assert parse_embeddings({"embeddings": [{"values": [1, 2]}, {"values": [3, 4]}]}) == [[1.0, 2.0], [3.0, 4.0]]

    def test_single_shape(self):
        assert parse_embeddings({"embedding": {"values": [0.5]}}) == [[0.5]]

    def test_empty_body(self):
        assert parse_embeddings({}) == []


class TestGeminiEmbeddingsProvider:
    async def test_indexes_in_batches_and_answers(self, corpus, service):
        provider = make_provider(corpus, service)

        await provider.initialize()
        outcome = await provider.retrieve("apple pie")
        await provider.aclose()

        assert provider.is_ready
        assert outcome.kind is OutcomeKind.FOUND
        assert "Source: fruit.txt" in outcome.payload.context
        assert "space.txt" not in outcome.payload.context

        path, key, body = service.requests[0]
        assert path == "/v1beta/models/gemini-embedding-001:batchEmbedContents"
        assert key == "test-key"
        assert [item["title"] for item in body["requests"]] == ["fruit.txt", "space.txt"]
        assert body["requests"][0]["taskType"] == "RETRIEVAL_DOCUMENT"

        query_path, _, query_body = service.requests[-1]
        assert query_path.endswith(":embedContent")
        assert query_body["taskType"] == "RETRIEVAL_QUERY"
        assert "title" not in query_body

    async def test_batch_size_splits_requests(self, corpus, service):
        provider = make_provider(corpus, service, embedding_batch_size=1, embedding_output_dim=2)

        await provider.initialize()
        await provider.aclose()

        assert len(service.requests) == 2
        assert all(body["outputDimensionality"] == 2 for _, _, body in service.requests)

    async def test_query_failure_is_reported(self, corpus, service):
        provider = make_provider(corpus, service)
        await provider.initialize()
        service.fail_queries = True

        outcome = await provider.retrieve("apple")
        await provider.aclose()

        assert outcome.kind is OutcomeKind.FAILED
        assert outcome.reason == "quota exhausted"

    async def test_requires_api_key(self, corpus, service):
        provider = make_provider(corpus, service, api_key=None)

        with pytest.raises(IndexBuildError, match="GEMINI_API_KEY"):
            await provider.initialize()
        assert service.requests == []

    async def test_empty_folder(self, tmp_path, service):
        provider = make_provider(tmp_path, service)

        await provider.initialize()

        assert provider.is_ready
        assert (await provider.retrieve("apple")).kind is OutcomeKind.EMPTY
        assert service.requests == []
