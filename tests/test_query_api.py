import asyncio
from collections.abc import AsyncIterator, Callable
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from rura.config import get_settings
from rura.context import RagContext, build_context
from rura.llm import GenerationStreamError, LLMClientError
from rura.main import app, get_rag_context
from rura.services.rag.embedding_client import EmbeddingUnavailableError
from rura.services.rag.sqlite_store import SqliteVectorStore
from rura.services.rag.types import Chunk, EmbeddedChunk, GenerationRequest

COLLECTION = "rura_collection_basic"


class FakeEmbeddingClient:
    async def embed_texts(self, texts: list[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for text in texts:
            normalized = text.lower()
            vectors.append(
                [
                    float(normalized.count("pump")),
                    float(normalized.count("valve")),
                ]
            )
        return vectors


class UnavailableEmbeddingClient:
    async def embed_texts(self, texts: list[str]) -> list[list[float]]:
        raise EmbeddingUnavailableError("embedding service unreachable")


class FakeLLMClient:
    def __init__(self, tokens: list[str], *, fail_with: Exception | None = None) -> None:
        self._tokens = tokens
        self._fail_with = fail_with
        self.requests: list[GenerationRequest] = []

    async def stream(self, request: GenerationRequest) -> AsyncIterator[str]:
        self.requests.append(request)
        for token in self._tokens:
            yield token
        if self._fail_with is not None:
            raise self._fail_with

    async def generate(self, request: GenerationRequest) -> str:
        self.requests.append(request)
        return "".join(self._tokens)


def _embedded(fingerprint: str, text: str, vector: list[float]) -> EmbeddedChunk:
    return EmbeddedChunk(
        chunk=Chunk(
            url=f"https://site.test/{fingerprint}",
            title="Maintenance",
            ordinal=0,
            text=text,
            token_count=len(text.split()),
            fingerprint=fingerprint,
            collection=COLLECTION,
        ),
        vector=vector,
    )


ContextFactory = Callable[..., RagContext]


@pytest.fixture
def make_context(client: TestClient, tmp_path: Path) -> ContextFactory:
    def factory(llm_client, embedding_client=None) -> RagContext:
        context = build_context(
            get_settings(),
            embedding_client=embedding_client or FakeEmbeddingClient(),
            llm_client=llm_client,
            backend=SqliteVectorStore(tmp_path / "vectors.db"),
        )
        asyncio.run(
            context.gateway.upsert(
                COLLECTION,
                [
                    _embedded("pumps", "Pumps need oil weekly.", [1.0, 0.0]),
                    _embedded("valves", "Valves need checks.", [0.0, 1.0]),
                ],
            )
        )
        app.dependency_overrides[get_rag_context] = lambda: context
        return context

    return factory


def test_query_returns_answer_sources_and_meta(client: TestClient, make_context: ContextFactory) -> None:
    llm_client = FakeLLMClient(["# Pumps", "\nOil them weekly."])
    make_context(llm_client)

    response = client.post("/query", json={"query": "How do I keep a pump healthy?", "k": 1})

    assert response.status_code == 200
    payload = response.json()
    assert payload["answer"] == "# Pumps\nOil them weekly."
    assert payload["interrupted"] is False
    assert payload["interruption_reason"] is None
    assert [source["fingerprint"] for source in payload["sources"]] == ["pumps"]
    assert payload["sources"][0]["url"] == "https://site.test/pumps"
    assert payload["meta"]["retrieval_k"] == 1
    assert payload["meta"]["collections"] == [COLLECTION]
    assert payload["meta"]["model"] == "openhermes2.5-mistral:7b-q6_K"
    assert "- Pumps need oil weekly.\n" in llm_client.requests[0].prompt


def test_query_reports_interrupted_answer(client: TestClient, make_context: ContextFactory) -> None:
    make_context(
        FakeLLMClient(
            ["Pumps need"],
            fail_with=GenerationStreamError("connection lost mid-stream", "Pumps need"),
        )
    )

    response = client.post("/query", json={"query": "pump care?", "model": "tiny"})

    assert response.status_code == 200
    payload = response.json()
    assert payload["answer"] == "Pumps need"
    assert payload["interrupted"] is True
    assert payload["interruption_reason"] == "connection lost mid-stream"
    assert payload["meta"]["model"] == "tiny"


def test_query_streams_plain_text(client: TestClient, make_context: ContextFactory) -> None:
    make_context(
        FakeLLMClient(
            ["Valves ", "need"],
            fail_with=GenerationStreamError("stream ended before the final frame", "Valves need"),
        )
    )

    response = client.post("/query", json={"query": "valve care?", "stream": True})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert response.text == "Valves need\n\n[answer interrupted: stream ended before the final frame]\n"


def test_query_maps_service_failures(client: TestClient, make_context: ContextFactory) -> None:
    make_context(FakeLLMClient([]), UnavailableEmbeddingClient())
    assert client.post("/query", json={"query": "pump?"}).status_code == 503
    assert client.post("/query", json={"query": "pump?", "stream": True}).status_code == 503

    make_context(FakeLLMClient([], fail_with=LLMClientError("connection refused")))
    response = client.post("/query", json={"query": "pump?"})
    assert response.status_code == 502
    assert "LLM request failed" in response.json()["detail"]
    assert client.post("/query", json={"query": "pump?", "stream": True}).status_code == 502


def test_query_rejects_blank_and_invalid_requests(client: TestClient, make_context: ContextFactory) -> None:
    make_context(FakeLLMClient([]))

    assert client.post("/query", json={"query": "   "}).status_code == 400
    assert client.post("/query", json={"query": ""}).status_code == 422
    assert client.post("/query", json={"query": "pump?", "k": 0}).status_code == 422


def test_drop_removes_configured_collections(client: TestClient, make_context: ContextFactory) -> None:
    make_context(FakeLLMClient([]))

    response = client.delete("/drop")
    assert response.status_code == 200
    assert response.json() == {"dropped": {COLLECTION: True}}

    response = client.delete("/drop", params={"collection": "rura_collection_other"})
    assert response.json() == {"dropped": {"rura_collection_other": False}}
