from collections.abc import AsyncIterator

import pytest

from rura.llm import PROMPT, GenerationStreamError, LLMClientError
from rura.services.rag.embedding_client import EmbeddingUnavailableError
from rura.services.rag.query import RetrievalOrchestrator, build_prompt
from rura.services.rag.types import GenerationRequest, SearchHit
from rura.services.rag.vector_store import StoredRecord, VectorStoreGateway


def _hit(fingerprint: str, score: float, text: str) -> SearchHit:
    return SearchHit(
        fingerprint=fingerprint,
        collection="docs_basic",
        score=score,
        payload={"fingerprint": fingerprint, "text": text, "url": f"https://site.test/{fingerprint}"},
    )


HITS = [
    _hit("p1", 0.9, "Pumps need oil weekly."),
    _hit("p2", 0.5, "The cafeteria opens at noon."),
    _hit("p3", 0.8, "Oil pumps overheat without lubrication."),
]


class StaticBackend:
    def __init__(self, hits: list[SearchHit]) -> None:
        self._hits = hits

    async def collection_dimension(self, collection: str) -> int | None:
        return 2

    async def create_collection(self, collection: str, dimension: int) -> None:
        return None

    async def upsert(self, collection: str, records: list[StoredRecord]) -> None:
        return None

    async def search(self, collection: str, vector: list[float], limit: int) -> list[SearchHit]:
        return list(self._hits)

    async def count(self, collection: str) -> int:
        return len(self._hits)

    async def delete_collection(self, collection: str) -> bool:
        return True

    async def aclose(self) -> None:
        return None


class FakeEmbeddingClient:
    async def embed_texts(self, texts: list[str]) -> list[list[float]]:
        return [[1.0, 0.0] for _ in texts]


class UnavailableEmbeddingClient:
    async def embed_texts(self, texts: list[str]) -> list[list[float]]:
        raise EmbeddingUnavailableError("embedding service unreachable")


class FakeLLMClient:
    def __init__(self, tokens: list[str], *, fail_with: Exception | None = None) -> None:
        self._tokens = tokens
        self._fail_with = fail_with
        self.requests: list[GenerationRequest] = []
        self.closed = False

    async def stream(self, request: GenerationRequest) -> AsyncIterator[str]:
        self.requests.append(request)
        try:
            for token in self._tokens:
                yield token
            if self._fail_with is not None:
                raise self._fail_with
        finally:
            self.closed = True

    async def generate(self, request: GenerationRequest) -> str:
        self.requests.append(request)
        return "".join(self._tokens)


def _orchestrator(llm_client, embedding_client=None) -> RetrievalOrchestrator:
    return RetrievalOrchestrator(
        embedding_client or FakeEmbeddingClient(),
        VectorStoreGateway(StaticBackend(HITS)),
        llm_client,
        default_model="openhermes",
    )


@pytest.mark.asyncio
async def test_retrieve_returns_top_k_by_score() -> None:
    context = await _orchestrator(FakeLLMClient([])).retrieve("oil pumps", ["docs_basic"], top_k=2)

    assert [hit.score for hit in context.hits] == [0.9, 0.8]
    assert context.query == "oil pumps"
    assert context.collections == ("docs_basic",)


def test_build_prompt_lists_passages_in_rank_order() -> None:
    prompt = build_prompt("Why do pumps fail?", [HITS[0], HITS[2]])

    assert prompt == PROMPT.format(
        context="- Pumps need oil weekly.\n- Oil pumps overheat without lubrication.\n",
        question="Why do pumps fail?",
    )
    assert "Question: Why do pumps fail?" in prompt


@pytest.mark.asyncio
async def test_stream_answer_emits_hits_tokens_then_done() -> None:
    llm_client = FakeLLMClient(["# Pumps", "\nUse oil."])

    events = [
        event
        async for event in _orchestrator(llm_client).stream_answer("pumps?", ["docs_basic"], 2)
    ]

    assert [event.kind for event in events] == ["hits", "token", "token", "done"]
    assert [hit.fingerprint for hit in events[0].hits] == ["p1", "p3"]
    assert llm_client.requests[0].model == "openhermes"
    assert "- Pumps need oil weekly.\n" in llm_client.requests[0].prompt


@pytest.mark.asyncio
async def test_interrupted_stream_keeps_partial_answer() -> None:
    llm_client = FakeLLMClient(
        ["Pumps ", "need"],
        fail_with=GenerationStreamError("stream ended before the final frame", "Pumps need"),
    )

    answer = await _orchestrator(llm_client).answer("pumps?", ["docs_basic"], 2, model="tiny")

    assert answer.answer == "Pumps need"
    assert answer.interrupted is True
    assert answer.interruption_reason == "stream ended before the final frame"
    assert answer.model == "tiny"
    assert len(answer.hits) == 2


@pytest.mark.asyncio
async def test_closing_answer_stream_early_closes_generation() -> None:
    llm_client = FakeLLMClient(["a", "b", "c", "d"])
    events = _orchestrator(llm_client).stream_answer("pumps?", ["docs_basic"], 2)

    assert (await anext(events)).kind == "hits"
    assert (await anext(events)).text == "a"
    await events.aclose()

    assert llm_client.closed is True


@pytest.mark.asyncio
async def test_unreachable_services_are_hard_errors() -> None:
    with pytest.raises(EmbeddingUnavailableError):
        await _orchestrator(FakeLLMClient([]), UnavailableEmbeddingClient()).answer(
            "pumps?", ["docs_basic"], 2
        )

    with pytest.raises(LLMClientError):
        await _orchestrator(FakeLLMClient([], fail_with=LLMClientError("refused"))).answer(
            "pumps?", ["docs_basic"], 2
        )


@pytest.mark.asyncio
async def test_answer_blocking_uses_generate() -> None:
    llm_client = FakeLLMClient(["Complete answer."])

    answer = await _orchestrator(llm_client).answer_blocking("pumps?", ["docs_basic"], 1)

    assert answer.answer == "Complete answer."
    assert answer.interrupted is False
    assert [hit.fingerprint for hit in answer.hits] == ["p1"]


@pytest.mark.asyncio
async def test_query_validation() -> None:
    orchestrator = _orchestrator(FakeLLMClient([]))

    with pytest.raises(ValueError):
        await orchestrator.retrieve("   ", ["docs_basic"], 2)
    with pytest.raises(ValueError):
        await orchestrator.retrieve("pumps?", ["docs_basic"], 0)
