from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from contextlib import aclosing
from dataclasses import dataclass
import logging
from typing import Literal

from rura.llm import PROMPT, GenerationStreamError, LLMClient
from rura.services.rag.embedding_client import EmbeddingClient, EmbeddingClientError
from rura.services.rag.types import GenerationRequest, QueryAnswer, QueryContext, SearchHit
from rura.services.rag.vector_store import VectorStoreGateway

logger = logging.getLogger(__name__)

AnswerEventKind = Literal["hits", "token", "done", "interrupted"]


@dataclass(frozen=True)
class AnswerEvent:
    kind: AnswerEventKind
    text: str = ""
    hits: tuple[SearchHit, ...] = ()
    reason: str | None = None


def build_prompt(query: str, hits: Sequence[SearchHit]) -> str:
    context = "".join(f"- {hit.text}\n" for hit in hits)
    return PROMPT.format(context=context, question=query)


class RetrievalOrchestrator:
    def __init__(
        self,
        embedding_client: EmbeddingClient,
        gateway: VectorStoreGateway,
        llm_client: LLMClient,
        *,
        default_model: str,
    ) -> None:
        self._embedding_client = embedding_client
        self._gateway = gateway
        self._llm_client = llm_client
        self._default_model = default_model

    async def retrieve(self, query: str, collections: Sequence[str], top_k: int) -> QueryContext:
        normalized_query = query.strip()
        if not normalized_query:
            raise ValueError("query must not be empty")
        if top_k < 1:
            raise ValueError("top_k must be >= 1")
        if not collections:
            raise ValueError("at least one collection is required")

        vectors = await self._embedding_client.embed_texts([normalized_query])
        if not vectors:
            raise EmbeddingClientError("no embedding returned for the query")

        hits = await self._gateway.query(list(collections), vectors[0], top_k)
        logger.info("Retrieved %d hits from %s", len(hits), ", ".join(collections))
        return QueryContext(
            query=normalized_query,
            collections=tuple(collections),
            top_k=top_k,
            hits=tuple(hits),
        )

    def build_prompt(self, query: str, hits: Sequence[SearchHit]) -> str:
        return build_prompt(query, hits)

    async def stream_answer(
        self,
        query: str,
        collections: Sequence[str],
        top_k: int,
        model: str | None = None,
    ) -> AsyncIterator[AnswerEvent]:
        context = await self.retrieve(query, collections, top_k)
        yield AnswerEvent(kind="hits", hits=context.hits)

        request = GenerationRequest(
            prompt=self.build_prompt(context.query, context.hits),
            model=model or self._default_model,
        )
        async with aclosing(self._llm_client.stream(request)) as tokens:
            try:
                async for token in tokens:
                    yield AnswerEvent(kind="token", text=token)
            except GenerationStreamError as exc:
                logger.warning("Answer stream interrupted: %s", exc.reason)
                yield AnswerEvent(kind="interrupted", reason=exc.reason)
                return

        yield AnswerEvent(kind="done")

    async def answer(
        self,
        query: str,
        collections: Sequence[str],
        top_k: int,
        model: str | None = None,
    ) -> QueryAnswer:
        parts: list[str] = []
        hits: tuple[SearchHit, ...] = ()
        reason: str | None = None
        interrupted = False

        async with aclosing(self.stream_answer(query, collections, top_k, model)) as events:
            async for event in events:
                if event.kind == "hits":
                    hits = event.hits
                elif event.kind == "token":
                    parts.append(event.text)
                elif event.kind == "interrupted":
                    interrupted = True
                    reason = event.reason

        return QueryAnswer(
            answer="".join(parts),
            model=model or self._default_model,
            hits=hits,
            interrupted=interrupted,
            interruption_reason=reason,
        )

    async def answer_blocking(
        self,
        query: str,
        collections: Sequence[str],
        top_k: int,
        model: str | None = None,
    ) -> QueryAnswer:
        context = await self.retrieve(query, collections, top_k)
        resolved_model = model or self._default_model
        answer = await self._llm_client.generate(
            GenerationRequest(prompt=self.build_prompt(context.query, context.hits), model=resolved_model)
        )
        return QueryAnswer(answer=answer, model=resolved_model, hits=context.hits)
