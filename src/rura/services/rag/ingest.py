from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import replace
import inspect
import logging
import time

import httpx

from rura.llm import LLMClient, LLMClientError, summarize
from rura.services.rag.chunker import (
    DEFAULT_TOKENIZER,
    Tokenizer,
    chunk_page,
    embedding_input,
    summary_chunk,
)
from rura.services.rag.embedding_client import (
    EmbeddingClient,
    EmbeddingClientError,
    EmbeddingUnavailableError,
)
from rura.services.rag.fetcher import ExtractionError, FetchError, PageFetcher
from rura.services.rag.sitemap import require_site_url, resolve_sitemap
from rura.services.rag.types import (
    Chunk,
    EmbeddedChunk,
    IngestionProgress,
    IngestionSummary,
    PageResult,
    PageStage,
)
from rura.services.rag.vector_store import (
    VectorStoreError,
    VectorStoreGateway,
    VectorStoreUnavailableError,
)

logger = logging.getLogger(__name__)

PROGRESS_LOG_INTERVAL = 10
SUMMARY_FILTER = "summary"

ProgressCallback = Callable[[IngestionProgress], Awaitable[None] | None]


def is_summary_collection(collection: str) -> bool:
    return collection.endswith(f"_{SUMMARY_FILTER}")


class IngestionOrchestrator:
    def __init__(
        self,
        fetcher: PageFetcher,
        embedding_client: EmbeddingClient,
        gateway: VectorStoreGateway,
        *,
        http_client: httpx.AsyncClient,
        max_tokens: int,
        overlap_tokens: int,
        tokenizer: Tokenizer = DEFAULT_TOKENIZER,
        concurrency: int = 4,
        sitemap_timeout_seconds: float = 20.0,
        llm_client: LLMClient | None = None,
        summary_model: str | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if overlap_tokens >= max_tokens:
            raise ValueError("overlap_tokens must be smaller than max_tokens")

        self._fetcher = fetcher
        self._embedding_client = embedding_client
        self._gateway = gateway
        self._http_client = http_client
        self._max_tokens = max_tokens
        self._overlap_tokens = overlap_tokens
        self._tokenizer = tokenizer
        self._concurrency = concurrency
        self._sitemap_timeout_seconds = sitemap_timeout_seconds
        self._llm_client = llm_client
        self._summary_model = summary_model

    async def run(
        self,
        root_url: str,
        collections: Sequence[str],
        *,
        sitemap_url: str | None = None,
        cancel_event: asyncio.Event | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> IngestionSummary:
        """Crawl ``root_url`` and store its pages in every collection.

        Collections named ``<base>_summary`` receive one LLM summary per page
        instead of the page chunks. ``on_progress`` may be a plain function or
        a coroutine function; it is called after every processed page.

        Every discovered page ends up stored, failed or cancelled. Sitemaps
        not yet read when ``cancel_event`` is set are not fetched, so their
        pages are neither discovered nor counted.
        """
        root_url = require_site_url(root_url)
        targets = tuple(collections)
        if not targets:
            raise ValueError("at least one target collection is required")
        if any(is_summary_collection(name) for name in targets) and (
            self._llm_client is None or not self._summary_model
        ):
            raise ValueError("summary collections need an LLM client and a summary model")

        started = time.perf_counter()
        cancel_event = cancel_event or asyncio.Event()
        progress = IngestionProgress()
        results: list[PageResult] = []
        queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=self._concurrency * 2)

        logger.info("Starting ingestion of %s into %s", root_url, ", ".join(targets))

        async def produce() -> None:
            async for entry in resolve_sitemap(
                root_url,
                client=self._http_client,
                sitemap_url=sitemap_url,
                timeout_seconds=self._sitemap_timeout_seconds,
            ):
                progress.discovered += 1
                if cancel_event.is_set():
                    results.append(PageResult(url=entry.url, stage=PageStage.CANCELLED))
                    break
                await queue.put(entry.url)
            for _ in range(self._concurrency):
                await queue.put(None)

        async def work() -> None:
            while True:
                url = await queue.get()
                if url is None:
                    return
                if cancel_event.is_set():
                    results.append(PageResult(url=url, stage=PageStage.CANCELLED))
                    continue

                result = await self._process_page(url, targets)
                results.append(result)
                progress.processed += 1
                if result.succeeded:
                    progress.stored += 1
                else:
                    progress.failed += 1

                if progress.processed % PROGRESS_LOG_INTERVAL == 0:
                    logger.info(
                        "Processed %d/%d pages (%d stored, %d failed)",
                        progress.processed,
                        progress.discovered,
                        progress.stored,
                        progress.failed,
                    )
                if on_progress is not None:
                    outcome = on_progress(replace(progress))
                    if inspect.isawaitable(outcome):
                        await outcome

        tasks = [asyncio.create_task(produce())]
        tasks.extend(asyncio.create_task(work()) for _ in range(self._concurrency))
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        summary = IngestionSummary(
            root_url=root_url,
            collections=targets,
            pages_stored=sum(1 for result in results if result.stage is PageStage.STORED),
            pages_failed=sum(1 for result in results if result.stage is PageStage.FAILED),
            pages_cancelled=sum(1 for result in results if result.stage is PageStage.CANCELLED),
            chunks_stored=sum(result.chunks_stored for result in results),
            failures={
                result.url: result.reason or "unknown error"
                for result in results
                if result.stage is PageStage.FAILED
            },
            duration_ms=int((time.perf_counter() - started) * 1000),
        )

        if progress.discovered == 0:
            logger.warning("No pages discovered for %s", root_url)
        logger.info(
            "Finished ingestion of %s: %d stored, %d failed, %d cancelled, %d chunks in %dms",
            root_url,
            summary.pages_stored,
            summary.pages_failed,
            summary.pages_cancelled,
            summary.chunks_stored,
            summary.duration_ms,
        )
        return summary

    async def _process_page(self, url: str, collections: tuple[str, ...]) -> PageResult:
        chunk_targets = [name for name in collections if not is_summary_collection(name)]
        summary_targets = [name for name in collections if is_summary_collection(name)]
        stage = PageStage.DISCOVERED
        try:
            document = await self._fetcher.fetch(url)
            stage = PageStage.FETCHED

            page = self._fetcher.extract_text(document)
            stage = PageStage.EXTRACTED

            chunks: list[Chunk] = []
            if chunk_targets:
                chunks = chunk_page(
                    page,
                    collection=chunk_targets[0],
                    max_tokens=self._max_tokens,
                    overlap_tokens=self._overlap_tokens,
                    tokenizer=self._tokenizer,
                )
                if not chunks:
                    raise ExtractionError(f"no chunks produced for {url}")
            if summary_targets:
                text = await summarize(self._llm_client, page.text, model=self._summary_model)
                if not text.strip():
                    raise LLMClientError(f"empty summary for {url}")
                chunks.append(
                    summary_chunk(page, text, collection=summary_targets[0], tokenizer=self._tokenizer)
                )
            stage = PageStage.CHUNKED

            embedded, chunk_failures = await self._embed_page(chunks)
            if not embedded:
                raise EmbeddingClientError(f"no chunk of {url} could be embedded")
            stage = PageStage.EMBEDDED

            for collection in collections:
                wanted = summary_targets[0] if is_summary_collection(collection) else chunk_targets[0]
                records = [
                    EmbeddedChunk(chunk=item.chunk.with_collection(collection), vector=item.vector)
                    for item in embedded
                    if item.chunk.collection == wanted
                ]
                if records:
                    await self._gateway.upsert(collection, records)
        except (EmbeddingUnavailableError, VectorStoreUnavailableError):
            raise
        except (FetchError, ExtractionError, EmbeddingClientError, VectorStoreError, LLMClientError) as exc:
            logger.warning("Page %s failed after stage %s: %s", url, stage.value, exc)
            return PageResult(url=url, stage=PageStage.FAILED, reason=f"{stage.value}: {exc}")

        return PageResult(
            url=url,
            stage=PageStage.STORED,
            chunks_stored=len(embedded),
            chunk_failures=chunk_failures,
        )

    async def _embed_page(self, chunks: list[Chunk]) -> tuple[list[EmbeddedChunk], tuple[str, ...]]:
        try:
            vectors = await self._embedding_client.embed_texts(
                [embedding_input(chunk) for chunk in chunks]
            )
        except EmbeddingUnavailableError:
            raise
        except EmbeddingClientError as exc:
            logger.warning(
                "Batch embedding failed for %s, retrying %d chunks one by one: %s",
                chunks[0].url,
                len(chunks),
                exc,
            )
        else:
            return [EmbeddedChunk(chunk=chunk, vector=vector) for chunk, vector in zip(chunks, vectors)], ()

        embedded: list[EmbeddedChunk] = []
        failures: list[str] = []
        for chunk in chunks:
            try:
                vector = (await self._embedding_client.embed_texts([embedding_input(chunk)]))[0]
            except EmbeddingUnavailableError:
                raise
            except EmbeddingClientError as exc:
                failures.append(f"chunk {chunk.ordinal}: {exc}")
                continue
            embedded.append(EmbeddedChunk(chunk=chunk, vector=vector))
        return embedded, tuple(failures)
