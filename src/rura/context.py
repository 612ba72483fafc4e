from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import httpx

from rura.config import Settings, get_settings
from rura.llm import LLMClient, OllamaGenerationClient
from rura.services.rag.embedding_client import EmbeddingClient, OllamaEmbeddingClient
from rura.services.rag.fetcher import PageFetcher
from rura.services.rag.ingest import IngestionOrchestrator
from rura.services.rag.qdrant_store import QdrantVectorStore
from rura.services.rag.query import RetrievalOrchestrator
from rura.services.rag.sqlite_store import SqliteVectorStore
from rura.services.rag.vector_store import VectorStoreBackend, VectorStoreGateway


def build_vector_backend(settings: Settings, *, client: httpx.AsyncClient | None = None) -> VectorStoreBackend:
    if settings.vector_store_backend == "sqlite":
        return SqliteVectorStore(Path(settings.vector_store_path))
    return QdrantVectorStore(
        address=settings.qdrant_address,
        timeout_seconds=settings.ollama_timeout_seconds,
        client=client,
    )


@dataclass
class RagContext:
    """Clients shared by one ingestion run, one query, or the server process."""

    settings: Settings
    crawl_client: httpx.AsyncClient
    service_client: httpx.AsyncClient
    embedding_client: EmbeddingClient
    llm_client: LLMClient
    gateway: VectorStoreGateway
    owned_clients: list[httpx.AsyncClient] = field(default_factory=list)

    def fetcher(self) -> PageFetcher:
        return PageFetcher(self.crawl_client, timeout_seconds=self.settings.crawl_timeout_seconds)

    def ingestion(self) -> IngestionOrchestrator:
        return IngestionOrchestrator(
            self.fetcher(),
            self.embedding_client,
            self.gateway,
            http_client=self.crawl_client,
            max_tokens=self.settings.rag_chunk_size,
            overlap_tokens=self.settings.rag_chunk_overlap,
            concurrency=self.settings.crawl_concurrency,
            sitemap_timeout_seconds=self.settings.crawl_timeout_seconds,
            llm_client=self.llm_client,
            summary_model=self.settings.ollama_model,
        )

    def retrieval(self) -> RetrievalOrchestrator:
        return RetrievalOrchestrator(
            self.embedding_client,
            self.gateway,
            self.llm_client,
            default_model=self.settings.ollama_model,
        )

    async def aclose(self) -> None:
        await self.gateway.aclose()
        for client in self.owned_clients:
            await client.aclose()


def build_context(
    settings: Settings | None = None,
    *,
    crawl_client: httpx.AsyncClient | None = None,
    service_client: httpx.AsyncClient | None = None,
    embedding_client: EmbeddingClient | None = None,
    llm_client: LLMClient | None = None,
    backend: VectorStoreBackend | None = None,
) -> RagContext:
    settings = settings or get_settings()
    owned_clients: list[httpx.AsyncClient] = []
    if crawl_client is None:
        crawl_client = httpx.AsyncClient(headers={"User-Agent": settings.crawl_user_agent})
        owned_clients.append(crawl_client)
    if service_client is None:
        service_client = httpx.AsyncClient()
        owned_clients.append(service_client)

    if embedding_client is None:
        embedding_client = OllamaEmbeddingClient(
            base_url=settings.ollama_embed_base_url,
            model=settings.ollama_embed_model,
            timeout_seconds=settings.ollama_timeout_seconds,
            client=service_client,
        )
    if llm_client is None:
        llm_client = OllamaGenerationClient(
            base_url=settings.ollama_base_url,
            timeout_seconds=settings.ollama_timeout_seconds,
            client=service_client,
        )
    if backend is None:
        backend = build_vector_backend(settings, client=service_client)

    return RagContext(
        settings=settings,
        crawl_client=crawl_client,
        service_client=service_client,
        embedding_client=embedding_client,
        llm_client=llm_client,
        gateway=VectorStoreGateway(backend),
        owned_clients=owned_clients,
    )
