"""Vector store gateway shared by ingestion and retrieval.

The gateway owns the semantics the pipeline relies on (idempotent upsert by
fingerprint, collection auto-creation, dimension checks, cross-collection
ranking); backends only speak their storage protocol.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Protocol

from rura.services.rag.types import EmbeddedChunk, SearchHit

logger = logging.getLogger(__name__)


class VectorStoreError(RuntimeError):
    pass


class CollectionNotFoundError(VectorStoreError):
    def __init__(self, collection: str) -> None:
        super().__init__(f"Collection {collection!r} does not exist")
        self.collection = collection


class VectorStoreUnavailableError(VectorStoreError):
    pass


class VectorDimensionError(VectorStoreError):
    pass


@dataclass(frozen=True)
class StoredRecord:
    fingerprint: str
    vector: list[float]
    payload: dict[str, Any]


class VectorStoreBackend(Protocol):
    async def collection_dimension(self, collection: str) -> int | None: ...

    async def create_collection(self, collection: str, dimension: int) -> None: ...

    async def upsert(self, collection: str, records: list[StoredRecord]) -> None: ...

    async def search(self, collection: str, vector: list[float], limit: int) -> list[SearchHit]: ...

    async def count(self, collection: str) -> int: ...

    async def delete_collection(self, collection: str) -> bool: ...

    async def aclose(self) -> None: ...


def chunk_payload(embedded: EmbeddedChunk, *, collection: str) -> dict[str, Any]:
    chunk = embedded.chunk
    return {
        "fingerprint": chunk.fingerprint,
        "url": chunk.url,
        "title": chunk.title,
        "ordinal": chunk.ordinal,
        "text": chunk.text,
        "token_count": chunk.token_count,
        "collection": collection,
        "stored_at": datetime.now(timezone.utc).isoformat(),
    }


def rank_hits(hits: list[SearchHit], top_k: int) -> list[SearchHit]:
    best: dict[str, SearchHit] = {}
    for hit in hits:
        current = best.get(hit.fingerprint)
        if current is None or hit.score > current.score:
            best[hit.fingerprint] = hit

    ranked = sorted(best.values(), key=lambda hit: (-hit.score, hit.fingerprint))
    return ranked[: max(1, top_k)]


class VectorStoreGateway:
    def __init__(self, backend: VectorStoreBackend) -> None:
        self._backend = backend

    @property
    def backend(self) -> VectorStoreBackend:
        return self._backend

    async def aclose(self) -> None:
        await self._backend.aclose()

    async def ensure_collection(self, collection: str, dimension: int) -> None:
        existing = await self._backend.collection_dimension(collection)
        if existing is None:
            logger.info("Creating collection %s (dimension=%d)", collection, dimension)
            await self._backend.create_collection(collection, dimension)
            return
        if existing != dimension:
            raise VectorDimensionError(
                f"Collection {collection!r} stores {existing}-dimensional vectors, got {dimension}"
            )

    async def upsert(self, collection: str, embedded_chunks: list[EmbeddedChunk]) -> int:
        if not embedded_chunks:
            return 0

        dimensions = {embedded.dimension for embedded in embedded_chunks}
        if len(dimensions) != 1:
            raise VectorDimensionError(
                f"Mixed vector dimensions {sorted(dimensions)} in one batch for {collection!r}"
            )
        dimension = dimensions.pop()
        if dimension == 0:
            raise VectorDimensionError("Vectors must not be empty")

        records = [
            StoredRecord(
                fingerprint=embedded.chunk.fingerprint,
                vector=embedded.vector,
                payload=chunk_payload(embedded, collection=collection),
            )
            for embedded in embedded_chunks
        ]

        await self.ensure_collection(collection, dimension)
        try:
            await self._backend.upsert(collection, records)
        except CollectionNotFoundError:
            # dropped concurrently between the check and the write
            logger.warning("Collection %s vanished, recreating", collection)
            await self._backend.create_collection(collection, dimension)
            await self._backend.upsert(collection, records)

        return len(records)

    async def query(self, collections: list[str], vector: list[float], top_k: int) -> list[SearchHit]:
        if top_k < 1:
            raise ValueError("top_k must be >= 1")

        hits: list[SearchHit] = []
        for collection in collections:
            dimension = await self._backend.collection_dimension(collection)
            if dimension is None:
                logger.warning("Collection %s does not exist, skipping", collection)
                continue
            if dimension != len(vector):
                raise VectorDimensionError(
                    f"Query vector has {len(vector)} dimensions, collection {collection!r} has {dimension}"
                )
            try:
                hits.extend(await self._backend.search(collection, vector, top_k))
            except CollectionNotFoundError:
                logger.warning("Collection %s disappeared during search, skipping", collection)

        return rank_hits(hits, top_k)

    async def drop(self, collection: str) -> bool:
        dropped = await self._backend.delete_collection(collection)
        if dropped:
            logger.info("Dropped collection %s", collection)
        else:
            logger.info("Collection %s does not exist", collection)
        return dropped

    async def count(self, collection: str) -> int:
        if await self._backend.collection_dimension(collection) is None:
            return 0
        return await self._backend.count(collection)
