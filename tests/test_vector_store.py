from pathlib import Path

import pytest

from rura.services.rag.sqlite_store import SqliteVectorStore
from rura.services.rag.types import Chunk, EmbeddedChunk, SearchHit
from rura.services.rag.vector_store import (
    CollectionNotFoundError,
    StoredRecord,
    VectorDimensionError,
    VectorStoreGateway,
    VectorStoreUnavailableError,
    rank_hits,
)


def _embedded(text: str, vector: list[float], *, fingerprint: str | None = None) -> EmbeddedChunk:
    chunk = Chunk(
        url="https://site.test/page",
        title="Page",
        ordinal=0,
        text=text,
        token_count=len(text.split()),
        fingerprint=fingerprint or f"fp-{text}",
        collection="docs",
    )
    return EmbeddedChunk(chunk=chunk, vector=vector)


class DroppingBackend:
    """Reports a collection as present, then loses it on the first write."""

    def __init__(self) -> None:
        self.created: list[tuple[str, int]] = []
        self.upserts = 0

    async def collection_dimension(self, collection: str) -> int | None:
        return 2

    async def create_collection(self, collection: str, dimension: int) -> None:
        self.created.append((collection, dimension))

    async def upsert(self, collection: str, records: list[StoredRecord]) -> None:
        self.upserts += 1
        if self.upserts == 1:
            raise CollectionNotFoundError(collection)

    async def search(self, collection: str, vector: list[float], limit: int) -> list[SearchHit]:
        return []

    async def count(self, collection: str) -> int:
        return 0

    async def delete_collection(self, collection: str) -> bool:
        return False

    async def aclose(self) -> None:
        return None


class UnavailableBackend(DroppingBackend):
    async def collection_dimension(self, collection: str) -> int | None:
        raise VectorStoreUnavailableError("qdrant is down")


def test_rank_hits_orders_by_score_then_fingerprint() -> None:
    hits = [
        SearchHit(fingerprint="c", collection="x", score=0.5),
        SearchHit(fingerprint="b", collection="x", score=0.9),
        SearchHit(fingerprint="a", collection="y", score=0.9),
        SearchHit(fingerprint="b", collection="y", score=0.95),
    ]

    ranked = rank_hits(hits, top_k=3)

    assert [(hit.fingerprint, hit.collection) for hit in ranked] == [("b", "y"), ("a", "y"), ("c", "x")]


@pytest.mark.asyncio
async def test_upsert_creates_missing_collection(tmp_path: Path) -> None:
    gateway = VectorStoreGateway(SqliteVectorStore(tmp_path / "store.db"))

    stored = await gateway.upsert("docs_basic", [_embedded("alpha", [1.0, 0.0, 0.0])])

    assert stored == 1
    assert await gateway.backend.collection_dimension("docs_basic") == 3
    assert await gateway.count("docs_basic") == 1


@pytest.mark.asyncio
async def test_upsert_is_idempotent_by_fingerprint(tmp_path: Path) -> None:
    gateway = VectorStoreGateway(SqliteVectorStore(tmp_path / "store.db"))
    batch = [_embedded("alpha", [1.0, 0.0]), _embedded("beta", [0.0, 1.0])]

    await gateway.upsert("docs", batch)
    await gateway.upsert("docs", batch)

    assert await gateway.count("docs") == 2


@pytest.mark.asyncio
async def test_dimension_mismatch_is_rejected(tmp_path: Path) -> None:
    gateway = VectorStoreGateway(SqliteVectorStore(tmp_path / "store.db"))
    await gateway.upsert("docs", [_embedded("alpha", [1.0, 0.0])])

    with pytest.raises(VectorDimensionError):
        await gateway.upsert("docs", [_embedded("beta", [1.0, 0.0, 0.0])])
    with pytest.raises(VectorDimensionError):
        await gateway.upsert("docs", [_embedded("a", [1.0, 0.0]), _embedded("b", [1.0])])
    with pytest.raises(VectorDimensionError):
        await gateway.query(["docs"], [1.0, 0.0, 0.0], top_k=3)

    assert await gateway.count("docs") == 1


@pytest.mark.asyncio
async def test_query_merges_collections_and_skips_missing(tmp_path: Path) -> None:
    gateway = VectorStoreGateway(SqliteVectorStore(tmp_path / "store.db"))
    await gateway.upsert("docs_a", [_embedded("close", [1.0, 0.0]), _embedded("far", [0.0, 1.0])])
    await gateway.upsert("docs_b", [_embedded("middle", [1.0, 1.0]), _embedded("close", [1.0, 0.0])])

    hits = await gateway.query(["docs_a", "docs_missing", "docs_b"], [1.0, 0.0], top_k=2)

    assert [hit.fingerprint for hit in hits] == ["fp-close", "fp-middle"]
    assert hits[0].text == "close"


@pytest.mark.asyncio
async def test_collection_lost_during_upsert_is_recreated() -> None:
    backend = DroppingBackend()
    gateway = VectorStoreGateway(backend)

    assert await gateway.upsert("docs", [_embedded("alpha", [1.0, 0.0])]) == 1
    assert backend.created == [("docs", 2)]
    assert backend.upserts == 2


@pytest.mark.asyncio
async def test_unavailable_backend_propagates() -> None:
    gateway = VectorStoreGateway(UnavailableBackend())

    with pytest.raises(VectorStoreUnavailableError):
        await gateway.upsert("docs", [_embedded("alpha", [1.0, 0.0])])
    with pytest.raises(VectorStoreUnavailableError):
        await gateway.query(["docs"], [1.0, 0.0], top_k=1)


@pytest.mark.asyncio
async def test_drop_reports_whether_collection_existed(tmp_path: Path) -> None:
    gateway = VectorStoreGateway(SqliteVectorStore(tmp_path / "store.db"))
    await gateway.upsert("docs", [_embedded("alpha", [1.0, 0.0])])

    assert await gateway.drop("docs") is True
    assert await gateway.drop("docs") is False
    assert await gateway.count("docs") == 0
