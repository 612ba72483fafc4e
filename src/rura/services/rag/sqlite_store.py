from __future__ import annotations

from array import array
import asyncio
from collections.abc import Iterator
from contextlib import contextmanager
import json
import math
from pathlib import Path
import sqlite3

from rura.services.rag.types import SearchHit
from rura.services.rag.vector_store import CollectionNotFoundError, StoredRecord, VectorDimensionError


def _encode_embedding(values: list[float]) -> bytes:
    vector = array("f", values)
    return vector.tobytes()


def _decode_embedding(blob: bytes) -> list[float]:
    vector = array("f")
    vector.frombytes(blob)
    return vector.tolist()


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def _ensure_schema(connection: sqlite3.Connection) -> None:
    connection.executescript(
        """
        PRAGMA foreign_keys = ON;

        CREATE TABLE IF NOT EXISTS collections (
            name TEXT PRIMARY KEY,
            dimension INTEGER NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS records (
            collection TEXT NOT NULL,
            fingerprint TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            embedding BLOB NOT NULL,
            embedding_dim INTEGER NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (collection, fingerprint),
            FOREIGN KEY (collection) REFERENCES collections(name) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS idx_records_collection ON records(collection);
        """
    )


class SqliteVectorStore:
    """Single-file vector store with brute-force cosine search."""

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connection() as connection:
            _ensure_schema(connection)

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        connection = sqlite3.connect(self._db_path)
        try:
            connection.execute("PRAGMA foreign_keys = ON")
            with connection:
                yield connection
        finally:
            connection.close()

    async def aclose(self) -> None:
        return None

    def _collection_dimension(self, collection: str) -> int | None:
        with self._connection() as connection:
            row = connection.execute(
                "SELECT dimension FROM collections WHERE name = ?", (collection,)
            ).fetchone()
        return int(row[0]) if row is not None else None

    def _create_collection(self, collection: str, dimension: int) -> None:
        with self._connection() as connection:
            connection.execute(
                "INSERT OR IGNORE INTO collections (name, dimension) VALUES (?, ?)",
                (collection, dimension),
            )

    def _upsert(self, collection: str, records: list[StoredRecord]) -> None:
        dimension = self._collection_dimension(collection)
        if dimension is None:
            raise CollectionNotFoundError(collection)
        for record in records:
            if len(record.vector) != dimension:
                raise VectorDimensionError(
                    f"Collection {collection!r} stores {dimension}-dimensional vectors, "
                    f"got {len(record.vector)}"
                )

        with self._connection() as connection:
            connection.executemany(
                """
                INSERT INTO records (collection, fingerprint, payload_json, embedding, embedding_dim)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (collection, fingerprint) DO UPDATE
                SET payload_json = excluded.payload_json,
                    embedding = excluded.embedding,
                    embedding_dim = excluded.embedding_dim,
                    updated_at = CURRENT_TIMESTAMP
                """,
                [
                    (
                        collection,
                        record.fingerprint,
                        json.dumps(record.payload, ensure_ascii=False),
                        sqlite3.Binary(_encode_embedding(record.vector)),
                        len(record.vector),
                    )
                    for record in records
                ],
            )

    def _search(self, collection: str, vector: list[float], limit: int) -> list[SearchHit]:
        if self._collection_dimension(collection) is None:
            raise CollectionNotFoundError(collection)

        with self._connection() as connection:
            rows = connection.execute(
                """
                SELECT fingerprint, payload_json, embedding, embedding_dim
                FROM records
                WHERE collection = ?
                ORDER BY fingerprint
                """,
                (collection,),
            ).fetchall()

        hits: list[SearchHit] = []
        for fingerprint, payload_json, embedding_blob, embedding_dim in rows:
            embedding = _decode_embedding(embedding_blob)
            if len(embedding) != embedding_dim:
                continue
            hits.append(
                SearchHit(
                    fingerprint=fingerprint,
                    collection=collection,
                    score=_cosine(vector, embedding),
                    payload=json.loads(payload_json),
                )
            )

        hits.sort(key=lambda hit: (-hit.score, hit.fingerprint))
        return hits[:limit]

    def _count(self, collection: str) -> int:
        with self._connection() as connection:
            return int(
                connection.execute(
                    "SELECT COUNT(*) FROM records WHERE collection = ?", (collection,)
                ).fetchone()[0]
            )

    def _delete_collection(self, collection: str) -> bool:
        with self._connection() as connection:
            connection.execute("DELETE FROM records WHERE collection = ?", (collection,))
            deleted = connection.execute("DELETE FROM collections WHERE name = ?", (collection,)).rowcount
        return deleted > 0

    async def collection_dimension(self, collection: str) -> int | None:
        return await asyncio.to_thread(self._collection_dimension, collection)

    async def create_collection(self, collection: str, dimension: int) -> None:
        await asyncio.to_thread(self._create_collection, collection, dimension)

    async def upsert(self, collection: str, records: list[StoredRecord]) -> None:
        await asyncio.to_thread(self._upsert, collection, records)

    async def search(self, collection: str, vector: list[float], limit: int) -> list[SearchHit]:
        return await asyncio.to_thread(self._search, collection, vector, limit)

    async def count(self, collection: str) -> int:
        return await asyncio.to_thread(self._count, collection)

    async def delete_collection(self, collection: str) -> bool:
        return await asyncio.to_thread(self._delete_collection, collection)
