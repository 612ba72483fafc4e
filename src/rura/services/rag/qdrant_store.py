from __future__ import annotations

from typing import Any

import httpx

from rura.services.rag.fingerprint import point_id
from rura.services.rag.types import SearchHit
from rura.services.rag.vector_store import (
    CollectionNotFoundError,
    StoredRecord,
    VectorDimensionError,
    VectorStoreError,
    VectorStoreUnavailableError,
)


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip() or f"HTTP {response.status_code}"
    status = payload.get("status") if isinstance(payload, dict) else None
    if isinstance(status, dict) and isinstance(status.get("error"), str):
        return status["error"]
    return f"HTTP {response.status_code}"


def _vector_size(collection_info: dict[str, Any]) -> int | None:
    config = collection_info.get("config")
    params = config.get("params") if isinstance(config, dict) else None
    vectors = params.get("vectors") if isinstance(params, dict) else None
    if isinstance(vectors, dict) and isinstance(vectors.get("size"), int):
        return vectors["size"]
    return None


class QdrantVectorStore:
    """Qdrant REST backend using cosine distance."""

    def __init__(
        self,
        *,
        address: str,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._address = address.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        collection: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method,
                f"{self._address}{path}",
                json=json,
                params=params,
                timeout=self._timeout_seconds,
            )
        except httpx.TransportError as exc:
            raise VectorStoreUnavailableError(
                f"Qdrant at {self._address} is unreachable: {exc}"
            ) from exc

        if response.status_code == 404:
            raise CollectionNotFoundError(collection)
        if response.status_code >= 400:
            detail = _error_detail(response)
            if "dimension" in detail.lower():
                raise VectorDimensionError(detail)
            raise VectorStoreError(f"Qdrant {method} {path} failed: {detail}")
        return response

    @staticmethod
    def _result(response: httpx.Response) -> Any:
        try:
            payload = response.json()
        except ValueError as exc:
            raise VectorStoreError("Invalid Qdrant payload: not JSON") from exc
        if not isinstance(payload, dict) or "result" not in payload:
            raise VectorStoreError("Invalid Qdrant payload: missing result")
        return payload["result"]

    async def collection_dimension(self, collection: str) -> int | None:
        try:
            response = await self._request("GET", f"/collections/{collection}", collection=collection)
        except CollectionNotFoundError:
            return None

        info = self._result(response)
        size = _vector_size(info) if isinstance(info, dict) else None
        if size is None:
            raise VectorStoreError(f"Collection {collection!r} has no single unnamed vector config")
        return size

    async def create_collection(self, collection: str, dimension: int) -> None:
        try:
            await self._request(
                "PUT",
                f"/collections/{collection}",
                collection=collection,
                json={"vectors": {"size": dimension, "distance": "Cosine"}},
            )
        except VectorStoreError as exc:
            if "already exists" not in str(exc):
                raise

    async def upsert(self, collection: str, records: list[StoredRecord]) -> None:
        await self._request(
            "PUT",
            f"/collections/{collection}/points",
            collection=collection,
            params={"wait": "true"},
            json={
                "points": [
                    {
                        "id": point_id(record.fingerprint),
                        "vector": record.vector,
                        "payload": record.payload,
                    }
                    for record in records
                ]
            },
        )

    async def search(self, collection: str, vector: list[float], limit: int) -> list[SearchHit]:
        response = await self._request(
            "POST",
            f"/collections/{collection}/points/search",
            collection=collection,
            json={"vector": vector, "limit": limit, "with_payload": True},
        )
        result = self._result(response)
        if not isinstance(result, list):
            raise VectorStoreError("Invalid Qdrant search payload: result must be a list")

        hits: list[SearchHit] = []
        for point in result:
            payload = point.get("payload") if isinstance(point, dict) else None
            score = point.get("score") if isinstance(point, dict) else None
            if not isinstance(payload, dict) or not isinstance(score, (int, float)):
                continue
            fingerprint = payload.get("fingerprint")
            if not isinstance(fingerprint, str):
                continue
            hits.append(
                SearchHit(
                    fingerprint=fingerprint,
                    collection=collection,
                    score=float(score),
                    payload=payload,
                )
            )
        return hits

    async def count(self, collection: str) -> int:
        response = await self._request(
            "POST",
            f"/collections/{collection}/points/count",
            collection=collection,
            json={"exact": True},
        )
        result = self._result(response)
        if not isinstance(result, dict) or not isinstance(result.get("count"), int):
            raise VectorStoreError("Invalid Qdrant count payload")
        return result["count"]

    async def delete_collection(self, collection: str) -> bool:
        try:
            response = await self._request("DELETE", f"/collections/{collection}", collection=collection)
        except CollectionNotFoundError:
            return False
        return bool(self._result(response))
