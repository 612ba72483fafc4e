from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class SitemapEntry:
    url: str
    sitemap_url: str
    lastmod: str | None = None


@dataclass(frozen=True)
class Document:
    url: str
    title: str
    html: str
    fetched_at: datetime


@dataclass(frozen=True)
class ExtractedPage:
    url: str
    title: str
    text: str
    fetched_at: datetime


@dataclass(frozen=True)
class Chunk:
    url: str
    title: str
    ordinal: int
    text: str
    token_count: int
    fingerprint: str
    collection: str

    def with_collection(self, collection: str) -> Chunk:
        return replace(self, collection=collection)


@dataclass(frozen=True)
class EmbeddedChunk:
    chunk: Chunk
    vector: list[float]

    @property
    def dimension(self) -> int:
        return len(self.vector)


@dataclass(frozen=True)
class SearchHit:
    fingerprint: str
    collection: str
    score: float
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return str(self.payload.get("text", ""))

    @property
    def url(self) -> str:
        return str(self.payload.get("url", ""))

    @property
    def ordinal(self) -> int:
        return int(self.payload.get("ordinal", 0))


@dataclass(frozen=True)
class QueryContext:
    query: str
    collections: tuple[str, ...]
    top_k: int
    hits: tuple[SearchHit, ...] = ()


@dataclass(frozen=True)
class GenerationRequest:
    prompt: str
    model: str


class PageStage(str, Enum):
    DISCOVERED = "discovered"
    FETCHED = "fetched"
    EXTRACTED = "extracted"
    CHUNKED = "chunked"
    EMBEDDED = "embedded"
    STORED = "stored"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class PageResult:
    url: str
    stage: PageStage
    chunks_stored: int = 0
    chunk_failures: tuple[str, ...] = ()
    reason: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.stage is PageStage.STORED


@dataclass
class IngestionProgress:
    discovered: int = 0
    processed: int = 0
    stored: int = 0
    failed: int = 0


@dataclass(frozen=True)
class IngestionSummary:
    root_url: str
    collections: tuple[str, ...]
    pages_stored: int
    pages_failed: int
    pages_cancelled: int
    chunks_stored: int
    failures: dict[str, str]
    duration_ms: int

    def as_dict(self) -> dict[str, object]:
        return {
            "root_url": self.root_url,
            "collections": list(self.collections),
            "pages_stored": self.pages_stored,
            "pages_failed": self.pages_failed,
            "pages_cancelled": self.pages_cancelled,
            "chunks_stored": self.chunks_stored,
            "failures": dict(self.failures),
            "duration_ms": self.duration_ms,
        }


@dataclass(frozen=True)
class QueryAnswer:
    answer: str
    model: str
    hits: tuple[SearchHit, ...]
    interrupted: bool = False
    interruption_reason: str | None = None
