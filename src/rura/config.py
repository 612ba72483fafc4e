from dataclasses import dataclass
from functools import lru_cache
import logging
import os

SUPPORTED_VECTOR_STORE_BACKENDS = {"qdrant", "sqlite"}
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _to_bool(value: str | None, *, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _to_int(value: str | None, *, default: int, minimum: int) -> int:
    if value is None:
        return default
    parsed = int(value)
    return max(minimum, parsed)


def parse_collections(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ()
    names: list[str] = []
    for raw in value.split(","):
        name = raw.strip()
        if name and name not in names:
            names.append(name)
    return tuple(names)


def collection_names(base_collection: str, filter_collections: tuple[str, ...] | list[str]) -> list[str]:
    if not base_collection.strip():
        raise ValueError("base_collection must not be empty")
    if not filter_collections:
        raise ValueError("at least one filter collection is required")
    return [f"{base_collection}_{name}" for name in filter_collections]


def ollama_url(host: str, port: int) -> str:
    host = host.strip().rstrip("/")
    if "://" not in host:
        host = f"http://{host}"
    return f"{host}:{port}"


@dataclass(frozen=True)
class Settings:
    qdrant_address: str
    vector_store_backend: str
    vector_store_path: str
    address: str
    base_collection: str
    filter_collections: tuple[str, ...]
    ollama_model: str
    ollama_host: str
    ollama_port: int
    ollama_embed_model: str
    ollama_timeout_seconds: float
    rag_chunk_size: int
    rag_chunk_overlap: int
    rag_top_k: int
    crawl_concurrency: int
    crawl_timeout_seconds: float
    crawl_user_agent: str
    database_url: str
    db_echo: bool
    log_level: str

    @property
    def ollama_base_url(self) -> str:
        return ollama_url(self.ollama_host, self.ollama_port)

    @property
    def ollama_embed_base_url(self) -> str:
        return f"{self.ollama_base_url}/v1"

    @property
    def target_collections(self) -> list[str]:
        return collection_names(self.base_collection, self.filter_collections)

    @property
    def listen_host(self) -> str:
        host, _, _ = self.address.rpartition(":")
        return host or "127.0.0.1"

    @property
    def listen_port(self) -> int:
        _, _, port = self.address.rpartition(":")
        return int(port)


@lru_cache
def get_settings() -> Settings:
    backend = os.getenv("VECTOR_STORE_BACKEND", "qdrant").strip().lower()
    if backend not in SUPPORTED_VECTOR_STORE_BACKENDS:
        raise ValueError(
            f"Unsupported VECTOR_STORE_BACKEND {backend!r} "
            f"(supported: {sorted(SUPPORTED_VECTOR_STORE_BACKENDS)})"
        )

    chunk_size = _to_int(os.getenv("RAG_CHUNK_SIZE"), default=256, minimum=8)
    chunk_overlap = _to_int(os.getenv("RAG_CHUNK_OVERLAP"), default=32, minimum=0)
    if chunk_overlap >= chunk_size:
        raise ValueError("RAG_CHUNK_OVERLAP must be smaller than RAG_CHUNK_SIZE")

    return Settings(
        qdrant_address=os.getenv("QDRANT_CLIENT_ADDRESS", "http://localhost:6333"),
        vector_store_backend=backend,
        vector_store_path=os.getenv("VECTOR_STORE_PATH", "data/rura_vectors.db"),
        address=os.getenv("ADDRESS", "127.0.0.1:3000"),
        base_collection=os.getenv("BASE_COLLECTION", "rura_collection"),
        filter_collections=parse_collections(os.getenv("FILTER_COLLECTIONS")) or ("basic",),
        ollama_model=os.getenv("OLLAMA_MODEL", "openhermes2.5-mistral:7b-q6_K"),
        ollama_host=os.getenv("OLLAMA_HOST", "localhost"),
        ollama_port=_to_int(os.getenv("OLLAMA_PORT"), default=11434, minimum=1),
        ollama_embed_model=os.getenv("OLLAMA_EMBED_MODEL", "all-minilm"),
        ollama_timeout_seconds=float(os.getenv("OLLAMA_TIMEOUT_SECONDS", "120")),
        rag_chunk_size=chunk_size,
        rag_chunk_overlap=chunk_overlap,
        rag_top_k=_to_int(os.getenv("RAG_TOP_K"), default=10, minimum=1),
        crawl_concurrency=_to_int(os.getenv("CRAWL_CONCURRENCY"), default=4, minimum=1),
        crawl_timeout_seconds=float(os.getenv("CRAWL_TIMEOUT_SECONDS", "20")),
        crawl_user_agent=os.getenv("CRAWL_USER_AGENT", "rura/0.1 (+sitemap crawler)"),
        database_url=os.getenv("API_DATABASE_URL", "sqlite+pysqlite:///data/rura.db"),
        db_echo=_to_bool(os.getenv("API_DB_ECHO"), default=False),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or get_settings().log_level),
        format=LOG_FORMAT,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
