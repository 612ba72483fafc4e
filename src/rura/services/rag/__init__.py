from rura.services.rag.types import IngestionSummary, QueryAnswer, SearchHit
from rura.services.rag.vector_store import VectorStoreGateway

__all__ = ["IngestionSummary", "QueryAnswer", "SearchHit", "VectorStoreGateway"]
