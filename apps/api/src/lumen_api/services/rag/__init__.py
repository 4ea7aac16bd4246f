from lumen_api.services.rag.chat import ChatService, ChatTurn
from lumen_api.services.rag.ingest import IngestionService
from lumen_api.services.rag.query import Retriever
from lumen_api.services.rag.types import IngestionResult, RetrievalResult, SourceKind, SourceRef

__all__ = [
    "ChatService",
    "ChatTurn",
    "IngestionResult",
    "IngestionService",
    "RetrievalResult",
    "Retriever",
    "SourceKind",
    "SourceRef",
]
