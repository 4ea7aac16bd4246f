from __future__ import annotations

from sqlalchemy.engine import Engine

from lumen_api.config import Settings
from lumen_api.llm import LLMClient, build_llm_client
from lumen_api.services.rag.chat import ChatService
from lumen_api.services.rag.crawler import PageFetcher
from lumen_api.services.rag.embedding_client import EmbeddingClient, get_embedding_client
from lumen_api.services.rag.ingest import CrawlSettings, IngestionService
from lumen_api.services.rag.query import Retriever
from lumen_api.services.rag.store import SqlSourceStore
from lumen_api.services.rag.vector_index import KeyedLock, VectorIndex
from lumen_api.speech import LLMTranslator, Transcriber, build_transcriber

# one lock table per process, shared by every VectorIndex
INDEX_LOCKS = KeyedLock()


def build_index(store: SqlSourceStore) -> VectorIndex:
    return VectorIndex(store, locks=INDEX_LOCKS)


def build_ingestion_service(
    settings: Settings,
    engine: Engine,
    *,
    embedding_client: EmbeddingClient | None = None,
    llm_client: LLMClient | None = None,
    transcriber: Transcriber | None = None,
    fetcher: PageFetcher | None = None,
) -> IngestionService:
    store = SqlSourceStore(engine)
    llm_client = llm_client or build_llm_client(settings)
    return IngestionService(
        store=store,
        index=build_index(store),
        embedding_client=embedding_client or get_embedding_client(settings),
        chunk_size=settings.rag_chunk_size,
        chunk_overlap=settings.rag_chunk_overlap,
        crawl_settings=CrawlSettings(
            concurrency=settings.crawl_concurrency,
            timeout_seconds=settings.crawl_timeout_seconds,
            user_agent=settings.crawl_user_agent,
        ),
        fetcher=fetcher,
        transcriber=transcriber or build_transcriber(settings),
        translator=LLMTranslator(llm_client),
    )


def build_retriever(
    settings: Settings,
    engine: Engine,
    *,
    embedding_client: EmbeddingClient | None = None,
) -> Retriever:
    store = SqlSourceStore(engine)
    return Retriever(
        store=store,
        index=build_index(store),
        embedding_client=embedding_client or get_embedding_client(settings),
        top_k=settings.rag_top_k,
        website_page_limit=settings.rag_website_page_limit,
    )


def build_chat_service(
    settings: Settings,
    engine: Engine,
    *,
    embedding_client: EmbeddingClient | None = None,
    llm_client: LLMClient | None = None,
) -> ChatService:
    return ChatService(
        store=SqlSourceStore(engine),
        retriever=build_retriever(settings, engine, embedding_client=embedding_client),
        llm_client=llm_client or build_llm_client(settings),
    )
