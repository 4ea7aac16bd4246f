from dataclasses import dataclass
from functools import lru_cache
import os


def _to_bool(value: str | None, *, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _to_int(value: str | None, *, default: int, minimum: int) -> int:
    if value is None:
        return default
    parsed = int(value)
    return max(minimum, parsed)


def _to_float(value: str | None, *, default: float, minimum: float) -> float:
    if value is None:
        return default
    parsed = float(value)
    return max(minimum, parsed)


@dataclass(frozen=True)
class Settings:
    database_url: str
    db_echo: bool
    log_level: str
    rag_chunk_size: int
    rag_chunk_overlap: int
    rag_top_k: int
    rag_website_page_limit: int
    rag_embed_provider: str
    rag_embed_base_url: str
    rag_embed_model: str
    rag_embed_api_key: str | None
    rag_embed_batch_size: int
    rag_embedding_dim: int
    crawl_max_pages: int
    crawl_concurrency: int
    crawl_timeout_seconds: float
    crawl_user_agent: str
    llm_base_url: str
    llm_model: str
    llm_fallback_model: str
    llm_api_key: str | None
    llm_timeout_seconds: float
    speech_model: str
    job_max_attempts: int


@lru_cache
def get_settings() -> Settings:
    llm_base_url = os.getenv("LLM_BASE_URL", "http://localhost:11434/v1")
    llm_api_key = os.getenv("LLM_API_KEY") or None
    return Settings(
        database_url=os.getenv("LUMEN_DATABASE_URL", "sqlite+pysqlite:///data/lumen.db"),
        db_echo=_to_bool(os.getenv("LUMEN_DB_ECHO"), default=False),
        log_level=os.getenv("LUMEN_LOG_LEVEL", "INFO").upper(),
        rag_chunk_size=_to_int(os.getenv("RAG_CHUNK_SIZE"), default=1000, minimum=1),
        rag_chunk_overlap=_to_int(os.getenv("RAG_CHUNK_OVERLAP"), default=200, minimum=0),
        rag_top_k=_to_int(os.getenv("RAG_TOP_K"), default=5, minimum=1),
        rag_website_page_limit=_to_int(
            os.getenv("RAG_WEBSITE_PAGE_LIMIT"), default=10, minimum=1
        ),
        rag_embed_provider=os.getenv("RAG_EMBED_PROVIDER", "openai").strip().lower(),
        rag_embed_base_url=os.getenv("RAG_EMBED_BASE_URL", llm_base_url),
        rag_embed_model=os.getenv("RAG_EMBED_MODEL", "nomic-embed-text"),
        rag_embed_api_key=os.getenv("RAG_EMBED_API_KEY") or llm_api_key,
        rag_embed_batch_size=_to_int(os.getenv("RAG_EMBED_BATCH_SIZE"), default=64, minimum=1),
        rag_embedding_dim=_to_int(os.getenv("RAG_EMBEDDING_DIM"), default=32, minimum=8),
        crawl_max_pages=_to_int(os.getenv("CRAWL_MAX_PAGES"), default=5, minimum=1),
        crawl_concurrency=_to_int(os.getenv("CRAWL_CONCURRENCY"), default=4, minimum=1),
        crawl_timeout_seconds=_to_float(
            os.getenv("CRAWL_TIMEOUT_SECONDS"), default=15.0, minimum=0.5
        ),
        crawl_user_agent=os.getenv("CRAWL_USER_AGENT", "LumenCrawler/0.1"),
        llm_base_url=llm_base_url,
        llm_model=os.getenv("LLM_MODEL", "qwen2.5:7b-instruct-q4_K_M"),
        llm_fallback_model=os.getenv("LLM_FALLBACK_MODEL", "qwen2.5:3b-instruct-q4_K_M"),
        llm_api_key=llm_api_key,
        llm_timeout_seconds=_to_float(os.getenv("LLM_TIMEOUT_SECONDS"), default=60.0, minimum=1.0),
        speech_model=os.getenv("SPEECH_MODEL", "whisper-1"),
        job_max_attempts=_to_int(os.getenv("JOB_MAX_ATTEMPTS"), default=3, minimum=1),
    )
