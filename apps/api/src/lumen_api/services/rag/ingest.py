"""Ingestion pipeline: source -> text -> chunks -> vectors -> store.

Raw source text is persisted before chunking. If chunking, embedding or the
chunk write fails, the text stays stored and :meth:`IngestionService.index_source`
can be re-run for that source alone. The error raised then carries those
sources in ``pending_sources``.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
import logging
from threading import Event
import time

from lumen_api.errors import EmbeddingFailure, InvalidInput, LumenError
from lumen_api.services.rag.chunker import chunk_source
from lumen_api.services.rag.crawler import CrawlReport, PageFetcher, crawl_website, normalize_url
from lumen_api.services.rag.embedding_client import EmbeddingClient
from lumen_api.services.rag.extractor import extract_text, normalize_media_type
from lumen_api.services.rag.store import SqlSourceStore
from lumen_api.services.rag.types import IngestionResult, SourceKind, SourceRef
from lumen_api.services.rag.vector_index import VectorIndex
from lumen_api.speech import Transcriber, Translator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MediaIngestionResult:
    result: IngestionResult
    transcription: str
    translation: str | None
    target_language: str | None


@dataclass(frozen=True)
class CrawlSettings:
    concurrency: int = 4
    timeout_seconds: float = 15.0
    user_agent: str = "LumenCrawler/0.1"


def _cancelled(cancel_event: Event | None, deadline: float | None) -> bool:
    if cancel_event is not None and cancel_event.is_set():
        return True
    return deadline is not None and time.monotonic() >= deadline


@contextmanager
def _pending_on_failure(sources: tuple[SourceRef, ...]) -> Iterator[None]:
    try:
        yield
    except LumenError as exc:
        if not exc.pending_sources:
            exc.pending_sources = sources
        raise


class IngestionService:
    def __init__(
        self,
        *,
        store: SqlSourceStore,
        index: VectorIndex,
        embedding_client: EmbeddingClient,
        chunk_size: int,
        chunk_overlap: int,
        crawl_settings: CrawlSettings | None = None,
        fetcher: PageFetcher | None = None,
        transcriber: Transcriber | None = None,
        translator: Translator | None = None,
    ) -> None:
        if chunk_size <= chunk_overlap:
            raise InvalidInput("chunk_overlap must be smaller than chunk_size")
        self._store = store
        self._index = index
        self._embedding_client = embedding_client
        self._chunk_size = chunk_size
        self._chunk_overlap = chunk_overlap
        self._crawl_settings = crawl_settings or CrawlSettings()
        self._fetcher = fetcher
        self._transcriber = transcriber
        self._translator = translator

    def index_source(self, kind: SourceKind, source_id: int) -> IngestionResult:
        """Chunk, embed and store one source from its persisted text.

        Re-running it with unchanged text leaves the same chunk rows in place.
        """
        if not kind.owns_chunks:
            raise InvalidInput(f"{kind.value} sources are indexed through their pages")

        source = SourceRef(kind, source_id)
        text = self._store.get_source_text(kind, source_id)
        if text is None:
            raise InvalidInput(f"{source} has no stored text to index")

        drafts = chunk_source(
            source,
            text,
            chunk_size=self._chunk_size,
            chunk_overlap=self._chunk_overlap,
        )
        vectors = self._embedding_client.embed_texts([draft.text for draft in drafts])
        if len(vectors) != len(drafts):
            raise EmbeddingFailure(
                f"embedding client returned {len(vectors)} vectors for {len(drafts)} chunks"
            )

        chunk_count = self._index.put_many(kind, source_id, drafts, vectors)
        logger.info("indexed %s chunks=%d chars=%d", source, chunk_count, len(text))
        return IngestionResult(source=source, chunk_count=chunk_count, text_length=len(text))

    def ingest_document(
        self, payload: bytes, *, filename: str, media_type: str | None
    ) -> IngestionResult:
        if not payload:
            raise InvalidInput("document payload is empty")

        normalized_type = normalize_media_type(media_type)
        text = extract_text(payload, normalized_type)
        if not text.strip():
            logger.warning("document %s produced no text", filename)

        document_id = self._store.create_source(
            SourceKind.DOCUMENT,
            {
                "filename": filename,
                "media_type": normalized_type,
                "size_bytes": len(payload),
                "content_text": text,
            },
        )
        with _pending_on_failure((SourceRef(SourceKind.DOCUMENT, document_id),)):
            return self.index_source(SourceKind.DOCUMENT, document_id)

    def ingest_media(
        self,
        audio: bytes,
        *,
        filename: str,
        media_type: str | None,
        target_language: str | None = None,
        source_language: str | None = None,
    ) -> MediaIngestionResult:
        if not audio:
            raise InvalidInput("media payload is empty")
        if self._transcriber is None:
            raise InvalidInput("no transcription capability configured")
        if target_language and self._translator is None:
            raise InvalidInput("no translation capability configured")

        normalized_type = normalize_media_type(media_type) or "application/octet-stream"
        media_id = self._store.create_source(
            SourceKind.MEDIA,
            {
                "filename": filename,
                "media_type": normalized_type,
                "size_bytes": len(audio),
                "source_language": source_language or "auto",
            },
        )

        transcription = self._transcriber.transcribe(
            audio, filename=filename, media_type=normalized_type, language=source_language
        )
        self._store.update_source_text(SourceKind.MEDIA, media_id, transcription)

        translation: str | None = None
        with _pending_on_failure((SourceRef(SourceKind.MEDIA, media_id),)):
            if target_language and self._translator is not None:
                translation = self._translator.translate(transcription, target_language)
                self._store.add_media_translation(media_id, target_language, translation)

            result = self.index_source(SourceKind.MEDIA, media_id)
        return MediaIngestionResult(
            result=result,
            transcription=transcription,
            translation=translation,
            target_language=target_language,
        )

    def ingest_website(
        self,
        url: str,
        *,
        max_pages: int,
        cancel_event: Event | None = None,
        deadline: float | None = None,
    ) -> IngestionResult:
        normalized_url = normalize_url(url)
        if normalized_url is None:
            raise InvalidInput(f"Invalid website URL: {url!r}")

        website_id = self._store.create_source(SourceKind.WEBSITE, {"url": url})
        report: CrawlReport = crawl_website(
            normalized_url,
            max_pages,
            fetcher=self._fetcher,
            concurrency=self._crawl_settings.concurrency,
            timeout_seconds=self._crawl_settings.timeout_seconds,
            user_agent=self._crawl_settings.user_agent,
            cancel_event=cancel_event,
            deadline=deadline,
        )

        # every crawled page is stored before the first embedding call
        page_refs = [
            SourceRef(
                SourceKind.WEBSITE_PAGE,
                self._store.create_source(
                    SourceKind.WEBSITE_PAGE,
                    {
                        "website_id": website_id,
                        "url": page.url,
                        "title": page.title,
                        "content": page.content,
                    },
                ),
            )
            for page in report.pages
        ]
        if report.pages:
            self._store.update_website_title(website_id, report.pages[0].title)

        chunk_count = 0
        text_length = 0
        pages = 0
        cancelled = report.cancelled
        for position, (page, page_ref) in enumerate(zip(report.pages, page_refs)):
            if _cancelled(cancel_event, deadline):
                cancelled = True
                break

            with _pending_on_failure(tuple(page_refs[position:])):
                chunk_count += self.index_source(page_ref.kind, page_ref.id).chunk_count
            pages += 1
            text_length += len(page.content)

        logger.info(
            "indexed website %s pages=%d chunks=%d failed_fetches=%d cancelled=%s",
            website_id,
            pages,
            chunk_count,
            report.stats.failed,
            cancelled,
        )
        return IngestionResult(
            source=SourceRef(SourceKind.WEBSITE, website_id),
            chunk_count=chunk_count,
            text_length=text_length,
            pages=pages,
            cancelled=cancelled,
        )
