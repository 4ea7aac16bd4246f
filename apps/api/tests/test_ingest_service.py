import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from fakes import (
    FailingEmbeddingClient,
    FlakyEmbeddingClient,
    FakeLLMClient,
    FakeTranscriber,
    KeywordEmbeddingClient,
    PageGraphFetcher,
    html_page,
)
from lumen_api.errors import EmbeddingFailure, InvalidInput, UnsupportedMediaType
from lumen_api.models import ChunkRecord, DocumentRecord, WebsiteRecord
from lumen_api.services.rag.ingest import IngestionService
from lumen_api.services.rag.store import SqlSourceStore
from lumen_api.services.rag.types import SourceKind, SourceRef
from lumen_api.services.rag.vector_index import VectorIndex
from lumen_api.speech import LLMTranslator


def _service(store: SqlSourceStore, **overrides) -> IngestionService:
    options = {
        "store": store,
        "index": VectorIndex(store),
        "embedding_client": KeywordEmbeddingClient(),
        "chunk_size": 100,
        "chunk_overlap": 20,
    }
    options.update(overrides)
    return IngestionService(**options)


def _count(store: SqlSourceStore, model) -> int:
    with Session(store._engine) as session:
        return session.scalar(select(func.count()).select_from(model))


def test_ingest_document_chunks_and_embeds(store: SqlSourceStore) -> None:
    service = _service(store)
    payload = ("alpha " * 50).encode("utf-8")

    result = service.ingest_document(payload, filename="alpha.txt", media_type="text/plain")

    assert result.source.kind is SourceKind.DOCUMENT
    assert result.text_length == 300
    assert result.chunk_count == 4
    assert _count(store, ChunkRecord) == 4
    assert store.get_source_text(SourceKind.DOCUMENT, result.source.id) == "alpha " * 50


def test_reindexing_unchanged_source_is_idempotent(store: SqlSourceStore) -> None:
    service = _service(store)
    result = service.ingest_document(
        ("beta " * 60).encode("utf-8"), filename="beta.md", media_type="text/markdown"
    )
    with Session(store._engine) as session:
        before = session.scalars(select(ChunkRecord.id).order_by(ChunkRecord.id)).all()

    again = service.index_source(SourceKind.DOCUMENT, result.source.id)

    with Session(store._engine) as session:
        after = session.scalars(select(ChunkRecord.id).order_by(ChunkRecord.id)).all()
    assert again.chunk_count == result.chunk_count
    assert after == before


def test_ingest_document_rejects_empty_payload(store: SqlSourceStore) -> None:
    with pytest.raises(InvalidInput):
        _service(store).ingest_document(b"", filename="empty.txt", media_type="text/plain")

    assert _count(store, DocumentRecord) == 0


def test_ingest_document_rejects_unknown_media_type(store: SqlSourceStore) -> None:
    with pytest.raises(UnsupportedMediaType):
        _service(store).ingest_document(
            b"\x00\x01", filename="blob.bin", media_type="application/octet-stream"
        )

    assert _count(store, DocumentRecord) == 0


def test_document_with_no_text_has_no_chunks(store: SqlSourceStore) -> None:
    result = _service(store).ingest_document(
        b"   \n  ", filename="blank.txt", media_type="text/plain"
    )

    assert result.chunk_count == 0


def test_embedding_failure_keeps_text_for_later_reindex(store: SqlSourceStore) -> None:
    failing = _service(store, embedding_client=FailingEmbeddingClient())

    with pytest.raises(EmbeddingFailure):
        failing.ingest_document(b"alpha text", filename="a.txt", media_type="text/plain")

    assert _count(store, ChunkRecord) == 0
    with Session(store._engine) as session:
        document_id = session.scalar(select(DocumentRecord.id))

    result = _service(store).index_source(SourceKind.DOCUMENT, document_id)

    assert result.chunk_count == 1
    assert _count(store, ChunkRecord) == 1


def test_index_source_requires_stored_text(store: SqlSourceStore) -> None:
    with pytest.raises(InvalidInput):
        _service(store).index_source(SourceKind.DOCUMENT, 123)
    with pytest.raises(InvalidInput):
        _service(store).index_source(SourceKind.WEBSITE, 1)


def test_ingest_website_stores_pages_and_chunks(store: SqlSourceStore) -> None:
    fetcher = PageGraphFetcher(
        {
            "https://example.com/": html_page("Example Home", ["/docs"], body="alpha " * 30),
            "https://example.com/docs": html_page("Docs", [], body="beta " * 10),
        }
    )

    result = _service(store, fetcher=fetcher).ingest_website(
        "https://example.com", max_pages=5
    )

    assert result.source.kind is SourceKind.WEBSITE
    assert result.pages == 2
    assert result.cancelled is False
    assert result.chunk_count == _count(store, ChunkRecord)
    details = store.describe_source(SourceKind.WEBSITE, result.source.id)
    assert details["title"] == "Example Home"
    assert len(details["page_ids"]) == 2
    pages = store.list_website_pages(result.source.id, limit=10)
    assert [page.url for page in pages] == ["https://example.com/", "https://example.com/docs"]


def test_ingest_website_rejects_invalid_url(store: SqlSourceStore) -> None:
    fetcher = PageGraphFetcher({})

    with pytest.raises(InvalidInput):
        _service(store, fetcher=fetcher).ingest_website("javascript:alert(1)", max_pages=3)

    assert _count(store, WebsiteRecord) == 0
    assert fetcher.calls == []


def test_ingest_media_transcribes_translates_and_indexes(store: SqlSourceStore) -> None:
    llm = FakeLLMClient(answer="hello world")
    transcriber = FakeTranscriber(text="hola mundo")
    service = _service(store, transcriber=transcriber, translator=LLMTranslator(llm))

    media = service.ingest_media(
        b"RIFF....",
        filename="talk.wav",
        media_type="audio/wav",
        target_language="English",
        source_language="es",
    )

    assert media.transcription == "hola mundo"
    assert media.translation == "hello world"
    assert transcriber.calls == [("talk.wav", "audio/wav", "es")]
    assert "English" in llm.calls[0][1]
    assert store.get_source_text(SourceKind.MEDIA, media.result.source.id) == (
        "hola mundo\n\nhello world"
    )
    assert media.result.chunk_count == 1


def test_ingest_media_requires_transcriber(store: SqlSourceStore) -> None:
    with pytest.raises(InvalidInput):
        _service(store).ingest_media(b"abc", filename="a.mp3", media_type="audio/mpeg")


def test_chunk_overlap_must_be_smaller_than_size(store: SqlSourceStore) -> None:
    with pytest.raises(InvalidInput):
        _service(store, chunk_size=50, chunk_overlap=50)


def test_website_pages_survive_a_mid_crawl_embedding_failure(store: SqlSourceStore) -> None:
    fetcher = PageGraphFetcher(
        {
            "https://example.com/": html_page("Home", ["/one", "/two"], body="alpha home"),
            "https://example.com/one": html_page("One", [], body="beta one"),
            "https://example.com/two": html_page("Two", [], body="alpha two"),
        }
    )
    service = _service(store, fetcher=fetcher, embedding_client=FlakyEmbeddingClient(fail_on=2))

    with pytest.raises(EmbeddingFailure) as excinfo:
        service.ingest_website("https://example.com/", max_pages=5)

    with Session(store._engine) as session:
        website_id = session.scalar(select(WebsiteRecord.id))
    details = store.describe_source(SourceKind.WEBSITE, website_id)
    assert details["title"] == "Home"
    page_ids = details["page_ids"]
    assert len(page_ids) == 3
    assert excinfo.value.pending_sources == tuple(
        SourceRef(SourceKind.WEBSITE_PAGE, page_id) for page_id in page_ids[1:]
    )

    for pending in excinfo.value.pending_sources:
        _service(store).index_source(pending.kind, pending.id)
    assert _count(store, ChunkRecord) == 3


def test_document_embedding_failure_names_the_stored_source(store: SqlSourceStore) -> None:
    failing = _service(store, embedding_client=FailingEmbeddingClient())

    with pytest.raises(EmbeddingFailure) as excinfo:
        failing.ingest_document(b"alpha text", filename="a.txt", media_type="text/plain")

    with Session(store._engine) as session:
        document_id = session.scalar(select(DocumentRecord.id))
    assert excinfo.value.pending_sources == (SourceRef(SourceKind.DOCUMENT, document_id),)
