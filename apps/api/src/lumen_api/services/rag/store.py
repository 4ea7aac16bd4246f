from __future__ import annotations

from array import array
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy import delete, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from lumen_api.errors import InvalidInput, SourceNotFound, StoreFailure
from lumen_api.models import (
    ChunkRecord,
    ConversationRecord,
    DocumentRecord,
    MediaRecord,
    MediaTranslationRecord,
    MessageRecord,
    WebsitePageRecord,
    WebsiteRecord,
)
from lumen_api.services.rag.types import SourceKind, SourceRef, StoredChunk

_RECORDS: dict[SourceKind, type[Any]] = {
    SourceKind.DOCUMENT: DocumentRecord,
    SourceKind.MEDIA: MediaRecord,
    SourceKind.WEBSITE: WebsiteRecord,
    SourceKind.WEBSITE_PAGE: WebsitePageRecord,
}


@dataclass(frozen=True)
class WebsitePage:
    id: int
    url: str
    title: str
    content: str


@dataclass(frozen=True)
class MediaContent:
    transcription: str
    translations: list[tuple[str, str]]


@dataclass(frozen=True)
class Message:
    id: int
    role: str
    content: str
    created_at: datetime


class SourceStore(Protocol):
    def create_source(self, kind: SourceKind, metadata: Mapping[str, Any]) -> int: ...

    def update_source_text(self, kind: SourceKind, source_id: int, text: str) -> None: ...

    def get_source_text(self, kind: SourceKind, source_id: int) -> str | None: ...

    def upsert_chunk(
        self, kind: SourceKind, source_id: int, index: int, text: str, vector: list[float]
    ) -> None: ...

    def query_chunks(
        self, kind: SourceKind | None = None, source_id: int | None = None, top_k: int | None = None
    ) -> list[StoredChunk]: ...

    def delete_source(self, kind: SourceKind, source_id: int) -> None: ...


def encode_embedding(values: Sequence[float]) -> bytes:
    return array("f", values).tobytes()


def decode_embedding(blob: bytes) -> list[float]:
    vector = array("f")
    vector.frombytes(blob)
    return vector.tolist()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _media_text(record: MediaRecord) -> str:
    parts = [record.transcription or ""]
    parts.extend(translation.translation for translation in record.translations)
    return "\n\n".join(part for part in parts if part.strip())


def _to_stored_chunk(row: ChunkRecord) -> StoredChunk:
    return StoredChunk(
        source=SourceRef(SourceKind(row.source_kind), row.source_id),
        index=row.chunk_index,
        text=row.text,
        embedding=decode_embedding(row.embedding),
    )


class SqlSourceStore:
    """Relational storage for sources, chunks and conversation turns."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self._engine, expire_on_commit=False) as session:
                yield session
                session.commit()
        except SQLAlchemyError as exc:
            raise StoreFailure(f"{type(exc).__name__}: {exc}") from exc

    def _get_record(self, session: Session, kind: SourceKind, source_id: int) -> Any:
        record = session.get(_RECORDS[kind], source_id)
        if record is None:
            raise SourceNotFound(kind.value, source_id)
        return record

    # sources

    def create_source(self, kind: SourceKind, metadata: Mapping[str, Any]) -> int:
        if kind is SourceKind.DOCUMENT:
            record: Any = DocumentRecord(
                filename=str(metadata.get("filename") or "document"),
                media_type=str(metadata.get("media_type") or "application/octet-stream"),
                size_bytes=int(metadata.get("size_bytes") or 0),
                content_text=metadata.get("content_text"),
            )
        elif kind is SourceKind.MEDIA:
            record = MediaRecord(
                filename=str(metadata.get("filename") or "media"),
                media_type=str(metadata.get("media_type") or "application/octet-stream"),
                size_bytes=int(metadata.get("size_bytes") or 0),
                source_language=str(metadata.get("source_language") or "auto"),
            )
        elif kind is SourceKind.WEBSITE:
            url = str(metadata.get("url") or "")
            record = WebsiteRecord(
                url=url,
                title=metadata.get("title") or f"Website: {url}",
                description=metadata.get("description") or f"Indexed website from {url}",
            )
        else:
            if metadata.get("website_id") is None:
                raise InvalidInput("website_page requires website_id")
            record = WebsitePageRecord(
                website_id=int(metadata["website_id"]),
                url=str(metadata.get("url") or ""),
                title=str(metadata.get("title") or metadata.get("url") or ""),
                content=str(metadata.get("content") or ""),
            )

        with self._session() as session:
            session.add(record)
            session.flush()
            return int(record.id)

    def update_source_text(self, kind: SourceKind, source_id: int, text: str) -> None:
        with self._session() as session:
            record = self._get_record(session, kind, source_id)
            if kind is SourceKind.DOCUMENT:
                record.content_text = text
            elif kind is SourceKind.MEDIA:
                record.transcription = text
            elif kind is SourceKind.WEBSITE_PAGE:
                record.content = text
            else:
                raise InvalidInput("website sources carry no text of their own")

    def get_source_text(self, kind: SourceKind, source_id: int) -> str | None:
        with self._session() as session:
            record = session.get(_RECORDS[kind], source_id)
            if record is None:
                return None
            if kind is SourceKind.DOCUMENT:
                return record.content_text
            if kind is SourceKind.MEDIA:
                return _media_text(record)
            if kind is SourceKind.WEBSITE_PAGE:
                return record.content
            return None

    def describe_source(self, kind: SourceKind, source_id: int) -> dict[str, Any] | None:
        with self._session() as session:
            record = session.get(_RECORDS[kind], source_id)
            if record is None:
                return None

            details: dict[str, Any] = {
                "kind": kind.value,
                "id": record.id,
                "created_at": record.created_at.isoformat() if record.created_at else None,
            }
            if kind is SourceKind.DOCUMENT:
                details.update(filename=record.filename, media_type=record.media_type)
                details["text"] = record.content_text
            elif kind is SourceKind.MEDIA:
                details.update(
                    filename=record.filename,
                    media_type=record.media_type,
                    source_language=record.source_language,
                    translations=[item.target_language for item in record.translations],
                )
                details["text"] = _media_text(record)
            elif kind is SourceKind.WEBSITE:
                details.update(
                    url=record.url,
                    title=record.title,
                    description=record.description,
                    page_ids=[page.id for page in record.pages],
                )
            else:
                details.update(website_id=record.website_id, url=record.url, title=record.title)
                details["text"] = record.content

            if kind.owns_chunks:
                details["chunk_count"] = session.scalar(
                    select(func.count())
                    .select_from(ChunkRecord)
                    .where(ChunkRecord.source_kind == kind.value)
                    .where(ChunkRecord.source_id == source_id)
                )
            return details

    def delete_source(self, kind: SourceKind, source_id: int) -> None:
        with self._session() as session:
            record = self._get_record(session, kind, source_id)
            if kind is SourceKind.WEBSITE:
                page_ids = [page.id for page in record.pages]
                if page_ids:
                    session.execute(
                        delete(ChunkRecord)
                        .where(ChunkRecord.source_kind == SourceKind.WEBSITE_PAGE.value)
                        .where(ChunkRecord.source_id.in_(page_ids))
                    )
            else:
                session.execute(
                    delete(ChunkRecord)
                    .where(ChunkRecord.source_kind == kind.value)
                    .where(ChunkRecord.source_id == source_id)
                )
            session.delete(record)

    # media and websites

    def add_media_translation(self, media_id: int, target_language: str, translation: str) -> int:
        with self._session() as session:
            self._get_record(session, SourceKind.MEDIA, media_id)
            record = MediaTranslationRecord(
                media_id=media_id,
                target_language=target_language,
                translation=translation,
            )
            session.add(record)
            session.flush()
            return int(record.id)

    def get_media_content(self, media_id: int) -> MediaContent | None:
        with self._session() as session:
            record = session.get(MediaRecord, media_id)
            if record is None:
                return None
            return MediaContent(
                transcription=record.transcription or "",
                translations=[
                    (item.target_language, item.translation) for item in record.translations
                ],
            )

    def list_website_pages(self, website_id: int, *, limit: int) -> list[WebsitePage]:
        with self._session() as session:
            rows = session.scalars(
                select(WebsitePageRecord)
                .where(WebsitePageRecord.website_id == website_id)
                .order_by(WebsitePageRecord.id.asc())
                .limit(limit)
            ).all()
            return [
                WebsitePage(id=row.id, url=row.url, title=row.title, content=row.content)
                for row in rows
            ]

    def update_website_title(self, website_id: int, title: str) -> None:
        with self._session() as session:
            record = self._get_record(session, SourceKind.WEBSITE, website_id)
            record.title = title

    # chunks

    def upsert_chunk(
        self, kind: SourceKind, source_id: int, index: int, text: str, vector: list[float]
    ) -> None:
        self.upsert_chunks(kind, source_id, [(index, text, vector)])

    def upsert_chunks(
        self,
        kind: SourceKind,
        source_id: int,
        rows: Sequence[tuple[int, str, list[float]]],
        *,
        trim_from: int | None = None,
    ) -> None:
        """Insert or update chunks keyed by index, optionally dropping every
        chunk with ``chunk_index >= trim_from`` in the same transaction."""
        if not kind.owns_chunks:
            raise InvalidInput(f"{kind.value} sources do not own chunks")

        with self._session() as session:
            existing = {
                row.chunk_index: row
                for row in session.scalars(
                    select(ChunkRecord)
                    .where(ChunkRecord.source_kind == kind.value)
                    .where(ChunkRecord.source_id == source_id)
                    .where(ChunkRecord.chunk_index.in_([index for index, _, _ in rows]))
                ).all()
            }
            for index, text, vector in rows:
                blob = encode_embedding(vector)
                row = existing.get(index)
                if row is None:
                    session.add(
                        ChunkRecord(
                            source_kind=kind.value,
                            source_id=source_id,
                            chunk_index=index,
                            text=text,
                            token_count=len(text.split()),
                            embedding=blob,
                            embedding_dim=len(vector),
                        )
                    )
                    continue
                row.text = text
                row.token_count = len(text.split())
                row.embedding = blob
                row.embedding_dim = len(vector)
                row.updated_at = _now()

            if trim_from is not None:
                session.execute(
                    delete(ChunkRecord)
                    .where(ChunkRecord.source_kind == kind.value)
                    .where(ChunkRecord.source_id == source_id)
                    .where(ChunkRecord.chunk_index >= trim_from)
                )

    def query_chunks(
        self,
        kind: SourceKind | None = None,
        source_id: int | None = None,
        top_k: int | None = None,
    ) -> list[StoredChunk]:
        """Chunks matching the filters, most recently inserted first."""
        stmt = select(ChunkRecord)
        if kind is not None:
            stmt = stmt.where(ChunkRecord.source_kind == kind.value)
        if source_id is not None:
            stmt = stmt.where(ChunkRecord.source_id == source_id)
        stmt = stmt.order_by(ChunkRecord.id.desc())
        if top_k is not None:
            stmt = stmt.limit(top_k)

        with self._session() as session:
            return [_to_stored_chunk(row) for row in session.scalars(stmt).all()]

    # conversations

    def create_conversation(self, title: str | None = None) -> int:
        with self._session() as session:
            record = ConversationRecord(title=title)
            session.add(record)
            session.flush()
            return int(record.id)

    def conversation_exists(self, conversation_id: int) -> bool:
        with self._session() as session:
            return session.get(ConversationRecord, conversation_id) is not None

    def add_message(self, conversation_id: int, role: str, content: str) -> int:
        with self._session() as session:
            record = MessageRecord(conversation_id=conversation_id, role=role, content=content)
            session.add(record)
            session.flush()
            return int(record.id)

    def list_messages(self, conversation_id: int) -> list[Message]:
        with self._session() as session:
            rows = session.scalars(
                select(MessageRecord)
                .where(MessageRecord.conversation_id == conversation_id)
                .order_by(MessageRecord.id.asc())
            ).all()
            return [
                Message(id=row.id, role=row.role, content=row.content, created_at=row.created_at)
                for row in rows
            ]
