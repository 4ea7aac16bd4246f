from __future__ import annotations

import logging

from lumen_api.errors import EmbeddingFailure, InvalidInput
from lumen_api.services.rag.embedding_client import EmbeddingClient
from lumen_api.services.rag.store import SqlSourceStore
from lumen_api.services.rag.types import (
    EMPTY_RETRIEVAL,
    RankedChunks,
    RetrievalResult,
    SourceKind,
    SourceRef,
)
from lumen_api.services.rag.vector_index import VectorIndex

logger = logging.getLogger(__name__)

PAGE_SEPARATOR = "\n\n---\n\n"


def _unique(refs: list[SourceRef]) -> list[SourceRef]:
    seen: set[SourceRef] = set()
    ordered: list[SourceRef] = []
    for ref in refs:
        if ref not in seen:
            seen.add(ref)
            ordered.append(ref)
    return ordered


class Retriever:
    """Builds the context string handed to the generation step.

    Pinned ``document``, ``website`` and ``media`` scopes are answered from the
    stored content directly; any other request goes through the vector index.
    """

    def __init__(
        self,
        *,
        store: SqlSourceStore,
        index: VectorIndex,
        embedding_client: EmbeddingClient,
        top_k: int = 5,
        website_page_limit: int = 10,
    ) -> None:
        self._store = store
        self._index = index
        self._embedding_client = embedding_client
        self._top_k = top_k
        self._website_page_limit = website_page_limit

    def retrieve(self, query: str, scope: SourceRef | None = None) -> RetrievalResult:
        normalized_query = query.strip()
        if not normalized_query:
            raise InvalidInput("query must not be empty")

        if scope is not None and scope.kind is SourceKind.DOCUMENT:
            return self._document_context(scope)
        if scope is not None and scope.kind is SourceKind.WEBSITE:
            return self._website_context(scope)
        if scope is not None and scope.kind is SourceKind.MEDIA:
            return self._media_context(scope)

        ranked = self.search(normalized_query, scope=scope, top_k=self._top_k)
        texts = [hit.chunk.text for hit in ranked.hits if hit.chunk.text.strip()]
        if not texts:
            return EMPTY_RETRIEVAL
        return RetrievalResult(
            context="\n\n".join(texts),
            strategy=ranked.ranking.value,
            sources=_unique([hit.chunk.source for hit in ranked.hits]),
        )

    def search(
        self,
        query: str,
        *,
        scope: SourceRef | None = None,
        kind: SourceKind | None = None,
        top_k: int | None = None,
    ) -> RankedChunks:
        """Similarity search over stored chunks.

        If the query cannot be embedded the index is asked for its recency
        ranking instead, and the result says so.
        """
        normalized_query = query.strip()
        if not normalized_query:
            raise InvalidInput("query must not be empty")

        try:
            vectors = self._embedding_client.embed_texts([normalized_query])
            query_vector = vectors[0] if vectors else None
        except EmbeddingFailure as exc:
            logger.warning("query embedding failed, falling back to recency ranking: %s", exc)
            query_vector = None

        return self._index.query(
            kind=scope.kind if scope is not None else kind,
            source_id=scope.id if scope is not None else None,
            top_k=top_k or self._top_k,
            query_vector=query_vector,
        )

    def _document_context(self, scope: SourceRef) -> RetrievalResult:
        text = self._store.get_source_text(SourceKind.DOCUMENT, scope.id)
        if not text or not text.strip():
            return EMPTY_RETRIEVAL
        return RetrievalResult(context=text, strategy="document", sources=[scope])

    def _website_context(self, scope: SourceRef) -> RetrievalResult:
        pages = self._store.list_website_pages(scope.id, limit=self._website_page_limit)
        if not pages:
            return EMPTY_RETRIEVAL

        context = PAGE_SEPARATOR.join(
            f"Page: {page.title}\nURL: {page.url}\n\nContent:\n{page.content}" for page in pages
        )
        return RetrievalResult(
            context=context,
            strategy="website",
            sources=[SourceRef(SourceKind.WEBSITE_PAGE, page.id) for page in pages],
        )

    def _media_context(self, scope: SourceRef) -> RetrievalResult:
        media = self._store.get_media_content(scope.id)
        if media is None:
            return EMPTY_RETRIEVAL

        blocks: list[str] = []
        if media.transcription.strip():
            blocks.append(f"Transcription:\n{media.transcription}")
        for language, translation in media.translations:
            if translation.strip():
                blocks.append(f"Translation ({language}):\n{translation}")

        if not blocks:
            return EMPTY_RETRIEVAL
        return RetrievalResult(context="\n\n".join(blocks), strategy="media", sources=[scope])
