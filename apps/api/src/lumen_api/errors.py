"""Error taxonomy shared by the ingestion and retrieval pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from lumen_api.services.rag.types import SourceRef


class LumenError(RuntimeError):
    # sources whose text is stored but not yet indexed when this was raised
    pending_sources: tuple[SourceRef, ...] = ()


class InvalidInput(LumenError, ValueError):
    """Rejected before any I/O: bad URL, empty payload, bad size parameters."""


class FetchFailure(LumenError):
    """A single crawl fetch failed. Never fatal to the crawl."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


class UnsupportedMediaType(LumenError):
    def __init__(self, media_type: str) -> None:
        super().__init__(f"Unsupported media type: {media_type or '<empty>'}")
        self.media_type = media_type


class EmbeddingFailure(LumenError):
    """The whole embedding batch failed; retry the chunk/embed stage."""


class StoreFailure(LumenError):
    pass


class SourceNotFound(LumenError, LookupError):
    def __init__(self, kind: str, source_id: int) -> None:
        super().__init__(f"{kind} {source_id} not found")
        self.kind = kind
        self.source_id = source_id
