from dataclasses import dataclass, field
from enum import Enum


class SourceKind(str, Enum):
    DOCUMENT = "document"
    MEDIA = "media"
    WEBSITE = "website"
    WEBSITE_PAGE = "website_page"

    @property
    def owns_chunks(self) -> bool:
        return self is not SourceKind.WEBSITE


class Ranking(str, Enum):
    SIMILARITY = "similarity"
    RECENCY = "recency"


@dataclass(frozen=True)
class SourceRef:
    kind: SourceKind
    id: int

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"


@dataclass(frozen=True)
class CrawledPage:
    url: str
    title: str
    content: str


@dataclass(frozen=True)
class ChunkDraft:
    source: SourceRef
    index: int
    text: str


@dataclass(frozen=True)
class StoredChunk:
    source: SourceRef
    index: int
    text: str
    embedding: list[float]


@dataclass(frozen=True)
class ScoredChunk:
    chunk: StoredChunk
    score: float | None


@dataclass(frozen=True)
class RankedChunks:
    ranking: Ranking
    hits: list[ScoredChunk]

    @property
    def chunks(self) -> list[StoredChunk]:
        return [hit.chunk for hit in self.hits]


@dataclass(frozen=True)
class RetrievalResult:
    context: str
    strategy: str
    sources: list[SourceRef] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.context


EMPTY_RETRIEVAL = RetrievalResult(context="", strategy="none")


@dataclass(frozen=True)
class IngestionResult:
    source: SourceRef
    chunk_count: int
    text_length: int
    pages: int = 0
    cancelled: bool = False
