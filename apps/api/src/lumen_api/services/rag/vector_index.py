from __future__ import annotations

from collections.abc import Hashable, Iterator, Sequence
from contextlib import ExitStack, contextmanager
import logging
import math
from threading import Lock

from lumen_api.errors import InvalidInput
from lumen_api.services.rag.store import SqlSourceStore
from lumen_api.services.rag.types import (
    ChunkDraft,
    RankedChunks,
    Ranking,
    ScoredChunk,
    SourceKind,
    StoredChunk,
)

logger = logging.getLogger(__name__)


def cosine(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class KeyedLock:
    """One mutex per key, alive only while some caller holds or waits on it."""

    def __init__(self) -> None:
        self._guard = Lock()
        # key -> (lock, number of holders and waiters)
        self._locks: dict[Hashable, tuple[Lock, int]] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: Hashable) -> Lock:
        with self._guard:
            lock, users = self._locks.get(key, (None, 0))
            if lock is None:
                lock = Lock()
            self._locks[key] = (lock, users + 1)
            return lock

    def _checkin(self, key: Hashable) -> None:
        with self._guard:
            lock, users = self._locks[key]
            if users == 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)

    @contextmanager
    def _held(self, key: Hashable) -> Iterator[None]:
        lock = self._checkout(key)
        try:
            with lock:
                yield
        finally:
            self._checkin(key)

    @contextmanager
    def hold(self, keys: Sequence[Hashable]) -> Iterator[None]:
        # callers pass keys in ascending order so two writers never deadlock
        with ExitStack() as stack:
            for key in keys:
                stack.enter_context(self._held(key))
            yield


def _tie_break(chunk: StoredChunk) -> tuple[str, int, int]:
    return (chunk.source.kind.value, chunk.source.id, chunk.index)


class VectorIndex:
    def __init__(self, store: SqlSourceStore, *, locks: KeyedLock | None = None) -> None:
        self._store = store
        self._locks = locks or KeyedLock()

    def put(
        self, kind: SourceKind, source_id: int, index: int, text: str, vector: list[float]
    ) -> None:
        with self._locks.hold([(kind.value, source_id, index)]):
            self._store.upsert_chunk(kind, source_id, index, text, vector)

    def put_many(
        self,
        kind: SourceKind,
        source_id: int,
        drafts: Sequence[ChunkDraft],
        vectors: Sequence[list[float]],
    ) -> int:
        """Store a source's full chunk sequence and drop chunks past its end."""
        if len(drafts) != len(vectors):
            raise ValueError("drafts and vectors must have the same length")

        keys = [(kind.value, source_id, draft.index) for draft in sorted(drafts, key=lambda d: d.index)]
        with self._locks.hold(keys):
            self._store.upsert_chunks(
                kind,
                source_id,
                [(draft.index, draft.text, list(vector)) for draft, vector in zip(drafts, vectors)],
                trim_from=len(drafts),
            )
        return len(drafts)

    def delete_source(self, kind: SourceKind, source_id: int) -> None:
        self._store.delete_source(kind, source_id)

    def query(
        self,
        *,
        kind: SourceKind | None = None,
        source_id: int | None = None,
        top_k: int = 5,
        query_vector: Sequence[float] | None = None,
    ) -> RankedChunks:
        if top_k < 1:
            raise InvalidInput("top_k must be >= 1")

        if query_vector:
            candidates = [
                chunk
                for chunk in self._store.query_chunks(kind=kind, source_id=source_id)
                if len(chunk.embedding) == len(query_vector)
            ]
            if candidates:
                scored = sorted(
                    (ScoredChunk(chunk=chunk, score=cosine(query_vector, chunk.embedding)) for chunk in candidates),
                    key=lambda hit: (-(hit.score or 0.0), _tie_break(hit.chunk)),
                )
                return RankedChunks(ranking=Ranking.SIMILARITY, hits=scored[:top_k])

            logger.info(
                "no stored vectors match query dimension=%d; using recency ranking",
                len(query_vector),
            )

        recent = self._store.query_chunks(kind=kind, source_id=source_id, top_k=top_k)
        return RankedChunks(
            ranking=Ranking.RECENCY,
            hits=[ScoredChunk(chunk=chunk, score=None) for chunk in recent],
        )
