from __future__ import annotations

from lumen_api.errors import InvalidInput
from lumen_api.services.rag.types import ChunkDraft, SourceRef


def _validate(chunk_size: int, chunk_overlap: int) -> None:
    if chunk_size <= 0:
        raise InvalidInput("chunk_size must be > 0")
    if chunk_overlap < 0:
        raise InvalidInput("chunk_overlap must be >= 0")
    if chunk_overlap >= chunk_size:
        raise InvalidInput("chunk_overlap must be smaller than chunk_size")


def chunk_spans(text: str, *, chunk_size: int, chunk_overlap: int) -> list[tuple[int, int]]:
    """Offsets of the windows kept by :func:`chunk_text`.

    Window ``i`` starts at ``i * (chunk_size - chunk_overlap)``. Windows that are
    whitespace-only are dropped; the rest are kept verbatim.
    """
    _validate(chunk_size, chunk_overlap)

    spans: list[tuple[int, int]] = []
    step = chunk_size - chunk_overlap
    cursor = 0
    text_length = len(text)

    while cursor < text_length:
        end = min(text_length, cursor + chunk_size)
        if text[cursor:end].strip():
            spans.append((cursor, end))

        if end >= text_length:
            break
        cursor += step

    return spans


def chunk_text(text: str, *, chunk_size: int, chunk_overlap: int) -> list[str]:
    return [
        text[start:end]
        for start, end in chunk_spans(text, chunk_size=chunk_size, chunk_overlap=chunk_overlap)
    ]


def chunk_source(
    source: SourceRef,
    text: str,
    *,
    chunk_size: int,
    chunk_overlap: int,
) -> list[ChunkDraft]:
    chunks = chunk_text(text, chunk_size=chunk_size, chunk_overlap=chunk_overlap)
    return [
        ChunkDraft(source=source, index=index, text=chunk)
        for index, chunk in enumerate(chunks)
    ]
