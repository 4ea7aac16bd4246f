from __future__ import annotations

import io
import logging

from docx import Document as DocxDocument
from PyPDF2 import PdfReader

from lumen_api.errors import UnsupportedMediaType
from lumen_api.services.rag.html import extract_content

logger = logging.getLogger(__name__)

HTML_TYPES = {"text/html", "application/xhtml+xml"}
PDF_TYPES = {"application/pdf"}
DOCX_TYPES = {"application/vnd.openxmlformats-officedocument.wordprocessingml.document"}
TEXT_LIKE_TYPES = {
    "application/json",
    "application/csv",
    "application/xml",
    "application/x-ndjson",
    "application/markdown",
    "application/x-yaml",
}


def normalize_media_type(media_type: str | None) -> str:
    if not media_type:
        return ""
    return media_type.split(";", 1)[0].strip().lower()


def _is_text_like(media_type: str) -> bool:
    if media_type.startswith("text/"):
        return True
    if media_type in TEXT_LIKE_TYPES:
        return True
    return media_type.endswith("+json") or media_type.endswith("+xml")


def _extract_pdf(payload: bytes) -> str:
    try:
        reader = PdfReader(io.BytesIO(payload))
        parts = [(page.extract_text() or "").strip() for page in reader.pages]
    except Exception as exc:
        logger.warning("PDF text extraction failed: %s", exc)
        return ""
    return "\n".join(part for part in parts if part)


def _extract_docx(payload: bytes) -> str:
    try:
        document = DocxDocument(io.BytesIO(payload))
    except Exception as exc:
        logger.warning("DOCX text extraction failed: %s", exc)
        return ""

    parts: list[str] = [
        paragraph.text.strip() for paragraph in document.paragraphs if paragraph.text.strip()
    ]
    for table in document.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                parts.append(" | ".join(cells))
    return "\n\n".join(parts)


def extract_text(payload: bytes, media_type: str | None) -> str:
    """Plain text of ``payload``.

    Structured binary decoders are best effort and return an empty string when
    they fail; only a media type with no text interpretation at all raises
    :class:`UnsupportedMediaType`.
    """
    normalized = normalize_media_type(media_type)

    if normalized in HTML_TYPES:
        return extract_content(payload.decode("utf-8", errors="replace"))
    if _is_text_like(normalized):
        return payload.decode("utf-8", errors="replace")
    if normalized in PDF_TYPES:
        return _extract_pdf(payload)
    if normalized in DOCX_TYPES:
        return _extract_docx(payload)

    raise UnsupportedMediaType(normalized)
