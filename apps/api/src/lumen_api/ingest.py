from __future__ import annotations

import argparse
import mimetypes
from pathlib import Path
import sys

from lumen_api.config import get_settings
from lumen_api.db import get_engine, init_db
from lumen_api.errors import LumenError
from lumen_api.logging_setup import configure_logging
from lumen_api.services.rag.types import SourceKind
from lumen_api.wiring import build_ingestion_service


def _build_parser() -> argparse.ArgumentParser:
    settings = get_settings()

    parser = argparse.ArgumentParser(
        prog="lumen-ingest",
        description="Ingest websites and documents into the Lumen index",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    website = subparsers.add_parser("website", help="Crawl a website and index its pages")
    website.add_argument("url", help="Start URL; only pages on the same host are followed")
    website.add_argument(
        "--max-pages",
        type=int,
        default=settings.crawl_max_pages,
        help="Maximum number of pages to fetch",
    )

    document = subparsers.add_parser("document", help="Extract and index a local file")
    document.add_argument("path", help="Path to a pdf/docx/txt/md/html file")
    document.add_argument(
        "--media-type",
        default=None,
        help="Override the media type guessed from the file extension",
    )

    reindex = subparsers.add_parser("reindex", help="Re-chunk and re-embed a stored source")
    reindex.add_argument(
        "kind",
        choices=[kind.value for kind in SourceKind if kind.owns_chunks],
        help="Source kind",
    )
    reindex.add_argument("source_id", type=int, help="Source id")
    return parser


def _guess_media_type(path: Path) -> str | None:
    if path.suffix.lower() == ".md":
        return "text/markdown"
    media_type, _ = mimetypes.guess_type(path.name)
    return media_type


def _run(args: argparse.Namespace) -> str:
    settings = get_settings()
    engine = get_engine()
    init_db(engine)
    service = build_ingestion_service(settings, engine)

    if args.command == "website":
        result = service.ingest_website(args.url, max_pages=args.max_pages)
        return (
            f"website_id={result.source.id} pages={result.pages} "
            f"chunks={result.chunk_count} cancelled={str(result.cancelled).lower()}"
        )

    if args.command == "document":
        path = Path(args.path)
        result = service.ingest_document(
            path.read_bytes(),
            filename=path.name,
            media_type=args.media_type or _guess_media_type(path),
        )
        return (
            f"document_id={result.source.id} chunks={result.chunk_count} "
            f"chars={result.text_length}"
        )

    result = service.index_source(SourceKind(args.kind), args.source_id)
    return f"source={result.source} chunks={result.chunk_count} chars={result.text_length}"


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging(get_settings().log_level)

    try:
        summary = _run(args)
    except (LumenError, OSError, ValueError) as exc:
        print(f"[lumen-ingest] failed: {exc}", file=sys.stderr, flush=True)
        raise SystemExit(1) from exc

    print(f"[lumen-ingest] completed {args.command} {summary}", flush=True)


if __name__ == "__main__":
    main()
