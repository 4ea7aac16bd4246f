import io

from docx import Document
import pytest

from lumen_api.errors import UnsupportedMediaType
from lumen_api.services.rag.extractor import extract_text, normalize_media_type
from lumen_api.services.rag.html import (
    collapse_whitespace,
    extract_links,
    extract_title,
    parse_page,
)


def test_normalize_media_type_drops_parameters() -> None:
    assert normalize_media_type("Text/HTML; charset=UTF-8") == "text/html"
    assert normalize_media_type(None) == ""


def test_plain_text_and_markdown_are_decoded() -> None:
    assert extract_text("héllo".encode("utf-8"), "text/plain") == "héllo"
    assert extract_text(b"# Title\n\nbody", "text/markdown") == "# Title\n\nbody"
    assert extract_text(b'{"a": 1}', "application/json") == '{"a": 1}'


def test_html_is_reduced_to_visible_text() -> None:
    html = (
        b"<html><head><style>body{}</style></head>"
        b"<body><h1>Hi</h1><script>alert(1)</script><p>there</p></body></html>"
    )

    assert extract_text(html, "text/html; charset=utf-8") == "Hi there"


def test_docx_paragraphs_and_tables_are_extracted() -> None:
    document = Document()
    document.add_paragraph("Quarterly report")
    table = document.add_table(rows=1, cols=2)
    table.cell(0, 0).text = "revenue"
    table.cell(0, 1).text = "42"
    buffer = io.BytesIO()
    document.save(buffer)

    text = extract_text(
        buffer.getvalue(),
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    )

    assert text == "Quarterly report\n\nrevenue | 42"


def test_corrupt_pdf_yields_empty_text() -> None:
    assert extract_text(b"not really a pdf", "application/pdf") == ""


@pytest.mark.parametrize("media_type", ["application/octet-stream", "image/png", "", None])
def test_unsupported_media_types_raise(media_type: str | None) -> None:
    with pytest.raises(UnsupportedMediaType):
        extract_text(b"\x89PNG", media_type)


def test_parse_page_returns_title_content_and_links() -> None:
    html = (
        "<html><head><title>Guide</title></head><body>"
        '<a href="/next">Next</a> <a href=" https://other.org ">Out</a><a>no href</a>'
        "</body></html>"
    )

    title, content, links = parse_page(html, "https://example.com/")

    assert title == "Guide"
    assert content == "Guide Next Out no href"
    assert links == ["/next", "https://other.org"]


def test_parse_page_title_falls_back_to_url() -> None:
    title, _, _ = parse_page("<html><head><title>  </title></head></html>", "https://x.io/")

    assert title == "https://x.io/"


def test_collapse_whitespace() -> None:
    assert collapse_whitespace("  a\n\n b\t c ") == "a b c"


def test_title_and_link_helpers_read_html_directly() -> None:
    html = '<title> Docs  Home </title><a href="/one">1</a><a href="two.html">2</a>'

    assert extract_title(html, "https://x.io/") == "Docs Home"
    assert extract_title("<p>untitled</p>", "https://x.io/") == "https://x.io/"
    assert extract_links(html) == ["/one", "two.html"]
