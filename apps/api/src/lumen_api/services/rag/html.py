from __future__ import annotations

import re

from bs4 import BeautifulSoup

_WHITESPACE = re.compile(r"\s+")
_NON_CONTENT_TAGS = ("script", "style", "noscript", "template")


def collapse_whitespace(value: str) -> str:
    return _WHITESPACE.sub(" ", value).strip()


def _soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


def _title_of(soup: BeautifulSoup, url: str) -> str:
    title_tag = soup.find("title")
    if title_tag is None:
        return url
    return collapse_whitespace(title_tag.get_text()) or url


def _links_of(soup: BeautifulSoup) -> list[str]:
    return [str(anchor["href"]).strip() for anchor in soup.find_all("a", href=True)]


def _strip_to_text(soup: BeautifulSoup) -> str:
    for tag in soup.find_all(_NON_CONTENT_TAGS):
        tag.decompose()
    return collapse_whitespace(soup.get_text(" "))


def extract_title(html: str, url: str) -> str:
    return _title_of(_soup(html), url)


def extract_content(html: str) -> str:
    return _strip_to_text(_soup(html))


def extract_links(html: str) -> list[str]:
    """Anchor ``href`` values in document order, unresolved."""
    return _links_of(_soup(html))


def parse_page(html: str, url: str) -> tuple[str, str, list[str]]:
    """Title, plain-text content and raw anchor hrefs of one HTML page.

    The title falls back to ``url`` when the page has no non-empty ``<title>``.
    """
    soup = _soup(html)
    title = _title_of(soup, url)
    links = _links_of(soup)
    return title, _strip_to_text(soup), links
