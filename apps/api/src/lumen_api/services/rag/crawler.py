"""Breadth-first, single-host website crawler.

One crawl call owns its frontier and visited set. Fetches run on a bounded
thread pool; each wave of URLs is merged back in dispatch order, so for a
fixed page graph the visited set and page order match a sequential BFS.
"""

from __future__ import annotations

from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
import logging
from threading import Event, Lock
import time
from typing import Callable, Protocol
from urllib.parse import urldefrag, urljoin, urlsplit, urlunsplit

import httpx

from lumen_api.errors import FetchFailure, InvalidInput
from lumen_api.services.rag.html import collapse_whitespace, parse_page
from lumen_api.services.rag.types import CrawledPage

logger = logging.getLogger(__name__)

_SKIPPED_SCHEMES = ("javascript:", "mailto:", "tel:", "data:")
_HTML_TYPES = {"", "text/html", "application/xhtml+xml"}
_POLL_SECONDS = 0.05


@dataclass(frozen=True)
class FetchedResponse:
    url: str
    status_code: int
    content_type: str
    text: str


class PageFetcher(Protocol):
    def fetch(self, url: str, *, timeout: float | None = None) -> FetchedResponse: ...


class HttpxPageFetcher:
    def __init__(
        self,
        *,
        timeout_seconds: float = 15.0,
        user_agent: str = "LumenCrawler/0.1",
        client: httpx.Client | None = None,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._owns_client = client is None
        self._client = client or httpx.Client(
            follow_redirects=True,
            headers={"User-Agent": user_agent},
            timeout=timeout_seconds,
        )

    def fetch(self, url: str, *, timeout: float | None = None) -> FetchedResponse:
        try:
            response = self._client.get(url, timeout=timeout or self._timeout_seconds)
        except httpx.HTTPError as exc:
            raise FetchFailure(url, f"{type(exc).__name__}: {exc}") from exc

        return FetchedResponse(
            url=str(response.url),
            status_code=response.status_code,
            content_type=response.headers.get("content-type", ""),
            text=response.text,
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> HttpxPageFetcher:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def normalize_url(href: str, base_url: str | None = None) -> str | None:
    """Absolute http(s) URL without fragment, or None when it cannot be followed."""
    candidate = href.strip()
    if not candidate or candidate.startswith("#"):
        return None
    if candidate.lower().startswith(_SKIPPED_SCHEMES):
        return None

    try:
        absolute = urljoin(base_url, candidate) if base_url else candidate
        absolute, _fragment = urldefrag(absolute)
        parts = urlsplit(absolute)
        hostname = parts.hostname
    except ValueError:
        return None

    scheme = parts.scheme.lower()
    if scheme not in {"http", "https"} or not hostname:
        return None

    return urlunsplit((scheme, parts.netloc.lower(), parts.path or "/", parts.query, ""))


class CrawlFrontier:
    """FIFO queue plus visited set for one crawl; a URL is enqueued at most once."""

    def __init__(self, start_url: str) -> None:
        self._lock = Lock()
        self._queue: deque[str] = deque([start_url])
        self._seen: set[str] = {start_url}
        self._visited: list[str] = []

    def offer(self, url: str) -> bool:
        with self._lock:
            if url in self._seen:
                return False
            self._seen.add(url)
            self._queue.append(url)
            return True

    def take(self, limit: int) -> list[str]:
        with self._lock:
            batch: list[str] = []
            while self._queue and len(batch) < limit:
                url = self._queue.popleft()
                self._visited.append(url)
                batch.append(url)
            return batch

    @property
    def visited(self) -> list[str]:
        with self._lock:
            return list(self._visited)

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)


@dataclass
class CrawlStats:
    fetched: int = 0
    failed: int = 0
    external_links_skipped: int = 0
    failures: list[FetchFailure] = field(default_factory=list)


@dataclass(frozen=True)
class CrawlReport:
    pages: list[CrawledPage]
    visited: list[str]
    stats: CrawlStats
    cancelled: bool


@dataclass(frozen=True)
class _Visit:
    url: str
    page: CrawledPage | None = None
    links: tuple[str, ...] = ()
    base_url: str = ""
    failure: FetchFailure | None = None


def _remaining(deadline: float | None) -> float | None:
    if deadline is None:
        return None
    return deadline - time.monotonic()


class WebCrawler:
    def __init__(
        self,
        fetcher: PageFetcher,
        *,
        concurrency: int = 4,
        request_timeout_seconds: float = 15.0,
    ) -> None:
        if concurrency < 1:
            raise InvalidInput("concurrency must be >= 1")
        self._fetcher = fetcher
        self._concurrency = concurrency
        self._request_timeout_seconds = request_timeout_seconds
        self._abandoned: list[Future[_Visit]] = []

    def crawl(
        self,
        start_url: str,
        max_pages: int,
        *,
        cancel_event: Event | None = None,
        deadline: float | None = None,
    ) -> list[CrawledPage]:
        return self.run(
            start_url, max_pages, cancel_event=cancel_event, deadline=deadline
        ).pages

    def run(
        self,
        start_url: str,
        max_pages: int,
        *,
        cancel_event: Event | None = None,
        deadline: float | None = None,
    ) -> CrawlReport:
        normalized_start = normalize_url(start_url)
        if normalized_start is None:
            raise InvalidInput(f"Invalid start URL: {start_url!r}")

        stats = CrawlStats()
        if max_pages <= 0:
            return CrawlReport(pages=[], visited=[], stats=stats, cancelled=False)

        start_host = urlsplit(normalized_start).hostname
        frontier = CrawlFrontier(normalized_start)
        pages: list[CrawledPage] = []
        cancelled = False
        futures: list[Future[_Visit]] = []

        pool = ThreadPoolExecutor(max_workers=self._concurrency, thread_name_prefix="crawl")
        try:
            while len(pages) < max_pages:
                if self._should_stop(cancel_event, deadline):
                    cancelled = True
                    break

                batch = frontier.take(min(self._concurrency, max_pages - len(pages)))
                if not batch:
                    break

                timeout = self._request_timeout(deadline)
                futures = [pool.submit(self._visit, url, timeout) for url in batch]
                if not self._wait_for_wave(futures, cancel_event, deadline):
                    cancelled = True

                for future in futures:
                    if future.cancelled() or not future.done():
                        continue
                    visit = future.result()
                    if visit.failure is not None:
                        stats.failed += 1
                        stats.failures.append(visit.failure)
                        logger.warning("crawl fetch failed: %s", visit.failure)
                        continue
                    if visit.page is None or len(pages) >= max_pages:
                        continue

                    pages.append(visit.page)
                    logger.debug("crawled %s links=%d", visit.url, len(visit.links))
                    stats.fetched += 1
                    for href in visit.links:
                        link = normalize_url(href, visit.base_url)
                        if link is None:
                            continue
                        if urlsplit(link).hostname != start_host:
                            stats.external_links_skipped += 1
                            continue
                        frontier.offer(link)

                if cancelled:
                    break
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
            self._abandoned = [future for future in futures if not future.done()]

        logger.info(
            "crawl finished start=%s pages=%d failed=%d cancelled=%s",
            normalized_start,
            len(pages),
            stats.failed,
            cancelled,
        )
        return CrawlReport(pages=pages, visited=frontier.visited, stats=stats, cancelled=cancelled)

    def after_in_flight(self, callback: Callable[[], None]) -> None:
        """Call ``callback`` once fetches abandoned by the last crawl have returned.

        A cancelled crawl returns without waiting for running fetches, so a
        fetcher owned by the caller must not be closed before this fires.
        """
        pending = [future for future in self._abandoned if not future.done()]
        if not pending:
            callback()
            return

        guard = Lock()
        remaining = [len(pending)]

        def _on_done(_future: Future[_Visit]) -> None:
            with guard:
                remaining[0] -= 1
                last = remaining[0] == 0
            if last:
                callback()

        for future in pending:
            future.add_done_callback(_on_done)

    def _should_stop(self, cancel_event: Event | None, deadline: float | None) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            return True
        remaining = _remaining(deadline)
        return remaining is not None and remaining <= 0

    def _request_timeout(self, deadline: float | None) -> float:
        remaining = _remaining(deadline)
        if remaining is None:
            return self._request_timeout_seconds
        return max(0.001, min(self._request_timeout_seconds, remaining))

    def _wait_for_wave(
        self,
        futures: list[Future[_Visit]],
        cancel_event: Event | None,
        deadline: float | None,
    ) -> bool:
        pending = set(futures)
        while pending:
            if self._should_stop(cancel_event, deadline):
                for future in pending:
                    future.cancel()
                return False
            _done, pending = wait(pending, timeout=_POLL_SECONDS, return_when=FIRST_COMPLETED)
        return True

    def _visit(self, url: str, timeout: float) -> _Visit:
        try:
            response = self._fetcher.fetch(url, timeout=timeout)
        except FetchFailure as exc:
            return _Visit(url=url, failure=exc)
        except Exception as exc:
            return _Visit(url=url, failure=FetchFailure(url, f"{type(exc).__name__}: {exc}"))

        if response.status_code >= 400:
            return _Visit(url=url, failure=FetchFailure(url, f"HTTP {response.status_code}"))

        content_type = response.content_type.split(";", 1)[0].strip().lower()
        base_url = response.url or url

        if content_type == "text/plain":
            page = CrawledPage(url=url, title=url, content=collapse_whitespace(response.text))
            return _Visit(url=url, page=page, base_url=base_url)

        if content_type not in _HTML_TYPES:
            return _Visit(url=url, failure=FetchFailure(url, f"non-text response ({content_type})"))

        try:
            title, content, links = parse_page(response.text, url)
        except Exception as exc:
            return _Visit(url=url, failure=FetchFailure(url, f"unparseable HTML: {exc}"))

        return _Visit(
            url=url,
            page=CrawledPage(url=url, title=title, content=content),
            links=tuple(links),
            base_url=base_url,
        )


def crawl_website(
    start_url: str,
    max_pages: int,
    *,
    fetcher: PageFetcher | None = None,
    concurrency: int = 4,
    timeout_seconds: float = 15.0,
    user_agent: str = "LumenCrawler/0.1",
    cancel_event: Event | None = None,
    deadline: float | None = None,
) -> CrawlReport:
    if fetcher is not None:
        crawler = WebCrawler(
            fetcher, concurrency=concurrency, request_timeout_seconds=timeout_seconds
        )
        return crawler.run(start_url, max_pages, cancel_event=cancel_event, deadline=deadline)

    owned = HttpxPageFetcher(timeout_seconds=timeout_seconds, user_agent=user_agent)
    crawler = WebCrawler(owned, concurrency=concurrency, request_timeout_seconds=timeout_seconds)
    try:
        return crawler.run(start_url, max_pages, cancel_event=cancel_event, deadline=deadline)
    finally:
        crawler.after_in_flight(owned.close)


def crawl(
    start_url: str,
    max_pages: int,
    *,
    fetcher: PageFetcher | None = None,
    concurrency: int = 4,
    cancel_event: Event | None = None,
    deadline: float | None = None,
) -> list[CrawledPage]:
    return crawl_website(
        start_url,
        max_pages,
        fetcher=fetcher,
        concurrency=concurrency,
        cancel_event=cancel_event,
        deadline=deadline,
    ).pages
