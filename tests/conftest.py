"""Shared fixtures: a canned-response fetcher and small builders for pages and sources."""
import json
import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

import pytest

from CompetitorWatch.Config import Settings
from CompetitorWatch.Errors import FetchError, SummarizationError
from CompetitorWatch.Fetcher import Fetcher, FetchResponse
from CompetitorWatch.Models import Source
from CompetitorWatch.Persistence import InMemoryRepository


Canned = Union[FetchResponse, Exception]


class StubFetcher(Fetcher):
    """Serves registered responses by URL and records every call with its options."""

    def __init__(self, responses: Optional[Dict[str, Canned]] = None):
        self.responses: Dict[str, Canned] = dict(responses or {})
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.closed = False

    def add(self, url: str, body: Union[str, bytes] = b'', status: int = 200,
            content_type: str = 'text/html; charset=utf-8') -> "StubFetcher":
        if isinstance(body, str):
            body = body.encode('utf-8')
        self.responses[url] = FetchResponse(url=url, status_code=status,
                                            headers={'content-type': content_type}, content=body,
                                            encoding='utf-8')
        return self

    def add_json(self, url: str, data: Any, status: int = 200) -> "StubFetcher":
        return self.add(url, json.dumps(data), status=status, content_type='application/json')

    def fail(self, url: str, error: Optional[Exception] = None) -> "StubFetcher":
        self.responses[url] = error or FetchError(f"Connection refused: {url}", url=url)
        return self

    @property
    def urls(self) -> List[str]:
        return [url for url, _ in self.calls]

    def get_response(self, url: str, **kwargs) -> FetchResponse:
        self.calls.append((url, kwargs))
        canned = self.responses.get(url)
        if canned is None:
            raise FetchError(f"HTTP 404 for {url}", url=url, status_code=404)
        if isinstance(canned, Exception):
            raise canned
        if not canned.ok and not kwargs.get('allow_error_status'):
            raise FetchError(f"HTTP {canned.status_code} for {url}", url=url, status_code=canned.status_code)
        return canned

    def close(self):
        self.closed = True


class RecordingSummarizer:
    """Summarizer double returning a well-formed summary, or raising for titles listed in fail_titles."""

    def __init__(self, fail_titles=()):
        self.fail_titles = set(fail_titles)
        self.calls: List[Tuple[str, str, bool]] = []

    def summarize(self, title: str, content: str, is_product: bool = False) -> str:
        self.calls.append((title, content, is_product))
        if title in self.fail_titles:
            raise SummarizationError("model unavailable")
        return f"タイトル：{title}\n要約：{content[:40]}"


def html_page(body: str, head: str = '') -> str:
    return f"<html><head>{head}</head><body>{body}</body></html>"


def article_page(text: str = 'Quarterly results were announced today with record revenue. ' * 3) -> str:
    return html_page(f"<nav>Menu</nav><article><h1>Headline</h1><p>{text}</p></article><footer>(c)</footer>")


FIXED_NOW = datetime.datetime(2024, 6, 1, 12, 0, tzinfo=datetime.timezone.utc)


@pytest.fixture
def stub_fetcher() -> StubFetcher:
    return StubFetcher()


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def settings() -> Settings:
    return Settings(fetch_delay_s=0, max_new_per_crawl=20)


@pytest.fixture
def list_source() -> Source:
    return Source(id=1, name='Example News', url='https://x.test/news/',
                  parser_type='html-list',
                  parser_config={'list': {'itemSelector': 'ul.list > li', 'titleSelector': 'h3'}})
