"""
Exception taxonomy shared by fetchers, site parsers, the detector and the pipeline.

FetchError and ExtractionError raised while listing a source abort that source.
The same errors raised while processing a single article are recorded and the
crawl moves on to the next article.
"""
from typing import Optional


class CrawlerError(Exception):
    """Base class for every error raised by CompetitorWatch."""
    pass


class FetchError(CrawlerError):
    """Network failure, timeout or non-2xx response."""

    def __init__(self, message: str, url: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class ExtractionError(CrawlerError):
    """The fetched document had no structure we could extract from."""
    pass


class ConfigError(CrawlerError):
    """Unknown parser type or malformed parser configuration document."""
    pass


class SummarizationError(CrawlerError):
    """The summarizer gave up after exhausting its retries."""
    pass
