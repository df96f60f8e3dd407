"""
Pydantic models for everything that flows between parsers, the pipeline,
the detector and the repository.
"""
import re
import datetime
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, computed_field


IMAGE_SNIPPET_PREFIX = '__IMG__'
IMAGE_SNIPPET_SEPARATOR = '__'
_SNIPPET_URL_ESCAPE_RE = re.compile(r'%(25|5F)')

CrawlStatus = Literal['success', 'partial', 'error']
Confidence = Literal['high', 'medium', 'low']


# ----------------------------------------------------------------------------------------------------------------------

class Source(BaseModel):
    """A configured origin. Owned by the repository, read-only for the crawler."""
    id: int = 0
    name: str
    url: str
    parser_type: str
    parser_config: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    genre: Optional[str] = None


class CandidateItem(BaseModel):
    """One item discovered while listing a source, before the novelty filter."""
    external_url: str
    title: str
    published_at: Optional[datetime.datetime] = None
    snippet: Optional[str] = None


class ExtractedContent(BaseModel):
    """Result of fetching and extracting a single article page."""
    text: str = Field(default="", repr=False)
    image_url: Optional[str] = None

    @computed_field(repr=True)
    @property
    def content_preview(self) -> str:
        if not self.text:
            return "[No Content]"
        cleaned = self.text.replace('\n', ' ')
        return cleaned[:100] + "..." if len(cleaned) > 100 else cleaned


class CrawlOutcome(BaseModel):
    """Per-source result of one crawl run."""
    articles_found: int = 0
    new_articles: int = 0
    errors: List[str] = Field(default_factory=list)
    status: CrawlStatus = 'success'

    def to_wire(self) -> Dict[str, Any]:
        return {'articlesFound': self.articles_found, 'newArticles': self.new_articles, 'errors': list(self.errors)}


class CrawlLogRecord(BaseModel):
    source_id: int
    status: CrawlStatus
    articles_found: int = 0
    new_articles: int = 0
    error_message: Optional[str] = None
    started_at: datetime.datetime
    finished_at: datetime.datetime
    duration_ms: int = 0


class ArticleRecord(BaseModel):
    source_id: int
    external_url: str
    title: str
    published_at: Optional[datetime.datetime] = None
    image_url: Optional[str] = None
    raw_content: str = Field(default="", repr=False)
    summary: str = ""
    category: Literal['product', 'news'] = 'news'


class DetectionResult(BaseModel):
    """Advisory parser guess for a bare URL. Never persisted by the crawler itself."""
    parser_type: str
    parser_config: Dict[str, Any] = Field(default_factory=dict)
    confidence: Confidence
    description: str
    site_name: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        """camelCase document, the shape the onboarding UI expects."""
        data = {
            'parserType': self.parser_type,
            'parserConfig': self.parser_config,
            'confidence': self.confidence,
            'description': self.description,
        }
        if self.site_name:
            data['siteName'] = self.site_name
        return data


# ----------------------------------------------------------------------------------------------------------------------

def encode_image_snippet(image_url: Optional[str], description: Optional[str] = None) -> Optional[str]:
    """
    Packs an image found during list extraction into the snippet so that the
    pipeline can use it without fetching the article page again.

    '%' and '_' in the URL are percent-escaped, so the first '__' after the
    prefix always ends the URL.

    :param image_url: Absolute image URL, or None.
    :param description: Optional description text.
    :return: '__IMG__<url>__<description>' when an image is given, else the description.
    """
    if not image_url:
        return description or None
    escaped_url = image_url.replace('%', '%25').replace('_', '%5F')
    return f"{IMAGE_SNIPPET_PREFIX}{escaped_url}{IMAGE_SNIPPET_SEPARATOR}{description or ''}"


def decode_image_snippet(snippet: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """
    Inverse of encode_image_snippet.

    :return: (image_url, description). Plain snippets come back as (None, snippet).
    """
    if not snippet or not snippet.startswith(IMAGE_SNIPPET_PREFIX):
        return None, snippet or None
    rest = snippet[len(IMAGE_SNIPPET_PREFIX):]
    escaped_url, _, description = rest.partition(IMAGE_SNIPPET_SEPARATOR)
    image_url = _SNIPPET_URL_ESCAPE_RE.sub(lambda m: '%' if m.group(1) == '25' else '_', escaped_url)
    return image_url or None, description or None
