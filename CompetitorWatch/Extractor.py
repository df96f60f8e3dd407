#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Extractor Module:
Defines the IExtractor interface and the implementations that turn a fetched
article page into plain text plus a representative image.

The helpers at module level (image discovery, URL and date normalization,
HTML stripping) are shared with the site parsers and the config detector.
"""
import re
import datetime
import logging
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Union
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from dateutil import parser as date_parser

from CompetitorWatch.Errors import ExtractionError
from CompetitorWatch.Models import ExtractedContent


logger = logging.getLogger(__name__)

DEFAULT_MAX_CHARS = 10000

BOILERPLATE_SELECTORS = ['nav', 'footer', 'header', 'script', 'style', '.sidebar', '.cookie-banner']

# Images that belong to the site rather than to the article
GENERIC_IMAGE_PATTERNS = [
    re.compile(r'/logo\b'),
    re.compile(r'/common/'),
    re.compile(r'meta_guide'),
    re.compile(r'default[-_]?(image|og|share|thumb)'),
    re.compile(r'og[-_]?image\.(png|jpg|jpeg)'),
    re.compile(r'share[-_]?image'),
    re.compile(r'favicon'),
]

IMAGE_CONTENT_AREAS = [
    'article', '.article', '.post-content', '.entry-content',
    '.content-body', '.detail', '.news-detail', 'main',
    '.bbs-view-content', '.newsroom_view', '.detailAreaMain',
]

BACKGROUND_URL_RE = re.compile(r"""url\(['"]?([^'")\s]+)['"]?\)""")
_WHITESPACE_RE = re.compile(r'\s+')
_JP_DATE_RE = re.compile(r'(\d{4})\s*年\s*(\d{1,2})\s*月\s*(\d{1,2})\s*日?')
_YMD_DATE_RE = re.compile(r'(?<!\d)(\d{4})\s*[./-]\s*(\d{1,2})\s*[./-]\s*(\d{1,2})(?!\d)')
_DMY_DATE_RE = re.compile(r'(?<!\d)(\d{1,2})[./-](\d{1,2})[./-](\d{4})(?!\d)')
_MONTHS = r'(?:jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\.?'
_MONTH_NAME_DATE_RE = re.compile(
    rf'\b{_MONTHS}\s+\d{{1,2}}(?:st|nd|rd|th)?,?\s+\d{{4}}\b|\b\d{{1,2}}(?:st|nd|rd|th)?\s+{_MONTHS},?\s+\d{{4}}\b',
    re.IGNORECASE)


# ----------------------------------------------------------------------------------------------------------------------

def make_soup(content) -> BeautifulSoup:
    """Parses bytes or str as HTML with lxml. Bytes let BeautifulSoup sniff the declared charset."""
    return BeautifulSoup(content or b'', 'lxml')


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(' ', text or '').strip()


def strip_html(html: str) -> str:
    """Plain text of an HTML fragment, script and style bodies dropped, whitespace collapsed."""
    if not html:
        return ''
    soup = make_soup(html)
    for tag in soup(['script', 'style']):
        tag.decompose()
    return collapse_whitespace(soup.get_text(' '))


def normalize_url(href: str, base_url: str) -> str:
    href = (href or '').strip()
    if href.startswith('http://') or href.startswith('https://'):
        return href
    return urljoin(base_url, href)


def is_generic_image(url: Optional[str]) -> bool:
    if not url:
        return False
    lower = url.lower()
    return any(p.search(lower) for p in GENERIC_IMAGE_PATTERNS)


def filter_image_url(url: Optional[str]) -> Optional[str]:
    """Returns the URL if it looks article-specific, None otherwise."""
    if not url or is_generic_image(url):
        return None
    return url


def background_image_url(style: Optional[str]) -> Optional[str]:
    if not style:
        return None
    match = BACKGROUND_URL_RE.search(style)
    return match.group(1) if match else None


def parse_date(text: Optional[str]) -> Optional[datetime.datetime]:
    """
    Date parsing for dates scraped out of markup.

    Only text that holds a whole date is parsed: year-month-day numbers such as
    '2024-03-05', '2024.03.05', '2024. 3. 5' or '2024年3月5日', day-month-year numbers,
    or an English month name with day and year. A label around the date is dropped,
    while text with a lone number ('Vol. 3', 'No.10') gives None. Naive results
    are taken as UTC.
    """
    if not text:
        return None
    text = _WHITESPACE_RE.sub(' ', text).strip()
    jp = _JP_DATE_RE.search(text)
    if jp:
        text = f"{jp.group(1)}-{jp.group(2)}-{jp.group(3)}"
    text = _YMD_DATE_RE.sub(r'\1-\2-\3', text)
    text = _DMY_DATE_RE.sub(r'\1/\2/\3', text)

    match = _YMD_DATE_RE.search(text) or _DMY_DATE_RE.search(text) or _MONTH_NAME_DATE_RE.search(text)
    if match is None:
        return None

    # The whole text keeps time and zone when it is nothing but a date
    value = None
    for candidate in (text, match.group(0)):
        try:
            value = date_parser.parse(candidate)
            break
        except (ValueError, OverflowError):
            continue
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    return value


def _dimension(value: Optional[str]) -> int:
    # Missing or non-numeric sizes count as large
    match = re.match(r'\s*(\d+)', value or '')
    return int(match.group(1)) if match else 999


def _resolve_image(src: Optional[str], page_url: str) -> Optional[str]:
    if not src:
        return None
    src = src.strip()
    if not src or src.startswith('data:'):
        return None
    return filter_image_url(normalize_url(src, page_url))


def extract_best_image(soup: BeautifulSoup, page_url: str, content_selectors: Iterable[str] = ()) -> Optional[str]:
    """
    Finds the image that best represents a page.

    Tried in order: og:image, twitter:image, a reasonably sized <img> inside a
    content area, any large <img>, and finally a CSS background-image.
    Logos, favicons and default share images are skipped at every step.

    :param soup: The parsed page. Not modified.
    :param page_url: Used to resolve relative sources.
    :param content_selectors: Extra content-area selectors tried before the built-in ones.
    :return: Absolute image URL or None.
    """
    for attrs in ({'property': 'og:image'}, {'name': 'twitter:image'}):
        meta = soup.find('meta', attrs=attrs)
        if meta:
            image = _resolve_image(meta.get('content'), page_url)
            if image:
                return image

    areas = list(content_selectors) + IMAGE_CONTENT_AREAS
    for area in soup.select(', '.join(areas)):
        for img in area.find_all('img'):
            src = img.get('src') or img.get('data-src') or ''
            if _dimension(img.get('width')) < 50 or _dimension(img.get('height')) < 50:
                continue
            if any(word in src for word in ('pixel', 'spacer', 'icon')):
                continue
            image = _resolve_image(img.get('src') or img.get('data-src') or img.get('data-lazy-src'), page_url)
            if image:
                return image

    for img in soup.find_all('img'):
        src = img.get('src') or img.get('data-src') or ''
        if _dimension(img.get('width')) < 100 or _dimension(img.get('height')) < 80:
            continue
        if any(word in src for word in ('pixel', 'spacer', 'icon', 'avatar')):
            continue
        image = _resolve_image(src, page_url)
        if image:
            return image

    for element in soup.select("[style*='background-image']"):
        image = _resolve_image(background_image_url(element.get('style')), page_url)
        if image:
            return image
    return None


def remove_elements(soup: BeautifulSoup, selectors: Iterable[str]):
    for selector in selectors:
        for element in soup.select(selector):
            element.decompose()


def first_region_text(soup: BeautifulSoup, region_selectors: Iterable[str]) -> str:
    """Text of the first selector, in priority order, that matches an element with text."""
    for selector in region_selectors:
        for element in soup.select(selector):
            text = collapse_whitespace(element.get_text(' '))
            if text:
                return text
    return ''


def meta_content(soup: BeautifulSoup, *candidates: dict) -> Optional[str]:
    for attrs in candidates:
        meta = soup.find('meta', attrs=attrs)
        if meta and meta.get('content'):
            return meta['content'].strip()
    return None


# ----------------------------------------------------------------------------------------------------------------------

class IExtractor(ABC):
    """
    Abstract base class for a content extractor.

    An extractor takes the raw bytes of an article page and its URL, and
    returns the plain text body plus the page's representative image.
    """

    def __init__(self, verbose: bool = False, max_chars: int = DEFAULT_MAX_CHARS):
        """
        :param verbose: Also send the trace to the module logger at INFO instead of DEBUG.
        :param max_chars: Upper bound of the returned text.
        """
        self.verbose = verbose
        self.max_chars = max_chars
        self.log_messages: List[str] = []

    def _log(self, message: str, indent: int = 0):
        log_msg = f"{' ' * (indent * 4)}{message}"
        self.log_messages.append(log_msg)
        logger.log(logging.INFO if self.verbose else logging.DEBUG, log_msg)

    @abstractmethod
    def extract(self, content: Union[str, bytes], url: str, **kwargs) -> ExtractedContent:
        """
        Extracts the main text and image from an article page.

        :param content: The HTML as raw bytes, or as text already decoded with the response charset.
        :param url: The page URL, used to resolve relative image sources.
        :param kwargs: Implementation-specific options.
        :return: ExtractedContent
        :raises ExtractionError: Nothing usable was found on the page.
        """
        pass


class RegionExtractor(IExtractor):
    """
    Takes the text of the first content region that matches, in priority order,
    after removing navigation and other boilerplate. Falls back to the whole body.
    """

    def __init__(self,
                 region_selectors: List[str],
                 remove_selectors: Optional[List[str]] = None,
                 image_areas: Optional[List[str]] = None,
                 verbose: bool = False,
                 max_chars: int = DEFAULT_MAX_CHARS):
        super().__init__(verbose, max_chars)
        self.region_selectors = region_selectors
        self.remove_selectors = remove_selectors if remove_selectors is not None else list(BOILERPLATE_SELECTORS)
        self.image_areas = image_areas or []

    def extract(self, content: Union[str, bytes], url: str, **kwargs) -> ExtractedContent:
        """
        :param kwargs:
            selectors (List[str]): Configured regions, tried before the built-in ones.
            remove_selectors (List[str]): Configured boilerplate, removed in addition to the built-in list.
        """
        soup = make_soup(content)
        extra_regions = list(kwargs.get('selectors') or [])
        extra_removals = list(kwargs.get('remove_selectors') or [])

        # Image first, the boilerplate pass may remove the element carrying it
        image_url = extract_best_image(soup, url, extra_regions + self.image_areas)

        remove_elements(soup, self.remove_selectors + extra_removals)
        text = first_region_text(soup, extra_regions + self.region_selectors)
        if not text and soup.body:
            self._log(f"No content region matched on {url}, using page body.")
            text = collapse_whitespace(soup.body.get_text(' '))
        if not text:
            raise ExtractionError(f"No text content found on {url}")

        return ExtractedContent(text=text[:self.max_chars], image_url=image_url)


class ProductPageExtractor(IExtractor):
    """
    Product detail pages rarely have an article body. Name, description and the
    rows of a spec table are assembled instead, and the broad content area is
    used only when that yields nothing beyond the name.
    """

    DESCRIPTION_SELECTORS = ".product-description, .product-overview, [class*='description']"
    SPEC_ROW_SELECTORS = "table tr, .spec-row, [class*='spec'] tr"
    FALLBACK_REGIONS = ['main', '.content-area', 'article', '.product-detail']

    def extract(self, content: Union[str, bytes], url: str, **kwargs) -> ExtractedContent:
        soup = make_soup(content)

        image_url = filter_image_url(
            _resolve_image(meta_content(soup, {'property': 'og:image'}, {'name': 'twitter:image'}), url))

        remove_elements(soup, BOILERPLATE_SELECTORS + list(kwargs.get('remove_selectors') or []))

        parts = []
        heading = soup.find('h1')
        name = collapse_whitespace(heading.get_text(' ')) if heading else ''
        if not name:
            name = meta_content(soup, {'property': 'og:title'}) or ''
        if name:
            parts.append(f"製品名: {name}")

        description = ''
        description_el = soup.select_one(self.DESCRIPTION_SELECTORS)
        if description_el:
            description = collapse_whitespace(description_el.get_text(' '))
        if not description:
            description = meta_content(soup, {'name': 'description'}, {'property': 'og:description'}) or ''
        if description:
            parts.append(f"説明: {description}")

        spec_lines = []
        for row in soup.select(self.SPEC_ROW_SELECTORS):
            cells = [collapse_whitespace(c.get_text(' ')) for c in row.find_all(['th', 'td'])]
            if len(cells) >= 2:
                spec_lines.append(f"{cells[0]}: {' / '.join(cells[1:])}")
        if spec_lines:
            parts.append("仕様:\n" + '\n'.join(spec_lines))

        if len(parts) <= 1:
            regions = list(kwargs.get('selectors') or []) + self.FALLBACK_REGIONS
            body = first_region_text(soup, regions)
            if not body and soup.body:
                body = collapse_whitespace(soup.body.get_text(' '))
            if body:
                parts.append(body)

        if not parts:
            raise ExtractionError(f"No product information found on {url}")

        self._log(f"Assembled {len(parts)} product sections from {url}")
        return ExtractedContent(text='\n\n'.join(parts)[:self.max_chars], image_url=image_url)


class OpenGraphExtractor(IExtractor):
    """For pages whose useful content lives only in OpenGraph tags, such as video watch pages."""

    def __init__(self, title_label: str = '動画タイトル', description_label: str = '説明',
                 verbose: bool = False, max_chars: int = DEFAULT_MAX_CHARS):
        super().__init__(verbose, max_chars)
        self.title_label = title_label
        self.description_label = description_label

    def extract(self, content: Union[str, bytes], url: str, **kwargs) -> ExtractedContent:
        soup = make_soup(content)
        title = meta_content(soup, {'property': 'og:title'})
        description = meta_content(soup, {'property': 'og:description'}, {'name': 'description'})
        image_url = _resolve_image(meta_content(soup, {'property': 'og:image'}), url)

        parts = []
        if title:
            parts.append(f"{self.title_label}: {title}")
        if description:
            parts.append(f"{self.description_label}: {description}")
        if not parts:
            raise ExtractionError(f"No OpenGraph metadata on {url}")
        return ExtractedContent(text='\n'.join(parts)[:self.max_chars], image_url=image_url)
