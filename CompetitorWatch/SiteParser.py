import re
import json
import logging
import datetime
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Set, Type, Union
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse

import feedparser
from bs4 import BeautifulSoup, Tag
from pydantic import ValidationError

from CompetitorWatch.Errors import ConfigError, ExtractionError, FetchError
from CompetitorWatch.Extractor import (
    BOILERPLATE_SELECTORS, DEFAULT_MAX_CHARS, IExtractor, OpenGraphExtractor, ProductPageExtractor, RegionExtractor,
    background_image_url, collapse_whitespace, make_soup, normalize_url, parse_date, strip_html)
from CompetitorWatch.Fetcher import Fetcher, PlaywrightFetcher, RequestsFetcher
from CompetitorWatch.Models import CandidateItem, ExtractedContent, encode_image_snippet
from CompetitorWatch.ParserConfig import (
    ApiJsonConfig, BaseParserConfig, ChannelFeedConfig, FeedConfig, HtmlListConfig, PaginationConfig,
    RenderedListConfig, WordPressConfig)


logger = logging.getLogger(__name__)

ConfigLike = Union[BaseParserConfig, Dict[str, Any], None]


class ISiteParser(ABC):
    """
    Abstract base class for a source adapter.

    An adapter turns one kind of remote source into a list of CandidateItem
    (list extraction) and, for a single item, into ExtractedContent (content
    extraction). All network I/O goes through the injected Fetcher.

    list_items raises FetchError when the origin is unreachable or answers
    non-2xx. An empty list is a normal answer. fetch_content raises FetchError
    or ExtractionError, which callers treat as a per-item failure.
    """

    parser_type: str = ''
    config_type: Type[BaseParserConfig] = BaseParserConfig

    def __init__(self, fetcher: Optional[Fetcher] = None, verbose: bool = False, max_chars: int = DEFAULT_MAX_CHARS):
        """
        :param fetcher: Fetcher used for every request. A RequestsFetcher is created (and owned) if omitted.
        :param verbose: Log the trace at INFO instead of DEBUG.
        :param max_chars: Upper bound of extracted text.
        """
        self._owns_fetcher = fetcher is None
        self.fetcher = fetcher or RequestsFetcher()
        self.verbose = verbose
        self.max_chars = max_chars
        self.log_messages: List[str] = []

    def _log(self, message: str, indent: int = 0):
        log_msg = f"{' ' * (indent * 4)}{message}"
        self.log_messages.append(log_msg)
        logger.log(logging.INFO if self.verbose else logging.DEBUG, log_msg)

    def parse_config(self, config: ConfigLike) -> BaseParserConfig:
        """Accepts a typed configuration or the stored wire document."""
        if isinstance(config, self.config_type):
            return config
        if isinstance(config, BaseParserConfig):
            config = config.to_wire()
        try:
            return self.config_type.model_validate(config or {})
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration for parser type '{self.parser_type}': {e}") from e

    @abstractmethod
    def list_items(self, source_url: str, config: ConfigLike = None) -> List[CandidateItem]:
        pass

    @abstractmethod
    def fetch_content(self, item_url: str, config: ConfigLike = None) -> ExtractedContent:
        pass

    def _extract_page(self, extractor: IExtractor, item_url: str, config: ConfigLike = None, **fetch_kwargs
                      ) -> ExtractedContent:
        """Fetches an article page and runs the extractor, with configured content selectors first."""
        content_config = self.parse_config(config).content if config is not None else None
        response = self.fetcher.get_response(item_url, **fetch_kwargs)
        extract_kwargs = {}
        if content_config:
            extract_kwargs = {'selectors': content_config.selectors,
                              'remove_selectors': content_config.remove_selectors}
        return extractor.extract(response.markup, response.url or item_url, **extract_kwargs)

    def close(self):
        if self._owns_fetcher:
            self.fetcher.close()


# ----------------------------------------------------------------------------------------------------------------------

def origin_of(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def _struct_time_to_datetime(value) -> Optional[datetime.datetime]:
    if not value:
        return None
    try:
        return datetime.datetime(*value[:6], tzinfo=datetime.timezone.utc)
    except (TypeError, ValueError):
        return None


def _entry_published(entry) -> Optional[datetime.datetime]:
    return (_struct_time_to_datetime(entry.get('published_parsed'))
            or _struct_time_to_datetime(entry.get('updated_parsed'))
            or parse_date(entry.get('published') or entry.get('updated')))


def _entry_image(entry) -> Optional[str]:
    for key in ('media_thumbnail', 'media_content'):
        for media in entry.get(key) or []:
            url = media.get('url')
            if url and (key == 'media_thumbnail' or media.get('medium') == 'image'
                        or (media.get('type') or '').startswith('image/')):
                return url
    for enclosure in entry.get('enclosures') or []:
        if (enclosure.get('type') or '').startswith('image/') and enclosure.get('href'):
            return enclosure['href']
    return None


def parse_feed_document(content: bytes, feed_url: str):
    """
    Runs feedparser over a fetched document.

    :raises ExtractionError: The document is neither RSS nor Atom.
    """
    parsed = feedparser.parse(content)
    if not parsed.get('version') and not parsed.entries:
        raise ExtractionError(f"{feed_url} is not an RSS or Atom document: {parsed.get('bozo_exception')}")
    return parsed


class FeedParser(ISiteParser):
    """
    RSS 2.0 and Atom feeds. The feed format is detected by feedparser; a
    document is assumed to be exclusively one of the two.
    """

    parser_type = 'rss'
    config_type = FeedConfig

    CONTENT_REGIONS = ['.module_body', '.news-detail', '.press-release-content', 'article', '.detail-body', 'main']
    IMAGE_AREAS = ['.news-detail', '.press-release-content', '.module_body', 'article']

    def __init__(self, fetcher: Optional[Fetcher] = None, verbose: bool = False, max_chars: int = DEFAULT_MAX_CHARS):
        super().__init__(fetcher, verbose, max_chars)
        self.extractor = RegionExtractor(self.CONTENT_REGIONS,
                                         remove_selectors=BOILERPLATE_SELECTORS + ['.module_pager'],
                                         image_areas=self.IMAGE_AREAS,
                                         verbose=verbose, max_chars=max_chars)

    def list_items(self, source_url: str, config: ConfigLike = None) -> List[CandidateItem]:
        cfg = self.parse_config(config)
        feed_url = cfg.rss_url or source_url
        self.log_messages.clear()
        self._log(f"Fetching feed {feed_url}")

        response = self.fetcher.get_response(feed_url)
        parsed = parse_feed_document(response.content, feed_url)
        if parsed.get('bozo'):
            self._log(f"[Warning] Feed is ill-formed: {parsed.get('bozo_exception')}", 1)

        items: List[CandidateItem] = []
        for entry in parsed.entries:
            title = collapse_whitespace(entry.get('title', ''))
            link = (entry.get('link') or '').strip()
            if not title or not link:
                continue
            description = strip_html(entry.get('summary') or entry.get('description') or '')
            items.append(CandidateItem(
                external_url=normalize_url(link, feed_url),
                title=title,
                published_at=_entry_published(entry),
                snippet=encode_image_snippet(_entry_image(entry), description or None),
            ))

        self._log(f"Found {len(items)} items in {parsed.get('version') or 'feed'} document.", 1)
        return items

    def fetch_content(self, item_url: str, config: ConfigLike = None) -> ExtractedContent:
        if urlparse(item_url).path.lower().endswith('.pdf'):
            return ExtractedContent(text=f"PDF document: {item_url}")
        return self._extract_page(self.extractor, item_url, config)


# ----------------------------------------------------------------------------------------------------------------------

YOUTUBE_FEED_URL = 'https://www.youtube.com/feeds/videos.xml?channel_id={channel_id}'
YOUTUBE_WATCH_URL = 'https://www.youtube.com/watch?v={video_id}'
YOUTUBE_THUMBNAIL_URL = 'https://i.ytimg.com/vi/{video_id}/hqdefault.jpg'

CHANNEL_PATH_RE = re.compile(r'/channel/(UC[a-zA-Z0-9_-]+)')
CHANNEL_ID_PATTERNS = [
    re.compile(r'"externalId":"(UC[a-zA-Z0-9_-]+)"'),
    re.compile(r'channel_id=(UC[a-zA-Z0-9_-]+)'),
]
CHANNEL_TAB_SUFFIX_RE = re.compile(r'/(shorts|videos|streams|playlists)/?$')
VIDEO_ID_RE = re.compile(r'(?:v=|/embed/|youtu\.be/|yt:video:)([a-zA-Z0-9_-]{11})')


class ChannelFeedParser(ISiteParser):
    """
    YouTube channels, read through the channel's public Atom feed.

    Accepts a feed URL, a /channel/UC... URL, or anything else that points at a
    channel page (handles, /c/ and /user/ names); the latter are fetched once
    to find the channel id.
    """

    parser_type = 'youtube'
    config_type = ChannelFeedConfig

    DESCRIPTION_LIMIT = 300

    def __init__(self, fetcher: Optional[Fetcher] = None, verbose: bool = False, max_chars: int = DEFAULT_MAX_CHARS):
        super().__init__(fetcher, verbose, max_chars)
        self.extractor = OpenGraphExtractor(verbose=verbose, max_chars=max_chars)

    def resolve_feed_url(self, channel_url: str) -> str:
        if '/feeds/videos.xml' in channel_url:
            return channel_url

        match = CHANNEL_PATH_RE.search(channel_url)
        if match:
            return YOUTUBE_FEED_URL.format(channel_id=match.group(1))

        page_url = CHANNEL_TAB_SUFFIX_RE.sub('', channel_url)
        self._log(f"Resolving channel id from {page_url}", 1)
        html = self.fetcher.get_text(page_url)
        for pattern in CHANNEL_ID_PATTERNS:
            match = pattern.search(html)
            if match:
                self._log(f"Resolved channel id: {match.group(1)}", 1)
                return YOUTUBE_FEED_URL.format(channel_id=match.group(1))
        raise ExtractionError(f"Could not find a YouTube channel id on {page_url}")

    @staticmethod
    def _video_id(entry) -> Optional[str]:
        video_id = entry.get('yt_videoid')
        if video_id:
            return video_id
        for candidate in (entry.get('id'), entry.get('link')):
            match = VIDEO_ID_RE.search(candidate or '')
            if match:
                return match.group(1)
        return None

    def list_items(self, source_url: str, config: ConfigLike = None) -> List[CandidateItem]:
        self.parse_config(config)
        self.log_messages.clear()
        feed_url = self.resolve_feed_url(source_url)
        self._log(f"Fetching channel feed {feed_url}")

        parsed = parse_feed_document(self.fetcher.get_content(feed_url), feed_url)
        items: List[CandidateItem] = []
        for entry in parsed.entries:
            video_id = self._video_id(entry)
            title = collapse_whitespace(entry.get('title', ''))
            if not video_id or not title:
                continue

            thumbnails = entry.get('media_thumbnail') or []
            thumbnail = thumbnails[0].get('url') if thumbnails else None
            thumbnail = thumbnail or YOUTUBE_THUMBNAIL_URL.format(video_id=video_id)
            description = collapse_whitespace(entry.get('media_description') or entry.get('summary') or '')

            items.append(CandidateItem(
                external_url=YOUTUBE_WATCH_URL.format(video_id=video_id),
                title=title,
                published_at=_entry_published(entry),
                snippet=encode_image_snippet(thumbnail, description[:self.DESCRIPTION_LIMIT] or None),
            ))

        self._log(f"Found {len(items)} videos.", 1)
        return items

    def fetch_content(self, item_url: str, config: ConfigLike = None) -> ExtractedContent:
        match = VIDEO_ID_RE.search(item_url)
        video_id = match.group(1) if match else None
        fallback_image = YOUTUBE_THUMBNAIL_URL.format(video_id=video_id) if video_id else None

        response = self.fetcher.get_response(item_url)
        try:
            content = self.extractor.extract(response.markup, item_url)
        except ExtractionError:
            soup = make_soup(response.markup)
            title = collapse_whitespace(soup.title.get_text()) if soup.title else ''
            content = ExtractedContent(text=f"動画タイトル: {title}" if title else 'YouTube動画')

        if not content.image_url:
            content.image_url = fallback_image
        return content


# ----------------------------------------------------------------------------------------------------------------------

def build_page_urls(source_url: str, pagination: Optional[PaginationConfig]) -> List[str]:
    """
    Page URLs in crawl order. The first page is always the source URL itself,
    many origins reject an explicit page=1.
    """
    if not pagination:
        return [source_url]

    urls = []
    for i in range(pagination.max_pages):
        if i == 0:
            urls.append(source_url)
            continue
        value = pagination.start + i * pagination.step
        if pagination.type == 'query':
            parsed = urlparse(source_url)
            query = dict(parse_qsl(parsed.query, keep_blank_values=True))
            query[pagination.param or 'page'] = str(value)
            urls.append(urlunparse(parsed._replace(query=urlencode(query))))
        elif pagination.path_pattern:
            urls.append(urljoin(source_url, pagination.path_pattern.replace('{n}', str(value))))
    return urls


def _joined_text(elements) -> str:
    return collapse_whitespace(' '.join(el.get_text(' ') for el in elements))


def _item_image(item: Tag, image_selector: Optional[str], base_url: str) -> Optional[str]:
    if not image_selector:
        return None
    element = item.select_one(image_selector)
    if element is None:
        return None
    src = element.get('src') or element.get('data-src')
    if not src:
        src = background_image_url(element.get('style'))
        if not src:
            # The selector may match a wrapper around the actual <img>
            img = element.find('img')
            src = (img.get('src') or img.get('data-src')) if img else None
    if not src or src.startswith('data:'):
        return None
    return normalize_url(src, base_url)


def scrape_list_items(soup: BeautifulSoup,
                      item_selector: str,
                      base_url: str,
                      link_selector: str = 'a',
                      title_selector: Optional[str] = None,
                      date_selector: Optional[str] = None,
                      image_selector: Optional[str] = None,
                      description_selector: Optional[str] = None,
                      link_filter_pattern: Optional[str] = None,
                      skip_patterns: Optional[List[str]] = None,
                      seen: Optional[Set[str]] = None,
                      title_from_item: bool = False,
                      exclude_url: Optional[str] = None,
                      min_title: int = 1,
                      max_title: Optional[int] = None) -> List[CandidateItem]:
    """
    Selector-driven item extraction shared by the static and the rendered list adapters.

    Items without a link, or without a title, are dropped. Dates, images and
    descriptions are optional. URLs already in `seen` are skipped and new ones
    are added to it.
    """
    seen = seen if seen is not None else set()
    items: List[CandidateItem] = []

    for node in soup.select(item_selector):
        if link_selector == 'self':
            link = node
        else:
            link = node.select_one(link_selector)
            if link is None and node.name == 'a':
                link = node
        href = (link.get('href') or '').strip() if link is not None else ''
        if not href or href.startswith('#') or href.lower().startswith('javascript:'):
            continue
        if link_filter_pattern and link_filter_pattern not in href:
            continue
        if skip_patterns and any(p in href for p in skip_patterns):
            continue

        full_url = normalize_url(href, base_url)
        if full_url in seen or (exclude_url and full_url == exclude_url):
            continue

        if title_selector:
            title = _joined_text(node.select(title_selector))
        else:
            title = collapse_whitespace((node if title_from_item else link).get_text(' '))
        if len(title) < max(min_title, 1) or (max_title and len(title) > max_title):
            continue
        seen.add(full_url)

        published_at = None
        if date_selector:
            published_at = parse_date(_joined_text(node.select(date_selector)))

        description = None
        if description_selector:
            description = _joined_text(node.select(description_selector)) or None

        image_url = _item_image(node, image_selector, base_url)
        items.append(CandidateItem(external_url=full_url,
                                   title=title,
                                   published_at=published_at,
                                   snippet=encode_image_snippet(image_url, description)))
    return items


class HtmlListParser(ISiteParser):
    """
    Server-rendered listing pages, scraped with configured CSS selectors.

    Each page is fetched with redirects followed by hand so that cookies set
    on an intermediate hop reach the final page. Pagination stops at the
    configured maximum or at the first page without matching items.
    """

    parser_type = 'html-list'
    config_type = HtmlListConfig

    CONTENT_REGIONS = ['article', '.content', '.detail', '.news-detail', '.entry-content', '.post-content', 'main']
    IMAGE_AREAS = ['article', '.content', '.detail', '.news-detail', 'main']

    def __init__(self, fetcher: Optional[Fetcher] = None, verbose: bool = False, max_chars: int = DEFAULT_MAX_CHARS):
        super().__init__(fetcher, verbose, max_chars)
        self.extractor = RegionExtractor(self.CONTENT_REGIONS,
                                         remove_selectors=BOILERPLATE_SELECTORS + ['.breadcrumb'],
                                         image_areas=self.IMAGE_AREAS,
                                         verbose=verbose, max_chars=max_chars)

    def list_items(self, source_url: str, config: ConfigLike = None) -> List[CandidateItem]:
        cfg: HtmlListConfig = self.parse_config(config)
        base_url = cfg.base_url or origin_of(source_url)
        selectors = cfg.list
        page_urls = build_page_urls(source_url, cfg.pagination)
        self.log_messages.clear()
        self._log(f"Scraping {source_url} ({len(page_urls)} page(s) at most)")

        items: List[CandidateItem] = []
        seen: Set[str] = set()
        for index, page_url in enumerate(page_urls):
            try:
                response = self.fetcher.get_response(page_url, headers=cfg.headers,
                                                     manual_redirects=True, allow_error_status=True)
            except FetchError:
                if index == 0:
                    raise
                self._log(f"[Warning] Page {index + 1} failed, stopping pagination.", 1)
                break

            if not response.ok:
                if index == 0:
                    raise FetchError(f"HTTP {response.status_code} for {page_url}",
                                     url=page_url, status_code=response.status_code)
                self._log(f"Page {index + 1} answered HTTP {response.status_code}, stopping pagination.", 1)
                break

            page_items = scrape_list_items(
                make_soup(response.markup),
                selectors.item_selector,
                base_url,
                link_selector=selectors.link_selector,
                title_selector=selectors.title_selector,
                date_selector=selectors.date_selector,
                image_selector=selectors.image_selector,
                description_selector=selectors.description_selector,
                link_filter_pattern=selectors.link_filter_pattern,
                skip_patterns=selectors.skip_patterns,
                seen=seen)
            self._log(f"Page {index + 1}: {len(page_items)} items", 1)
            if not page_items:
                break
            items.extend(page_items)

        return items

    def fetch_content(self, item_url: str, config: ConfigLike = None) -> ExtractedContent:
        headers = self.parse_config(config).headers if config is not None else {}
        return self._extract_page(self.extractor, item_url, config, headers=headers, manual_redirects=True)


# ----------------------------------------------------------------------------------------------------------------------

def get_by_path(data: Any, path: Optional[str]) -> Any:
    """Resolves a dot path such as 'product_name.raw' or 'items.0.url'. Missing keys give None."""
    if not path:
        return None
    current = data
    for key in path.split('.'):
        if isinstance(current, dict):
            current = current.get(key)
        elif isinstance(current, list) and key.isdigit() and int(key) < len(current):
            current = current[int(key)]
        else:
            return None
        if current is None:
            return None
    return current


def _join_base(base_url: str, path: str) -> str:
    if path.startswith('http://') or path.startswith('https://'):
        return path
    return f"{base_url.rstrip('/')}{'' if path.startswith('/') else '/'}{path}"


def pick_market_image(images: List[Any], preferred_markets: List[str]) -> Optional[str]:
    """
    Chooses from a list of image descriptors such as
    {"url": ..., "target_market": ["jp", "kr"]}: the first entry for a preferred
    market, else the first entry.
    """
    descriptors = [i for i in images if isinstance(i, dict) and i.get('url')]
    preferred = set(preferred_markets)
    for descriptor in descriptors:
        markets = descriptor.get('target_market') or []
        if isinstance(markets, str):
            markets = [markets]
        if preferred.intersection(markets):
            return descriptor['url']
    return descriptors[0]['url'] if descriptors else None


class ApiJsonParser(ISiteParser):
    """
    Sites whose listing is backed by a JSON API.

    'json' responses are mapped field by field through dot paths.
    'json_html_array' responses are arrays of HTML fragments, each parsed with
    the configured selectors. Article pages themselves are ordinary HTML and
    are read as product pages.
    """

    parser_type = 'api-json'
    config_type = ApiJsonConfig

    def __init__(self, fetcher: Optional[Fetcher] = None, verbose: bool = False, max_chars: int = DEFAULT_MAX_CHARS):
        super().__init__(fetcher, verbose, max_chars)
        self.extractor = ProductPageExtractor(verbose=verbose, max_chars=max_chars)

    def build_api_url(self, cfg: ApiJsonConfig, base_url: str) -> str:
        api_url = _join_base(base_url, cfg.api.url)
        if cfg.api.query_params:
            parsed = urlparse(api_url)
            query = dict(parse_qsl(parsed.query, keep_blank_values=True))
            query.update({k: str(v) for k, v in cfg.api.query_params.items()})
            api_url = urlunparse(parsed._replace(query=urlencode(query)))
        return api_url

    def list_items(self, source_url: str, config: ConfigLike = None) -> List[CandidateItem]:
        cfg: ApiJsonConfig = self.parse_config(config)
        base_url = cfg.base_url or origin_of(source_url)
        api_url = self.build_api_url(cfg, base_url)
        self.log_messages.clear()
        self._log(f"Calling {cfg.api.method} {api_url}")

        headers = dict(cfg.headers)
        fetch_kwargs: Dict[str, Any] = {'method': cfg.api.method}
        if cfg.api.method == 'POST':
            headers['Content-Type'] = 'application/json'
            if cfg.api.body is not None:
                fetch_kwargs['json_body'] = cfg.api.body
        data = self.fetcher.get_response(api_url, headers=headers, **fetch_kwargs).json()

        if cfg.api.response_type == 'json_html_array':
            items = self._parse_html_array(data, cfg, base_url)
        else:
            items = self._parse_json_results(data, cfg, base_url)
        self._log(f"Mapped {len(items)} items.", 1)
        return items

    @staticmethod
    def _excluded(title: str, cfg: ApiJsonConfig) -> bool:
        lowered = title.lower()
        return any(p.lower() in lowered for p in cfg.exclude_patterns)

    def _image_from_field(self, raw: Any, cfg: ApiJsonConfig, base_url: str) -> Optional[str]:
        if isinstance(raw, str):
            try:
                decoded = json.loads(raw)
            except ValueError:
                return _join_base(base_url, raw) if raw.strip() else None
            raw = decoded
        if isinstance(raw, list):
            return pick_market_image(raw, cfg.preferred_markets)
        if isinstance(raw, dict) and raw.get('url'):
            return raw['url']
        return None

    def _parse_json_results(self, data: Any, cfg: ApiJsonConfig, base_url: str) -> List[CandidateItem]:
        mapping = cfg.mapping
        if mapping.results_path:
            results = get_by_path(data, mapping.results_path)
        elif isinstance(data, list):
            results = data
        elif isinstance(data, dict):
            results = data.get('results') or []
        else:
            results = []
        if not isinstance(results, list):
            self._log(f"[Warning] Results path '{mapping.results_path}' is not an array.", 1)
            return []

        items: List[CandidateItem] = []
        seen: Set[str] = set()
        for result in results:
            raw_url = get_by_path(result, mapping.url)
            if not raw_url:
                continue
            article_url = _join_base(base_url, str(raw_url))

            title = collapse_whitespace(str(get_by_path(result, mapping.title) or ''))
            if not title or self._excluded(title, cfg) or article_url in seen:
                continue
            seen.add(article_url)

            published_at = None
            if mapping.published_at:
                raw_date = get_by_path(result, mapping.published_at)
                if isinstance(raw_date, (int, float)):
                    # Epoch seconds or milliseconds
                    seconds = raw_date / 1000 if raw_date > 1e11 else raw_date
                    published_at = datetime.datetime.fromtimestamp(seconds, tz=datetime.timezone.utc)
                elif raw_date:
                    published_at = parse_date(str(raw_date))

            description = None
            if mapping.description:
                description = strip_html(str(get_by_path(result, mapping.description) or '')) or None

            image_url = None
            if mapping.image:
                image_url = self._image_from_field(get_by_path(result, mapping.image), cfg, base_url)

            items.append(CandidateItem(external_url=article_url,
                                       title=title,
                                       published_at=published_at,
                                       snippet=encode_image_snippet(image_url, description)))
        return items

    def _parse_html_array(self, data: Any, cfg: ApiJsonConfig, base_url: str) -> List[CandidateItem]:
        parsing = cfg.html_parsing
        if not isinstance(data, list) or parsing is None:
            self._log("[Warning] Expected an array of HTML fragments and an htmlParsing section.", 1)
            return []

        url_pattern = re.compile(parsing.url_pattern) if parsing.url_pattern else None
        items: List[CandidateItem] = []
        seen: Set[str] = set()
        for fragment in data:
            if not isinstance(fragment, str):
                continue
            soup = make_soup(fragment)
            link = soup.select_one(parsing.link_selector)
            if link is None:
                continue

            attr_value = (link.get(parsing.url_extract_attr) or '').strip()
            if url_pattern:
                match = url_pattern.search(attr_value)
                if not match or not match.groups() or not match.group(1):
                    continue
                article_url = f"{base_url.rstrip('/')}{match.group(1)}"
            elif attr_value:
                article_url = _join_base(base_url, attr_value)
            else:
                continue

            if parsing.title_selector:
                title = _joined_text(soup.select(parsing.title_selector))
            else:
                title = collapse_whitespace(link.get_text(' '))
            if not title or self._excluded(title, cfg) or article_url in seen:
                continue
            seen.add(article_url)

            image_url = None
            if parsing.image_selector:
                img = soup.select_one(parsing.image_selector)
                src = (img.get('src') or img.get('data-src')) if img is not None else None
                if src:
                    image_url = _join_base(base_url, src)

            items.append(CandidateItem(external_url=article_url, title=title,
                                       snippet=encode_image_snippet(image_url)))
        return items

    def fetch_content(self, item_url: str, config: ConfigLike = None) -> ExtractedContent:
        headers = self.parse_config(config).headers if config is not None else {}
        return self._extract_page(self.extractor, item_url, config, headers=headers)


# ----------------------------------------------------------------------------------------------------------------------

class WordPressParser(ISiteParser):
    """
    WordPress sites, listed through the REST API (/wp-json/wp/v2/posts).
    The featured image comes from the embedded resources, so list extraction
    usually already knows the image.
    """

    parser_type = 'wordpress'
    config_type = WordPressConfig

    CONTENT_REGIONS = ['.entry-content', '.post-content', 'article', 'main']

    def __init__(self, fetcher: Optional[Fetcher] = None, verbose: bool = False, max_chars: int = DEFAULT_MAX_CHARS):
        super().__init__(fetcher, verbose, max_chars)
        self.extractor = RegionExtractor(self.CONTENT_REGIONS,
                                         image_areas=['.entry-content', '.post-content', 'article'],
                                         verbose=verbose, max_chars=max_chars)

    @staticmethod
    def listing_url(source_url: str, cfg: WordPressConfig) -> str:
        api_url = cfg.api_url or f"{origin_of(source_url)}/wp-json/wp/v2/{cfg.post_type}"
        separator = '&' if '?' in api_url else '?'
        return f"{api_url}{separator}per_page={cfg.per_page}&_embed"

    @staticmethod
    def _featured_image(post: Dict[str, Any]) -> Optional[str]:
        media = (post.get('_embedded') or {}).get('wp:featuredmedia') or []
        if media and isinstance(media[0], dict):
            return media[0].get('source_url')
        return None

    @staticmethod
    def _published(post: Dict[str, Any]) -> Optional[datetime.datetime]:
        if post.get('date_gmt'):
            value = parse_date(post['date_gmt'])
            if value:
                return value
        return parse_date(post.get('date'))

    def list_items(self, source_url: str, config: ConfigLike = None) -> List[CandidateItem]:
        cfg: WordPressConfig = self.parse_config(config)
        url = self.listing_url(source_url, cfg)
        self.log_messages.clear()
        self._log(f"Fetching posts from {url}")

        posts = self.fetcher.get_response(url).json()
        if not isinstance(posts, list):
            raise ExtractionError(f"{url} did not return an array of posts")

        items: List[CandidateItem] = []
        for post in posts:
            if not isinstance(post, dict):
                continue
            title = strip_html((post.get('title') or {}).get('rendered', ''))
            link = post.get('link')
            if not title or not link:
                continue
            excerpt = strip_html((post.get('excerpt') or {}).get('rendered', ''))
            items.append(CandidateItem(external_url=link,
                                       title=title,
                                       published_at=self._published(post),
                                       snippet=encode_image_snippet(self._featured_image(post), excerpt or None)))

        self._log(f"Found {len(items)} posts.", 1)
        return items

    def fetch_content(self, item_url: str, config: ConfigLike = None) -> ExtractedContent:
        return self._extract_page(self.extractor, item_url, config)


# ----------------------------------------------------------------------------------------------------------------------

class RenderedListParser(ISiteParser):
    """
    Listing pages that only exist after JavaScript runs. Pages are rendered in
    headless Chromium, then scraped with the same selector logic as the static
    list adapter.

    The browser is started on first use and kept until close().
    """

    parser_type = 'playwright-list'
    config_type = RenderedListConfig

    CONTENT_REGIONS = ['article', "[class*='pressRelease']", '.content-area', 'main']
    MIN_TITLE, MAX_TITLE = 10, 300
    MIN_FALLBACK_TITLE = 15

    def __init__(self,
                 fetcher: Optional[Fetcher] = None,
                 verbose: bool = False,
                 max_chars: int = DEFAULT_MAX_CHARS,
                 render_fetcher: Optional[Fetcher] = None,
                 timeout_s: float = 30,
                 user_agent: Optional[str] = None):
        """
        :param fetcher: Plain HTTP fetcher, unused for rendering but closed with the adapter if owned.
        :param render_fetcher: Browser-backed fetcher. A PlaywrightFetcher is launched lazily when omitted.
        :param timeout_s: Navigation timeout of the lazily launched browser.
        :param user_agent: User agent of the lazily launched browser.
        """
        super().__init__(fetcher, verbose, max_chars)
        self._render_fetcher = render_fetcher
        self._owns_render_fetcher = render_fetcher is None
        self.timeout_s = timeout_s
        self.user_agent = user_agent
        self.extractor = RegionExtractor(self.CONTENT_REGIONS,
                                         remove_selectors=['nav', 'footer', 'header', 'script', 'style', '.sidebar'],
                                         verbose=verbose, max_chars=max_chars)

    @property
    def render_fetcher(self) -> Fetcher:
        if self._render_fetcher is None:
            self._render_fetcher = PlaywrightFetcher(timeout_s=self.timeout_s, user_agent=self.user_agent)
        return self._render_fetcher

    def list_items(self, source_url: str, config: ConfigLike = None) -> List[CandidateItem]:
        cfg: RenderedListConfig = self.parse_config(config)
        base_url = cfg.base_url or origin_of(source_url)
        self.log_messages.clear()
        self._log(f"Rendering {source_url} (wait for '{cfg.wait_selector}')")

        response = self.render_fetcher.get_response(source_url,
                                                    wait_for_selector=cfg.wait_selector,
                                                    wait_for_timeout_ms=cfg.wait_timeout,
                                                    extra_wait_ms=cfg.extra_wait)
        soup = make_soup(response.markup)
        seen: Set[str] = set()
        selectors = cfg.list
        items = scrape_list_items(soup,
                                  selectors.item_selector,
                                  base_url,
                                  title_selector=selectors.title_selector,
                                  date_selector=selectors.date_selector,
                                  image_selector=selectors.image_selector,
                                  description_selector=selectors.description_selector,
                                  link_filter_pattern=selectors.link_filter_pattern,
                                  seen=seen,
                                  title_from_item=True,
                                  exclude_url=source_url,
                                  min_title=self.MIN_TITLE,
                                  max_title=self.MAX_TITLE)

        if not items and selectors.link_filter_pattern:
            self._log(f"Item selector matched nothing, scanning links containing '{selectors.link_filter_pattern}'", 1)
            for link in soup.find_all('a', href=True):
                href = link['href']
                if selectors.link_filter_pattern not in href:
                    continue
                full_url = normalize_url(href, base_url)
                if full_url in seen or full_url == source_url:
                    continue
                seen.add(full_url)
                title = collapse_whitespace(link.get_text(' '))
                if self.MIN_FALLBACK_TITLE <= len(title) <= self.MAX_TITLE:
                    items.append(CandidateItem(external_url=full_url, title=title))

        self._log(f"Found {len(items)} items.", 1)
        return items

    def fetch_content(self, item_url: str, config: ConfigLike = None) -> ExtractedContent:
        content_config = self.parse_config(config).content if config is not None else None
        response = self.render_fetcher.get_response(item_url)
        kwargs = {}
        if content_config:
            kwargs = {'selectors': content_config.selectors, 'remove_selectors': content_config.remove_selectors}
        return self.extractor.extract(response.markup, response.url or item_url, **kwargs)

    def close(self):
        if self._owns_render_fetcher and self._render_fetcher is not None:
            self._render_fetcher.close()
            self._render_fetcher = None
        super().close()
