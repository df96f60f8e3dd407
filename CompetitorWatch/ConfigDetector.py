"""
Guesses a parser type and configuration for a bare URL.

The checks run in a fixed order and the first match wins: channel video
hosts, feed-looking URLs, JSON responses, XML bodies, WordPress installs,
advertised feeds and finally selector inference over the HTML. The result
is advisory, a human reviews it before the source is stored, so everything
after the initial fetch degrades to a lower confidence instead of failing.
"""
import re
import logging
from typing import List, Optional
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup, Tag
from pydantic import BaseModel

from CompetitorWatch.Config import Settings
from CompetitorWatch.Errors import FetchError
from CompetitorWatch.Extractor import collapse_whitespace, make_soup
from CompetitorWatch.Fetcher import Fetcher, RequestsFetcher
from CompetitorWatch.Models import DetectionResult
from CompetitorWatch.SiteParser import origin_of


logger = logging.getLogger(__name__)

YOUTUBE_HOSTS = ('youtube.com', 'youtu.be')
FEED_URL_RE = re.compile(r'\.(xml|rss|atom)(\?|$)', re.IGNORECASE)
FEED_PATH_RE = re.compile(r'/feed/?$', re.IGNORECASE)

WP_API_REL = 'https://api.w.org/'
WP_POST_TYPES = ['posts', 'blog', 'news', 'articles']
WP_CONTENT_SELECTORS = ['.entry-content', '.post-content', 'article', 'main']

SITE_NAME_SEPARATORS = [' | ', ' - ', ' – ', ' — ', ' :: ', ' » ']

LIST_PATTERNS = [
    ('ul', 'li'),
    ('ol', 'li'),
    ('div', 'article'),
    ('div', 'div'),
    ('section', 'article'),
    ('section', 'div'),
]
MIN_LIST_ITEMS = 3
MIN_LINKED_RATIO = 0.6

TITLE_CANDIDATES = ['h1', 'h2', 'h3', 'h4', 'h5', 'h6',
                    '.title', '.heading', '.tit', '.name', "[class*='title']", "[class*='heading']"]
DATE_CANDIDATES = ['.date', '.time', '.published', '.post-date',
                   "[class*='date']", "[class*='time']", 'time', 'span.date']
DESCRIPTION_CANDIDATES = ['.description', '.excerpt', '.summary', '.txt', '.text',
                          "[class*='desc']", "[class*='excerpt']", "[class*='abstract']", 'p']
HEADING_LINK_SELECTOR = 'a:has(h1, h2, h3, h4, h5, h6)'

NEWS_PATH_PATTERNS = [re.compile(p) for p in
                      (r'/news/', r'/press', r'/article', r'/blog/', r'/post/', r'/info/', r'/topics/')]
NEWS_PATH_SCORE = 20

CONTENT_SELECTOR_CANDIDATES = ['article', '.article-content', '.post-content', '.entry-content',
                               '.content-body', '.news-detail', '.detail', '.content', 'main']
DEFAULT_CONTENT_SELECTORS = ['article', '.content', 'main']

FALLBACK_LIST = {
    'itemSelector': 'article, .post, .news-item, .entry, li',
    'linkSelector': 'a',
    'titleSelector': 'h2, h3, h4, .title, .heading',
}

# Class names that describe state rather than structure
_STATE_CLASS_RE = re.compile(r'^(js-|is-|has-|active|open|show)')
_CSS_IDENT_RE = re.compile(r'^-?[A-Za-z_][\w-]*$')

DATE_PATTERNS = [
    re.compile(r'\d{4}[.\-/]\d{1,2}[.\-/]\d{1,2}'),
    re.compile(r'\d{1,2}\s+(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)', re.IGNORECASE),
    re.compile(r'\d{4}年\d{1,2}月'),
    re.compile(r'^(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)\w*\s+\d', re.IGNORECASE),
]


class SelectorCandidate(BaseModel):
    """One proposed list configuration with the score that ranked it."""
    item_selector: str
    link_selector: str = 'a'
    title_selector: Optional[str] = None
    date_selector: Optional[str] = None
    image_selector: Optional[str] = None
    description_selector: Optional[str] = None
    link_filter_pattern: Optional[str] = None
    score: int = 0
    count: int = 0

    def list_config(self) -> dict:
        config = {'itemSelector': self.item_selector, 'linkSelector': self.link_selector}
        for key, value in (('titleSelector', self.title_selector),
                           ('dateSelector', self.date_selector),
                           ('imageSelector', self.image_selector),
                           ('descriptionSelector', self.description_selector),
                           ('linkFilterPattern', self.link_filter_pattern)):
            if value:
                config[key] = value
        return config


# ----------------------------------------------------------------------------------------------------------------------

def looks_like_date(text: str) -> bool:
    return any(p.search(text or '') for p in DATE_PATTERNS)


def name_from_domain(url: str) -> str:
    """'https://www.example.co.jp/x' -> 'example.co'. Only the last label is dropped."""
    host = (urlparse(url).hostname or '')
    if host.startswith('www.'):
        host = host[4:]
    parts = host.split('.')
    if len(parts) >= 2:
        return '.'.join(parts[:-1])
    return host


def extract_site_name(soup: BeautifulSoup, url: str) -> str:
    for attrs in ({'property': 'og:site_name'}, {'name': 'application-name'}):
        tag = soup.find('meta', attrs=attrs)
        value = (tag.get('content') or '').strip() if tag else ''
        if value:
            return value

    title = collapse_whitespace(soup.title.get_text()) if soup.title else ''
    if title:
        for sep in SITE_NAME_SEPARATORS:
            if sep in title:
                last = title.split(sep)[-1].strip()
                if 2 <= len(last) <= 40:
                    return last
        if len(title) <= 40:
            return title

    return name_from_domain(url)


def detect_content_selectors(soup: BeautifulSoup) -> List[str]:
    found = [sel for sel in CONTENT_SELECTOR_CANDIDATES if soup.select_one(sel) is not None]
    if found:
        return found if 'main' in found else found + ['main']
    return list(DEFAULT_CONTENT_SELECTORS)


def build_container_selector(soup: BeautifulSoup, element: Tag) -> Optional[str]:
    """
    A selector naming one list container: '#id', or up to two structural
    classes ('ul.news.list'). Falls back to the first class alone when the
    two-class form matches more than three elements.
    """
    element_id = element.get('id')
    if element_id and _CSS_IDENT_RE.match(element_id):
        return f"#{element_id}"

    classes = [c for c in element.get('class') or []
               if c and _CSS_IDENT_RE.match(c) and not _STATE_CLASS_RE.match(c)][:2]
    if not classes:
        return None
    selector = f"{element.name}.{'.'.join(classes)}"
    if len(soup.select(selector)) <= 3:
        return selector
    return f"{element.name}.{classes[0]}"


def _selected_text(node: Tag, selector: Optional[str]) -> str:
    if not selector:
        return ''
    return collapse_whitespace(' '.join(el.get_text(' ') for el in node.select(selector)))


def _first_text(node: Tag, selector: str) -> Optional[str]:
    element = node.select_one(selector)
    return collapse_whitespace(element.get_text(' ')) if element is not None else None


def analyze_item(item: Tag) -> SelectorCandidate:
    """
    Finds link, title, date, image and description selectors relative to one
    list item. The item selector and score are left for the caller.
    """
    result = SelectorCandidate(item_selector='', link_selector='')

    links = item.select('a[href]')
    if len(links) == 1:
        result.link_selector = 'a'
    elif len(links) > 1:
        result.link_selector = HEADING_LINK_SELECTOR if item.select(HEADING_LINK_SELECTOR) else 'a'

    for sel in TITLE_CANDIDATES:
        if len(_selected_text(item, sel)) > 5:
            result.title_selector = sel
            break

    for sel in DATE_CANDIDATES:
        text = _first_text(item, sel)
        if text is not None and looks_like_date(text):
            result.date_selector = sel
            break
    if not result.date_selector:
        for element in item.select('span, small, time, p'):
            text = collapse_whitespace(element.get_text(' '))
            if looks_like_date(text) and len(text) < 30:
                classes = element.get('class') or []
                result.date_selector = f"{element.name}.{classes[0]}" if classes else element.name
                break

    if item.find('img') is not None:
        result.image_selector = 'img'
    else:
        background = item.select_one("[style*='background-image']")
        if background is not None:
            classes = background.get('class') or []
            result.image_selector = f".{classes[0]}" if classes else "[style*='background-image']"

    title_text = _selected_text(item, result.title_selector)
    for sel in DESCRIPTION_CANDIDATES:
        text = _first_text(item, sel)
        if text is not None and len(text) > 20 and text != title_text:
            result.description_selector = sel
            break

    return result


def score_candidate(item_count: int, analysis: SelectorCandidate) -> int:
    score = min(item_count * 5, 30)
    if analysis.title_selector:
        score += 25
    if analysis.date_selector:
        score += 20
    if analysis.image_selector:
        score += 10
    if analysis.description_selector:
        score += 10
    if analysis.link_selector:
        score += 15
    return score


def infer_list_selectors(soup: BeautifulSoup) -> List[SelectorCandidate]:
    """
    Ranks every repeated, mostly linked container/child structure of the page.

    A container qualifies with at least three direct children of the
    pattern's tag, 60% of which contain a link, a synthesizable selector,
    and a title found in its first child. Only the document is read, so the
    same HTML always yields the same ranking. Equal scores keep discovery
    order.
    """
    candidates: List[SelectorCandidate] = []

    for container_tag, item_tag in LIST_PATTERNS:
        for container in soup.find_all(container_tag):
            items = container.find_all(item_tag, recursive=False)
            if len(items) < MIN_LIST_ITEMS:
                continue
            linked = sum(1 for item in items if item.select_one('a[href]') is not None)
            if linked < len(items) * MIN_LINKED_RATIO:
                continue

            container_selector = build_container_selector(soup, container)
            if not container_selector:
                continue

            analysis = analyze_item(items[0])
            if not analysis.title_selector:
                continue

            candidates.append(analysis.model_copy(update={
                'item_selector': f"{container_selector} > {item_tag}",
                'link_selector': analysis.link_selector or 'a',
                'score': score_candidate(len(items), analysis),
                'count': len(items),
            }))

    return sorted(candidates, key=lambda c: -c.score)


def common_path_prefix(hrefs: List[str]) -> Optional[str]:
    """Longest shared path prefix cut back to its last '/', or None when only '/' is shared."""
    paths = [urlparse(urljoin('http://x/', href)).path for href in hrefs]
    if not paths:
        return None
    common = paths[0]
    for path in paths[1:]:
        i = 0
        while i < len(common) and i < len(path) and common[i] == path[i]:
            i += 1
        common = common[:i]
    last_slash = common.rfind('/')
    if last_slash > 0:
        return common[:last_slash + 1]
    return None


def infer_news_links(soup: BeautifulSoup) -> Optional[SelectorCandidate]:
    """Secondary strategy: treat every link into a news-looking path as an item."""
    hrefs = [a.get('href') or '' for a in soup.find_all('a', href=True)]
    news_links = [href for href in hrefs if any(p.search(href) for p in NEWS_PATH_PATTERNS)]
    if len(news_links) < MIN_LIST_ITEMS:
        return None
    return SelectorCandidate(item_selector='a',
                             link_selector='self',
                             link_filter_pattern=common_path_prefix(news_links),
                             score=NEWS_PATH_SCORE,
                             count=len(news_links))


# ----------------------------------------------------------------------------------------------------------------------

class ConfigDetector:
    """
    Proposes {parserType, parserConfig, confidence, description, siteName} for a URL.
    Nothing is persisted. All requests go through the injected fetcher.
    """

    def __init__(self, fetcher: Optional[Fetcher] = None, verbose: bool = False, settings: Optional[Settings] = None):
        """
        :param fetcher: Used for every request. Without one a RequestsFetcher is built from settings and owned.
        :param verbose: Log the trace at INFO instead of DEBUG.
        """
        self._owns_fetcher = fetcher is None
        if fetcher is None:
            settings = settings or Settings()
            fetcher = RequestsFetcher(timeout_s=settings.request_timeout_s, user_agent=settings.user_agent)
        self.fetcher = fetcher
        self.verbose = verbose
        self.log_messages: List[str] = []

    def _log(self, message: str, indent: int = 0):
        log_msg = f"{' ' * (indent * 4)}{message}"
        self.log_messages.append(log_msg)
        logger.log(logging.INFO if self.verbose else logging.DEBUG, log_msg)

    def close(self):
        if self._owns_fetcher:
            self.fetcher.close()

    def detect(self, url: str) -> DetectionResult:
        """
        :raises FetchError: The page itself could not be fetched.
        """
        self.log_messages.clear()
        self._log(f"Detecting source type for {url}")
        origin = origin_of(url)
        host = (urlparse(url).hostname or '').lower()

        if any(host == h or host.endswith('.' + h) for h in YOUTUBE_HOSTS):
            self._log("Known video channel host.", 1)
            return DetectionResult(parser_type='youtube', parser_config={}, confidence='high',
                                   description='YouTube チャンネル（RSS フィード経由）',
                                   site_name=name_from_domain(url))

        if FEED_URL_RE.search(url) or FEED_PATH_RE.search(url):
            self._log("URL looks like a feed.", 1)
            return self._feed_result(name_from_domain(url))

        response = self.fetcher.get_response(url)
        content_type = response.content_type

        if 'application/json' in content_type:
            self._log("JSON response.", 1)
            return DetectionResult(
                parser_type='api-json',
                parser_config={
                    'baseUrl': origin,
                    'api': {'url': url, 'method': 'GET', 'responseType': 'json'},
                    'mapping': {'url': 'url', 'title': 'title'},
                    'content': {'selectors': ['article', 'main', '.content']},
                },
                confidence='medium',
                description='JSON API レスポンス検出',
                site_name=name_from_domain(url))

        text = response.text
        if 'xml' in content_type or text.lstrip().startswith('<?xml') or '<rss' in text or '<feed' in text:
            self._log("XML feed body.", 1)
            return self._feed_result(name_from_domain(url))

        soup = make_soup(response.markup)
        site_name = extract_site_name(soup, url)

        wordpress = self._detect_wordpress(soup, origin)
        if wordpress is not None:
            wordpress.site_name = site_name
            return wordpress

        feed_link = (soup.select_one('link[type="application/rss+xml"][href]')
                     or soup.select_one('link[type="application/atom+xml"][href]'))
        if feed_link is not None:
            rss_url = urljoin(url, feed_link['href'])
            self._log(f"Advertised feed: {rss_url}", 1)
            return DetectionResult(parser_type='rss', parser_config={'rssUrl': rss_url}, confidence='high',
                                   description=f"RSS フィード検出: {rss_url}", site_name=site_name)

        result = self._detect_list(soup, origin)
        result.site_name = site_name
        return result

    @staticmethod
    def _feed_result(site_name: str) -> DetectionResult:
        return DetectionResult(parser_type='rss', parser_config={}, confidence='high',
                               description='RSS/Atom フィード', site_name=site_name)

    @staticmethod
    def is_wordpress(soup: BeautifulSoup) -> bool:
        generator = soup.find('meta', attrs={'name': 'generator'})
        if generator and 'wordpress' in (generator.get('content') or '').lower():
            return True
        return (soup.select_one('link[href*="wp-content"]') is not None
                or soup.select_one('script[src*="wp-includes"]') is not None)

    def _detect_wordpress(self, soup: BeautifulSoup, origin: str) -> Optional[DetectionResult]:
        if not self.is_wordpress(soup):
            return None

        api_link = soup.find('link', rel=WP_API_REL)
        if api_link is not None and api_link.get('href'):
            api_base = api_link['href'].rstrip('/') + '/wp/v2'
        else:
            api_base = f"{origin}/wp-json/wp/v2"
        self._log(f"WordPress install, probing {api_base}", 1)

        for post_type in WP_POST_TYPES:
            probe_url = f"{api_base}/{post_type}?per_page=1"
            try:
                response = self.fetcher.get_response(probe_url, allow_error_status=True)
                data = response.json() if response.ok else None
            except FetchError as e:
                self._log(f"Probe {post_type} failed: {e}", 2)
                continue
            if isinstance(data, list) and data:
                self._log(f"Probe {post_type} returned posts.", 2)
                return DetectionResult(
                    parser_type='wordpress',
                    parser_config={
                        'apiUrl': f"{api_base}/{post_type}",
                        'perPage': 100,
                        'content': {'selectors': list(WP_CONTENT_SELECTORS)},
                    },
                    confidence='high',
                    description=f"WordPress REST API 検出 ({post_type})")

        self._log("No WordPress collection answered, continuing.", 1)
        return None

    def _detect_list(self, soup: BeautifulSoup, origin: str) -> DetectionResult:
        content = {'selectors': detect_content_selectors(soup)}
        candidates = infer_list_selectors(soup)
        if not candidates:
            news_links = infer_news_links(soup)
            if news_links is not None:
                self._log(f"{news_links.count} links into news paths, filter '{news_links.link_filter_pattern}'", 1)
                candidates.append(news_links)
        best = candidates[0] if candidates else None

        if best is not None and best.score >= 30:
            self._log(f"Best list: {best.item_selector} ({best.count} items, score {best.score})", 1)
            return DetectionResult(
                parser_type='html-list',
                parser_config={'baseUrl': origin, 'list': best.list_config(), 'content': content},
                confidence='high' if best.score >= 60 else 'medium',
                description=f"HTML記事リスト検出 ({best.count}件, セレクター: {best.item_selector})")

        if best is not None:
            self._log(f"Best candidate {best.item_selector} scores {best.score}, below the threshold.", 1)
        self._log("No usable list structure, using generic selectors.", 1)
        return DetectionResult(
            parser_type='html-list',
            parser_config={'baseUrl': origin, 'list': dict(FALLBACK_LIST), 'content': content},
            confidence='low',
            description='汎用セレクターを設定しました。巡回結果を見て調整が必要な場合があります。')
