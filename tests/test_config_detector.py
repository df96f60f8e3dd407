import pytest

from CompetitorWatch.ConfigDetector import (
    FALLBACK_LIST, ConfigDetector, build_container_selector, common_path_prefix, detect_content_selectors,
    extract_site_name, infer_list_selectors, infer_news_links, looks_like_date)
from CompetitorWatch.Errors import FetchError
from CompetitorWatch.Extractor import make_soup
from CompetitorWatch.Fetcher import FetchResponse
from CompetitorWatch.ParserConfig import validate_parser_config

from conftest import StubFetcher, html_page


def news_list_html(count: int = 5, rich: bool = True) -> str:
    rows = []
    for n in range(1, count + 1):
        extra = ''
        if rich:
            extra = (f'<span class="date">2024.05.{n:02d}</span>'
                     f'<p class="excerpt">A longer description of announcement number {n}.</p>')
        image = f'<img src="/img/{n}.jpg">' if rich else ''
        rows.append(f'<li><a href="/news/{n}">{image}<h3>Company announces new sensor {n}</h3></a>{extra}</li>')
    return html_page(f'<div id="main"><ul class="news-list">{"".join(rows)}</ul></div>')


class TestLooksLikeDate:

    @pytest.mark.parametrize('text', ['2024.05.01', '2024-5-1', '2024/05/01', '3 Jun 2024', '2024年5月',
                                      'June 3, 2024', 'Mar 12'])
    def test_dates(self, text):
        assert looks_like_date(text)

    @pytest.mark.parametrize('text', ['', 'Read more', 'Product 2024', 'Version 1.2'])
    def test_not_dates(self, text):
        assert not looks_like_date(text)


class TestSiteName:

    def test_open_graph_first(self):
        soup = make_soup(html_page('', head='<meta property="og:site_name" content="Example Corp">'
                                            '<meta name="application-name" content="Other">'
                                            '<title>News | Somewhere</title>'))
        assert extract_site_name(soup, 'https://x.test/') == 'Example Corp'

    def test_application_name(self):
        soup = make_soup(html_page('', head='<meta name="application-name" content="App Name"><title>T</title>'))
        assert extract_site_name(soup, 'https://x.test/') == 'App Name'

    def test_title_trailing_segment(self):
        soup = make_soup(html_page('', head='<title>Press releases | Example Corp</title>'))
        assert extract_site_name(soup, 'https://x.test/') == 'Example Corp'

    def test_short_title_as_is(self):
        soup = make_soup(html_page('', head='<title>News - A</title>'))
        assert extract_site_name(soup, 'https://x.test/') == 'News - A'

    def test_domain_fallback(self):
        soup = make_soup(html_page('', head='<title>' + 'A very long page title without separators ' * 2 + '</title>'))
        assert extract_site_name(soup, 'https://www.example.com/news') == 'example'


class TestContainerSelector:

    def test_id_wins(self):
        soup = make_soup(html_page('<ul id="news" class="list"><li>a</li></ul>'))
        assert build_container_selector(soup, soup.find('ul')) == '#news'

    def test_state_classes_are_skipped(self):
        soup = make_soup(html_page('<ul class="is-open js-toggle news">x</ul>'))
        assert build_container_selector(soup, soup.find('ul')) == 'ul.news'

    def test_ambiguous_pair_falls_back_to_first_class(self):
        lists = ''.join('<ul class="list plain"><li>x</li></ul>' for _ in range(4))
        soup = make_soup(html_page(lists))
        assert build_container_selector(soup, soup.find('ul')) == 'ul.list'

    def test_no_id_or_class(self):
        soup = make_soup(html_page('<ul><li>x</li></ul>'))
        assert build_container_selector(soup, soup.find('ul')) is None


class TestInferListSelectors:

    def test_full_candidate(self):
        candidates = infer_list_selectors(make_soup(news_list_html()))
        best = candidates[0]
        assert best.item_selector == 'ul.news-list > li'
        assert best.link_selector == 'a'
        assert best.title_selector == 'h3'
        assert best.date_selector == '.date'
        assert best.image_selector == 'img'
        assert best.description_selector == '.excerpt'
        assert best.count == 5
        assert best.score == 25 + 25 + 20 + 10 + 10 + 15

    def test_deterministic(self):
        html = news_list_html()
        first = [c.model_dump() for c in infer_list_selectors(make_soup(html))]
        second = [c.model_dump() for c in infer_list_selectors(make_soup(html))]
        assert first == second

    def test_needs_three_items(self):
        assert infer_list_selectors(make_soup(news_list_html(count=2))) == []

    def test_needs_mostly_linked_items(self):
        rows = ''.join('<li><h3>Heading without link</h3></li>' for _ in range(4))
        html = html_page(f'<ul class="l">{rows}<li><a href="/x"><h3>Only link here</h3></a></li></ul>')
        assert infer_list_selectors(make_soup(html)) == []

    def test_heading_link_selector(self):
        rows = ''.join(f'<li><a href="/tag/{n}">tag</a><a href="/news/{n}"><h2>Headline number {n}</h2></a></li>'
                       for n in range(3))
        best = infer_list_selectors(make_soup(html_page(f'<ul class="l">{rows}</ul>')))[0]
        assert best.link_selector == 'a:has(h1, h2, h3, h4, h5, h6)'

    def test_untitled_date_in_span(self):
        rows = ''.join(f'<li><a href="/n/{n}"><h3>Headline number {n}</h3></a><span class="meta">3 Jun 2024</span></li>'
                       for n in range(3))
        best = infer_list_selectors(make_soup(html_page(f'<ul class="l">{rows}</ul>')))[0]
        assert best.date_selector == 'span.meta'

    def test_ranked_by_score(self):
        rich = ''.join(f'<li><a href="/n/{n}"><h3>Headline number {n}</h3></a><time>2024-05-0{n}</time></li>'
                       for n in range(1, 5))
        poor = ''.join(f'<li><a href="/t/{n}"><h3>Tag list entry {n}</h3></a></li>' for n in range(1, 5))
        html = html_page(f'<ul class="tags">{poor}</ul><ul class="news">{rich}</ul>')
        candidates = infer_list_selectors(make_soup(html))
        assert [c.item_selector for c in candidates] == ['ul.news > li', 'ul.tags > li']


class TestHelpers:

    def test_common_path_prefix(self):
        assert common_path_prefix(['/news/2024/a', '/news/2024/b', 'https://x.test/news/2023/c']) == '/news/'
        assert common_path_prefix(['/a', '/b']) is None

    def test_content_selectors(self):
        soup = make_soup(html_page('<main><article>x</article><div class="content">y</div></main>'))
        assert detect_content_selectors(soup) == ['article', '.content', 'main']
        assert detect_content_selectors(make_soup(html_page('<div>x</div>'))) == ['article', '.content', 'main']


# ----------------------------------------------------------------------------------------------------------------------

class TestConfigDetector:

    def test_youtube_without_fetching(self):
        fetcher = StubFetcher()
        result = ConfigDetector(fetcher).detect('https://www.youtube.com/@example')
        assert result.parser_type == 'youtube'
        assert result.confidence == 'high'
        assert result.site_name == 'youtube'
        assert fetcher.calls == []

    @pytest.mark.parametrize('url', ['https://x.test/feed.xml', 'https://x.test/index.rss?lang=ja',
                                     'https://x.test/blog/feed/'])
    def test_feed_urls(self, url):
        fetcher = StubFetcher()
        result = ConfigDetector(fetcher).detect(url)
        assert (result.parser_type, result.confidence) == ('rss', 'high')
        assert result.site_name == 'x'
        assert fetcher.calls == []

    def test_json_response(self):
        fetcher = StubFetcher().add_json('https://x.test/api/news', {'items': []})
        result = ConfigDetector(fetcher).detect('https://x.test/api/news')

        assert result.parser_type == 'api-json'
        assert result.confidence == 'medium'
        assert result.parser_config['api'] == {'url': 'https://x.test/api/news', 'method': 'GET',
                                               'responseType': 'json'}
        validate_parser_config(result.parser_type, result.parser_config)

    def test_xml_body(self):
        fetcher = StubFetcher().add('https://x.test/updates', '<?xml version="1.0"?><rss version="2.0"></rss>',
                                    content_type='text/plain')
        result = ConfigDetector(fetcher).detect('https://x.test/updates')
        assert result.parser_type == 'rss'

    def test_wordpress_posts(self):
        page = html_page('<p>Blog</p>', head='<meta name="generator" content="WordPress 6.4.2">'
                                             '<meta property="og:site_name" content="X Blog">')
        fetcher = (StubFetcher()
                   .add('https://x.test/blog/', page)
                   .add_json('https://x.test/wp-json/wp/v2/posts?per_page=1', [{'id': 1}]))
        result = ConfigDetector(fetcher).detect('https://x.test/blog/')

        assert result.parser_type == 'wordpress'
        assert result.confidence == 'high'
        assert result.parser_config['apiUrl'] == 'https://x.test/wp-json/wp/v2/posts'
        assert result.parser_config['perPage'] == 100
        assert result.site_name == 'X Blog'
        validate_parser_config(result.parser_type, result.parser_config)

    def test_wordpress_api_link_and_later_post_type(self):
        page = html_page('<p>Blog</p>', head='<link rel="https://api.w.org/" href="https://x.test/cms/wp-json/">'
                                             '<link rel="stylesheet" href="/wp-content/themes/a/style.css">')
        fetcher = (StubFetcher()
                   .add('https://x.test/', page)
                   .add_json('https://x.test/cms/wp-json/wp/v2/posts?per_page=1', [])
                   .add('https://x.test/cms/wp-json/wp/v2/blog?per_page=1', 'missing', status=404)
                   .add_json('https://x.test/cms/wp-json/wp/v2/news?per_page=1', [{'id': 9}]))
        result = ConfigDetector(fetcher).detect('https://x.test/')

        assert result.parser_type == 'wordpress'
        assert result.parser_config['apiUrl'] == 'https://x.test/cms/wp-json/wp/v2/news'
        assert 'https://x.test/cms/wp-json/wp/v2/articles?per_page=1' not in fetcher.urls

    def test_wordpress_without_api_falls_through(self):
        page = html_page('<p>Blog</p>', head='<script src="/wp-includes/js/jquery.js"></script>'
                                             '<link rel="alternate" type="application/rss+xml" href="/feed/">')
        fetcher = StubFetcher().add('https://x.test/', page)
        result = ConfigDetector(fetcher).detect('https://x.test/')

        assert result.parser_type == 'rss'
        assert result.parser_config == {'rssUrl': 'https://x.test/feed/'}

    def test_advertised_atom_feed(self):
        page = html_page('<p>x</p>', head='<link rel="alternate" type="application/atom+xml" href="atom.xml">')
        fetcher = StubFetcher().add('https://x.test/news/', page)
        result = ConfigDetector(fetcher).detect('https://x.test/news/')
        assert result.parser_config == {'rssUrl': 'https://x.test/news/atom.xml'}
        assert result.confidence == 'high'

    def test_list_page_high_confidence(self):
        fetcher = StubFetcher().add('https://x.test/news/', news_list_html())
        result = ConfigDetector(fetcher).detect('https://x.test/news/')

        assert result.parser_type == 'html-list'
        assert result.confidence == 'high'
        assert result.parser_config['baseUrl'] == 'https://x.test'
        assert result.parser_config['list']['itemSelector'] == 'ul.news-list > li'
        assert result.parser_config['list']['dateSelector'] == '.date'
        validate_parser_config(result.parser_type, result.parser_config)

    def test_list_page_medium_confidence(self):
        fetcher = StubFetcher().add('https://x.test/news/', news_list_html(count=3, rich=False))
        result = ConfigDetector(fetcher).detect('https://x.test/news/')
        assert result.confidence == 'medium'
        assert result.parser_config['list'] == {'itemSelector': 'ul.news-list > li', 'linkSelector': 'a',
                                                'titleSelector': 'h3'}

    def test_news_links_below_threshold_use_generic_fallback(self):
        page = html_page('<p><a href="/news/2024/a">A</a> <a href="/news/2024/b">B</a> '
                         '<a href="/news/2024/c">C</a> <a href="/company">Company</a></p>')
        fetcher = StubFetcher().add('https://x.test/', page)
        detector = ConfigDetector(fetcher)
        result = detector.detect('https://x.test/')

        assert result.confidence == 'low'
        assert result.parser_config['list'] == FALLBACK_LIST
        assert any('below the threshold' in message for message in detector.log_messages)

        news_links = infer_news_links(make_soup(page))
        assert (news_links.item_selector, news_links.link_filter_pattern) == ('a', '/news/2024/')
        assert news_links.score < 30

    def test_generic_fallback(self):
        fetcher = StubFetcher().add('https://x.test/', html_page('<p>Welcome</p>'))
        result = ConfigDetector(fetcher).detect('https://x.test/')

        assert result.parser_type == 'html-list'
        assert result.confidence == 'low'
        assert result.parser_config['list'] == FALLBACK_LIST
        assert result.parser_config['content'] == {'selectors': ['article', '.content', 'main']}
        validate_parser_config(result.parser_type, result.parser_config)

    def test_windows_31j_page(self):
        page = html_page('<p>ようこそ</p>', head='<meta property="og:site_name" content="株式会社テスト">')
        fetcher = StubFetcher()
        fetcher.responses['https://x.test/'] = FetchResponse(
            url='https://x.test/', headers={'content-type': 'text/html; charset=Windows-31J'},
            content=page.encode('cp932'), encoding='Windows-31J')
        result = ConfigDetector(fetcher).detect('https://x.test/')

        assert result.parser_type == 'html-list'
        assert result.site_name == '株式会社テスト'

    def test_unreachable_url(self):
        fetcher = StubFetcher().fail('https://x.test/')
        with pytest.raises(FetchError):
            ConfigDetector(fetcher).detect('https://x.test/')

    def test_injected_fetcher_is_not_closed(self):
        fetcher = StubFetcher()
        ConfigDetector(fetcher).close()
        assert not fetcher.closed
