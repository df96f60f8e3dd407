from unittest import mock

import pytest

from CompetitorWatch.Config import Settings
from CompetitorWatch.Errors import ConfigError
from CompetitorWatch.ParserRegistry import ParserRegistry
from CompetitorWatch.SiteParser import (
    ApiJsonParser, ChannelFeedParser, FeedParser, HtmlListParser, RenderedListParser, WordPressParser)

from conftest import StubFetcher


class SiteSpecificParser(HtmlListParser):
    parser_type = 'acme-news'


@pytest.fixture
def registry(stub_fetcher):
    return ParserRegistry(stub_fetcher, max_chars=1234)


class TestResolution:

    @pytest.mark.parametrize('parser_type, expected', [
        ('rss', FeedParser),
        ('youtube', ChannelFeedParser),
        ('html-list', HtmlListParser),
        ('api-json', ApiJsonParser),
        ('wordpress', WordPressParser),
        ('playwright-list', RenderedListParser),
        ('cheerio-list', HtmlListParser),
        ('HTML-List', HtmlListParser),
        ('html-list-product', HtmlListParser),
        ('cheerio-list-product', HtmlListParser),
    ])
    def test_builtin_types(self, registry, parser_type, expected):
        assert type(registry.get_parser(parser_type)) is expected

    def test_adapters_share_the_fetcher(self, registry, stub_fetcher):
        parser = registry.get_parser('rss')
        assert parser.fetcher is stub_fetcher
        assert parser.max_chars == 1234
        assert registry.get_parser('rss') is parser

    def test_unknown_type(self, registry):
        with pytest.raises(ConfigError, match='gopher'):
            registry.get_parser('gopher', 'Some Site')

    def test_site_name_registration(self, registry):
        registry.register('Acme Corp', SiteSpecificParser)
        assert type(registry.get_parser('custom', 'acme corp')) is SiteSpecificParser
        # An exact type match wins over the site name
        assert type(registry.get_parser('rss', 'Acme Corp')) is FeedParser

    def test_duplicate_registration(self, registry):
        with pytest.raises(ConfigError):
            registry.register('rss', SiteSpecificParser)
        registry.register('rss', SiteSpecificParser, replace=True)
        assert type(registry.get_parser('rss')) is SiteSpecificParser

    def test_register_instance(self, registry):
        parser = SiteSpecificParser(StubFetcher())
        registry.register_instance('acme-news', parser)
        assert registry.get_parser('acme-news') is parser
        assert 'acme-news' in registry.known_types()


class TestPlugins:

    def entry_point(self, name, target=None, error=None):
        ep = mock.Mock()
        ep.name = name
        if error:
            ep.load.side_effect = error
        else:
            ep.load.return_value = target
        return ep

    def test_entry_points_are_registered(self, stub_fetcher):
        eps = [self.entry_point('acme-news', SiteSpecificParser),
               self.entry_point('broken', error=ImportError('no module named acme'))]
        with mock.patch('CompetitorWatch.ParserRegistry.entry_points', return_value=eps) as found:
            registry = ParserRegistry(stub_fetcher, load_plugins=True)

        assert found.call_args.kwargs['group'] == 'competitor_watch.parsers'
        assert type(registry.get_parser('acme-news')) is SiteSpecificParser
        assert 'broken' not in registry.known_types()


class TestLifecycle:

    def test_close_keeps_injected_fetcher(self, registry, stub_fetcher):
        registry.get_parser('rss')
        registry.close()
        assert not stub_fetcher.closed

    def test_close_releases_owned_fetcher(self):
        with mock.patch('CompetitorWatch.ParserRegistry.RequestsFetcher') as fetcher_cls:
            registry = ParserRegistry.from_settings(Settings(request_timeout_s=9, user_agent='UA'), load_plugins=False)
            registry.close()

        fetcher_cls.assert_called_once_with(timeout_s=9, user_agent='UA')
        fetcher_cls.return_value.close.assert_called_once()

    def test_rendered_adapter_uses_configured_timeout(self):
        with mock.patch('CompetitorWatch.ParserRegistry.RequestsFetcher'):
            registry = ParserRegistry.from_settings(Settings(request_timeout_s=9, user_agent='UA'), load_plugins=False)
        parser = registry.get_parser('playwright-list')
        assert parser.timeout_s == 9
        assert parser.user_agent == 'UA'

        with mock.patch('CompetitorWatch.SiteParser.PlaywrightFetcher') as browser_cls:
            assert parser.render_fetcher is browser_cls.return_value
        browser_cls.assert_called_once_with(timeout_s=9, user_agent='UA')

        registry.close()
        browser_cls.return_value.close.assert_called_once()

    def test_plain_adapters_get_only_shared_options(self, stub_fetcher):
        factory = mock.Mock(return_value=SiteSpecificParser(stub_fetcher))
        registry = ParserRegistry(stub_fetcher, max_chars=50, timeout_s=9, user_agent='UA')
        registry.register('acme-news', factory)
        registry.get_parser('acme-news')
        factory.assert_called_once_with(fetcher=stub_fetcher, max_chars=50)
