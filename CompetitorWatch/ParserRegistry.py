"""
Maps a source's parser type to an adapter instance.

Built-in adapters are listed explicitly. Site-specific adapters can be added
with register(), or shipped by other distributions through the
'competitor_watch.parsers' entry point group, each entry point naming an
ISiteParser subclass or a factory taking the same keyword arguments
(fetcher, max_chars). Browser-backed adapters also get timeout_s and user_agent.
Lookups never guess: a type that resolves to nothing raises ConfigError.
"""
import logging
from importlib.metadata import entry_points
from typing import Any, Callable, Dict, Optional

from CompetitorWatch.Config import Settings
from CompetitorWatch.Errors import ConfigError
from CompetitorWatch.Extractor import DEFAULT_MAX_CHARS
from CompetitorWatch.Fetcher import Fetcher, RequestsFetcher
from CompetitorWatch.ParserConfig import PARSER_TYPE_ALIASES
from CompetitorWatch.SiteParser import (
    ApiJsonParser, ChannelFeedParser, FeedParser, HtmlListParser, ISiteParser, RenderedListParser, WordPressParser)


logger = logging.getLogger(__name__)

PLUGIN_ENTRY_POINT_GROUP = 'competitor_watch.parsers'
PRODUCT_SUFFIX = '-product'

ParserFactory = Callable[..., ISiteParser]

BUILTIN_PARSERS: Dict[str, ParserFactory] = {
    FeedParser.parser_type: FeedParser,
    ChannelFeedParser.parser_type: ChannelFeedParser,
    HtmlListParser.parser_type: HtmlListParser,
    ApiJsonParser.parser_type: ApiJsonParser,
    WordPressParser.parser_type: WordPressParser,
    RenderedListParser.parser_type: RenderedListParser,
}


class ParserRegistry:
    """
    Creates adapters on first use and hands out the same instance afterwards.
    All adapters share one fetcher; close() releases it together with any
    browser an adapter started.
    """

    def __init__(self,
                 fetcher: Optional[Fetcher] = None,
                 max_chars: int = DEFAULT_MAX_CHARS,
                 load_plugins: bool = False,
                 timeout_s: Optional[float] = None,
                 user_agent: Optional[str] = None):
        """
        :param timeout_s: Navigation timeout for adapters that launch their own browser.
        :param user_agent: User agent for adapters that launch their own browser.
        """
        self._owns_fetcher = fetcher is None
        self.fetcher = fetcher or RequestsFetcher()
        self.max_chars = max_chars
        self.timeout_s = timeout_s
        self.user_agent = user_agent
        self._factories: Dict[str, ParserFactory] = dict(BUILTIN_PARSERS)
        self._instances: Dict[str, ISiteParser] = {}
        if load_plugins:
            self.load_plugins()

    @classmethod
    def from_settings(cls, settings: Settings, load_plugins: bool = True) -> "ParserRegistry":
        """A registry whose shared fetcher uses the configured timeout and user agent."""
        registry = cls(RequestsFetcher(timeout_s=settings.request_timeout_s, user_agent=settings.user_agent),
                       max_chars=settings.content_max_chars,
                       load_plugins=load_plugins,
                       timeout_s=settings.request_timeout_s,
                       user_agent=settings.user_agent)
        registry._owns_fetcher = True
        return registry

    def register(self, key: str, factory: ParserFactory, replace: bool = False):
        """
        Adds an adapter under a parser type or a site name (matched case-insensitively).

        :param factory: Called as factory(fetcher=..., max_chars=...).
        :raises ConfigError: The key is taken and replace is False.
        """
        key = key.lower()
        if key in self._factories and not replace:
            raise ConfigError(f"Parser '{key}' is already registered")
        self._factories[key] = factory
        self._instances.pop(key, None)

    def register_instance(self, key: str, parser: ISiteParser):
        """Registers a ready-made adapter, mostly useful for tests and custom setups."""
        key = key.lower()
        self._factories[key] = lambda **_: parser
        self._instances[key] = parser

    def load_plugins(self) -> int:
        loaded = 0
        for ep in entry_points(group=PLUGIN_ENTRY_POINT_GROUP):
            try:
                factory = ep.load()
            except (ImportError, AttributeError) as e:
                logger.warning(f"Could not load parser plugin '{ep.name}': {e}")
                continue
            self.register(ep.name, factory, replace=True)
            loaded += 1
            logger.info(f"Loaded parser plugin '{ep.name}'")
        return loaded

    def known_types(self):
        return sorted(self._factories)

    def _resolve_key(self, parser_type: str, site_name: Optional[str]) -> Optional[str]:
        key = (parser_type or '').lower()
        if key in self._factories:
            return key
        alias = PARSER_TYPE_ALIASES.get(key)
        if alias in self._factories:
            return alias
        name_key = (site_name or '').lower()
        if name_key and name_key in self._factories:
            return name_key
        if key.endswith(PRODUCT_SUFFIX):
            return self._resolve_key(key[:-len(PRODUCT_SUFFIX)], None)
        return None

    def get_parser(self, parser_type: str, site_name: Optional[str] = None) -> ISiteParser:
        """
        Resolution order: the exact type, a legacy alias, the site name, then the
        base type of a '<type>-product' name.

        :raises ConfigError: Nothing matched.
        """
        key = self._resolve_key(parser_type, site_name)
        if key is None:
            raise ConfigError(f"Unknown parser type: {parser_type}")
        parser = self._instances.get(key)
        if parser is None:
            factory = self._factories[key]
            parser = factory(**self._factory_kwargs(factory))
            self._instances[key] = parser
        return parser

    def _factory_kwargs(self, factory: ParserFactory) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {'fetcher': self.fetcher, 'max_chars': self.max_chars}
        if isinstance(factory, type) and issubclass(factory, RenderedListParser):
            if self.timeout_s is not None:
                kwargs['timeout_s'] = self.timeout_s
            if self.user_agent:
                kwargs['user_agent'] = self.user_agent
        return kwargs

    def close(self):
        for parser in self._instances.values():
            parser.close()
        self._instances.clear()
        if self._owns_fetcher:
            self.fetcher.close()
