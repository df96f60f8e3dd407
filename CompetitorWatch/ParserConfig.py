"""
Parser configuration documents.

Every source stores one JSON document describing how its adapter should read
it. The documents use camelCase keys on the wire (they are written by the
detector and by people), and are exposed to Python as snake_case pydantic
models. Each parser type has exactly one configuration model; the pair
(parser_type, document) is validated once at onboarding time and parsed again
by the pipeline at crawl time.
"""
import logging
from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from CompetitorWatch.Errors import ConfigError


logger = logging.getLogger(__name__)


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra='ignore')

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ContentConfig(WireModel):
    selectors: List[str] = Field(default_factory=list)
    remove_selectors: List[str] = Field(default_factory=list)
    title_selector: Optional[str] = None


class BaseParserConfig(WireModel):
    # "product" opts the source into positional dating
    category: Optional[str] = None
    content: ContentConfig = Field(default_factory=ContentConfig)


# ----------------------------------------------------------------------------------------------------------------------

class FeedConfig(BaseParserConfig):
    rss_url: Optional[str] = None


class ChannelFeedConfig(BaseParserConfig):
    pass


class ListSelectors(WireModel):
    item_selector: str
    # "self" means the item node is the link
    link_selector: str = 'a'
    title_selector: Optional[str] = None
    date_selector: Optional[str] = None
    image_selector: Optional[str] = None
    description_selector: Optional[str] = None
    link_filter_pattern: Optional[str] = None
    skip_patterns: List[str] = Field(default_factory=list)


class PaginationConfig(WireModel):
    type: Literal['query', 'path'] = 'query'
    param: str = 'page'
    path_pattern: Optional[str] = None
    start: int = 1
    step: int = 1
    max_pages: int = Field(default=1, ge=1)


class HtmlListConfig(BaseParserConfig):
    base_url: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    list: ListSelectors
    pagination: Optional[PaginationConfig] = None


class ApiRequestConfig(WireModel):
    url: str
    method: Literal['GET', 'POST'] = 'GET'
    query_params: Dict[str, Any] = Field(default_factory=dict)
    body: Optional[Any] = None
    response_type: Literal['json', 'json_html_array'] = 'json'


class ApiFieldMapping(WireModel):
    results_path: Optional[str] = None
    url: str = 'url'
    title: str = 'title'
    description: Optional[str] = None
    image: Optional[str] = None
    published_at: Optional[str] = None


class HtmlFragmentParsing(WireModel):
    link_selector: str = 'a'
    title_selector: Optional[str] = None
    image_selector: Optional[str] = None
    url_extract_attr: str = 'href'
    url_pattern: Optional[str] = None


class ApiJsonConfig(BaseParserConfig):
    base_url: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    api: ApiRequestConfig
    mapping: ApiFieldMapping = Field(default_factory=ApiFieldMapping)
    html_parsing: Optional[HtmlFragmentParsing] = None
    exclude_patterns: List[str] = Field(default_factory=list)
    preferred_markets: List[str] = Field(default_factory=lambda: ['jp', 'us'])


class WordPressConfig(BaseParserConfig):
    api_url: Optional[str] = None
    per_page: int = Field(default=100, ge=1)
    post_type: str = 'posts'


class RenderedListSelectors(WireModel):
    item_selector: str
    title_selector: Optional[str] = None
    date_selector: Optional[str] = None
    image_selector: Optional[str] = None
    description_selector: Optional[str] = None
    link_filter_pattern: Optional[str] = None


class RenderedListConfig(BaseParserConfig):
    base_url: Optional[str] = None
    wait_selector: Optional[str] = None
    wait_timeout: int = 15000
    extra_wait: int = 5000
    list: RenderedListSelectors


# ----------------------------------------------------------------------------------------------------------------------

PARSER_CONFIG_TYPES: Dict[str, Type[BaseParserConfig]] = {
    'rss': FeedConfig,
    'youtube': ChannelFeedConfig,
    'html-list': HtmlListConfig,
    'api-json': ApiJsonConfig,
    'wordpress': WordPressConfig,
    'playwright-list': RenderedListConfig,
}

PARSER_TYPE_ALIASES: Dict[str, str] = {
    'cheerio-list': 'html-list',
}


def canonical_parser_type(parser_type: str) -> str:
    """Maps legacy names onto the registered parser type. Unknown names are returned unchanged."""
    return PARSER_TYPE_ALIASES.get(parser_type, parser_type)


def parse_parser_config(parser_type: str, document: Optional[Dict[str, Any]]) -> BaseParserConfig:
    """
    Builds the typed configuration for a parser type.

    :param parser_type: Registered parser type or alias. A '-product' suffix selects the base type
                        and marks the configuration as a product source.
    :param document: The camelCase JSON document stored with the source. None is an empty document.
    :return: The configuration model for the parser type.
    :raises ConfigError: Unknown parser type or a document that does not validate.
    """
    base_type = canonical_parser_type(parser_type)
    is_product_type = False
    if base_type not in PARSER_CONFIG_TYPES and base_type.endswith('-product'):
        base_type = canonical_parser_type(base_type[:-len('-product')])
        is_product_type = True

    config_type = PARSER_CONFIG_TYPES.get(base_type)
    if config_type is None:
        raise ConfigError(f"Unknown parser type: {parser_type}")

    try:
        config = config_type.model_validate(document or {})
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration for parser type '{parser_type}': {e}") from e

    if is_product_type and not config.category:
        config.category = 'product'
    return config


def validate_parser_config(parser_type: str, document: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Onboarding-time check. Returns the normalized wire document that should be stored.

    :raises ConfigError: Same conditions as parse_parser_config.
    """
    config = parse_parser_config(parser_type, document)
    logger.debug(f"Validated {parser_type} configuration.")
    return config.to_wire()
