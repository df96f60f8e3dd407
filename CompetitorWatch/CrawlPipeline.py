# CrawlPipeline.py

import json
import time
import queue
import logging
import datetime
import threading
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from CompetitorWatch.Config import Settings
from CompetitorWatch.Errors import ConfigError
from CompetitorWatch.Extractor import filter_image_url
from CompetitorWatch.Models import (
    ArticleRecord, CandidateItem, CrawlLogRecord, CrawlOutcome, Source, decode_image_snippet)
from CompetitorWatch.ParserConfig import BaseParserConfig
from CompetitorWatch.ParserRegistry import PRODUCT_SUFFIX, ParserRegistry
from CompetitorWatch.Persistence import IArticleRepository
from CompetitorWatch.SiteParser import ISiteParser
from CompetitorWatch.Summarizer import ISummarizer


logger = logging.getLogger(__name__)

NO_CONTENT_SUMMARY = "本文を取得できなかったため、要約を生成できませんでした。"
SUMMARY_FAILED = "要約の生成に失敗しました。"
MIN_SUMMARIZABLE_CHARS = 50

ProgressCallback = Callable[[Dict[str, Any]], None]


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class ProductDatingPolicy:
    """
    Manufacturer product listings are ordered newest first but carry no dates.
    For sources that opt in, undated items get a date from their position:
    the first item is dated now, each following item one day earlier.
    """

    def __init__(self, step: datetime.timedelta = datetime.timedelta(days=1)):
        self.step = step

    @staticmethod
    def applies_to(source: Source, config: BaseParserConfig) -> bool:
        return source.parser_type.endswith(PRODUCT_SUFFIX) or config.category == 'product'

    def assign_dates(self, items: List[CandidateItem], now: Optional[datetime.datetime] = None):
        now = now or _utcnow()
        for index, item in enumerate(items):
            if item.published_at is None:
                item.published_at = now - index * self.step


class CrawlPipeline:
    """
    Drives sources through list extraction, the novelty filter, content
    extraction, summarization and persistence, and writes one crawl log per
    source.

    Everything runs sequentially: one source at a time, one item at a time,
    with the politeness delay before each content fetch.
    """

    def __init__(self,
                 repository: IArticleRepository,
                 summarizer: Optional[ISummarizer] = None,
                 registry: Optional[ParserRegistry] = None,
                 settings: Optional[Settings] = None,
                 dating_policy: Optional[ProductDatingPolicy] = None,
                 keep_items_without_content: bool = False,
                 log_callback: Optional[Callable[[str], None]] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], datetime.datetime] = _utcnow):
        """
        Args:
            repository: Article, log and source storage.
            summarizer: Summary collaborator. Without one the snippet is stored as the summary.
            registry: Adapter registry. A default one (plain HTTP fetcher) is created when omitted.
            settings: Delay, per-run cap and text bounds.
            dating_policy: Positional dating for product sources.
            keep_items_without_content: Persist items whose page could not be read, using the
                snippet or title as content. The failure is recorded either way.
            log_callback: Optional extra log sink, like print or a GUI logger.
            sleep, clock: Injectable for tests.
        """
        self.settings = settings or Settings()
        self.repository = repository
        self.summarizer = summarizer
        self._owns_registry = registry is None
        self.registry = registry or ParserRegistry.from_settings(self.settings)
        self.dating_policy = dating_policy or ProductDatingPolicy()
        self.keep_items_without_content = keep_items_without_content
        self.log_callback = log_callback
        self.sleep = sleep
        self.clock = clock
        self.log_messages: List[str] = []

    def _log(self, message: str, indent: int = 0, level: int = logging.INFO):
        log_msg = f"{' ' * (indent * 4)}{message}"
        self.log_messages.append(log_msg)
        logger.log(level, log_msg)
        if self.log_callback:
            self.log_callback(log_msg)

    def shutdown(self):
        """Closes the adapters and their fetchers."""
        if self._owns_registry:
            self.registry.close()

    # ------------------------------------------------------------------------------------------------------------------

    def _write_log(self, source: Source, status: str, started_at: datetime.datetime,
                   articles_found: int, new_articles: int, errors: List[str]):
        finished_at = self.clock()
        self.repository.append_crawl_log(CrawlLogRecord(
            source_id=source.id,
            status=status,
            articles_found=articles_found,
            new_articles=new_articles,
            error_message='; '.join(errors) if errors else None,
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=max(0, int((finished_at - started_at).total_seconds() * 1000)),
        ))

    def _novel_items(self, items: List[CandidateItem]) -> List[CandidateItem]:
        # One snapshot per source, never re-queried per item
        existing = self.repository.existing_urls({item.external_url for item in items})
        novel, seen = [], set()
        for item in items:
            if item.external_url in existing or item.external_url in seen:
                continue
            seen.add(item.external_url)
            novel.append(item)
        return novel[:self.settings.max_new_per_crawl]

    def crawl_site(self, source: Source, progress_callback: Optional[ProgressCallback] = None) -> CrawlOutcome:
        """
        Runs one source to completion and logs the result.

        A failure before or during list extraction marks the whole source as
        'error'. Failures of single items are collected and the run continues,
        which makes the status 'partial'.

        :raises ConfigError: Unknown parser type or invalid configuration. The
                             failure is logged before the error propagates.
        """
        started_at = self.clock()
        errors: List[str] = []
        self.log_messages.clear()
        self._log(f"[Crawler] Fetching article list for {source.name}...")

        try:
            parser = self.registry.get_parser(source.parser_type, source.name)
            config = parser.parse_config(source.parser_config)
        except ConfigError as e:
            message = f"Crawl failed for {source.name}: {e}"
            self._log(f"[Crawler] {message}", level=logging.ERROR)
            self._write_log(source, 'error', started_at, 0, 0, [message])
            raise

        try:
            items = parser.list_items(source.url, config)
            novel = self._novel_items(items)
        except Exception as e:
            message = f"Crawl failed for {source.name}: {e}"
            self._log(f"[Crawler] {message}", level=logging.ERROR)
            self._write_log(source, 'error', started_at, 0, 0, [message])
            return CrawlOutcome(errors=[message], status='error')

        self._log(f"[Crawler] Found {len(items)} articles, {len(novel)} new for {source.name}")

        is_product = self.dating_policy.applies_to(source, config)
        if is_product:
            self.dating_policy.assign_dates(items, now=self.clock())

        new_articles = 0
        for item in novel:
            errors_before = len(errors)
            try:
                if self._process_item(source, parser, config, item, is_product, errors):
                    new_articles += 1
            except Exception as e:
                errors.append(f"Error processing {item.external_url}: {e}")
                self._log(f"[Crawler] {errors[-1]}", 1, level=logging.WARNING)
            if progress_callback:
                for error in errors[errors_before:]:
                    progress_callback({'type': 'article_error', 'siteName': source.name,
                                       'url': item.external_url, 'error': error})

        status = 'partial' if errors else 'success'
        self._write_log(source, status, started_at, len(items), new_articles, errors)
        self._log(f"[Crawler] Finished {source.name}: {status}, {new_articles} new")
        return CrawlOutcome(articles_found=len(items), new_articles=new_articles, errors=errors, status=status)

    def _process_item(self, source: Source, parser: ISiteParser, config: BaseParserConfig,
                      item: CandidateItem, is_product: bool, errors: List[str]) -> bool:
        """Content, summary and persistence for one novel item. True when a record was created."""
        self.sleep(self.settings.fetch_delay_s)
        self._log(f"[Crawler] Fetching content: {item.title}", 1)

        image_url, description = decode_image_snippet(item.snippet)

        try:
            extracted = parser.fetch_content(item.external_url, config)
            content = extracted.text
            if extracted.image_url:
                image_url = extracted.image_url
        except Exception as e:
            errors.append(f"Error processing {item.external_url}: content unavailable ({e})")
            self._log(f"[Crawler] {errors[-1]}", 2, level=logging.WARNING)
            if not self.keep_items_without_content:
                return False
            content = description or item.title

        image_url = filter_image_url(image_url)

        if len(content) <= MIN_SUMMARIZABLE_CHARS:
            summary = description or NO_CONTENT_SUMMARY
        elif self.summarizer is None:
            summary = description or ''
        else:
            try:
                summary = self.summarizer.summarize(item.title, content, is_product)
            except Exception as e:
                errors.append(f"Error processing {item.external_url}: summary failed ({e})")
                self._log(f"[Crawler] {errors[-1]}", 2, level=logging.WARNING)
                summary = description or SUMMARY_FAILED

        return self.repository.upsert_article_if_absent(ArticleRecord(
            source_id=source.id,
            external_url=item.external_url,
            title=item.title,
            published_at=item.published_at,
            image_url=image_url,
            raw_content=content[:self.settings.raw_content_max_chars],
            summary=summary,
            category='product' if is_product else 'news',
        ))

    # ------------------------------------------------------------------------------------------------------------------

    def crawl_sources(self, sources: Iterable[Source],
                      progress_callback: Optional[ProgressCallback] = None) -> Dict[str, CrawlOutcome]:
        """
        Crawls sources strictly one after another. Progress events are purely
        observational; a failing callback is logged and ignored.
        """
        sources = list(sources)
        results: Dict[str, CrawlOutcome] = {}

        def emit(event: Dict[str, Any]):
            if not progress_callback:
                return
            try:
                progress_callback(event)
            except Exception as e:
                self._log(f"[Crawler] Progress consumer failed: {e}", level=logging.WARNING)

        emit({'type': 'start', 'totalSites': len(sources)})
        for index, source in enumerate(sources):
            emit({'type': 'progress', 'current': index + 1, 'total': len(sources),
                  'siteName': source.name, 'siteUrl': source.url})
            try:
                outcome = self.crawl_site(source, progress_callback=emit)
            except Exception as e:
                results[source.name] = CrawlOutcome(errors=[str(e)], status='error')
                emit({'type': 'site_error', 'siteName': source.name, 'error': str(e)})
                continue

            results[source.name] = outcome
            if outcome.status == 'error':
                emit({'type': 'site_error', 'siteName': source.name,
                      'error': outcome.errors[0] if outcome.errors else 'unknown error'})
            else:
                emit({'type': 'site_done', 'siteName': source.name, 'articlesFound': outcome.articles_found,
                      'newArticles': outcome.new_articles, 'errors': len(outcome.errors)})

        emit({'type': 'done', 'results': {name: outcome.to_wire() for name, outcome in results.items()}})
        return results

    def run_crawl(self, source_ids: Optional[Iterable[int]] = None,
                  progress_callback: Optional[ProgressCallback] = None) -> Dict[str, CrawlOutcome]:
        """Crawls the active sources, or only the given ones."""
        sources = self.repository.list_sources(active_only=True, source_ids=source_ids)
        return self.crawl_sources(sources, progress_callback)


# ----------------------------------------------------------------------------------------------------------------------

def format_sse(event: Dict[str, Any]) -> str:
    """One text/event-stream frame."""
    return f"data: {json.dumps(event, ensure_ascii=False, default=str)}\n\n"


class CrawlEventStream:
    """
    Runs a multi-source crawl on a worker thread and lets a consumer iterate
    over its progress events as they happen.

    The consumer may stop reading at any time and call close(); the crawl
    itself keeps running to completion, its remaining events are dropped.
    """

    _END = object()

    def __init__(self, pipeline: CrawlPipeline, sources: Iterable[Source]):
        self.pipeline = pipeline
        self.sources = list(sources)
        self.results: Optional[Dict[str, CrawlOutcome]] = None
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._detached = threading.Event()
        self._worker = threading.Thread(target=self._run, daemon=True)
        self._started = False

    def _publish(self, event: Dict[str, Any]):
        if not self._detached.is_set():
            self._queue.put(event)

    def _run(self):
        try:
            self.results = self.pipeline.crawl_sources(self.sources, progress_callback=self._publish)
        except Exception as e:
            logger.exception("Crawl run failed")
            self._publish({'type': 'error', 'error': str(e)})
        finally:
            self._queue.put(self._END)

    def start(self) -> "CrawlEventStream":
        if not self._started:
            self._started = True
            self._worker.start()
        return self

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        self.start()
        while not self._detached.is_set():
            event = self._queue.get()
            if event is self._END:
                return
            yield event

    def sse(self) -> Iterator[str]:
        for event in self:
            yield format_sse(event)

    def close(self):
        """Detaches the consumer. Does not cancel the crawl."""
        self._detached.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Waits for the crawl itself. True when it has finished."""
        if self._started:
            self._worker.join(timeout)
        return self._started and not self._worker.is_alive()
