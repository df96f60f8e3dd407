#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import json
import codecs
import logging
import queue
import threading        # Playwright's sync API must stay on one thread, so it gets a dedicated worker
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Union
from urllib.parse import urljoin, urlparse

import requests
from playwright.sync_api import sync_playwright, Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from pydantic import BaseModel, Field

from CompetitorWatch.Config import DEFAULT_USER_AGENT
from CompetitorWatch.Errors import FetchError


logger = logging.getLogger(__name__)

MAX_REDIRECTS = 10

# Labels servers send that Python's codec registry does not know
CHARSET_ALIASES = {
    'windows-31j': 'cp932',
    'x-sjis': 'shift_jis',
    'x-euc-jp': 'euc_jp',
}


def normalize_charset(label: Optional[str]) -> Optional[str]:
    """Python codec name for a declared charset label, None when the label is unusable."""
    if not isinstance(label, str) or not label.strip():
        return None
    label = label.strip().strip('"\'').lower()
    label = CHARSET_ALIASES.get(label, label)
    try:
        return codecs.lookup(label).name
    except LookupError:
        return None


class FetchResponse(BaseModel):
    """What every fetcher hands back: final URL, status, lower-cased headers and the raw body."""
    url: str
    status_code: int = 200
    headers: Dict[str, str] = Field(default_factory=dict)
    content: bytes = Field(default=b"", repr=False)
    encoding: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def content_type(self) -> str:
        return self.headers.get('content-type', '').lower()

    @property
    def text(self) -> str:
        return self.content.decode(normalize_charset(self.encoding) or 'utf-8', errors='replace')

    @property
    def markup(self) -> Union[str, bytes]:
        """Input for an HTML parser: text when the header charset is usable, else bytes to sniff <meta charset>."""
        return self.text if normalize_charset(self.encoding) else self.content

    def json(self) -> Any:
        try:
            return json.loads(self.text)
        except ValueError as e:
            raise FetchError(f"Response from {self.url} is not valid JSON: {e}", url=self.url) from e


class Fetcher(ABC):
    """
    Abstract Base Class for a content fetcher.
    Defines the interface for different fetching strategies (plain HTTP or full
    browser rendering) so that site parsers and the detector can be handed
    whichever one a source needs, or a stub in tests.
    """

    @abstractmethod
    def get_response(self, url: str, **kwargs) -> FetchResponse:
        """
        Fetches a URL.

        Args:
            url (str): The URL to fetch.
            **kwargs: Implementation-specific options. Implementations ignore options they do not know.
                allow_error_status (bool): Return non-2xx responses instead of raising.

        Returns:
            FetchResponse: The final response.

        Raises:
            FetchError: Network failure, timeout, or a non-2xx status unless allow_error_status is set.
        """
        pass

    def get_content(self, url: str, **kwargs) -> bytes:
        """Body of a successful response."""
        return self.get_response(url, **kwargs).content

    def get_text(self, url: str, **kwargs) -> str:
        return self.get_response(url, **kwargs).text

    @abstractmethod
    def close(self):
        """
        Cleans up any persistent resources.
        This could be a requests.Session or a Playwright browser instance.
        """
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def also_log(log_callback: Optional[Callable[[str], None]]):
    """Sends messages to the module logger and, if given, to a caller supplied callback."""

    def wrapper(text):
        logger.info(text)
        if log_callback:
            log_callback(text)

    return wrapper


def _build_response(response: requests.Response) -> FetchResponse:
    headers = {k.lower(): v for k, v in response.headers.items()}
    # requests assumes ISO-8859-1 for text/* without a charset, which garbles UTF-8 pages
    encoding = None
    if 'charset=' in headers.get('content-type', '').lower():
        encoding = normalize_charset(response.encoding)
        if encoding is None:
            logger.debug(f"Unknown charset '{response.encoding}' from {response.url}, sniffing the body.")
            encoding = normalize_charset(response.apparent_encoding)
    return FetchResponse(
        url=response.url or '',
        status_code=response.status_code,
        headers=headers,
        content=response.content or b'',
        encoding=encoding,
    )


def fetch_with_redirects(url: str,
                         headers: Optional[Dict[str, str]] = None,
                         timeout: float = 30,
                         max_redirects: int = MAX_REDIRECTS) -> requests.Response:
    """
    GET with redirects followed by hand, carrying cookies from every hop to the next one.

    Some origins answer the first request with a consent or session cookie plus a redirect,
    and refuse the redirected request unless the cookie comes back. The cookie jar is owned
    by this call, nothing is kept between calls.

    Args:
        url (str): Starting URL.
        headers (dict): Request headers sent on every hop.
        timeout (float): Per-hop timeout in seconds.
        max_redirects (int): Number of hops allowed before giving up.

    Returns:
        requests.Response: The first non-3xx response.

    Raises:
        FetchError: A 3xx without Location, too many redirects, or a network failure.
    """
    cookie_jar: Dict[str, str] = {}
    current_url = url

    for _ in range(max_redirects):
        request_headers = dict(headers or {})
        if cookie_jar:
            request_headers['Cookie'] = '; '.join(f"{name}={value}" for name, value in cookie_jar.items())

        try:
            response = requests.get(current_url, headers=request_headers, timeout=timeout, allow_redirects=False)
        except requests.exceptions.RequestException as e:
            raise FetchError(f"Failed to fetch {current_url}: {e}", url=current_url) from e

        for name, value in (response.cookies or {}).items():
            cookie_jar[name] = value

        if 300 <= response.status_code < 400:
            location = response.headers.get('Location') or response.headers.get('location')
            if not location:
                raise FetchError(f"Redirect without location header from {current_url}",
                                 url=current_url, status_code=response.status_code)
            current_url = urljoin(current_url, location)
            logger.debug(f"Redirected to {current_url}")
            continue

        return response

    raise FetchError(f"Too many redirects for {url}", url=url)


class RequestsFetcher(Fetcher):
    """
    A fast, lightweight fetcher that uses the `requests` library.
    It maintains a persistent `requests.Session` for connection pooling.

    Suitable for feeds, JSON APIs, REST endpoints and server-rendered HTML.
    """
    HEADERS = {
        'User-Agent': DEFAULT_USER_AGENT,
        'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,application/json;q=0.9,*/*;q=0.8',
        'Accept-Language': 'ja,en-US;q=0.9,en;q=0.8',
        'Connection': 'keep-alive',
    }

    def __init__(self,
                 log_callback: Optional[Callable[[str], None]] = None,
                 timeout_s: float = 30,
                 user_agent: Optional[str] = None):
        """
        Args:
            log_callback: Optional callable receiving log messages in addition to the logger.
            timeout_s (float): Per-request timeout. Every request gets one.
            user_agent (str): Overrides the default browser user agent.
        """
        self.session = requests.Session()
        self.session.headers.update(self.HEADERS)
        if user_agent:
            self.session.headers['User-Agent'] = user_agent
        self._log = also_log(log_callback)
        self.timeout = timeout_s

    def get_response(self, url: str, **kwargs) -> FetchResponse:
        """
        Fetches a URL through the session.

        Args:
            url (str): The URL to fetch.
            **kwargs:
                method (str): 'GET' (default) or 'POST'.
                headers (dict): Extra headers for this request.
                params (dict): Query string parameters.
                json_body: JSON body for POST requests.
                timeout (float): Overrides the instance timeout.
                allow_error_status (bool): Return non-2xx responses instead of raising.
                manual_redirects (bool): Follow redirects by hand with per-call cookie propagation.

        Returns:
            FetchResponse
        """
        method = kwargs.get('method', 'GET').upper()
        request_timeout = kwargs.get('timeout') or self.timeout
        allow_error_status = kwargs.get('allow_error_status', False)

        parsed_url = urlparse(url)
        request_headers = dict(self.session.headers)
        request_headers['Referer'] = f"{parsed_url.scheme}://{parsed_url.netloc}/"
        if isinstance(kwargs.get('headers'), dict):
            request_headers.update(kwargs['headers'])

        if kwargs.get('manual_redirects') and method == 'GET' and not kwargs.get('params'):
            response = fetch_with_redirects(url, request_headers, timeout=request_timeout)
        else:
            try:
                response = self.session.request(
                    method,
                    url,
                    headers=request_headers,
                    params=kwargs.get('params'),
                    json=kwargs.get('json_body'),
                    timeout=request_timeout,
                )
            except requests.exceptions.RequestException as e:
                self._log(f"[Request Error] Failed to fetch {url}: {e}")
                raise FetchError(f"Failed to fetch {url}: {e}", url=url) from e

        result = _build_response(response)
        if not result.url:
            result.url = url
        if not result.ok and not allow_error_status:
            self._log(f"[Request Error] {url} answered HTTP {result.status_code}")
            raise FetchError(f"HTTP {result.status_code} for {url}", url=url, status_code=result.status_code)
        return result

    def close(self):
        """Closes the persistent requests.Session."""
        self._log("Closing RequestsFetcher session.")
        self.session.close()


class PlaywrightFetcher(Fetcher):
    """
    A slower fetcher that renders pages in headless Chromium so that
    JavaScript-built listings are present in the returned HTML.

    Playwright runs in a separate worker thread and this class offers a
    synchronous, thread-safe interface to it. The browser is launched once
    and every job gets a fresh context, which is closed when the job ends.
    """

    def __init__(self,
                 log_callback: Optional[Callable[[str], None]] = None,
                 timeout_s: float = 30,
                 user_agent: Optional[str] = None):
        """
        Starts the background Playwright worker thread.
        Blocks until the browser is launched or fails to launch.

        Args:
            log_callback (callable): Optional extra log sink.
            timeout_s (float): Navigation timeout in seconds.
            user_agent (str): User agent for every browser context.
        """
        self._log = also_log(log_callback)
        self.timeout_ms = int(timeout_s * 1000)
        self.user_agent = user_agent or DEFAULT_USER_AGENT

        self.job_queue: "queue.Queue[Optional[tuple]]" = queue.Queue()
        self.startup_queue: "queue.Queue[Any]" = queue.Queue(maxsize=1)

        self._log("Starting Playwright worker thread...")
        self.worker_thread: Optional[threading.Thread] = threading.Thread(target=self._worker_loop, daemon=True)
        self.worker_thread.start()

        try:
            startup_result = self.startup_queue.get(timeout=60)
        except queue.Empty:
            raise FetchError("Playwright worker thread failed to start in time.")
        if isinstance(startup_result, Exception):
            raise FetchError(f"Failed to start headless browser: {startup_result}") from startup_result
        self._log("Playwright worker thread started successfully.")

    def _start_playwright(self):
        """[Worker Thread] Initializes Playwright and launches the browser."""
        self.playwright = sync_playwright().start()
        self.browser = self.playwright.chromium.launch(headless=True)
        self._log("[Worker] Headless browser started.")

    def _stop_playwright(self):
        """[Worker Thread] Shuts down the Playwright browser and process."""
        if getattr(self, 'browser', None):
            try:
                self.browser.close()
            except PlaywrightError as e:
                self._log(f"[Worker Warning] Error closing browser: {e}")
        if getattr(self, 'playwright', None):
            try:
                self.playwright.stop()
            except PlaywrightError as e:
                self._log(f"[Worker Warning] Error stopping playwright: {e}")
        self._log("[Worker] Playwright stopped.")

    def _worker_loop(self):
        """[Worker Thread] Launches the browser, then serves jobs until told to shut down."""
        try:
            self._start_playwright()
            self.startup_queue.put(True)
        except Exception as e:
            self.startup_queue.put(e)
            return

        while True:
            job_data = self.job_queue.get()
            if not job_data:
                continue
            job_type, data, result_queue = job_data

            if job_type == 'shutdown':
                result_queue.put(True)
                break

            if job_type == 'get_response':
                try:
                    result_queue.put(self._render_page(data))
                except Exception as e:
                    self._log(f"[Worker Error] Job failed for {data['url']}: {e}")
                    result_queue.put(e)

        self._stop_playwright()

    def get_response(self, url: str, **kwargs) -> FetchResponse:
        """
        [Main Thread] Renders a page and returns its HTML.

        Args:
            url (str): The URL to render.
            **kwargs:
                wait_until (str): page.goto() strategy, 'domcontentloaded' by default.
                wait_for_selector (str): Selector to wait for after navigation. Best-effort.
                wait_for_timeout_ms (int): Timeout of that wait, 15000 by default.
                extra_wait_ms (int): Fixed settle delay after the selector wait, 5000 by default.
                allow_error_status (bool): Return non-2xx responses instead of raising.

        Raises:
            FetchError: Worker not running, navigation failure, timeout, or a non-2xx status.
        """
        if not self.worker_thread or not self.worker_thread.is_alive():
            raise FetchError("Playwright worker thread is not running.", url=url)

        job_payload = {
            'url': url,
            'wait_until': kwargs.get('wait_until', 'domcontentloaded'),
            'wait_for_selector': kwargs.get('wait_for_selector'),
            'wait_for_timeout_ms': kwargs.get('wait_for_timeout_ms') or 15000,
            'extra_wait_ms': kwargs.get('extra_wait_ms', 5000),
        }
        result_queue: "queue.Queue[Any]" = queue.Queue(maxsize=1)
        self.job_queue.put(('get_response', job_payload, result_queue))

        # Navigation, selector wait and settle delay, plus a margin
        wait_timeout = (self.timeout_ms + job_payload['wait_for_timeout_ms'] + job_payload['extra_wait_ms']) / 1000 + 10
        try:
            result = result_queue.get(timeout=wait_timeout)
        except queue.Empty:
            raise FetchError(f"Rendering {url} timed out after {wait_timeout:.0f}s", url=url)

        if isinstance(result, FetchError):
            raise result
        if isinstance(result, Exception):
            raise FetchError(f"Failed to render {url}: {result}", url=url) from result

        if not result.ok and not kwargs.get('allow_error_status', False):
            raise FetchError(f"HTTP {result.status_code} for {url}", url=url, status_code=result.status_code)
        return result

    def _render_page(self, job_payload: dict) -> FetchResponse:
        """[Worker Thread] Navigation with a hard failure, then best-effort waiting."""
        url = job_payload['url']
        context = self.browser.new_context(user_agent=self.user_agent)
        try:
            page = context.new_page()
            try:
                response = page.goto(url, timeout=self.timeout_ms, wait_until=job_payload['wait_until'])
            except PlaywrightTimeoutError as e:
                raise FetchError(f"Navigation to {url} timed out", url=url) from e

            if response is None:
                raise FetchError(f"No response for {url}", url=url)

            wait_for_selector = job_payload.get('wait_for_selector')
            if wait_for_selector:
                try:
                    page.wait_for_selector(wait_for_selector, timeout=job_payload['wait_for_timeout_ms'])
                except PlaywrightError as e:
                    # Not fatal, extraction runs against whatever has rendered so far
                    self._log(f"[Worker Warning] Selector '{wait_for_selector}' did not appear: {e}")

            if job_payload['extra_wait_ms']:
                page.wait_for_timeout(job_payload['extra_wait_ms'])

            html = page.content()
            return FetchResponse(
                url=page.url or url,
                status_code=response.status,
                headers={k.lower(): v for k, v in response.headers.items()},
                content=html.encode('utf-8'),
                encoding='utf-8',
            )
        finally:
            context.close()

    def close(self):
        """[Main Thread] Shuts down the Playwright worker thread and browser."""
        if self.worker_thread and self.worker_thread.is_alive():
            shutdown_queue: "queue.Queue[Any]" = queue.Queue(maxsize=1)
            self.job_queue.put(('shutdown', None, shutdown_queue))
            try:
                shutdown_queue.get(timeout=10)
            except queue.Empty:
                self._log("[Warning] Worker did not acknowledge shutdown signal.")
            self.worker_thread.join(timeout=10)
        self._log("PlaywrightFetcher closed.")
