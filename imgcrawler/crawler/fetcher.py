"""
Web page fetcher with retries, user-agent rotation, global rate limiting
and a headless-browser fallback for script-rendered pages.
"""

import asyncio
import logging
import random
import re
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional
from dataclasses import dataclass

import aiofiles
import aiofiles.os
import aiohttp
from aiohttp import ClientSession, ClientTimeout, ClientError
from playwright.async_api import (
    Browser,
    Playwright,
    Error as PlaywrightError,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from .rate_limiter import RateLimiter
from ..exceptions import FetchError


@dataclass
class FetchResult:
    """Result of a fetch operation."""
    url: str
    final_url: str
    status_code: int
    content: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    content_type: Optional[str] = None
    encoding: Optional[str] = None
    fetch_time: float = 0.0
    attempts: int = 1
    rendered: bool = False


SCRIPT_TAG_PATTERN = re.compile(r'<script\b', re.IGNORECASE)
EMPTY_MOUNT_PATTERN = re.compile(
    r'<div[^>]*\bid\s*=\s*["\'](?:root|app|__next|__nuxt|svelte)["\'][^>]*>\s*</div>',
    re.IGNORECASE
)
APP_SHELL_MARKERS = [
    '__next_data__',
    'window.__nuxt__',
    'ng-app',
    'data-reactroot',
    'please enable javascript',
    'you need to enable javascript',
    'javascript is required',
]


def needs_rendering(html: Optional[str]) -> bool:
    """
    Decide whether a page's markup needs script execution to be complete.

    Script tags, an empty client-side mount point, or other markers of a
    client-rendered application shell all trigger rendering.
    """
    if not html:
        return False

    if SCRIPT_TAG_PATTERN.search(html) or EMPTY_MOUNT_PATTERN.search(html):
        return True

    html_lower = html.lower()
    return any(marker in html_lower for marker in APP_SHELL_MARKERS)


class PageFetcher(ABC):
    """A strategy that performs one attempt at retrieving a page."""

    name = 'page'

    async def start(self):
        """Acquire any resources the strategy needs."""

    async def close(self):
        """Release the strategy's resources."""

    @abstractmethod
    async def fetch_page(self, url: str, user_agent: str) -> FetchResult:
        """
        Fetch a page once.

        Raises:
            FetchError: If this attempt failed
        """


class HttpPageFetcher(PageFetcher):
    """Plain HTTP strategy built on an aiohttp session."""

    name = 'http'

    TEXT_TYPES = [
        'text/html',
        'text/plain',
        'application/xhtml+xml',
    ]

    def __init__(self, request_timeout: float = 5.0, max_connections: int = 10,
                 max_content_size: int = 10 * 1024 * 1024):
        self.request_timeout = request_timeout
        self.max_connections = max_connections
        self.max_content_size = max_content_size
        self.logger = logging.getLogger(__name__)
        self.session: Optional[ClientSession] = None

    async def start(self):
        """Initialize the HTTP session."""
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=ClientTimeout(total=self.request_timeout),
                connector=aiohttp.TCPConnector(
                    limit=self.max_connections,
                    ttl_dns_cache=300,
                    use_dns_cache=True
                )
            )
            self.logger.debug("HTTP session started")

    async def close(self):
        """Close the HTTP session."""
        if self.session:
            await self.session.close()
            self.session = None
            self.logger.debug("HTTP session closed")

    async def fetch_page(self, url: str, user_agent: str) -> FetchResult:
        await self.start()
        try:
            async with self.session.get(url, headers={'User-Agent': user_agent}) as response:
                if not 200 <= response.status < 300:
                    raise FetchError(url, f"HTTP {response.status}", status_code=response.status)

                content_type = response.headers.get('content-type', '').lower()
                if content_type and not self._is_text_content(content_type):
                    raise FetchError(url, f"Non-HTML content type: {content_type}",
                                     retryable=False, status_code=response.status)

                content = await self._read_content_safely(url, response)
                return FetchResult(
                    url=url,
                    final_url=str(response.url),
                    status_code=response.status,
                    content=content,
                    headers=dict(response.headers),
                    content_type=content_type,
                    encoding=response.charset
                )

        except asyncio.TimeoutError:
            raise FetchError(url, "Request timeout")
        except ClientError as e:
            raise FetchError(url, f"Client error: {e}")

    async def stream_to_file(self, url: str, user_agent: str, destination: Path) -> int:
        """
        Stream a response body to ``destination``.

        The body is written to a temporary file that replaces the destination
        only once complete, so a failed download never leaves a truncated asset.
        Downloads have no total time limit; ``request_timeout`` bounds the
        connect and each read instead.
        """
        await self.start()
        tmp_path = destination.with_name(destination.name + '.part')
        written = 0
        timeout = ClientTimeout(
            total=None,
            sock_connect=self.request_timeout,
            sock_read=self.request_timeout
        )
        try:
            async with self.session.get(url, headers={'User-Agent': user_agent},
                                        timeout=timeout) as response:
                if not 200 <= response.status < 300:
                    raise FetchError(url, f"HTTP {response.status}", status_code=response.status)

                async with aiofiles.open(tmp_path, 'wb') as f:
                    async for chunk in response.content.iter_chunked(65536):
                        written += len(chunk)
                        if written > self.max_content_size:
                            raise FetchError(url, "Asset exceeded size limit", retryable=False)
                        await f.write(chunk)

            await aiofiles.os.replace(tmp_path, destination)
            return written

        except asyncio.TimeoutError:
            raise FetchError(url, "Request timeout")
        except ClientError as e:
            raise FetchError(url, f"Client error: {e}")
        finally:
            if tmp_path.exists():
                await aiofiles.os.remove(tmp_path)

    def _is_text_content(self, content_type: str) -> bool:
        """Check if content type is an HTML-like document."""
        return any(text_type in content_type for text_type in self.TEXT_TYPES)

    async def _read_content_safely(self, url: str, response: aiohttp.ClientResponse) -> str:
        """
        Read response content with size limit.

        Raises:
            FetchError: If the body is larger than ``max_content_size``
        """
        content_length = response.headers.get('content-length')
        if content_length and content_length.isdigit() and int(content_length) > self.max_content_size:
            raise FetchError(url, f"Content too large ({content_length} bytes)", retryable=False)

        # Read content in chunks to respect size limit
        chunks = []
        size = 0
        async for chunk in response.content.iter_chunked(8192):
            size += len(chunk)
            if size > self.max_content_size:
                raise FetchError(url, "Content exceeded size limit during reading", retryable=False)
            chunks.append(chunk)
        content_bytes = b''.join(chunks)

        encoding = response.charset or 'utf-8'
        try:
            return content_bytes.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            for fallback_encoding in ['utf-8', 'cp1252']:
                try:
                    return content_bytes.decode(fallback_encoding)
                except UnicodeDecodeError:
                    continue

            return content_bytes.decode('utf-8', errors='ignore')


class RenderPageFetcher(PageFetcher):
    """Headless Chromium strategy that returns the DOM after scripts have run."""

    name = 'render'

    def __init__(self, render_timeout: float = 30.0, wait_after_load: float = 0.0,
                 headless: bool = True):
        self.render_timeout = render_timeout
        self.wait_after_load = wait_after_load
        self.headless = headless
        self.logger = logging.getLogger(__name__)

        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._browser_lock = asyncio.Lock()

    async def _ensure_browser(self) -> Browser:
        """Launch the browser on first use."""
        async with self._browser_lock:
            if self._browser is None or not self._browser.is_connected():
                if self._playwright is None:
                    self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(headless=self.headless)
                self.logger.info("Browser launched for page rendering")
        return self._browser

    async def close(self):
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    async def fetch_page(self, url: str, user_agent: str) -> FetchResult:
        try:
            browser = await self._ensure_browser()
            context = await browser.new_context(user_agent=user_agent)
            try:
                page = await context.new_page()
                page.set_default_navigation_timeout(self.render_timeout * 1000)
                response = await page.goto(url, wait_until='networkidle')
                status = response.status if response else 200
                if not 200 <= status < 300:
                    raise FetchError(url, f"HTTP {status} while rendering", status_code=status)
                if self.wait_after_load:
                    await page.wait_for_timeout(self.wait_after_load * 1000)
                html = await page.content()
                return FetchResult(
                    url=url,
                    final_url=page.url,
                    status_code=status,
                    content=html,
                    content_type='text/html',
                    rendered=True
                )
            finally:
                await context.close()

        except PlaywrightTimeoutError:
            raise FetchError(url, "Render timeout")
        except PlaywrightError as e:
            raise FetchError(url, f"Render error: {e}")


class WebFetcher:
    """
    Fetches web pages with retries, user-agent rotation and rate limiting.

    Every attempt of every strategy, including asset downloads, passes
    through the shared rate limiter.
    """

    def __init__(self, user_agents: List[str], rate_limiter: Optional[RateLimiter] = None,
                 request_timeout: float = 5.0, retry_attempts: int = 3,
                 render_fallback: bool = True, max_content_size: int = 10 * 1024 * 1024,
                 render_timeout: float = 30.0, render_wait_after_load: float = 0.0,
                 http_fetcher: Optional[HttpPageFetcher] = None,
                 render_fetcher: Optional[PageFetcher] = None):
        if not user_agents:
            raise ValueError("At least one user agent is required")

        self.user_agents = list(user_agents)
        self.rate_limiter = rate_limiter or RateLimiter()
        self.retry_attempts = retry_attempts
        self.render_fallback = render_fallback
        self.logger = logging.getLogger(__name__)

        self.http_fetcher = http_fetcher or HttpPageFetcher(
            request_timeout=request_timeout,
            max_connections=self.rate_limiter.max_concurrent * 2,
            max_content_size=max_content_size
        )
        if render_fetcher is None and render_fallback:
            render_fetcher = RenderPageFetcher(
                render_timeout=render_timeout,
                wait_after_load=render_wait_after_load
            )
        self.render_fetcher = render_fetcher

        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'retries': 0,
            'rendered_pages': 0,
            'total_bytes_downloaded': 0
        }

    @classmethod
    def from_config(cls, crawler_config, rate_limiter: Optional[RateLimiter] = None) -> 'WebFetcher':
        """Build a fetcher from a ``CrawlerConfig``."""
        return cls(
            user_agents=crawler_config.user_agents,
            rate_limiter=rate_limiter or RateLimiter(
                min_interval=crawler_config.min_request_interval,
                max_concurrent=crawler_config.max_concurrent_requests
            ),
            request_timeout=crawler_config.request_timeout,
            retry_attempts=crawler_config.retry_attempts,
            render_fallback=crawler_config.render_fallback,
            max_content_size=crawler_config.max_content_size,
            render_timeout=crawler_config.render_timeout,
            render_wait_after_load=crawler_config.render_wait_after_load
        )

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        await self.http_fetcher.start()
        self.logger.info("WebFetcher started")

    async def close(self):
        await self.http_fetcher.close()
        if self.render_fetcher is not None:
            await self.render_fetcher.close()
        self.logger.info("WebFetcher closed")

    def choose_user_agent(self) -> str:
        return random.choice(self.user_agents)

    async def _with_retry(self, url: str, operation: Callable[[str], Awaitable], label: str):
        """
        Run ``operation(user_agent)`` under the rate limiter, retrying failures.

        Raises:
            FetchError: With the last failure once attempts are exhausted or
                the failure is not retryable
        """
        last_error: Optional[FetchError] = None
        attempt = 0

        for attempt in range(1, self.retry_attempts + 1):
            user_agent = self.choose_user_agent()
            self.stats['total_requests'] += 1
            try:
                async with self.rate_limiter:
                    self.logger.debug(f"{label} {url} (attempt {attempt})")
                    return attempt, await operation(user_agent)
            except FetchError as e:
                last_error = e
                if not e.retryable:
                    break
                if attempt < self.retry_attempts:
                    self.stats['retries'] += 1
                    self.logger.debug(f"Retrying {url} after attempt {attempt}: {e.message}")

        self.stats['failed_requests'] += 1
        raise FetchError(url, last_error.message, attempts=attempt,
                         retryable=False, status_code=last_error.status_code)

    async def fetch(self, url: str) -> FetchResult:
        """
        Fetch a single URL.

        Args:
            url: The URL to fetch

        Returns:
            FetchResult whose ``final_url`` is the URL after redirects

        Raises:
            FetchError: After exhausting attempts on either strategy
        """
        start_time = time.time()

        attempts, result = await self._with_retry(
            url, lambda ua: self.http_fetcher.fetch_page(url, ua), "Fetching"
        )

        if self.render_fallback and self.render_fetcher is not None and needs_rendering(result.content):
            self.logger.info(f"Rendering {result.final_url} in headless browser")
            render_url = result.final_url
            render_attempts, result = await self._with_retry(
                render_url, lambda ua: self.render_fetcher.fetch_page(render_url, ua), "Rendering"
            )
            attempts += render_attempts
            self.stats['rendered_pages'] += 1

        result.url = url
        result.attempts = attempts
        result.fetch_time = time.time() - start_time

        self.stats['successful_requests'] += 1
        if result.content:
            self.stats['total_bytes_downloaded'] += len(result.content.encode('utf-8'))

        self.logger.debug(f"Fetched {url}: {result.status_code} ({len(result.content or '')} chars)")
        return result

    async def download(self, url: str, destination: Path) -> int:
        """
        Stream a binary resource to ``destination``.

        Returns:
            Number of bytes written

        Raises:
            FetchError: After exhausting attempts
        """
        _, size = await self._with_retry(
            url, lambda ua: self.http_fetcher.stream_to_file(url, ua, Path(destination)), "Downloading"
        )
        self.stats['total_bytes_downloaded'] += size
        return size

    def get_stats(self) -> Dict[str, int]:
        """Get fetcher statistics."""
        return self.stats.copy()
