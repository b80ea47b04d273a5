"""
Crawl session that coordinates the frontier, fetcher, parser and storage.
"""

import asyncio
import copy
import logging
import time
from typing import Dict, List, Optional, Any
from dataclasses import dataclass

from .url_frontier import URLFrontier, URLTask, validate_url, visit_key
from .fetcher import WebFetcher, FetchResult
from .parser import ContentParser, ExtractedContent
from .rate_limiter import RateLimiter
from ..exceptions import DownloadError, FetchError, InvalidUrlError, PersistenceError
from ..storage.asset_store import AssetStore
from ..storage.index import ImageIndex
from ..utils.config import Config
from ..utils.logger import get_crawler_logger
from ..utils.monitoring import CrawlerMonitor, MetricsCollector


@dataclass
class CrawlStats:
    """Statistics for a crawl run."""
    start_time: float
    pages_crawled: int = 0
    pages_failed: int = 0
    images_recorded: int = 0
    assets_downloaded: int = 0
    assets_skipped: int = 0
    download_errors: int = 0
    links_queued: int = 0
    errors: int = 0
    end_time: Optional[float] = None

    @property
    def elapsed_time(self) -> float:
        return (self.end_time or time.time()) - self.start_time

    @property
    def pages_per_minute(self) -> float:
        elapsed_minutes = self.elapsed_time / 60
        return self.pages_crawled / elapsed_minutes if elapsed_minutes > 0 else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'pages_crawled': self.pages_crawled,
            'pages_failed': self.pages_failed,
            'images_recorded': self.images_recorded,
            'assets_downloaded': self.assets_downloaded,
            'assets_skipped': self.assets_skipped,
            'download_errors': self.download_errors,
            'links_queued': self.links_queued,
            'errors': self.errors,
            'elapsed_time': self.elapsed_time,
            'pages_per_minute': self.pages_per_minute
        }


class CrawlSession:
    """
    One crawl run: construct, ``start()``, ``run(seed_url)``, ``close()``.

    The session owns all mutable crawl state (frontier, visited set, rate
    limiter, index writer), so independent sessions never share state.
    Per-page failures are contained to their task; only index persistence
    errors abort the run.
    """

    def __init__(self, config: Config,
                 fetcher: Optional[WebFetcher] = None,
                 index: Optional[ImageIndex] = None,
                 asset_store: Optional[AssetStore] = None,
                 monitor: Optional[CrawlerMonitor] = None):
        self.config = config
        self.logger = logging.getLogger(__name__)

        crawler_config = config.crawler
        self.max_depth = crawler_config.max_depth
        self.concurrency = crawler_config.concurrency

        self.frontier = URLFrontier(self.max_depth)
        self.parser = ContentParser()
        self.fetcher = fetcher or WebFetcher.from_config(
            crawler_config,
            RateLimiter(
                min_interval=crawler_config.min_request_interval,
                max_concurrent=crawler_config.max_concurrent_requests
            )
        )
        self.index = index or ImageIndex(config.storage.index_path)
        if asset_store is None and config.storage.download_images:
            asset_store = AssetStore(
                config.storage.assets_path,
                self.fetcher,
                skip_existing=config.storage.skip_existing_assets
            )
        self.asset_store = asset_store
        self.monitor = monitor or CrawlerMonitor(MetricsCollector(
            enable_prometheus=config.monitoring.metrics_enabled,
            prometheus_port=config.monitoring.prometheus_port
        ))

        self.stats = CrawlStats(start_time=time.time())
        self.is_running = False
        self.workers: List[asyncio.Task] = []
        self.active_workers = 0

        self._started = False
        self._stop_event = asyncio.Event()
        self._fatal_error: Optional[BaseException] = None
        self._max_pages: Optional[int] = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        """Initialize crawler components."""
        if self._started:
            return
        await self.fetcher.start()
        self.monitor.metrics.start_server()
        self._started = True
        self.logger.info("Crawl session initialized")

    async def run(self, seed_url: str, max_pages: Optional[int] = None,
                  max_duration: Optional[float] = None) -> CrawlStats:
        """
        Crawl from ``seed_url`` until no task is pending and no worker is busy.

        Args:
            seed_url: Absolute http(s) URL to start from
            max_pages: Stop after this many pages have been processed
            max_duration: Stop after this many seconds

        Returns:
            Final crawl statistics

        Raises:
            InvalidUrlError: If the seed URL is malformed
            PersistenceError: If the image index could not be written
        """
        if self.is_running:
            raise RuntimeError("Crawl session is already running")

        seed = validate_url(seed_url)
        await self.start()

        self.is_running = True
        self.stats = CrawlStats(start_time=time.time())
        self._stop_event.clear()
        self._fatal_error = None
        self._max_pages = max_pages

        self.frontier.submit(seed, 1)
        self.logger.info(f"Starting crawl of {seed} to depth {self.max_depth} "
                         f"with {self.concurrency} workers")

        self.workers = [
            asyncio.create_task(self._worker(f"worker-{i}"))
            for i in range(self.concurrency)
        ]
        stats_task = asyncio.create_task(self._stats_reporter())

        # Idle detection: join() returns once every queued task, including
        # tasks injected by busy workers, has been marked done.
        join_task = asyncio.create_task(self.frontier.join())
        try:
            try:
                await asyncio.wait_for(asyncio.shield(join_task), timeout=max_duration)
            except asyncio.TimeoutError:
                self.logger.info(f"Reached max duration: {max_duration} seconds")
                self.stop()
                await join_task
        finally:
            join_task.cancel()
            stats_task.cancel()
            await self._cleanup_workers()
            await asyncio.gather(stats_task, return_exceptions=True)
            self.stats.end_time = time.time()
            self.is_running = False

        self._log_final_stats()

        if self._fatal_error is not None:
            raise self._fatal_error

        return self.stats

    def stop(self):
        """
        Stop the crawl gracefully.

        Pending tasks are discarded and no new task is claimed; tasks already
        in flight finish, including their index write.
        """
        if not self._stop_event.is_set():
            self.logger.info("Stopping crawler...")
            self._stop_event.set()
        self.frontier.drain()

    async def _worker(self, worker_id: str):
        """
        Worker coroutine that processes URLs from the frontier.
        """
        log = get_crawler_logger(__name__, worker=worker_id)
        log.debug("Worker started")

        while True:
            task = await self.frontier.get()
            try:
                if self._stop_event.is_set():
                    continue
                if not await self.frontier.claim(task):
                    log.debug(f"Already visited, skipping {task.url}")
                    continue

                self.active_workers += 1
                self.monitor.update_active_workers(self.active_workers)
                try:
                    await self._process_url(task, log)
                finally:
                    self.active_workers -= 1
                    self.monitor.update_active_workers(self.active_workers)

                if self._max_pages and self.stats.pages_crawled + self.stats.pages_failed >= self._max_pages:
                    log.info(f"Reached max pages limit: {self._max_pages}")
                    self.stop()

            except PersistenceError as e:
                log.error(f"Aborting crawl, image index is unusable: {e}")
                if self._fatal_error is None:
                    self._fatal_error = e
                self.stop()
            except Exception as e:
                log.error(f"Error processing {task.url}: {e}", exc_info=True)
                self.stats.errors += 1
                self.monitor.record_error('unexpected')
            finally:
                self.frontier.task_done()
                self.monitor.update_queue_size(self.frontier.size())

    async def _process_url(self, url_task: URLTask, log):
        """Run one task through fetch, extract, persist and expand."""
        log.log_url_event(logging.INFO, url_task.url, 'fetching',
                          f"Crawling {url_task.url} at depth {url_task.depth}")

        try:
            fetch_result = await self.fetcher.fetch(url_task.url)
        except FetchError as e:
            log.log_url_event(logging.WARNING, url_task.url, 'failed', str(e))
            self.stats.pages_failed += 1
            self.monitor.record_page_failed()
            self.monitor.record_error('fetch')
            return

        self.stats.pages_crawled += 1
        self.monitor.record_page_crawled(fetch_result.fetch_time)

        page_url = await self._claim_redirect_target(url_task, fetch_result, log)
        if page_url is None:
            return

        extracted = self.parser.extract(fetch_result.content or '', page_url, url_task.depth)

        await self._persist(extracted, log)
        self._expand(extracted, log)

        log.log_url_event(logging.DEBUG, url_task.url, 'done',
                          f"Processed {url_task.url}: {len(extracted.images)} images, "
                          f"{len(extracted.links)} links")

    async def _claim_redirect_target(self, url_task: URLTask, fetch_result: FetchResult,
                                     log) -> Optional[str]:
        """
        Mark the post-redirect URL as visited and return the page URL to record.

        Returns None when another task already processed that page, in
        which case this task records nothing.
        """
        try:
            final_url = validate_url(fetch_result.final_url)
        except InvalidUrlError:
            return url_task.url
        if visit_key(final_url) == visit_key(url_task.url):
            return url_task.url

        log.debug(f"{url_task.url} redirected to {final_url}")
        if not await self.frontier.claim(URLTask(url=final_url, depth=url_task.depth)):
            log.log_url_event(logging.INFO, url_task.url, 'done',
                              f"Redirect target {final_url} was already crawled")
            return None
        return final_url

    async def _persist(self, extracted: ExtractedContent, log):
        """Record the page's images in the index, then download their assets."""
        if not extracted.images:
            return

        recorded = await self.index.record_images(extracted.images)
        self.stats.images_recorded += recorded
        self.monitor.record_images(recorded)

        if self.asset_store is None:
            return

        for image in extracted.images:
            try:
                path = await self.asset_store.download_asset(image.url)
            except DownloadError as e:
                log.warning(str(e))
                self.stats.download_errors += 1
                self.monitor.record_error('download')
                continue

            if path is None:
                self.stats.assets_skipped += 1
                self.monitor.record_asset_skipped()
            else:
                self.stats.assets_downloaded += 1
                self.monitor.record_asset_downloaded()

    def _expand(self, extracted: ExtractedContent, log):
        """Queue eligible links one level deeper."""
        if extracted.depth >= self.max_depth or self._stop_event.is_set():
            return

        queued = 0
        for link in self.parser.get_eligible_links(extracted):
            if self.frontier.submit(link, extracted.depth + 1, parent_url=extracted.page_url):
                queued += 1

        self.stats.links_queued += queued
        if queued:
            log.debug(f"Queued {queued} new URLs from {extracted.page_url}")

    async def _stats_reporter(self):
        """Periodically log crawl statistics."""
        interval = self.config.crawler.stats_interval
        if interval <= 0:
            return
        while True:
            await asyncio.sleep(interval)
            self._log_current_stats()

    def _log_current_stats(self):
        """Log current crawl statistics."""
        self.logger.info(
            f"Crawl Progress: "
            f"Crawled={self.stats.pages_crawled}, "
            f"Failed={self.stats.pages_failed}, "
            f"Images={self.stats.images_recorded}, "
            f"Queued={self.frontier.size()}, "
            f"Active={self.active_workers}, "
            f"Rate={self.stats.pages_per_minute:.1f} pages/min"
        )

    def _log_final_stats(self):
        """Log final crawl statistics."""
        self.logger.info("=== CRAWL COMPLETED ===")
        self.logger.info(f"Pages crawled: {self.stats.pages_crawled}")
        self.logger.info(f"Pages failed: {self.stats.pages_failed}")
        self.logger.info(f"Images recorded: {self.stats.images_recorded}")
        self.logger.info(f"Assets downloaded: {self.stats.assets_downloaded} "
                         f"(skipped {self.stats.assets_skipped}, errors {self.stats.download_errors})")
        self.logger.info(f"Total time: {self.stats.elapsed_time:.2f} seconds")
        self.logger.debug(f"Frontier stats: {self.frontier.get_stats()}")
        self.logger.debug(f"Fetcher stats: {self.fetcher.get_stats()}")
        self.logger.debug(f"Index stats: {self.index.get_stats()}")

    async def _cleanup_workers(self):
        """Cancel and cleanup worker tasks."""
        for worker in self.workers:
            if not worker.done():
                worker.cancel()
        await asyncio.gather(*self.workers, return_exceptions=True)
        self.workers.clear()

    async def close(self):
        """Close all connections and cleanup resources."""
        if self.is_running:
            self.stop()
        if self._started:
            await self.fetcher.close()
            self._started = False
        self.logger.info("Crawl session closed")

    def get_stats(self) -> Dict[str, Any]:
        """Get current crawl statistics."""
        return {
            **self.stats.to_dict(),
            'urls_in_queue': self.frontier.size(),
            'active_workers': self.active_workers,
            'is_running': self.is_running
        }


async def crawl(url: str, max_depth: int, config: Optional[Config] = None, **session_kwargs) -> CrawlStats:
    """Crawl ``url`` to ``max_depth`` with a fresh session."""
    config = copy.deepcopy(config) if config else Config()
    config.crawler.max_depth = max_depth
    config.validate()
    async with CrawlSession(config, **session_kwargs) as session:
        return await session.run(url)
