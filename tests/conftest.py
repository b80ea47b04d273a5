import asyncio
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple, Union

import pytest

from imgcrawler.crawler.fetcher import FetchResult
from imgcrawler.exceptions import FetchError
from imgcrawler.utils.config import Config


SEED_HTML = """
<!DOCTYPE html>
<html lang="en">
<head><title>Mock Page</title></head>
<body>
    <img src="https://example.com/image1.jpg" alt="Image 1">
    <img src="/image2.jpg" alt="Image 2">
    <a href="/page2">Page 2</a>
</body>
</html>
"""

PAGE2_HTML = """
<!DOCTYPE html>
<html lang="en">
<head><title>Mock Page 2</title></head>
<body>
    <img src="https://example.com/image3.jpg" alt="Image 3">
</body>
</html>
"""

Page = Union[str, Tuple[str, str], Exception]


class FakeFetcher:
    """
    Stands in for WebFetcher in crawl session tests.

    ``pages`` maps a URL to its HTML, to ``(final_url, html)`` for a
    redirect, or to an exception to raise. Unknown URLs fail with HTTP 404.
    """

    def __init__(self, pages: Dict[str, Page], failing_downloads: Optional[Set[str]] = None,
                 delay: float = 0.0):
        self.pages = pages
        self.failing_downloads = failing_downloads or set()
        self.delay = delay
        self.fetched: List[str] = []
        self.downloaded: List[str] = []
        self.started = False
        self.closed = False

    async def start(self):
        self.started = True

    async def close(self):
        self.closed = True

    async def fetch(self, url: str) -> FetchResult:
        self.fetched.append(url)
        await asyncio.sleep(self.delay)
        page = self.pages.get(url)
        if page is None:
            raise FetchError(url, "HTTP 404", attempts=3, retryable=False, status_code=404)
        if isinstance(page, Exception):
            raise page
        if isinstance(page, tuple):
            final_url, html = page
        else:
            final_url, html = url, page
        return FetchResult(url=url, final_url=final_url, status_code=200, content=html)

    async def download(self, url: str, destination: Path) -> int:
        self.downloaded.append(url)
        await asyncio.sleep(0)
        if url in self.failing_downloads:
            raise FetchError(url, "HTTP 500", attempts=3, retryable=False, status_code=500)
        data = f"image bytes for {url}".encode('utf-8')
        Path(destination).write_bytes(data)
        return len(data)

    def get_stats(self):
        return {'fetched': len(self.fetched), 'downloaded': len(self.downloaded)}


@pytest.fixture
def make_config(tmp_path):
    """Build a Config rooted in a temporary directory."""
    def _make(max_depth: int = 2, concurrency: int = 1, download_images: bool = True) -> Config:
        config = Config()
        config.crawler.max_depth = max_depth
        config.crawler.concurrency = concurrency
        config.crawler.min_request_interval = 0
        config.crawler.render_fallback = False
        config.crawler.stats_interval = 0
        config.storage.output_dir = str(tmp_path / 'images')
        config.storage.download_images = download_images
        config.logging.file = str(tmp_path / 'logs' / 'crawler.log')
        config.validate()
        return config
    return _make


@pytest.fixture
def example_site():
    """Fake fetcher serving the two-page example.com site."""
    return FakeFetcher({
        'https://example.com': SEED_HTML,
        'https://example.com/page2': PAGE2_HTML,
    })
