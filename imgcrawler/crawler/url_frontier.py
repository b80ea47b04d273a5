"""
URL frontier: the queue of pending crawl tasks and the visited-URL set.
"""

import asyncio
import logging
import time
from typing import Dict, Set, Optional
from dataclasses import dataclass, field
from urllib.parse import urlparse

from .parser import is_valid_url, normalize_url
from ..exceptions import InvalidUrlError


@dataclass
class URLTask:
    """Represents a URL crawling task."""
    url: str
    depth: int
    parent_url: Optional[str] = None
    discovered_time: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        """Convert to dictionary for logging and debugging."""
        return {
            'url': self.url,
            'depth': self.depth,
            'parent_url': self.parent_url,
            'discovered_time': self.discovered_time
        }


class VisitedSet:
    """Set of URLs already claimed for fetching."""

    def __init__(self):
        self._urls: Set[str] = set()
        self._lock = asyncio.Lock()

    async def claim(self, url: str) -> bool:
        """
        Atomically test and insert a URL.

        Returns True if the caller now owns the URL, False if another
        worker claimed it first.
        """
        async with self._lock:
            if url in self._urls:
                return False
            self._urls.add(url)
            return True

    def __contains__(self, url: str) -> bool:
        return url in self._urls

    def __len__(self) -> int:
        return len(self._urls)


def validate_url(url: str) -> str:
    """
    Validate and normalize a URL before it is scheduled.

    Raises:
        InvalidUrlError: If the URL is not an absolute http(s) URL
    """
    if not isinstance(url, str) or not is_valid_url(url.strip()):
        raise InvalidUrlError(str(url))
    return normalize_url(url.strip())


def visit_key(url: str) -> str:
    """
    Identity of a normalized URL for dedup purposes.

    An empty path and "/" address the same resource, so
    ``https://example.com`` and ``https://example.com/`` share one key.
    """
    parsed = urlparse(url)
    if parsed.path:
        return url
    return parsed._replace(path='/').geturl()


class URLFrontier:
    """
    Manages URLs to be crawled.

    Tasks beyond ``max_depth`` and URLs that are already visited or already
    waiting are dropped at submission time. The visited check is repeated
    atomically by ``claim()`` right before dispatch, which closes the race
    between two pages linking to the same URL concurrently.
    """

    def __init__(self, max_depth: int, visited: Optional[VisitedSet] = None):
        if max_depth < 1:
            raise ValueError("max_depth must be at least 1")

        self.max_depth = max_depth
        self.visited = visited or VisitedSet()
        self.logger = logging.getLogger(__name__)

        self._queue: asyncio.Queue = asyncio.Queue()
        self._queued: Set[str] = set()

        self.stats = {
            'submitted': 0,
            'dropped_invalid': 0,
            'dropped_depth': 0,
            'dropped_duplicate': 0,
            'claimed': 0
        }

    def submit(self, url: str, depth: int, parent_url: Optional[str] = None) -> bool:
        """
        Add a URL to the frontier.
        Returns True if a new task was queued.
        """
        try:
            normalized = validate_url(url)
        except InvalidUrlError as e:
            self.stats['dropped_invalid'] += 1
            self.logger.warning(f"Dropping URL from {parent_url or 'seed'}: {e}")
            return False

        if depth < 1:
            raise ValueError(f"depth must be at least 1, got {depth}")

        if depth > self.max_depth:
            self.stats['dropped_depth'] += 1
            self.logger.debug(f"Skipping URL beyond max depth: {normalized}")
            return False

        key = visit_key(normalized)
        if key in self.visited or key in self._queued:
            self.stats['dropped_duplicate'] += 1
            return False

        task = URLTask(url=normalized, depth=depth, parent_url=parent_url)
        self._queued.add(key)
        self._queue.put_nowait(task)
        self.stats['submitted'] += 1
        self.logger.debug(f"Queued task: {task.to_dict()}")
        return True

    async def get(self) -> URLTask:
        """Wait for the next pending task."""
        task = await self._queue.get()
        self._queued.discard(visit_key(task.url))
        return task

    async def claim(self, task: URLTask) -> bool:
        """Claim a task's URL for fetching; False if it was already visited."""
        claimed = await self.visited.claim(visit_key(task.url))
        if claimed:
            self.stats['claimed'] += 1
        return claimed

    def task_done(self):
        """Mark a task returned by ``get()`` as finished."""
        self._queue.task_done()

    async def join(self):
        """Wait until every queued task has been marked done."""
        await self._queue.join()

    def drain(self) -> int:
        """Discard all pending tasks. Returns the number discarded."""
        discarded = 0
        while True:
            try:
                task = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._queued.discard(visit_key(task.url))
            self._queue.task_done()
            discarded += 1
        if discarded:
            self.logger.info(f"Discarded {discarded} pending URLs")
        return discarded

    def size(self) -> int:
        return self._queue.qsize()

    def is_empty(self) -> bool:
        """Check if the frontier is empty."""
        return self._queue.empty()

    def get_stats(self) -> Dict[str, int]:
        """Get frontier statistics."""
        return {
            **self.stats,
            'total_queued': self.size(),
            'total_visited': len(self.visited)
        }
