"""
Exception types raised by the image crawler.
"""

from typing import Optional


class CrawlerError(Exception):
    """Base class for all crawler errors."""
    pass


class InvalidUrlError(CrawlerError):
    """Raised for a seed or discovered URL that cannot be crawled."""

    def __init__(self, url: str, reason: str = "invalid URL"):
        self.url = url
        self.reason = reason
        super().__init__(f"{reason}: {url!r}")


class FetchError(CrawlerError):
    """Raised when a page could not be retrieved after all attempts."""

    def __init__(self, url: str, message: str, attempts: int = 1,
                 retryable: bool = True, status_code: Optional[int] = None):
        self.url = url
        self.message = message
        self.attempts = attempts
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(f"Failed to fetch {url} after {attempts} attempt(s): {message}")


class DownloadError(CrawlerError):
    """Raised when an image asset could not be downloaded."""

    def __init__(self, url: str, message: str):
        self.url = url
        self.message = message
        super().__init__(f"Failed to download {url}: {message}")


class PersistenceError(CrawlerError):
    """Raised when the image index cannot be read or written."""
    pass
