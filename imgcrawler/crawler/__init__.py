"""
Web crawler core components.
"""

from .url_frontier import URLFrontier, URLTask, VisitedSet
from .rate_limiter import RateLimiter
from .fetcher import WebFetcher, FetchResult, PageFetcher, HttpPageFetcher, RenderPageFetcher, needs_rendering
from .parser import ContentParser, ExtractedContent, is_eligible_link, resolve_url
from .scheduler import CrawlSession, CrawlStats, crawl

__all__ = [
    'URLFrontier', 'URLTask', 'VisitedSet',
    'RateLimiter',
    'WebFetcher', 'FetchResult', 'PageFetcher', 'HttpPageFetcher', 'RenderPageFetcher',
    'needs_rendering',
    'ContentParser', 'ExtractedContent', 'is_eligible_link', 'resolve_url',
    'CrawlSession', 'CrawlStats', 'crawl'
]
