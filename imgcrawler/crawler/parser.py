"""
HTML parser that extracts image references and outbound links.
"""

import logging
from typing import List, Optional
from urllib.parse import urljoin, urlparse, urlunparse
from dataclasses import dataclass, field
from bs4 import BeautifulSoup

from ..storage.index import ImageRecord


CRAWLABLE_SCHEMES = ('http', 'https')


@dataclass
class ExtractedContent:
    """Images and links found on one page."""
    page_url: str
    depth: int
    images: List[ImageRecord] = field(default_factory=list)
    links: List[str] = field(default_factory=list)


def normalize_url(url: str) -> str:
    """Normalize URL by lowercasing the host and removing the fragment."""
    parsed = urlparse(url)
    return urlunparse((
        parsed.scheme.lower(),
        parsed.netloc.lower(),
        parsed.path,
        parsed.params,
        parsed.query,
        ''  # Remove fragment
    ))


def is_valid_url(url: str) -> bool:
    """Check that a URL is an absolute http(s) URL with a host."""
    try:
        parsed = urlparse(url)
        if parsed.scheme.lower() not in CRAWLABLE_SCHEMES:
            return False
        if not parsed.hostname:
            return False
        # .port raises ValueError for a malformed or out-of-range port
        return parsed.port is None or parsed.port > 0
    except ValueError:
        return False


def resolve_url(base_url: str, reference: str) -> Optional[str]:
    """
    Resolve a (possibly relative) reference against a base URL.

    Returns:
        The absolute, normalized URL, or None if it cannot be resolved
        into a crawlable URL
    """
    reference = reference.strip()
    if not reference:
        return None
    try:
        absolute_url = urljoin(base_url, reference)
    except ValueError:
        return None
    if not is_valid_url(absolute_url):
        return None
    return normalize_url(absolute_url)


def is_eligible_link(link: str, page_url: str) -> bool:
    """
    Same-origin policy for link following.

    A link is eligible only when its hostname is exactly the hostname of
    the page it was found on. Malformed links are never eligible.
    """
    try:
        link_host = urlparse(link).hostname
        page_host = urlparse(page_url).hostname
    except ValueError:
        return False
    if not link_host or not page_host:
        return False
    return link_host == page_host


class ContentParser:
    """
    Parses HTML content to extract image references and links.

    Parsing is tolerant: malformed markup produces whatever the parser can
    recover, and a parser failure produces an empty result, never an
    exception.
    """

    def __init__(self, parser_features: str = 'lxml'):
        self.parser_features = parser_features
        self.logger = logging.getLogger(__name__)

    def extract(self, html_content: str, page_url: str, depth: int) -> ExtractedContent:
        """
        Extract images and links from a page.

        Args:
            html_content: Raw HTML content
            page_url: The URL of the page after redirects
            depth: Crawl depth of the page

        Returns:
            ExtractedContent with images in page order and deduplicated links
        """
        extracted = ExtractedContent(page_url=page_url, depth=depth)

        try:
            soup = BeautifulSoup(html_content or '', self.parser_features)
            self._extract_images(soup, extracted)
            self._extract_links(soup, extracted)
        except Exception as e:
            self.logger.error(f"Error parsing content from {page_url}: {e}")
            return ExtractedContent(page_url=page_url, depth=depth)

        self.logger.debug(f"Extracted {len(extracted.images)} images and "
                          f"{len(extracted.links)} links from {page_url} at depth {depth}")
        return extracted

    def _extract_images(self, soup: BeautifulSoup, extracted: ExtractedContent):
        """Extract image records; one record per <img> element."""
        for img in soup.find_all('img', src=True):
            src = img.get('src')
            if not isinstance(src, str):
                continue
            image_url = resolve_url(extracted.page_url, src)
            if image_url is None:
                self.logger.debug(f"Skipping unusable image source {src!r} on {extracted.page_url}")
                continue
            extracted.images.append(
                ImageRecord(url=image_url, page=extracted.page_url, depth=extracted.depth)
            )

    def _extract_links(self, soup: BeautifulSoup, extracted: ExtractedContent):
        """Extract and normalize links, keeping first-seen order."""
        seen = set()

        for link in soup.find_all('a', href=True):
            href = link.get('href')
            if not isinstance(href, str):
                continue
            href = href.strip()
            if not href or href.startswith('#'):
                continue

            absolute_url = resolve_url(extracted.page_url, href)
            if absolute_url is None or absolute_url in seen:
                continue

            seen.add(absolute_url)
            extracted.links.append(absolute_url)

    def get_eligible_links(self, extracted: ExtractedContent) -> List[str]:
        """Get the links of a page that may be followed."""
        return [link for link in extracted.links if is_eligible_link(link, extracted.page_url)]
