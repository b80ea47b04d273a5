"""
Content-addressed storage for downloaded image assets.
"""

import hashlib
import logging
from pathlib import Path, PurePosixPath
from typing import Dict, Optional, Set
from urllib.parse import urlparse, unquote

from ..exceptions import DownloadError, FetchError


def asset_filename(url: str) -> str:
    """
    Deterministic filename for an image URL.

    The name is the SHA-256 hex digest of the URL followed by the URL's
    path extension (with its leading dot), or no extension if it has none.
    """
    url_hash = hashlib.sha256(url.encode('utf-8')).hexdigest()
    path = unquote(urlparse(url).path)
    suffix = PurePosixPath(path).suffix
    # Keep only sane extensions; anything else would end up in the filename verbatim
    if not suffix[1:].isalnum():
        suffix = ''
    return f"{url_hash}{suffix}"


class AssetStore:
    """
    Downloads image assets into a directory under content-addressed names.

    Policy: a URL whose target file already exists is not downloaded again,
    and the same URL is never downloaded by two workers at once. A failed
    download releases the URL so that a later occurrence can retry it.
    """

    def __init__(self, images_dir: Path, fetcher, skip_existing: bool = True):
        self.images_dir = Path(images_dir)
        self.fetcher = fetcher
        self.skip_existing = skip_existing
        self.logger = logging.getLogger(__name__)

        self._claimed: Set[str] = set()
        self.stats = {
            'downloaded': 0,
            'skipped': 0,
            'failed': 0,
            'bytes_written': 0
        }

    def path_for(self, url: str) -> Path:
        return self.images_dir / asset_filename(url)

    async def download_asset(self, url: str) -> Optional[Path]:
        """
        Download an image to its content-addressed path.

        Returns:
            The written path, or None if the download was skipped as a duplicate

        Raises:
            DownloadError: If the asset could not be retrieved or written
        """
        destination = self.path_for(url)

        if self.skip_existing and (url in self._claimed or destination.exists()):
            self.stats['skipped'] += 1
            self.logger.debug(f"Skipping duplicate asset: {url}")
            return None

        self._claimed.add(url)
        try:
            self.images_dir.mkdir(parents=True, exist_ok=True)
            size = await self.fetcher.download(url, destination)
        except FetchError as e:
            self._claimed.discard(url)
            self.stats['failed'] += 1
            raise DownloadError(url, e.message) from e
        except OSError as e:
            self._claimed.discard(url)
            self.stats['failed'] += 1
            raise DownloadError(url, str(e)) from e

        self.stats['downloaded'] += 1
        self.stats['bytes_written'] += size
        self.logger.debug(f"Downloaded {url} -> {destination.name} ({size} bytes)")
        return destination

    def get_stats(self) -> Dict[str, int]:
        return self.stats.copy()
