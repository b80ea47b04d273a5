"""
Durable JSON index of the images discovered during a crawl.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Dict, Any, Iterable

import aiofiles
import aiofiles.os

from ..exceptions import PersistenceError


@dataclass(frozen=True)
class ImageRecord:
    """An image reference found on a crawled page."""
    url: str
    page: str
    depth: int

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            'url': self.url,
            'page': self.page,
            'depth': self.depth
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ImageRecord':
        """Create ImageRecord from dictionary."""
        return cls(url=data['url'], page=data['page'], depth=int(data['depth']))


class ImageIndex:
    """
    Append-only image index stored as ``{"images": [...]}``.

    Every append is a read-modify-write of the whole file. All writers go
    through one lock, so concurrent workers never drop each other's
    records. The file is replaced atomically, so a reader never sees a
    partially written index.
    """

    def __init__(self, index_path: Path):
        self.index_path = Path(index_path)
        self.logger = logging.getLogger(__name__)
        self._write_lock = asyncio.Lock()
        self.stats = {
            'batches_written': 0,
            'records_written': 0
        }

    async def _read(self) -> Dict[str, Any]:
        if not await aiofiles.os.path.exists(self.index_path):
            return {'images': []}

        try:
            async with aiofiles.open(self.index_path, 'r', encoding='utf-8') as f:
                raw = await f.read()
        except OSError as e:
            raise PersistenceError(f"Cannot read index {self.index_path}: {e}") from e

        if not raw.strip():
            return {'images': []}

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Index {self.index_path} is not valid JSON: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get('images'), list):
            raise PersistenceError(f"Index {self.index_path} has no 'images' list")

        return data

    async def _write(self, data: Dict[str, Any]):
        tmp_path = self.index_path.with_name(self.index_path.name + '.tmp')
        try:
            self.index_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f:
                await f.write(json.dumps(data, ensure_ascii=False, indent=2))
                await f.write('\n')
            await aiofiles.os.replace(tmp_path, self.index_path)
        except OSError as e:
            raise PersistenceError(f"Cannot write index {self.index_path}: {e}") from e

    async def record_images(self, images: Iterable[ImageRecord]) -> int:
        """
        Append a batch of image records to the index.

        Args:
            images: Records in page discovery order

        Returns:
            Number of records appended

        Raises:
            PersistenceError: If the index cannot be read or written
        """
        batch = [image.to_dict() for image in images]
        if not batch:
            return 0

        async with self._write_lock:
            data = await self._read()
            data['images'].extend(batch)
            await self._write(data)

        self.stats['batches_written'] += 1
        self.stats['records_written'] += len(batch)
        self.logger.debug(f"Recorded {len(batch)} images in {self.index_path}")
        return len(batch)

    async def load(self) -> List[ImageRecord]:
        """Load every record currently stored in the index."""
        async with self._write_lock:
            data = await self._read()
        try:
            return [ImageRecord.from_dict(item) for item in data['images']]
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceError(f"Malformed record in {self.index_path}: {e}") from e

    async def reset(self):
        """Start a new, empty index."""
        async with self._write_lock:
            await self._write({'images': []})
        self.logger.info(f"Reset image index at {self.index_path}")

    def get_stats(self) -> Dict[str, int]:
        return self.stats.copy()
