"""
Storage layer for the image crawler.
"""

from .index import ImageIndex, ImageRecord
from .asset_store import AssetStore, asset_filename

__all__ = ['ImageIndex', 'ImageRecord', 'AssetStore', 'asset_filename']
