"""
Site Image Crawler

Crawls a website from a seed URL, follows same-host links to a bounded
depth and builds an index of the images it finds, downloading each one
under a content-addressed filename.
"""

__version__ = "1.0.0"
__description__ = "A bounded-depth website crawler that indexes and downloads images"
