"""
Manga archive worker.

Background processing for uploaded comic/manga archives: page extraction,
cover selection, thumbnails and metadata, with retrying worker threads.
"""

__version__ = "0.1.0"
