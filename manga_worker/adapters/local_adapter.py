"""
Local filesystem file storage adapter.

Reads stored archives under a root directory and publishes thumbnails
into a per-file directory under the thumbnails root.
"""

import logging
import os
import shutil
from typing import Optional, BinaryIO

from .base import FileStorageAdapter
from ..errors import StorageUnavailable
from ..pipeline.util import resolve_stored_path, get_thumbnail_dir
from ..pipeline.thumbnails import thumbnail_filename

logger = logging.getLogger("manga_worker")


class LocalFileStorageAdapter(FileStorageAdapter):
    """File storage backed by the local filesystem"""

    def __init__(self, root: str, thumbnails_dir: str):
        self.root = root
        self.thumbnails_dir = thumbnails_dir

    def connect(self) -> None:
        os.makedirs(self.root, exist_ok=True)
        os.makedirs(self.thumbnails_dir, exist_ok=True)
        logger.info(f"Local storage ready: root={self.root}, thumbnails={self.thumbnails_dir}")

    def open_for_read(self, file_id: str, stored_path: Optional[str] = None) -> BinaryIO:
        path = resolve_stored_path(stored_path or str(file_id), self.root)
        try:
            return open(path, "rb")
        except OSError as e:
            raise StorageUnavailable(f"Cannot open stored file {file_id} at {path}: {e}") from e

    def write_thumbnail(self, file_id: str, page_index: int, size: int, local_path: str) -> str:
        target_dir = get_thumbnail_dir(self.thumbnails_dir, file_id)
        ext = os.path.splitext(local_path)[1].lstrip(".") or "webp"
        target = os.path.join(target_dir, thumbnail_filename(page_index, size, ext))
        if os.path.abspath(target) == os.path.abspath(local_path):
            return target

        part = target + ".part"
        try:
            shutil.copyfile(local_path, part)
            os.replace(part, target)
        except OSError as e:
            if os.path.exists(part):
                os.remove(part)
            raise StorageUnavailable(f"Cannot store thumbnail {target}: {e}") from e
        return target
