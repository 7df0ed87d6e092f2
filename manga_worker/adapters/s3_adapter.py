"""
AWS S3 adapter for file storage.

Reads stored archives from S3 and publishes thumbnails back to the bucket.
"""

import os
import tempfile
import boto3
import logging
from typing import Optional, BinaryIO
from botocore.exceptions import ClientError, BotoCoreError

from .base import FileStorageAdapter
from ..errors import StorageUnavailable

logger = logging.getLogger("manga_worker")

CONTENT_TYPES = {
    "webp": "image/webp",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
}


class S3FileStorageAdapter(FileStorageAdapter):
    """AWS S3 implementation of file storage adapter"""

    def __init__(self, bucket: str, region: str = "us-east-1", prefix: str = "manga/",
                 spool_max_bytes: int = 32 * 1024 * 1024):
        self.bucket = bucket
        self.region = region
        self.prefix = prefix
        self.spool_max_bytes = spool_max_bytes
        self.s3 = None

    def connect(self):
        """Initialize S3 client"""
        try:
            self.s3 = boto3.client('s3', region_name=self.region)
            logger.info(f"S3 storage connected to bucket: {self.bucket}")
        except Exception as e:
            logger.error(f"Failed to connect to S3: {e}")
            raise

    def _archive_key(self, file_id: str, stored_path: Optional[str]) -> str:
        if stored_path:
            return stored_path.lstrip("/")
        return f"{self.prefix}uploads/{file_id}"

    def open_for_read(self, file_id: str, stored_path: Optional[str] = None) -> BinaryIO:
        """Download the archive into a spooled temporary file"""
        key = self._archive_key(file_id, stored_path)
        spool = tempfile.SpooledTemporaryFile(max_size=self.spool_max_bytes)
        try:
            self.s3.download_fileobj(self.bucket, key, spool)
        except (ClientError, BotoCoreError) as e:
            spool.close()
            logger.error(f"Error downloading s3://{self.bucket}/{key} for file {file_id}: {e}")
            raise StorageUnavailable(f"Cannot read s3://{self.bucket}/{key}: {e}") from e
        spool.seek(0)
        logger.debug(f"Downloaded s3://{self.bucket}/{key} for file {file_id}")
        return spool

    def write_thumbnail(self, file_id: str, page_index: int, size: int, local_path: str) -> str:
        """Upload a thumbnail under the file's thumbnail prefix"""
        key = f"{self.prefix}thumbnails/{file_id}/{os.path.basename(local_path)}"
        ext = os.path.splitext(local_path)[1].lstrip(".").lower()
        try:
            self.s3.upload_file(
                local_path,
                self.bucket,
                key,
                ExtraArgs={'ContentType': CONTENT_TYPES.get(ext, 'application/octet-stream')}
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error storing thumbnail {key}: {e}")
            raise StorageUnavailable(f"Cannot store thumbnail s3://{self.bucket}/{key}: {e}") from e
        return f"s3://{self.bucket}/{key}"

    def close(self):
        """Close S3 connection"""
        self.s3 = None
        logger.info("S3 storage connection closed")
