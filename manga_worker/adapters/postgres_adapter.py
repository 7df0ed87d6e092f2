"""
Postgres adapter implementations for the metadata store and chapter bridge.

Expects the application's existing tables: ``files`` (one row per uploaded
archive), ``file_pages`` and ``file_thumbnails`` (keyed by file and page,
and by file, page and size) and ``chapters``. Schema management lives with
the application, not the worker.
"""

import json
import logging
from typing import Optional, List

from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from .base import MetadataStoreAdapter, ChapterStatusBridge
from ..models import UploadedFile, ProcessingResult, FileStatus, ContainerFormat, ChapterOutcome
from ..logging_setup import log_exception

logger = logging.getLogger("manga_worker")


def _create_pool(database_url: str, pool_size: int, timeout: int, application_name: str) -> ConnectionPool:
    return ConnectionPool(
        database_url,
        min_size=1,
        max_size=pool_size,
        kwargs={
            "connect_timeout": timeout,
            "application_name": application_name
        }
    )


def _row_to_file(row: dict) -> UploadedFile:
    container_format = row.get('container_format')
    return UploadedFile(
        id=str(row['id']),
        original_filename=row['original_filename'],
        container_format=ContainerFormat(container_format.lower()) if container_format else None,
        size_bytes=row.get('size_bytes'),
        status=FileStatus(row['status']),
        processing_attempts=row.get('processing_attempts') or 0,
        error_message=row.get('error_message'),
        uploaded_at=row.get('uploaded_at'),
        processed_at=row.get('processed_at'),
        stored_path=row.get('stored_path'),
        chapter_id=str(row['chapter_id']) if row.get('chapter_id') else None,
    )


class PostgresMetadataStoreAdapter(MetadataStoreAdapter):
    """Postgres implementation of the metadata store"""

    def __init__(self, database_url: str, pool_size: int = 5, timeout: int = 10):
        self.database_url = database_url
        self.pool_size = pool_size
        self.timeout = timeout
        self.pool = None

    def connect(self):
        """Initialize connection pool"""
        try:
            self.pool = _create_pool(self.database_url, self.pool_size, self.timeout, "manga_worker")
            logger.info("Postgres metadata store connection pool initialized")
        except Exception as e:
            log_exception(logger, f"Failed to connect to Postgres metadata store: {e}")
            raise

    def get_file(self, file_id: str) -> Optional[UploadedFile]:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("""
                    SELECT id, original_filename, container_format, size_bytes, status,
                           processing_attempts, error_message, uploaded_at, processed_at,
                           stored_path, chapter_id
                    FROM files WHERE id = %s
                """, (file_id,))
                row = cur.fetchone()
                return _row_to_file(row) if row else None

    def mark_processing(self, file_id: str) -> int:
        """Set status to processing and increment attempts in one statement"""
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("""
                    UPDATE files
                    SET status = 'processing',
                        processing_attempts = COALESCE(processing_attempts, 0) + 1
                    WHERE id = %s
                    RETURNING processing_attempts
                """, (file_id,))
                row = cur.fetchone()
                conn.commit()
                if not row:
                    raise KeyError(f"Unknown file {file_id}")
                logger.debug(f"File {file_id} marked processing (attempt {row['processing_attempts']})")
                return row['processing_attempts']

    def mark_processed(self, file_id: str, result: ProcessingResult) -> None:
        """Persist pages, thumbnails and metadata idempotently, then set processed"""
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.executemany("""
                    INSERT INTO file_pages (file_id, page_index, filename, path, width, height,
                                            format, is_cover, size_bytes, hash)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (file_id, page_index) DO UPDATE SET
                        filename = EXCLUDED.filename,
                        path = EXCLUDED.path,
                        width = EXCLUDED.width,
                        height = EXCLUDED.height,
                        format = EXCLUDED.format,
                        is_cover = EXCLUDED.is_cover,
                        size_bytes = EXCLUDED.size_bytes,
                        hash = EXCLUDED.hash
                """, [
                    (file_id, page.index, page.filename, page.path, page.width, page.height,
                     page.format, page.is_cover, page.size_bytes, page.hash)
                    for page in result.pages
                ])
                cur.execute(
                    "DELETE FROM file_pages WHERE file_id = %s AND page_index >= %s",
                    (file_id, len(result.pages))
                )

                cur.execute("DELETE FROM file_thumbnails WHERE file_id = %s", (file_id,))
                thumbnails = [
                    (file_id, page_index, size, location)
                    for page_index, sizes in result.thumbnail_paths.items()
                    for size, location in sizes.items()
                ]
                if thumbnails:
                    cur.executemany("""
                        INSERT INTO file_thumbnails (file_id, page_index, size, location)
                        VALUES (%s, %s, %s, %s)
                        ON CONFLICT (file_id, page_index, size) DO UPDATE SET location = EXCLUDED.location
                    """, thumbnails)

                cur.execute("""
                    UPDATE files
                    SET status = 'processed',
                        processed_at = NOW(),
                        error_message = NULL,
                        metadata = %s::jsonb,
                        warnings = %s::jsonb
                    WHERE id = %s
                """, (
                    json.dumps(result.to_dict()['metadata']),
                    json.dumps(result.to_dict()['warnings']),
                    file_id,
                ))
                conn.commit()
                logger.info(f"File {file_id} processed: {len(result.pages)} pages, {len(thumbnails)} thumbnails")

    def mark_error(self, file_id: str, message: str, attempts: int) -> None:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    UPDATE files
                    SET status = 'error',
                        error_message = %s,
                        processing_attempts = GREATEST(COALESCE(processing_attempts, 0), %s)
                    WHERE id = %s
                """, (message, attempts, file_id))
                conn.commit()
                logger.error(f"File {file_id} marked error after {attempts} attempts: {message}")

    def mark_pending(self, file_id: str) -> None:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE files SET status = 'uploaded' WHERE id = %s AND status = 'processing'",
                    (file_id,)
                )
                conn.commit()

    def get_pending_files(self) -> List[str]:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("""
                    SELECT id FROM files
                    WHERE status = 'uploaded'
                    ORDER BY uploaded_at
                """)
                return [str(row['id']) for row in cur.fetchall()]

    def close(self):
        """Close connection pool"""
        if self.pool:
            self.pool.close()
            logger.info("Postgres metadata store connection pool closed")


class PostgresChapterStatusBridge(ChapterStatusBridge):
    """Drives chapters.status from processing start and finish signals"""

    def __init__(self, database_url: str, pool_size: int = 2, timeout: int = 10):
        self.database_url = database_url
        self.pool_size = pool_size
        self.timeout = timeout
        self.pool = None

    def connect(self):
        """Initialize connection pool"""
        try:
            self.pool = _create_pool(self.database_url, self.pool_size, self.timeout, "manga_worker_chapters")
            logger.info("Postgres chapter bridge connection pool initialized")
        except Exception as e:
            log_exception(logger, f"Failed to connect Postgres chapter bridge: {e}")
            raise

    def _set_status(self, chapter_id: str, status: str) -> None:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE chapters SET status = %s, updated_at = NOW() WHERE id = %s",
                    (status, chapter_id)
                )
                conn.commit()
                logger.debug(f"Chapter {chapter_id} status set to {status}")

    def on_processing_started(self, chapter_id: str) -> None:
        self._set_status(chapter_id, "processing")

    def on_processing_finished(self, chapter_id: str, outcome: ChapterOutcome) -> None:
        self._set_status(chapter_id, outcome.value)

    def close(self):
        """Close connection pool"""
        if self.pool:
            self.pool.close()
            logger.info("Postgres chapter bridge connection pool closed")
