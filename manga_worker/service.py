"""
Main worker service.

Wires configuration, logging, adapters, the orchestrator, the worker pool
and the optional HTTP server, and runs until a shutdown signal drains the
pool.
"""

import argparse
import json
import os
import signal
import sys
import tempfile
import threading
import time
import logging
from pathlib import Path
from typing import Optional, Dict, Any

from .config import WorkerConfig
from .models import UploadedFile, ContainerFormat, ProcessingContext, ProcessingResult
from .adapters.base import FileStorageAdapter, MetadataStoreAdapter, ChapterStatusBridge
from .adapters.local_adapter import LocalFileStorageAdapter
from .adapters.memory_adapter import InMemoryMetadataStore, InMemoryChapterStatusBridge
from .adapters.postgres_adapter import PostgresMetadataStoreAdapter, PostgresChapterStatusBridge
from .adapters.s3_adapter import S3FileStorageAdapter
from .orchestrator import PipelineOrchestrator
from .processor import ArchiveProcessor
from .pool import WorkerPool
from .pipeline.cache import ResultCache
from .pipeline.util import clean_filename
from .logging_setup import setup_logging, log_exception
from .http_server import start_health_server

logger = logging.getLogger("manga_worker")


class WorkerService:
    """Main worker service owning the pool and its collaborators"""

    def __init__(self, config: Optional[WorkerConfig] = None):
        self.config = config or WorkerConfig.from_env()
        self.file_storage: Optional[FileStorageAdapter] = None
        self.metadata_store: Optional[MetadataStoreAdapter] = None
        self.chapter_bridge: Optional[ChapterStatusBridge] = None
        self.orchestrator: Optional[PipelineOrchestrator] = None
        self.pool: Optional[WorkerPool] = None
        self.health_server = None
        self.running = False
        self._shutdown_requested = threading.Event()

    def initialize(self):
        """Initialize worker with adapters based on configuration"""
        try:
            # Setup logging
            setup_logging(self.config.LOG_LEVEL, self.config.LOG_DIR)

            # Validate configuration
            self.config.validate()

            # Initialize adapters
            self._initialize_adapters()

            # Initialize orchestrator and pool
            cache = ResultCache(self.config.CACHE_DIR) if self.config.ENABLE_RESULT_CACHE else None
            processor = ArchiveProcessor(self.config, file_storage=self.file_storage, cache=cache)
            self.orchestrator = PipelineOrchestrator(self.config, self.file_storage, processor)
            self.pool = WorkerPool(self.config, self.orchestrator, self.metadata_store, self.chapter_bridge)

            # Start health server if enabled
            self.health_server = start_health_server(self)

            logger.info("Worker service initialized successfully")

        except Exception as e:
            log_exception(logger, f"Failed to initialize worker service: {e}")
            raise

    def _initialize_adapters(self):
        """Initialize storage, metadata store and chapter bridge adapters"""
        self.file_storage = self._create_file_storage_adapter()
        self.file_storage.connect()

        self.metadata_store = self._create_metadata_store_adapter()
        self.metadata_store.connect()

        self.chapter_bridge = self._create_chapter_bridge()
        self.chapter_bridge.connect()

        logger.info(
            f"Initialized adapters: {self.config.STORAGE_TYPE} storage, "
            f"{self.config.METADATA_STORE_TYPE} metadata store"
        )

    def _create_file_storage_adapter(self) -> FileStorageAdapter:
        """Create file storage adapter based on configuration"""

        if self.config.STORAGE_TYPE == "local":
            config = self.config.STORAGE_CONFIG
            return LocalFileStorageAdapter(
                root=config.get("root", self.config.DATA_DIR),
                thumbnails_dir=self.config.THUMBNAILS_DIR
            )

        elif self.config.STORAGE_TYPE == "s3":
            config = self.config.STORAGE_CONFIG
            return S3FileStorageAdapter(
                bucket=config["bucket"],
                region=config.get("region", "us-east-1"),
                prefix=config.get("prefix", "manga/"),
                spool_max_bytes=config.get("spool_max_bytes", 32 * 1024 * 1024)
            )

        else:
            raise ValueError(f"Unsupported storage type: {self.config.STORAGE_TYPE}")

    def _create_metadata_store_adapter(self) -> MetadataStoreAdapter:
        """Create metadata store adapter based on configuration"""

        if self.config.METADATA_STORE_TYPE == "postgres":
            config = self.config.METADATA_STORE_CONFIG
            return PostgresMetadataStoreAdapter(
                database_url=config["database_url"],
                pool_size=config.get("connection_pool_size", 5),
                timeout=config.get("connection_timeout", 10)
            )

        elif self.config.METADATA_STORE_TYPE == "memory":
            return InMemoryMetadataStore()

        else:
            raise ValueError(f"Unsupported metadata store type: {self.config.METADATA_STORE_TYPE}")

    def _create_chapter_bridge(self) -> ChapterStatusBridge:
        """Chapter bridge follows the metadata store backend"""
        if self.config.METADATA_STORE_TYPE == "postgres":
            config = self.config.METADATA_STORE_CONFIG
            return PostgresChapterStatusBridge(
                database_url=config["database_url"],
                timeout=config.get("connection_timeout", 10)
            )
        return InMemoryChapterStatusBridge()

    def start(self):
        """Start the pool and block until shutdown is requested"""
        if self.running:
            logger.warning("Worker service is already running")
            return

        self.running = True
        self.pool.start()
        logger.info("Worker service started")

        while not self._shutdown_requested.wait(timeout=1.0):
            pass

        logger.info("Shutdown requested")

    def request_shutdown(self):
        """Ask a blocking start() to return"""
        self._shutdown_requested.set()

    def stop(self):
        """Drain the pool and release adapters"""
        if not self.running:
            return

        self.running = False

        if self.pool:
            self.pool.stop()

        # Stop health server
        if self.health_server:
            self.health_server.stop()

        # Close adapters
        if self.file_storage:
            self.file_storage.close()
        if self.metadata_store:
            self.metadata_store.close()
        if self.chapter_bridge:
            self.chapter_bridge.close()

        logger.info("Worker service stopped")

    def get_stats(self) -> Dict[str, Any]:
        """Get worker statistics"""
        stats = {
            'running': self.running,
            'config': {
                'storage_type': self.config.STORAGE_TYPE,
                'metadata_store_type': self.config.METADATA_STORE_TYPE,
                'max_concurrent_workers': self.config.MAX_CONCURRENT_WORKERS,
                'max_attempts': self.config.MAX_ATTEMPTS,
                'thumbnail_sizes': self.config.THUMBNAIL_SIZES
            }
        }

        if self.pool:
            stats['pool'] = self.pool.get_stats()
        if self.orchestrator:
            stats['orchestrator'] = self.orchestrator.get_stats()

        return stats

    def reset_stats(self):
        """Reset worker statistics"""
        if self.orchestrator:
            self.orchestrator.reset_stats()
        logger.info("Worker statistics reset")


def process_local_file(path: str, config: Optional[WorkerConfig] = None) -> ProcessingResult:
    """
    Run a single local archive through the processor without the pool.

    Thumbnails land under THUMBNAILS_DIR/<file id>.
    """
    config = config or WorkerConfig.from_env()
    path = os.path.abspath(path)
    filename = os.path.basename(path)
    file = UploadedFile(
        id=clean_filename(Path(filename).stem),
        original_filename=filename,
        container_format=ContainerFormat.from_filename(filename),
        size_bytes=os.path.getsize(path),
        stored_path=path,
    )

    processor = ArchiveProcessor(config)
    if config.SCRATCH_DIR:
        os.makedirs(config.SCRATCH_DIR, exist_ok=True)
    with tempfile.TemporaryDirectory(prefix="manga-local-", dir=config.SCRATCH_DIR) as scratch:
        context = ProcessingContext(
            file=file,
            source=path,
            scratch_dir=Path(scratch),
            thumbnail_dir=Path(config.THUMBNAILS_DIR) / file.id,
            accepted_extensions=tuple(config.ACCEPTED_IMAGE_EXTENSIONS),
            thumbnail_sizes=tuple(config.THUMBNAIL_SIZES),
            deadline=time.monotonic() + config.ATTEMPT_TIMEOUT_SEC if config.ATTEMPT_TIMEOUT_SEC > 0 else None,
        )
        return processor.process(file, context)


def main(argv=None):
    """Main entry point"""
    parser = argparse.ArgumentParser(description="Manga archive processing worker")
    parser.add_argument("--process", metavar="PATH", help="Process one local archive and print the result as JSON")
    args = parser.parse_args(argv)

    if args.process:
        config = WorkerConfig.from_env()
        setup_logging(config.LOG_LEVEL, None)
        try:
            result = process_local_file(args.process, config)
        except Exception as e:
            log_exception(logger, f"Processing {args.process} failed: {str(e)}")
            sys.exit(1)
        print(json.dumps(result.to_dict(), indent=2, default=str))
        return

    worker = WorkerService()

    def signal_handler(signum, frame):
        """Handle shutdown signals"""
        logger.info(f"Received signal {signum}, shutting down...")
        worker.request_shutdown()

    # Setup signal handlers
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        worker.initialize()
        worker.start()
    except Exception as e:
        log_exception(logger, f"Worker failed to start: {str(e)}")
        sys.exit(1)
    finally:
        worker.stop()


if __name__ == "__main__":
    main()
