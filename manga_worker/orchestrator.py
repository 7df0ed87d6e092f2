"""
Attempt orchestration and execution management.

Runs exactly one processing attempt per call: opens the stored bytes,
builds a fresh ProcessingContext with its own scratch directory and
deadline, runs the ArchiveProcessor, and releases scratch and source
handles before returning. Retry decisions belong to the worker pool.
"""

import os
import tempfile
import threading
import time
import logging
from pathlib import Path
from typing import Optional, Dict, Any
from datetime import datetime

from .models import UploadedFile, ProcessingContext, ProcessingResult
from .adapters.base import FileStorageAdapter
from .processor import ArchiveProcessor
from .config import WorkerConfig
from .errors import ProcessingError
from .pipeline.util import clean_filename

logger = logging.getLogger("manga_worker")


class PipelineOrchestrator:
    """Manages one attempt at a time per call and keeps run statistics"""

    def __init__(self, config: WorkerConfig, file_storage: FileStorageAdapter,
                 processor: Optional[ArchiveProcessor] = None):
        self.config = config
        self.file_storage = file_storage
        self.processor = processor or ArchiveProcessor(config, file_storage=file_storage)
        self._stats_lock = threading.Lock()
        self.stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> Dict[str, Any]:
        return {
            'attempts_succeeded': 0,
            'attempts_failed': 0,
            'total_processing_time': 0.0,
            'errors_by_code': {},
            'start_time': datetime.now()
        }

    def execute_attempt(self, file: UploadedFile,
                        cancel_event: Optional[threading.Event] = None) -> ProcessingResult:
        """
        Execute one processing attempt for a file.

        Args:
            file: File record to process
            cancel_event: Set by the pool to stop the attempt at the next checkpoint

        Returns:
            ProcessingResult of the successful attempt

        Raises:
            ProcessingError: Attempt-level failure; unknown exceptions propagate unchanged
        """
        start_time = time.time()
        deadline = (
            time.monotonic() + self.config.ATTEMPT_TIMEOUT_SEC
            if self.config.ATTEMPT_TIMEOUT_SEC and self.config.ATTEMPT_TIMEOUT_SEC > 0 else None
        )

        scratch_root = self.config.SCRATCH_DIR
        if scratch_root:
            os.makedirs(scratch_root, exist_ok=True)

        try:
            logger.info(f"Executing attempt for file {file.id} (attempt {file.processing_attempts})")
            with tempfile.TemporaryDirectory(prefix=f"manga-{clean_filename(str(file.id))}-",
                                             dir=scratch_root) as scratch:
                source = self.file_storage.open_for_read(file.id, file.stored_path)
                try:
                    context = ProcessingContext(
                        file=file,
                        source=source,
                        scratch_dir=Path(scratch),
                        thumbnail_dir=Path(scratch) / "thumbnails",
                        accepted_extensions=tuple(self.config.ACCEPTED_IMAGE_EXTENSIONS),
                        thumbnail_sizes=tuple(self.config.THUMBNAIL_SIZES),
                        deadline=deadline,
                        cancel_event=cancel_event,
                    )
                    result = self.processor.process(file, context)
                finally:
                    source.close()

        except Exception as e:
            code = e.code if isinstance(e, ProcessingError) else type(e).__name__
            with self._stats_lock:
                self.stats['attempts_failed'] += 1
                self.stats['errors_by_code'][code] = self.stats['errors_by_code'].get(code, 0) + 1
            logger.warning(f"Attempt for file {file.id} failed with {code}: {e}")
            raise

        processing_time = time.time() - start_time
        with self._stats_lock:
            self.stats['attempts_succeeded'] += 1
            self.stats['total_processing_time'] += processing_time

        logger.info(f"Attempt for file {file.id} completed in {processing_time:.2f}s")
        return result

    def get_stats(self) -> Dict[str, Any]:
        """Get orchestrator statistics"""
        with self._stats_lock:
            stats = dict(self.stats)
            stats['errors_by_code'] = dict(self.stats['errors_by_code'])

        uptime = (datetime.now() - stats['start_time']).total_seconds()
        finished = stats['attempts_succeeded'] + stats['attempts_failed']
        avg_processing_time = (
            stats['total_processing_time'] / stats['attempts_succeeded']
            if stats['attempts_succeeded'] > 0 else 0
        )

        return {
            'attempts_succeeded': stats['attempts_succeeded'],
            'attempts_failed': stats['attempts_failed'],
            'errors_by_code': stats['errors_by_code'],
            'total_processing_time': stats['total_processing_time'],
            'average_processing_time': avg_processing_time,
            'uptime_seconds': uptime,
            'success_rate': stats['attempts_succeeded'] / finished if finished > 0 else 0
        }

    def reset_stats(self) -> None:
        """Reset orchestrator statistics"""
        with self._stats_lock:
            self.stats = self._empty_stats()
        logger.info("Orchestrator statistics reset")
