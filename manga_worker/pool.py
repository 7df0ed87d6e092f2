"""
Background worker pool.

Owns the work queue of file ids and a fixed set of long-lived worker
threads. All queue and per-file state transitions happen under a single
Condition; persistence for a file id happens outside the lock while that
id is IN_PROGRESS, which only one worker can hold at a time.

State machine per file id:
    queued -> in_progress -> succeeded
                          -> retry_wait -> queued
                          -> failed
"""

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Optional, Dict, Any, List, Tuple, Deque

from .config import WorkerConfig
from .models import FileStatus, FileStatusSnapshot, QueueState, ChapterOutcome, UploadedFile
from .errors import ProcessingCancelled, is_retryable
from .adapters.base import MetadataStoreAdapter, ChapterStatusBridge
from .orchestrator import PipelineOrchestrator
from .logging_setup import log_exception

logger = logging.getLogger("manga_worker")

ACTIVE_STATES = (QueueState.QUEUED, QueueState.IN_PROGRESS, QueueState.RETRY_WAIT)


class WorkerPool:
    """Bounded pool dispatching queued file ids to the orchestrator"""

    def __init__(self, config: WorkerConfig, orchestrator: PipelineOrchestrator,
                 metadata_store: MetadataStoreAdapter,
                 chapter_bridge: Optional[ChapterStatusBridge] = None):
        self.config = config
        self.orchestrator = orchestrator
        self.metadata_store = metadata_store
        self.chapter_bridge = chapter_bridge

        self._cond = threading.Condition()
        self._ready: Deque[str] = deque()
        self._delayed: List[Tuple[float, int, str]] = []
        self._sequence = itertools.count()
        self._states: Dict[str, QueueState] = {}
        self._round_attempts: Dict[str, int] = {}
        self._last_error: Dict[str, str] = {}
        self._threads: List[threading.Thread] = []
        self._in_flight = 0
        self._running = False
        self._draining = False
        self._cancel_event = threading.Event()
        self.stats = {
            'succeeded': 0,
            'failed': 0,
            'retries': 0,
            'cancelled': 0,
            'max_in_flight': 0,
        }

    # -- external surface -------------------------------------------------

    def enqueue(self, file_id: str) -> bool:
        """
        Queue a file id for processing.

        Args:
            file_id: ID of the uploaded file

        Returns:
            True if the id was queued, False if it was already queued,
            waiting for a retry, in flight, or the pool is draining
        """
        return self._enqueue(str(file_id), 0)

    def _enqueue(self, file_id: str, prior_attempts: int) -> bool:
        with self._cond:
            if self._draining:
                logger.warning(f"Pool is draining; not queuing file {file_id}")
                return False
            state = self._states.get(file_id)
            if state in ACTIVE_STATES:
                logger.debug(f"File {file_id} already {state.value}; enqueue ignored")
                return False

            # A fresh round after a terminal outcome, or a first sighting
            self._round_attempts[file_id] = prior_attempts
            self._last_error.pop(file_id, None)
            self._states[file_id] = QueueState.QUEUED
            self._ready.append(file_id)
            self._cond.notify()
        logger.info(f"Queued file {file_id}")
        return True

    def get_status(self, file_id: str) -> Optional[FileStatusSnapshot]:
        """
        Read-only snapshot merging pool state with the stored record.

        Returns:
            FileStatusSnapshot, or None if neither the pool nor the store knows the id
        """
        file_id = str(file_id)
        record = self.metadata_store.get_file(file_id)
        with self._cond:
            state = self._states.get(file_id)
            last_error = self._last_error.get(file_id)

        if record is None and state is None:
            return None

        return FileStatusSnapshot(
            file_id=file_id,
            status=record.status if record else FileStatus.UPLOADED,
            attempts=record.processing_attempts if record else 0,
            error_message=(record.error_message if record and record.error_message else last_error),
            queue_state=state,
        )

    def start(self) -> None:
        """Seed the queue from the metadata store and start the worker threads"""
        with self._cond:
            if self._running:
                logger.warning("Worker pool is already running")
                return
            self._running = True
            self._draining = False
            self._cancel_event.clear()

        seeded = 0
        for file_id in self.metadata_store.get_pending_files():
            # Attempts made before a restart count against this round; one is always left
            record = self.metadata_store.get_file(file_id)
            prior = min(record.processing_attempts, self.config.MAX_ATTEMPTS - 1) if record else 0
            if self._enqueue(str(file_id), prior):
                seeded += 1
        logger.info(f"Seeded {seeded} pending files from the metadata store")

        for i in range(self.config.MAX_CONCURRENT_WORKERS):
            thread = threading.Thread(target=self._worker_loop, name=f"manga-worker-{i}", daemon=True)
            thread.start()
            self._threads.append(thread)

        logger.info(f"Worker pool started with {self.config.MAX_CONCURRENT_WORKERS} workers")

    def stop(self, grace_sec: Optional[float] = None) -> None:
        """
        Drain the pool.

        Queued and retry-waiting items are dropped without dispatch. In-flight
        attempts get ``grace_sec`` to finish; after that the cancel event asks
        them to stop at their next page checkpoint.
        """
        grace_sec = self.config.SHUTDOWN_GRACE_SEC if grace_sec is None else grace_sec

        with self._cond:
            if not self._running:
                return
            self._draining = True
            dropped = list(self._ready) + [file_id for _, _, file_id in self._delayed]
            self._ready.clear()
            self._delayed.clear()
            for file_id in dropped:
                self._states.pop(file_id, None)
            self._cond.notify_all()

            logger.info(f"Draining pool: {self._in_flight} in flight, {len(dropped)} queued items dropped")

            grace_deadline = time.monotonic() + grace_sec
            while self._in_flight > 0:
                remaining = grace_deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._cond.wait(remaining)

            if self._in_flight > 0:
                logger.warning(f"Grace period elapsed; cancelling {self._in_flight} in-flight attempts")
                self._cancel_event.set()

        for thread in self._threads:
            thread.join(timeout=max(grace_sec, 5.0))
            if thread.is_alive():
                logger.error(f"Worker thread {thread.name} did not stop")

        with self._cond:
            self._threads = []
            self._running = False
        logger.info("Worker pool stopped")

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until nothing is queued, waiting or in flight"""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._ready or self._delayed or self._in_flight:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                # Retry timers are not notified, so poll at a short interval
                self._cond.wait(0.05 if remaining is None else min(remaining, 0.05))
            return True

    def get_stats(self) -> Dict[str, Any]:
        """Get pool statistics"""
        with self._cond:
            return {
                'running': self._running,
                'draining': self._draining,
                'queue_depth': len(self._ready),
                'retry_waiting': len(self._delayed),
                'in_flight': self._in_flight,
                'workers': len(self._threads),
                **self.stats,
            }

    # -- worker side ------------------------------------------------------

    def _next_ready_locked(self) -> Optional[str]:
        """Pop the next dispatchable id, or None once draining. Caller holds the lock."""
        while True:
            if self._draining:
                return None
            now = time.monotonic()
            while self._delayed and self._delayed[0][0] <= now:
                _, _, file_id = heapq.heappop(self._delayed)
                self._states[file_id] = QueueState.QUEUED
                self._ready.append(file_id)
            if self._ready:
                return self._ready.popleft()
            timeout = max(0.0, self._delayed[0][0] - now) if self._delayed else None
            self._cond.wait(timeout)

    def _worker_loop(self) -> None:
        while True:
            with self._cond:
                file_id = self._next_ready_locked()
                if file_id is None:
                    return
                self._states[file_id] = QueueState.IN_PROGRESS
                self._round_attempts[file_id] = self._round_attempts.get(file_id, 0) + 1
                round_attempt = self._round_attempts[file_id]
                self._in_flight += 1
                self.stats['max_in_flight'] = max(self.stats['max_in_flight'], self._in_flight)

            try:
                self._run_attempt(file_id, round_attempt)
            except Exception as e:
                log_exception(logger, f"Unexpected error handling file {file_id}: {e}")
                self._recover(file_id, round_attempt, e)
            finally:
                with self._cond:
                    self._in_flight -= 1
                    self._cond.notify_all()

    def _run_attempt(self, file_id: str, round_attempt: int) -> None:
        file: Optional[UploadedFile] = None
        attempts = 0
        try:
            file = self.metadata_store.get_file(file_id)
            if file is None:
                logger.error(f"File {file_id} not found in metadata store")
                self._set_terminal(file_id, QueueState.FAILED, "File not found")
                return
            if file.status == FileStatus.DELETED:
                logger.info(f"File {file_id} was deleted; skipping")
                self._set_terminal(file_id, QueueState.FAILED, "File deleted")
                return

            attempts = file.processing_attempts
            attempts = self.metadata_store.mark_processing(file_id)
            file.processing_attempts = attempts
            file.status = FileStatus.PROCESSING
            self._notify_chapter_started(file)

            logger.info(
                f"Processing file {file_id}: attempt {round_attempt}/{self.config.MAX_ATTEMPTS} "
                f"(total attempts {attempts})"
            )
            result = self.orchestrator.execute_attempt(file, self._cancel_event)
            self.metadata_store.mark_processed(file_id, result)

        except ProcessingCancelled as e:
            self._release_cancelled(file_id, e)
            return
        except Exception as e:
            self._handle_failure(file_id, file, attempts, round_attempt, e)
            return

        self._set_terminal(file_id, QueueState.SUCCEEDED)
        self._notify_chapter_finished(file, ChapterOutcome.READY)
        logger.info(f"File {file_id} processed: {len(result.pages)} pages, {len(result.warnings)} warnings")

    def _handle_failure(self, file_id: str, file: Optional[UploadedFile], attempts: int,
                        round_attempt: int, error: Exception) -> None:
        message = str(error) or type(error).__name__
        retryable = is_retryable(error)

        with self._cond:
            draining = self._draining
            self._last_error[file_id] = message

        if retryable and draining:
            self._release_cancelled(file_id, error)
            return

        if retryable and round_attempt < self.config.MAX_ATTEMPTS:
            self._schedule_retry(file_id, round_attempt, message)
            return

        reason = "non-retryable error" if not retryable else f"{round_attempt} attempts"
        logger.error(f"File {file_id} failed permanently after {reason}: {message}")
        try:
            self.metadata_store.mark_error(file_id, message, attempts)
        finally:
            self._set_terminal(file_id, QueueState.FAILED, message)
            self._notify_chapter_finished(file, ChapterOutcome.ERROR)

    def _schedule_retry(self, file_id: str, round_attempt: int, message: str) -> None:
        delay = self.config.retry_delay_sec(round_attempt)
        logger.warning(
            f"File {file_id} failed (attempt {round_attempt}/{self.config.MAX_ATTEMPTS}), "
            f"retrying in {delay:.2f}s: {message}"
        )
        # Back to uploaded so a restart re-seeds it; the retry goes ahead either way
        try:
            self.metadata_store.mark_pending(file_id)
        except Exception as e:
            log_exception(logger, f"Could not return file {file_id} to uploaded before retry: {e}")
        with self._cond:
            self._states[file_id] = QueueState.RETRY_WAIT
            heapq.heappush(self._delayed, (time.monotonic() + delay, next(self._sequence), file_id))
            self.stats['retries'] += 1
            self._cond.notify()

    def _recover(self, file_id: str, round_attempt: int, error: Exception) -> None:
        """Settle a file whose attempt escaped the normal failure path"""
        with self._cond:
            if self._states.get(file_id) != QueueState.IN_PROGRESS:
                return
        try:
            self._handle_failure(file_id, None, round_attempt, round_attempt, error)
        except Exception as e:
            log_exception(logger, f"Could not record failure for file {file_id}: {e}")

    def _release_cancelled(self, file_id: str, error: Exception) -> None:
        """Return a file interrupted by shutdown to uploaded status"""
        logger.warning(f"Attempt for file {file_id} stopped during shutdown: {error}")
        try:
            self.metadata_store.mark_pending(file_id)
        except Exception as e:
            log_exception(logger, f"Could not return file {file_id} to uploaded: {e}")
        with self._cond:
            self._states.pop(file_id, None)
            self.stats['cancelled'] += 1

    def _set_terminal(self, file_id: str, state: QueueState, message: Optional[str] = None) -> None:
        with self._cond:
            self._states[file_id] = state
            if state == QueueState.SUCCEEDED:
                self.stats['succeeded'] += 1
                self._last_error.pop(file_id, None)
            else:
                self.stats['failed'] += 1
                if message:
                    self._last_error[file_id] = message

    def _notify_chapter_started(self, file: UploadedFile) -> None:
        if not self.chapter_bridge or not file.chapter_id:
            return
        try:
            self.chapter_bridge.on_processing_started(file.chapter_id)
        except Exception as e:
            log_exception(logger, f"Chapter bridge failed on start for chapter {file.chapter_id}: {e}")

    def _notify_chapter_finished(self, file: Optional[UploadedFile], outcome: ChapterOutcome) -> None:
        if not self.chapter_bridge or file is None or not file.chapter_id:
            return
        try:
            self.chapter_bridge.on_processing_finished(file.chapter_id, outcome)
        except Exception as e:
            log_exception(logger, f"Chapter bridge failed on finish for chapter {file.chapter_id}: {e}")
