"""
In-memory metadata store and chapter bridge.

Used for local runs (METADATA_STORE_TYPE=memory) and tests.
"""

import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional, Dict, List, Tuple

from .base import MetadataStoreAdapter, ChapterStatusBridge
from ..models import UploadedFile, ProcessingResult, FileStatus, ChapterOutcome


class InMemoryMetadataStore(MetadataStoreAdapter):
    """Metadata store holding file records in a dict"""

    def __init__(self):
        self._lock = threading.Lock()
        self._files: Dict[str, UploadedFile] = {}
        self.results: Dict[str, ProcessingResult] = {}

    def add_file(self, file: UploadedFile) -> None:
        with self._lock:
            if file.uploaded_at is None:
                file.uploaded_at = datetime.now(timezone.utc)
            self._files[file.id] = file

    def _require(self, file_id: str) -> UploadedFile:
        file = self._files.get(file_id)
        if file is None:
            raise KeyError(f"Unknown file {file_id}")
        return file

    def get_file(self, file_id: str) -> Optional[UploadedFile]:
        with self._lock:
            file = self._files.get(file_id)
            return replace(file) if file else None

    def mark_processing(self, file_id: str) -> int:
        with self._lock:
            file = self._require(file_id)
            file.status = FileStatus.PROCESSING
            file.processing_attempts += 1
            return file.processing_attempts

    def mark_processed(self, file_id: str, result: ProcessingResult) -> None:
        with self._lock:
            file = self._require(file_id)
            file.status = FileStatus.PROCESSED
            file.error_message = None
            file.processed_at = datetime.now(timezone.utc)
            self.results[file_id] = result

    def mark_error(self, file_id: str, message: str, attempts: int) -> None:
        with self._lock:
            file = self._require(file_id)
            file.status = FileStatus.ERROR
            file.error_message = message
            file.processing_attempts = max(file.processing_attempts, attempts)

    def mark_pending(self, file_id: str) -> None:
        with self._lock:
            self._require(file_id).status = FileStatus.UPLOADED

    def get_pending_files(self) -> List[str]:
        with self._lock:
            pending = [f for f in self._files.values() if f.status == FileStatus.UPLOADED]
        pending.sort(key=lambda f: f.uploaded_at or datetime.min.replace(tzinfo=timezone.utc))
        return [f.id for f in pending]


class InMemoryChapterStatusBridge(ChapterStatusBridge):
    """Records chapter transitions in order"""

    def __init__(self):
        self._lock = threading.Lock()
        self.events: List[Tuple[str, str]] = []

    def on_processing_started(self, chapter_id: str) -> None:
        with self._lock:
            self.events.append((chapter_id, "processing"))

    def on_processing_finished(self, chapter_id: str, outcome: ChapterOutcome) -> None:
        with self._lock:
            self.events.append((chapter_id, outcome.value))
