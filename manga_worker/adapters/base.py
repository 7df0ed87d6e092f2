"""
Abstract base classes for the worker's external collaborators.

Defines the interfaces for file storage (stored archive bytes and
thumbnail publishing), the metadata store (file status records) and the
chapter status bridge, enabling easy swapping between backends
(local disk, S3, Postgres, in-memory).
"""

from abc import ABC, abstractmethod
from typing import Optional, BinaryIO, List

from ..models import UploadedFile, ProcessingResult, ChapterOutcome


class FileStorageAdapter(ABC):
    """Abstract base class for file storage adapters"""

    def connect(self) -> None:
        """Acquire backend resources. No-op by default."""

    def close(self) -> None:
        """Release backend resources. No-op by default."""

    @abstractmethod
    def open_for_read(self, file_id: str, stored_path: Optional[str] = None) -> BinaryIO:
        """
        Open the stored archive bytes for reading.

        Args:
            file_id: ID of the uploaded file
            stored_path: Backend-specific locator recorded at upload

        Returns:
            Readable binary stream; the caller closes it

        Raises:
            StorageUnavailable: If the bytes cannot be reached
        """
        pass

    @abstractmethod
    def write_thumbnail(self, file_id: str, page_index: int, size: int, local_path: str) -> str:
        """
        Publish a generated thumbnail.

        Args:
            file_id: ID of the uploaded file
            page_index: Page the thumbnail belongs to
            size: Longest-edge bound in pixels
            local_path: Path of the thumbnail written by the generator

        Returns:
            Location of the published thumbnail

        Raises:
            StorageUnavailable: If the thumbnail cannot be stored
        """
        pass


class MetadataStoreAdapter(ABC):
    """Abstract base class for metadata store adapters"""

    def connect(self) -> None:
        """Acquire backend resources. No-op by default."""

    def close(self) -> None:
        """Release backend resources. No-op by default."""

    @abstractmethod
    def get_file(self, file_id: str) -> Optional[UploadedFile]:
        """
        Get the stored record for a file.

        Args:
            file_id: ID of the uploaded file

        Returns:
            UploadedFile if found, None otherwise
        """
        pass

    @abstractmethod
    def mark_processing(self, file_id: str) -> int:
        """
        Set status to processing and increment the attempt counter.

        Args:
            file_id: ID of the uploaded file

        Returns:
            The new processing_attempts value
        """
        pass

    @abstractmethod
    def mark_processed(self, file_id: str, result: ProcessingResult) -> None:
        """
        Persist a successful result and set status to processed.

        Args:
            file_id: ID of the uploaded file
            result: Result of the successful attempt
        """
        pass

    @abstractmethod
    def mark_error(self, file_id: str, message: str, attempts: int) -> None:
        """
        Set status to error with the last message and final attempt count.

        Args:
            file_id: ID of the uploaded file
            message: Human-readable error message
            attempts: Final processing_attempts value
        """
        pass

    @abstractmethod
    def mark_pending(self, file_id: str) -> None:
        """
        Return a file to uploaded status after a cancelled attempt.

        Args:
            file_id: ID of the uploaded file
        """
        pass

    @abstractmethod
    def get_pending_files(self) -> List[str]:
        """
        Get ids of files awaiting processing, oldest first.

        Returns:
            List of file ids in uploaded status
        """
        pass


class ChapterStatusBridge(ABC):
    """Abstract base class for chapter status hooks"""

    def connect(self) -> None:
        """Acquire backend resources. No-op by default."""

    def close(self) -> None:
        """Release backend resources. No-op by default."""

    @abstractmethod
    def on_processing_started(self, chapter_id: str) -> None:
        """
        Signal that a chapter's archive entered processing.

        Args:
            chapter_id: ID of the chapter
        """
        pass

    @abstractmethod
    def on_processing_finished(self, chapter_id: str, outcome: ChapterOutcome) -> None:
        """
        Signal the terminal outcome of a chapter's archive.

        Args:
            chapter_id: ID of the chapter
            outcome: ChapterOutcome.READY or ChapterOutcome.ERROR
        """
        pass
