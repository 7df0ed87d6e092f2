"""Processing error taxonomy.

Attempt-level errors abort the current attempt and feed the pool's retry
policy through the ``retryable`` flag. Entry, page and thumbnail errors are
collected as warnings on the result and never abort an attempt.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ErrorInfo:
    code: str
    message: str
    detail: Optional[str] = None


class ProcessingError(Exception):
    """Base class for all pipeline errors."""

    code = "PROCESSING_ERROR"
    retryable = True

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.info = ErrorInfo(code=self.code, message=message, detail=detail)


class UnsupportedFormat(ProcessingError):
    code = "UNSUPPORTED_FORMAT"
    retryable = False


class CorruptArchive(ProcessingError):
    code = "CORRUPT_ARCHIVE"
    retryable = False


class NoAcceptableContent(ProcessingError):
    code = "NO_ACCEPTABLE_CONTENT"
    retryable = False


class ProcessingTimeout(ProcessingError):
    code = "PROCESSING_TIMEOUT"


class StorageUnavailable(ProcessingError):
    code = "STORAGE_UNAVAILABLE"


class ProcessingCancelled(ProcessingError):
    code = "PROCESSING_CANCELLED"


class EntryReadError(ProcessingError):
    code = "ENTRY_READ_ERROR"

    def __init__(self, message: str, entry: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(message, detail)
        self.entry = entry


class UnsupportedImageFormat(ProcessingError):
    code = "UNSUPPORTED_IMAGE_FORMAT"


class MalformedImage(ProcessingError):
    code = "MALFORMED_IMAGE"


class ThumbnailGenerationError(ProcessingError):
    code = "THUMBNAIL_GENERATION_ERROR"

    def __init__(self, message: str, page_index: Optional[int] = None,
                 size: Optional[int] = None, detail: Optional[str] = None):
        super().__init__(message, detail)
        self.page_index = page_index
        self.size = size


def is_retryable(error: BaseException) -> bool:
    """Unknown exceptions are treated as transient."""
    if isinstance(error, ProcessingError):
        return error.retryable
    return True
