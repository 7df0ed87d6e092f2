"""
Domain models for the manga archive worker.

Defines the core data structures used throughout the system,
providing type safety and clear interfaces between components.
"""

import threading
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any, List, Callable, Union, BinaryIO, Tuple


class FileStatus(str, Enum):
    """Lifecycle status of an uploaded file"""
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    PROCESSED = "processed"
    ERROR = "error"
    DELETED = "deleted"


class ContainerFormat(str, Enum):
    """Declared or sniffed container format"""
    ZIP = "zip"
    CBZ = "cbz"
    RAR = "rar"
    CBR = "cbr"

    @property
    def family(self) -> "ContainerFormat":
        if self in (ContainerFormat.ZIP, ContainerFormat.CBZ):
            return ContainerFormat.ZIP
        return ContainerFormat.RAR

    @classmethod
    def from_filename(cls, filename: str) -> Optional["ContainerFormat"]:
        suffix = Path(filename).suffix.lower().lstrip(".")
        try:
            return cls(suffix)
        except ValueError:
            return None


class QueueState(str, Enum):
    """Pool-side state of a file id"""
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    RETRY_WAIT = "retry_wait"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ChapterOutcome(str, Enum):
    """Outcome reported to the chapter status bridge"""
    READY = "ready"
    ERROR = "error"


@dataclass
class UploadedFile:
    """Represents a stored archive awaiting or after processing"""
    id: str
    original_filename: str
    container_format: Optional[ContainerFormat] = None
    size_bytes: Optional[int] = None
    status: FileStatus = FileStatus.UPLOADED
    processing_attempts: int = 0
    error_message: Optional[str] = None
    uploaded_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    stored_path: Optional[str] = None
    chapter_id: Optional[str] = None


@dataclass
class ExtractedEntry:
    """One archive member with deferred access to its bytes"""
    path: str
    name: str
    size: int
    is_directory: bool = False
    modified_at: Optional[datetime] = None
    reader: Optional[Callable[[], bytes]] = field(default=None, repr=False, compare=False)
    width: Optional[int] = None
    height: Optional[int] = None
    format: Optional[str] = None
    extracted_path: Optional[Path] = None
    hash: Optional[str] = None
    error: Optional[str] = None

    def read(self) -> bytes:
        """Pull the member bytes. Raises EntryReadError on failure."""
        from .errors import EntryReadError

        if self.is_directory:
            raise EntryReadError(f"Entry {self.path} is a directory", entry=self.path)
        if self.reader is None:
            raise EntryReadError(f"Entry {self.path} has no byte source", entry=self.path)
        try:
            return self.reader()
        except EntryReadError as e:
            self.error = str(e)
            raise
        except Exception as e:
            self.error = f"{type(e).__name__}: {e}"
            raise EntryReadError(f"Failed to read entry {self.path}: {self.error}", entry=self.path) from e


@dataclass
class SkippedEntry:
    """An entry routed away from the page set, with the reason"""
    entry: ExtractedEntry
    reason: str


@dataclass
class ArchiveExtractionSummary:
    """Classification result of one archive pass"""
    total_entries: int
    image_entries: List[ExtractedEntry]
    skipped_entries: List[SkippedEntry]
    cover_entry: Optional[ExtractedEntry] = None


@dataclass
class PageMetadata:
    """Represents one page of a chapter"""
    index: int
    filename: str
    width: int
    height: int
    format: str
    is_cover: bool = False
    path: Optional[str] = None
    size_bytes: Optional[int] = None
    # SHA-256 of the page bytes, for duplicate detection
    hash: Optional[str] = None


@dataclass
class MangaMetadata:
    """Best-effort metadata derived from names, comments and sidecars"""
    title: Optional[str] = None
    chapter: Optional[float] = None
    volume: Optional[int] = None
    language: Optional[str] = None
    scanlator: Optional[str] = None
    series: Optional[str] = None
    authors: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    chapter_title: Optional[str] = None
    year: Optional[int] = None
    source: Optional[str] = None

    def merge_missing(self, other: "MangaMetadata") -> "MangaMetadata":
        """Fill fields that are unknown here from another metadata record"""
        if self.source is None and not other.is_empty():
            self.source = other.source
        for name in ("title", "chapter", "volume", "language", "scanlator",
                     "series", "chapter_title", "year"):
            if getattr(self, name) is None and getattr(other, name) is not None:
                setattr(self, name, getattr(other, name))
        if not self.authors and other.authors:
            self.authors = list(other.authors)
        if not self.tags and other.tags:
            self.tags = list(other.tags)
        return self

    def is_empty(self) -> bool:
        return all(
            getattr(self, name) in (None, [])
            for name in ("title", "chapter", "volume", "language", "scanlator",
                         "series", "authors", "tags", "chapter_title", "year")
        )


@dataclass
class ProcessingWarning:
    """Non-fatal problem absorbed into a processing result"""
    code: str
    message: str
    entry: Optional[str] = None
    page_index: Optional[int] = None
    size: Optional[int] = None


@dataclass
class ProcessingResult:
    """Terminal output of one successful attempt"""
    file_id: str
    metadata: MangaMetadata
    pages: List[PageMetadata]
    cover: Optional[PageMetadata] = None
    thumbnail_paths: Dict[int, Dict[int, str]] = field(default_factory=dict)
    warnings: List[ProcessingWarning] = field(default_factory=list)
    total_entries: int = 0
    skipped_entries: int = 0
    processing_time_sec: Optional[float] = None

    @property
    def cover_thumbnail_paths(self) -> Dict[int, str]:
        if self.cover is None:
            return {}
        return self.thumbnail_paths.get(self.cover.index, {})

    @property
    def partial(self) -> bool:
        return bool(self.warnings)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        # JSON object keys must be strings
        data["thumbnail_paths"] = {
            str(page): {str(size): path for size, path in sizes.items()}
            for page, sizes in self.thumbnail_paths.items()
        }
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessingResult":
        pages = [PageMetadata(**page) for page in data.get("pages", [])]
        cover = PageMetadata(**data["cover"]) if data.get("cover") else None
        return cls(
            file_id=data["file_id"],
            metadata=MangaMetadata(**data.get("metadata", {})),
            pages=pages,
            cover=cover,
            thumbnail_paths={
                int(page): {int(size): path for size, path in sizes.items()}
                for page, sizes in data.get("thumbnail_paths", {}).items()
            },
            warnings=[ProcessingWarning(**w) for w in data.get("warnings", [])],
            total_entries=data.get("total_entries", 0),
            skipped_entries=data.get("skipped_entries", 0),
            processing_time_sec=data.get("processing_time_sec"),
        )


@dataclass(frozen=True)
class ProcessingContext:
    """Immutable per-attempt input to the archive processor"""
    file: UploadedFile
    source: Union[str, Path, BinaryIO]
    scratch_dir: Path
    thumbnail_dir: Path
    accepted_extensions: Tuple[str, ...]
    thumbnail_sizes: Tuple[int, ...]
    deadline: Optional[float] = None
    cancel_event: Optional[threading.Event] = field(default=None, compare=False)


@dataclass
class FileStatusSnapshot:
    """Read-only view returned to external callers"""
    file_id: str
    status: FileStatus
    attempts: int
    error_message: Optional[str] = None
    queue_state: Optional[QueueState] = None
