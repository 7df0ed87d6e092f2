import re
from enum import Enum
from pathlib import PurePosixPath
from typing import List, Iterable, Optional, Tuple, Any

from natsort import natsort_keygen, ns

from ..models import ExtractedEntry, ArchiveExtractionSummary, SkippedEntry
from .util import is_safe_member_path


class EntryKind(str, Enum):
    IMAGE = "image"
    DIRECTORY = "directory"
    METADATA = "metadata"
    OTHER = "other"
    UNSAFE = "unsafe-path"


METADATA_NAMES = {"comicinfo.xml", "thumbs.db", "desktop.ini"}
METADATA_EXTENSIONS = {"xml", "nfo", "txt", "json", "sfv", "md5"}

DEFAULT_COVER_MARKERS = ("cover", "front", "portada", "capa")

_natural_key = natsort_keygen(alg=ns.IGNORECASE)


def _extension(name: str) -> str:
    return PurePosixPath(name).suffix.lower().lstrip(".")


def classify_entry(entry: ExtractedEntry, accepted_extensions: Iterable[str]) -> EntryKind:
    """Route an archive member to image, directory, metadata or other"""
    if entry.is_directory:
        return EntryKind.DIRECTORY
    if not is_safe_member_path(entry.path):
        return EntryKind.UNSAFE

    parts = PurePosixPath(entry.path).parts
    name = entry.name.lower()
    if "__MACOSX" in parts or name.startswith(".") or any(p.startswith(".") for p in parts[:-1]):
        return EntryKind.METADATA
    if name in METADATA_NAMES or _extension(name) in METADATA_EXTENSIONS:
        return EntryKind.METADATA

    accepted = {ext.lower().lstrip(".") for ext in accepted_extensions}
    if _extension(name) in accepted:
        return EntryKind.IMAGE
    return EntryKind.OTHER


def natural_sort_key(path: str) -> Tuple[int, Any]:
    """
    Sort key comparing digit runs as integers and text case-insensitively.

    Paths whose file name carries no digits sort after every numbered
    path, in plain lexicographic order among themselves.
    """
    name = PurePosixPath(path).name
    if not re.search(r'\d', name):
        return (1, path.lower())
    return (0, _natural_key(path))


def order_pages(entries: Iterable[ExtractedEntry]) -> List[ExtractedEntry]:
    """Deterministic page order: natural key, raw path as tie-break"""
    return sorted(entries, key=lambda entry: (natural_sort_key(entry.path), entry.path))


def select_cover(pages: List[ExtractedEntry],
                 markers: Iterable[str] = DEFAULT_COVER_MARKERS) -> Optional[ExtractedEntry]:
    """First page whose name carries a cover marker, else the first page"""
    if not pages:
        return None
    markers = [marker.lower() for marker in markers]
    for page in pages:
        stem = PurePosixPath(page.name).stem.lower()
        if any(marker in stem for marker in markers):
            return page
    return pages[0]


def build_summary(total_entries: int,
                  images: Iterable[ExtractedEntry],
                  skipped: List[SkippedEntry],
                  markers: Iterable[str] = DEFAULT_COVER_MARKERS) -> ArchiveExtractionSummary:
    """Order accepted images and designate the cover"""
    pages = order_pages(images)
    return ArchiveExtractionSummary(
        total_entries=total_entries,
        image_entries=pages,
        skipped_entries=skipped,
        cover_entry=select_cover(pages, markers),
    )
