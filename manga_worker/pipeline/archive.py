"""
Archive reading for ZIP-family (ZIP/CBZ) and RAR-family (RAR/CBR) containers.

ArchiveCursor is an owned, non-restartable iterator over archive members.
It holds the archive handle and any scratch spill file, and releases both
when the iteration is exhausted, when close() is called, or when the
``with`` block exits early.
"""

import logging
import os
import shutil
import tempfile
import zipfile
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Optional, Union, BinaryIO, Any, List

import rarfile

from ..errors import UnsupportedFormat, CorruptArchive
from ..models import ContainerFormat, ExtractedEntry
from .util import normalize_member_path, is_safe_member_path

logger = logging.getLogger("manga_worker")

ZIP_SIGNATURES = (b"PK\x03\x04", b"PK\x05\x06", b"PK\x07\x08")
RAR_SIGNATURES = (b"Rar!\x1a\x07\x00", b"Rar!\x1a\x07\x01\x00")
HEADER_SIZE = 8


def sniff_container_format(header: bytes) -> ContainerFormat:
    """
    Identify the container family from its leading bytes

    Args:
        header: At least the first 8 bytes of the container

    Returns:
        ContainerFormat.ZIP or ContainerFormat.RAR

    Raises:
        UnsupportedFormat: If no known signature matches
    """
    if header.startswith(ZIP_SIGNATURES):
        return ContainerFormat.ZIP
    if header.startswith(RAR_SIGNATURES):
        return ContainerFormat.RAR
    raise UnsupportedFormat(
        "Container signature does not match ZIP or RAR",
        detail=header[:HEADER_SIZE].hex(),
    )


def _read_header(source: Union[str, Path, BinaryIO]) -> bytes:
    if isinstance(source, (str, Path)):
        with open(source, "rb") as f:
            return f.read(HEADER_SIZE)
    position = source.tell()
    header = source.read(HEADER_SIZE)
    source.seek(position)
    return header


def _to_datetime(date_time: Any) -> Optional[datetime]:
    if not date_time:
        return None
    try:
        return datetime(*date_time[:6])
    except (TypeError, ValueError):
        return None


class ArchiveCursor:
    """Lazy cursor over the members of one archive"""

    def __init__(self, source: Union[str, Path, BinaryIO],
                 declared_format: Optional[ContainerFormat] = None,
                 scratch_dir: Optional[Union[str, Path]] = None):
        self.source = source
        self.declared_format = declared_format
        self.scratch_dir = Path(scratch_dir) if scratch_dir else None
        self.container_format: Optional[ContainerFormat] = None
        self.comment: Optional[str] = None
        self.total_entries = 0

        self._archive = None
        self._members: List[Any] = []
        self._position = 0
        self._spill_path: Optional[Path] = None
        self._closed = False
        self._open()

    def _open(self) -> None:
        try:
            if not isinstance(self.source, (str, Path)) and not self.source.seekable():
                self.source = self._spill(".archive")
            header = _read_header(self.source)
        except OSError as e:
            self._release()
            raise CorruptArchive(f"Cannot read archive header: {e}") from e

        try:
            self.container_format = sniff_container_format(header)
        except UnsupportedFormat:
            self._release()
            raise
        if self.declared_format and self.declared_format.family != self.container_format:
            logger.warning(
                f"Declared format {self.declared_format.value} does not match content "
                f"signature {self.container_format.value}; using content signature"
            )

        try:
            if self.container_format == ContainerFormat.ZIP:
                self._open_zip()
            else:
                self._open_rar()
        except (zipfile.BadZipFile, zipfile.LargeZipFile, rarfile.Error, EOFError, OSError) as e:
            self._release()
            raise CorruptArchive(f"Cannot parse {self.container_format.value} archive: {e}") from e

        self.total_entries = len(self._members)
        logger.debug(f"Opened {self.container_format.value} archive with {self.total_entries} entries")

    def _open_zip(self) -> None:
        self._archive = zipfile.ZipFile(self.source, "r")
        self._members = self._archive.infolist()
        raw_comment = self._archive.comment
        if raw_comment:
            self.comment = raw_comment.decode("utf-8", errors="replace")

    def _open_rar(self) -> None:
        source = self.source
        if not isinstance(source, (str, Path)):
            source = self._spill(".rar")
        self._archive = rarfile.RarFile(str(source))
        self._members = self._archive.infolist()
        self.comment = self._archive.comment or None

    def _spill(self, suffix: str) -> Path:
        """Copy a stream source into the scratch directory"""
        fd, tmp_path = tempfile.mkstemp(suffix=suffix, dir=self.scratch_dir)
        with os.fdopen(fd, "wb") as f:
            shutil.copyfileobj(self.source, f)
        self._spill_path = Path(tmp_path)
        logger.debug(f"Spilled archive stream to {tmp_path}")
        return self._spill_path

    def _make_entry(self, info: Any) -> ExtractedEntry:
        path = normalize_member_path(info.filename)
        is_directory = info.is_dir()
        entry = ExtractedEntry(
            path=path,
            name=PurePosixPath(path.rstrip("/")).name,
            size=info.file_size,
            is_directory=is_directory,
            modified_at=_to_datetime(getattr(info, "date_time", None)),
        )
        if not is_directory and is_safe_member_path(path):
            archive = self._archive
            entry.reader = lambda: archive.read(info)
        return entry

    def __enter__(self) -> 'ArchiveCursor':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __iter__(self) -> 'ArchiveCursor':
        return self

    def __next__(self) -> ExtractedEntry:
        if self._closed or self._position >= len(self._members):
            self.close()
            raise StopIteration
        info = self._members[self._position]
        self._position += 1
        return self._make_entry(info)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Release the archive handle and any spill file. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self._release()

    def _release(self) -> None:
        if self._archive is not None:
            try:
                self._archive.close()
            except (OSError, rarfile.Error) as e:
                logger.warning(f"Error closing archive: {e}")
            self._archive = None
        if self._spill_path is not None:
            try:
                self._spill_path.unlink()
            except FileNotFoundError:
                pass
            self._spill_path = None
