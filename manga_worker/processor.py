"""
Manga archive processing pipeline.

Sequences one extraction pass per file: read entries, classify, inspect
accepted images, order pages and pick the cover, generate and publish
thumbnails, extract metadata, and assemble a single ProcessingResult.
Per-entry, per-page and per-thumbnail problems are collected as warnings;
only attempt-level conditions raise.
"""

import hashlib
import logging
import os
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .models import (
    UploadedFile, ProcessingContext, ProcessingResult, ProcessingWarning,
    PageMetadata, ArchiveExtractionSummary, SkippedEntry, ExtractedEntry,
)
from .errors import (
    NoAcceptableContent, CorruptArchive, EntryReadError,
    UnsupportedImageFormat, MalformedImage,
)
from .config import WorkerConfig
from .adapters.base import FileStorageAdapter
from .pipeline.archive import ArchiveCursor
from .pipeline.classify import EntryKind, classify_entry, build_summary
from .pipeline.inspector import inspect_image, accepted_formats_for
from .pipeline.thumbnails import ThumbnailGenerator
from .pipeline.metadata import MetadataExtractor
from .pipeline.cache import ResultCache
from .pipeline.util import checkpoint

logger = logging.getLogger("manga_worker")

MAX_UNREADABLE_RATIO = 0.5
COMIC_INFO_MAX_BYTES = 1024 * 1024
SPILL_EXTENSIONS = {"jpeg": "jpg", "png": "png", "gif": "gif", "webp": "webp", "bmp": "bmp"}


def source_fingerprint(file: UploadedFile, source) -> Optional[str]:
    """Identify the stored bytes behind a file record; None when the source cannot be examined"""
    parts = [
        str(file.size_bytes or ""),
        file.uploaded_at.isoformat() if file.uploaded_at else "",
        file.stored_path or "",
    ]
    if isinstance(source, (str, Path)):
        try:
            stat = os.stat(source)
        except OSError:
            return None
        parts += [str(stat.st_size), str(stat.st_mtime_ns)]
    return ":".join(parts)


class ArchiveProcessor:
    """Runs one archive through the extraction pipeline"""

    def __init__(self, config: WorkerConfig,
                 file_storage: Optional[FileStorageAdapter] = None,
                 thumbnail_generator: Optional[ThumbnailGenerator] = None,
                 metadata_extractor: Optional[MetadataExtractor] = None,
                 cache: Optional[ResultCache] = None):
        self.config = config
        self.file_storage = file_storage
        self.thumbnail_generator = thumbnail_generator or ThumbnailGenerator(
            output_format=config.THUMBNAIL_FORMAT,
            quality=config.THUMBNAIL_QUALITY,
            max_workers=config.THUMBNAIL_WORKERS,
        )
        self.metadata_extractor = metadata_extractor or MetadataExtractor()
        self.cache = cache
        self.max_unreadable_ratio = config.MAX_UNREADABLE_RATIO or MAX_UNREADABLE_RATIO

    def process(self, file: UploadedFile, context: ProcessingContext) -> ProcessingResult:
        """
        Process a single archive into a ProcessingResult.

        Args:
            file: The uploaded file record
            context: Per-attempt inputs (source, directories, limits)

        Returns:
            ProcessingResult with zero or more warnings

        Raises:
            UnsupportedFormat: Container signature is not ZIP or RAR
            CorruptArchive: Container unreadable, or too many unreadable images
            NoAcceptableContent: No accepted image survived classification
            ProcessingTimeout: The attempt ran past its deadline
            ProcessingCancelled: Shutdown asked the attempt to stop
        """
        start_time = time.time()

        fingerprint = None
        if self.cache:
            fingerprint = source_fingerprint(file, context.source)
            cached = self.cache.get(file.id, fingerprint) if fingerprint else None
            if cached:
                logger.debug(f"Cache hit for file {file.id}")
                return cached

        warnings: List[ProcessingWarning] = []

        logger.info(f"READ: Reading archive for file {file.id} ({file.original_filename})")
        with ArchiveCursor(context.source, file.container_format, context.scratch_dir) as cursor:
            summary, comic_info, unreadable, image_like = self._read_entries(cursor, context, warnings)
            comment = cursor.comment

        if not summary.image_entries:
            raise NoAcceptableContent(
                f"No acceptable images in {file.original_filename} "
                f"({summary.total_entries} entries, {unreadable} unreadable)"
            )

        if image_like and unreadable / image_like > self.max_unreadable_ratio:
            raise CorruptArchive(
                f"{unreadable} of {image_like} image entries unreadable in {file.original_filename}"
            )

        pages = self._build_pages(summary)
        cover = next((page for page in pages if page.is_cover), None)
        logger.info(f"PAGES: {len(pages)} pages for file {file.id}, cover={cover.filename if cover else None}")

        logger.info(f"THUMBNAILS: Generating {len(context.thumbnail_sizes)} sizes for file {file.id}")
        thumbnail_paths = self._generate_thumbnails(file, summary, context, warnings)

        logger.info(f"METADATA: Extracting metadata for file {file.id}")
        metadata = self.metadata_extractor.extract(
            file.original_filename,
            comic_info=comic_info,
            comment=comment,
            entry_paths=[entry.path for entry in summary.image_entries],
        )

        processing_time = time.time() - start_time
        result = ProcessingResult(
            file_id=file.id,
            metadata=metadata,
            pages=pages,
            cover=cover,
            thumbnail_paths=thumbnail_paths,
            warnings=warnings,
            total_entries=summary.total_entries,
            skipped_entries=len(summary.skipped_entries),
            processing_time_sec=processing_time,
        )

        if self.cache and fingerprint:
            self.cache.set(file.id, result, fingerprint)

        logger.info(
            f"READY: Processed file {file.id} in {processing_time:.2f}s: "
            f"{len(pages)} pages, {len(warnings)} warnings"
        )
        return result

    def _read_entries(self, cursor: ArchiveCursor, context: ProcessingContext,
                      warnings: List[ProcessingWarning]) -> Tuple[ArchiveExtractionSummary, Optional[bytes], int, int]:
        """Classify and inspect every member; spill accepted images to scratch"""
        accepted_formats = accepted_formats_for(context.accepted_extensions)
        images: List[ExtractedEntry] = []
        skipped: List[SkippedEntry] = []
        comic_info: Optional[bytes] = None
        unreadable = 0
        image_like = 0

        for position, entry in enumerate(cursor):
            checkpoint(context.deadline, context.cancel_event, f"entry {entry.path}")
            kind = classify_entry(entry, context.accepted_extensions)

            if kind == EntryKind.METADATA and entry.name.lower() == "comicinfo.xml" and comic_info is None:
                comic_info = self._read_comic_info(entry, warnings)

            if kind != EntryKind.IMAGE:
                skipped.append(SkippedEntry(entry=entry, reason=kind.value))
                continue

            image_like += 1
            try:
                data = entry.read()
                info = inspect_image(data, accepted_formats)
            except (EntryReadError, UnsupportedImageFormat, MalformedImage) as e:
                unreadable += 1
                entry.error = entry.error or str(e)
                logger.warning(f"Skipping entry {entry.path}: {e}")
                warnings.append(ProcessingWarning(code=type(e).__name__, message=str(e), entry=entry.path))
                skipped.append(SkippedEntry(entry=entry, reason=e.code.lower()))
                continue

            entry.width, entry.height, entry.format = info.width, info.height, info.format
            entry.hash = hashlib.sha256(data).hexdigest()
            spill_path = Path(context.scratch_dir) / f"entry_{position:05d}.{SPILL_EXTENSIONS[info.format]}"
            spill_path.write_bytes(data)
            entry.extracted_path = spill_path
            images.append(entry)

        summary = build_summary(cursor.total_entries, images, skipped, self.config.COVER_MARKERS)
        logger.debug(
            f"Classified {summary.total_entries} entries: {len(summary.image_entries)} images, "
            f"{len(summary.skipped_entries)} skipped"
        )
        return summary, comic_info, unreadable, image_like

    def _read_comic_info(self, entry: ExtractedEntry, warnings: List[ProcessingWarning]) -> Optional[bytes]:
        if entry.size > COMIC_INFO_MAX_BYTES:
            logger.warning(f"Ignoring oversized {entry.path} ({entry.size} bytes)")
            return None
        try:
            return entry.read()
        except EntryReadError as e:
            warnings.append(ProcessingWarning(code=type(e).__name__, message=str(e), entry=entry.path))
            return None

    def _build_pages(self, summary: ArchiveExtractionSummary) -> List[PageMetadata]:
        """Assign contiguous indices in page order and flag the cover"""
        return [
            PageMetadata(
                index=index,
                filename=entry.name,
                path=entry.path,
                width=entry.width,
                height=entry.height,
                format=entry.format,
                is_cover=entry is summary.cover_entry,
                size_bytes=entry.size,
                hash=entry.hash,
            )
            for index, entry in enumerate(summary.image_entries)
        ]

    def _generate_thumbnails(self, file: UploadedFile, summary: ArchiveExtractionSummary,
                             context: ProcessingContext,
                             warnings: List[ProcessingWarning]) -> Dict[int, Dict[int, str]]:
        """Generate thumbnails for every page and publish them through file storage"""
        outcomes = self.thumbnail_generator.generate_all(
            [(index, entry.extracted_path) for index, entry in enumerate(summary.image_entries)],
            context.thumbnail_sizes,
            context.thumbnail_dir,
            deadline=context.deadline,
            cancel_event=context.cancel_event,
        )

        thumbnail_paths: Dict[int, Dict[int, str]] = {}
        for page_index in sorted(outcomes):
            checkpoint(context.deadline, context.cancel_event, f"publish page {page_index}")
            outcome = outcomes[page_index]
            for error in outcome.errors:
                warnings.append(ProcessingWarning(
                    code=type(error).__name__, message=str(error),
                    page_index=error.page_index, size=error.size,
                ))

            published = {}
            for size in context.thumbnail_sizes:
                local_path = outcome.paths.get(size)
                if local_path is None:
                    continue
                if self.file_storage is not None:
                    published[size] = self.file_storage.write_thumbnail(file.id, page_index, size, local_path)
                else:
                    published[size] = local_path
            if published:
                thumbnail_paths[page_index] = published

        return thumbnail_paths
