"""
Thumbnail generation for accepted pages.

Each (page, size) pair is written under a deterministic name so that
regeneration overwrites instead of duplicating. Failures for a pair are
returned as ThumbnailGenerationError values on the outcome, never raised.
"""

import concurrent.futures
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

from PIL import Image, UnidentifiedImageError

from ..errors import ThumbnailGenerationError, ProcessingTimeout
from .util import checkpoint

logger = logging.getLogger("manga_worker")

PIL_FORMATS = {"webp": "WEBP", "jpeg": "JPEG", "png": "PNG"}
FILE_EXTENSIONS = {"webp": "webp", "jpeg": "jpg", "png": "png"}

IMAGE_ERRORS = (UnidentifiedImageError, OSError, SyntaxError, ValueError, Image.DecompressionBombError)


def thumbnail_filename(page_index: int, size: int, fmt: str = "webp") -> str:
    """Deterministic thumbnail name keyed by page index and target size"""
    return f"page_{page_index:04d}_{size}.{FILE_EXTENSIONS.get(fmt, fmt)}"


@dataclass
class ThumbnailOutcome:
    page_index: int
    paths: Dict[int, str] = field(default_factory=dict)
    errors: List[ThumbnailGenerationError] = field(default_factory=list)


def _prepare_mode(img: Image.Image, fmt: str) -> Image.Image:
    """Convert to a mode the output encoder accepts"""
    has_alpha = img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info)
    if fmt == "jpeg":
        return img.convert("RGB") if img.mode != "RGB" else img
    if has_alpha:
        return img.convert("RGBA") if img.mode != "RGBA" else img
    if img.mode not in ("RGB", "L"):
        return img.convert("RGB")
    return img


class ThumbnailGenerator:
    """Produces aspect-preserving, longest-edge-bounded copies with Pillow"""

    def __init__(self, output_format: str = "webp", quality: int = 85, max_workers: int = 4):
        if output_format not in PIL_FORMATS:
            raise ValueError(f"Unsupported thumbnail format: {output_format}")
        self.output_format = output_format
        self.quality = quality
        self.max_workers = max(1, max_workers)

    def _save_kwargs(self) -> Dict[str, object]:
        if self.output_format == "webp":
            return {"quality": self.quality, "method": 4}
        if self.output_format == "jpeg":
            return {"quality": self.quality, "optimize": True}
        return {"optimize": True}

    def generate(self, source_path: Union[str, Path], page_index: int,
                 sizes: Sequence[int], output_dir: Union[str, Path]) -> ThumbnailOutcome:
        """
        Generate every configured size for one page

        Args:
            source_path: Scratch copy of the page image
            page_index: Final page index, used in the output name
            sizes: Longest-edge bounds in pixels
            output_dir: Directory receiving the thumbnails

        Returns:
            ThumbnailOutcome with the paths written and per-size errors
        """
        outcome = ThumbnailOutcome(page_index=page_index)
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        try:
            with Image.open(source_path) as img:
                img.load()
                base = _prepare_mode(img, self.output_format)
                for size in sizes:
                    path = self._write_one(base, page_index, size, output_dir, outcome)
                    if path:
                        outcome.paths[size] = path
        except IMAGE_ERRORS as e:
            logger.warning(f"Cannot decode page {page_index} for thumbnails: {e}")
            for size in sizes:
                if size not in outcome.paths:
                    outcome.errors.append(ThumbnailGenerationError(
                        f"Cannot decode page {page_index}: {e}", page_index=page_index, size=size
                    ))
        return outcome

    def _write_one(self, base: Image.Image, page_index: int, size: int,
                   output_dir: Path, outcome: ThumbnailOutcome) -> Optional[str]:
        target = output_dir / thumbnail_filename(page_index, size, self.output_format)
        part = target.with_name(target.name + ".part")
        try:
            thumb = base.copy()
            # thumbnail() only ever shrinks
            thumb.thumbnail((size, size), Image.Resampling.LANCZOS)
            thumb.save(part, format=PIL_FORMATS[self.output_format], **self._save_kwargs())
            os.replace(part, target)
            return str(target)
        except IMAGE_ERRORS as e:
            part.unlink(missing_ok=True)
            logger.warning(f"Thumbnail {size}px for page {page_index} failed: {e}")
            outcome.errors.append(ThumbnailGenerationError(
                f"Thumbnail {size}px for page {page_index} failed: {e}",
                page_index=page_index, size=size,
            ))
            return None

    def generate_all(self, pages: Sequence[Tuple[int, Union[str, Path]]], sizes: Sequence[int],
                     output_dir: Union[str, Path], deadline: Optional[float] = None,
                     cancel_event: Optional[threading.Event] = None) -> Dict[int, ThumbnailOutcome]:
        """
        Fan out thumbnail generation over pages

        Pages not yet started when the deadline passes or the cancel event
        is set are abandoned; pages already running finish first.

        Returns:
            Mapping of page index to its ThumbnailOutcome
        """
        outcomes: Dict[int, ThumbnailOutcome] = {}
        if not pages:
            return outcomes

        def run(page_index: int, source_path: Union[str, Path]) -> ThumbnailOutcome:
            checkpoint(deadline, cancel_event, f"thumbnail page {page_index}")
            return self.generate(source_path, page_index, sizes, output_dir)

        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(pages)),
            thread_name_prefix="thumbnails",
        )
        try:
            futures = [executor.submit(run, index, path) for index, path in pages]
            for future in futures:
                timeout = None if deadline is None else max(0.0, deadline - time.monotonic())
                try:
                    outcome = future.result(timeout=timeout)
                except concurrent.futures.TimeoutError as e:
                    raise ProcessingTimeout("Attempt exceeded its time budget during thumbnails") from e
                outcomes[outcome.page_index] = outcome
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

        return outcomes
