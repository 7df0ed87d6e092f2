import io
import logging
from dataclasses import dataclass
from typing import Optional, Iterable, Set

from PIL import Image, UnidentifiedImageError

from ..errors import UnsupportedImageFormat, MalformedImage

logger = logging.getLogger("manga_worker")

EXTENSION_FORMATS = {
    "jpg": "jpeg",
    "jpeg": "jpeg",
    "jpe": "jpeg",
    "png": "png",
    "gif": "gif",
    "webp": "webp",
    "bmp": "bmp",
}


@dataclass(frozen=True)
class ImageInfo:
    width: int
    height: int
    format: str


def accepted_formats_for(extensions: Iterable[str]) -> Set[str]:
    """Map an extension allow-list to the content formats it admits"""
    formats = set()
    for ext in extensions:
        fmt = EXTENSION_FORMATS.get(ext.lower().lstrip("."))
        if fmt:
            formats.add(fmt)
    return formats


def detect_image_format(data: bytes) -> Optional[str]:
    """Identify an image format from its magic bytes"""
    if data.startswith(b"\xff\xd8\xff"):
        return "jpeg"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "png"
    if data.startswith((b"GIF87a", b"GIF89a")):
        return "gif"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "webp"
    if data.startswith(b"BM"):
        return "bmp"
    return None


def inspect_image(data: bytes, accepted_formats: Iterable[str]) -> ImageInfo:
    """
    Recover width, height and format from an image's header

    Pillow's open is lazy: it parses the header and stops, so pixel data
    is never decoded here.

    Args:
        data: Raw image bytes
        accepted_formats: Content formats allowed through (jpeg, png, ...)

    Returns:
        ImageInfo with the header dimensions

    Raises:
        UnsupportedImageFormat: Signature unknown or not accepted
        MalformedImage: Signature matched but the header could not be parsed
    """
    fmt = detect_image_format(data)
    if fmt is None:
        raise UnsupportedImageFormat("Unrecognised image signature", detail=data[:12].hex())
    if fmt not in set(accepted_formats):
        raise UnsupportedImageFormat(f"Image format {fmt} is not accepted")

    try:
        with Image.open(io.BytesIO(data)) as img:
            width, height = img.size
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError, Image.DecompressionBombError) as e:
        raise MalformedImage(f"Cannot parse {fmt} header: {e}") from e

    if width <= 0 or height <= 0:
        raise MalformedImage(f"Invalid {fmt} dimensions {width}x{height}")

    return ImageInfo(width=width, height=height, format=fmt)
