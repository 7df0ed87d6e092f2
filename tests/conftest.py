import io
import struct
import zipfile
import zlib
from pathlib import Path

import pytest
from PIL import Image

from manga_worker.config import WorkerConfig
from manga_worker.models import UploadedFile, ContainerFormat, ProcessingContext


def make_image(fmt: str = "PNG", size=(40, 60), color=(200, 30, 30)) -> bytes:
    """Encode a solid image with Pillow"""
    mode = "RGB"
    img = Image.new(mode, size, color)
    buffer = io.BytesIO()
    img.save(buffer, format=fmt)
    return buffer.getvalue()


def make_png_header(width: int, height: int) -> bytes:
    """A PNG signature and IHDR declaring the given size, with no pixel data"""
    def chunk(kind: bytes, payload: bytes) -> bytes:
        return struct.pack(">I", len(payload)) + kind + payload + struct.pack(">I", zlib.crc32(kind + payload))

    ihdr = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", ihdr) + chunk(b"IDAT", b"") + chunk(b"IEND", b"")


def make_zip(path: Path, entries, comment: bytes = b"", compression=zipfile.ZIP_STORED) -> Path:
    """Write a ZIP archive from (name, bytes) pairs; bytes None means directory"""
    with zipfile.ZipFile(path, "w", compression=compression) as zf:
        for name, data in entries:
            if data is None:
                zf.writestr(zipfile.ZipInfo(name if name.endswith("/") else name + "/"), b"")
            else:
                zf.writestr(name, data)
        if comment:
            zf.comment = comment
    return path


def corrupt_member(path: Path, data: bytes) -> None:
    """Flip one byte inside a stored member so its CRC no longer matches"""
    raw = bytearray(path.read_bytes())
    offset = raw.find(data)
    assert offset >= 0
    raw[offset + len(data) // 2] ^= 0xFF
    path.write_bytes(bytes(raw))


@pytest.fixture
def png_bytes():
    return make_image("PNG", (40, 60))


@pytest.fixture
def config(tmp_path):
    return WorkerConfig(
        METADATA_STORE_TYPE="memory",
        THUMBNAIL_SIZES=[16, 32],
        THUMBNAIL_WORKERS=2,
        MAX_CONCURRENT_WORKERS=2,
        MAX_ATTEMPTS=3,
        RETRY_BASE_DELAY_MS=1,
        RETRY_MAX_DELAY_MS=5,
        ATTEMPT_TIMEOUT_SEC=30,
        SHUTDOWN_GRACE_SEC=1,
        DATA_DIR=str(tmp_path / "data"),
        THUMBNAILS_DIR=str(tmp_path / "thumbnails"),
        CACHE_DIR=str(tmp_path / "cache"),
        LOG_DIR=None,
    )


@pytest.fixture
def make_context(config, tmp_path):
    def _make(source, file=None, thumbnail_dir=None, deadline=None, cancel_event=None):
        file = file or UploadedFile(id="f1", original_filename=Path(str(source)).name,
                                    container_format=ContainerFormat.CBZ)
        scratch = tmp_path / "scratch"
        scratch.mkdir(exist_ok=True)
        return ProcessingContext(
            file=file,
            source=source,
            scratch_dir=scratch,
            thumbnail_dir=Path(thumbnail_dir or tmp_path / "thumbs"),
            accepted_extensions=tuple(config.ACCEPTED_IMAGE_EXTENSIONS),
            thumbnail_sizes=tuple(config.THUMBNAIL_SIZES),
            deadline=deadline,
            cancel_event=cancel_event,
        )
    return _make
