import os
import re
import time
from pathlib import PurePosixPath
from typing import Optional

from ..errors import ProcessingTimeout, ProcessingCancelled


# Environment variable constants
DEFAULT_DATA_DIR = "/app/data"


def get_data_dir() -> str:
    """Get data directory from environment"""
    return os.getenv("DATA_DIR", DEFAULT_DATA_DIR)


def resolve_stored_path(stored_path: str, root: Optional[str] = None) -> str:
    """Resolve a stored archive path to an absolute path under the storage root"""
    root = root or get_data_dir()

    # If stored_path is already absolute, use it
    if os.path.isabs(stored_path):
        return stored_path

    # Otherwise, resolve relative to the storage root
    return os.path.join(root, stored_path.lstrip("/"))


def get_thumbnail_dir(base_dir: str, file_id: str) -> str:
    """Get thumbnail directory for a file"""
    thumbnail_dir = os.path.join(base_dir, clean_filename(str(file_id)))
    os.makedirs(thumbnail_dir, exist_ok=True)
    return thumbnail_dir


def normalize_member_path(path: str) -> str:
    """Use forward slashes and drop redundant separators"""
    path = path.replace("\\", "/")
    return re.sub(r'/+', '/', path)


def is_safe_member_path(path: str) -> bool:
    """False for absolute member paths or paths escaping the archive root"""
    path = normalize_member_path(path)
    if path.startswith("/") or re.match(r'^[A-Za-z]:', path):
        return False
    return ".." not in PurePosixPath(path).parts


def clean_filename(filename: str) -> str:
    """Clean filename for safe filesystem usage"""
    # Remove or replace unsafe characters
    filename = re.sub(r'[<>:"/\\|?*]', '_', filename)
    # Remove multiple underscores
    filename = re.sub(r'_+', '_', filename)
    # Remove leading/trailing underscores and dots
    filename = filename.strip('_.')
    return filename or 'unnamed'


def clean_text(value: Optional[str]) -> Optional[str]:
    """Collapse whitespace and underscores; None for blank input"""
    if value is None:
        return None
    value = value.replace("_", " ")
    value = re.sub(r'\s+', ' ', value).strip()
    return value or None


def checkpoint(deadline: Optional[float] = None, cancel_event=None, where: str = "") -> None:
    """Raise if the attempt was cancelled or ran past its monotonic deadline"""
    if cancel_event is not None and cancel_event.is_set():
        raise ProcessingCancelled(f"Processing cancelled at {where or 'checkpoint'}")
    if deadline is not None and time.monotonic() > deadline:
        raise ProcessingTimeout(f"Attempt exceeded its time budget at {where or 'checkpoint'}")
