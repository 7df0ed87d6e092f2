import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from ..models import ProcessingResult

logger = logging.getLogger("manga_worker")


class ResultCache:
    """JSON file cache of processing results keyed by file id"""

    def __init__(self, cache_dir: Union[str, Path]):
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, file_id: str) -> Path:
        safe_key = re.sub(r'[^A-Za-z0-9_-]', '_', str(file_id))
        return self.cache_dir / f"{safe_key}.json"

    def get(self, file_id: str, fingerprint: Optional[str] = None) -> Optional[ProcessingResult]:
        """Return the cached result, or None if absent, unreadable or recorded for other source bytes"""
        path = self._path(file_id)
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                payload = json.load(f)
            if payload.get("key") != str(file_id):
                return None
            if fingerprint is not None and payload.get("fingerprint") != fingerprint:
                logger.debug(f"Cache entry for file {file_id} is stale")
                return None
            return ProcessingResult.from_dict(payload["value"])
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable cache entry {path}: {e}")
            return None

    def set(self, file_id: str, result: ProcessingResult, fingerprint: Optional[str] = None) -> None:
        path = self._path(file_id)
        payload = {
            "key": str(file_id),
            "fingerprint": fingerprint,
            "value": result.to_dict(),
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }
        part = path.with_name(path.name + ".part")
        with open(part, "w", encoding="utf-8") as f:
            json.dump(payload, f)
        os.replace(part, path)

    def invalidate(self, file_id: str) -> None:
        self._path(file_id).unlink(missing_ok=True)
