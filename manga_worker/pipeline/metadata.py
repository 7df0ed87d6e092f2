"""
Best-effort manga metadata extraction.

Sources in priority order: a ComicInfo.xml sidecar, the archive comment
(ComicBookInfo JSON or ``Key: value`` lines), the original filename, and
finally a single top-level directory inside the archive. A higher-priority
source keeps its fields; lower ones only fill what is still unknown.
"""

import json
import logging
import re
import xml.etree.ElementTree as ET
from pathlib import PurePosixPath
from typing import Optional, Iterable, List, Dict, Any

from ..models import MangaMetadata
from .util import clean_text

logger = logging.getLogger("manga_worker")

LANGUAGE_CODES = {
    "en", "eng", "english", "es", "spa", "spanish", "es-la", "pt", "pt-br", "por",
    "fr", "fra", "french", "de", "ger", "german", "it", "ita", "italian",
    "ja", "jp", "jpn", "japanese", "ko", "kr", "kor", "korean", "zh", "cn",
    "chi", "chinese", "ru", "rus", "russian", "id", "ind", "vi", "vie", "th", "pl", "tr",
}

LANGUAGE_ALIASES = {
    "eng": "en", "english": "en", "spa": "es", "spanish": "es", "por": "pt",
    "fra": "fr", "french": "fr", "ger": "de", "german": "de", "ita": "it",
    "italian": "it", "jp": "ja", "jpn": "ja", "japanese": "ja", "kr": "ko",
    "kor": "ko", "korean": "ko", "cn": "zh", "chi": "zh", "chinese": "zh",
    "rus": "ru", "russian": "ru", "ind": "id", "vie": "vi",
}

NUMBER = r'(?P<chapter>\d+(?:\.\d+)?)'
CHAPTER_WORD = r'(?:Chapter|Chap\.?|Ch\.?|c(?=\s*\d))'
CHAPTER_TITLE = r'(?:\s*-\s*(?P<chapter_title>.+))?'

# Most specific first
FILENAME_PATTERNS = [
    re.compile(rf'^(?P<title>.+?)\s*-\s*Vol(?:ume|\.)?\s*(?P<volume>\d+)\s*(?:-\s*)?{CHAPTER_WORD}\s*{NUMBER}{CHAPTER_TITLE}$', re.IGNORECASE),
    re.compile(rf'^(?P<title>.+?)\s+v(?:ol\.?)?\s*(?P<volume>\d+)\s*c(?:h\.?)?\s*{NUMBER}{CHAPTER_TITLE}$', re.IGNORECASE),
    re.compile(rf'^(?P<title>.+?)\s*-\s*{CHAPTER_WORD}\s*{NUMBER}{CHAPTER_TITLE}$', re.IGNORECASE),
    re.compile(rf'^(?P<title>.+?)\s+{CHAPTER_WORD}\s*{NUMBER}{CHAPTER_TITLE}$', re.IGNORECASE),
    re.compile(r'^(?P<title>.+?)\s+(?:v|Vol\.?|Volume)\s*(?P<volume>\d+)$', re.IGNORECASE),
    re.compile(rf'^(?P<title>.+?)\s*-\s*{NUMBER}$', re.IGNORECASE),
    re.compile(rf'^(?P<title>.*[^\d\s])\s+{NUMBER}$', re.IGNORECASE),
]

YEAR_PATTERN = re.compile(r'\(\s*(?P<year>(?:19|20)\d{2})\s*\)')
LEADING_GROUP_PATTERN = re.compile(r'^\[(?P<group>[^\]]+)\]\s*')
TRAILING_TAG_PATTERN = re.compile(r'\s*[\[(](?P<tag>[^\])]+)[\])]\s*$')


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def _to_int(value: Any) -> Optional[int]:
    number = _to_float(value)
    return int(number) if number is not None else None


def _split_names(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [name.strip() for name in re.split(r'[,;]', value) if name.strip()]


def normalize_language(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    code = value.strip().lower()
    return LANGUAGE_ALIASES.get(code, code)


def parse_filename(filename: str, strip_extension: bool = True) -> MangaMetadata:
    """Derive metadata from a file or folder name using the pattern table"""
    stem = PurePosixPath(filename).name
    if strip_extension and re.search(r"\.[A-Za-z][A-Za-z0-9]{1,3}$", stem):
        stem = stem.rsplit(".", 1)[0]
    name = clean_text(stem)
    metadata = MangaMetadata(source="filename")
    if not name:
        return metadata

    year_match = YEAR_PATTERN.search(name)
    if year_match:
        metadata.year = int(year_match.group("year"))
        name = clean_text(name[:year_match.start()] + " " + name[year_match.end():]) or ""

    group_match = LEADING_GROUP_PATTERN.match(name)
    if group_match:
        metadata.scanlator = clean_text(group_match.group("group"))
        name = name[group_match.end():]

    while True:
        tag_match = TRAILING_TAG_PATTERN.search(name)
        if not tag_match or tag_match.start() == 0:
            break
        tag = tag_match.group("tag").strip()
        if tag.lower() in LANGUAGE_CODES and metadata.language is None:
            metadata.language = normalize_language(tag)
        elif tag:
            metadata.tags.insert(0, tag)
        name = name[:tag_match.start()]

    name = name.strip(" -")
    for pattern in FILENAME_PATTERNS:
        match = pattern.match(name)
        if not match:
            continue
        groups = match.groupdict()
        metadata.title = clean_text(groups.get("title", "").strip(" -"))
        metadata.chapter = _to_float(groups.get("chapter"))
        metadata.volume = _to_int(groups.get("volume"))
        metadata.chapter_title = clean_text(groups.get("chapter_title"))
        break
    else:
        metadata.title = clean_text(name)

    return metadata


def parse_comic_info(xml_bytes: bytes) -> MangaMetadata:
    """Map a ComicInfo.xml sidecar onto MangaMetadata"""
    root = ET.fromstring(xml_bytes)

    def text(tag: str) -> Optional[str]:
        element = root.find(tag)
        return clean_text(element.text) if element is not None and element.text else None

    series = text("Series")
    title = text("Title")
    writers = _split_names(text("Writer"))
    authors = writers + [name for name in _split_names(text("Penciller")) if name not in writers]
    tags = _split_names(text("Tags")) + _split_names(text("Genre"))

    return MangaMetadata(
        title=series or title,
        series=series,
        chapter_title=title if series else None,
        chapter=_to_float(text("Number")),
        volume=_to_int(text("Volume")),
        language=normalize_language(text("LanguageISO")),
        scanlator=text("ScanInformation"),
        authors=authors,
        tags=tags,
        year=_to_int(text("Year")),
        source="comicinfo",
    )


def parse_comment(comment: str) -> MangaMetadata:
    """Parse a ComicBookInfo JSON blob or Key: value lines from an archive comment"""
    comment = comment.strip()
    if comment.startswith("{"):
        data = json.loads(comment)
        return _from_comic_book_info(data.get("ComicBookInfo/1.0", data))

    values: Dict[str, str] = {}
    for line in comment.splitlines():
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        values[key.strip().lower()] = value.strip()

    return MangaMetadata(
        title=clean_text(values.get("title")),
        series=clean_text(values.get("series")),
        chapter=_to_float(values.get("chapter")),
        volume=_to_int(values.get("volume")),
        language=normalize_language(values.get("language")),
        scanlator=clean_text(values.get("scanlator") or values.get("group")),
        authors=_split_names(values.get("authors") or values.get("author")),
        tags=_split_names(values.get("tags")),
        year=_to_int(values.get("year")),
        source="comment",
    )


def _from_comic_book_info(info: Dict[str, Any]) -> MangaMetadata:
    credits = info.get("credits") or []
    authors = [c.get("person") for c in credits if c.get("person") and c.get("role", "").lower() in ("writer", "artist", "penciller", "author")]
    return MangaMetadata(
        title=clean_text(info.get("series") or info.get("title")),
        series=clean_text(info.get("series")),
        chapter_title=clean_text(info.get("title")) if info.get("series") else None,
        chapter=_to_float(info.get("issue")),
        volume=_to_int(info.get("volume")),
        language=normalize_language(info.get("language")),
        authors=authors,
        tags=[str(tag) for tag in info.get("tags") or []],
        year=_to_int(info.get("publicationYear")),
        source="comment",
    )


def common_top_directory(paths: Iterable[str]) -> Optional[str]:
    """Name of the single top-level folder holding every path, if any"""
    tops = set()
    for path in paths:
        parts = PurePosixPath(path).parts
        if len(parts) < 2:
            return None
        tops.add(parts[0])
        if len(tops) > 1:
            return None
    return tops.pop() if tops else None


class MetadataExtractor:
    """Merges metadata sources by priority; never raises"""

    def extract(self, original_filename: str, comic_info: Optional[bytes] = None,
                comment: Optional[str] = None, entry_paths: Iterable[str] = ()) -> MangaMetadata:
        """
        Derive MangaMetadata for one archive

        Args:
            original_filename: Name the archive was uploaded under
            comic_info: Raw ComicInfo.xml bytes, when the archive carries one
            comment: Archive-level comment
            entry_paths: Paths of the accepted page entries

        Returns:
            MangaMetadata with unknown fields left as None
        """
        result = MangaMetadata()
        if comic_info:
            try:
                result.merge_missing(parse_comic_info(comic_info))
            except ET.ParseError as e:
                logger.warning(f"Ignoring unreadable ComicInfo.xml: {e}")

        if comment:
            try:
                result.merge_missing(parse_comment(comment))
            except (ValueError, AttributeError, TypeError) as e:
                logger.warning(f"Ignoring unreadable archive comment: {e}")

        result.merge_missing(parse_filename(original_filename))

        directory = common_top_directory(entry_paths)
        if directory:
            result.merge_missing(parse_filename(directory, strip_extension=False))

        if result.is_empty():
            result.source = None
        return result
