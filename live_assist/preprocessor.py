"""Text preprocessing: tokenizing, chunking and source file discovery."""

from __future__ import annotations

import logging
import mimetypes
import re
import unicodedata
from itertools import groupby
from pathlib import Path
from typing import AbstractSet, Iterator, List, Optional

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")

MIN_TOKEN_LEN = 2

TEXT_EXTENSIONS = frozenset(
    {
        ".txt",
        ".md",
        ".markdown",
        ".json",
        ".csv",
        ".log",
        ".yaml",
        ".yml",
        ".xml",
        ".ini",
        ".cs",
        ".py",
        ".js",
        ".ts",
        ".java",
        ".cpp",
        ".h",
        ".hpp",
    }
)

DOCUMENT_EXTENSIONS = TEXT_EXTENSIONS | {
    ".pdf",
    ".doc",
    ".docx",
    ".ppt",
    ".pptx",
    ".xls",
    ".xlsx",
    ".rtf",
}

_MIME_OVERRIDES = {
    ".md": "text/markdown",
    ".markdown": "text/markdown",
    ".yaml": "text/yaml",
    ".yml": "text/yaml",
    ".csv": "text/csv",
    ".rtf": "text/rtf",
    ".json": "application/json",
    ".xml": "application/xml",
    ".pdf": "application/pdf",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".ppt": "application/vnd.ms-powerpoint",
    ".pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}

_SOURCE_LIKE = {".log", ".ini", ".cs", ".py", ".js", ".ts", ".java", ".cpp", ".h", ".hpp"}


def tokenize(text: str) -> List[str]:
    """Lowercase runs of Unicode letters/digits, at least two characters long."""

    tokens = []
    for is_word, chars in groupby(text, key=_is_word_char):
        if is_word:
            token = "".join(chars).lower()
            if len(token) >= MIN_TOKEN_LEN:
                tokens.append(token)
    return tokens


def _is_word_char(char: str) -> bool:
    # letters of any script and decimal digits only; no superscripts or fractions
    category = unicodedata.category(char)
    return category.startswith("L") or category == "Nd"


def clean_text(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def chunk_text(text: str, chunk_chars: int, overlap: int) -> Iterator[str]:
    """Slide a ``chunk_chars`` window over the cleaned text.

    The window advances by ``max(1, chunk_chars - overlap)`` and the final
    partial window is included. Text shorter than the window is emitted whole.
    """

    if not text or not text.strip():
        return
    if chunk_chars <= 0:
        yield text.strip()
        return
    cleaned = clean_text(text)
    if len(cleaned) <= chunk_chars:
        yield cleaned
        return
    step = max(1, chunk_chars - overlap)
    for start in range(0, len(cleaned), step):
        window = cleaned[start : start + chunk_chars]
        chunk = window.strip()
        if chunk:
            yield chunk
        if start + len(window) >= len(cleaned):
            return


# ----------------------------------------------------------------------
# Source discovery
# ----------------------------------------------------------------------


def resolve_folder(folder: str | Path, *, start: Optional[Path] = None, max_depth: int = 6) -> Path:
    """Resolve a relative corpus folder against the working directory or its parents."""

    candidate = Path(folder).expanduser()
    if candidate.is_absolute():
        return candidate
    base = (start or Path.cwd()).resolve()
    for directory in [base, *base.parents][: max_depth + 1]:
        probe = directory / candidate
        if probe.is_dir():
            return probe
    return base / candidate


def is_allowed(path: Path, allowed: AbstractSet[str], default: AbstractSet[str] = TEXT_EXTENSIONS) -> bool:
    suffix = path.suffix.lower()
    if not suffix:
        return False
    return suffix in (allowed or default)


def iter_source_files(
    root: Path,
    *,
    allowed: AbstractSet[str] = frozenset(),
    default: AbstractSet[str] = TEXT_EXTENSIONS,
    max_files: int = 500,
) -> List[Path]:
    """Files under ``root`` passing the extension filter, sorted and capped."""

    files = sorted(path for path in root.rglob("*") if path.is_file() and is_allowed(path, allowed, default))
    return files[: max(0, max_files)]


def exceeds_size_cap(path: Path, max_file_size_mb: int) -> bool:
    if max_file_size_mb <= 0:
        return False
    size = path.stat().st_size
    if size > max_file_size_mb * 1024 * 1024:
        logger.info("RAG skip large file: %s (%d bytes)", path.name, size)
        return True
    return False


def read_source_text(path: Path, max_file_size_mb: int) -> str:
    """Read a corpus file, returning ``""`` for oversized or unreadable files."""

    try:
        if exceeds_size_cap(path, max_file_size_mb):
            return ""
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("RAG read failed: %s - %s", path.name, exc)
        return ""


def read_source_bytes(path: Path, max_file_size_mb: int) -> bytes:
    try:
        if exceeds_size_cap(path, max_file_size_mb):
            return b""
        return path.read_bytes()
    except OSError as exc:
        logger.warning("RAG read failed: %s - %s", path.name, exc)
        return b""


def mime_type_for(path: Path) -> str:
    suffix = path.suffix.lower()
    if suffix in _MIME_OVERRIDES:
        return _MIME_OVERRIDES[suffix]
    if suffix in _SOURCE_LIKE:
        return "text/plain"
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or "application/octet-stream"
