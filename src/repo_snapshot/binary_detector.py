"""Binary/text classification of file contents.

The decision order is fixed and the first match wins: read failure (fails
open to text), magic-number signature, extension table, NUL byte in the
sample, ratio of non-printable bytes, and finally text.
"""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, ConfigDict


class Reason(StrEnum):
    ERROR = "error"
    MAGIC = "magic"
    EXTENSION = "extension"
    NULL_BYTE = "null-byte"
    RATIO = "ratio"
    TEXTUAL = "textual"


CATEGORIES: dict[str, frozenset[str]] = {
    "image": frozenset(
        {".png", ".jpg", ".jpeg", ".gif", ".bmp", ".webp", ".ico", ".tif", ".tiff", ".psd", ".heic"},
    ),
    "media": frozenset(
        {".mp3", ".aac", ".wav", ".flac", ".mp4", ".mov", ".avi", ".mkv", ".webm", ".wmv", ".flv"},
    ),
    "archive": frozenset({".zip", ".7z", ".rar", ".tar", ".gz", ".bz2", ".xz", ".lz", ".tgz"}),
    "exec": frozenset({".exe", ".dll", ".so", ".dylib", ".a", ".o", ".class", ".jar", ".war", ".app"}),
    "font": frozenset({".ttf", ".otf", ".woff", ".woff2", ".eot"}),
    "database": frozenset({".sqlite", ".sqlite3", ".db", ".mdb", ".accdb", ".dbf"}),
    "cert": frozenset({".pem", ".der", ".crt", ".cer", ".p12", ".pfx", ".key"}),
    "document": frozenset({".pdf", ".doc", ".docx", ".odt", ".rtf", ".epub", ".html", ".htm"}),
    "other": frozenset({".bin", ".dat"}),
}

CONVERTIBLE_DOCUMENTS = frozenset({".pdf", ".doc", ".docx", ".odt", ".rtf", ".epub", ".html", ".htm"})

# (category, signature, name), checked in order
MAGIC: tuple[tuple[str, bytes, str], ...] = (
    ("image", b"\x89PNG\r\n\x1a\n", "PNG"),
    ("image", b"\xff\xd8\xff", "JPEG"),
    ("image", b"GIF8", "GIF"),
    ("image", b"BM", "BMP"),
    ("image", b"\x00\x00\x01\x00", "ICO"),
    ("document", b"%PDF-", "PDF"),
    ("document", b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1", "MS Office"),
    ("archive", b"PK\x03\x04", "ZIP"),
    ("archive", b"PK\x05\x06", "ZIP (empty)"),
    ("archive", b"PK\x07\x08", "ZIP (spanned)"),
    ("archive", b"\x1f\x8b\x08", "GZIP"),
    ("archive", b"7z\xbc\xaf\x27\x1c", "7-Zip"),
    ("archive", b"Rar!\x1a\x07", "RAR"),
    ("exec", b"\x7fELF", "ELF"),
    ("exec", b"MZ", "PE/MZ"),
    ("exec", b"\xfe\xed\xfa\xce", "Mach-O (32-bit BE)"),
    ("exec", b"\xfe\xed\xfa\xcf", "Mach-O (64-bit BE)"),
    ("exec", b"\xce\xfa\xed\xfe", "Mach-O (32-bit LE)"),
    ("exec", b"\xcf\xfa\xed\xfe", "Mach-O (64-bit LE)"),
    ("exec", b"\xca\xfe\xba\xbe", "Mach-O Fat Binary"),
    ("database", b"SQLite format 3\x00", "SQLite"),
)

_WHITESPACE = frozenset({0x09, 0x0A, 0x0D})


class Detection(BaseModel):
    """Outcome of a binary detection."""

    model_config = ConfigDict(frozen=True)

    is_binary: bool
    category: str
    reason: Reason
    ext: str = ""
    name: str | None = None
    error: str | None = None


def categorize_by_ext(ext: str) -> str | None:
    """Return the category whose extension table holds ``ext`` (with dot)."""
    lower = (ext or "").lower()
    for category, extensions in CATEGORIES.items():
        if lower in extensions:
            return category
    return None


def non_printable_ratio(sample: bytes) -> float:
    """Share of control bytes in ``sample``.

    Visible ASCII, whitespace and bytes above 0x7f (possible UTF-8) count as printable.
    """
    if not sample:
        return 0.0
    bad = sum(1 for b in sample if (b < 0x20 and b not in _WHITESPACE) or b == 0x7F)  # noqa: PLR2004
    return bad / len(sample)


def detect_bytes(data: bytes, ext: str = "", non_printable_threshold: float = 0.3) -> Detection:
    """Classify bytes already in memory.

    Args:
        data: the sample to inspect (callers truncate to the sample size).
        ext: the file extension including the dot, used for the table lookup.
        non_printable_threshold: ratio above which the sample is binary.

    Returns:
        Detection: the classification.
    """
    ext_category = categorize_by_ext(ext)
    for category, signature, name in MAGIC:
        if data.startswith(signature):
            if category == "archive" and ext_category == "document":
                # docx, odt and epub are zip containers
                category = ext_category
            return Detection(is_binary=True, category=category, reason=Reason.MAGIC, ext=ext, name=name)

    if ext_category is not None:
        return Detection(is_binary=True, category=ext_category, reason=Reason.EXTENSION, ext=ext)

    if b"\x00" in data:
        return Detection(is_binary=True, category="other", reason=Reason.NULL_BYTE, ext=ext)

    if non_printable_ratio(data) > non_printable_threshold:
        return Detection(is_binary=True, category="other", reason=Reason.RATIO, ext=ext)

    return Detection(is_binary=False, category="text", reason=Reason.TEXTUAL, ext=ext)


def detect(path: Path, sample_bytes: int = 8192, non_printable_threshold: float = 0.3) -> Detection:
    """Classify the file at ``path`` from its first ``sample_bytes`` bytes.

    Args:
        path: file to inspect.
        sample_bytes: number of leading bytes read.
        non_printable_threshold: ratio of control bytes above which the file is binary.

    Returns:
        Detection: the classification. Unreadable files are reported as text
        with ``reason="error"`` so the pipeline still tries to show them.
    """
    ext = Path(path).suffix
    try:
        with Path(path).open("rb") as f:
            sample = f.read(sample_bytes)
    except OSError as e:
        return Detection(is_binary=False, category="text", reason=Reason.ERROR, ext=ext, error=str(e))
    return detect_bytes(sample, ext, non_printable_threshold)


def is_convertible_document(category: str | None, ext: str) -> bool:
    """Tell whether a document can be routed through a document converter."""
    if category != "document":
        return False
    return (ext or "").lower() in CONVERTIBLE_DOCUMENTS
