from __future__ import annotations

import mimetypes
from pathlib import Path, PurePosixPath
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field

EXT2LANG: dict[str, str] = {
    ".bash": "bash",
    ".c": "c",
    ".cc": "cpp",
    ".cfg": "ini",
    ".conf": "ini",
    ".cpp": "cpp",
    ".css": "css",
    ".cxx": "cpp",
    ".go": "go",
    ".h": "c",
    ".hpp": "cpp",
    ".htm": "html",
    ".html": "html",
    ".ini": "ini",
    ".java": "java",
    ".js": "javascript",
    ".json": "json",
    ".jsx": "javascript",
    ".kt": "kotlin",
    ".markdown": "markdown",
    ".md": "markdown",
    ".mjs": "javascript",
    ".php": "php",
    ".py": "python",
    ".rb": "ruby",
    ".rs": "rust",
    ".sh": "bash",
    ".sql": "sql",
    ".svg": "xml",
    ".toml": "toml",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".xml": "xml",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".zsh": "bash",
}

_SPECIAL_NAMES: dict[str, str] = {
    "dockerfile": "dockerfile",
    "makefile": "makefile",
}

DEFAULT_EXCLUDES = {
    ".git",
    ".venv",
    "venv",
    "__pycache__",
    ".mypy_cache",
    ".ruff_cache",
    ".pytest_cache",
    ".ipynb_checkpoints",
    "node_modules",
    "dist",
    "build",
    ".DS_Store",
    ".idea",
    ".vscode",
}

# name of the per-project profile directory
PROFILE_DIR_NAME = ".ctree"


def guess_language(path: str | PurePosixPath) -> str:
    """Get the suggested code fence language for a path.

    Args:
        path (str | PurePosixPath): the file path, relative or absolute.

    Returns:
        str: the language name for code fences, or empty string if unknown.
    """
    p = PurePosixPath(path)
    special = _SPECIAL_NAMES.get(p.name.lower())
    if special:
        return special
    return EXT2LANG.get(p.suffix.lower(), "")


class FileRecord(BaseModel):
    """A file flowing through the pipeline.

    Records are frozen: every stage derives new records with ``model_copy``
    so that listeners holding an earlier batch never observe a change.

    Attributes:
        path: Path relative to the snapshot root, POSIX separated.
        absolute_path: Path on disk.
        size: File size in bytes.
        mtime: POSIX mtime (float seconds since epoch).
        is_binary: Classification from the binary detector.
        binary_category: Category assigned to binary files (image, document...).
        binary_name: Name of the matched magic signature, if any.
        content: Text, raw bytes for binary content kept for conversion, or None
            before loading.
        encoding: "utf-8" for text, "binary" for raw bytes, "base64" for encoded bytes.
        content_hash: SHA-256 of the raw bytes, the cache correctness key.
        transformed: Whether a transformer rewrote ``content``.
        transformed_by: Name of that transformer.
        error: Error message for load or transform failures.
        structure_only: Listed in the tree but content not exported.
        excluded_reason: Why the content was withheld, when it was.
        max_file_size: Size threshold above which ``is_too_big`` holds.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    path: str = Field(..., description="File path relative to the snapshot root")
    absolute_path: Path = Field(..., description="Absolute file path")
    size: int = Field(default=0, ge=0, description="File size in bytes")
    mtime: float = Field(default=0.0, description="POSIX modification time (seconds)")
    is_binary: bool = False
    binary_category: str | None = None
    binary_name: str | None = None
    content: str | bytes | None = None
    encoding: str = "utf-8"
    content_hash: str | None = None
    transformed: bool = False
    transformed_by: str | None = None
    error: str | None = None
    structure_only: bool = False
    excluded_reason: str | None = Field(default=None, description="Why content was withheld (binary policy, structure only)")
    source: str | None = Field(default=None, description="External source the file came from")
    max_file_size: int | None = Field(
        default=None,
        description="Maximum file size in bytes for including contents; None means no limit",
    )

    @computed_field
    @property
    def extension(self) -> str:
        """Last extension, lowercased, without the dot."""
        return PurePosixPath(self.path).suffix.lower().removeprefix(".")

    @computed_field
    @property
    def mime_type(self) -> str:
        """MIME type guessed from the file name."""
        guessed, _enc = mimetypes.guess_type(PurePosixPath(self.path).name, strict=False)
        return guessed or ("application/octet-stream" if self.is_binary else "text/plain")

    @computed_field
    @property
    def language(self) -> str:
        """Get the suggested code fence language based on the file name."""
        return guess_language(self.path)

    @computed_field
    @property
    def is_too_big(self) -> bool:
        """Determine if the file is too big to include in full."""
        if self.max_file_size is None:
            return False
        return self.size > self.max_file_size

    def text(self) -> str:
        """Return ``content`` as text, decoding bytes leniently."""
        if self.content is None:
            return ""
        if isinstance(self.content, bytes):
            return self.content.decode("utf-8", errors="replace")
        return self.content


class FileBatch(BaseModel):
    """Immutable unit of work passed from one pipeline stage to the next."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    root: Path = Field(default_factory=Path.cwd)
    files: tuple[FileRecord, ...] = ()
    stats: dict[str, Any] = Field(default_factory=dict)
    recovered_from_error: bool = False
    output: str | None = None

    def with_files(self, files: list[FileRecord] | tuple[FileRecord, ...], **stats: Any) -> FileBatch:  # noqa: ANN401
        """Derive a batch with new files and merged stats."""
        return self.model_copy(update={"files": tuple(files), "stats": {**self.stats, **stats}})


class MemoryUsage(BaseModel):
    model_config = ConfigDict(frozen=True)

    heap_used: int = 0
    heap_total: int = 0


class StageTiming(BaseModel):
    """Timing and memory observed for one stage."""

    model_config = ConfigDict(frozen=True)

    name: str
    duration: float
    memory_usage: MemoryUsage = Field(default_factory=MemoryUsage)
    recovered: bool = False


class PipelineMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    duration: float = 0.0
    stage_timings: tuple[StageTiming, ...] = ()
    memory_usage: MemoryUsage = Field(default_factory=MemoryUsage)
