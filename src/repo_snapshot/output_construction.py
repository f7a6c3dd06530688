from __future__ import annotations

import json
from typing import TYPE_CHECKING
from xml.sax.saxutils import escape, quoteattr

from repo_snapshot.file_manipulation import build_tree_lines, now_iso

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

    from repo_snapshot.config import FileBatch, FileRecord
    from repo_snapshot.settings import Settings

FORMATS = ("md", "jsonl", "xml")
_SUFFIX_FORMATS = {".jsonl": "jsonl", ".xml": "xml", ".md": "md", ".markdown": "md"}


def resolve_format(output: Path | None, fmt: str = "") -> str:
    """Pick the output format from an explicit choice or the output suffix.

    Args:
        output (Path | None): the output file, if any
        fmt (str): explicit format, empty for automatic

    Raises:
        ValueError: if ``fmt`` is not one of ``FORMATS``.

    Returns:
        str: "md", "jsonl" or "xml"
    """
    chosen = (fmt or "").strip().lower()
    if chosen:
        if chosen not in FORMATS:
            msg = f"Unknown output format: {fmt!r} (expected one of {', '.join(FORMATS)})"
            raise ValueError(msg)
        return chosen
    if output is None:
        return "md"
    return _SUFFIX_FORMATS.get(output.suffix.lower(), "md")


def record_body(rec: FileRecord, settings: Settings) -> str:
    """Text exported for a record.

    Raw bytes that no transformer turned into text are shown as the binary
    placeholder.
    """
    if isinstance(rec.content, bytes):
        return settings.binary_placeholder_text
    return rec.content or ""


def fence_language(rec: FileRecord) -> str:
    if rec.is_binary or rec.error:
        return "text"
    return rec.language or "text"


def is_comment(rec: FileRecord) -> bool:
    """Binary records kept only as a mention (the ``comment`` binary policy)."""
    return rec.is_binary and rec.excluded_reason is not None and not rec.content


def exported(rec: FileRecord) -> bool:
    """Whether the record gets a content section (structure-only files are tree entries only)."""
    return not rec.structure_only


def iter_markdown(batch: FileBatch, settings: Settings, *, generated_at: str | None = None) -> Iterator[str]:
    """Yield a markdown export: header, structure tree, then one fenced section per file.

    Args:
        batch (FileBatch): the files to export, in output order
        settings (Settings): configuration, ``compact`` drops the blank line between sections
        generated_at (str | None): timestamp written in the header, defaults to now

    Yields:
        Iterator[str]: consecutive pieces of the document
    """
    root = batch.root
    header = [
        "# Project Export for LLM",
        f"root={root}",
        f"generated_at={generated_at or now_iso()}",
        f"files={len(batch.files)}",
        "",
        "## Structure",
        "```text",
        *build_tree_lines(root.name or str(root), [r.path for r in batch.files]),
        "```",
    ]
    yield "\n".join(header) + "\n"

    for rec in batch.files:
        if not exported(rec):
            continue
        if is_comment(rec):
            section = f"## {rec.path}\n<!-- binary file omitted: {rec.excluded_reason} -->\n"
        else:
            body = record_body(rec, settings).rstrip("\n")
            section = f"## {rec.path}\n```{fence_language(rec)}\n{body}\n```\n"
        yield section if settings.compact else "\n" + section


def chunk_content(text: str, chunk_chars: int) -> Iterator[tuple[int, int, str]]:
    """Chunk a text string into pieces of at most `chunk_chars` characters, splitting on line boundaries.

    A single line longer than ``chunk_chars`` forms its own chunk.

    Args:
        text (str): the text to chunk
        chunk_chars (int): the maximum number of characters in each chunk

    Yields:
        Iterator[tuple[int, int, str]]: an iterator of tuples containing the start line number,
            end line number, and chunk text for each chunk
    """
    if not text:
        yield (0, 0, "")
        return
    lines = text.splitlines()
    buf: list[str] = []
    cur = 0
    start_line = 1
    for i, ln in enumerate(lines, start=1):
        ln2 = ln + "\n"
        if cur + len(ln2) > chunk_chars and buf:
            yield (start_line, i - 1, "".join(buf))
            buf = []
            cur = 0
            start_line = i
        buf.append(ln2)
        cur += len(ln2)
    if buf:
        yield (start_line, start_line + len(buf) - 1, "".join(buf))


def iter_jsonl(batch: FileBatch, settings: Settings) -> Iterator[str]:
    """Yield one JSON line per content chunk of every exported file."""
    for rec in batch.files:
        if not exported(rec):
            continue
        for start, end, chunk in chunk_content(record_body(rec, settings), chunk_chars=settings.chunk_chars):
            item = {
                "repo_root": str(batch.root),
                "path": rec.path,
                "language": rec.language,
                "size": rec.size,
                "mtime": rec.mtime,
                "sha256": rec.content_hash,
                "is_binary": rec.is_binary,
                "transformed_by": rec.transformed_by,
                "error": rec.error,
                "start_line": start,
                "end_line": end,
                "text": chunk,
            }
            yield json.dumps(item, ensure_ascii=False) + "\n"


def iter_xml(batch: FileBatch, settings: Settings, *, generated_at: str | None = None) -> Iterator[str]:
    """Yield an XML document with a ``<structure>`` element and one ``<file>`` element per exported file."""
    yield '<?xml version="1.0" encoding="UTF-8"?>\n'
    yield (
        f"<snapshot root={quoteattr(str(batch.root))} generated_at={quoteattr(generated_at or now_iso())}"
        f' files="{len(batch.files)}">\n'
    )
    tree = "\n".join(build_tree_lines(batch.root.name or str(batch.root), [r.path for r in batch.files]))
    yield f"  <structure>{escape(tree)}</structure>\n"
    for rec in batch.files:
        if not exported(rec):
            continue
        attrs = [
            f"path={quoteattr(rec.path)}",
            f"language={quoteattr(fence_language(rec))}",
            f'size="{rec.size}"',
        ]
        if rec.transformed_by:
            attrs.append(f"transformed_by={quoteattr(rec.transformed_by)}")
        if rec.error:
            attrs.append(f"error={quoteattr(rec.error)}")
        if is_comment(rec):
            attrs.append(f"excluded={quoteattr(rec.excluded_reason or '')}")
            yield f"  <file {' '.join(attrs)}/>\n"
            continue
        yield f"  <file {' '.join(attrs)}>{escape(record_body(rec, settings))}</file>\n"
    yield "</snapshot>\n"


def iter_chunks(
    batch: FileBatch,
    fmt: str,
    settings: Settings,
    *,
    generated_at: str | None = None,
) -> Iterator[str]:
    """Ordered chunks of the rendered output; joined they give ``render``'s text."""
    match fmt:
        case "md":
            yield from iter_markdown(batch, settings, generated_at=generated_at)
        case "jsonl":
            yield from iter_jsonl(batch, settings)
        case "xml":
            yield from iter_xml(batch, settings, generated_at=generated_at)
        case _:
            msg = f"Unknown output format: {fmt!r}"
            raise ValueError(msg)


def render(batch: FileBatch, fmt: str, settings: Settings, *, generated_at: str | None = None) -> str:
    return "".join(iter_chunks(batch, fmt, settings, generated_at=generated_at))
