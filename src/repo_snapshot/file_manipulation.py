from __future__ import annotations

import asyncio
import errno
import fnmatch
import glob
import hashlib
import os
import random
import re
import subprocess  # noqa: S404
from datetime import UTC, datetime
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

from repo_snapshot.config import DEFAULT_EXCLUDES
from repo_snapshot.exceptions import NotAGitRepositoryError
from repo_snapshot.logging import logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from repo_snapshot.settings import RetrySettings

T = TypeVar("T")

RETRYABLE_ERRNOS = frozenset(
    {
        errno.EBUSY,
        errno.EPERM,
        errno.EACCES,
        errno.EMFILE,
        errno.ENFILE,
        errno.EAGAIN,
        errno.EIO,
    },
)


def relpath(path: Path, root: Path) -> str:
    """Send the relative path of path from root.

    Args:
        path (Path): the path to "relativise"
        root (Path): the root to relativise from

    Returns:
        str: the relative path from root to path, with POSIX separators.
            If path is not under root, returns the original path as a string.
    """
    try:
        return str(path.relative_to(root)).replace("\\", "/")
    except ValueError:
        return str(path)


def sha256_bytes(data: bytes) -> str:
    """Return the SHA-256 hex digest of ``data``."""
    return hashlib.sha256(data).hexdigest()


def sha256_file(path: Path) -> str:
    """Compute and return the SHA-256 hex digest of a file.

    Reads the file in 1 MiB chunks to handle large files without excessive memory use.

    Args:
        path (Path): the file path to hash

    Returns:
        str: the SHA-256 hex digest of the file contents
    """
    h = hashlib.sha256()
    with path.open("rb") as f:
        for blk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(blk)
    return h.hexdigest()


def git_ls_files(repo: Path) -> list[Path]:
    """Get the list of tracked files in a git repository using `git ls-files`.

    Args:
        repo (Path): the root of the git repository to query

    Raises:
        NotAGitRepositoryError: if `.git` is missing or `git` invocation fails.

    Returns:
        list[Path]: the list of tracked files within the repository
    """
    git_dir = repo / ".git"
    if not git_dir.exists():
        raise NotAGitRepositoryError(folder=repo)
    try:
        out = subprocess.run(
            ["git", "ls-files", "-z"],  # noqa: S607
            cwd=str(repo),
            text=True,
            capture_output=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError) as e:
        logger.warning("git ls-files failed", repo=str(repo), error=str(e))
        raise NotAGitRepositoryError(folder=repo, message=f"git ls-files failed: {e}") from e
    files: list[Path] = []
    for line in out.stdout.split("\0"):
        if not line.strip():
            continue
        p = repo / line
        if p.is_file():
            files.append(p)
    return files


def walk_files(repo: Path) -> list[Path]:
    """Walk the directory tree rooted at `repo` and return a list of all files.

    Directories named in `DEFAULT_EXCLUDES` are pruned.

    Args:
        repo (Path): the root directory to walk

    Returns:
        list[Path]: a list of all files found
    """
    results: list[Path] = []
    for root, dirs, files in os.walk(repo):
        dirs[:] = sorted(d for d in dirs if d not in DEFAULT_EXCLUDES)
        for f in files:
            if f in DEFAULT_EXCLUDES:
                continue
            p = Path(root) / f
            if p.is_file():
                results.append(p)
    return results


def normalize_globs(globs: Sequence[str]) -> list[str]:
    """Normalize a sequence of path glob patterns.

    Normalize a sequence of glob patterns by stripping whitespace and
    replacing backslashes with forward slashes. A trailing ``/`` means the
    whole directory.

    Args:
        globs (Sequence[str]): the glob patterns to normalize

    Returns:
        list[str]: the normalized glob patterns
    """
    out: list[str] = []
    for g in globs:
        g2 = (g or "").strip()
        if not g2:
            continue
        g2 = g2.replace("\\", "/")
        if g2.endswith("/"):
            g2 += "**"
        out.append(g2)
    return out


@lru_cache(maxsize=1024)
def compile_glob(pattern: str) -> re.Pattern[str]:
    """Compile a ``**`` aware glob into a regular expression.

    Patterns without a slash match the file name at any depth, like a
    ``.gitignore`` entry.

    Raises:
        re.error: if the translated pattern is invalid.
    """
    if "/" not in pattern:
        pattern = "**/" + pattern
    return re.compile(glob.translate(pattern, recursive=True, include_hidden=True))


def match_glob(rel: str, pattern: str) -> bool:
    """Check if a relative POSIX path matches a glob pattern."""
    return compile_glob(pattern).match(rel) is not None


def match_any_glob(rel: str, globs: Sequence[str]) -> bool:
    """Check if a relative path matches any of the provided glob patterns.

    Args:
        rel (str): the relative path to check
        globs (Sequence[str]): the glob patterns to match against

    Returns:
        bool: True if `rel` matches any pattern in `globs`, False otherwise
    """
    return any(match_glob(rel, g) for g in globs)


def match_fnmatch(value: str, pattern: str) -> bool:
    """Shell-style match where ``*`` also crosses ``/``."""
    return fnmatch.fnmatchcase(value, pattern)


def build_tree_lines(root_name: str, rel_paths: Sequence[str]) -> list[str]:
    """Build a visual tree representation of file paths.

    Args:
        root_name (str): the name to use for the root of the tree
        rel_paths (Sequence[str]): the list of file paths relative to the root, using POSIX separators (e.g. "src/main.py")

    Returns:
        list[str]: a list of strings representing the tree structure, suitable for printing
    """
    rels = sorted(
        {p.strip("/").replace("\\", "/") for p in rel_paths if p.strip()},
        key=str.lower,
    )
    tree: dict[str, Any] = {}
    for rp in rels:
        cur = tree
        parts = rp.split("/")
        for i, part in enumerate(parts):
            if i == len(parts) - 1:
                cur.setdefault("__files__", set()).add(part)
            else:
                cur = cur.setdefault(part, {})

    lines: list[str] = [root_name]

    def walk(node: dict[str, Any], prefix: str) -> None:
        dirs = sorted([k for k in node if k != "__files__"], key=str.lower)
        files = sorted(node.get("__files__", set()), key=str.lower)
        entries: list[tuple[str, str, Any]] = []
        entries.extend(("dir", d, node[d]) for d in dirs)
        entries.extend(("file", f, None) for f in files)
        for idx, (kind, name, child) in enumerate(entries):
            last = idx == len(entries) - 1
            branch = "└── " if last else "├── "
            lines.append(prefix + branch + name + ("/" if kind == "dir" else ""))
            if kind == "dir":
                ext = "    " if last else "│   "
                walk(child, prefix + ext)

    walk(tree, "")
    return lines


def now_iso() -> str:
    """Return the current date and time in ISO 8601 format with timezone.

    Returns:
        str: the current date and time in ISO 8601 format with timezone
    """
    return datetime.now(UTC).astimezone().isoformat(timespec="seconds")


def redact_env(text: str) -> str:
    """Redact environment variable values from the text of a dotenv file.

    Lines that are empty, start with `#`, or do not contain an `=` character
    are ignored. An optional leading `export` is dropped.

    Args:
        text (str): the file content to redact

    Returns:
        str: the variable names (keys), sorted, one per line
    """
    keys: list[str] = []
    for ln in text.splitlines():
        s = ln.strip()
        if not s or s.startswith("#") or "=" not in s:
            continue
        k = s.split("=", 1)[0].strip().removeprefix("export ").strip()
        if k:
            keys.append(k)
    keys = sorted(set(keys), key=str.lower)
    return "\n".join(keys)


def pem_stub(data: bytes) -> str:
    """Generate a stub string for PEM material.

    Keeps the SHA-256 digest of the raw bytes plus the first and last lines
    (the armor lines), never the key material itself.

    Args:
        data (bytes): the raw file content

    Returns:
        str: a string containing the SHA-256 digest and the first and last lines
    """
    lines = data.decode("utf-8", errors="ignore").splitlines()
    first = lines[0] if lines else ""
    last = lines[-1] if len(lines) > 1 else ""
    parts = [f"sha256={sha256_bytes(data)}"]
    if first:
        parts.append(first)
    if last and last != first:
        parts.append(last)
    return "\n".join(parts).strip()


def take_head_tail(lines: list[str], head: int, tail: int) -> str:
    """Select the first and last lines of a file.

    Args:
        lines (list[str]): the lines of the file to select from
        head (int): the number of lines to include from the head of the file
        tail (int): the number of lines to include from the tail of the file

    Returns:
        str: a string containing the selected head and tail lines,
            separated by an ellipsis if both are included
    """
    head_n = max(0, head)
    tail_n = max(0, tail)
    if head_n == 0 and tail_n == 0:
        return ""
    if head_n + tail_n >= len(lines):
        return "\n".join(lines)
    head_part = lines[:head_n]
    tail_part = lines[-tail_n:] if tail_n else []
    out: list[str] = []
    out.extend(head_part)
    out.append("…")
    out.extend(tail_part)
    return "\n".join(out)


def is_retryable_fs_error(exc: BaseException) -> bool:
    """Tell whether an OS error is transient (busy, locked, out of handles)."""
    return isinstance(exc, OSError) and exc.errno in RETRYABLE_ERRNOS


async def with_fs_retry(
    operation: Callable[[], Awaitable[T]],
    retry: RetrySettings,
    *,
    on_retry: Callable[[int, float, int | None], None] | None = None,
) -> T:
    """Run ``operation``, retrying transient filesystem errors with exponential backoff.

    The delay before retry ``n`` is ``initial_delay * 2 ** (n - 1)`` capped at
    ``max_delay``, optionally scaled by a random factor in ``[0.5, 1.5)``.

    Args:
        operation: zero-argument coroutine factory.
        retry: attempt and delay bounds.
        on_retry: called with (attempt, delay, errno) before each sleep.

    Raises:
        OSError: the last error once attempts are exhausted, or any
            non-transient error immediately.

    Returns:
        T: the operation result.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except OSError as exc:
            if not is_retryable_fs_error(exc) or attempt >= retry.max_attempts:
                raise
            delay = min(retry.initial_delay * 2 ** (attempt - 1), retry.max_delay)
            if retry.jitter:
                delay = min(delay * (0.5 + random.random()), retry.max_delay)  # noqa: S311
            if on_retry is not None:
                on_retry(attempt, delay, exc.errno)
            logger.debug("retrying filesystem operation", attempt=attempt, delay=delay, errno=exc.errno)
            await asyncio.sleep(delay)
