"""File stages of the snapshot pipeline: discovery to rendering."""

from __future__ import annotations

import asyncio
import base64
import inspect
import time
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any

from repo_snapshot.binary_detector import detect_bytes
from repo_snapshot.config import FileRecord
from repo_snapshot.events import FileAction
from repo_snapshot.exceptions import ConfigurationError, NotAGitRepositoryError
from repo_snapshot.file_manipulation import (
    git_ls_files,
    match_any_glob,
    normalize_globs,
    relpath,
    sha256_bytes,
    walk_files,
    with_fs_retry,
)
from repo_snapshot.logging import logger
from repo_snapshot.output_construction import iter_chunks, resolve_format
from repo_snapshot.pipeline import Stage
from repo_snapshot.rules import FileView, RuleEngine
from repo_snapshot.settings import BinaryPolicy

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from repo_snapshot.binary_detector import Detection
    from repo_snapshot.config import FileBatch
    from repo_snapshot.pipeline import PipelineContext
    from repo_snapshot.profiles import ExternalSource
    from repo_snapshot.settings import Settings


def list_files(repo: Path, *, no_git: bool = False) -> tuple[list[Path], str]:
    """List candidate files, preferring ``git ls-files``.

    Args:
        repo (Path): the root directory
        no_git (bool): skip git and walk the filesystem

    Returns:
        tuple[list[Path], str]: the files and the method used ("git" or "walk")
    """
    if not no_git:
        try:
            return git_ls_files(repo), "git"
        except NotAGitRepositoryError as e:
            logger.info("falling back to filesystem walk", repo=str(repo), reason=str(e))
    return walk_files(repo), "walk"


def stat_records(
    root: Path,
    paths: Sequence[Path],
    *,
    max_file_size: int | None,
    source: str | None = None,
) -> list[FileRecord]:
    """Build metadata records for ``paths``, sorted by relative path.

    Files that vanish between listing and ``stat`` are dropped.
    """
    records: list[FileRecord] = []
    for p in paths:
        try:
            st = p.stat()
        except OSError as e:
            logger.warning("cannot stat file", path=str(p), error=str(e))
            continue
        records.append(
            FileRecord(
                path=relpath(p, root),
                absolute_path=p,
                size=st.st_size,
                mtime=st.st_mtime,
                max_file_size=max_file_size,
                source=source,
            ),
        )
    records.sort(key=lambda r: r.path)
    return records


class DiscoveryStage(Stage):
    """Enumerate the files under the batch root."""

    name = "discovery"

    async def process(self, batch: FileBatch, context: PipelineContext) -> FileBatch:
        settings = context.settings
        root = batch.root.resolve()
        limiter = context.limiter.get_limiter_for("discovery")
        paths, method = await limiter(asyncio.to_thread, list_files, root, no_git=settings.no_git)
        records = await limiter(asyncio.to_thread, stat_records, root, paths, max_file_size=settings.max_bytes)
        context.file_batch(self.name, len(records), FileAction.DISCOVERED)
        logger.info("discovered files", root=str(root), files=len(records), method=method)
        return batch.model_copy(
            update={
                "root": root,
                "files": tuple(records),
                "stats": {**batch.stats, "discovered_count": len(records), "discovery_method": method},
            },
        )


class FilterStage(Stage):
    """Keep the files selected by the profile rules."""

    name = "filter"

    def __init__(self, engine: RuleEngine | None = None, *, recoverable: bool | None = None) -> None:
        super().__init__(recoverable=recoverable)
        self.engine = engine

    def _engine(self, context: PipelineContext) -> RuleEngine:
        if self.engine is not None:
            return self.engine
        if context.profile is not None:
            return RuleEngine.from_profile(context.profile)
        return RuleEngine()

    async def process(self, batch: FileBatch, context: PipelineContext) -> FileBatch:
        engine = self._engine(context)
        if engine.needs_contents:
            limiter = context.limiter.get_limiter_for("glob")
            decisions = await asyncio.gather(
                *(limiter(asyncio.to_thread, engine.matches, FileView(r)) for r in batch.files),
            )
        else:
            decisions = [engine.matches(FileView(r)) for r in batch.files]
        kept = [r for r, keep in zip(batch.files, decisions, strict=True) if keep]
        excluded = len(batch.files) - len(kept)
        context.file_batch(self.name, len(kept), FileAction.FILTERED)
        logger.info("filtered files", kept=len(kept), excluded=excluded)
        return batch.with_files(kept, filtered_count=len(kept), excluded_count=excluded)


class ExternalSourceStage(Stage):
    """Merge the local trees listed in the profile ``external`` entries."""

    name = "external"

    def _source_dir(self, entry: ExternalSource, root: Path) -> Path:
        source = Path(entry.source).expanduser()
        return source if source.is_absolute() else root / source

    async def _collect(self, entry: ExternalSource, root: Path, context: PipelineContext) -> list[FileRecord]:
        directory = self._source_dir(entry, root)
        if not directory.is_dir():
            if entry.optional:
                logger.warning("optional external source missing", source=entry.source)
                return []
            raise ConfigurationError(message=f"External source not found: {entry.source}", source=entry.source)
        limiter = context.limiter.get_limiter_for("discovery")
        paths = await limiter(asyncio.to_thread, walk_files, directory)
        records = stat_records(directory, paths, max_file_size=context.settings.max_bytes, source=entry.source)
        # entry rules see paths relative to the external tree
        engine = RuleEngine(entry.rules)
        selected = [r for r in records if engine.matches(FileView(r))]
        prefix = entry.destination.strip("/")
        if not prefix:
            return selected
        return [r.model_copy(update={"path": f"{prefix}/{r.path}"}) for r in selected]

    async def process(self, batch: FileBatch, context: PipelineContext) -> FileBatch:
        entries = context.profile.external if context.profile is not None else []
        if not entries:
            return batch
        files = list(batch.files)
        seen = {r.path for r in files}
        added = 0
        for entry in entries:
            for rec in await self._collect(entry, batch.root, context):
                if rec.path in seen:
                    logger.debug("external file shadowed", path=rec.path, source=entry.source)
                    continue
                seen.add(rec.path)
                files.append(rec)
                added += 1
        context.file_batch(self.name, added, FileAction.DISCOVERED)
        logger.info("merged external sources", sources=len(entries), files=added)
        return batch.with_files(files, external_count=added)


class LoadingStage(Stage):
    """Read file contents, classify them and apply the binary policies."""

    name = "loading"

    def _binary(self, rec: FileRecord, data: bytes, detection: Detection, settings: Settings) -> FileRecord | None:
        policy = settings.policy_for(detection.category)
        update: dict[str, Any] = {
            "is_binary": True,
            "binary_category": detection.category,
            "binary_name": detection.name,
        }
        match policy:
            case BinaryPolicy.SKIP:
                logger.debug("skipping binary file", path=rec.path, category=detection.category)
                return None
            case BinaryPolicy.COMMENT:
                update.update(content="", encoding="utf-8", excluded_reason=detection.category or "binary")
            case BinaryPolicy.BASE64:
                update.update(content=base64.b64encode(data).decode("ascii"), encoding="base64")
            case BinaryPolicy.CONVERT:
                update.update(content=data, encoding="binary")
            case _:
                update.update(
                    content=settings.binary_placeholder_text,
                    encoding="utf-8",
                    excluded_reason=detection.category or "binary",
                )
        return rec.model_copy(update=update)

    def classify(self, rec: FileRecord, data: bytes, settings: Settings) -> FileRecord | None:
        """Derive the loaded record from the bytes read, or None when a skip policy drops it."""
        detect_settings = settings.binary_detect
        detection = detect_bytes(
            data[: detect_settings.sample_bytes],
            PurePosixPath(rec.path).suffix,
            detect_settings.non_printable_threshold,
        )
        rec = rec.model_copy(update={"size": len(data), "content_hash": sha256_bytes(data)})
        if detection.is_binary:
            return self._binary(rec, data, detection, settings)
        return rec.model_copy(
            update={"content": data.decode("utf-8", errors="replace"), "encoding": "utf-8", "is_binary": False},
        )

    async def _load(self, rec: FileRecord, settings: Settings, context: PipelineContext) -> FileRecord | None:
        limiter = context.limiter.get_limiter_for("io")

        def on_retry(attempt: int, delay: float, code: int | None) -> None:
            logger.info("retrying file read", path=rec.path, attempt=attempt, delay=delay, errno=code)

        try:
            data = await with_fs_retry(
                lambda: limiter(asyncio.to_thread, rec.absolute_path.read_bytes),
                settings.fs_retry,
                on_retry=on_retry,
            )
        except OSError as e:
            message = e.strerror or str(e)
            logger.warning("cannot load file", path=rec.path, error=message)
            return rec.model_copy(
                update={"content": f"[Error loading file: {message}]", "encoding": "utf-8", "error": message},
            )
        return self.classify(rec, data, settings)

    async def process(self, batch: FileBatch, context: PipelineContext) -> FileBatch:
        settings = context.settings
        structure_globs = normalize_globs(settings.structure_only)

        async def load(rec: FileRecord) -> FileRecord | None:
            if structure_globs and match_any_glob(rec.path, structure_globs):
                return rec.model_copy(update={"structure_only": True, "content": "", "excluded_reason": "structure-only"})
            return await self._load(rec, settings, context)

        loaded = await asyncio.gather(*(load(r) for r in batch.files))
        files = [r for r in loaded if r is not None]
        errors = sum(1 for r in files if r.error is not None)
        binaries = sum(1 for r in files if r.is_binary)
        context.file_batch(self.name, len(files), FileAction.PROCESSED)
        logger.info("loaded files", files=len(files), skipped=len(loaded) - len(files), errors=errors)
        return batch.with_files(
            files,
            loaded_count=len(files),
            skipped_count=len(loaded) - len(files),
            load_errors=errors,
            binary_count=binaries,
        )


class RenderStage(Stage):
    """Format the batch as md, jsonl or xml.

    With ``settings.stream`` and a ``sink``, chunks are handed to the sink as
    they are produced and ``batch.output`` stays empty; otherwise the text is
    buffered into ``batch.output``.
    """

    name = "render"

    def __init__(
        self,
        sink: Callable[[str], Any] | None = None,
        *,
        fmt: str | None = None,
        generated_at: str | None = None,
        recoverable: bool | None = None,
    ) -> None:
        super().__init__(recoverable=recoverable)
        self.sink = sink
        self.fmt = fmt
        self.generated_at = generated_at

    async def process(self, batch: FileBatch, context: PipelineContext) -> FileBatch:
        await context.limiter.wait_for_domain("transform")
        settings = context.settings
        fmt = resolve_format(settings.output, self.fmt or settings.format)
        start = time.perf_counter()
        chunks = iter_chunks(batch, fmt, settings, generated_at=self.generated_at)
        if settings.stream and self.sink is not None:
            count = 0
            for chunk in chunks:
                result = self.sink(chunk)
                if inspect.isawaitable(result):
                    await result
                count += 1
            logger.info("streamed output", format=fmt, chunks=count)
            return batch.with_files(batch.files, format=fmt, chunks=count, render_duration=time.perf_counter() - start)
        parts = list(chunks)
        logger.info("rendered output", format=fmt, chunks=len(parts))
        return batch.model_copy(
            update={
                "output": "".join(parts),
                "stats": {
                    **batch.stats,
                    "format": fmt,
                    "chunks": len(parts),
                    "render_duration": time.perf_counter() - start,
                },
            },
        )

