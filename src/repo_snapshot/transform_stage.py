from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from repo_snapshot.events import FileAction
from repo_snapshot.exceptions import NoTransformerError, StageError
from repo_snapshot.logging import logger
from repo_snapshot.pipeline import Stage
from repo_snapshot.transformers import Deferred, TransformerRegistry

if TYPE_CHECKING:
    from collections.abc import Callable

    from repo_snapshot.cache import TransformCache
    from repo_snapshot.config import FileBatch, FileRecord
    from repo_snapshot.pipeline import PipelineContext
    from repo_snapshot.settings import Settings, TransformerSettings
    from repo_snapshot.transformers import BaseTransformer

ERROR_MESSAGE_LIMIT = 500
TRANSFORM_DOMAIN = "transform"


def error_marker(message: str) -> str:
    return f"[Transform error: {message[:ERROR_MESSAGE_LIMIT]}]"


def with_error(file: FileRecord, message: str) -> FileRecord:
    """Derive a record carrying a transform error in place of its content."""
    message = message[:ERROR_MESSAGE_LIMIT]
    return file.model_copy(
        update={"content": error_marker(message), "encoding": "utf-8", "error": message, "transformed": False},
    )


def transformer_settings(settings: Settings, transformer: BaseTransformer) -> TransformerSettings | None:
    """Find the configuration of a transformer.

    Keys match the transformer name or class name exactly, then
    case-insensitively, then by short name (class name without the
    ``Transformer`` suffix, lowercased).
    """
    configured = settings.transformers
    if not configured:
        return None
    class_name = type(transformer).__name__
    for key in (transformer.name, class_name):
        if key in configured:
            return configured[key]
    lowered = {k.lower(): v for k, v in configured.items()}
    for key in (transformer.name.lower(), class_name.lower(), class_name.removesuffix("Transformer").lower()):
        if key in lowered:
            return lowered[key]
    return None


@dataclass
class _Work:
    """Per-file bookkeeping between the concurrent phase and the ordered rebuild."""

    file: FileRecord
    transformer: BaseTransformer | None = None
    identity: str | None = None
    result: str | Deferred | None = None
    error: Exception | None = None
    owner: _Work | None = None
    from_cache: bool = False
    settled: bool = False


class TransformStage(Stage):
    """Apply transformers to loaded files.

    Files are transformed concurrently within the ``transform`` limiter
    domain; results come back in input order. A failing transformer marks
    only its own file. Cache keys are (transformer identity, content hash),
    and files sharing a key in the same run share one computation.
    """

    name = "transform"
    recoverable = True

    def __init__(
        self,
        registry: TransformerRegistry | None = None,
        *,
        registry_factory: Callable[[Settings], TransformerRegistry] | None = None,
        cache: TransformCache | None = None,
        recoverable: bool | None = None,
    ) -> None:
        super().__init__(recoverable=recoverable)
        self.registry = registry
        self.registry_factory = registry_factory
        self.cache = cache
        self._started = 0.0

    def _registry(self, settings: Settings) -> TransformerRegistry:
        if self.registry is None:
            factory = self.registry_factory or TransformerRegistry.create_default
            try:
                self.registry = factory(settings)
            except Exception as e:
                raise StageError(
                    message=f"Cannot build transformer registry: {e}",
                    stage=self.name,
                    recoverable=self.recoverable,
                ) from e
        return self.registry

    def _select(self, registry: TransformerRegistry, file: FileRecord, settings: Settings) -> BaseTransformer | None:
        try:
            transformer = registry.get_for_file(file)
        except NoTransformerError:
            return None
        except Exception as e:  # noqa: BLE001
            logger.warning("transformer lookup failed", path=file.path, error=str(e))
            return None
        configured = transformer_settings(settings, transformer)
        if configured is not None and not configured.enabled:
            logger.debug("transformer disabled", transformer=transformer.name, path=file.path)
            return None
        return transformer

    async def process(self, batch: FileBatch, context: PipelineContext) -> FileBatch:
        self._started = time.perf_counter()
        settings = context.settings
        registry = self._registry(settings)
        cache = None if settings.no_cache else (self.cache or context.cache)
        limiter = context.limiter.get_limiter_for(TRANSFORM_DOMAIN)
        in_flight: dict[str, _Work] = {}
        cache_hits = 0

        async def run(file: FileRecord) -> _Work:
            nonlocal cache_hits
            transformer = self._select(registry, file, settings)
            if transformer is None:
                return _Work(file=file, settled=True)
            work = _Work(file=file, transformer=transformer)
            use_cache = cache is not None and transformer.cache_enabled and file.content_hash is not None
            if use_cache:
                work.identity = transformer.cache_identity(file)
                key = cache.make_key(work.identity, file.content_hash)
                if key in in_flight:
                    work.owner = in_flight[key]
                    return work
                try:
                    entry = await cache.get(work.identity, file.content_hash)
                except Exception as e:  # noqa: BLE001
                    logger.warning("cache lookup failed", path=file.path, error=str(e))
                    entry = None
                if entry is not None:
                    cache_hits += 1
                    work.result, work.from_cache, work.settled = entry.content, True, True
                    return work
                # no await between this check and the registration below
                if key in in_flight:
                    work.owner = in_flight[key]
                    return work
                in_flight[key] = work
            try:
                work.result = await limiter(transformer.transform, file)
            except Exception as e:  # noqa: BLE001
                logger.warning("transform failed", path=file.path, transformer=transformer.name, error=str(e))
                work.error = e
            return work

        works = await asyncio.gather(*(run(f) for f in batch.files))

        await context.limiter.wait_for_domain(TRANSFORM_DOMAIN)
        await self._flush(registry)

        for work in works:
            if work.owner is None:
                await self._settle(work, cache)

        files: list[FileRecord] = []
        transformed = errors = 0
        for work in works:
            record = self._record(work)
            if record.error is not None and record.error != work.file.error:
                errors += 1
            elif record.transformed and record is not work.file:
                transformed += 1
            files.append(record)

        context.file_batch(self.name, transformed, FileAction.TRANSFORMED)
        logger.info(
            "transform stage done",
            files=len(files),
            transformed=transformed,
            errors=errors,
            cache_hits=cache_hits,
        )
        return batch.with_files(
            files,
            transformed_count=transformed,
            transform_errors=errors,
            cache_hits=cache_hits,
            transform_duration=time.perf_counter() - self._started,
        )

    async def _flush(self, registry: TransformerRegistry) -> None:
        seen: set[int] = set()
        for transformer in registry.get_all_transformers():
            if id(transformer) in seen:
                continue
            seen.add(id(transformer))
            logger.debug("flushing heavy transformer", transformer=transformer.name)
            try:
                await transformer.flush()
            except Exception as e:  # noqa: BLE001
                logger.error("flush failed", transformer=transformer.name, error=str(e))  # noqa: TRY400

    async def _settle(self, work: _Work, cache: TransformCache | None) -> None:
        if work.settled:
            return
        work.settled = True
        if isinstance(work.result, Deferred):
            try:
                work.result = work.result.result()
            except Exception as e:  # noqa: BLE001
                work.result, work.error = None, e
        if work.error is None and isinstance(work.result, str) and work.identity is not None and cache is not None:
            try:
                await cache.set(work.identity, work.file.content_hash or "", work.result, work.transformer.name)
            except Exception as e:  # noqa: BLE001
                logger.warning("cache write failed", path=work.file.path, error=str(e))

    def _record(self, work: _Work) -> FileRecord:
        source = work.owner or work
        if source.transformer is None and work.transformer is None:
            return work.file
        if source.error is not None:
            return with_error(work.file, str(source.error) or type(source.error).__name__)
        if source.result is None:
            return work.file
        return work.file.model_copy(
            update={
                "content": source.result,
                "encoding": "utf-8",
                "transformed": True,
                "transformed_by": work.transformer.name,
            },
        )

    async def handle_error(self, error: Exception, batch: FileBatch, context: PipelineContext) -> FileBatch:
        if not (isinstance(error, StageError) and error.recoverable):
            raise error
        message = str(error) or type(error).__name__
        files = [with_error(f, message) for f in batch.files]
        context.file_batch(self.name, 0, FileAction.TRANSFORMED)
        return batch.model_copy(
            update={
                "files": tuple(files),
                "recovered_from_error": True,
                "stats": {
                    **batch.stats,
                    "transformed_count": 0,
                    "transform_errors": len(files),
                    "cache_hits": 0,
                    "transform_duration": time.perf_counter() - self._started if self._started else 0.0,
                },
            },
        )


