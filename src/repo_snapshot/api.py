"""Programmatic entry point: build the default pipeline and run it."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from repo_snapshot.cache import FileCacheStore, MemoryCacheStore, TransformCache
from repo_snapshot.config import FileBatch, FileRecord, PipelineMetrics
from repo_snapshot.logging import logger
from repo_snapshot.pipeline import Pipeline
from repo_snapshot.profiles import Profile, ProfileLoader
from repo_snapshot.settings import Settings, TransformerSettings
from repo_snapshot.stages import DiscoveryStage, ExternalSourceStage, FilterStage, LoadingStage, RenderStage
from repo_snapshot.task_limiter import initialize_task_limiter
from repo_snapshot.transform_stage import TransformStage

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from repo_snapshot.task_limiter import TaskLimiter
    from repo_snapshot.transformers import TransformerRegistry


class SnapshotResult(BaseModel):
    """Outcome of one snapshot run."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    root: Path
    format: str
    output: str | None = Field(default=None, description="Rendered text, None when streamed")
    files: tuple[FileRecord, ...] = ()
    stats: dict[str, Any] = Field(default_factory=dict)
    metrics: PipelineMetrics | None = None
    profile: str = ""
    recovered_from_error: bool = False


def load_profile(settings: Settings) -> Profile:
    """Resolve ``settings.profile`` against the project, extra and built-in locations.

    Raises:
        ConfigurationError: if the profile cannot be resolved.
    """
    loader = ProfileLoader(project_dir=Path(settings.repo), search_dirs=settings.profile_dirs)
    return loader.load(settings.profile)


def apply_profile_transforms(settings: Settings, profile: Profile) -> Settings:
    """Fold the profile ``transforms`` entries into ``settings.transformers``.

    Profile options extend the configured ones; the profile decides ``enabled``.
    """
    if not profile.transforms:
        return settings
    transformers = dict(settings.transformers)
    for override in profile.transforms:
        current = transformers.get(override.name)
        options = {**(current.options if current else {}), **override.options}
        transformers[override.name] = TransformerSettings(enabled=override.enabled, options=options)
    return settings.model_copy(update={"transformers": transformers})


def build_cache(settings: Settings) -> TransformCache | None:
    if settings.no_cache:
        return None
    if settings.cache_dir is not None:
        return TransformCache(FileCacheStore(settings.cache_dir, ttl=settings.cache_ttl))
    return TransformCache(MemoryCacheStore())


def build_pipeline(
    settings: Settings,
    *,
    profile: Profile | None = None,
    sink: Callable[[str], Any] | None = None,
    registry: TransformerRegistry | None = None,
    cache: TransformCache | None = None,
    limiter: TaskLimiter | None = None,
) -> Pipeline:
    """Assemble discovery, filter, external, loading, transform and render stages.

    Args:
        settings: run configuration.
        profile: resolved profile; filtering keeps everything without one.
        sink: receiver of rendered chunks when ``settings.stream`` is set.
        registry: transformer registry, built from settings when omitted.
        cache: transform cache, built from settings when omitted.
        limiter: task limiter, the global one when omitted.

    Returns:
        Pipeline: the ready pipeline.
    """
    if limiter is None:
        limiter = initialize_task_limiter(settings.concurrency.total_budget, settings.concurrency.budgets)
    stages = [
        DiscoveryStage(),
        FilterStage(),
        ExternalSourceStage(),
        LoadingStage(),
        TransformStage(registry),
        RenderStage(sink),
    ]
    return Pipeline(
        stages,
        settings,
        limiter=limiter,
        cache=cache if cache is not None else build_cache(settings),
        profile=profile,
    )


async def snapshot_async(
    settings: Settings,
    *,
    profile: Profile | None = None,
    sink: Callable[[str], Any] | None = None,
    registry: TransformerRegistry | None = None,
    cache: TransformCache | None = None,
    limiter: TaskLimiter | None = None,
    listeners: Mapping[str, Callable[[Any], Any]] | None = None,
) -> SnapshotResult:
    """Run a snapshot on the running event loop.

    Raises:
        ConfigurationError: if the profile cannot be resolved.
        Exception: the error of a stage that did not recover.

    Returns:
        SnapshotResult: rendered output, files, stats and metrics.
    """
    if profile is None:
        profile = load_profile(settings)
    settings = apply_profile_transforms(settings, profile)
    pipeline = build_pipeline(settings, profile=profile, sink=sink, registry=registry, cache=cache, limiter=limiter)
    for event_name, listener in (listeners or {}).items():
        pipeline.on(event_name, listener)
    logger.info("snapshot started", repo=str(settings.repo), profile=profile.name)
    batch: FileBatch = await pipeline.process(FileBatch(root=Path(settings.repo)))
    return SnapshotResult(
        root=batch.root,
        format=str(batch.stats.get("format", "md")),
        output=batch.output,
        files=batch.files,
        stats=batch.stats,
        metrics=pipeline.metrics,
        profile=profile.name,
        recovered_from_error=batch.recovered_from_error,
    )


def snapshot(settings: Settings | None = None, **kwargs: Any) -> SnapshotResult:  # noqa: ANN401
    """Run a snapshot in a fresh event loop; see ``snapshot_async``."""
    return asyncio.run(snapshot_async(settings or Settings(), **kwargs))
