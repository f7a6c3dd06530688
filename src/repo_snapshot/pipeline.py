"""Ordered stage execution with timing, memory figures and lifecycle events."""

from __future__ import annotations

import time
import tracemalloc
from dataclasses import dataclass, field
from enum import StrEnum, auto
from typing import TYPE_CHECKING, Any

from repo_snapshot.cache import TransformCache
from repo_snapshot.config import FileBatch, MemoryUsage, PipelineMetrics, StageTiming
from repo_snapshot.events import (
    Event,
    EventBus,
    FileAction,
    FileBatchPayload,
    PipelineCompletePayload,
    PipelineErrorPayload,
    PipelineStartPayload,
    StageCompletePayload,
    StageErrorPayload,
    StageRecoverPayload,
    StageStartPayload,
)
from repo_snapshot.exceptions import StageError
from repo_snapshot.logging import logger
from repo_snapshot.settings import Settings
from repo_snapshot.task_limiter import TaskLimiter, get_task_limiter

if TYPE_CHECKING:
    from collections.abc import Iterable

    from repo_snapshot.profiles import Profile


class PipelineState(StrEnum):
    IDLE = auto()
    RUNNING = auto()
    COMPLETED = auto()
    FAILED = auto()


@dataclass
class PipelineContext:
    """Collaborators shared by the stages of one run."""

    settings: Settings
    events: EventBus
    limiter: TaskLimiter
    cache: TransformCache | None = None
    profile: Profile | None = None
    extras: dict[str, Any] = field(default_factory=dict)

    def file_batch(self, stage: str, count: int, action: FileAction) -> None:
        self.events.emit(Event.FILE_BATCH, FileBatchPayload(stage=stage, count=count, action=action))


class Stage:
    """Base class of pipeline stages.

    ``process`` returns a new batch and never mutates its input. When it
    raises, the pipeline calls ``handle_error``: returning a batch recovers,
    raising aborts the run.
    """

    name: str = ""
    recoverable: bool = False

    def __init__(self, *, recoverable: bool | None = None) -> None:
        if recoverable is not None:
            self.recoverable = recoverable
        if not self.name:
            self.name = type(self).__name__

    async def process(self, batch: FileBatch, context: PipelineContext) -> FileBatch:
        raise NotImplementedError

    async def handle_error(self, error: Exception, batch: FileBatch, context: PipelineContext) -> FileBatch:  # noqa: ARG002
        raise error

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


def _memory() -> MemoryUsage:
    if not tracemalloc.is_tracing():
        return MemoryUsage()
    current, peak = tracemalloc.get_traced_memory()
    return MemoryUsage(heap_used=current, heap_total=peak)


class Pipeline:
    """Run stages in order over a ``FileBatch``.

    Each pipeline owns its event bus. A pipeline instance can run once at a
    time; ``state`` tracks ``idle -> running -> completed | failed``.
    """

    def __init__(
        self,
        stages: Iterable[Stage] = (),
        settings: Settings | None = None,
        *,
        limiter: TaskLimiter | None = None,
        cache: TransformCache | None = None,
        profile: Profile | None = None,
    ) -> None:
        self.stages: list[Stage] = list(stages)
        self.settings = settings or Settings()
        self.events = EventBus()
        self.limiter = limiter or get_task_limiter()
        self.cache = cache
        self.profile = profile
        self.state = PipelineState.IDLE
        self.stage_timings: list[StageTiming] = []
        self.metrics: PipelineMetrics | None = None
        self.failed_stage: str | None = None

    def through(self, stages: Iterable[Stage]) -> Pipeline:
        self.stages.extend(stages)
        return self

    def on(self, event: str, listener: Any) -> Pipeline:  # noqa: ANN401
        self.events.on(event, listener)
        return self

    def context(self) -> PipelineContext:
        return PipelineContext(
            settings=self.settings,
            events=self.events,
            limiter=self.limiter,
            cache=self.cache,
            profile=self.profile,
        )

    async def process(self, batch: FileBatch) -> FileBatch:
        """Run every stage over ``batch``.

        Raises:
            Exception: the error of a stage whose ``handle_error`` did not recover.

        Returns:
            FileBatch: the output of the last stage.
        """
        started_tracing = self.settings.track_memory and not tracemalloc.is_tracing()
        if started_tracing:
            tracemalloc.start()
        self.state = PipelineState.RUNNING
        self.stage_timings = []
        self.failed_stage = None
        context = self.context()
        start = time.perf_counter()
        self.events.emit(
            Event.PIPELINE_START,
            PipelineStartPayload(
                input=batch,
                stages=tuple(s.name for s in self.stages),
                options=self.settings.model_dump(mode="json"),
            ),
        )
        logger.info("pipeline started", stages=[s.name for s in self.stages], files=len(batch.files))
        current = batch
        try:
            for stage in self.stages:
                current = await self._run_stage(stage, current, context)
        except Exception as e:
            self.state = PipelineState.FAILED
            self.limiter.clear_all()
            failed_stage = e.stage if isinstance(e, StageError) and e.stage else self.failed_stage
            self.events.emit(
                Event.PIPELINE_ERROR,
                PipelineErrorPayload(error=str(e), error_type=type(e).__name__, stage=failed_stage),
            )
            logger.error("pipeline failed", stage=failed_stage, error=str(e))  # noqa: TRY400
            raise
        finally:
            memory = _memory()
            if started_tracing:
                tracemalloc.stop()
            await self.events.drain()

        self.metrics = PipelineMetrics(
            duration=time.perf_counter() - start,
            stage_timings=tuple(self.stage_timings),
            memory_usage=memory,
        )
        self.state = PipelineState.COMPLETED
        self.events.emit(Event.PIPELINE_COMPLETE, PipelineCompletePayload(output=current, metrics=self.metrics))
        await self.events.drain()
        logger.info("pipeline completed", duration=round(self.metrics.duration, 3), files=len(current.files))
        return current

    async def _run_stage(self, stage: Stage, batch: FileBatch, context: PipelineContext) -> FileBatch:
        self.events.emit(Event.STAGE_START, StageStartPayload(stage=stage.name, input=batch))
        start = time.perf_counter()
        try:
            output = await stage.process(batch, context)
        except Exception as e:
            self.events.emit(
                Event.STAGE_ERROR,
                StageErrorPayload(stage=stage.name, error=str(e), error_type=type(e).__name__),
            )
            logger.warning("stage failed", stage=stage.name, error=str(e))
            try:
                output = await stage.handle_error(e, batch, context)
            except Exception:
                self.failed_stage = stage.name
                raise
            output = output.model_copy(update={"recovered_from_error": True})
            timing = StageTiming(
                name=stage.name,
                duration=time.perf_counter() - start,
                memory_usage=_memory(),
                recovered=True,
            )
            self.stage_timings.append(timing)
            self.events.emit(Event.STAGE_RECOVER, StageRecoverPayload(stage=stage.name, error=str(e), output=output))
            return output

        timing = StageTiming(name=stage.name, duration=time.perf_counter() - start, memory_usage=_memory())
        self.stage_timings.append(timing)
        self.events.emit(
            Event.STAGE_COMPLETE,
            StageCompletePayload(
                stage=stage.name,
                output=output,
                duration=timing.duration,
                memory_usage=timing.memory_usage,
            ),
        )
        return output
