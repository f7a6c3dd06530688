"""Publish/subscribe bus scoped to one pipeline instance.

Payloads are frozen pydantic models, deep-copied once at emission so that a
listener never sees later changes to what it was handed.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from repo_snapshot.config import FileBatch, MemoryUsage, PipelineMetrics
from repo_snapshot.logging import logger

if TYPE_CHECKING:
    from collections.abc import Callable

    Listener = Callable[[BaseModel], Any]


class Event(StrEnum):
    PIPELINE_START = "pipeline:start"
    PIPELINE_COMPLETE = "pipeline:complete"
    PIPELINE_ERROR = "pipeline:error"
    STAGE_START = "stage:start"
    STAGE_COMPLETE = "stage:complete"
    STAGE_ERROR = "stage:error"
    STAGE_RECOVER = "stage:recover"
    FILE_BATCH = "file:batch"


class FileAction(StrEnum):
    DISCOVERED = "discovered"
    FILTERED = "filtered"
    PROCESSED = "processed"
    TRANSFORMED = "transformed"


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class PipelineStartPayload(_Payload):
    input: FileBatch
    stages: tuple[str, ...]
    options: dict[str, Any] = Field(default_factory=dict)


class StageStartPayload(_Payload):
    stage: str
    input: FileBatch


class StageCompletePayload(_Payload):
    stage: str
    output: FileBatch
    duration: float
    memory_usage: MemoryUsage


class StageErrorPayload(_Payload):
    stage: str
    error: str
    error_type: str


class StageRecoverPayload(_Payload):
    stage: str
    error: str
    output: FileBatch


class PipelineCompletePayload(_Payload):
    output: FileBatch
    metrics: PipelineMetrics


class PipelineErrorPayload(_Payload):
    error: str
    error_type: str
    stage: str | None = None


class FileBatchPayload(_Payload):
    stage: str
    count: int
    action: FileAction


class EventBus:
    """Named events with any number of listeners each.

    Listeners may be plain callables or coroutine functions; coroutines are
    scheduled on the running loop. A failing listener is logged and ignored.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[tuple[Listener, bool]]] = defaultdict(list)
        self._tasks: set[asyncio.Task[Any]] = set()

    def on(self, event: str, listener: Listener) -> Callable[[], None]:
        """Subscribe ``listener``; returns a function that unsubscribes it."""
        self._listeners[str(event)].append((listener, False))
        return lambda: self.off(event, listener)

    def once(self, event: str, listener: Listener) -> Callable[[], None]:
        """Subscribe ``listener`` for the next emission only."""
        self._listeners[str(event)].append((listener, True))
        return lambda: self.off(event, listener)

    def off(self, event: str, listener: Listener | None = None) -> None:
        """Remove one listener, or all listeners of ``event`` when none is given."""
        key = str(event)
        if listener is None:
            self._listeners.pop(key, None)
            return
        self._listeners[key] = [(fn, one) for fn, one in self._listeners[key] if fn is not listener]

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(str(event), []))

    def emit(self, event: str, payload: BaseModel) -> int:
        """Deliver a snapshot of ``payload`` to every listener of ``event``.

        Returns:
            int: number of listeners called.
        """
        key = str(event)
        listeners = self._listeners.get(key)
        if not listeners:
            return 0
        snapshot = payload.model_copy(deep=True)
        self._listeners[key] = [(fn, one) for fn, one in listeners if not one]
        for listener, _once in listeners:
            try:
                result = listener(snapshot)
                if inspect.isawaitable(result):
                    self._schedule(key, result)
            except Exception as e:  # noqa: BLE001
                logger.warning("event listener failed", event_name=key, error=str(e))
        return len(listeners)

    def _schedule(self, key: str, awaitable: Any) -> None:  # noqa: ANN401
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.warning("event listener failed", event_name=key, error=str(t.exception()))

        task.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait for scheduled coroutine listeners."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
