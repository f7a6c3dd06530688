"""Named-domain concurrency budgets on top of asyncio.

Each domain admits at most ``budget`` concurrently running tasks; the rest
wait in arrival order. Counters change synchronously, before any await, so
they are consistent whenever another task gets to run.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import deque
from typing import TYPE_CHECKING, Any

from repo_snapshot.exceptions import TaskQueueClearedError
from repo_snapshot.logging import logger

if TYPE_CHECKING:
    from collections.abc import Callable

DEFAULT_TOTAL_BUDGET = 20
DEFAULT_DOMAIN_BUDGET = 5
DOMAIN_SHARES: dict[str, float] = {
    "discovery": 0.4,
    "glob": 0.3,
    "transform": 0.3,
}


def default_budgets(total_budget: int = DEFAULT_TOTAL_BUDGET) -> dict[str, int]:
    """Split a total budget across the known domains (never below 1)."""
    return {domain: max(1, int(total_budget * share)) for domain, share in DOMAIN_SHARES.items()}


class DomainLimiter:
    """Concurrency gate for one domain.

    Calling the limiter runs ``fn(*args, **kwargs)`` (sync or async) once a
    slot is free and returns its result.
    """

    def __init__(self, domain: str, budget: int) -> None:
        if budget < 1:
            msg = f"Budget for domain {domain!r} must be at least 1, got {budget}"
            raise ValueError(msg)
        self.domain = domain
        self.budget = budget
        self.active = 0
        self.completed = 0
        self.failed = 0
        self._queue: deque[asyncio.Future[None]] = deque()
        self._idle_waiters: list[asyncio.Future[None]] = []

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def idle(self) -> bool:
        return self.active == 0 and not self._queue

    async def __call__(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:  # noqa: ANN401
        await self._acquire()
        try:
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except BaseException:
            self.failed += 1
            raise
        else:
            self.completed += 1
            return result
        finally:
            self._release()

    async def _acquire(self) -> None:
        if self.active < self.budget and not self._queue:
            self.active += 1
            return
        waiter = asyncio.get_running_loop().create_future()
        self._queue.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter in self._queue:
                self._queue.remove(waiter)
                self._notify_idle()
            elif waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                # the slot was already handed over
                self._release()
            raise

    def _release(self) -> None:
        self.active -= 1
        self._start_next()
        self._notify_idle()

    def _start_next(self) -> None:
        while self._queue and self.active < self.budget:
            waiter = self._queue.popleft()
            if waiter.done():
                continue
            self.active += 1
            waiter.set_result(None)

    def _notify_idle(self) -> None:
        if not self.idle:
            return
        waiters, self._idle_waiters = self._idle_waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)

    async def wait_idle(self) -> None:
        """Resolve once no task is running or queued."""
        if self.idle:
            return
        waiter = asyncio.get_running_loop().create_future()
        self._idle_waiters.append(waiter)
        await waiter

    def clear(self) -> int:
        """Reject every queued task; running ones finish.

        Returns:
            int: number of dropped tasks.
        """
        dropped = 0
        while self._queue:
            waiter = self._queue.popleft()
            if not waiter.done():
                waiter.set_exception(TaskQueueClearedError(domain=self.domain))
                dropped += 1
        self._notify_idle()
        return dropped

    def set_budget(self, budget: int) -> None:
        """Change the budget; a higher budget starts queued work at once.

        Raises:
            ValueError: if ``budget`` is below 1.
        """
        if budget < 1:
            msg = f"Budget for domain {self.domain!r} must be at least 1, got {budget}"
            raise ValueError(msg)
        self.budget = budget
        self._start_next()

    def stats(self) -> dict[str, int]:
        return {
            "budget": self.budget,
            "active": self.active,
            "pending": self.pending,
            "completed": self.completed,
            "failed": self.failed,
        }


class TaskLimiter:
    """Registry of domain limiters sharing one configuration."""

    def __init__(self, total_budget: int = DEFAULT_TOTAL_BUDGET, budgets: dict[str, int] | None = None) -> None:
        self.total_budget = total_budget
        self.budgets = {**default_budgets(total_budget), **(budgets or {})}
        self._domains: dict[str, DomainLimiter] = {}

    def get_limiter_for(self, domain: str, budget: int | None = None) -> DomainLimiter:
        """Return the limiter of ``domain``, creating it on first use.

        ``budget`` only applies when the domain is created.
        """
        limiter = self._domains.get(domain)
        if limiter is None:
            size = budget if budget is not None else self.budgets.get(domain, DEFAULT_DOMAIN_BUDGET)
            limiter = DomainLimiter(domain, size)
            self._domains[domain] = limiter
        return limiter

    async def run(self, domain: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:  # noqa: ANN401
        return await self.get_limiter_for(domain)(fn, *args, **kwargs)

    async def wait_for_domain(self, domain: str) -> None:
        """Resolve when ``domain`` has no active and no pending task (unknown: at once)."""
        limiter = self._domains.get(domain)
        if limiter is not None:
            await limiter.wait_idle()

    async def wait_for_all(self) -> None:
        while not all(d.idle for d in self._domains.values()):
            await asyncio.gather(*(d.wait_idle() for d in list(self._domains.values())))

    def clear_all(self) -> int:
        """Drop queued work in every domain.

        Returns:
            int: number of dropped tasks.
        """
        dropped = sum(d.clear() for d in self._domains.values())
        if dropped:
            logger.info("cleared queued tasks", dropped=dropped)
        return dropped

    def set_budget(self, domain: str, budget: int) -> None:
        """Set the budget of a domain, creating it if needed.

        Raises:
            ValueError: if ``budget`` is below 1.
        """
        if budget < 1:
            msg = f"Budget for domain {domain!r} must be at least 1, got {budget}"
            raise ValueError(msg)
        self.budgets[domain] = budget
        self.get_limiter_for(domain, budget).set_budget(budget)

    def get_active_count(self, domain: str) -> int:
        limiter = self._domains.get(domain)
        return limiter.active if limiter else 0

    def get_pending_count(self, domain: str) -> int:
        limiter = self._domains.get(domain)
        return limiter.pending if limiter else 0

    def get_stats(self, domain: str | None = None) -> dict[str, Any]:
        """Counters of one domain, or of all domains keyed by name."""
        if domain is None:
            return {name: d.stats() for name, d in self._domains.items()}
        limiter = self._domains.get(domain)
        if limiter is None:
            return {"budget": 0, "active": 0, "pending": 0, "completed": 0, "failed": 0}
        return limiter.stats()

    def reset(self) -> None:
        """Forget every domain; queued work is rejected first."""
        self.clear_all()
        self._domains.clear()


_TASK_LIMITER: TaskLimiter | None = None
_INITIALIZED = False


def initialize_task_limiter(
    total_budget: int = DEFAULT_TOTAL_BUDGET,
    budgets: dict[str, int] | None = None,
) -> TaskLimiter:
    """Configure the process-wide limiter. Only the first call has an effect.

    Returns:
        TaskLimiter: the global limiter.
    """
    global _TASK_LIMITER, _INITIALIZED  # noqa: PLW0603
    if _INITIALIZED and _TASK_LIMITER is not None:
        logger.debug("task limiter already initialized", total_budget=_TASK_LIMITER.total_budget)
        return _TASK_LIMITER
    _TASK_LIMITER = TaskLimiter(total_budget, budgets)
    _INITIALIZED = True
    return _TASK_LIMITER


def get_task_limiter() -> TaskLimiter:
    global _TASK_LIMITER  # noqa: PLW0603
    if _TASK_LIMITER is None:
        _TASK_LIMITER = TaskLimiter()
    return _TASK_LIMITER


def get_limiter_for(domain: str, budget: int | None = None) -> DomainLimiter:
    return get_task_limiter().get_limiter_for(domain, budget)


def reset_task_limiter() -> None:
    """Drop the global limiter so the next initialization takes effect."""
    global _TASK_LIMITER, _INITIALIZED  # noqa: PLW0603
    if _TASK_LIMITER is not None:
        _TASK_LIMITER.reset()
    _TASK_LIMITER = None
    _INITIALIZED = False
