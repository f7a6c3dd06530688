from __future__ import annotations

import asyncio

import pytest

from repo_snapshot.exceptions import TaskQueueClearedError
from repo_snapshot.task_limiter import (
    DomainLimiter,
    TaskLimiter,
    default_budgets,
    get_task_limiter,
    initialize_task_limiter,
)


@pytest.mark.unit
def test_default_budgets_split_the_total() -> None:
    assert default_budgets(20) == {"discovery": 8, "glob": 6, "transform": 6}
    assert default_budgets(1) == {"discovery": 1, "glob": 1, "transform": 1}


@pytest.mark.unit
async def test_active_count_never_exceeds_budget() -> None:
    limiter = TaskLimiter(budgets={"transform": 3})
    running = 0
    peak = 0

    async def work() -> None:
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1

    await asyncio.gather(*(limiter.run("transform", work) for _ in range(12)))

    assert peak == 3
    assert limiter.get_stats("transform")["completed"] == 12


@pytest.mark.unit
async def test_queued_work_starts_in_fifo_order() -> None:
    limiter = DomainLimiter("io", 1)
    started: list[int] = []

    async def work(i: int) -> int:
        started.append(i)
        await asyncio.sleep(0)
        return i

    results = await asyncio.gather(*(limiter(work, i) for i in range(5)))

    assert started == [0, 1, 2, 3, 4]
    assert results == [0, 1, 2, 3, 4]


@pytest.mark.unit
async def test_wait_for_domain_resolves_when_idle() -> None:
    limiter = TaskLimiter(budgets={"glob": 1})
    release = asyncio.Event()

    async def blocked() -> None:
        await release.wait()

    tasks = [asyncio.ensure_future(limiter.run("glob", blocked)) for _ in range(3)]
    await asyncio.sleep(0)
    assert limiter.get_active_count("glob") == 1
    assert limiter.get_pending_count("glob") == 2

    waiter = asyncio.ensure_future(limiter.wait_for_domain("glob"))
    await asyncio.sleep(0)
    assert not waiter.done()

    release.set()
    await waiter
    assert limiter.get_active_count("glob") == 0
    assert limiter.get_pending_count("glob") == 0
    await asyncio.gather(*tasks)


@pytest.mark.unit
async def test_wait_for_all_resolves_when_every_domain_is_idle() -> None:
    limiter = TaskLimiter(budgets={"glob": 1, "transform": 1})
    glob_done = asyncio.Event()
    transform_done = asyncio.Event()

    glob_task = asyncio.ensure_future(limiter.run("glob", glob_done.wait))
    transform_task = asyncio.ensure_future(limiter.run("transform", transform_done.wait))
    await asyncio.sleep(0)

    waiter = asyncio.ensure_future(limiter.wait_for_all())
    glob_done.set()
    await glob_task
    await asyncio.sleep(0)
    assert not waiter.done()

    transform_done.set()
    await asyncio.wait_for(waiter, timeout=1)
    assert limiter.get_active_count("glob") == 0
    assert limiter.get_active_count("transform") == 0
    await transform_task


@pytest.mark.unit
async def test_unknown_domain_is_idle_and_zeroed() -> None:
    limiter = TaskLimiter()

    await asyncio.wait_for(limiter.wait_for_domain("never-used"), timeout=1)

    assert limiter.get_active_count("never-used") == 0
    assert limiter.get_pending_count("never-used") == 0
    assert limiter.get_stats("never-used")["budget"] == 0


@pytest.mark.unit
async def test_clear_all_rejects_queued_work_only() -> None:
    limiter = TaskLimiter(budgets={"transform": 1})
    release = asyncio.Event()

    async def blocked() -> str:
        await release.wait()
        return "done"

    running = asyncio.ensure_future(limiter.run("transform", blocked))
    queued = asyncio.ensure_future(limiter.run("transform", blocked))
    await asyncio.sleep(0)

    assert limiter.clear_all() == 1
    release.set()

    assert await running == "done"
    with pytest.raises(TaskQueueClearedError):
        await queued


@pytest.mark.unit
async def test_raising_the_budget_starts_queued_work() -> None:
    limiter = TaskLimiter(budgets={"io": 1})
    release = asyncio.Event()

    async def blocked() -> None:
        await release.wait()

    tasks = [asyncio.ensure_future(limiter.run("io", blocked)) for _ in range(3)]
    await asyncio.sleep(0)
    limiter.set_budget("io", 3)

    assert limiter.get_active_count("io") == 3
    release.set()
    await asyncio.gather(*tasks)


@pytest.mark.unit
def test_budget_below_one_is_rejected() -> None:
    limiter = TaskLimiter()

    with pytest.raises(ValueError, match="at least 1"):
        limiter.set_budget("io", 0)
    with pytest.raises(ValueError, match="at least 1"):
        DomainLimiter("io", 0)


@pytest.mark.unit
async def test_sync_functions_and_failures_are_counted() -> None:
    limiter = TaskLimiter()

    def boom() -> None:
        msg = "nope"
        raise RuntimeError(msg)

    assert await limiter.run("misc", len, "abc") == 3
    with pytest.raises(RuntimeError, match="nope"):
        await limiter.run("misc", boom)

    stats = limiter.get_stats("misc")
    assert stats["budget"] == 5
    assert stats["completed"] == 1
    assert stats["failed"] == 1


@pytest.mark.unit
def test_global_limiter_first_initialization_wins() -> None:
    first = initialize_task_limiter(10)
    second = initialize_task_limiter(50)

    assert second is first
    assert get_task_limiter().total_budget == 10
