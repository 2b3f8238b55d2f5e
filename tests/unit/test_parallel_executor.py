"""
Tests for the bounded parallel executor.
"""

import asyncio

import pytest

from testsmith.engine.parallel_executor import ExecutionTask, ParallelExecutor


async def simple_task(value: int) -> int:
    """Simple async task for testing."""
    await asyncio.sleep(0.01)
    return value * 2


async def failing_task() -> None:
    """Task that always fails."""
    await asyncio.sleep(0.01)
    raise ValueError("Task failed")


@pytest.mark.asyncio
async def test_execute_single_task():
    """Test executing a single task."""
    executor = ParallelExecutor(max_workers=1)

    results = await executor.execute_tasks([ExecutionTask(id="task-1", func=simple_task, args=(5,))])

    assert len(results) == 1
    assert results["task-1"].success is True
    assert results["task-1"].result == 10


@pytest.mark.asyncio
async def test_execute_parallel_tasks():
    """Test executing multiple tasks in parallel."""
    executor = ParallelExecutor(max_workers=3)

    tasks = [ExecutionTask(id=f"task-{i}", func=simple_task, args=(i,)) for i in range(5)]

    results = await executor.execute_tasks(tasks)

    assert list(results) == [f"task-{i}" for i in range(5)]
    for i in range(5):
        assert results[f"task-{i}"].result == i * 2


@pytest.mark.asyncio
async def test_empty_task_list():
    assert await ParallelExecutor(max_workers=2).execute_tasks([]) == {}


@pytest.mark.asyncio
async def test_concurrency_never_exceeds_max_workers():
    """At most max_workers tasks run at once."""
    active = 0
    peak = 0

    async def tracked() -> None:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1

    tasks = [ExecutionTask(id=str(i), func=tracked) for i in range(10)]
    await ParallelExecutor(max_workers=3).execute_tasks(tasks)

    assert peak == 3


@pytest.mark.asyncio
async def test_dispatch_follows_submission_order():
    started: list[int] = []

    async def record(i: int) -> None:
        started.append(i)
        await asyncio.sleep(0)

    tasks = [ExecutionTask(id=str(i), func=record, args=(i,)) for i in range(6)]
    await ParallelExecutor(max_workers=1).execute_tasks(tasks)

    assert started == list(range(6))


@pytest.mark.asyncio
async def test_failure_does_not_stop_siblings():
    tasks = [
        ExecutionTask(id="ok-1", func=simple_task, args=(1,)),
        ExecutionTask(id="bad", func=failing_task),
        ExecutionTask(id="ok-2", func=simple_task, args=(2,)),
    ]

    results = await ParallelExecutor(max_workers=2).execute_tasks(tasks)

    assert results["ok-1"].success and results["ok-2"].success
    assert results["bad"].success is False
    assert isinstance(results["bad"].error, ValueError)


@pytest.mark.asyncio
async def test_task_timeout():
    """A task that exceeds its timeout is reported as timed out."""

    async def slow() -> None:
        await asyncio.sleep(10)

    results = await ParallelExecutor(max_workers=1).execute_tasks(
        [ExecutionTask(id="slow", func=slow, timeout=0.01)]
    )

    assert results["slow"].success is False
    assert results["slow"].timed_out is True


@pytest.mark.asyncio
async def test_closed_gate_leaves_tasks_undispatched():
    """Once should_dispatch returns False, remaining tasks are never started."""
    stop = asyncio.Event()
    started: list[int] = []

    async def work(i: int) -> int:
        started.append(i)
        if i == 1:
            stop.set()
        await asyncio.sleep(0.01)
        return i

    tasks = [ExecutionTask(id=str(i), func=work, args=(i,)) for i in range(5)]
    results = await ParallelExecutor(max_workers=1).execute_tasks(tasks, should_dispatch=lambda: not stop.is_set())

    assert started == [0, 1]
    assert results["1"].success is True
    assert [results[str(i)].dispatched for i in range(5)] == [True, True, False, False, False]


def test_rejects_zero_workers():
    with pytest.raises(ValueError):
        ParallelExecutor(max_workers=0)
