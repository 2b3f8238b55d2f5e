"""
Bounded parallel task execution.

This module provides the worker pool shared by the generation orchestrator
(one task per generation unit) and the execution engine (one task per test
case). It implements:

- A fixed number of workers, ``min(max_workers, len(tasks))``
- Dispatch in submission order, so the first N tasks start first
- Per-task timeouts via ``asyncio.wait_for``
- A dispatch gate that lets callers stop handing out work mid-run

Architecture:
    1. ExecutionTask: Data class representing a task with its callable,
       arguments, and timeout.

    2. TaskResult: Outcome of one task, including whether it was ever
       dispatched.

    3. ParallelExecutor: Pool of workers pulling tasks from a shared
       iterator.

Execution Flow:
    1. Workers are started, at most one per task
    2. Each worker consults the dispatch gate, then takes the next task
    3. Task failures are captured in the result; siblings keep running
    4. Once the gate closes, workers finish their current task and exit;
       tasks never handed out are reported with ``dispatched=False``

Example:
    >>> executor = ParallelExecutor(max_workers=3)
    >>> tasks = [ExecutionTask(id=unit.id, func=generate, args=(unit,)) for unit in units]
    >>> results = await executor.execute_tasks(tasks)
    >>> failures = [r for r in results.values() if not r.success]
"""

import asyncio
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

import structlog

log = structlog.get_logger(__name__)


@dataclass
class ExecutionTask:
    """A unit of work for the pool.

    Attributes:
        id: Unique identifier for the task. Keys the result mapping.
        func: Async callable to execute.
        args: Positional arguments to pass to the callable.
        kwargs: Keyword arguments to pass to the callable.
        timeout: Maximum execution time in seconds, or None for no limit.
        metadata: Arbitrary metadata for logging.
    """

    id: str
    func: Callable[..., Any]
    args: tuple = field(default_factory=tuple)
    kwargs: dict = field(default_factory=dict)
    timeout: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class TaskResult:
    """Result of a task execution.

    Attributes:
        task_id: ID of the task.
        success: True if the task completed without error or timeout.
        result: Return value of the task callable (if successful).
        error: Exception that caused the task to fail (if unsuccessful).
        execution_time: Actual execution time in seconds.
        timed_out: True if the task was cancelled by its timeout.
        dispatched: False if the pool stopped before the task was started.
    """

    task_id: str
    success: bool
    result: Any = None
    error: Exception | None = None
    execution_time: float = 0.0
    timed_out: bool = False
    dispatched: bool = True


class ParallelExecutor:
    """Run tasks on a fixed pool of workers.

    Attributes:
        max_workers: Upper bound on concurrently running tasks.

    Example:
        >>> executor = ParallelExecutor(max_workers=4)
        >>> results = await executor.execute_tasks(tasks, should_dispatch=lambda: not stop.is_set())
    """

    def __init__(self, max_workers: int = 3) -> None:
        """Initialize the executor.

        Args:
            max_workers: Maximum number of tasks to run concurrently. Must
                be at least 1.
        """
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.max_workers = max_workers

    async def execute_tasks(
        self,
        tasks: list[ExecutionTask],
        should_dispatch: Callable[[], bool] | None = None,
    ) -> dict[str, TaskResult]:
        """Execute tasks with bounded concurrency.

        Args:
            tasks: Tasks in dispatch order.
            should_dispatch: Checked before each task is handed to a worker.
                Once it returns False no further task is started; running
                tasks are allowed to finish.

        Returns:
            Dictionary mapping every task ID to its TaskResult, in the
            order the tasks were given. Undispatched tasks have
            ``dispatched=False`` and ``success=False``.
        """
        results: dict[str, TaskResult] = {}
        if not tasks:
            return results

        workers = min(self.max_workers, len(tasks))
        pending: Iterator[ExecutionTask] = iter(tasks)
        log.info("parallel_execution_started", total_tasks=len(tasks), workers=workers)

        async def worker(worker_id: int) -> None:
            while True:
                if should_dispatch is not None and not should_dispatch():
                    return
                task = next(pending, None)
                if task is None:
                    return
                result = await self._execute_task(task)
                results[task.id] = result
                if result.success:
                    log.debug("task_completed", task_id=task.id, worker=worker_id)
                else:
                    log.warning("task_failed", task_id=task.id, worker=worker_id, error=str(result.error))

        await asyncio.gather(*(worker(i) for i in range(workers)))

        ordered: dict[str, TaskResult] = {}
        for task in tasks:
            ordered[task.id] = results.get(task.id) or TaskResult(
                task_id=task.id,
                success=False,
                dispatched=False,
            )

        log.info(
            "parallel_execution_complete",
            total=len(tasks),
            succeeded=sum(1 for r in ordered.values() if r.success),
            undispatched=sum(1 for r in ordered.values() if not r.dispatched),
        )
        return ordered

    async def _execute_task(self, task: ExecutionTask) -> TaskResult:
        """Run one task, capturing its outcome. Never raises."""
        start_time = time.monotonic()

        try:
            if task.timeout is None:
                result = await task.func(*task.args, **task.kwargs)
            else:
                result = await asyncio.wait_for(task.func(*task.args, **task.kwargs), timeout=task.timeout)
            return TaskResult(
                task_id=task.id,
                success=True,
                result=result,
                execution_time=time.monotonic() - start_time,
            )
        except TimeoutError as e:
            return TaskResult(
                task_id=task.id,
                success=False,
                error=e,
                execution_time=time.monotonic() - start_time,
                timed_out=True,
            )
        except Exception as e:
            return TaskResult(
                task_id=task.id,
                success=False,
                error=e,
                execution_time=time.monotonic() - start_time,
            )
