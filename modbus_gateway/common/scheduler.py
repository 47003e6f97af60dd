"""
Per-Connection Task Scheduler

Each connection owns one TaskScheduler. A single worker coroutine drains a
job queue, so every job for a connection (connectivity checks, reconnection
attempts, device polls, writes, operator actions) runs one at a time and is
the only writer of that connection's state.

Primitives:
    run_now(callback)                 - queue a job immediately
    run_later(delay, callback)        - queue a job after a delay
    run_periodically(interval, cb)    - queue a job every interval
    await call(callback)              - run an external action on the worker
                                        and return its result

Usage:
    scheduler = TaskScheduler("plant-tcp")
    scheduler.start()
    task = scheduler.run_periodically(5.0, device.poll, name="poll:meter")
    ...
    task.cancel()
    await scheduler.shutdown()
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from .exceptions import SchedulerClosedError
from .logging_setup import get_service_logger

logger = get_service_logger("scheduler")

JobCallback = Callable[[], Awaitable[Any]]


class ScheduledTask:
    """
    Handle for work submitted with run_now/run_later/run_periodically.

    Cancelling a task that is waiting (sleeping or queued) drops it. A task
    whose job is already executing finishes that job and then stops.
    """

    def __init__(self, name: str, periodic: bool = False):
        self.name = name
        self.periodic = periodic
        self.run_count = 0
        self.skipped_count = 0
        self._cancelled = False
        self._done = False
        self._timer: asyncio.Task | None = None
        self._on_cancel: Callable[["ScheduledTask"], None] | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self._done or self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._on_cancel is not None:
            self._on_cancel(self)
        if self._timer is not None and not self._timer.done():
            # Only interrupts the sleep/wait; a running job is never cancelled here
            self._timer.cancel()

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "done" if self._done else "pending"
        return f"<ScheduledTask {self.name} {state} runs={self.run_count}>"


@dataclass
class _Job:
    callback: JobCallback
    task: ScheduledTask | None = None
    future: asyncio.Future | None = None
    finished: asyncio.Event = field(default_factory=asyncio.Event)


class TaskScheduler:
    """Single-worker scheduler owned by one connection"""

    def __init__(self, name: str):
        self.name = name
        self._queue: asyncio.Queue[_Job | None] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._tasks: set[ScheduledTask] = set()
        self._timers: set[asyncio.Task] = set()
        self._running = False
        self._current: _Job | None = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending_tasks(self) -> list[ScheduledTask]:
        """Scheduled tasks that may still fire"""
        return [task for task in self._tasks if not task.done]

    def start(self) -> None:
        """Start the worker (must be called from a running event loop)"""
        if self._running:
            return
        self._running = True
        self._worker = asyncio.create_task(self._run(), name=f"scheduler:{self.name}")
        logger.debug(f"Scheduler '{self.name}' started")

    def run_now(self, callback: JobCallback, name: str = "job") -> ScheduledTask:
        task = ScheduledTask(name)
        if not self._reject_if_closed(task):
            self._track(task)
            self._enqueue(callback, task)
        return task

    def run_later(self, delay: float, callback: JobCallback, name: str = "delayed") -> ScheduledTask:
        task = ScheduledTask(name)
        if not self._reject_if_closed(task):
            self._track(task)
            task._timer = self._start_timer(self._delayed(task, delay, callback))
        return task

    def run_periodically(
        self,
        interval: float,
        callback: JobCallback,
        name: str = "periodic",
        initial_delay: float = 0.0,
    ) -> ScheduledTask:
        task = ScheduledTask(name, periodic=True)
        if not self._reject_if_closed(task):
            self._track(task)
            task._timer = self._start_timer(
                self._periodic(task, interval, callback, initial_delay)
            )
        return task

    async def call(self, callback: JobCallback) -> Any:
        """
        Run an action on the worker after any job already queued.

        Raises:
            SchedulerClosedError: if the scheduler is not running
        """
        if not self._running:
            raise SchedulerClosedError(self.name)
        future = asyncio.get_running_loop().create_future()
        self._enqueue(callback, future=future)
        return await future

    def cancel_pending(self) -> None:
        """Cancel every scheduled task; queued jobs of cancelled tasks are skipped"""
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    async def shutdown(self) -> None:
        """
        Stop accepting work, cancel scheduled tasks and wait for the worker.

        Actions already queued through call() still run before the worker
        exits; the job in progress is allowed to finish.
        """
        if not self._running:
            return
        self._running = False

        self.cancel_pending()
        timers = list(self._timers)
        for timer in timers:
            timer.cancel()

        self._queue.put_nowait(None)
        if self._worker is not None:
            await self._worker
            self._worker = None
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)

        logger.debug(f"Scheduler '{self.name}' stopped")

    def get_stats(self) -> dict:
        """Scheduler statistics for observability"""
        return {
            "name": self.name,
            "running": self._running,
            "busy": self._current is not None,
            "queued": self._queue.qsize(),
            "tasks": {
                task.name: {
                    "runs": task.run_count,
                    "skipped": task.skipped_count,
                    "periodic": task.periodic,
                }
                for task in self.pending_tasks
            },
        }

    # Internals

    def _reject_if_closed(self, task: ScheduledTask) -> bool:
        if self._running:
            return False
        logger.debug(f"Scheduler '{self.name}' closed, dropping {task.name}")
        task._cancelled = True
        return True

    def _track(self, task: ScheduledTask) -> None:
        self._tasks.add(task)
        task._on_cancel = self._tasks.discard

    def _start_timer(self, coro) -> asyncio.Task:
        timer = asyncio.create_task(coro)
        self._timers.add(timer)
        timer.add_done_callback(self._timers.discard)
        return timer

    def _enqueue(
        self,
        callback: JobCallback,
        task: ScheduledTask | None = None,
        future: asyncio.Future | None = None,
    ) -> _Job:
        job = _Job(callback=callback, task=task, future=future)
        self._queue.put_nowait(job)
        return job

    async def _delayed(self, task: ScheduledTask, delay: float, callback: JobCallback) -> None:
        await asyncio.sleep(delay)
        if task.cancelled or not self._running:
            return
        self._enqueue(callback, task)

    async def _periodic(
        self,
        task: ScheduledTask,
        interval: float,
        callback: JobCallback,
        initial_delay: float,
    ) -> None:
        loop = asyncio.get_running_loop()
        next_run = loop.time() + initial_delay

        try:
            while not task.cancelled and self._running:
                sleep_duration = next_run - loop.time()
                if sleep_duration > 0:
                    await asyncio.sleep(sleep_duration)

                if task.cancelled or not self._running:
                    break

                job = self._enqueue(callback, task)
                await job.finished.wait()

                # Skip missed intervals instead of queueing them up
                now = loop.time()
                skipped = 0
                while next_run <= now:
                    next_run += interval
                    skipped += 1
                if skipped > 1:
                    task.skipped_count += skipped - 1
                    logger.debug(
                        f"Task '{task.name}' on '{self.name}' skipped {skipped - 1} intervals"
                    )
        finally:
            task._done = True
            self._tasks.discard(task)

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            if job is None:
                break

            if job.task is not None and job.task.cancelled:
                job.finished.set()
                continue

            self._current = job
            try:
                result = await job.callback()
            except Exception as e:
                if job.future is not None:
                    if not job.future.done():
                        job.future.set_exception(e)
                else:
                    logger.error(
                        f"Scheduled job '{job.task.name if job.task else 'job'}' "
                        f"on '{self.name}' failed: {e}",
                        exc_info=True,
                    )
            else:
                if job.future is not None and not job.future.done():
                    job.future.set_result(result)
            finally:
                self._current = None
                if job.task is not None:
                    job.task.run_count += 1
                    if not job.task.periodic:
                        job.task._done = True
                        self._tasks.discard(job.task)
                job.finished.set()
