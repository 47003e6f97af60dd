from __future__ import annotations

import asyncio

import pytest

from modbus_gateway.common.exceptions import SchedulerClosedError
from modbus_gateway.common.scheduler import TaskScheduler
from fakes import wait_for


def test_call_returns_result_and_propagates_errors() -> None:
    async def scenario() -> None:
        scheduler = TaskScheduler("test")
        scheduler.start()

        async def answer() -> int:
            return 42

        async def boom() -> None:
            raise ValueError("boom")

        assert await scheduler.call(answer) == 42
        with pytest.raises(ValueError):
            await scheduler.call(boom)
        await scheduler.shutdown()

    asyncio.run(scenario())


def test_closed_scheduler_rejects_work() -> None:
    async def scenario() -> None:
        scheduler = TaskScheduler("test")

        async def job() -> None:
            pass

        with pytest.raises(SchedulerClosedError):
            await scheduler.call(job)
        assert scheduler.run_later(1, job).cancelled
        assert scheduler.run_periodically(1, job).cancelled
        assert scheduler.pending_tasks == []

    asyncio.run(scenario())


def test_jobs_never_overlap() -> None:
    async def scenario() -> None:
        scheduler = TaskScheduler("test")
        scheduler.start()
        active = 0
        peak = 0

        async def job() -> None:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        tasks = [scheduler.run_now(job, name=f"job{i}") for i in range(3)]
        await scheduler.call(job)
        assert all(task.done for task in tasks)
        assert peak == 1
        await scheduler.shutdown()

    asyncio.run(scenario())


def test_failing_job_does_not_stop_worker() -> None:
    async def scenario() -> None:
        scheduler = TaskScheduler("test")
        scheduler.start()

        async def boom() -> None:
            raise RuntimeError("boom")

        async def ok() -> str:
            return "ok"

        scheduler.run_now(boom)
        assert await scheduler.call(ok) == "ok"
        await scheduler.shutdown()

    asyncio.run(scenario())


def test_periodic_task_runs_until_cancelled() -> None:
    async def scenario() -> None:
        scheduler = TaskScheduler("test")
        scheduler.start()
        runs: list[int] = []

        async def job() -> None:
            runs.append(1)

        task = scheduler.run_periodically(0.01, job, name="tick")
        await wait_for(lambda: len(runs) >= 3)
        task.cancel()
        count = len(runs)
        await asyncio.sleep(0.05)

        assert len(runs) == count
        assert task.done
        await scheduler.shutdown()

    asyncio.run(scenario())


def test_periodic_task_skips_missed_intervals() -> None:
    async def scenario() -> None:
        scheduler = TaskScheduler("test")
        scheduler.start()

        async def slow() -> None:
            await asyncio.sleep(0.05)

        task = scheduler.run_periodically(0.01, slow, name="slow")
        await wait_for(lambda: task.run_count >= 2)
        assert task.skipped_count > 0
        await scheduler.shutdown()

    asyncio.run(scenario())


def test_cancelled_delayed_task_never_runs() -> None:
    async def scenario() -> None:
        scheduler = TaskScheduler("test")
        scheduler.start()
        runs: list[int] = []

        async def job() -> None:
            runs.append(1)

        task = scheduler.run_later(0.02, job)
        task.cancel()
        await asyncio.sleep(0.05)
        assert runs == []
        await scheduler.shutdown()

    asyncio.run(scenario())


def test_shutdown_lets_current_job_finish_and_leaves_no_tasks() -> None:
    async def scenario() -> None:
        scheduler = TaskScheduler("test")
        scheduler.start()
        finished: list[bool] = []

        async def job() -> None:
            await asyncio.sleep(0.02)
            finished.append(True)

        async def noop() -> None:
            pass

        scheduler.run_now(job)
        scheduler.run_later(10, noop)
        scheduler.run_periodically(10, noop, initial_delay=10)
        await asyncio.sleep(0.005)
        await scheduler.shutdown()

        assert finished == [True]
        assert not scheduler.running
        assert scheduler.pending_tasks == []
        others = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
        assert others == []

    asyncio.run(scenario())


def test_cancelled_and_finished_tasks_are_forgotten() -> None:
    async def scenario() -> None:
        scheduler = TaskScheduler("test")
        scheduler.start()

        async def noop() -> None:
            pass

        for _ in range(10):
            scheduler.run_later(10, noop, name="reconnect").cancel()
        for _ in range(10):
            task = scheduler.run_periodically(0.01, noop, name="poll")
            await wait_for(lambda: task.run_count >= 1)
            task.cancel()
        await scheduler.call(noop)
        kept = scheduler.run_periodically(10, noop, name="poll", initial_delay=10)

        assert scheduler._tasks == {kept}
        assert [task.name for task in scheduler.pending_tasks] == ["poll"]
        await scheduler.shutdown()
        assert scheduler._tasks == set()

    asyncio.run(scenario())
