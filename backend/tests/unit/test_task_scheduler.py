import asyncio

import pytest

from marketsync.domain.sync import TaskScheduler


@pytest.mark.asyncio
async def test_schedule_runs_once_per_name():
    scheduler = TaskScheduler("test")
    calls = []

    async def job():
        calls.append("ran")

    assert scheduler.schedule("job", 0.01, job) is True
    assert scheduler.schedule("job", 0.01, job) is False
    assert scheduler.pending("job")
    await scheduler.drain()

    assert calls == ["ran"]
    assert not scheduler.pending("job")
    assert len(scheduler) == 0


@pytest.mark.asyncio
async def test_cancel_all_stops_pending_tasks():
    scheduler = TaskScheduler("test")
    calls = []

    async def job():
        calls.append("ran")

    scheduler.schedule("slow", 10, job)
    scheduler.schedule("other", 10, job)
    await scheduler.cancel_all()
    await asyncio.sleep(0)

    assert calls == []
    assert len(scheduler) == 0


@pytest.mark.asyncio
async def test_failing_task_is_logged_not_raised(caplog):
    scheduler = TaskScheduler("test")

    async def boom():
        raise RuntimeError("boom")

    scheduler.schedule("boom", 0, boom)
    await scheduler.drain()

    assert any(record.getMessage() == "scheduler.task_failed" for record in caplog.records)
    assert scheduler.schedule("boom", 0, boom) is True
    await scheduler.drain()


@pytest.mark.asyncio
async def test_cancel_single_task_leaves_others():
    scheduler = TaskScheduler("test")
    calls = []

    async def job(name):
        calls.append(name)

    scheduler.schedule("a", 0.01, lambda: job("a"))
    scheduler.schedule("b", 0.01, lambda: job("b"))
    scheduler.cancel("a")
    await scheduler.drain()

    assert calls == ["b"]
    assert not scheduler.pending("a")
