import asyncio

import pytest

from app.services.background_tasks import DeferredWorkQueue, run_periodic


async def test_submitted_jobs_run_after_flush():
    queue = DeferredWorkQueue(max_size=10, workers=2)
    queue.start()
    done = []

    for index in range(5):
        async def job(index=index):
            await asyncio.sleep(0)
            done.append(index)

        assert queue.submit(job, description=f"job-{index}") is True

    await queue.flush()

    assert sorted(done) == [0, 1, 2, 3, 4]
    assert queue.pending == 0
    await queue.stop()


async def test_failing_job_is_logged_and_does_not_stop_workers(caplog):
    queue = DeferredWorkQueue(max_size=10, workers=1)
    queue.start()
    done = []

    async def broken():
        raise RuntimeError("storage down")

    async def healthy():
        done.append(True)

    queue.submit(broken, description="broken")
    queue.submit(healthy, description="healthy")
    await queue.flush()

    assert done == [True]
    assert queue.failed == 1
    assert "storage down" in caplog.text
    await queue.stop()


async def test_full_queue_drops_jobs_without_blocking():
    queue = DeferredWorkQueue(max_size=2, workers=1)
    queue.start()
    release = asyncio.Event()

    async def blocked():
        await release.wait()

    assert queue.submit(blocked) is True
    while queue.pending:
        await asyncio.sleep(0)

    # the only worker is busy, the queue holds two more
    assert queue.submit(blocked) is True
    assert queue.submit(blocked) is True
    assert queue.submit(blocked) is False
    assert queue.dropped == 1

    release.set()
    await queue.flush()
    await queue.stop()


async def test_stop_drains_pending_work_and_rejects_new_jobs():
    queue = DeferredWorkQueue(max_size=10, workers=1)
    queue.start()
    done = []

    async def slow():
        await asyncio.sleep(0.01)
        done.append(True)

    for _ in range(3):
        queue.submit(slow)

    await queue.stop(timeout=5)

    assert done == [True, True, True]
    assert not queue.is_running
    assert queue.submit(slow) is False


async def test_stop_gives_up_after_timeout():
    queue = DeferredWorkQueue(max_size=10, workers=1)
    queue.start()

    async def forever():
        await asyncio.Event().wait()

    queue.submit(forever)
    await asyncio.wait_for(queue.stop(timeout=0.05), timeout=2)

    assert not queue.is_running


def test_queue_requires_workers():
    with pytest.raises(ValueError):
        DeferredWorkQueue(workers=0)


async def test_run_periodic_keeps_running_after_errors():
    calls = []

    async def job():
        calls.append(len(calls))
        if len(calls) == 1:
            raise RuntimeError("first run fails")

    task = asyncio.create_task(run_periodic("test job", 0.01, job, max_backoff=0.02))
    while len(calls) < 3:
        await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(calls) >= 3
