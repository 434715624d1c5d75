import asyncio
import types

import pytest

from alias_relay.dispatch import TaskPool


def make_logger():
    messages = []

    def record(level):
        return lambda msg, *args, **kwargs: messages.append((level, msg % args if args else msg))

    logger = types.SimpleNamespace(
        debug=record("debug"),
        info=record("info"),
        warning=record("warning"),
        error=record("error"),
        exception=record("exception"),
    )
    return logger, messages


class DummyMetrics:
    def __init__(self):
        self.tasks = []
        self.depths = []

    def inc_task(self, status):
        self.tasks.append(status)

    def set_queue_depth(self, depth):
        self.depths.append(depth)


@pytest.mark.asyncio
async def test_submitted_jobs_run_in_background():
    logger, _ = make_logger()
    metrics = DummyMetrics()
    pool = TaskPool(workers=2, queue_size=10, logger=logger, metrics=metrics)
    await pool.start()
    seen = []

    async def job(value):
        seen.append(value)

    assert pool.submit("a", lambda: job(1), "sid-1")
    assert pool.submit("b", lambda: job(2), "sid-2")
    await pool.join()

    assert sorted(seen) == [1, 2]
    assert pool.completed == 2
    assert metrics.tasks.count("submitted") == 2
    assert metrics.tasks.count("completed") == 2
    assert metrics.depths[-1] == 0
    await pool.stop()


@pytest.mark.asyncio
async def test_failing_job_is_logged_and_isolated():
    logger, messages = make_logger()
    pool = TaskPool(workers=1, queue_size=10, logger=logger)
    await pool.start()
    seen = []

    async def broken():
        raise RuntimeError("smtp down")

    async def fine():
        seen.append("ok")

    pool.submit("forward", broken, "sid-1")
    pool.submit("notify-telegram", fine, "sid-1")
    await pool.join()

    assert seen == ["ok"]
    assert pool.failed == 1
    assert pool.completed == 1
    assert any(level == "exception" and "smtp down" in msg for level, msg in messages)
    await pool.stop()


@pytest.mark.asyncio
async def test_submit_never_blocks_when_queue_full():
    logger, messages = make_logger()
    metrics = DummyMetrics()
    pool = TaskPool(workers=1, queue_size=1, logger=logger, metrics=metrics)
    await pool.start()
    release = asyncio.Event()

    async def slow():
        await release.wait()

    assert pool.submit("first", slow)
    await asyncio.sleep(0)  # worker takes the first job
    assert pool.submit("second", slow)
    assert pool.submit("third", slow) is False

    assert pool.dropped == 1
    assert "dropped" in metrics.tasks
    assert any("Task queue full" in msg for _, msg in messages)
    release.set()
    await pool.stop()


@pytest.mark.asyncio
async def test_submit_before_start_is_dropped():
    logger, _ = make_logger()
    pool = TaskPool(logger=logger)

    async def job():
        return None

    assert pool.submit("forward", job) is False
    assert pool.dropped == 1
    assert pool.running is False


@pytest.mark.asyncio
async def test_stop_drains_queued_jobs():
    logger, _ = make_logger()
    pool = TaskPool(workers=1, queue_size=10, logger=logger)
    await pool.start()
    seen = []

    async def job(value):
        await asyncio.sleep(0.01)
        seen.append(value)

    for value in range(3):
        pool.submit("job", lambda value=value: job(value))
    await pool.stop(drain_timeout=5)

    assert seen == [0, 1, 2]
    assert pool.running is False
    assert pool.pending == 0


@pytest.mark.asyncio
async def test_stop_gives_up_after_drain_timeout():
    logger, messages = make_logger()
    pool = TaskPool(workers=1, queue_size=10, logger=logger)
    await pool.start()

    async def forever():
        await asyncio.Event().wait()

    pool.submit("stuck", forever)
    await asyncio.sleep(0)
    await pool.stop(drain_timeout=0.05)

    assert pool.running is False
    assert any(level == "warning" and "drain timed out" in msg for level, msg in messages)
