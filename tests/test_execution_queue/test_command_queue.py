import asyncio

import pytest

from talon.execution_queue import CommandLaneClearedError, CommandQueueManager, resolve_session_lane


@pytest.mark.asyncio
async def test_lane_is_serial_by_default() -> None:
    queue = CommandQueueManager()
    release = asyncio.Event()
    first_started = asyncio.Event()
    seen: list[str] = []

    async def first() -> str:
        seen.append("first_start")
        first_started.set()
        await release.wait()
        seen.append("first_end")
        return "first"

    async def second() -> str:
        seen.append("second")
        return "second"

    first_task = asyncio.create_task(queue.enqueue_in_lane("lane-a", first))
    await first_started.wait()
    second_task = asyncio.create_task(queue.enqueue_in_lane("lane-a", second))
    await asyncio.sleep(0)
    assert seen == ["first_start"]
    assert queue.get_queue_size("lane-a") == 2

    release.set()
    assert await first_task == "first"
    assert await second_task == "second"
    assert seen == ["first_start", "first_end", "second"]
    assert queue.get_queue_size("lane-a") == 0


@pytest.mark.asyncio
async def test_different_lanes_can_run_concurrently() -> None:
    queue = CommandQueueManager()
    lane_one_started = asyncio.Event()
    lane_two_started = asyncio.Event()
    release = asyncio.Event()

    async def lane_one() -> str:
        lane_one_started.set()
        await release.wait()
        return "lane-one"

    async def lane_two() -> str:
        lane_two_started.set()
        return "lane-two"

    lane_one_task = asyncio.create_task(queue.enqueue_in_lane("lane-1", lane_one))
    await lane_one_started.wait()
    lane_two_task = asyncio.create_task(queue.enqueue_in_lane("lane-2", lane_two))
    await asyncio.wait_for(lane_two_started.wait(), timeout=1.0)

    release.set()
    assert await lane_one_task == "lane-one"
    assert await lane_two_task == "lane-two"


@pytest.mark.asyncio
async def test_clear_lane_rejects_queued_entries() -> None:
    queue = CommandQueueManager()
    release = asyncio.Event()

    async def first() -> str:
        await release.wait()
        return "first"

    async def second() -> str:
        return "second"

    first_task = asyncio.create_task(queue.enqueue_in_lane("lane-clear", first))
    await asyncio.sleep(0)
    second_task = asyncio.create_task(queue.enqueue_in_lane("lane-clear", second))
    await asyncio.sleep(0)

    removed = queue.clear_lane("lane-clear")
    assert removed == 1

    release.set()
    assert await first_task == "first"
    with pytest.raises(CommandLaneClearedError):
        await second_task


@pytest.mark.asyncio
async def test_task_errors_reach_the_caller_and_lane_keeps_draining() -> None:
    queue = CommandQueueManager()

    async def failing() -> str:
        raise ValueError("boom")

    async def after() -> str:
        return "after"

    failing_task = asyncio.create_task(queue.enqueue_in_lane("lane-err", failing))
    after_task = asyncio.create_task(queue.enqueue_in_lane("lane-err", after))

    with pytest.raises(ValueError, match="boom"):
        await failing_task
    assert await after_task == "after"


@pytest.mark.asyncio
async def test_cancelling_running_caller_cancels_its_task() -> None:
    queue = CommandQueueManager()
    started = asyncio.Event()
    cancelled = asyncio.Event()

    async def long_running() -> str:
        started.set()
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise
        return "never"

    async def next_in_line() -> str:
        return "next"

    caller = asyncio.create_task(queue.enqueue_in_lane("lane-cancel", long_running))
    await started.wait()
    waiting = asyncio.create_task(queue.enqueue_in_lane("lane-cancel", next_in_line))
    caller.cancel()

    with pytest.raises(asyncio.CancelledError):
        await caller
    await asyncio.wait_for(cancelled.wait(), timeout=1.0)
    assert await asyncio.wait_for(waiting, timeout=1.0) == "next"


@pytest.mark.asyncio
async def test_cancelling_queued_caller_skips_its_task() -> None:
    queue = CommandQueueManager()
    release = asyncio.Event()
    ran: list[str] = []

    async def blocker() -> str:
        await release.wait()
        return "blocker"

    async def skipped() -> str:
        ran.append("skipped")
        return "skipped"

    blocker_task = asyncio.create_task(queue.enqueue_in_lane("lane-skip", blocker))
    await asyncio.sleep(0)
    queued = asyncio.create_task(queue.enqueue_in_lane("lane-skip", skipped))
    await asyncio.sleep(0)
    queued.cancel()
    with pytest.raises(asyncio.CancelledError):
        await queued

    release.set()
    assert await blocker_task == "blocker"
    await asyncio.sleep(0.01)
    assert ran == []


def test_resolve_session_lane() -> None:
    assert resolve_session_lane("abc") == "session:abc"
    assert resolve_session_lane("session:abc") == "session:abc"
    assert resolve_session_lane("  ") == "session:default"
