"""Lane-based async execution queue primitives."""

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from talon.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

DEFAULT_LANE = "main"


class CommandLaneClearedError(RuntimeError):
    """Raised when queued tasks are rejected after a lane clear."""

    def __init__(self, lane: str | None = None):
        message = f'Command lane "{lane}" cleared' if lane else "Command lane cleared"
        super().__init__(message)
        self.lane = lane or ""


@dataclass
class QueueEntry:
    task: Callable[[], Awaitable[object]]
    future: asyncio.Future[object]
    enqueued_at_ms: int
    warn_after_ms: int
    on_wait: Callable[[int, int], None] | None = None
    runner: asyncio.Task[None] | None = None


@dataclass
class LaneState:
    lane: str
    queue: deque[QueueEntry] = field(default_factory=deque)
    active_task_ids: set[int] = field(default_factory=set)
    max_concurrent: int = 1
    draining: bool = False


class CommandQueueManager:
    """In-process async lane queue with per-lane concurrency limits.

    Lanes are serial by default: at most one task per lane runs at a time,
    while different lanes run concurrently. Cancelling a caller waiting in
    ``enqueue_in_lane`` drops its queued entry or cancels its running task.
    """

    def __init__(self):
        self._lanes: dict[str, LaneState] = {}
        self._next_task_id = 1

    def _get_lane_state(self, lane: str) -> LaneState:
        existing = self._lanes.get(lane)
        if existing:
            return existing
        created = LaneState(lane=lane)
        self._lanes[lane] = created
        return created

    def _schedule_drain(self, lane: str) -> None:
        state = self._get_lane_state(lane)
        if state.draining:
            return
        state.draining = True
        asyncio.create_task(self._drain_lane(lane))

    def _finish_entry(self, lane: str, state: LaneState, task_id: int) -> None:
        state.active_task_ids.discard(task_id)
        if state.queue:
            self._schedule_drain(lane)
        elif not state.active_task_ids:
            self._lanes.pop(lane, None)

    async def _run_entry(self, lane: str, state: LaneState, entry: QueueEntry, task_id: int) -> None:
        started_ms = int(asyncio.get_running_loop().time() * 1000)
        try:
            result = await entry.task()
        except asyncio.CancelledError:
            self._finish_entry(lane, state, task_id)
            if not entry.future.done():
                entry.future.cancel()
            raise
        except Exception as e:
            elapsed = int(asyncio.get_running_loop().time() * 1000) - started_ms
            log.debug("lane task failed", lane=lane, duration_ms=elapsed, error=str(e))
            self._finish_entry(lane, state, task_id)
            if not entry.future.done():
                entry.future.set_exception(e)
            return
        elapsed = int(asyncio.get_running_loop().time() * 1000) - started_ms
        log.debug("lane task complete", lane=lane, duration_ms=elapsed, queued=len(state.queue))
        self._finish_entry(lane, state, task_id)
        if not entry.future.done():
            entry.future.set_result(result)

    async def _drain_lane(self, lane: str) -> None:
        state = self._get_lane_state(lane)
        while state.queue and len(state.active_task_ids) < state.max_concurrent:
            entry = state.queue.popleft()
            if entry.future.done():
                continue
            waited_ms = int(asyncio.get_running_loop().time() * 1000) - entry.enqueued_at_ms
            if waited_ms >= entry.warn_after_ms:
                queued_ahead = len(state.queue)
                if entry.on_wait:
                    entry.on_wait(waited_ms, queued_ahead)
                log.warning(
                    "lane wait exceeded",
                    lane=lane,
                    waited_ms=waited_ms,
                    queued_ahead=queued_ahead,
                )

            task_id = self._next_task_id
            self._next_task_id += 1
            state.active_task_ids.add(task_id)
            entry.runner = asyncio.create_task(self._run_entry(lane, state, entry, task_id))
        state.draining = False

    async def enqueue_in_lane(
        self,
        lane: str,
        task: Callable[[], Awaitable[T]],
        *,
        warn_after_ms: int = 2_000,
        on_wait: Callable[[int, int], None] | None = None,
    ) -> T:
        cleaned = lane.strip() or DEFAULT_LANE
        state = self._get_lane_state(cleaned)
        loop = asyncio.get_running_loop()
        future: asyncio.Future[object] = loop.create_future()
        entry = QueueEntry(
            task=task,
            future=future,
            enqueued_at_ms=int(loop.time() * 1000),
            warn_after_ms=max(0, int(warn_after_ms)),
            on_wait=on_wait,
        )
        state.queue.append(entry)
        self._schedule_drain(cleaned)
        try:
            result = await future
        except asyncio.CancelledError:
            if entry.runner is not None and not entry.runner.done():
                entry.runner.cancel()
            raise
        return result  # type: ignore[return-value]

    def get_queue_size(self, lane: str = DEFAULT_LANE) -> int:
        cleaned = lane.strip() or DEFAULT_LANE
        state = self._lanes.get(cleaned)
        if not state:
            return 0
        return len(state.queue) + len(state.active_task_ids)

    def clear_lane(self, lane: str = DEFAULT_LANE) -> int:
        cleaned = lane.strip() or DEFAULT_LANE
        state = self._lanes.get(cleaned)
        if not state:
            return 0
        removed = len(state.queue)
        while state.queue:
            entry = state.queue.popleft()
            if not entry.future.done():
                entry.future.set_exception(CommandLaneClearedError(cleaned))
        return removed


def resolve_session_lane(key: str) -> str:
    cleaned = key.strip() if key else ""
    if not cleaned:
        return "session:default"
    if cleaned.startswith("session:"):
        return cleaned
    return f"session:{cleaned}"

