"""Delayed callbacks behind a small interface so timers can be faked in tests.

``AsyncioScheduler`` drives production code off the running event loop;
``ManualScheduler`` holds callbacks until a test advances its clock.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence, Union

from authflow.logging import get_logger

logger = get_logger(__name__)

Callback = Callable[[], Union[None, Awaitable[Any]]]


class ScheduledHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def now(self) -> float:
        """Seconds since the epoch, comparable with JWT ``exp``."""
        ...

    def call_later(self, delay: float, callback: Callback) -> ScheduledHandle: ...


class AsyncioScheduler:
    """Schedules onto the event loop; coroutine callbacks become tasks."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop
        self._tasks: set[asyncio.Task] = set()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    def now(self) -> float:
        return time.time()

    def call_later(self, delay: float, callback: Callback) -> asyncio.TimerHandle:
        return self.loop.call_later(max(0.0, delay), self._run, callback)

    def _run(self, callback: Callback) -> None:
        result = callback()
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result, loop=self.loop)
            # Keep a reference until done so the task is not garbage collected
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)


@dataclass(order=True)
class _ManualEntry:
    due: float
    seq: int
    callback: Callback = field(compare=False)
    cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Deterministic scheduler with an explicit clock.

    ``advance`` moves time forward and runs everything that came due, in due
    order, awaiting coroutine callbacks before moving on.
    """

    def __init__(self, start: Optional[float] = None) -> None:
        self._now = time.time() if start is None else start
        self._entries: list[_ManualEntry] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callback) -> _ManualEntry:
        entry = _ManualEntry(self._now + max(0.0, delay), next(self._seq), callback)
        self._entries.append(entry)
        return entry

    @property
    def pending(self) -> list[_ManualEntry]:
        return sorted(entry for entry in self._entries if not entry.cancelled)

    async def advance(self, seconds: float) -> int:
        target = self._now + seconds
        fired = 0
        while True:
            due = [e for e in self.pending if e.due <= target]
            if not due:
                break
            entry = due[0]
            self._entries.remove(entry)
            self._now = max(self._now, entry.due)
            result = entry.callback()
            if inspect.isawaitable(result):
                await result
            fired += 1
        self._now = target
        return fired


@dataclass
class SweepJob:
    name: str
    run: Callable[[], int]


class PeriodicSweeper:
    """Re-arms itself after every pass; one failing job does not stop the rest."""

    def __init__(
        self, scheduler: Scheduler, interval_seconds: float, jobs: Sequence[SweepJob]
    ) -> None:
        self.scheduler = scheduler
        self.interval_seconds = interval_seconds
        self.jobs = list(jobs)
        self._handle: Optional[ScheduledHandle] = None

    @property
    def running(self) -> bool:
        return self._handle is not None

    def start(self) -> None:
        if self._handle is not None:
            logger.warning("sweeper_already_running")
            return
        logger.info("sweeper_started", interval_seconds=self.interval_seconds)
        self._arm()

    def stop(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
            logger.info("sweeper_stopped")

    def _arm(self) -> None:
        self._handle = self.scheduler.call_later(self.interval_seconds, self._tick)

    def _tick(self) -> None:
        self.run_once()
        if self._handle is not None:
            self._arm()

    def run_once(self) -> dict[str, int]:
        removed: dict[str, int] = {}
        for job in self.jobs:
            try:
                removed[job.name] = job.run()
            except Exception as exc:
                logger.error(
                    "sweep_job_failed",
                    job=job.name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        if any(removed.values()):
            logger.info("sweep_complete", **removed)
        return removed
