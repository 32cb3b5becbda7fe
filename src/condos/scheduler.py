"""Deferred work: re-kickoffs, retries, sweeps and debounced plan events.

Jobs are coroutine factories scheduled after a delay. A job may carry a
key; scheduling again under the same key replaces the earlier job, which
is how debouncing works. Job failures are logged and never propagate.

:class:`LoopScheduler` runs on the asyncio event loop. :class:`VirtualScheduler`
keeps its own clock so tests can step time explicitly.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

log = logging.getLogger(__name__)

JobFn = Callable[[], Awaitable[object]]


@dataclass
class Job:
    key: str
    delay: float
    fn: JobFn = field(repr=False)
    due: float = 0.0


@runtime_checkable
class Scheduler(Protocol):
    def call_later(self, delay: float, fn: JobFn, *, key: str | None = None) -> str: ...

    def cancel(self, key: str) -> bool: ...

    def pending(self) -> list[Job]: ...

    async def shutdown(self) -> None: ...


async def _run_job(job: Job) -> None:
    try:
        await job.fn()
    except Exception:
        log.exception("Deferred job %s failed", job.key)


class LoopScheduler:
    """Scheduler backed by ``loop.call_later``."""

    def __init__(self) -> None:
        self._counter = itertools.count(1)
        self._handles: dict[str, tuple[Job, asyncio.TimerHandle]] = {}
        self._running: set[asyncio.Task[None]] = set()

    def call_later(self, delay: float, fn: JobFn, *, key: str | None = None) -> str:
        key = key or f"job-{next(self._counter)}"
        self.cancel(key)
        loop = asyncio.get_running_loop()
        job = Job(key=key, delay=delay, fn=fn, due=loop.time() + delay)
        handle = loop.call_later(delay, self._fire, key)
        self._handles[key] = (job, handle)
        return key

    def _fire(self, key: str) -> None:
        entry = self._handles.pop(key, None)
        if entry is None:
            return
        task = asyncio.get_running_loop().create_task(_run_job(entry[0]))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    def cancel(self, key: str) -> bool:
        entry = self._handles.pop(key, None)
        if entry is None:
            return False
        entry[1].cancel()
        return True

    def pending(self) -> list[Job]:
        return sorted((job for job, _ in self._handles.values()), key=lambda j: j.due)

    async def shutdown(self) -> None:
        for key in list(self._handles):
            self.cancel(key)
        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)


class VirtualScheduler:
    """Scheduler driven by a virtual clock.

    Nothing runs until :meth:`advance` or :meth:`run_all` is awaited. Jobs
    scheduled while advancing run in the same call if they fall due
    before the target time.
    """

    def __init__(self) -> None:
        self.now = 0.0
        self._counter = itertools.count(1)
        self._seq = itertools.count()
        self._heap: list[tuple[float, int, str]] = []
        self._jobs: dict[str, Job] = {}
        self.history: list[Job] = []

    def call_later(self, delay: float, fn: JobFn, *, key: str | None = None) -> str:
        key = key or f"job-{next(self._counter)}"
        job = Job(key=key, delay=delay, fn=fn, due=self.now + delay)
        self._jobs[key] = job
        heapq.heappush(self._heap, (job.due, next(self._seq), key))
        return key

    def cancel(self, key: str) -> bool:
        return self._jobs.pop(key, None) is not None

    def pending(self) -> list[Job]:
        return sorted(self._jobs.values(), key=lambda j: j.due)

    async def advance(self, seconds: float) -> int:
        """Move the clock forward, running every job that falls due. Returns jobs run."""
        target = self.now + seconds
        ran = 0
        while self._heap and self._heap[0][0] <= target:
            due, _, key = heapq.heappop(self._heap)
            job = self._jobs.get(key)
            if job is None or job.due != due:
                continue  # cancelled or replaced
            del self._jobs[key]
            self.now = max(self.now, due)
            self.history.append(job)
            await _run_job(job)
            ran += 1
        self.now = target
        return ran

    async def run_all(self, limit: int = 1000) -> int:
        """Run jobs until none remain (bounded by *limit*)."""
        ran = 0
        while self._jobs and ran < limit:
            next_due = min(job.due for job in self._jobs.values())
            ran += await self.advance(max(0.0, next_due - self.now))
        return ran

    async def shutdown(self) -> None:
        self._jobs.clear()
        self._heap.clear()
