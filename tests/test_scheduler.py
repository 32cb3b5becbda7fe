"""Tests for the deferred-work schedulers."""

from __future__ import annotations

import asyncio

import pytest

from condos.scheduler import LoopScheduler, Scheduler, VirtualScheduler


def _recorder(log: list, label: str):
    async def job():
        log.append(label)

    return job


class TestVirtualScheduler:
    def test_satisfies_protocol(self):
        assert isinstance(VirtualScheduler(), Scheduler)
        assert isinstance(LoopScheduler(), Scheduler)

    @pytest.mark.asyncio
    async def test_nothing_runs_until_time_advances(self):
        sched = VirtualScheduler()
        ran: list[str] = []
        sched.call_later(1.0, _recorder(ran, "a"))
        assert ran == []
        assert await sched.advance(0.5) == 0
        assert ran == []
        assert await sched.advance(0.5) == 1
        assert ran == ["a"]
        assert sched.now == 1.0

    @pytest.mark.asyncio
    async def test_runs_in_due_order(self):
        sched = VirtualScheduler()
        ran: list[str] = []
        sched.call_later(2.0, _recorder(ran, "late"))
        sched.call_later(1.0, _recorder(ran, "early"))
        await sched.advance(5)
        assert ran == ["early", "late"]

    @pytest.mark.asyncio
    async def test_same_key_replaces_earlier_job(self):
        sched = VirtualScheduler()
        ran: list[str] = []
        sched.call_later(1.0, _recorder(ran, "first"), key="debounce")
        await sched.advance(0.5)
        sched.call_later(1.0, _recorder(ran, "second"), key="debounce")
        await sched.advance(0.6)
        assert ran == []
        await sched.advance(0.5)
        assert ran == ["second"]
        assert [job.key for job in sched.history] == ["debounce"]

    @pytest.mark.asyncio
    async def test_cancel(self):
        sched = VirtualScheduler()
        ran: list[str] = []
        sched.call_later(1.0, _recorder(ran, "x"), key="k")
        assert sched.cancel("k") is True
        assert sched.cancel("k") is False
        await sched.run_all()
        assert ran == []

    @pytest.mark.asyncio
    async def test_jobs_scheduled_while_running_fire_in_same_advance(self):
        sched = VirtualScheduler()
        ran: list[str] = []

        async def chain():
            ran.append("first")
            sched.call_later(1.0, _recorder(ran, "second"))

        sched.call_later(1.0, chain)
        await sched.advance(3.0)
        assert ran == ["first", "second"]

    @pytest.mark.asyncio
    async def test_failing_job_is_logged_not_raised(self, caplog):
        sched = VirtualScheduler()

        async def boom():
            raise RuntimeError("job exploded")

        sched.call_later(0, boom, key="bad")
        assert await sched.run_all() == 1
        assert "Deferred job bad failed" in caplog.text

    @pytest.mark.asyncio
    async def test_pending_sorted_by_due(self):
        sched = VirtualScheduler()
        sched.call_later(3.0, _recorder([], "c"), key="c")
        sched.call_later(1.0, _recorder([], "a"), key="a")
        assert [job.key for job in sched.pending()] == ["a", "c"]
        await sched.shutdown()
        assert sched.pending() == []


class TestLoopScheduler:
    @pytest.mark.asyncio
    async def test_runs_after_delay(self):
        sched = LoopScheduler()
        done = asyncio.Event()

        async def job():
            done.set()

        sched.call_later(0.01, job)
        await asyncio.wait_for(done.wait(), timeout=2)

    @pytest.mark.asyncio
    async def test_debounce_and_shutdown(self):
        sched = LoopScheduler()
        ran: list[str] = []
        sched.call_later(10, _recorder(ran, "first"), key="k")
        sched.call_later(10, _recorder(ran, "second"), key="k")
        assert len(sched.pending()) == 1
        await sched.shutdown()
        assert sched.pending() == []
        assert ran == []
