"""
Unit tests for the asyncio scheduler.
"""

import asyncio
import pytest

from student_billing.services.scheduler import AsyncioScheduler


class TestAsyncioScheduler:

    @pytest.mark.asyncio
    async def test_runs_calls_in_delay_order(self):
        scheduler = AsyncioScheduler()
        ran = []

        async def record(label):
            ran.append(label)

        scheduler.call_later(0.02, lambda: record("late"), name="late")
        scheduler.call_later(0, lambda: record("early"), name="early")
        await scheduler.wait_idle()

        assert ran == ["early", "late"]
        assert scheduler.pending == 0

    @pytest.mark.asyncio
    async def test_cancelled_call_never_runs(self):
        scheduler = AsyncioScheduler()
        ran = []

        async def record():
            ran.append(True)

        handle = scheduler.call_later(0.01, record)
        handle.cancel()
        await scheduler.wait_idle()

        assert ran == []
        assert handle.cancelled is True

    @pytest.mark.asyncio
    async def test_cancel_all(self):
        scheduler = AsyncioScheduler()
        ran = []

        async def record():
            ran.append(True)

        for delay in (0.01, 0.02, 0.03):
            scheduler.call_later(delay, record)
        scheduler.cancel_all()
        await asyncio.sleep(0.05)

        assert ran == []
        assert scheduler.pending == 0

    @pytest.mark.asyncio
    async def test_failing_call_is_logged_not_raised(self, caplog):
        scheduler = AsyncioScheduler()

        async def boom():
            raise RuntimeError("boom")

        scheduler.call_later(0, boom, name="boom")
        await scheduler.wait_idle()

        assert "Scheduled task boom failed" in caplog.text

    @pytest.mark.asyncio
    async def test_task_may_cancel_its_own_handle(self):
        scheduler = AsyncioScheduler()
        finished = []
        handles = []

        async def finalize():
            handles[0].cancel()
            await asyncio.sleep(0)
            finished.append(True)

        handles.append(scheduler.call_later(0, finalize))
        await scheduler.wait_idle()

        assert finished == [True]
