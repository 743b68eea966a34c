"""Tests for the periodic loop runner."""

import asyncio

import pytest

from kotsadm_deployer.loops import PeriodicLoop


class TestPeriodicLoop:
    """Test periodic tick scheduling."""

    @pytest.mark.asyncio
    async def test_run_once_swallows_errors(self):
        async def tick():
            raise RuntimeError("boom")

        loop = PeriodicLoop("test", tick, interval=0)

        await loop.run_once()

        assert loop.ticks == 1

    @pytest.mark.asyncio
    async def test_keeps_running_after_error(self):
        calls = []

        async def tick():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")

        loop = PeriodicLoop("test", tick, interval=0)
        loop.start()
        for _ in range(50):
            if len(calls) >= 3:
                break
            await asyncio.sleep(0.01)
        await loop.stop()

        assert len(calls) >= 3
        assert not loop.running

    @pytest.mark.asyncio
    async def test_ticks_never_overlap(self):
        active = 0
        max_active = 0

        async def tick():
            nonlocal active, max_active
            active += 1
            max_active = max(max_active, active)
            await asyncio.sleep(0.02)
            active -= 1

        loop = PeriodicLoop("test", tick, interval=0)
        loop.start()
        await asyncio.sleep(0.1)
        await loop.stop()

        assert loop.ticks >= 2
        assert max_active == 1

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self):
        async def tick():
            pass

        loop = PeriodicLoop("test", tick, interval=1)
        loop.start()
        task = loop._task
        loop.start()

        assert loop._task is task
        await loop.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        async def tick():
            pass

        loop = PeriodicLoop("test", tick, interval=1)
        await loop.stop()

        assert not loop.running
