"""Tests for reelqueue.scheduling.scheduler."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from reelqueue.config import PublishingConfig, TokenRefreshConfig
from reelqueue.scheduling.models import CycleResult, TokenRefreshResult
from reelqueue.scheduling.scheduler import InternalScheduler, SchedulerState


def _scheduler(publisher=None, tokens=None, interval=0.01, token_delay=3600):
    publisher = publisher or AsyncMock()
    if publisher.run_cycle.side_effect is None:
        publisher.run_cycle.return_value = CycleResult()
    tokens = tokens or AsyncMock()
    tokens.refresh_expiring_tokens.return_value = TokenRefreshResult()
    return InternalScheduler(
        publisher,
        tokens,
        PublishingConfig(interval_seconds=interval, startup_delay_seconds=0),
        TokenRefreshConfig(startup_delay_seconds=token_delay),
    )


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        scheduler = _scheduler()

        assert scheduler.start() is True
        assert scheduler.state is SchedulerState.RUNNING
        assert scheduler.is_running

        await scheduler.stop()

        assert scheduler.state is SchedulerState.STOPPED
        assert scheduler._tasks == []

    @pytest.mark.asyncio
    async def test_double_start_is_rejected(self):
        scheduler = _scheduler()
        scheduler.start()
        try:
            assert scheduler.start() is False
            assert len(scheduler._tasks) == 2
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_when_not_running_is_noop(self):
        scheduler = _scheduler()

        await scheduler.stop()

        assert scheduler.state is SchedulerState.STOPPED

    @pytest.mark.asyncio
    async def test_can_restart_after_stop(self):
        scheduler = _scheduler()
        scheduler.start()
        await scheduler.stop()

        assert scheduler.start() is True
        await scheduler.stop()


class TestLoops:

    @pytest.mark.asyncio
    async def test_publish_loop_ticks_repeatedly(self):
        publisher = AsyncMock()
        publisher.run_cycle.return_value = CycleResult()
        scheduler = _scheduler(publisher)

        scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert publisher.run_cycle.await_count >= 2

    @pytest.mark.asyncio
    async def test_cycle_error_does_not_kill_the_loop(self):
        publisher = AsyncMock()
        calls = []

        async def run_cycle():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("database unreachable")
            return CycleResult()

        publisher.run_cycle.side_effect = run_cycle
        scheduler = _scheduler(publisher)

        scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert len(calls) >= 2

    @pytest.mark.asyncio
    async def test_token_loop_waits_for_startup_delay(self):
        tokens = AsyncMock()
        scheduler = _scheduler(tokens=tokens, token_delay=3600)

        scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()

        tokens.refresh_expiring_tokens.assert_not_awaited()


class TestTriggers:

    @pytest.mark.asyncio
    async def test_manual_cycles_never_overlap(self):
        publisher = AsyncMock()
        running = 0
        peak = 0

        async def run_cycle():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return CycleResult(published=1)

        publisher.run_cycle.side_effect = run_cycle
        scheduler = _scheduler(publisher)

        results = await asyncio.gather(
            scheduler.trigger_publish_cycle(),
            scheduler.trigger_publish_cycle(),
        )

        assert peak == 1
        assert [r.published for r in results] == [1, 1]

    @pytest.mark.asyncio
    async def test_trigger_token_refresh(self):
        tokens = AsyncMock()
        scheduler = _scheduler(tokens=tokens)
        tokens.refresh_expiring_tokens.return_value = TokenRefreshResult(refreshed=2)

        result = await scheduler.trigger_token_refresh()

        assert result.refreshed == 2
