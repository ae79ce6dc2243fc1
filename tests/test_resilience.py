"""Tests for the background-task helpers used by the heartbeat and scans."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from vibelink.lan.resilience import Watchdog, notify, supervised_task


# ---------------------------------------------------------------------------
# Watchdog
# ---------------------------------------------------------------------------

class TestWatchdog:
    @pytest.mark.asyncio
    async def test_ticks_repeatedly(self):
        ticks = MagicMock()
        dog = Watchdog("ticks", ticks, interval=0.05)
        dog.start()
        await asyncio.sleep(0.18)
        dog.stop()
        assert ticks.call_count >= 2

    @pytest.mark.asyncio
    async def test_first_tick_waits_one_interval(self):
        ticks = MagicMock()
        dog = Watchdog("delay", ticks, interval=0.2)
        dog.start()
        await asyncio.sleep(0.05)
        assert ticks.call_count == 0
        dog.stop()

    @pytest.mark.asyncio
    async def test_awaits_coroutine_ticks(self):
        seen: list[float] = []

        async def ping():
            seen.append(asyncio.get_running_loop().time())

        dog = Watchdog("async", ping, interval=0.05)
        dog.start()
        await asyncio.sleep(0.18)
        dog.stop()
        assert len(seen) >= 2

    @pytest.mark.asyncio
    async def test_failing_tick_keeps_schedule(self):
        ticks = MagicMock(side_effect=[OSError("socket gone")] + [None] * 20)
        dog = Watchdog("flaky", ticks, interval=0.05)
        dog.start()
        await asyncio.sleep(0.2)
        assert dog.running
        dog.stop()
        assert ticks.call_count >= 2

    @pytest.mark.asyncio
    async def test_second_start_reuses_loop(self):
        dog = Watchdog("once", MagicMock(), interval=1.0)
        dog.start()
        task = dog._task
        dog.start()
        assert dog._task is task
        assert dog.starts == 1
        dog.stop()

    @pytest.mark.asyncio
    async def test_stop_then_start_spawns_fresh_loop(self):
        dog = Watchdog("again", MagicMock(), interval=1.0)
        dog.start()
        old = dog._task
        dog.stop()
        await asyncio.sleep(0)
        assert old.cancelled()
        assert not dog.running

        dog.start()
        assert dog.running
        assert dog._task is not old
        assert dog.starts == 2
        dog.stop()

    @pytest.mark.asyncio
    async def test_stop_is_safe_when_idle(self):
        dog = Watchdog("idle", MagicMock(), interval=1.0)
        dog.stop()
        dog.start()
        dog.stop()
        dog.stop()
        assert not dog.running
        assert dog.starts == 1


# ---------------------------------------------------------------------------
# supervised_task
# ---------------------------------------------------------------------------

class TestSupervisedTask:
    @pytest.mark.asyncio
    async def test_result_and_name(self):
        async def answer():
            return "ok"

        task = supervised_task(answer(), name="receive-loop")
        assert await task == "ok"
        assert task.get_name() == "receive-loop"

    @pytest.mark.asyncio
    async def test_failure_still_reraises_when_awaited(self):
        async def crash():
            raise ConnectionError("peer vanished")

        task = supervised_task(crash(), name="crashy")
        with pytest.raises(ConnectionError):
            await task

    @pytest.mark.asyncio
    async def test_cancellation(self):
        task = supervised_task(asyncio.sleep(60), name="sleepy")
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert task.cancelled()


# ---------------------------------------------------------------------------
# notify
# ---------------------------------------------------------------------------

class TestNotify:
    def test_forwards_arguments(self):
        first, second = MagicMock(), MagicMock()
        notify([first, second], "state", 3)
        first.assert_called_once_with("state", 3)
        second.assert_called_once_with("state", 3)

    def test_error_in_one_handler_is_contained(self):
        broken = MagicMock(side_effect=KeyError("missing"))
        healthy = MagicMock()
        notify([broken, healthy], label="observer")
        healthy.assert_called_once_with()

    def test_handler_list_may_change_during_notify(self):
        handlers: list = []
        late = MagicMock()
        handlers.append(lambda: handlers.append(late))
        notify(handlers)
        late.assert_not_called()
        assert late in handlers
