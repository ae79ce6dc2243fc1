"""Background-task plumbing for the LAN link.

The heartbeat runs on a :class:`Watchdog`. Long-lived loops are spawned with
:func:`supervised_task` so a crash shows up in the log.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Coroutine, Iterable

from loguru import logger

Tick = Callable[[], Any]


class Watchdog:
    """Call *callback* every *interval* seconds until stopped.

    Nothing fires on :meth:`start` itself; the first call happens one full
    interval later. A failing tick is logged and the schedule continues.
    """

    def __init__(self, name: str, callback: Tick, interval: float = 30.0) -> None:
        self.name = name
        self._callback = callback
        self._interval = interval
        self._task: asyncio.Task | None = None
        self.starts = 0

    @property
    def running(self) -> bool:
        task = self._task
        return task is not None and not task.done()

    def start(self) -> None:
        if self.running:
            return
        self.starts += 1
        self._task = supervised_task(self._run(), name=f"watchdog-{self.name}")

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        logger.debug("[Watchdog/{}] stopped", self.name)

    async def _run(self) -> None:
        logger.debug("[Watchdog/{}] every {:.1f}s", self.name, self._interval)
        while True:
            await asyncio.sleep(self._interval)
            await self._tick()

    async def _tick(self) -> None:
        try:
            outcome = self._callback()
            if asyncio.iscoroutine(outcome):
                await outcome
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[Watchdog/{}] tick failed: {}", self.name, exc)


def _report(task: asyncio.Task) -> None:
    if task.cancelled() or task.exception() is None:
        return
    logger.error("[Resilience] task {!r} crashed: {!r}", task.get_name(), task.exception())


def supervised_task(coro: Coroutine[Any, Any, Any], *, name: str = "") -> asyncio.Task:
    """``asyncio.create_task`` whose unhandled failure is logged.

    Cancellation is silent. The task is returned untouched, so awaiting it
    still re-raises.
    """
    task = asyncio.create_task(coro, name=name or None)
    task.add_done_callback(_report)
    return task


def notify(handlers: Iterable[Callable[..., Any]], *args: Any, label: str = "handler") -> None:
    """Call every handler with *args*; errors are logged and skipped."""
    for handler in list(handlers):
        try:
            handler(*args)
        except Exception as exc:
            logger.error("[Resilience] {} error: {}", label, exc)
