"""Debounce and coalesce change notifications into rebuilds.

State machine:

    IDLE ──notify──> PENDING ──timer──> RUNNING ──done──> IDLE
                        ^                  │
                        └──────notify──────┘   (timer keeps restarting)

While RUNNING, a timer expiry sets the queued-again flag instead of
starting a second rebuild. When the running rebuild completes, the flag
is consumed and exactly one more rebuild runs. Further expiries while the
flag is already set are absorbed, so the backlog never exceeds one.

Timers come from an injectable :class:`Scheduler` so tests can drive the
debounce window without sleeping.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopScheduler:
    """Scheduler backed by the running asyncio loop."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


class CoalescerState(str, enum.Enum):
    IDLE = "idle"
    PENDING = "pending"
    RUNNING = "running"


class RebuildCoalescer:
    """Turns bursts of ``notify()`` calls into a bounded sequence of rebuilds."""

    def __init__(
        self,
        rebuild: Callable[[], Awaitable[None]],
        *,
        debounce_seconds: float = 0.1,
        scheduler: Scheduler | None = None,
    ) -> None:
        self._rebuild = rebuild
        self._debounce = debounce_seconds
        self._scheduler = scheduler or LoopScheduler()
        self._state = CoalescerState.IDLE
        self._timer: TimerHandle | None = None
        self._task: asyncio.Task | None = None
        self._queued_again = False
        self._closed = False
        self.runs = 0

    @property
    def state(self) -> CoalescerState:
        return self._state

    @property
    def queued_again(self) -> bool:
        return self._queued_again

    def notify(self) -> None:
        """Record a qualifying change and (re)start the debounce timer."""
        if self._closed:
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self._scheduler.call_later(self._debounce, self._on_timer)
        if self._state is CoalescerState.IDLE:
            self._state = CoalescerState.PENDING

    def trigger_now(self) -> None:
        """Skip the debounce window (manual rebuild)."""
        if self._closed:
            return
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._fire()

    def _on_timer(self) -> None:
        self._timer = None
        if self._closed:
            return
        self._fire()

    def _fire(self) -> None:
        if self._state is CoalescerState.RUNNING:
            if not self._queued_again:
                logger.debug("Rebuild in progress; queuing one more")
            self._queued_again = True
            return
        self._state = CoalescerState.RUNNING
        self._task = asyncio.ensure_future(self._run())

    async def _run(self) -> None:
        while True:
            self.runs += 1
            try:
                await self._rebuild()
            except Exception:
                logger.exception("Rebuild failed")
            if self._queued_again and not self._closed:
                self._queued_again = False
                continue
            break
        self._queued_again = False
        self._task = None
        self._state = CoalescerState.PENDING if self._timer is not None else CoalescerState.IDLE

    async def wait_idle(self) -> None:
        """Wait for the current rebuild, and any queued follow-up, to finish."""
        task = self._task
        if task is not None:
            await asyncio.shield(task)

    async def drain(self) -> None:
        """Stop accepting triggers and wait for any in-flight rebuild to finish."""
        self._closed = True
        self._queued_again = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        task = self._task
        if task is not None:
            await asyncio.shield(task)
        self._state = CoalescerState.IDLE
