"""Countdown timer driven by the control state's ``timeLeft``."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from .. import constants
from ..core.models import ControlState
from .state_store import ChangeOrigin, ControlStateStore

LOGGER = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class CountdownState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    EXPIRED = "expired"


def format_time_left(seconds: Optional[int]) -> str:
    """Render seconds as ``HH:MM:SS``."""

    if seconds is None:
        return "--:--:--"
    seconds = max(0, int(seconds))
    hours, remainder = divmod(seconds, constants.SECONDS_PER_HOUR)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


class CountdownHandle:
    """Cancellation handle for one tick chain."""

    def __init__(self, task: asyncio.Task[None]) -> None:
        self._task = task

    @property
    def active(self) -> bool:
        return not self._task.done()

    def cancel(self) -> None:
        if not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        with contextlib.suppress(asyncio.CancelledError):
            await self._task


class CountdownProcess:
    """Single tick chain decrementing ``time_left`` once per interval.

    Starting a new timer always cancels the previous chain first, so there
    is never more than one chain writing to the store.
    """

    def __init__(
        self,
        store: ControlStateStore,
        *,
        interval: float = 1.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._store = store
        self._interval = interval
        self._sleep = sleep
        self._state = CountdownState.IDLE
        self._handle: Optional[CountdownHandle] = None
        self._stopped = False
        self._expired_listeners: List[Callable[[], None]] = []

        store.on_change(self._on_store_change)

    @property
    def state(self) -> CountdownState:
        return self._state

    @property
    def is_timer_active(self) -> bool:
        return self._state is CountdownState.RUNNING

    @property
    def time_left(self) -> Optional[int]:
        return self._store.get().time_left

    def on_expired(self, listener: Callable[[], None]) -> None:
        self._expired_listeners.append(listener)

    async def start_timer(self, hours: int) -> CountdownHandle:
        total = int(hours) * constants.SECONDS_PER_HOUR
        if total < 0:
            raise ValueError("Countdown duration cannot be negative")

        self._stopped = False
        self.cancel()
        handle = self._install_chain()
        LOGGER.info("Countdown started for %d hour(s)", int(hours))
        await self._store.set(time_left=total)
        return handle

    def cancel(self) -> None:
        """Cancel the active tick chain, if any."""

        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._state is CountdownState.RUNNING:
            self._state = CountdownState.IDLE

    async def stop(self) -> None:
        """Cancel the chain and ignore remote updates until the next start."""

        self._stopped = True
        handle = self._handle
        self.cancel()
        if handle is not None:
            await handle.wait()

    async def wait(self) -> None:
        """Wait for the current tick chain to finish or be cancelled."""

        if self._handle is not None:
            await self._handle.wait()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _install_chain(self) -> CountdownHandle:
        if self._handle is not None:
            self._handle.cancel()
        self._state = CountdownState.RUNNING
        handle = CountdownHandle(asyncio.create_task(self._run()))
        self._handle = handle
        return handle

    async def _run(self) -> None:
        while True:
            await self._sleep(self._interval)
            current = self._store.get().time_left
            if current is None:
                self._state = CountdownState.IDLE
                return
            if current <= 0:
                self._expire()
                return

            remaining = current - 1
            await self._store.set(time_left=remaining)
            if remaining == 0:
                self._expire()
                return

    def _expire(self) -> None:
        self._state = CountdownState.EXPIRED
        self._handle = None
        LOGGER.info("Timer completed")
        for listener in list(self._expired_listeners):
            try:
                listener()
            except Exception:
                LOGGER.exception("Countdown completion listener failed")

    def _on_store_change(self, state: ControlState, origin: ChangeOrigin) -> None:
        if origin is not ChangeOrigin.REMOTE or self._stopped:
            return

        if state.time_left is None:
            if self._handle is not None:
                LOGGER.info("Countdown reset remotely")
            self.cancel()
            self._state = CountdownState.IDLE
        elif state.time_left == 0:
            self.cancel()
            self._state = CountdownState.EXPIRED
        elif self._handle is None or not self._handle.active:
            LOGGER.info(
                "Resuming countdown with %s left", format_time_left(state.time_left)
            )
            self._install_chain()
