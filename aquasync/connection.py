"""Broker connection supervision.

Reconnect requests arrive from the MQTT disconnect callback and from the
startup path when the first connect fails. The coordinator funnels them
through one supervisor task so at most one reconnect is in flight.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional

if TYPE_CHECKING:
    from .adapters.mqtt import MQTTClient
    from .config import ResilienceConfig

LOGGER = logging.getLogger(__name__)

MAX_RECONNECT_ATTEMPTS = 10
MIN_RECONNECT_DELAY = 0.1


class ReconnectReason(str, Enum):
    CONNECTION_LOST = "connection_lost"
    BROKER_DISCONNECT = "broker_disconnect"
    CONNECT_FAILED = "connect_failed"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


Callback = Callable[..., Optional[Awaitable[None]]]


@dataclass
class Backoff:
    """Doubling delay with optional symmetric jitter."""

    initial: float
    maximum: float
    jitter_ratio: float = 0.0
    _current: float = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.initial = max(MIN_RECONNECT_DELAY, self.initial)
        self.maximum = max(self.initial, self.maximum)
        self.jitter_ratio = max(0.0, min(1.0, self.jitter_ratio))
        self._current = self.initial

    @classmethod
    def from_config(cls, config: ResilienceConfig) -> "Backoff":
        return cls(
            initial=config.reconnect_initial_seconds,
            maximum=config.reconnect_max_seconds,
            jitter_ratio=config.reconnect_jitter_ratio,
        )

    def next_delay(self) -> float:
        delay = self._current
        self._current = min(self._current * 2, self.maximum)
        if self.jitter_ratio <= 0.0:
            return delay
        spread = delay * self.jitter_ratio
        return random.uniform(max(0.05, delay - spread), delay + spread)

    def reset(self) -> None:
        self._current = self.initial


class ConnectionCoordinator:
    """Owns connect and reconnect for the message channel.

    After every successful reconnect the reconnected callbacks run; the
    application uses that hook to re-issue the sensor subscriptions.
    """

    def __init__(
        self,
        *,
        mqtt_client: MQTTClient,
        resilience_config: ResilienceConfig,
        max_attempts: int = MAX_RECONNECT_ATTEMPTS,
    ) -> None:
        self._mqtt_client = mqtt_client
        self._backoff = Backoff.from_config(resilience_config)
        self._max_attempts = max(1, max_attempts)

        self._state = ConnectionState.DISCONNECTED
        self._pending_reason: Optional[ReconnectReason] = None
        self._reconnect_event = asyncio.Event()
        self._stop_event = asyncio.Event()
        self._supervisor_task: Optional[asyncio.Task[None]] = None
        self._reconnects = 0

        self._on_disconnected_callbacks: List[Callback] = []
        self._on_reconnected_callbacks: List[Callback] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def reconnects(self) -> int:
        return self._reconnects

    def register_reconnected_callback(self, callback: Callback) -> None:
        self._on_reconnected_callbacks.append(callback)

    def register_disconnected_callback(self, callback: Callback) -> None:
        self._on_disconnected_callbacks.append(callback)

    def request_reconnect(self, reason: ReconnectReason) -> None:
        """Ask the supervisor for a reconnect.

        The first reason wins until the supervisor picks it up. A lost
        connection reported while already reconnecting is our own
        disconnect and is dropped.
        """

        if self._stop_event.is_set():
            return
        if (
            reason == ReconnectReason.CONNECTION_LOST
            and self._state == ConnectionState.RECONNECTING
        ):
            return

        if self._pending_reason is None:
            LOGGER.debug("Reconnect requested: %s", reason.value)
            self._pending_reason = reason
        self._reconnect_event.set()

    async def connect(self) -> bool:
        """Make the initial connection; False once every attempt failed."""

        self._state = ConnectionState.CONNECTING
        LOGGER.info("Establishing MQTT connection")
        if await self._attempt_connect():
            self._state = ConnectionState.CONNECTED
            LOGGER.info("MQTT connection established")
            return True

        self._state = ConnectionState.DISCONNECTED
        LOGGER.error("Unable to connect to MQTT broker")
        return False

    async def disconnect(self) -> None:
        LOGGER.info("Disconnecting from MQTT broker")
        self._state = ConnectionState.DISCONNECTED
        await self._quiet_disconnect()

    def start_supervisor(self) -> None:
        if self._supervisor_task is not None and not self._supervisor_task.done():
            LOGGER.warning("Connection supervisor already running")
            return
        self._stop_event.clear()
        self._supervisor_task = asyncio.create_task(self._supervise())

    async def stop_supervisor(self) -> None:
        self._stop_event.set()
        self._reconnect_event.set()
        task, self._supervisor_task = self._supervisor_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # ------------------------------------------------------------------
    # Supervisor
    # ------------------------------------------------------------------
    async def _supervise(self) -> None:
        while True:
            await self._reconnect_event.wait()
            self._reconnect_event.clear()
            if self._stop_event.is_set():
                return

            reason, self._pending_reason = self._pending_reason, None
            if reason is not None:
                await self._reconnect(reason)

    async def _reconnect(self, reason: ReconnectReason) -> None:
        LOGGER.info("Reconnecting to MQTT broker (reason=%s)", reason.value)
        self._state = ConnectionState.RECONNECTING
        await _run_callbacks(self._on_disconnected_callbacks, reason)
        await self._quiet_disconnect()

        if not await self._attempt_connect():
            self._state = ConnectionState.DISCONNECTED
            LOGGER.error("Reconnect gave up; waiting for the next trigger")
            return

        self._state = ConnectionState.CONNECTED
        self._reconnects += 1
        await _run_callbacks(self._on_reconnected_callbacks)

    async def _attempt_connect(self) -> bool:
        self._backoff.reset()
        for attempt in range(1, self._max_attempts + 1):
            if self._stop_event.is_set():
                return False
            try:
                await self._mqtt_client.connect()
            except Exception as exc:
                if attempt == self._max_attempts:
                    LOGGER.warning("Connection attempt %d failed: %s", attempt, exc)
                    return False
                delay = self._backoff.next_delay()
                LOGGER.warning(
                    "Connection attempt %d failed: %s, retrying in %.1fs",
                    attempt,
                    exc,
                    delay,
                )
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            else:
                return True
        return False

    async def _quiet_disconnect(self) -> None:
        try:
            await self._mqtt_client.disconnect()
        except Exception as exc:
            LOGGER.debug("Ignoring error during MQTT disconnect: %s", exc)


async def _run_callbacks(callbacks: List[Callback], *args) -> None:
    for callback in callbacks:
        try:
            result = callback(*args)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            LOGGER.exception("Connection callback failed")
