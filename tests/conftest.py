import asyncio
from typing import Any, Callable, List, Optional

import pytest

from aquasync.adapters import InMemoryReplicaStore, MQTTConnectionError, ReplicaWriteError


async def settle(rounds: int = 20) -> None:
    """Give scheduled callbacks and tasks a chance to run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeChannel:
    """In-process stand-in for the MQTT adapter."""

    def __init__(self, *, connected: bool = True) -> None:
        self.connected = connected
        self.events: List[tuple] = []
        self.subscribed: List[str] = []
        self.unsubscribed: List[str] = []
        self.published: List[tuple[str, bytes]] = []
        self.reconnects = 0
        self.reconnect_timeouts: List[float] = []
        self.reconnect_succeeds = True
        self.fail_subscribe: set[str] = set()
        self.fail_publish = False
        self.handler: Optional[Callable[[str, bytes], Any]] = None
        self.connect_handlers: List[Callable[[int], None]] = []
        self.disconnect_handlers: List[Callable[[int], None]] = []
        self.error_handlers: List[Callable[[Exception], None]] = []

    async def connect(self, timeout: float = 30.0) -> None:
        self.events.append(("connect",))
        self.connected = True
        for handler in self.connect_handlers:
            handler(0)

    async def disconnect(self, timeout: float = 5.0) -> None:
        self.events.append(("disconnect",))
        self.connected = False

    def is_connected(self) -> bool:
        return self.connected

    async def reconnect(self, timeout: float = 30.0) -> None:
        self.reconnects += 1
        self.reconnect_timeouts.append(timeout)
        self.events.append(("reconnect",))
        if not self.reconnect_succeeds:
            raise MQTTConnectionError("broker refused connection")
        self.connected = True

    def subscribe(self, topics, qos: int = 1) -> None:
        for topic in [topics] if isinstance(topics, str) else list(topics):
            if topic in self.fail_subscribe:
                raise MQTTConnectionError(f"subscribe to {topic} refused")
            self.events.append(("subscribe", topic))
            self.subscribed.append(topic)

    def unsubscribe(self, topics) -> None:
        for topic in [topics] if isinstance(topics, str) else list(topics):
            self.events.append(("unsubscribe", topic))
            self.unsubscribed.append(topic)

    def publish(self, topic: str, payload: bytes, qos: int = 1, retain: bool = False) -> None:
        if self.fail_publish:
            raise MQTTConnectionError("MQTT client not connected")
        self.events.append(("publish", topic, payload))
        self.published.append((topic, payload))

    def set_message_handler(self, handler) -> None:
        self.handler = handler

    def register_connect_handler(self, handler) -> None:
        self.connect_handlers.append(handler)

    def register_disconnect_handler(self, handler) -> None:
        self.disconnect_handlers.append(handler)

    def register_error_handler(self, handler) -> None:
        self.error_handlers.append(handler)

    async def deliver(self, topic: str, payload: bytes) -> None:
        assert self.handler is not None, "no message handler installed"
        result = self.handler(topic, payload)
        if asyncio.iscoroutine(result):
            await result


class RecordingReplica(InMemoryReplicaStore):
    """In-memory replica that can fail writes and shares an event log."""

    def __init__(self, initial=None, *, log: Optional[List[tuple]] = None) -> None:
        super().__init__(initial)
        self.log = log if log is not None else []
        self.fail_writes = 0

    async def write(self, path: str, value: Any) -> None:
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise ReplicaWriteError("replica unavailable")
        self.log.append(("write", path, value))
        await super().write(path, value)


class ManualClock:
    """Sleep replacement whose sleepers only wake on :meth:`tick`."""

    def __init__(self) -> None:
        self._sleepers: List[asyncio.Future] = []
        self.requested: List[float] = []

    async def sleep(self, delay: float) -> None:
        future = asyncio.get_running_loop().create_future()
        self._sleepers.append(future)
        self.requested.append(delay)
        await future

    @property
    def pending(self) -> int:
        return sum(1 for future in self._sleepers if not future.done())

    async def tick(self, count: int = 1) -> None:
        for _ in range(count):
            await settle()
            waiting, self._sleepers = (
                [future for future in self._sleepers if not future.done()],
                [],
            )
            for future in waiting:
                future.set_result(None)
            await settle()


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def replica() -> RecordingReplica:
    return RecordingReplica()


@pytest.fixture
def manual_clock() -> ManualClock:
    return ManualClock()
