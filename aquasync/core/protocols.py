"""Protocol definitions for the message channel and replica capabilities."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol


MessageHandler = Callable[[str, bytes], Awaitable[None] | None]
SnapshotCallback = Callable[[Any], Awaitable[None] | None]


class MessageChannel(Protocol):
    """Publish/subscribe transport connecting the dashboard to the device."""

    def is_connected(self) -> bool:
        ...

    async def reconnect(self, timeout: float = 30.0) -> None:
        ...

    def subscribe(self, topics: str | Iterable[str], qos: int = 1) -> None:
        ...

    def unsubscribe(self, topics: str | Iterable[str]) -> None:
        ...

    def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> None:
        ...

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        ...

    def register_connect_handler(self, handler: Callable[[int], None]) -> None:
        ...

    def register_error_handler(self, handler: Callable[[Exception], None]) -> None:
        ...


class Subscription(Protocol):
    """Handle returned by :meth:`ReplicaStore.observe`."""

    def cancel(self) -> None:
        """Stop delivering snapshots. Safe to call more than once."""
        ...


class ReplicaStore(Protocol):
    """Path-addressed key-value tree holding the durable replica."""

    async def write(self, path: str, value: Any) -> None:
        """Overwrite the value stored at ``path``.

        Raises:
            ReplicaWriteError: If the write was not acknowledged.
        """
        ...

    def observe(self, path: str, callback: SnapshotCallback) -> Subscription:
        """Deliver the current value at ``path`` and every later change."""
        ...

    async def aclose(self) -> None:
        """Close any underlying resources."""
        ...
