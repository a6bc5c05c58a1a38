"""Bridges the message channel and replica history into rolling windows."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Dict, List, Mapping, Optional

from .. import constants
from ..core.models import SENSOR_TOPICS, DataPoint, SensorKind, SensorSample
from ..core.protocols import MessageChannel, ReplicaStore, Subscription
from .decoder import Clock, Rejected, decode
from .window import RollingWindow

LOGGER = logging.getLogger(__name__)

RECONNECT_TIMEOUT_SECONDS = 5.0


class AggregatorStatus(str, Enum):
    LOADING = "loading"
    LIVE = "live"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class ChannelMessage:
    topic: str
    payload: bytes


def _history_value(raw: Any) -> Optional[float]:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def parse_history(kind: SensorKind, snapshot: Any) -> List[DataPoint]:
    """Turn a replica snapshot of ``sensor/<kind>`` into window rows.

    The replica stores records under chronologically ordered push keys, so
    sorting the keys restores arrival order. Lists are taken as-is.
    """

    if isinstance(snapshot, Mapping):
        entries = [snapshot[key] for key in sorted(snapshot)]
    elif isinstance(snapshot, list):
        entries = list(snapshot)
    else:
        return []

    points: List[DataPoint] = []
    for entry in entries:
        if not isinstance(entry, Mapping):
            continue
        value = _history_value(entry.get(kind.value))
        if value is None:
            continue
        point = DataPoint(time=str(entry.get("time", "")))
        setattr(point, kind.value, value)
        points.append(point)
    return points


class TelemetryAggregator:
    """Owns the short and long rolling windows.

    Inbound channel messages are only queued by the channel callback; a
    single drain task decodes them and updates both windows, so the windows
    have exactly one writer.
    """

    def __init__(
        self,
        channel: MessageChannel,
        replica: ReplicaStore,
        *,
        short_capacity: int = constants.SHORT_WINDOW_CAPACITY,
        long_capacity: int = constants.LONG_WINDOW_CAPACITY,
        queue_size: int = 256,
        reconnect_timeout: float = RECONNECT_TIMEOUT_SECONDS,
        clock: Optional[Clock] = None,
    ) -> None:
        self._channel = channel
        self._replica = replica
        self._clock = clock
        self._queue_size = queue_size
        self._reconnect_timeout = reconnect_timeout
        self._short = RollingWindow(short_capacity)
        self._long = RollingWindow(long_capacity)
        self._queue: Optional[asyncio.Queue[ChannelMessage]] = None
        self._drain_task: Optional[asyncio.Task[None]] = None
        self._replays: Dict[SensorKind, Subscription] = {}
        self._replayed: set[SensorKind] = set()
        self._status = AggregatorStatus.LOADING
        self._accepted = 0
        self._rejected = 0
        self._dropped = 0

        channel.register_connect_handler(self._on_channel_connect)
        channel.register_error_handler(self._on_channel_error)

    @property
    def short_window(self) -> RollingWindow:
        return self._short

    @property
    def long_window(self) -> RollingWindow:
        return self._long

    @property
    def status(self) -> AggregatorStatus:
        return self._status

    @property
    def running(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    def stats(self) -> Dict[str, int]:
        return {
            "accepted": self._accepted,
            "rejected": self._rejected,
            "dropped": self._dropped,
        }

    async def start(self) -> None:
        if self.running:
            LOGGER.warning("Telemetry aggregator already running")
            return

        self._queue = asyncio.Queue(maxsize=self._queue_size)

        if not self._channel.is_connected():
            LOGGER.info("Message channel is not connected; attempting to reconnect")
            try:
                await self._channel.reconnect(timeout=self._reconnect_timeout)
            except Exception as exc:
                LOGGER.warning("Message channel reconnect failed: %s", exc)

        if self._channel.is_connected():
            self._status = AggregatorStatus.LIVE

        self._channel.set_message_handler(self._enqueue)
        self.resubscribe()
        self._drain_task = asyncio.create_task(self._drain())
        self._request_replay()

    async def stop(self) -> None:
        try:
            self._channel.unsubscribe(SENSOR_TOPICS)
        except Exception as exc:
            LOGGER.warning("Failed to unsubscribe sensor topics: %s", exc)
        self._channel.set_message_handler(None)

        for subscription in self._replays.values():
            subscription.cancel()
        self._replays.clear()

        if self._drain_task is not None:
            self._drain_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._drain_task
            self._drain_task = None

    def resubscribe(self) -> None:
        for topic in SENSOR_TOPICS:
            try:
                self._channel.subscribe(topic)
            except Exception as exc:
                LOGGER.warning("Subscribe to %s failed: %s", topic, exc)

    async def flush(self) -> None:
        """Wait until every queued message has been applied."""

        if self._queue is not None:
            await self._queue.join()

    def ingest(self, topic: str, payload: bytes | str) -> Optional[SensorSample]:
        result = decode(topic, payload, clock=self._clock)
        if isinstance(result, Rejected):
            self._rejected += 1
            LOGGER.debug(
                "Dropped message on %s (%s) %s",
                topic,
                result.reason.value,
                result.detail,
            )
            return None

        self._short.add_sample(result)
        self._long.add_sample(result)
        self._accepted += 1
        return result

    def seed(self, kind: SensorKind, snapshot: Any) -> int:
        points = parse_history(kind, snapshot)
        if points:
            self._short.seed(points)
            self._long.seed(points)
        return len(points)

    # ------------------------------------------------------------------
    # Internal callbacks
    # ------------------------------------------------------------------
    async def _enqueue(self, topic: str, payload: bytes) -> None:
        queue = self._queue
        if queue is None:
            return
        try:
            queue.put_nowait(ChannelMessage(topic=topic, payload=payload))
        except asyncio.QueueFull:
            self._dropped += 1
            LOGGER.warning("Telemetry queue full; dropping message on %s", topic)

    async def _drain(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            message = await queue.get()
            try:
                self.ingest(message.topic, message.payload)
            except Exception:
                LOGGER.exception("Failed to apply message on %s", message.topic)
            finally:
                queue.task_done()

    def _request_replay(self) -> None:
        for kind in SensorKind:
            if kind in self._replayed or kind in self._replays:
                continue
            self._replays[kind] = self._replica.observe(
                kind.replica_path, partial(self._on_history, kind)
            )

    def _on_history(self, kind: SensorKind, snapshot: Any) -> None:
        if kind in self._replayed:
            return
        self._replayed.add(kind)
        subscription = self._replays.pop(kind, None)
        if subscription is not None:
            subscription.cancel()

        count = self.seed(kind, snapshot)
        LOGGER.info("Replayed %d historical %s records", count, kind.value)

    def _on_channel_connect(self, rc: int) -> None:
        if self._status != AggregatorStatus.LIVE:
            LOGGER.info("Message channel connected; telemetry is live")
        self._status = AggregatorStatus.LIVE

    def _on_channel_error(self, error: Exception) -> None:
        LOGGER.error("Message channel error: %s", error)
        self._status = AggregatorStatus.ERROR
