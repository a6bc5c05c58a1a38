"""Operator commands sent to the device."""

from __future__ import annotations

import logging
from typing import Optional

from .. import constants
from ..adapters.mqtt import MQTTConnectionError
from ..core.protocols import MessageChannel
from .countdown import CountdownProcess
from .state_store import ControlStateStore

LOGGER = logging.getLogger(__name__)


class InvalidCommandInput(ValueError):
    """Raised internally when operator input cannot be published."""


def parse_hours(raw: str) -> int:
    text = raw.strip()
    try:
        hours = int(text)
    except ValueError as exc:
        raise InvalidCommandInput(f"Hour must be a whole number, got {text!r}") from exc
    if hours <= 0:
        raise InvalidCommandInput(f"Hour must be positive, got {hours}")
    return hours


class CommandPublisher:
    """Validates operator input, records it and publishes it to the device.

    The control state write is always issued before the device publish and
    before the countdown starts, so the replica never lags a running timer.
    """

    def __init__(
        self,
        channel: MessageChannel,
        store: ControlStateStore,
        countdown: CountdownProcess,
        *,
        qos: int = 1,
    ) -> None:
        self._channel = channel
        self._store = store
        self._countdown = countdown
        self._qos = qos

    async def publish_hour(self, raw: str) -> bool:
        if not raw or not raw.strip():
            return False

        try:
            hours = parse_hours(raw)
        except InvalidCommandInput as exc:
            LOGGER.warning("Rejected hour command: %s", exc)
            return False

        value = raw.strip()
        await self._store.set(hour=value)
        if not self._send(constants.HOUR_TOPIC, value):
            return False

        await self._countdown.start_timer(hours)
        return True

    async def publish_mode(self, raw: str) -> bool:
        if not raw or not raw.strip():
            return False

        value = raw.strip()
        await self._store.set(mode=value)
        return self._send(constants.MODE_TOPIC, value)

    def _send(self, topic: str, value: str) -> bool:
        try:
            self._channel.publish(topic, value.encode("utf-8"), qos=self._qos)
        except MQTTConnectionError as exc:
            LOGGER.error("Failed to publish %s command: %s", topic, exc)
            return False
        LOGGER.info("Published %s=%s", topic, value)
        return True


def describe_rejection(raw: Optional[str]) -> Optional[str]:
    """Explain why ``raw`` would be rejected as an hour command, if it would."""

    if not raw or not raw.strip():
        return "value is empty"
    try:
        parse_hours(raw)
    except InvalidCommandInput as exc:
        return str(exc)
    return None
