"""MQTT channel over paho-mqtt.

paho runs its network loop on a background thread; every callback it
fires is handed back to the asyncio loop that called :meth:`connect`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable, List, Optional

import paho.mqtt.client as mqtt

from ..config import BrokerConfig
from ..core.protocols import MessageHandler

LOGGER = logging.getLogger(__name__)


class MQTTConnectionError(RuntimeError):
    """Raised when the broker cannot be reached or refuses a request."""


def _reason_value(reason_code: Any) -> int:
    value = getattr(reason_code, "value", reason_code)
    try:
        return int(value)
    except (TypeError, ValueError):
        return -1


def _check(rc: int, action: str) -> None:
    if rc != mqtt.MQTT_ERR_SUCCESS:
        raise MQTTConnectionError(f"{action} failed with rc={rc}")


class MQTTClient:
    """Asyncio facade for one broker session."""

    def __init__(self, config: BrokerConfig, *, client_id: Optional[str] = None) -> None:
        self.config = config
        self.client_id = client_id or config.client_id

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connack: Optional[asyncio.Event] = None
        self._disconnected: Optional[asyncio.Event] = None
        self._connack_rc: Optional[int] = None
        self._connected = False
        self._message_handler: Optional[MessageHandler] = None
        self._connect_handlers: List[Callable[[int], None]] = []
        self._disconnect_handlers: List[Callable[[int], None]] = []
        self._error_handlers: List[Callable[[Exception], None]] = []

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------
    async def connect(self, timeout: float = 30.0) -> None:
        """Open a fresh session and wait for the broker's CONNACK."""

        self._loop = asyncio.get_running_loop()
        self._disconnected = asyncio.Event()
        client = self._build_client()
        self._client = client

        LOGGER.info(
            "Connecting to MQTT broker %s:%s over %s",
            self.config.host,
            self.config.port,
            self.config.transport,
        )
        self._connack = asyncio.Event()
        self._connack_rc = None
        client.connect_async(self.config.host, self.config.port, self.config.keepalive)
        client.loop_start()

        try:
            await self._await_connack(timeout, "connecting to")
        except MQTTConnectionError:
            client.loop_stop()
            raise

    async def reconnect(self, timeout: float = 30.0) -> None:
        """Re-open the existing session with the same client.

        The socket connect happens on paho's network thread, never on the
        event loop. A failed :meth:`connect` leaves that thread stopped, so it
        is started again here; ``loop_start`` is a no-op while it still runs.
        """

        client = self._require_client("MQTT client not initialised")
        self._loop = asyncio.get_running_loop()
        self._connack = asyncio.Event()
        self._connack_rc = None

        reconnect_async = getattr(client, "reconnect_async", None)
        if reconnect_async is not None:
            reconnect_async()
        else:
            client.connect_async(
                self.config.host, self.config.port, self.config.keepalive
            )
        client.loop_start()

        try:
            await self._await_connack(timeout, "reconnecting to")
        except MQTTConnectionError:
            client.loop_stop()
            raise

    async def disconnect(self, timeout: float = 5.0) -> None:
        client = self._client
        if client is None:
            return

        client.disconnect()
        try:
            if self._disconnected is not None:
                await asyncio.wait_for(self._disconnected.wait(), timeout=timeout)
        finally:
            client.loop_stop()
            self._client = None
            self._connected = False

    def is_connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------
    def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> None:
        client = self._require_client()
        info = client.publish(topic, payload, qos=qos, retain=retain)
        _check(info.rc, f"Publish to {topic}")

    def subscribe(self, topics: str | Iterable[str], qos: int = 1) -> None:
        client = self._require_client()
        for topic in [topics] if isinstance(topics, str) else topics:
            rc, _ = client.subscribe(topic, qos=qos)
            _check(rc, f"Subscribe to {topic}")

    def unsubscribe(self, topics: str | Iterable[str]) -> None:
        client = self._require_client()
        for topic in [topics] if isinstance(topics, str) else topics:
            rc, _ = client.unsubscribe(topic)
            _check(rc, f"Unsubscribe from {topic}")

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._message_handler = handler

    def register_connect_handler(self, handler: Callable[[int], None]) -> None:
        self._connect_handlers.append(handler)

    def register_disconnect_handler(self, handler: Callable[[int], None]) -> None:
        self._disconnect_handlers.append(handler)

    def register_error_handler(self, handler: Callable[[Exception], None]) -> None:
        self._error_handlers.append(handler)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _build_client(self) -> mqtt.Client:
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            transport=self.config.transport,
        )
        client.enable_logger(LOGGER)
        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)
        if self.config.tls:
            client.tls_set()
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        return client

    def _require_client(self, message: str = "MQTT client not connected") -> mqtt.Client:
        if self._client is None:
            raise MQTTConnectionError(message)
        return self._client

    async def _await_connack(self, timeout: float, action: str) -> None:
        assert self._connack is not None
        try:
            await asyncio.wait_for(self._connack.wait(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            error = MQTTConnectionError(f"Timed out {action} MQTT broker")
            self._dispatch(self._error_handlers, error)
            raise error from exc

        if self._connack_rc != 0:
            raise MQTTConnectionError(
                f"MQTT broker refused connection (rc={self._connack_rc})"
            )

    def _dispatch(self, handlers: List[Callable[[Any], None]], argument: Any) -> None:
        loop = self._loop
        if loop is None:
            return
        for handler in handlers:
            loop.call_soon_threadsafe(handler, argument)

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------
    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        rc = _reason_value(reason_code)
        self._connack_rc = rc
        self._connected = rc == 0
        if self._loop is not None and self._connack is not None:
            self._loop.call_soon_threadsafe(self._connack.set)

        if rc == 0:
            LOGGER.info("Connected to MQTT broker")
            self._dispatch(self._connect_handlers, rc)
        else:
            LOGGER.error("MQTT broker refused connection with rc=%s", rc)
            self._dispatch(
                self._error_handlers,
                MQTTConnectionError(f"MQTT broker refused connection (rc={rc})"),
            )

    def _on_disconnect(
        self, client, userdata, disconnect_flags, reason_code, properties=None
    ) -> None:
        rc = _reason_value(reason_code)
        LOGGER.info("Disconnected from MQTT broker (rc=%s)", rc)
        self._connected = False
        if self._loop is not None and self._disconnected is not None:
            self._loop.call_soon_threadsafe(self._disconnected.set)
        self._dispatch(self._disconnect_handlers, rc)

    def _on_message(self, client, userdata, message: mqtt.MQTTMessage) -> None:
        handler = self._message_handler
        loop = self._loop
        if handler is None or loop is None:
            return

        try:
            result = handler(message.topic, message.payload)
            if asyncio.iscoroutine(result):
                asyncio.run_coroutine_threadsafe(result, loop)
        except Exception:  # pragma: no cover
            LOGGER.exception("MQTT message handler failed on %s", message.topic)
