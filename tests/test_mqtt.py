"""Tests for the MQTT adapter."""

import asyncio
from types import SimpleNamespace

import pytest
import pytest_asyncio

from aquasync.adapters import MQTTClient, MQTTConnectionError
from aquasync.config import BrokerConfig

import paho.mqtt.client as mqtt


class FakeMqttClient:
    """Minimal fake paho-mqtt client for testing."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        events: dict,
        *,
        rc_connect: int = 0,
        rc_disconnect: int = 0,
        publish_rc: int = mqtt.MQTT_ERR_SUCCESS,
        subscribe_rc: int = mqtt.MQTT_ERR_SUCCESS,
        respond: bool = True,
        **kwargs,
    ):
        self._loop = loop
        self._events = events
        self._rc_connect = rc_connect
        self._rc_disconnect = rc_disconnect
        self._publish_rc = publish_rc
        self._subscribe_rc = subscribe_rc
        self._respond = respond
        events["init_kwargs"] = kwargs

        self.on_connect = None
        self.on_disconnect = None
        self.on_message = None

    # paho interface -------------------------------------------------
    def enable_logger(self, logger):
        self._events.setdefault("logger_enabled", True)

    def username_pw_set(self, username, password=None):
        self._events["auth"] = (username, password)

    def tls_set(self):
        self._events["tls"] = True

    def connect_async(self, host, port, keepalive):
        self._events["connect_args"] = (host, port, keepalive)
        self._events["connect_async"] = self._events.get("connect_async", 0) + 1
        self._schedule_connack()

    def loop_start(self):
        self._events["loop_start"] = self._events.get("loop_start", 0) + 1
        return mqtt.MQTT_ERR_SUCCESS

    def loop_stop(self):
        self._events["loop_stop"] = self._events.get("loop_stop", 0) + 1

    def disconnect(self):
        self._events["disconnect_called"] = True
        if self.on_disconnect:
            self._loop.call_soon(
                self.on_disconnect, self, None, None, self._rc_disconnect, None
            )

    def publish(self, topic, payload, qos=0, retain=False):
        self._events.setdefault("published", []).append((topic, payload, qos, retain))
        return SimpleNamespace(rc=self._publish_rc)

    def subscribe(self, topic, qos=0):
        self._events.setdefault("subscribed", []).append((topic, qos))
        return self._subscribe_rc, 1

    def unsubscribe(self, topic):
        self._events.setdefault("unsubscribed", []).append(topic)
        return mqtt.MQTT_ERR_SUCCESS, 2

    def _schedule_connack(self):
        if self.on_connect and self._respond:
            self._loop.call_soon(
                self.on_connect, self, None, None, self._rc_connect, None
            )


def install_fake(monkeypatch, **options) -> dict:
    loop = asyncio.get_running_loop()
    events: dict = {}

    def factory(*args, **kwargs):
        return FakeMqttClient(loop, events, *args, **options, **kwargs)

    monkeypatch.setattr("aquasync.adapters.mqtt.mqtt.Client", factory)
    return events


@pytest_asyncio.fixture
async def mqtt_client(monkeypatch):
    events = install_fake(monkeypatch)
    config = BrokerConfig(
        host="broker.tank.local",
        port=1883,
        username="dashboard",
        password="secret",
        tls=True,
    )

    client = MQTTClient(config, client_id="dashboard-1")
    await client.connect()

    yield client, events

    await client.disconnect()


@pytest.mark.asyncio
async def test_connect_configures_client(mqtt_client):
    client, events = mqtt_client

    assert events["connect_args"] == ("broker.tank.local", 1883, 60)
    assert events["auth"] == ("dashboard", "secret")
    assert events["tls"] is True
    assert events["loop_start"] == 1
    assert events["init_kwargs"]["client_id"] == "dashboard-1"
    assert events["init_kwargs"]["transport"] == "tcp"
    assert client.is_connected()


@pytest.mark.asyncio
async def test_publish_delegates_to_client(mqtt_client):
    client, events = mqtt_client

    client.publish("hour", b"2", qos=1)

    assert events["published"] == [("hour", b"2", 1, False)]


@pytest.mark.asyncio
async def test_subscribe_and_unsubscribe_each_topic(mqtt_client):
    client, events = mqtt_client

    client.subscribe(["sensor/tds", "sensor/turbidity"])
    client.unsubscribe("sensor/tds")

    assert events["subscribed"] == [("sensor/tds", 1), ("sensor/turbidity", 1)]
    assert events["unsubscribed"] == ["sensor/tds"]


@pytest.mark.asyncio
async def test_connect_handlers_run_on_connack(monkeypatch):
    install_fake(monkeypatch)
    client = MQTTClient(BrokerConfig())
    seen = []
    client.register_connect_handler(seen.append)

    await client.connect()
    await asyncio.sleep(0)

    assert seen == [0]
    await client.disconnect()


@pytest.mark.asyncio
async def test_message_handler_dispatches_async(monkeypatch):
    events = install_fake(monkeypatch)
    client = MQTTClient(BrokerConfig(), client_id="dashboard-2")
    message_event = asyncio.Event()

    async def handler(topic: str, payload: bytes) -> None:
        events["handled"] = (topic, payload)
        message_event.set()

    client.set_message_handler(handler)
    await client.connect()

    message = SimpleNamespace(topic="sensor/tds", payload=b"410")
    client._on_message(client._client, None, message)  # type: ignore[arg-type]

    await asyncio.wait_for(message_event.wait(), timeout=1.0)
    await client.disconnect()

    assert events["handled"] == ("sensor/tds", b"410")


@pytest.mark.asyncio
async def test_publish_failure_raises(monkeypatch):
    install_fake(monkeypatch, publish_rc=mqtt.MQTT_ERR_NO_CONN)
    client = MQTTClient(BrokerConfig())
    await client.connect()

    with pytest.raises(MQTTConnectionError):
        client.publish("mode", b"auto")

    await client.disconnect()


@pytest.mark.asyncio
async def test_publish_without_connection_raises():
    client = MQTTClient(BrokerConfig())

    with pytest.raises(MQTTConnectionError):
        client.publish("hour", b"1")


@pytest.mark.asyncio
async def test_rejected_connection_raises_and_stops_loop(monkeypatch):
    events = install_fake(monkeypatch, rc_connect=5)
    client = MQTTClient(BrokerConfig())
    errors = []
    client.register_error_handler(errors.append)

    with pytest.raises(MQTTConnectionError):
        await client.connect()
    await asyncio.sleep(0)

    assert events["loop_stop"] == 1
    assert not client.is_connected()
    assert len(errors) == 1


@pytest.mark.asyncio
async def test_connect_timeout_notifies_error_handlers(monkeypatch):
    install_fake(monkeypatch, respond=False)
    client = MQTTClient(BrokerConfig())
    errors = []
    client.register_error_handler(errors.append)

    with pytest.raises(MQTTConnectionError):
        await client.connect(timeout=0.05)
    await asyncio.sleep(0)

    assert len(errors) == 1


@pytest.mark.asyncio
async def test_disconnect_handlers_receive_reason_code(mqtt_client):
    client, events = mqtt_client
    codes = []
    client.register_disconnect_handler(codes.append)

    client._on_disconnect(client._client, None, None, 7, None)
    await asyncio.sleep(0)

    assert codes == [7]
    assert not client.is_connected()


@pytest.mark.asyncio
async def test_reconnect_reuses_client(mqtt_client):
    client, events = mqtt_client

    await client.reconnect(timeout=1.0)

    assert events["connect_async"] == 2
    assert events["loop_start"] == 2
    assert "loop_stop" not in events
    assert client.is_connected()


@pytest.mark.asyncio
async def test_reconnect_after_failed_connect_restarts_network_loop(monkeypatch):
    events = install_fake(monkeypatch, respond=False)
    client = MQTTClient(BrokerConfig())

    with pytest.raises(MQTTConnectionError):
        await client.connect(timeout=0.05)
    assert events["loop_stop"] == 1

    client._client._respond = True
    await client.reconnect(timeout=1.0)

    assert events["connect_async"] == 2
    assert events["loop_start"] == 2
    assert client.is_connected()


@pytest.mark.asyncio
async def test_reconnect_timeout_stops_network_loop(monkeypatch):
    events = install_fake(monkeypatch, respond=False)
    client = MQTTClient(BrokerConfig())

    with pytest.raises(MQTTConnectionError):
        await client.connect(timeout=0.05)
    with pytest.raises(MQTTConnectionError, match="reconnecting"):
        await client.reconnect(timeout=0.05)

    assert events["loop_start"] == 2
    assert events["loop_stop"] == 2
    assert not client.is_connected()
