import pytest

from aquasync.app import AgentState, AquaSyncApp, build_replica
from aquasync.adapters import InMemoryReplicaStore
from aquasync.config import load_config
from aquasync.control import CountdownState
from aquasync.core import SENSOR_TOPICS

from conftest import FakeChannel, RecordingReplica, settle

CONFIG_BODY = """
[server]
enabled = false

[resilience]
reconnect_initial_seconds = 0.01
reconnect_max_seconds = 0.01
reconnect_jitter_ratio = 0
initial_load_timeout_seconds = 1
store_write_retry_seconds = 0
"""


class UnreachableChannel(FakeChannel):
    async def connect(self, timeout: float = 30.0) -> None:
        raise ConnectionError("broker unreachable")


@pytest.fixture
def config(tmp_path):
    path = tmp_path / "aquasync.cfg"
    path.write_text(CONFIG_BODY, encoding="utf-8")
    return load_config(path)


@pytest.mark.asyncio
async def test_start_and_stop_services(config):
    channel = FakeChannel(connected=False)
    replica = RecordingReplica({"controlState": {"hour": "1", "mode": "auto"}})
    app = AquaSyncApp(config, mqtt_client=channel, replica=replica)

    assert await app.start_services() is True

    assert app.state is AgentState.ACTIVE
    assert channel.subscribed == SENSOR_TOPICS
    assert app.store.get().mode == "auto"
    snapshot = await app.health.snapshot()
    assert snapshot["status"] == "ok"

    await channel.deliver("sensor/tds", b"415")
    await app.aggregator.flush()
    assert app.aggregator.short_window.latest.tds == 415.0

    assert await app.publisher.publish_hour("1")
    assert app.countdown.state is CountdownState.RUNNING
    assert replica.read("controlState")["timeLeft"] == 3600

    await app.stop_services()

    assert app.state is AgentState.STOPPING
    assert channel.unsubscribed == SENSOR_TOPICS
    assert ("disconnect",) in channel.events
    assert not app.countdown.is_timer_active


@pytest.mark.asyncio
async def test_unreachable_broker_runs_degraded(config):
    channel = UnreachableChannel(connected=False)
    channel.reconnect_succeeds = False
    app = AquaSyncApp(config, mqtt_client=channel, replica=RecordingReplica())

    assert await app.start_services() is False

    assert app.state is AgentState.DEGRADED
    snapshot = await app.health.snapshot()
    assert snapshot["status"] == "degraded"
    assert app.health.get("mqtt").healthy is False

    await app.stop_services()


@pytest.mark.asyncio
async def test_replica_write_failure_marks_control_sync_unhealthy(config):
    replica = RecordingReplica()
    app = AquaSyncApp(config, mqtt_client=FakeChannel(connected=False), replica=replica)
    await app.start_services()

    replica.fail_writes = 10
    await app.publisher.publish_mode("manual")
    await settle()

    assert app.store.sync_failed
    assert app.health.get("control-sync").healthy is False
    await app.stop_services()


def test_build_replica_defaults_to_memory(config):
    assert isinstance(build_replica(config.replica), InMemoryReplicaStore)
