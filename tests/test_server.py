import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from aquasync import health
from aquasync.control import CommandPublisher, ControlStateStore, CountdownProcess
from aquasync.health import HealthReporter
from aquasync.server import DashboardServer
from aquasync.telemetry import TelemetryAggregator


@pytest_asyncio.fixture
async def dashboard(channel, replica, manual_clock):
    reporter = HealthReporter()
    await reporter.update(health.MQTT, True)
    aggregator = TelemetryAggregator(channel, replica)
    store = ControlStateStore(replica)
    countdown = CountdownProcess(store, sleep=manual_clock.sleep)
    publisher = CommandPublisher(channel, store, countdown)
    server = DashboardServer(
        reporter=reporter,
        aggregator=aggregator,
        store=store,
        countdown=countdown,
        publisher=publisher,
    )
    client = TestClient(TestServer(server.build_app()))
    await client.start_server()
    yield client, reporter, aggregator
    await countdown.stop()
    await client.close()


@pytest.mark.asyncio
async def test_health_reports_component_status(dashboard):
    client, reporter, _ = dashboard

    response = await client.get("/healthz")
    assert response.status == 200
    body = await response.json()
    assert body["status"] == "ok"

    await reporter.update(health.REPLICA, False, "unreachable")
    response = await client.get("/healthz")
    assert response.status == 503


@pytest.mark.asyncio
async def test_telemetry_lists_both_windows(dashboard):
    client, _, aggregator = dashboard
    aggregator.ingest("sensor/tds", b"420")

    response = await client.get("/api/telemetry")
    body = await response.json()

    assert body["status"] == "loading"
    assert [row["tds"] for row in body["short"]] == [420.0]
    assert [row["tds"] for row in body["long"]] == [420.0]
    assert body["short"][0]["turbidity"] is None
    assert body["stats"]["accepted"] == 1


@pytest.mark.asyncio
async def test_export_serves_csv_attachment(dashboard):
    client, _, aggregator = dashboard
    aggregator.ingest("sensor/turbidity", b"2.5")

    response = await client.get("/api/export/long")
    text = await response.text()

    assert response.status == 200
    assert response.headers["Content-Disposition"] == 'attachment; filename="24_hour_data.csv"'
    assert text.splitlines()[0] == "Time,Turbidity,TDS,Temperature"
    assert text.splitlines()[1].endswith(",2.5,,")

    response = await client.get("/api/export/weekly")
    assert response.status == 404


@pytest.mark.asyncio
async def test_publish_hour_starts_countdown(dashboard, channel):
    client, _, _ = dashboard

    response = await client.post("/api/control/hour", json={"value": 2})
    body = await response.json()

    assert response.status == 200
    assert body["published"] is True
    assert body["control"]["hour"] == "2"
    assert body["control"]["timeLeft"] == 7200
    assert body["control"]["timeLeftDisplay"] == "02:00:00"
    assert body["control"]["timerState"] == "running"
    assert channel.published == [("hour", b"2")]


@pytest.mark.asyncio
async def test_publish_hour_rejects_invalid_values(dashboard, channel):
    client, _, _ = dashboard

    response = await client.post("/api/control/hour", json={"value": "1.5"})
    body = await response.json()

    assert response.status == 422
    assert body["published"] is False
    assert channel.published == []

    response = await client.post("/api/control/hour", data="not json")
    assert response.status == 400


@pytest.mark.asyncio
async def test_publish_mode_reports_channel_failure(dashboard, channel):
    client, _, _ = dashboard
    channel.fail_publish = True

    response = await client.post("/api/control/mode", json={"value": "auto"})
    body = await response.json()

    assert response.status == 502
    assert body["published"] is False
    assert body["control"]["mode"] == "auto"


@pytest.mark.asyncio
async def test_control_defaults(dashboard):
    client, _, _ = dashboard

    response = await client.get("/api/control")
    body = await response.json()

    assert body == {
        "hour": "",
        "mode": "",
        "timeLeft": None,
        "timeLeftDisplay": "--:--:--",
        "timerState": "idle",
        "timerActive": False,
        "syncFailed": False,
    }
