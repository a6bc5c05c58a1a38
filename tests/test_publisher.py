import pytest
import pytest_asyncio

from aquasync.control import (
    CommandPublisher,
    ControlStateStore,
    CountdownProcess,
    CountdownState,
    describe_rejection,
)

from conftest import FakeChannel, RecordingReplica


@pytest_asyncio.fixture
async def wiring(manual_clock):
    channel = FakeChannel()
    replica = RecordingReplica(log=channel.events)
    store = ControlStateStore(replica)
    countdown = CountdownProcess(store, sleep=manual_clock.sleep)
    publisher = CommandPublisher(channel, store, countdown)
    yield channel, store, countdown, publisher
    await countdown.stop()


@pytest.mark.asyncio
async def test_hour_is_recorded_before_publish_and_timer(wiring):
    channel, store, countdown, publisher = wiring

    assert await publisher.publish_hour(" 2 ")

    assert channel.events == [
        ("write", "controlState", {"hour": "2", "mode": "", "timeLeft": None}),
        ("publish", "hour", b"2"),
        ("write", "controlState", {"hour": "2", "mode": "", "timeLeft": 7200}),
    ]
    assert countdown.state is CountdownState.RUNNING


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", ["", "   "])
async def test_empty_input_is_a_no_op(wiring, raw):
    channel, store, countdown, publisher = wiring

    assert not await publisher.publish_hour(raw)
    assert not await publisher.publish_mode(raw)

    assert channel.events == []


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", ["abc", "1.5", "0", "-3"])
async def test_invalid_hours_are_rejected_without_side_effects(wiring, raw):
    channel, store, countdown, publisher = wiring

    assert not await publisher.publish_hour(raw)

    assert channel.events == []
    assert store.get().hour == ""
    assert countdown.state is CountdownState.IDLE
    assert describe_rejection(raw) is not None


@pytest.mark.asyncio
async def test_mode_is_recorded_then_published(wiring):
    channel, store, countdown, publisher = wiring

    assert await publisher.publish_mode("auto")

    assert channel.events == [
        ("write", "controlState", {"hour": "", "mode": "auto", "timeLeft": None}),
        ("publish", "mode", b"auto"),
    ]
    assert countdown.state is CountdownState.IDLE


@pytest.mark.asyncio
async def test_publish_failure_keeps_record_and_skips_timer(wiring):
    channel, store, countdown, publisher = wiring
    channel.fail_publish = True

    assert not await publisher.publish_hour("4")

    assert store.get().hour == "4"
    assert store.get().time_left is None
    assert countdown.state is CountdownState.IDLE


def test_describe_rejection_accepts_whole_hours():
    assert describe_rejection("12") is None
    assert describe_rejection(None) == "value is empty"
