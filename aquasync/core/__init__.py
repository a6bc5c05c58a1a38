"""Core primitives for aquasync."""

from .models import (
    SENSOR_TOPICS,
    ControlState,
    DataPoint,
    SensorKind,
    SensorSample,
    format_time,
)
from .protocols import (
    MessageChannel,
    MessageHandler,
    ReplicaStore,
    SnapshotCallback,
    Subscription,
)

__all__ = [
    "ControlState",
    "DataPoint",
    "MessageChannel",
    "MessageHandler",
    "ReplicaStore",
    "SENSOR_TOPICS",
    "SensorKind",
    "SensorSample",
    "SnapshotCallback",
    "Subscription",
    "format_time",
]
