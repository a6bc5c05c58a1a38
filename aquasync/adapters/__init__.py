"""Adapter modules for external integrations."""

from .mqtt import MQTTClient, MQTTConnectionError
from .replica import (
    FirebaseReplicaStore,
    InMemoryReplicaStore,
    ReplicaError,
    ReplicaWriteError,
)

__all__ = [
    "FirebaseReplicaStore",
    "InMemoryReplicaStore",
    "MQTTClient",
    "MQTTConnectionError",
    "ReplicaError",
    "ReplicaWriteError",
]
