"""Main application entry-point for aquasync."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Optional

from . import health
from .adapters import FirebaseReplicaStore, InMemoryReplicaStore, MQTTClient
from .config import AquaSyncConfig, ReplicaConfig, load_config
from .connection import ConnectionCoordinator, ReconnectReason
from .control import CommandPublisher, ControlStateStore, CountdownProcess
from .core import ReplicaStore
from .health import HealthReporter
from .logging import configure_logging
from .server import DashboardServer
from .telemetry import TelemetryAggregator

LOGGER = logging.getLogger(__name__)


class AgentState(str, Enum):
    COLD_START = "cold_start"
    AWAITING_REPLICA = "awaiting_replica"
    AWAITING_MQTT = "awaiting_mqtt"
    ACTIVE = "active"
    DEGRADED = "degraded"
    STOPPING = "stopping"


def build_replica(config: ReplicaConfig) -> ReplicaStore:
    if config.backend == "firebase":
        return FirebaseReplicaStore(
            config.database_url or "",
            auth_token=config.auth_token,
            request_timeout=config.request_timeout_seconds,
        )
    LOGGER.warning("Using in-memory replica; control state will not survive restarts")
    return InMemoryReplicaStore()


class AquaSyncApp:
    """Coordinates application startup and shutdown.

    Every collaborator is created here and handed its capabilities
    explicitly: the MQTT channel and the replica store are opened on start
    and closed on stop, and nothing holds them globally.
    """

    def __init__(
        self,
        config: Optional[AquaSyncConfig] = None,
        *,
        mqtt_client: Optional[MQTTClient] = None,
        replica: Optional[ReplicaStore] = None,
    ) -> None:
        self._config = config or load_config()
        self._mqtt_client = mqtt_client
        self._replica = replica
        self._health = HealthReporter()
        self._state = AgentState.COLD_START
        self._stopping = False
        self._shutdown_event: Optional[asyncio.Event] = None

        self._coordinator: Optional[ConnectionCoordinator] = None
        self._store: Optional[ControlStateStore] = None
        self._countdown: Optional[CountdownProcess] = None
        self._publisher: Optional[CommandPublisher] = None
        self._aggregator: Optional[TelemetryAggregator] = None
        self._server: Optional[DashboardServer] = None

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def health(self) -> HealthReporter:
        return self._health

    @property
    def aggregator(self) -> Optional[TelemetryAggregator]:
        return self._aggregator

    @property
    def store(self) -> Optional[ControlStateStore]:
        return self._store

    @property
    def countdown(self) -> Optional[CountdownProcess]:
        return self._countdown

    @property
    def publisher(self) -> Optional[CommandPublisher]:
        return self._publisher

    async def run(self) -> None:
        self._shutdown_event = asyncio.Event()

        LOGGER.info("aquasync starting with config: %s", self._config.path)
        started = await self.start_services()
        if not started:
            LOGGER.warning("Service startup incomplete; running in degraded mode")

        try:
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            LOGGER.info("aquasync received shutdown signal")
            raise
        finally:
            await self.stop_services()

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    @classmethod
    def start(cls, config: Optional[AquaSyncConfig] = None) -> None:
        instance = cls(config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
        )
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("aquasync received shutdown signal")

    async def _transition_state(
        self, state: AgentState, *, detail: Optional[str] = None
    ) -> None:
        if state == self._state and detail is None:
            return
        previous = self._state
        self._state = state
        LOGGER.info(
            "Agent state transition %s -> %s (%s)",
            previous.value,
            state.value,
            detail or state.value,
        )
        await self._health.set_agent_state(
            state.value, healthy=state == AgentState.ACTIVE, detail=detail
        )

    async def start_services(self) -> bool:
        config = self._config
        self._stopping = False
        await self._transition_state(AgentState.COLD_START, detail="initialising")

        await self._health.update(health.MQTT, False, "initialising")
        await self._health.update(health.REPLICA, False, "initialising")
        await self._health.update(health.TELEMETRY, False, "awaiting mqtt connectivity")

        if self._replica is None:
            self._replica = build_replica(config.replica)

        store = ControlStateStore(
            self._replica,
            path=config.replica.control_path,
            write_attempts=config.resilience.store_write_attempts,
            retry_delay=config.resilience.store_write_retry_seconds,
        )
        store.on_sync_status(self._on_sync_status)
        countdown = CountdownProcess(store, interval=config.control.tick_seconds)
        countdown.on_expired(self._on_timer_completed)
        self._store = store
        self._countdown = countdown

        await self._transition_state(
            AgentState.AWAITING_REPLICA, detail="loading control state"
        )
        await store.start(timeout=config.resilience.initial_load_timeout_seconds)
        await self._health.update(
            health.REPLICA, store.loaded, None if store.loaded else "initial load timed out"
        )

        if self._mqtt_client is None:
            self._mqtt_client = MQTTClient(config.broker)
        mqtt_client = self._mqtt_client
        mqtt_client.register_disconnect_handler(self._on_mqtt_disconnect)
        mqtt_client.register_error_handler(self._on_mqtt_error)

        self._aggregator = TelemetryAggregator(
            mqtt_client,
            self._replica,
            short_capacity=config.telemetry.short_window,
            long_capacity=config.telemetry.long_window,
            queue_size=config.telemetry.queue_size,
        )
        self._publisher = CommandPublisher(mqtt_client, store, countdown)

        coordinator = ConnectionCoordinator(
            mqtt_client=mqtt_client, resilience_config=config.resilience
        )
        coordinator.register_reconnected_callback(self._on_connection_restored)
        self._coordinator = coordinator

        await self._transition_state(
            AgentState.AWAITING_MQTT, detail="connecting to mqtt broker"
        )
        mqtt_connected = await coordinator.connect()
        await self._health.update(
            health.MQTT, mqtt_connected, None if mqtt_connected else "unavailable"
        )

        await self._aggregator.start()
        await self._health.update(
            health.TELEMETRY, mqtt_connected, None if mqtt_connected else "not subscribed"
        )

        coordinator.start_supervisor()
        if not mqtt_connected:
            coordinator.request_reconnect(ReconnectReason.CONNECT_FAILED)

        await self._start_server()

        if mqtt_connected:
            await self._transition_state(AgentState.ACTIVE, detail="runtime ready")
        else:
            await self._transition_state(AgentState.DEGRADED, detail="mqtt unavailable")
        return mqtt_connected

    async def stop_services(self) -> None:
        self._stopping = True
        await self._transition_state(AgentState.STOPPING, detail="shutting down")

        if self._server is not None:
            await self._server.stop()
            self._server = None

        if self._countdown is not None:
            await self._countdown.stop()

        if self._aggregator is not None:
            await self._aggregator.stop()

        if self._coordinator is not None:
            await self._coordinator.stop_supervisor()
            await self._coordinator.disconnect()

        if self._store is not None:
            await self._store.stop()

        if self._replica is not None:
            await self._replica.aclose()

        LOGGER.info("aquasync stopped")

    async def _start_server(self) -> None:
        server_config = self._config.server
        if not server_config.enabled or server_config.port <= 0:
            return

        assert self._aggregator is not None
        assert self._store is not None
        assert self._countdown is not None
        assert self._publisher is not None

        server = DashboardServer(
            reporter=self._health,
            aggregator=self._aggregator,
            store=self._store,
            countdown=self._countdown,
            publisher=self._publisher,
            host=server_config.host,
            port=server_config.port,
        )
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Failed to start dashboard API: %s", exc)
            await self._health.update(health.DASHBOARD_API, False, str(exc))
        else:
            self._server = server
            await self._health.update(health.DASHBOARD_API, True, None)

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------
    def _on_mqtt_disconnect(self, rc: int) -> None:
        if self._stopping or rc == 0:
            return
        asyncio.create_task(self._health.update(health.MQTT, False, f"disconnected rc={rc}"))
        if self._coordinator is not None:
            self._coordinator.request_reconnect(ReconnectReason.CONNECTION_LOST)

    def _on_mqtt_error(self, error: Exception) -> None:
        if self._stopping:
            return
        asyncio.create_task(self._health.update(health.MQTT, False, str(error)))

    async def _on_connection_restored(self) -> None:
        if self._aggregator is not None:
            self._aggregator.resubscribe()
        await self._health.update(health.MQTT, True, None)
        await self._health.update(health.TELEMETRY, True, None)
        await self._transition_state(AgentState.ACTIVE, detail="mqtt reconnected")

    def _on_sync_status(self, in_sync: bool) -> None:
        detail = None if in_sync else "control state write failed"
        asyncio.create_task(self._health.update(health.CONTROL_SYNC, in_sync, detail))

    def _on_timer_completed(self) -> None:
        hour = self._store.get().hour if self._store is not None else ""
        LOGGER.info("Countdown for hour=%s completed", hour or "?")
