"""Component health for the dashboard service."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

LOGGER = logging.getLogger(__name__)

MQTT = "mqtt"
REPLICA = "replica"
TELEMETRY = "telemetry"
CONTROL_SYNC = "control-sync"
DASHBOARD_API = "dashboard-api"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ComponentStatus:
    """Last reported health of one component.

    ``since`` only moves when the healthy flag flips, so it tells how long
    a component has been up or down; ``updated_at`` moves on every report.
    """

    name: str
    healthy: bool
    detail: Optional[str] = None
    since: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "since": self.since.isoformat(timespec="seconds"),
            "updatedAt": self.updated_at.isoformat(timespec="seconds"),
        }


class HealthReporter:
    """Collects component reports and the application's lifecycle state."""

    def __init__(self) -> None:
        self._components: Dict[str, ComponentStatus] = {}
        self._agent: Optional[ComponentStatus] = None
        self._lock = asyncio.Lock()

    async def update(
        self, name: str, healthy: bool, detail: Optional[str] = None
    ) -> bool:
        """Record a report; returns True when the healthy flag flipped."""

        async with self._lock:
            previous = self._components.get(name)
            flipped = previous is not None and previous.healthy != healthy
            status = ComponentStatus(name=name, healthy=healthy, detail=detail)
            if previous is not None and not flipped:
                status.since = previous.since
            self._components[name] = status

        if flipped and not healthy:
            LOGGER.warning("Component %s degraded: %s", name, detail or "no detail")
        elif flipped:
            LOGGER.info("Component %s recovered", name)
        return flipped

    def get(self, name: str) -> Optional[ComponentStatus]:
        return self._components.get(name)

    def degraded(self) -> List[str]:
        return sorted(
            name for name, status in self._components.items() if not status.healthy
        )

    async def set_agent_state(
        self, state: str, *, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            self._agent = ComponentStatus(
                name="agent",
                healthy=healthy,
                detail=detail if detail is not None else state,
            )

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            components = [
                self._components[name].as_dict() for name in sorted(self._components)
            ]
            agent = self._agent

        degraded = [item["name"] for item in components if not item["healthy"]]
        healthy = not degraded and (agent is None or agent.healthy)

        payload: Dict[str, object] = {
            "status": "ok" if healthy else "degraded",
            "components": components,
            "degraded": degraded,
        }
        if agent is not None:
            payload["agentState"] = {
                "state": agent.detail,
                "healthy": agent.healthy,
                "updatedAt": agent.updated_at.isoformat(timespec="seconds"),
            }
        return payload
