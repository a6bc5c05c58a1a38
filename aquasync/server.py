"""HTTP surface for the dashboard: health, telemetry windows and control."""

from __future__ import annotations

import contextlib
import json
import logging
from typing import Any, Dict, Optional, Tuple

from aiohttp import web

from .control import (
    CommandPublisher,
    ControlStateStore,
    CountdownProcess,
    describe_rejection,
    format_time_left,
)
from .health import HealthReporter
from .telemetry import RollingWindow, TelemetryAggregator, render_csv

LOGGER = logging.getLogger(__name__)

EXPORT_FILENAMES = {
    "short": "1_hour_data.csv",
    "long": "24_hour_data.csv",
}


class DashboardServer:
    """aiohttp application exposing the dashboard API."""

    def __init__(
        self,
        *,
        reporter: HealthReporter,
        aggregator: TelemetryAggregator,
        store: ControlStateStore,
        countdown: CountdownProcess,
        publisher: CommandPublisher,
        host: str = "127.0.0.1",
        port: int = 8080,
    ) -> None:
        self._reporter = reporter
        self._aggregator = aggregator
        self._store = store
        self._countdown = countdown
        self._publisher = publisher
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)
        app.router.add_get("/api/telemetry", self._handle_telemetry)
        app.router.add_get("/api/export/{window}", self._handle_export)
        app.router.add_get("/api/control", self._handle_control)
        app.router.add_post("/api/control/hour", self._handle_publish_hour)
        app.router.add_post("/api/control/mode", self._handle_publish_mode)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        LOGGER.info("Dashboard API listening on http://%s:%s", self._host, self._port)

    async def stop(self) -> None:
        with contextlib.suppress(Exception):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    # ------------------------------------------------------------------
    # Projections
    # ------------------------------------------------------------------
    def control_payload(self) -> Dict[str, Any]:
        state = self._store.get()
        return {
            "hour": state.hour,
            "mode": state.mode,
            "timeLeft": state.time_left,
            "timeLeftDisplay": format_time_left(state.time_left),
            "timerState": self._countdown.state.value,
            "timerActive": self._countdown.is_timer_active,
            "syncFailed": self._store.sync_failed,
        }

    def telemetry_payload(self) -> Dict[str, Any]:
        aggregator = self._aggregator
        return {
            "status": aggregator.status.value,
            "short": [point.as_dict() for point in aggregator.short_window],
            "long": [point.as_dict() for point in aggregator.long_window],
            "stats": aggregator.stats(),
        }

    def _window(self, name: str) -> Tuple[RollingWindow, str]:
        if name == "short":
            return self._aggregator.short_window, EXPORT_FILENAMES[name]
        if name == "long":
            return self._aggregator.long_window, EXPORT_FILENAMES[name]
        raise web.HTTPNotFound(text=f"Unknown window {name!r}")

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._reporter.snapshot()
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(snapshot, status=status)

    async def _handle_telemetry(self, request: web.Request) -> web.Response:
        return web.json_response(self.telemetry_payload())

    async def _handle_export(self, request: web.Request) -> web.Response:
        window, filename = self._window(request.match_info["window"])
        return web.Response(
            text=render_csv(window.snapshot()),
            content_type="text/csv",
            charset="utf-8",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    async def _handle_control(self, request: web.Request) -> web.Response:
        return web.json_response(self.control_payload())

    async def _handle_publish_hour(self, request: web.Request) -> web.Response:
        raw = await _read_value(request)
        reason = describe_rejection(raw)
        if reason is not None:
            return web.json_response(
                {"published": False, "reason": reason}, status=422
            )
        published = await self._publisher.publish_hour(raw or "")
        return self._publish_response(published)

    async def _handle_publish_mode(self, request: web.Request) -> web.Response:
        raw = await _read_value(request)
        if not raw or not raw.strip():
            return web.json_response(
                {"published": False, "reason": "value is empty"}, status=422
            )
        published = await self._publisher.publish_mode(raw)
        return self._publish_response(published)

    def _publish_response(self, published: bool) -> web.Response:
        payload = {"published": published, "control": self.control_payload()}
        if not published:
            payload["reason"] = "message channel unavailable"
            return web.json_response(payload, status=502)
        return web.json_response(payload)


async def _read_value(request: web.Request) -> Optional[str]:
    try:
        body = await request.json()
    except json.JSONDecodeError as exc:
        raise web.HTTPBadRequest(text=f"Malformed JSON body: {exc}") from exc
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text="Expected a JSON object")
    value = body.get("value")
    if value is None:
        return None
    return str(value)
