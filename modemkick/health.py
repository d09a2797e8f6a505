"""Lightweight HTTP health/status endpoint for external monitoring."""

from __future__ import annotations

import logging
import time
from http import HTTPStatus
from typing import Callable, Optional

from aiohttp import web

from .mm import ModemManagerClient
from .registry import ModemRegistry
from .supervisor import Supervisor

logger = logging.getLogger(__name__)


class HealthServer:
    """Expose a simple JSON health snapshot for systemd watchdogs and monitoring."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        client: ModemManagerClient,
        supervisor: Supervisor,
        registry: ModemRegistry,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._host = host
        self._port = port
        self._client = client
        self._supervisor = supervisor
        self._registry = registry
        self._clock = clock

        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    async def start(self) -> None:
        """Bind /health; a failed bind leaves nothing half set up."""
        if self._runner is not None:
            return

        app = web.Application()
        app.router.add_get("/health", self.get_health)

        runner = web.AppRunner(app, access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            raise

        self._runner, self._site = runner, site
        logger.info("[health] listening on http://%s:%d/health", self._host, self._port)

    async def stop(self) -> None:
        runner, self._runner = self._runner, None
        site, self._site = self._site, None
        if runner is None:
            return

        try:
            if site is not None:
                await site.stop()
            await runner.cleanup()
        except Exception as exc:
            logger.debug("[health] cleanup failed: %s", exc)

    async def get_health(self, _request: Optional[web.Request] = None) -> web.Response:
        snapshot = self.snapshot()
        status = HTTPStatus.OK if snapshot["status"] == "ok" else HTTPStatus.SERVICE_UNAVAILABLE
        return web.json_response(snapshot, status=status)

    def snapshot(self) -> dict:
        """Return a serialisable health snapshot."""

        bus_connected = self._client.connected
        service_running = self._supervisor.service_running
        now = self._clock()

        modems = []
        for record in self._registry:
            rec = record.recovery
            modems.append({
                "path": record.path,
                "idle_for": round(now - record.idle_since, 1) if record.idle_since else None,
                "phase": rec.phase.value if rec else None,
                "tries": rec.tries if rec else 0,
                "kicks": record.kicks,
                "aborts": record.aborts,
            })

        ok = bus_connected and service_running

        return {
            "status": "ok" if ok else "degraded",
            "bus_connected": bus_connected,
            "service_running": service_running,
            "modems": modems,
            "port": self._port,
        }
