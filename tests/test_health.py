import asyncio
import json

from modemkick.health import HealthServer
from modemkick.registry import KickPhase, ModemRecord, ModemRegistry, Recovery


class _Client:
    def __init__(self, connected: bool) -> None:
        self.connected = connected


class _Supervisor:
    def __init__(self, running: bool) -> None:
        self.service_running = running


def _server(*, connected=True, running=True, registry=None) -> HealthServer:
    return HealthServer(
        host="127.0.0.1",
        port=9124,
        client=_Client(connected),
        supervisor=_Supervisor(running),
        registry=registry or ModemRegistry(),
        clock=lambda: 160.0,
    )


def test_snapshot_reports_modem_state() -> None:
    registry = ModemRegistry()
    registry.add(ModemRecord(path="/m/0", handle=None, idle_since=100.0, kicks=2, aborts=1))
    registry.add(ModemRecord(path="/m/1", handle=None))
    registry.get("/m/0").recovery = Recovery(phase=KickPhase.LOW_POWER, tries=2)

    snap = _server(registry=registry).snapshot()

    assert snap["status"] == "ok"
    assert snap["modems"] == [
        {"path": "/m/0", "idle_for": 60.0, "phase": "low-power", "tries": 2, "kicks": 2, "aborts": 1},
        {"path": "/m/1", "idle_for": None, "phase": None, "tries": 0, "kicks": 0, "aborts": 0},
    ]


def test_snapshot_degraded_without_modemmanager() -> None:
    snap = _server(running=False).snapshot()
    assert snap["status"] == "degraded"
    assert snap["service_running"] is False
    assert snap["bus_connected"] is True

    assert _server(connected=False).snapshot()["status"] == "degraded"


def test_health_handler_status_codes() -> None:
    degraded = asyncio.run(_server(running=False).get_health())
    assert degraded.status == 503
    assert json.loads(degraded.text)["status"] == "degraded"

    healthy = asyncio.run(_server().get_health())
    assert healthy.status == 200


def test_start_and_stop_listener() -> None:
    server = HealthServer(
        host="127.0.0.1",
        port=0,
        client=_Client(True),
        supervisor=_Supervisor(True),
        registry=ModemRegistry(),
    )

    async def _run() -> None:
        await server.start()
        assert server._runner is not None
        await server.start()
        await server.stop()
        assert server._runner is None and server._site is None
        await server.stop()

    asyncio.run(_run())
