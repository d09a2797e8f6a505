import asyncio
import logging

from modemkick.events import (
    ModemAdded,
    ModemRemoved,
    RegistrationChanged,
    ServiceAppeared,
    ServiceVanished,
)
from modemkick.recovery import ModemKicker
from modemkick.registry import ModemRegistry
from modemkick.supervisor import MODEM_3GPP_IFACE, MODEM_IFACE, Supervisor
from modemkick.tracker import RegistrationTracker

M0 = "/org/freedesktop/ModemManager1/Modem/0"
M1 = "/org/freedesktop/ModemManager1/Modem/1"


def _ifaces(state=1, port="cdc-wdm0", gpp=True):
    ifaces = {MODEM_IFACE: {"PrimaryPort": port}}
    if gpp:
        ifaces[MODEM_3GPP_IFACE] = {"RegistrationState": state}
    return ifaces


class _Modem:
    def __init__(self) -> None:
        self.calls = []

    async def disable(self) -> None:
        self.calls.append("disable")

    async def set_power_state_low(self) -> None:
        self.calls.append("low-power")

    async def enable(self) -> None:
        self.calls.append("enable")


class _Client:
    def __init__(self, modems=None) -> None:
        self.modems = modems or {}
        self.handles = {}
        self.resubscribed = 0
        self.list_error = None

    async def resubscribe(self) -> None:
        self.resubscribed += 1

    async def get_modems(self):
        if self.list_error is not None:
            raise self.list_error
        return dict(self.modems)

    def modem(self, path):
        return self.handles.setdefault(path, _Modem())


def _setup(modems=None):
    client = _Client(modems)
    registry = ModemRegistry()
    tracker = RegistrationTracker(registry, clock=lambda: 500.0)
    return client, registry, Supervisor(client, registry, tracker)


def test_service_available_enumerates_gated_modems() -> None:
    client, registry, sup = _setup({M0: _ifaces(state=3), M1: _ifaces(gpp=False)})

    asyncio.run(sup.handle(ServiceAppeared(owner=":1.5")))

    assert sup.service_running is True
    assert client.resubscribed == 0
    assert M0 in registry and M1 not in registry
    # Already denied at discovery: timed from now
    assert registry.get(M0).idle_since == 500.0


def test_non_3gpp_modem_is_ignored(caplog) -> None:
    client, registry, sup = _setup()
    caplog.set_level(logging.INFO, logger="modemkick.supervisor")

    asyncio.run(sup.handle(ModemAdded(path=M0, interfaces=_ifaces(gpp=False))))

    assert len(registry) == 0
    assert any("Ignoring non-3GPP modem" in m for m in caplog.messages)


def test_modem_without_modem_interface_or_port_is_ignored(caplog) -> None:
    client, registry, sup = _setup()

    async def _run() -> None:
        await sup.handle(ModemAdded(path=M0, interfaces={MODEM_3GPP_IFACE: {"RegistrationState": 3}}))
        await sup.handle(ModemAdded(path=M1, interfaces=_ifaces(port="")))

    asyncio.run(_run())
    assert len(registry) == 0
    assert any("had no modem interface" in m for m in caplog.messages)
    assert any("had no primary port" in m for m in caplog.messages)


def test_registration_change_and_removal() -> None:
    client, registry, sup = _setup()

    async def _run() -> None:
        await sup.handle(ModemAdded(path=M0, interfaces=_ifaces(state=1)))
        assert registry.get(M0).idle_since == 0
        await sup.handle(RegistrationChanged(path=M0, state=0))
        assert registry.get(M0).idle_since == 500.0
        await sup.handle(ModemRemoved(path=M0))
        assert M0 not in registry
        # Late notification for a removed modem
        await sup.handle(RegistrationChanged(path=M0, state=3))

    asyncio.run(_run())
    assert len(registry) == 0


def test_service_vanishing_mid_kick_stops_the_kick() -> None:
    client, registry, sup = _setup()
    kicker = ModemKicker(registry, step_delay=0.05)

    async def _run() -> None:
        await sup.handle(ModemAdded(path=M0, interfaces=_ifaces(state=3)))
        record = registry.get(M0)
        kicker.start(M0)
        for _ in range(100):
            if record.recovery.timer is not None:
                break
            await asyncio.sleep(0)
        timer = record.recovery.timer
        assert timer is not None

        await sup.handle(ServiceVanished())
        assert len(registry) == 0
        assert sup.service_running is False
        assert timer.cancelled()
        await asyncio.sleep(0.1)

    asyncio.run(_run())
    assert client.handles[M0].calls == ["disable"]


def test_service_reappearing_rebuilds_subscription_and_registry() -> None:
    client, registry, sup = _setup({M0: _ifaces()})

    async def _run() -> None:
        await sup.handle(ServiceAppeared(owner=":1.5"))
        await sup.handle(ServiceVanished())
        client.modems = {M1: _ifaces(state=0)}
        await sup.handle(ServiceAppeared(owner=":1.9", reappeared=True))

    asyncio.run(_run())
    assert client.resubscribed == 1
    assert M1 in registry and M0 not in registry


def test_enumeration_failure_is_logged(caplog) -> None:
    client, registry, sup = _setup()
    client.list_error = RuntimeError("ModemManager went away")

    asyncio.run(sup.handle(ServiceAppeared(owner=":1.5")))

    assert len(registry) == 0
    assert any("failed to list modems" in m for m in caplog.messages)


def test_queue_consumer_processes_posted_events_in_order() -> None:
    client, registry, sup = _setup()

    async def _run() -> None:
        await sup.start()
        sup.post(ModemAdded(path=M0, interfaces=_ifaces(state=1)))
        sup.post(RegistrationChanged(path=M0, state=3))
        sup.post(ModemAdded(path=M1, interfaces=_ifaces(state=1)))
        sup.post(ModemRemoved(path=M1))
        for _ in range(100):
            if M0 in registry and registry.get(M0).idle_since and M1 not in registry:
                break
            await asyncio.sleep(0)
        assert registry.get(M0).idle_since == 500.0
        assert M1 not in registry
        await sup.stop()

    asyncio.run(_run())
    assert len(registry) == 0


def test_failed_resubscribe_reports_service_down(caplog) -> None:
    client, registry, sup = _setup({M0: _ifaces()})

    async def _broken_resubscribe() -> None:
        raise RuntimeError("AddMatch refused")

    async def _run() -> None:
        await sup.handle(ServiceAppeared(owner=":1.5"))
        assert sup.service_running is True and M0 in registry

        client.resubscribe = _broken_resubscribe
        # Owner changed hands without a vanish in between
        await sup.handle(ServiceAppeared(owner=":1.9", reappeared=True))

    asyncio.run(_run())
    assert sup.service_running is False
    assert len(registry) == 0
    assert any("failed to rebuild ModemManager subscription for :1.9" in m for m in caplog.messages)
