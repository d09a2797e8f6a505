"""ModemManager over the D-Bus system bus (dbus-fast).

Owns the bus connection, the signal subscription and the remote calls. Incoming
signals are never acted on here: they are translated into tagged events and
handed to `on_event` (the supervisor queue).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import time
from typing import Any, Callable, Dict, List, Optional

from dbus_fast import BusType, Message, MessageType, Variant
from dbus_fast.aio import MessageBus
from dbus_fast.errors import DBusError

from .events import (
    Event,
    Interfaces,
    ModemAdded,
    ModemRemoved,
    RegistrationChanged,
    ServiceAppeared,
    ServiceVanished,
)
from .supervisor import MODEM_3GPP_IFACE, MODEM_IFACE

logger = logging.getLogger(__name__)

MM_SERVICE = "org.freedesktop.ModemManager1"
MM_PATH = "/org/freedesktop/ModemManager1"
MM_MODEM_PREFIX = MM_PATH + "/Modem/"

DBUS_SERVICE = "org.freedesktop.DBus"
DBUS_PATH = "/org/freedesktop/DBus"
OBJECT_MANAGER_IFACE = "org.freedesktop.DBus.ObjectManager"
PROPERTIES_IFACE = "org.freedesktop.DBus.Properties"

MM_MODEM_POWER_STATE_LOW = 2

# Upper bound for a single Enable/SetPowerState round trip; a timeout counts as a failed try
CALL_TIMEOUT_S = 120.0

# A bus connection that lasted this long resets the reconnect backoff
STABLE_CONNECTION_S = 60.0

NAME_OWNER_RULE = (
    f"type='signal',sender='{DBUS_SERVICE}',interface='{DBUS_SERVICE}',"
    f"member='NameOwnerChanged',arg0='{MM_SERVICE}'"
)
SERVICE_RULES = (
    f"type='signal',sender='{MM_SERVICE}',interface='{OBJECT_MANAGER_IFACE}',path='{MM_PATH}'",
    f"type='signal',sender='{MM_SERVICE}',interface='{PROPERTIES_IFACE}',"
    f"member='PropertiesChanged',arg0='{MODEM_3GPP_IFACE}'",
)

OnEvent = Callable[[Event], None]


def _unwrap(v: Any) -> Any:
    return v.value if isinstance(v, Variant) else v


def _unwrap_interfaces(ifaces: Dict[str, Dict[str, Any]]) -> Interfaces:
    return {
        iface: {name: _unwrap(value) for name, value in (props or {}).items()}
        for iface, props in (ifaces or {}).items()
    }


def _jittered(t: float) -> float:
    """±25% jitter, capped to 60s."""
    return min(60.0, t) * (0.75 + random.random() * 0.5)


class DBusModem:
    """Control operations for one modem object path."""

    def __init__(self, client: "ModemManagerClient", path: str) -> None:
        self._client = client
        self.path = path

    async def disable(self) -> None:
        await self._client.call_modem(self.path, "Enable", "b", [False])

    async def set_power_state_low(self) -> None:
        await self._client.call_modem(self.path, "SetPowerState", "u", [MM_MODEM_POWER_STATE_LOW])

    async def enable(self) -> None:
        await self._client.call_modem(self.path, "Enable", "b", [True])


class ModemManagerClient:
    """
    System bus client for ModemManager.
    - Never auto-starts ModemManager; waits for NameOwnerChanged instead of polling.
    - Reconnects to the bus with jittered backoff if the connection drops after startup.
    """

    def __init__(self, *, on_event: OnEvent) -> None:
        self._on_event = on_event

        self._bus: Optional[MessageBus] = None
        self._subscribed = False
        self._stopping = asyncio.Event()

    @property
    def connected(self) -> bool:
        return self._bus is not None and self._bus.connected

    # ── Public API ───────────────────────────────────────────────────────────

    async def connect(self) -> None:
        """Connect, watch the ModemManager name, subscribe, then report whether it is running."""
        bus = await MessageBus(bus_type=BusType.SYSTEM).connect()
        self._bus = bus
        self._subscribed = False
        try:
            bus.add_message_handler(self._on_name_message)
            await self._add_match(NAME_OWNER_RULE)
            await self.subscribe()
            owner = await self.get_name_owner()
        except Exception:
            self._drop_bus()
            raise

        logger.info("[mm] Watching D-Bus for ModemManager...")
        if owner:
            self._on_event(ServiceAppeared(owner=owner))
        else:
            logger.info("[mm] ModemManager is not running")

    async def run(self) -> None:
        """Run until stop(); after losing the bus, report the service gone and reconnect."""
        delay = 1.0
        while not self._stopping.is_set():
            if self._bus is None:
                try:
                    await self.connect()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.warning("[mm] Error: failed to connect to D-Bus: %s", exc)
                    if await self._wait_stopping(_jittered(delay)):
                        break
                    delay = min(delay * 2.0, 60.0)
                    continue

            bus = self._bus
            connected_at = time.monotonic()
            with contextlib.suppress(Exception):
                await bus.wait_for_disconnect()
            if self._stopping.is_set():
                break

            up_for = time.monotonic() - connected_at
            logger.warning("[mm] lost connection to the system bus after %.1fs", up_for)
            if up_for >= STABLE_CONNECTION_S:
                delay = 1.0
            self._drop_bus()
            self._on_event(ServiceVanished())
            if await self._wait_stopping(_jittered(delay)):
                break
            delay = min(delay * 2.0, 60.0)

    async def stop(self) -> None:
        self._stopping.set()
        bus = self._bus
        self._drop_bus()
        if bus is not None:
            with contextlib.suppress(Exception):
                await bus.wait_for_disconnect()

    async def subscribe(self) -> None:
        """Install the ModemManager signal handler and match rules."""
        bus = self._require_bus()
        bus.add_message_handler(self._on_service_message)
        for rule in SERVICE_RULES:
            await self._add_match(rule)
        self._subscribed = True

    async def unsubscribe(self) -> None:
        bus = self._require_bus()
        bus.remove_message_handler(self._on_service_message)
        if not self._subscribed:
            return
        self._subscribed = False
        for rule in SERVICE_RULES:
            try:
                await self._call_bus("RemoveMatch", "s", [rule])
            except DBusError as exc:
                logger.debug("[mm] RemoveMatch failed for %s: %s", rule, exc)

    async def resubscribe(self) -> None:
        """Tear the ModemManager subscription down and build it again."""
        await self.unsubscribe()
        await self.subscribe()

    async def get_name_owner(self) -> Optional[str]:
        try:
            reply = await self._call_bus("GetNameOwner", "s", [MM_SERVICE])
        except DBusError as exc:
            if exc.type == "org.freedesktop.DBus.Error.NameHasNoOwner":
                return None
            raise
        return reply.body[0] if reply.body else None

    async def get_modems(self) -> Dict[str, Interfaces]:
        reply = await self._call(Message(
            destination=MM_SERVICE,
            path=MM_PATH,
            interface=OBJECT_MANAGER_IFACE,
            member="GetManagedObjects",
        ))
        objects = reply.body[0] if reply.body else {}
        return {path: _unwrap_interfaces(ifaces) for path, ifaces in objects.items()}

    def modem(self, path: str) -> DBusModem:
        return DBusModem(self, path)

    async def call_modem(self, path: str, member: str, signature: str, body: List[Any]) -> None:
        await asyncio.wait_for(
            self._call(Message(
                destination=MM_SERVICE,
                path=path,
                interface=MODEM_IFACE,
                member=member,
                signature=signature,
                body=body,
            )),
            timeout=CALL_TIMEOUT_S,
        )

    # ── Internals ───────────────────────────────────────────────────────────

    def _require_bus(self) -> MessageBus:
        if self._bus is None or not self._bus.connected:
            raise RuntimeError("not connected to the system bus")
        return self._bus

    def _drop_bus(self) -> None:
        bus, self._bus = self._bus, None
        self._subscribed = False
        if bus is None:
            return
        with contextlib.suppress(Exception):
            bus.remove_message_handler(self._on_service_message)
        with contextlib.suppress(Exception):
            bus.remove_message_handler(self._on_name_message)
        with contextlib.suppress(Exception):
            bus.disconnect()

    async def _call(self, msg: Message) -> Message:
        reply = await self._require_bus().call(msg)
        if reply.message_type == MessageType.ERROR:
            text = reply.body[0] if reply.body else reply.error_name
            raise DBusError(reply.error_name, text, reply)
        return reply

    async def _call_bus(self, member: str, signature: str, body: List[Any]) -> Message:
        return await self._call(Message(
            destination=DBUS_SERVICE,
            path=DBUS_PATH,
            interface=DBUS_SERVICE,
            member=member,
            signature=signature,
            body=body,
        ))

    async def _add_match(self, rule: str) -> None:
        await self._call_bus("AddMatch", "s", [rule])

    async def _wait_stopping(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def _on_name_message(self, msg: Message) -> None:
        if msg.message_type is not MessageType.SIGNAL or msg.member != "NameOwnerChanged":
            return
        if msg.interface != DBUS_SERVICE or len(msg.body) != 3:
            return
        name, _old_owner, new_owner = msg.body
        if name != MM_SERVICE:
            return
        if new_owner:
            self._on_event(ServiceAppeared(owner=new_owner, reappeared=True))
        else:
            self._on_event(ServiceVanished())

    def _on_service_message(self, msg: Message) -> None:
        if msg.message_type is not MessageType.SIGNAL:
            return

        if msg.interface == OBJECT_MANAGER_IFACE and msg.path == MM_PATH:
            if msg.member == "InterfacesAdded" and len(msg.body) == 2:
                path, ifaces = msg.body
                self._on_event(ModemAdded(path=path, interfaces=_unwrap_interfaces(ifaces)))
            elif msg.member == "InterfacesRemoved" and len(msg.body) == 2:
                path, ifaces = msg.body
                if MODEM_IFACE in ifaces:
                    self._on_event(ModemRemoved(path=path))
            return

        if msg.member != "PropertiesChanged" or not (msg.path or "").startswith(MM_MODEM_PREFIX):
            return
        if len(msg.body) < 2:
            return
        iface, changed = msg.body[0], msg.body[1]
        if iface != MODEM_3GPP_IFACE or "RegistrationState" not in changed:
            return
        self._on_event(RegistrationChanged(path=msg.path, state=_unwrap(changed["RegistrationState"])))
