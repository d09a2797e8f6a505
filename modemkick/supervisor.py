"""Service connection supervisor: turns bus events into registry changes."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Dict, Optional, Protocol, Type

from .events import (
    Event,
    Interfaces,
    ModemAdded,
    ModemRemoved,
    RegistrationChanged,
    ServiceAppeared,
    ServiceVanished,
)
from .registry import ModemHandle, ModemRecord, ModemRegistry
from .tracker import RegistrationTracker

logger = logging.getLogger(__name__)

MODEM_IFACE = "org.freedesktop.ModemManager1.Modem"
MODEM_3GPP_IFACE = "org.freedesktop.ModemManager1.Modem.Modem3gpp"


class ServiceClient(Protocol):
    async def resubscribe(self) -> None: ...

    async def get_modems(self) -> Dict[str, Interfaces]: ...

    def modem(self, path: str) -> ModemHandle: ...


class Supervisor:
    """
    Single consumer of the event queue. Events are handled strictly in arrival
    order, one at a time, via a dispatch table keyed by event type.
    """

    def __init__(self, client: ServiceClient, registry: ModemRegistry, tracker: RegistrationTracker) -> None:
        self._client = client
        self._registry = registry
        self._tracker = tracker

        self._queue: "asyncio.Queue[Event]" = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._service_running = False

        self._handlers: Dict[Type, Callable[..., Awaitable[None]]] = {
            ServiceAppeared: self._on_service_appeared,
            ServiceVanished: self._on_service_vanished,
            ModemAdded: self._on_modem_added,
            ModemRemoved: self._on_modem_removed,
            RegistrationChanged: self._on_registration_changed,
        }

    @property
    def service_running(self) -> bool:
        return self._service_running

    # ── Public API ───────────────────────────────────────────────────────────

    def post(self, event: Event) -> None:
        """Queue an event; safe to call from a bus message handler."""
        self._queue.put_nowait(event)

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="supervisor")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self._service_running = False
        self._registry.clear()

    async def handle(self, event: Event) -> None:
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.debug("[mm] ignoring unknown event %r", event)
            return
        await handler(event)

    # ── Internals ───────────────────────────────────────────────────────────

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.handle(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[mm] failed to handle %r", event)

    async def _on_service_appeared(self, event: ServiceAppeared) -> None:
        if event.reappeared:
            logger.info("[mm] ModemManager now running (%s)", event.owner)
            # Signal subscriptions made while ModemManager was off the bus do not
            # reliably deliver later InterfacesAdded/Removed. Rebuild them from scratch.
            self._service_running = False
            self._registry.clear()
            try:
                await self._client.resubscribe()
            except Exception as exc:
                logger.error(
                    "[mm] Error: failed to rebuild ModemManager subscription for %s: %s; "
                    "modems untracked until it reappears",
                    event.owner, exc,
                )
                return
        else:
            logger.info("[mm] ModemManager is running (%s)", event.owner)
        self._service_running = True

        try:
            modems = await self._client.get_modems()
        except Exception as exc:
            logger.warning("[mm] failed to list modems: %s", exc)
            return

        for path in sorted(modems):
            self._add(path, modems[path])

    async def _on_service_vanished(self, _: ServiceVanished) -> None:
        logger.info("[mm] ModemManager no longer running")
        self._service_running = False
        self._registry.clear()

    async def _on_modem_added(self, event: ModemAdded) -> None:
        self._add(event.path, event.interfaces)

    async def _on_modem_removed(self, event: ModemRemoved) -> None:
        if self._registry.remove(event.path) is not None:
            logger.info("[mm] %s: removed", event.path)

    async def _on_registration_changed(self, event: RegistrationChanged) -> None:
        self._tracker.on_registration_changed(event.path, event.state)

    def _add(self, path: str, interfaces: Interfaces) -> None:
        if path in self._registry:
            return

        modem = interfaces.get(MODEM_IFACE)
        if modem is None:
            logger.warning("[mm] Error: modem %s had no modem interface", path)
            return
        if not modem.get("PrimaryPort"):
            logger.warning("[mm] Error: modem %s had no primary port", path)
            return

        modem_3gpp = interfaces.get(MODEM_3GPP_IFACE)
        if modem_3gpp is None:
            logger.info("[mm] Ignoring non-3GPP modem %s", path)
            return

        logger.info("[mm] %s: added", path)
        self._registry.add(ModemRecord(path=path, handle=self._client.modem(path)))
        # Evaluate right away so a modem already idle/denied at discovery is timed from now
        self._tracker.on_registration_changed(path, modem_3gpp.get("RegistrationState"))
