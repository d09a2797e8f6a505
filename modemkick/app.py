# modemkick/app.py
from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from typing import Optional

try:
    import uvloop as _uvloop  # type: ignore
    _uvloop.install()
except Exception:
    pass

from .config import Config
from .events import Event
from .health import HealthServer
from .mm import ModemManagerClient
from .recovery import InvariantError, ModemKicker
from .registry import ModemRegistry
from .supervisor import Supervisor
from .sweep import Sweeper
from .tracker import RegistrationTracker

logger = logging.getLogger(__name__)


async def main(cfg: Optional[Config] = None) -> int:
    cfg = cfg or Config.load()
    timing = cfg.timing

    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    exit_code = 0

    def _on_loop_error(loop: asyncio.AbstractEventLoop, context: dict) -> None:
        nonlocal exit_code
        exc = context.get("exception")
        if isinstance(exc, InvariantError):
            logger.critical("[app] invariant violated: %s; shutting down", exc)
            exit_code = 1
            stop.set()
            return
        loop.default_exception_handler(context)

    loop.set_exception_handler(_on_loop_error)

    registry = ModemRegistry()
    tracker = RegistrationTracker(registry)
    kicker = ModemKicker(registry, step_delay=timing.step_delay_s, max_tries=timing.max_tries)
    sweeper = Sweeper(
        registry,
        kicker,
        threshold=timing.kick_threshold_s,
        interval=timing.sweep_interval_s,
    )

    def _on_event(event: Event) -> None:
        SupervisorRef.post(event)  # set below

    client = ModemManagerClient(on_event=_on_event)
    SupervisorRef = Supervisor(client, registry, tracker)

    logger.info(
        "[app] kick after %ds idle/denied, sweep every %ds%s",
        timing.kick_threshold_s, timing.sweep_interval_s, " (debug)" if cfg.debug else "",
    )

    await SupervisorRef.start()
    try:
        await client.connect()
    except Exception as exc:
        logger.error("[app] Error: failed to connect to D-Bus: %s", exc)
        await SupervisorRef.stop()
        return 1

    health: Optional[HealthServer] = None
    if cfg.health_enabled:
        health = HealthServer(
            host=cfg.health_host,
            port=cfg.health_port,
            client=client,
            supervisor=SupervisorRef,
            registry=registry,
        )
        try:
            await health.start()
        except OSError as exc:
            logger.warning("[health] could not listen on %s:%d: %s", cfg.health_host, cfg.health_port, exc)
            health = None

    client_task = asyncio.create_task(client.run(), name="mm_client")
    await sweeper.start()

    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(Exception):
            loop.add_signal_handler(sig, stop.set)
    await stop.wait()
    logger.info("[app] Term received; quitting...")

    await sweeper.stop()
    await client.stop()
    with contextlib.suppress(Exception, asyncio.CancelledError):
        await client_task
    # Clears the registry, cancelling every pending step timer and in-flight call
    await SupervisorRef.stop()
    if health is not None:
        await health.stop()
    return exit_code


def run() -> None:
    cfg = Config.load()
    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    sys.exit(asyncio.run(main(cfg)))


if __name__ == "__main__":
    run()
