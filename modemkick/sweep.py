from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Callable, List, Optional

from .recovery import ModemKicker
from .registry import ModemRegistry

logger = logging.getLogger(__name__)


class Sweeper:
    """
    One recurring timer for all modems.

    • Every `interval` seconds, walks the registry.
    • Any modem idle/denied for longer than `threshold` gets a fresh kick.
    • Modems added between sweeps are simply picked up by the next one.
    """

    def __init__(
        self,
        registry: ModemRegistry,
        kicker: ModemKicker,
        *,
        threshold: float,
        interval: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._kicker = kicker
        self._threshold = float(threshold)
        self._interval = float(interval)
        self._clock = clock

        self._task: Optional[asyncio.Task] = None

    # ── Public API ───────────────────────────────────────────────────────────
    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="sweeper")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    def sweep_once(self, now: Optional[float] = None) -> List[str]:
        """Run one sweep; returns the paths that were kicked."""
        if now is None:
            now = self._clock()

        kicked: List[str] = []
        for record in self._registry:
            if record.idle_since == 0:
                continue

            elapsed = now - record.idle_since
            if elapsed > self._threshold:
                logger.info("[sweep] %s: idle/denied for %d seconds; kicking...", record.path, elapsed)
                self._kicker.start(record.path)
                kicked.append(record.path)
            else:
                logger.info(
                    "[sweep] %s: not kicking yet; wait %d seconds",
                    record.path, self._threshold - elapsed,
                )
        return kicked

    # ── Internals ───────────────────────────────────────────────────────────
    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self.sweep_once()
