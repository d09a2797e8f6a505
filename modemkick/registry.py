"""Per-modem state, keyed by ModemManager object path."""

from __future__ import annotations

import asyncio
import enum
import itertools
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional, Protocol

logger = logging.getLogger(__name__)


class ModemHandle(Protocol):
    """Remote control operations on one modem. Each call raises on failure."""

    async def disable(self) -> None: ...

    async def set_power_state_low(self) -> None: ...

    async def enable(self) -> None: ...


class KickPhase(enum.Enum):
    DISABLE = "disable"
    LOW_POWER = "low-power"
    ENABLE = "enable"
    FINISH = "finish"


_tokens = itertools.count(1)


@dataclass
class Recovery:
    """An active kick. Absence of a Recovery is the idle condition."""

    phase: KickPhase = KickPhase.DISABLE
    tries: int = 0
    aborted: bool = False
    token: int = field(default_factory=lambda: next(_tokens))

    # At most one of these is live at any time
    timer: Optional[asyncio.TimerHandle] = None
    call: Optional[asyncio.Task] = None

    def cancel(self) -> None:
        """Cancel the pending timer and the in-flight call together."""
        timer, self.timer = self.timer, None
        call, self.call = self.call, None
        if timer is not None:
            timer.cancel()
        if call is not None and not call.done():
            call.cancel()


@dataclass
class ModemRecord:
    path: str
    handle: ModemHandle

    # Monotonic seconds when the modem was last seen idle/denied; 0 when registered
    idle_since: float = 0
    recovery: Optional[Recovery] = None

    kicks: int = 0
    aborts: int = 0

    def cancel_recovery(self) -> None:
        recovery, self.recovery = self.recovery, None
        if recovery is not None:
            recovery.cancel()


class ModemRegistry:
    """The only shared mutable structure. Loop-thread access only."""

    def __init__(self) -> None:
        self._modems: Dict[str, ModemRecord] = {}

    def __len__(self) -> int:
        return len(self._modems)

    def __contains__(self, path: object) -> bool:
        return path in self._modems

    def __iter__(self) -> Iterator[ModemRecord]:
        # Snapshot, so callers may add or remove modems while iterating
        return iter(list(self._modems.values()))

    def get(self, path: str) -> Optional[ModemRecord]:
        return self._modems.get(path)

    def add(self, record: ModemRecord) -> None:
        old = self._modems.pop(record.path, None)
        if old is not None:
            old.cancel_recovery()
        self._modems[record.path] = record

    def remove(self, path: str) -> Optional[ModemRecord]:
        record = self._modems.pop(path, None)
        if record is not None:
            record.cancel_recovery()
        return record

    def clear(self) -> None:
        if self._modems:
            logger.info("[registry] clearing %d modem(s)", len(self._modems))
        for record in list(self._modems.values()):
            record.cancel_recovery()
        self._modems.clear()
