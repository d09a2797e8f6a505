"""Per-modem kick sequence: disable -> low-power -> enable, with bounded retries.

Exactly one thing is ever outstanding for a modem under recovery: either the
timer for the next step, or the remote call issued by the current step. Every
completion carries the token of the Recovery that issued it and is dropped if
that Recovery has since been replaced or torn down.
"""

from __future__ import annotations

import asyncio
import functools
import logging

from .registry import KickPhase, ModemRecord, ModemRegistry, Recovery

logger = logging.getLogger(__name__)


class InvariantError(RuntimeError):
    """The single-outstanding-operation invariant was broken. Fatal."""


# phase -> (ModemHandle method, progress label, failure verb)
_ACTIONS = {
    KickPhase.DISABLE:   ("disable", "disabling", "disable"),
    KickPhase.LOW_POWER: ("set_power_state_low", "setting low-power mode", "set low-power"),
    KickPhase.ENABLE:    ("enable", "re-enabling", "enable"),
}

_NEXT = {
    KickPhase.DISABLE: KickPhase.LOW_POWER,
    KickPhase.LOW_POWER: KickPhase.ENABLE,
    KickPhase.ENABLE: KickPhase.FINISH,
}


class ModemKicker:
    """Drives the Recovery of every modem in the registry."""

    def __init__(self, registry: ModemRegistry, *, step_delay: float = 10.0, max_tries: int = 3) -> None:
        self._registry = registry
        self._step_delay = float(step_delay)
        self._max_tries = int(max_tries)

    # ── Public API ───────────────────────────────────────────────────────────

    def start(self, path: str) -> None:
        """Replace any running kick for this modem with a fresh one and run its first step now."""
        record = self._registry.get(path)
        if record is None:
            return
        record.cancel_recovery()
        record.recovery = Recovery()
        record.kicks += 1
        self.step(path)

    def step(self, path: str) -> None:
        record = self._registry.get(path)
        if record is None or record.recovery is None:
            return
        rec = record.recovery
        rec.timer = None

        if rec.phase is KickPhase.FINISH:
            if rec.aborted:
                record.aborts += 1
                logger.warning("[kick] %s: kick aborted", path)
            else:
                logger.info("[kick] %s: modem kicked", path)
            record.cancel_recovery()
            return

        if rec.call is not None:
            raise InvariantError(f"{path}: {rec.phase.value} step run while a call is in flight")

        method, label, _ = _ACTIONS[rec.phase]
        logger.info("[kick] %s: %s (try %d)...", path, label, rec.tries)
        rec.call = asyncio.get_running_loop().create_task(
            getattr(record.handle, method)(), name=f"kick:{rec.phase.value}:{path}"
        )
        rec.call.add_done_callback(functools.partial(self._call_done, path, rec.token, rec.phase))

    # ── Internals ───────────────────────────────────────────────────────────

    def _call_done(self, path: str, token: int, phase: KickPhase, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()

        record = self._registry.get(path)
        rec = record.recovery if record is not None else None
        if rec is None or rec.token != token:
            logger.debug("[kick] %s: dropping stale %s completion", path, phase.value)
            return
        rec.call = None

        if exc is None:
            rec.tries = 0
            self._schedule(record, _NEXT[phase], self._step_delay)
            return

        logger.warning("[kick] %s: failed to %s: '%s'", path, _ACTIONS[phase][2], exc)
        rec.tries += 1
        if rec.tries > self._max_tries:
            logger.warning("[kick] %s: too many retries; failing operation", path)
            rec.aborted = True
            self._schedule(record, KickPhase.FINISH, 0)
        else:
            self._schedule(record, phase, self._step_delay)

    def _schedule(self, record: ModemRecord, phase: KickPhase, delay: float) -> None:
        rec = record.recovery
        if rec.timer is not None:
            raise InvariantError(f"{record.path}: next step already scheduled")
        rec.phase = phase
        rec.timer = asyncio.get_running_loop().call_later(delay, self.step, record.path)
