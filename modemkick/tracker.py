"""3GPP registration tracking: project registration notifications onto idle_since."""

from __future__ import annotations

import enum
import logging
import time
from typing import Callable, Optional, Union

from .registry import ModemRegistry

logger = logging.getLogger(__name__)


class RegistrationState(enum.IntEnum):
    """MMModem3gppRegistrationState."""
    IDLE = 0
    HOME = 1
    SEARCHING = 2
    DENIED = 3
    UNKNOWN = 4
    ROAMING = 5
    HOME_SMS_ONLY = 6
    ROAMING_SMS_ONLY = 7
    EMERGENCY_ONLY = 8
    HOME_CSFB_NOT_PREFERRED = 9
    ROAMING_CSFB_NOT_PREFERRED = 10
    ATTACHED_RLOS = 11


# States that start (or keep) the kick timer running
STUCK_STATES = frozenset({RegistrationState.IDLE, RegistrationState.DENIED})


def describe_state(state: Union[RegistrationState, int, None]) -> str:
    if state is None:
        return "none"
    try:
        return RegistrationState(state).name.lower().replace("_", "-")
    except ValueError:
        return f"unrecognised({state})"


class RegistrationTracker:
    """Keeps ModemRecord.idle_since in step with the last registration notification."""

    def __init__(self, registry: ModemRegistry, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._registry = registry
        self._clock = clock

    def on_registration_changed(self, path: str, state: Optional[int]) -> None:
        record = self._registry.get(path)
        if record is None:
            # Notification raced a removal, or the modem failed the capability gate
            return

        logger.info("[mm] %s: registration changed to %s", path, describe_state(state))
        if state in STUCK_STATES:
            if record.idle_since == 0:
                record.idle_since = self._clock()
                logger.info("[mm] %s: save idle/denied timestamp %.3f", path, record.idle_since)
        else:
            if record.idle_since:
                logger.info("[mm] %s: registered; clearing idle/denied timestamp", path)
            record.idle_since = 0
