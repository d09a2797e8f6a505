"""Tagged events delivered from the bus client to the supervisor queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

# interface name -> property name -> unwrapped value
Interfaces = Dict[str, Dict[str, Any]]


@dataclass(frozen=True)
class ServiceAppeared:
    owner: str
    # False for the first sighting after connecting to the bus
    reappeared: bool = False


@dataclass(frozen=True)
class ServiceVanished:
    pass


@dataclass(frozen=True)
class ModemAdded:
    path: str
    interfaces: Interfaces = field(default_factory=dict)


@dataclass(frozen=True)
class ModemRemoved:
    path: str


@dataclass(frozen=True)
class RegistrationChanged:
    path: str
    state: Optional[int]


Event = Union[ServiceAppeared, ServiceVanished, ModemAdded, ModemRemoved, RegistrationChanged]
