from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from uuid import uuid4


@dataclass(frozen=True)
class Tick:
    ts: float
    price: float
    symbol: str = ""
    # display-only identifier for list diffing
    id: str = field(default_factory=lambda: uuid4().hex, compare=False)


@dataclass(frozen=True)
class DerivedBounds:
    value_range: tuple[float, float]
    time_range: tuple[float, float]


@dataclass(frozen=True)
class SeriesSnapshot:
    series: tuple[Tick, ...]
    bounds: DerivedBounds
    now: float
    version: int


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    RECONNECTING = "reconnecting"
