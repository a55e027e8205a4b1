from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque

from .models import ConnectionState, SeriesSnapshot, Tick


@dataclass
class ChartEvent:
    ts: float
    level: str
    message: str
    data: dict = field(default_factory=dict)


class ChartState:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._started_ts = time.time()
        self._connection_state = ConnectionState.DISCONNECTED
        self._connection_changed_ts: float | None = None
        self._reconnect_count = 0
        self._latest_price: float | None = None
        self._latest_tick_ts: float | None = None
        self._series_version = 0
        self._series_length = 0
        self._future_rejections = 0
        self._events: Deque[ChartEvent] = deque(maxlen=200)

    def set_connection_state(self, state: ConnectionState) -> None:
        with self._lock:
            self._connection_state = state
            self._connection_changed_ts = time.time()
            if state is ConnectionState.RECONNECTING:
                self._reconnect_count += 1

    def get_connection_state(self) -> ConnectionState:
        with self._lock:
            return self._connection_state

    def set_series(self, snapshot: SeriesSnapshot) -> None:
        with self._lock:
            self._series_version = snapshot.version
            self._series_length = len(snapshot.series)
            if snapshot.series:
                last = snapshot.series[-1]
                self._latest_price = last.price
                self._latest_tick_ts = last.ts

    def record_future_tick(self, tick: Tick, now: float) -> None:
        with self._lock:
            self._future_rejections += 1
        self.add_event("warning", "future_tick_dropped", {"tick_ts": tick.ts, "now": now})

    def add_event(self, level: str, message: str, data: dict | None = None) -> None:
        with self._lock:
            self._events.append(
                ChartEvent(
                    ts=time.time(),
                    level=level,
                    message=message,
                    data=data or {},
                )
            )

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "started_ts": self._started_ts,
                "connection_state": self._connection_state.value,
                "connection_changed_ts": self._connection_changed_ts,
                "reconnect_count": self._reconnect_count,
                "latest_price": self._latest_price,
                "latest_tick_ts": self._latest_tick_ts,
                "series_version": self._series_version,
                "series_length": self._series_length,
                "future_rejections": self._future_rejections,
                "events": [
                    {
                        "ts": e.ts,
                        "level": e.level,
                        "message": e.message,
                        "data": e.data,
                    }
                    for e in list(self._events)
                ],
            }


chart_state = ChartState()
