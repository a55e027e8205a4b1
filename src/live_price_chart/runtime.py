from __future__ import annotations

from dataclasses import dataclass
import threading

from .aggregator import WindowedAggregator
from .ticker import TickerConnection


@dataclass(frozen=True)
class ChartRuntime:
    connection: TickerConnection
    aggregator: WindowedAggregator


_runtime: ChartRuntime | None = None
_lock = threading.Lock()


def set_runtime(runtime: ChartRuntime | None) -> None:
    global _runtime

    with _lock:
        _runtime = runtime


def get_runtime() -> ChartRuntime | None:
    return _runtime
