from __future__ import annotations

import logging
import math
import threading
import time
from typing import Callable, Iterable, Sequence

from .models import DerivedBounds, SeriesSnapshot, Tick

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 600.0
DEFAULT_VALUE_RANGE = (0.0, 1.0)
VALUE_BUFFER_RATIO = 0.05
VALUE_GRID_STEP = 100.0

SnapshotObserver = Callable[[SeriesSnapshot], None]
FutureTickListener = Callable[[Tick, float], None]


def compute_value_range(prices: Iterable[float]) -> tuple[float, float]:
    values = list(prices)
    if not values:
        return DEFAULT_VALUE_RANGE

    low = min(values)
    high = max(values)
    if low >= high:
        return DEFAULT_VALUE_RANGE

    buffer = (high - low) * VALUE_BUFFER_RATIO
    return (
        float(math.floor((low - buffer) / VALUE_GRID_STEP) * VALUE_GRID_STEP),
        float(math.ceil((high + buffer) / VALUE_GRID_STEP) * VALUE_GRID_STEP),
    )


def compute_time_range(
    series: Sequence[Tick],
    now: float,
    window_seconds: float,
) -> tuple[float, float]:
    if not series:
        return (now, now)

    start = max(series[0].ts, now - window_seconds)
    return (min(start, now), now)


def compute_bounds(series: Sequence[Tick], now: float, window_seconds: float) -> DerivedBounds:
    return DerivedBounds(
        value_range=compute_value_range(t.price for t in series),
        time_range=compute_time_range(series, now, window_seconds),
    )


class WindowedAggregator:
    """Rolling, time-ordered window of sampled ticks plus its display bounds.

    Every mutation rebuilds an immutable ``SeriesSnapshot`` under the lock
    and swaps it in whole, so readers only ever see a fully pruned series
    together with the bounds computed from it.
    """

    def __init__(
        self,
        *,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        sample_interval_seconds: float | None = 1.0,
        clock: Callable[[], float] = time.time,
        on_future_tick: FutureTickListener | None = None,
    ) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        if sample_interval_seconds is not None and sample_interval_seconds < 0:
            raise ValueError("sample_interval_seconds must be >= 0")

        self.window_seconds = float(window_seconds)
        self.sample_interval_seconds = sample_interval_seconds
        self.future_rejections = 0
        self.stale_rejections = 0
        self.throttled = 0
        self._clock = clock
        self._on_future_tick = on_future_tick
        self._lock = threading.Lock()
        self._series: list[Tick] = []
        self._last_accepted_ts: float | None = None
        self._observers: list[SnapshotObserver] = []

        now = clock()
        self._snapshot = SeriesSnapshot(
            series=(),
            bounds=compute_bounds((), now, self.window_seconds),
            now=now,
            version=0,
        )

    def on_tick(self, tick: Tick, now: float | None = None) -> bool:
        now = self._clock() if now is None else now
        with self._lock:
            if tick.ts > now:
                self.future_rejections += 1
                snapshot = None
            elif tick.ts <= now - self.window_seconds:
                self.stale_rejections += 1
                return False
            elif self._is_throttled(now):
                self.throttled += 1
                return False
            else:
                self._series.append(tick)
                # list.sort is stable, equal timestamps keep arrival order
                self._series.sort(key=lambda t: t.ts)
                self._last_accepted_ts = now
                self._prune(now)
                snapshot = self._publish(now)

        if snapshot is None:
            logger.warning("[Chart] Dropped future-dated tick ts=%.3f now=%.3f", tick.ts, now)
            if self._on_future_tick is not None:
                self._on_future_tick(tick, now)
            return False

        self._notify(snapshot)
        return True

    def refresh(self, now: float | None = None) -> SeriesSnapshot:
        now = self._clock() if now is None else now
        with self._lock:
            current = self._snapshot
            removed = self._prune(now)
            bounds = compute_bounds(self._series, now, self.window_seconds)
            if not removed and bounds == current.bounds:
                return current
            snapshot = self._publish(now, bounds)

        self._notify(snapshot)
        return snapshot

    def reset(self, now: float | None = None) -> SeriesSnapshot:
        now = self._clock() if now is None else now
        with self._lock:
            self._series.clear()
            self._last_accepted_ts = None
            snapshot = self._publish(now)

        self._notify(snapshot)
        return snapshot

    def seconds_until_next_sample(self, now: float | None = None) -> float:
        now = self._clock() if now is None else now
        with self._lock:
            if not self.sample_interval_seconds or self._last_accepted_ts is None:
                return 0.0
            return max(0.0, self._last_accepted_ts + self.sample_interval_seconds - now)

    def current_series(self) -> tuple[Tick, ...]:
        return self._snapshot.series

    def current_bounds(self) -> DerivedBounds:
        return self._snapshot.bounds

    def snapshot(self) -> SeriesSnapshot:
        return self._snapshot

    def subscribe(self, observer: SnapshotObserver) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _is_throttled(self, now: float) -> bool:
        if not self.sample_interval_seconds or self._last_accepted_ts is None:
            return False
        return now - self._last_accepted_ts < self.sample_interval_seconds

    def _prune(self, now: float) -> int:
        cutoff = now - self.window_seconds
        kept = [t for t in self._series if t.ts > cutoff]
        removed = len(self._series) - len(kept)
        if removed:
            self._series = kept
        return removed

    def _publish(self, now: float, bounds: DerivedBounds | None = None) -> SeriesSnapshot:
        series = tuple(self._series)
        self._snapshot = SeriesSnapshot(
            series=series,
            bounds=bounds or compute_bounds(series, now, self.window_seconds),
            now=now,
            version=self._snapshot.version + 1,
        )
        return self._snapshot

    def _notify(self, snapshot: SeriesSnapshot) -> None:
        for observer in list(self._observers):
            try:
                observer(snapshot)
            except Exception:  # noqa: BLE001
                logger.exception("[Chart] Series observer failed")
