from __future__ import annotations

import asyncio
from dataclasses import replace
import logging
import time
from typing import Callable

from .aggregator import WindowedAggregator
from .config import load_config
from .models import ConnectionState
from .runtime import ChartRuntime, set_runtime
from .state import chart_state
from .ticker import LatestTickSlot, TickerConnection


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def run_sampling_pump(
    slot: LatestTickSlot,
    aggregator: WindowedAggregator,
    clock: Callable[[], float] = time.time,
) -> None:
    """Feed the freshest pending tick into the aggregator once per sample interval.

    The wait happens before the slot is read, so whatever arrived during the
    interval is what gets sampled. The tick is re-stamped with the acceptance
    time; the series is a receipt-time series.
    """
    while True:
        await slot.wait()

        while True:
            now = clock()
            delay = aggregator.seconds_until_next_sample(now)
            if delay <= 0:
                break
            await asyncio.sleep(delay)

        tick = slot.take()
        if tick is None:
            continue
        aggregator.on_tick(replace(tick, ts=now), now)


async def run_clock(aggregator: WindowedAggregator, interval_seconds: float = 1.0) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        aggregator.refresh()


def _track_connection(connection: TickerConnection) -> None:
    def on_state_change(previous: ConnectionState, current: ConnectionState) -> None:
        chart_state.set_connection_state(current)
        data = {"from": previous.value, "to": current.value}
        if current is ConnectionState.RECONNECTING:
            data["error"] = connection.last_error
            chart_state.add_event("warning", "connection_reconnecting", data)
            return
        chart_state.add_event("info", "connection_state_changed", data)

    connection.add_state_listener(on_state_change)


async def run() -> None:
    config = load_config()

    connection = TickerConnection(
        ws_url=config.feed_ws_url,
        symbols=config.feed_product_ids,
        reconnect_delay_seconds=config.feed_reconnect_delay_seconds,
        ping_interval_seconds=config.ws_ping_interval_seconds,
    )
    aggregator = WindowedAggregator(
        window_seconds=config.chart_window_seconds,
        sample_interval_seconds=config.chart_sample_interval_seconds,
        on_future_tick=chart_state.record_future_tick,
    )
    _track_connection(connection)
    aggregator.subscribe(chart_state.set_series)
    set_runtime(ChartRuntime(connection=connection, aggregator=aggregator))

    chart_state.add_event(
        "info",
        "chart_started",
        {
            "ws_url": config.feed_ws_url,
            "product_ids": list(config.feed_product_ids),
            "window": config.chart_window,
        },
    )
    logger.info(
        "[Chart] Window=%s sample_interval=%ss",
        config.chart_window,
        config.chart_sample_interval_seconds,
    )

    connection.start()
    try:
        async with asyncio.TaskGroup() as tg:
            tg.create_task(run_sampling_pump(connection.latest, aggregator))
            tg.create_task(run_clock(aggregator, config.chart_clock_interval_seconds))
    finally:
        set_runtime(None)
        await connection.pause()
