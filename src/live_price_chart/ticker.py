from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Iterable

import websockets

from .codec import decode, encode_subscribe
from .models import ConnectionState, Tick

logger = logging.getLogger(__name__)

DEFAULT_WS_URL = "wss://ws-feed.exchange.coinbase.com"

StateListener = Callable[[ConnectionState, ConnectionState], None]


class LatestTickSlot:
    """Single-value hand-off between the receive loop and its consumer.

    Publishing overwrites whatever is still pending and never blocks, so a
    slow consumer only ever sees the newest tick.
    """

    def __init__(self) -> None:
        self._value: Tick | None = None
        self._pending = False
        self._event = asyncio.Event()
        self.published = 0
        self.overwritten = 0

    @property
    def pending(self) -> bool:
        return self._pending

    def publish(self, tick: Tick) -> None:
        if self._pending:
            self.overwritten += 1
        self._value = tick
        self._pending = True
        self.published += 1
        self._event.set()

    def peek(self) -> Tick | None:
        return self._value

    def take(self) -> Tick | None:
        self._pending = False
        self._event.clear()
        return self._value

    async def wait(self) -> None:
        await self._event.wait()


class TickerConnection:
    def __init__(
        self,
        *,
        ws_url: str = DEFAULT_WS_URL,
        symbols: Iterable[str] = ("BTC-USD",),
        reconnect_delay_seconds: float = 1.0,
        ping_interval_seconds: float | None = 15,
        connect: Callable[..., Any] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ws_url = ws_url
        self.symbols = frozenset(s.strip() for s in symbols if s and s.strip())
        self.reconnect_delay_seconds = reconnect_delay_seconds
        self.ping_interval_seconds = ping_interval_seconds
        self.latest = LatestTickSlot()
        self.reconnect_count = 0
        self.last_error: str | None = None
        self._subscribe_message = encode_subscribe(self.symbols)
        self._connect = connect or websockets.connect
        self._clock = clock
        self._state = ConnectionState.DISCONNECTED
        self._task: asyncio.Task[None] | None = None
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    def add_state_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def start(self) -> asyncio.Task[None] | None:
        if self._state is not ConnectionState.DISCONNECTED:
            return self._task

        loop = asyncio.get_running_loop()
        self._set_state(ConnectionState.CONNECTING)
        self._task = loop.create_task(self._run(), name="ticker-connection")
        return self._task

    def resume(self) -> asyncio.Task[None] | None:
        return self.start()

    async def pause(self) -> None:
        task = self._task
        self._task = None
        try:
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    current = asyncio.current_task()
                    if current is not None and current.cancelling():
                        raise
        finally:
            if self._state is not ConnectionState.DISCONNECTED:
                logger.info("[Feed WS] Paused")
            self._set_state(ConnectionState.DISCONNECTED)

    async def _run(self) -> None:
        while True:
            self._set_state(ConnectionState.CONNECTING)
            try:
                await self._stream_once()
                logger.warning(
                    "[Feed WS] Closed by server; reconnecting in %ss",
                    self.reconnect_delay_seconds,
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                self.last_error = str(exc) or exc.__class__.__name__
                logger.warning(
                    "[Feed WS] Error: %s; reconnecting in %ss",
                    self.last_error,
                    self.reconnect_delay_seconds,
                )

            self._set_state(ConnectionState.RECONNECTING)
            await asyncio.sleep(self.reconnect_delay_seconds)

    async def _stream_once(self) -> None:
        logger.info("[Feed WS] Connecting: %s %s", self.ws_url, ",".join(sorted(self.symbols)))
        async with self._connect(
            self.ws_url,
            ping_interval=self.ping_interval_seconds,
        ) as ws:
            await ws.send(self._subscribe_message)
            self._set_state(ConnectionState.SUBSCRIBED)
            logger.info("[Feed WS] Subscribed to %s product(s)", len(self.symbols))
            async for raw in ws:
                self._handle_frame(raw)

    def _handle_frame(self, raw: str | bytes) -> None:
        tick = decode(raw, received_ts=self._clock())
        if tick is None:
            return

        if tick.symbol and tick.symbol not in self.symbols:
            return

        self.latest.publish(tick)

    def _set_state(self, state: ConnectionState) -> None:
        previous = self._state
        if previous is state:
            return

        self._state = state
        if state is ConnectionState.RECONNECTING:
            self.reconnect_count += 1

        for listener in list(self._listeners):
            try:
                listener(previous, state)
            except Exception:  # noqa: BLE001
                logger.exception("[Feed WS] State listener failed")
