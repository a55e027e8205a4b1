import asyncio
import json
import time

import pytest

from src.live_price_chart.codec import encode_subscribe
from src.live_price_chart.models import ConnectionState, Tick
from src.live_price_chart.ticker import LatestTickSlot, TickerConnection

TICKER_FRAME = '{"type":"ticker","product_id":"BTC-USD","price":"97000.50"}'
HEARTBEAT_FRAME = '{"type":"heartbeat","product_id":"BTC-USD","sequence":1}'


class FakeSocket:
    def __init__(
        self,
        frames: list[str],
        *,
        error: Exception | None = None,
        hang: bool = True,
        close_delay: float = 0.0,
    ) -> None:
        self.frames = frames
        self.close_delay = close_delay
        self.error = error
        self.hang = hang
        self.sent: list[str] = []
        self.closed = False

    async def __aenter__(self) -> "FakeSocket":
        return self

    async def __aexit__(self, *exc_info) -> bool:
        if self.close_delay:
            await asyncio.sleep(self.close_delay)
        self.closed = True
        return False

    async def send(self, message: str) -> None:
        self.sent.append(message)

    def __aiter__(self):
        return self._frames()

    async def _frames(self):
        for frame in self.frames:
            await asyncio.sleep(0)
            yield frame
        if self.error is not None:
            raise self.error
        if self.hang:
            await asyncio.Event().wait()


class FakeConnector:
    def __init__(self, *outcomes: FakeSocket | Exception) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[tuple[str, dict]] = []

    def __call__(self, url: str, **kwargs) -> FakeSocket:
        self.calls.append((url, kwargs))
        outcome = self.outcomes.pop(0) if self.outcomes else FakeSocket([])
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


def test_start_subscribes_and_publishes_ticks() -> None:
    socket = FakeSocket([HEARTBEAT_FRAME, TICKER_FRAME])
    connector = FakeConnector(socket)

    async def _run() -> TickerConnection:
        connection = TickerConnection(
            ws_url="wss://feed.example.test",
            symbols=["BTC-USD"],
            connect=connector,
            clock=lambda: 1700.0,
        )
        connection.start()
        await _wait_for(lambda: connection.latest.pending)
        await connection.pause()
        return connection

    connection = asyncio.run(_run())

    assert connector.calls == [("wss://feed.example.test", {"ping_interval": 15})]
    assert socket.sent == [encode_subscribe({"BTC-USD"})]
    assert socket.closed is True
    tick = connection.latest.peek()
    assert tick is not None
    assert tick.price == 97000.50
    assert tick.ts == 1700.0
    assert connection.state is ConnectionState.DISCONNECTED


def test_transport_error_triggers_reconnect_cycle() -> None:
    connector = FakeConnector(
        FakeSocket([TICKER_FRAME], error=ConnectionResetError("connection reset")),
        FakeSocket([]),
    )
    transitions: list[ConnectionState] = []

    async def _run() -> TickerConnection:
        connection = TickerConnection(reconnect_delay_seconds=0.01, connect=connector)
        connection.add_state_listener(lambda previous, current: transitions.append(current))
        connection.start()
        await _wait_for(
            lambda: len(connector.calls) == 2 and connection.state is ConnectionState.SUBSCRIBED
        )
        await connection.pause()
        return connection

    connection = asyncio.run(_run())

    assert transitions == [
        ConnectionState.CONNECTING,
        ConnectionState.SUBSCRIBED,
        ConnectionState.RECONNECTING,
        ConnectionState.CONNECTING,
        ConnectionState.SUBSCRIBED,
        ConnectionState.DISCONNECTED,
    ]
    assert connection.reconnect_count == 1
    assert connection.last_error == "connection reset"


def test_failed_open_retries_with_fixed_delay() -> None:
    connector = FakeConnector(OSError("refused"), OSError("refused"), FakeSocket([]))

    async def _run() -> tuple[TickerConnection, float]:
        connection = TickerConnection(reconnect_delay_seconds=0.02, connect=connector)
        started = time.monotonic()
        connection.start()
        await _wait_for(lambda: connection.state is ConnectionState.SUBSCRIBED)
        elapsed = time.monotonic() - started
        await connection.pause()
        return connection, elapsed

    connection, elapsed = asyncio.run(_run())

    assert len(connector.calls) == 3
    assert connection.reconnect_count == 2
    assert elapsed >= 0.035


def test_server_close_also_reconnects() -> None:
    connector = FakeConnector(FakeSocket([TICKER_FRAME], hang=False), FakeSocket([]))

    async def _run() -> TickerConnection:
        connection = TickerConnection(reconnect_delay_seconds=0.01, connect=connector)
        connection.start()
        await _wait_for(lambda: len(connector.calls) == 2 and connection.state is ConnectionState.SUBSCRIBED)
        await connection.pause()
        return connection

    connection = asyncio.run(_run())

    assert connection.reconnect_count == 1


def test_rejected_frames_do_not_change_state() -> None:
    frames = [HEARTBEAT_FRAME, "{broken", '{"type":"ticker","product_id":"ETH-USD","price":"3000"}']
    connector = FakeConnector(FakeSocket(frames))
    transitions: list[ConnectionState] = []

    async def _run() -> TickerConnection:
        connection = TickerConnection(symbols=["BTC-USD"], connect=connector)
        connection.add_state_listener(lambda previous, current: transitions.append(current))
        connection.start()
        await _wait_for(lambda: connection.state is ConnectionState.SUBSCRIBED)
        for _ in range(10):
            await asyncio.sleep(0)
        await connection.pause()
        return connection

    connection = asyncio.run(_run())

    assert connection.latest.peek() is None
    assert transitions == [
        ConnectionState.CONNECTING,
        ConnectionState.SUBSCRIBED,
        ConnectionState.DISCONNECTED,
    ]


def test_start_is_gated_by_state() -> None:
    connector = FakeConnector(FakeSocket([]))

    async def _run() -> None:
        connection = TickerConnection(connect=connector)
        first = connection.start()
        second = connection.start()
        third = connection.resume()
        assert first is second is third
        await _wait_for(lambda: connection.state is ConnectionState.SUBSCRIBED)
        assert connection.start() is first
        await connection.pause()

    asyncio.run(_run())

    assert len(connector.calls) == 1


def test_pause_cancels_pending_reconnect_wait() -> None:
    connector = FakeConnector(OSError("down"))

    async def _run() -> TickerConnection:
        connection = TickerConnection(reconnect_delay_seconds=60.0, connect=connector)
        connection.start()
        await _wait_for(lambda: connection.state is ConnectionState.RECONNECTING)
        await asyncio.wait_for(connection.pause(), timeout=1.0)
        await connection.pause()
        return connection

    connection = asyncio.run(_run())

    assert connection.state is ConnectionState.DISCONNECTED
    assert len(connector.calls) == 1


def test_resume_after_pause_opens_new_connection() -> None:
    first_socket = FakeSocket([])
    second_socket = FakeSocket([TICKER_FRAME])
    connector = FakeConnector(first_socket, second_socket)

    async def _run() -> TickerConnection:
        connection = TickerConnection(connect=connector)
        connection.start()
        await _wait_for(lambda: connection.state is ConnectionState.SUBSCRIBED)
        await connection.pause()
        assert connection.state is ConnectionState.DISCONNECTED

        connection.resume()
        await _wait_for(lambda: connection.latest.pending)
        await connection.pause()
        return connection

    connection = asyncio.run(_run())

    assert first_socket.closed is True
    assert second_socket.closed is True
    assert len(connector.calls) == 2
    assert json.loads(second_socket.sent[0])["type"] == "subscribe"


def test_start_requires_running_loop() -> None:
    connection = TickerConnection(connect=FakeConnector())

    with pytest.raises(RuntimeError):
        connection.start()

    assert connection.state is ConnectionState.DISCONNECTED


def test_latest_slot_overwrites_pending_value() -> None:
    slot = LatestTickSlot()

    slot.publish(Tick(ts=1.0, price=1.0))
    slot.publish(Tick(ts=2.0, price=2.0))

    assert slot.pending is True
    assert slot.overwritten == 1
    taken = slot.take()
    assert taken is not None
    assert taken.price == 2.0
    assert slot.pending is False

    slot.publish(Tick(ts=3.0, price=3.0))
    assert slot.overwritten == 1


def test_latest_slot_wait_returns_after_publish() -> None:
    async def _run() -> Tick | None:
        slot = LatestTickSlot()
        waiter = asyncio.create_task(slot.wait())
        await asyncio.sleep(0)
        assert not waiter.done()
        slot.publish(Tick(ts=1.0, price=42.0))
        await asyncio.wait_for(waiter, timeout=1.0)
        return slot.take()

    tick = asyncio.run(_run())

    assert tick is not None
    assert tick.price == 42.0


def test_pause_propagates_cancellation_of_its_caller() -> None:
    socket = FakeSocket([], close_delay=0.2)
    connector = FakeConnector(socket)

    async def _run() -> tuple[TickerConnection, asyncio.Task]:
        connection = TickerConnection(connect=connector)
        connection.start()
        await _wait_for(lambda: connection.state is ConnectionState.SUBSCRIBED)

        pauser = asyncio.create_task(connection.pause())
        await asyncio.sleep(0.01)
        pauser.cancel()
        try:
            await pauser
        except asyncio.CancelledError:
            pass
        return connection, pauser

    connection, pauser = asyncio.run(_run())

    assert pauser.cancelled() is True
    assert connection.state is ConnectionState.DISCONNECTED


def test_pause_completes_normally_when_only_receive_task_is_cancelled() -> None:
    socket = FakeSocket([], close_delay=0.02)
    connector = FakeConnector(socket)

    async def _run() -> tuple[TickerConnection, asyncio.Task]:
        connection = TickerConnection(connect=connector)
        connection.start()
        await _wait_for(lambda: connection.state is ConnectionState.SUBSCRIBED)
        pauser = asyncio.create_task(connection.pause())
        await pauser
        return connection, pauser

    connection, pauser = asyncio.run(_run())

    assert pauser.cancelled() is False
    assert socket.closed is True
    assert connection.state is ConnectionState.DISCONNECTED
