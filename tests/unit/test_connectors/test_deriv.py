"""Tests for DerivConnector - session lifecycle, reconnection, requests, parsing."""

import pytest
import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch
from websockets.exceptions import InvalidURI

from connectors.deriv import (
    ConnectionState,
    DerivConnector,
    build_history_request,
    build_tick_subscription,
    reconnect_delay,
)
from tests.fixtures.market_data import (
    ERROR_RESPONSE,
    candles_response,
    history_response,
    tick_response,
)


async def wait_until(predicate, timeout: float = 2.0):
    """Poll until predicate() is true."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


# ========== Test Fixtures ==========
@pytest.fixture
def on_candles():
    return AsyncMock()


@pytest.fixture
def on_tick():
    return AsyncMock()


@pytest.fixture
def on_status():
    return AsyncMock()


@pytest.fixture
def connector(test_config, on_candles, on_tick, on_status):
    return DerivConnector(
        config=test_config,
        on_candles=on_candles,
        on_tick=on_tick,
        on_connection_status=on_status,
    )


@pytest.fixture
def open_connector(connector):
    """Connector marked OPEN over a mock socket, without a connection loop."""
    connector._ws = MagicMock()
    connector._ws.send = AsyncMock()
    connector.state = ConnectionState.OPEN
    connector._symbols = {"R_10"}
    return connector


def sent_payloads(ws):
    return [json.loads(call.args[0]) for call in ws.send.await_args_list]


# ========== Payload Builders ==========
class TestPayloads:

    def test_history_request(self):
        assert build_history_request("R_10") == {
            "ticks_history": "R_10",
            "adjust_start_time": 1,
            "count": 50,
            "end": "latest",
            "granularity": 60,
            "style": "candles",
        }

    def test_tick_subscription(self):
        assert build_tick_subscription("R_25") == {"ticks": "R_25", "subscribe": 1}

    def test_ws_uri_carries_app_id(self, test_config):
        assert test_config.ws_uri == "wss://ws.derivws.com/websockets/v3?app_id=69223"


# ========== Backoff ==========
class TestReconnectDelay:
    """Test jittered exponential backoff."""

    def test_first_attempt_is_base_delay(self):
        assert reconnect_delay(1, jitter=1.0) == pytest.approx(5.0)

    def test_grows_geometrically(self):
        assert reconnect_delay(3, jitter=1.0) == pytest.approx(11.25)

    def test_never_exceeds_cap(self):
        for attempt in range(1, 11):
            assert reconnect_delay(attempt) <= 60.0
        assert reconnect_delay(10, jitter=1.15) == 60.0

    def test_non_decreasing_without_jitter(self):
        delays = [reconnect_delay(a, jitter=1.0) for a in range(1, 11)]
        assert delays == sorted(delays)

    def test_jitter_bounds(self):
        for _ in range(50):
            assert 5.0 * 0.85 <= reconnect_delay(1) <= 5.0 * 1.15


# ========== Session Lifecycle ==========
class TestSessionLifecycle:
    """Test connect, subscribe and shutdown."""

    @pytest.mark.asyncio
    async def test_open_requests_history_and_ticks(self, connector, on_status, mock_websocket_server):
        with patch("connectors.deriv.connect", return_value=mock_websocket_server) as mock_connect:
            await connector.start(["R_10", "R_25"])
            await wait_until(lambda: len(mock_websocket_server.tick_subscriptions()) == 2)

            assert connector.state == ConnectionState.OPEN
            assert connector.reconnect_attempts == 0
            assert mock_connect.call_args.args[0] == connector.config.ws_uri
            assert {m["ticks_history"] for m in mock_websocket_server.history_requests()} == {"R_10", "R_25"}
            assert set(connector.pending_requests) == {"R_10", "R_25"}
            on_status.assert_awaited_with(True, "Connected")

            await connector.stop()

        assert connector.state == ConnectionState.DISCONNECTED
        assert connector.pending_requests == {}
        assert connector.connection_task is None

    @pytest.mark.asyncio
    async def test_start_idempotent(self, connector, mock_websocket_server):
        with patch("connectors.deriv.connect", return_value=mock_websocket_server):
            await connector.start(["R_10"])
            task = connector.connection_task
            await connector.start(["R_10"])

            assert connector.connection_task is task
            await connector.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_timers(self, connector, mock_websocket_server):
        with patch("connectors.deriv.connect", return_value=mock_websocket_server):
            await connector.start(["R_10"])
            await wait_until(lambda: "R_10" in connector.pending_requests)
            timer = connector.pending_requests["R_10"].timer

            await connector.stop()

        assert timer.done()
        assert connector._refresh_task is None

    @pytest.mark.asyncio
    async def test_candles_dispatched_and_resolve_request(self, connector, on_candles, mock_websocket_server):
        with patch("connectors.deriv.connect", return_value=mock_websocket_server):
            await connector.start(["R_10"])
            await wait_until(lambda: "R_10" in connector.pending_requests)

            mock_websocket_server.queue_candles("R_10", [100.0, 100.5, 101.0])
            await wait_until(lambda: on_candles.await_count == 1)

            symbol, candles = on_candles.await_args.args
            assert symbol == "R_10"
            assert [c["close"] for c in candles] == [100.0, 100.5, 101.0]
            assert "R_10" not in connector.pending_requests

            await connector.stop()

    @pytest.mark.asyncio
    async def test_stream_survives_bad_frames(self, connector, on_candles, on_tick, mock_websocket_server, caplog):
        with patch("connectors.deriv.connect", return_value=mock_websocket_server):
            await connector.start(["R_10"])
            await wait_until(lambda: "R_10" in connector.pending_requests)
            mock_websocket_server.clear_received()

            mock_websocket_server.queue_messages([
                "{not json",
                {"msg_type": "ping", "ping": "pong"},
                candles_response("R_10", [100.0, 101.0]),
            ])
            mock_websocket_server.queue_tick("R_10", 101.5, epoch=1700000000)
            await wait_until(lambda: on_tick.await_count == 1)

            assert on_candles.await_count == 1
            on_tick.assert_awaited_once_with("R_10", 101.5, 1700000000)
            assert "Invalid JSON message" in caplog.text
            assert "Unexpected response structure" in caplog.text
            # History was requested on open, so the tick is inside the throttle window
            assert mock_websocket_server.history_requests() == []
            assert connector.state == ConnectionState.OPEN

            await connector.stop()

    @pytest.mark.asyncio
    async def test_periodic_refresh(self, connector, mock_websocket_server):
        connector.config.refresh_interval = 0.05

        with patch("connectors.deriv.connect", return_value=mock_websocket_server):
            await connector.start(["R_10"])
            await wait_until(lambda: len(mock_websocket_server.history_requests("R_10")) >= 3)
            await connector.stop()

    @pytest.mark.asyncio
    async def test_add_and_remove_symbol(self, connector, mock_websocket_server):
        with patch("connectors.deriv.connect", return_value=mock_websocket_server):
            await connector.start(["R_10"])
            await wait_until(lambda: connector.state == ConnectionState.OPEN)

            await connector.add_symbol("R_50")
            assert connector.symbols == ["R_10", "R_50"]
            assert mock_websocket_server.history_requests("R_50")
            assert {"ticks": "R_50", "subscribe": 1} in mock_websocket_server.get_received_messages()

            await connector.remove_symbol("R_50")
            assert connector.symbols == ["R_10"]
            assert "R_50" not in connector.pending_requests

            await connector.stop()


# ========== Reconnection ==========
class TestReconnection:
    """Test the reconnect loop and its attempt ceiling."""

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, connector, on_status, caplog):
        with patch("connectors.deriv.connect", side_effect=OSError("refused")) as mock_connect:
            await connector.start(["R_10"])
            await asyncio.wait_for(connector.wait_closed(), timeout=5.0)

        # One initial connect plus ten reconnects
        assert mock_connect.call_count == 11
        assert connector.state == ConnectionState.FAILED
        on_status.assert_awaited_with(False, "Max reconnection attempts reached")
        assert "Failed to reconnect after 10 attempts" in caplog.text

    @pytest.mark.asyncio
    async def test_invalid_uri_not_retried(self, connector, on_status):
        with patch("connectors.deriv.connect", side_effect=InvalidURI("bogus://", "bad scheme")) as mock_connect:
            await connector.start(["R_10"])
            await asyncio.wait_for(connector.wait_closed(), timeout=5.0)

        assert mock_connect.call_count == 1
        assert connector.state == ConnectionState.FAILED
        assert on_status.await_args.args[0] is False
        assert on_status.await_args.args[1].startswith("Invalid URI")

    @pytest.mark.asyncio
    async def test_reconnect_after_close_resets_attempts(self, connector, on_status, mock_websocket_factory):
        first = mock_websocket_factory(close_when_drained=True)
        second = mock_websocket_factory()

        with patch("connectors.deriv.connect", side_effect=[first, second]) as mock_connect:
            await connector.start(["R_10"])
            await wait_until(lambda: mock_connect.call_count == 2 and connector.state == ConnectionState.OPEN)

            assert connector.reconnect_attempts == 0
            assert second.history_requests("R_10")
            statuses = [call.args for call in on_status.await_args_list]
            assert (False, "Connection closed") in statuses
            assert statuses[-1] == (True, "Connected")

            await connector.stop()

    @pytest.mark.asyncio
    async def test_stop_during_backoff(self, connector):
        connector.config.ws_reconnect_delay = 30.0
        connector.config.ws_max_reconnect_delay = 60.0

        with patch("connectors.deriv.connect", side_effect=OSError("refused")):
            await connector.start(["R_10"])
            await wait_until(lambda: connector.state == ConnectionState.RECONNECTING)

            await asyncio.wait_for(connector.stop(), timeout=1.0)

        assert connector.state == ConnectionState.DISCONNECTED


# ========== Request Timeouts ==========
class TestRequestTimeouts:
    """Test per-request timeout and bounded retries."""

    @pytest.mark.asyncio
    async def test_retries_then_abandons(self, open_connector, caplog):
        open_connector.config.request_timeout = 0.01

        await open_connector.request_history("R_10")
        await wait_until(lambda: "R_10" not in open_connector.pending_requests)
        await asyncio.sleep(0.05)

        # Original request plus three retries
        assert len(sent_payloads(open_connector._ws)) == 4
        assert "Failed to get data for R_10 after 3 retries" in caplog.text

    @pytest.mark.asyncio
    async def test_retry_count_carried(self, open_connector):
        open_connector.config.request_timeout = 0.1

        await open_connector.request_history("R_10")
        await wait_until(lambda: len(sent_payloads(open_connector._ws)) == 2)

        assert open_connector.pending_requests["R_10"].retries == 1
        await open_connector._cancel_timers()

    @pytest.mark.asyncio
    async def test_fresh_request_supersedes_pending(self, open_connector):
        await open_connector.request_history("R_10")
        first = open_connector.pending_requests["R_10"]

        await open_connector.request_history("R_10")
        second = open_connector.pending_requests["R_10"]

        assert second is not first
        assert second.retries == 0
        await asyncio.sleep(0)
        assert first.timer.cancelled()

        await open_connector._cancel_timers()

    @pytest.mark.asyncio
    async def test_response_cancels_timeout(self, open_connector):
        await open_connector.request_history("R_10")
        timer = open_connector.pending_requests["R_10"].timer

        await open_connector._process_message(json.dumps(candles_response("R_10", [1.0])))
        await asyncio.sleep(0)

        assert "R_10" not in open_connector.pending_requests
        assert timer.cancelled()

    @pytest.mark.asyncio
    async def test_request_when_closed(self, connector, caplog):
        assert not await connector.request_history("R_10")
        assert "WebSocket not connected" in caplog.text
        assert connector.pending_requests == {}


# ========== Message Processing ==========
class TestMessageProcessing:
    """Test routing of inbound messages."""

    @pytest.mark.asyncio
    async def test_nested_history_candles(self, open_connector, on_candles):
        await open_connector._process_message(json.dumps(history_response("R_10", [1.0, 2.0])))

        symbol, candles = on_candles.await_args.args
        assert symbol == "R_10"
        assert len(candles) == 2

    @pytest.mark.asyncio
    async def test_candles_without_symbol(self, open_connector, on_candles, caplog):
        await open_connector._process_message(json.dumps({"candles": []}))

        on_candles.assert_not_awaited()
        assert "Candle response without symbol" in caplog.text

    @pytest.mark.asyncio
    async def test_tick_dispatched(self, open_connector, on_tick):
        await open_connector._process_message(json.dumps(tick_response("R_10", 6543.21, 1700000000)))

        on_tick.assert_awaited_once_with("R_10", 6543.21, 1700000000)
        await open_connector._cancel_timers()

    @pytest.mark.asyncio
    async def test_api_error_logged(self, open_connector, on_candles, on_tick, caplog):
        await open_connector._process_message(json.dumps(ERROR_RESPONSE))

        assert "API Error: Symbol R_999 is invalid" in caplog.text
        on_candles.assert_not_awaited()
        on_tick.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unexpected_structure(self, open_connector, caplog):
        await open_connector._process_message(json.dumps({"msg_type": "ping", "ping": "pong"}))
        await open_connector._process_message(json.dumps([1, 2, 3]))

        assert caplog.text.count("Unexpected response structure") == 2

    @pytest.mark.asyncio
    async def test_invalid_json(self, open_connector, caplog):
        await open_connector._process_message("{not json")
        assert "Invalid JSON message" in caplog.text

    @pytest.mark.asyncio
    async def test_callback_error_contained(self, open_connector, on_candles, caplog):
        on_candles.side_effect = RuntimeError("handler broke")

        await open_connector._process_message(json.dumps(candles_response("R_10", [1.0])))

        assert "Error in candles callback for R_10: handler broke" in caplog.text


# ========== Tick Throttle ==========
class TestTickThrottle:
    """Test tick-driven history requests."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def throttled(self, open_connector, clock):
        open_connector._clock = clock
        return open_connector

    @pytest.mark.asyncio
    async def test_first_tick_requests_history(self, throttled):
        await throttled._process_message(json.dumps(tick_response("R_10", 1.0)))

        assert [p["ticks_history"] for p in sent_payloads(throttled._ws)] == ["R_10"]
        await throttled._cancel_timers()

    @pytest.mark.asyncio
    async def test_at_most_one_request_per_interval(self, throttled, clock):
        for _ in range(5):
            await throttled._process_message(json.dumps(tick_response("R_10", 1.0)))
            clock.now += 10

        assert len(sent_payloads(throttled._ws)) == 1

        clock.now += 10  # 60s after the first request
        await throttled._process_message(json.dumps(tick_response("R_10", 1.0)))

        assert len(sent_payloads(throttled._ws)) == 2
        await throttled._cancel_timers()

    @pytest.mark.asyncio
    async def test_any_history_request_resets_throttle(self, throttled, clock):
        await throttled.request_history("R_10")
        clock.now += 30

        await throttled._process_message(json.dumps(tick_response("R_10", 1.0)))

        assert len(sent_payloads(throttled._ws)) == 1
        await throttled._cancel_timers()

    @pytest.mark.asyncio
    async def test_untracked_symbol_ignored(self, throttled, on_tick):
        await throttled._process_message(json.dumps(tick_response("R_75", 1.0)))

        on_tick.assert_awaited_once()
        assert sent_payloads(throttled._ws) == []
