"""
Deriv WebSocket API Connector.

Provides live market data for synthetic volatility indices:
- Historical 1-minute candles (ticks_history, style=candles)
- Real-time tick subscriptions

Features:
- Auto-reconnect with jittered exponential backoff and an attempt ceiling
- Per-request timeout with bounded retries
- Periodic history refresh as a safety net against stalled subscriptions
- Per-symbol throttle on tick-driven history re-requests
"""

import asyncio
import contextlib
import json
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, Iterable, List, Optional, Set

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidURI

from trendpulse.config import TrendPulseConfig

logger = logging.getLogger("TrendPulse.Deriv")


class ConnectionState(Enum):
    """Lifecycle states of the market data session."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    ERROR = "error"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass
class PendingRequest:
    """An unanswered history request."""
    symbol: str
    timestamp: float
    retries: int = 0
    timer: Optional[asyncio.Task] = None


def reconnect_delay(
    attempt: int,
    base_delay: float = 5.0,
    max_delay: float = 60.0,
    jitter: Optional[float] = None,
) -> float:
    """
    Backoff delay before reconnection attempt `attempt` (1-based).

    delay = min(base * 1.5^(attempt-1) * jitter, max_delay), jitter in [0.85, 1.15]
    """
    if jitter is None:
        jitter = random.uniform(0.85, 1.15)
    return min(base_delay * (1.5 ** (attempt - 1)) * jitter, max_delay)


def build_history_request(symbol: str, count: int = 50, granularity: int = 60) -> Dict[str, Any]:
    """Candle history request for one symbol."""
    return {
        "ticks_history": symbol,
        "adjust_start_time": 1,
        "count": count,
        "end": "latest",
        "granularity": granularity,
        "style": "candles",
    }


def build_tick_subscription(symbol: str) -> Dict[str, Any]:
    return {"ticks": symbol, "subscribe": 1}


class DerivConnector:
    """
    Manages the WebSocket session to the Deriv API.

    Usage:
        connector = DerivConnector(config)
        connector.on_candles = my_candle_handler     # (symbol, candles)
        connector.on_tick = my_tick_handler          # (symbol, quote, epoch)
        await connector.start(["R_10", "R_25"])
        ...
        await connector.stop()
    """

    def __init__(
        self,
        config: Optional[TrendPulseConfig] = None,
        on_candles: Optional[Callable[[str, List[Dict[str, Any]]], Coroutine]] = None,
        on_tick: Optional[Callable[[str, float, Optional[int]], Coroutine]] = None,
        on_connection_status: Optional[Callable[[bool, str], Coroutine]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize connector.

        Args:
            config: TrendPulse configuration
            on_candles: Callback for candle history responses
            on_tick: Callback for live ticks
            on_connection_status: Callback for connection status changes
            clock: Monotonic clock used for request bookkeeping
        """
        self.config = config or TrendPulseConfig()

        self.on_candles = on_candles
        self.on_tick = on_tick
        self.on_connection_status = on_connection_status
        self._clock = clock

        self.state = ConnectionState.DISCONNECTED
        self.shutdown_flag = asyncio.Event()
        self.connection_task: Optional[asyncio.Task] = None

        self._ws: Optional[ClientConnection] = None
        self._symbols: Set[str] = set()
        self._reconnect_attempts = 0
        self._pending: Dict[str, PendingRequest] = {}
        self._last_history_request: Dict[str, float] = {}
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def symbols(self) -> List[str]:
        return sorted(self._symbols)

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def pending_requests(self) -> Dict[str, PendingRequest]:
        return dict(self._pending)

    def _set_state(self, state: ConnectionState):
        if state != self.state:
            logger.debug(f"Connection state: {self.state.value} -> {state.value}")
            self.state = state

    async def _report_status(self, connected: bool, message: str):
        if self.on_connection_status:
            try:
                await self.on_connection_status(connected, message)
            except Exception as e:
                logger.error(f"Error in connection status callback: {e}")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self, symbols: Optional[Iterable[str]] = None):
        """
        Start the session.

        Args:
            symbols: Symbols to track (default: configured symbols)
        """
        if self.connection_task and not self.connection_task.done():
            logger.debug("WebSocket already running")
            return

        self._symbols = set(symbols if symbols is not None else self.config.symbols)
        self._reconnect_attempts = 0
        self.shutdown_flag.clear()
        self.connection_task = asyncio.create_task(self._connect_loop())

    async def stop(self):
        """Stop the session and cancel every timer it owns."""
        self.shutdown_flag.set()

        if self._ws:
            try:
                await self._ws.close()
            except Exception as e:
                logger.debug(f"Error closing WebSocket: {e}")
            finally:
                self._ws = None

        if self.connection_task:
            try:
                await asyncio.wait_for(self.connection_task, timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("WebSocket stop timeout, cancelling task")
                self.connection_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self.connection_task
            finally:
                self.connection_task = None

        await self._cancel_timers()
        self._set_state(ConnectionState.DISCONNECTED)

    async def wait_closed(self):
        """Wait until the connection loop exits (shutdown or permanent failure)."""
        if self.connection_task:
            await asyncio.shield(self.connection_task)

    async def add_symbol(self, symbol: str):
        """Track a new symbol, requesting its history right away when connected."""
        if symbol in self._symbols:
            return
        self._symbols.add(symbol)
        if self.state == ConnectionState.OPEN:
            await self.request_history(symbol)
            await self.subscribe_ticks(symbol)

    async def remove_symbol(self, symbol: str):
        """Stop tracking a symbol; its ticks no longer trigger history requests."""
        self._symbols.discard(symbol)
        pending = self._pending.pop(symbol, None)
        if pending and pending.timer:
            pending.timer.cancel()

    # -------------------------------------------------------------------------
    # Connection loop
    # -------------------------------------------------------------------------

    async def _connect_loop(self):
        """Main connection loop with capped, jittered exponential backoff."""
        max_attempts = self.config.ws_max_reconnect_attempts

        while not self.shutdown_flag.is_set():
            self._set_state(ConnectionState.CONNECTING)
            reason = "Connection closed"

            try:
                await self._connect_and_listen()
                self._set_state(ConnectionState.CLOSED)
            except InvalidURI as e:
                logger.error(f"Invalid WebSocket URI, not retrying: {e}")
                self._set_state(ConnectionState.FAILED)
                await self._report_status(False, f"Invalid URI: {e}")
                break
            except ConnectionClosed as e:
                logger.warning(f"Disconnected from Deriv API: {e}")
                self._set_state(ConnectionState.CLOSED)
                reason = f"Connection closed: {e}"
            except Exception as e:
                logger.error(f"WebSocket error: {e}")
                self._set_state(ConnectionState.ERROR)
                reason = f"Connection error: {e}"
            finally:
                self._ws = None
                await self._cancel_timers()

            if self.shutdown_flag.is_set():
                break

            await self._report_status(False, reason)

            self._reconnect_attempts += 1
            if self._reconnect_attempts > max_attempts:
                logger.error(
                    f"Failed to reconnect after {max_attempts} attempts. "
                    f"Please check network or API status."
                )
                self._set_state(ConnectionState.FAILED)
                await self._report_status(False, "Max reconnection attempts reached")
                break

            delay = reconnect_delay(
                self._reconnect_attempts,
                base_delay=self.config.ws_reconnect_delay,
                max_delay=self.config.ws_max_reconnect_delay,
            )
            self._set_state(ConnectionState.RECONNECTING)
            logger.info(
                f"Reconnection attempt {self._reconnect_attempts}/{max_attempts} in {delay:.1f}s"
            )

            try:
                await asyncio.wait_for(self.shutdown_flag.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    async def _connect_and_listen(self):
        """Connect, subscribe every tracked symbol and process messages."""
        logger.info(f"Connecting to Deriv WebSocket: {self.config.ws_url}")

        async with connect(
            self.config.ws_uri,
            ping_interval=self.config.ws_ping_interval,
            ping_timeout=self.config.ws_ping_timeout,
        ) as ws:
            self._ws = ws
            self._reconnect_attempts = 0
            self._set_state(ConnectionState.OPEN)

            logger.info("Connected to Deriv API")
            await self._report_status(True, "Connected")

            for symbol in self.symbols:
                await self.request_history(symbol)
                await self.subscribe_ticks(symbol)

            self._refresh_task = asyncio.create_task(self._refresh_loop())

            async for message in ws:
                await self._process_message(message)

    async def _refresh_loop(self):
        """Re-request history for all symbols on a fixed interval."""
        while True:
            await asyncio.sleep(self.config.refresh_interval)
            if self.state != ConnectionState.OPEN:
                continue
            logger.debug("Refreshing candle history for all symbols")
            for symbol in self.symbols:
                await self.request_history(symbol)

    async def _cancel_timers(self):
        """Cancel the refresh timer and every pending-request timer."""
        tasks = []
        if self._refresh_task:
            tasks.append(self._refresh_task)
            self._refresh_task = None

        for pending in self._pending.values():
            if pending.timer:
                tasks.append(pending.timer)
        self._pending.clear()

        current = asyncio.current_task()
        for task in tasks:
            if task is current or task.done():
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # -------------------------------------------------------------------------
    # Outbound requests
    # -------------------------------------------------------------------------

    async def _send(self, payload: Dict[str, Any]) -> bool:
        if not self._ws or self.state != ConnectionState.OPEN:
            return False
        await self._ws.send(json.dumps(payload))
        return True

    async def subscribe_ticks(self, symbol: str) -> bool:
        """Subscribe to live ticks for a symbol."""
        try:
            sent = await self._send(build_tick_subscription(symbol))
        except Exception as e:
            logger.error(f"Error subscribing to {symbol}: {e}")
            return False

        if not sent:
            logger.warning(f"Cannot subscribe to {symbol} - WebSocket not connected")
        return sent

    async def request_history(self, symbol: str, retry: bool = False) -> bool:
        """
        Request candle history and arm its timeout.

        A fresh request supersedes any pending one for the symbol; a retry
        carries the pending retry count forward.

        Args:
            symbol: Symbol
            retry: True when re-sent by the timeout handler

        Returns:
            True if the request was sent
        """
        payload = build_history_request(
            symbol,
            count=self.config.history_count,
            granularity=self.config.history_granularity,
        )

        try:
            sent = await self._send(payload)
        except Exception as e:
            logger.error(f"Error requesting candles for {symbol}: {e}")
            return False

        if not sent:
            logger.warning(f"Cannot request candles for {symbol} - WebSocket not connected")
            return False

        now = self._clock()
        self._last_history_request[symbol] = now

        previous = self._pending.get(symbol)
        retries = previous.retries if (retry and previous) else 0
        if previous and previous.timer and previous.timer is not asyncio.current_task():
            previous.timer.cancel()

        pending = PendingRequest(symbol=symbol, timestamp=now, retries=retries)
        pending.timer = asyncio.create_task(self._request_timeout(pending))
        self._pending[symbol] = pending
        return True

    async def _request_timeout(self, pending: PendingRequest):
        """Retry an unanswered request, abandoning it after the retry limit."""
        await asyncio.sleep(self.config.request_timeout)

        symbol = pending.symbol
        if self._pending.get(symbol) is not pending:
            return

        max_retries = self.config.request_max_retries
        if pending.retries < max_retries:
            pending.retries += 1
            logger.warning(f"Request timeout for {symbol}, retrying ({pending.retries}/{max_retries})...")
            await self.request_history(symbol, retry=True)
        else:
            logger.error(f"Failed to get data for {symbol} after {max_retries} retries")
            del self._pending[symbol]

    def _resolve_pending(self, symbol: str):
        pending = self._pending.pop(symbol, None)
        if pending and pending.timer and pending.timer is not asyncio.current_task():
            pending.timer.cancel()

    # -------------------------------------------------------------------------
    # Inbound messages
    # -------------------------------------------------------------------------

    async def _process_message(self, raw_message: str):
        """
        Process an incoming WebSocket message.

        Args:
            raw_message: Raw JSON message string
        """
        try:
            data = json.loads(raw_message)
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON message: {e}")
            return

        if not isinstance(data, dict):
            logger.warning(f"Unexpected response structure: {data}")
            return

        history = data.get("history")
        if isinstance(history, dict) and history.get("candles") is not None:
            await self._handle_candles(data, history["candles"])
        elif data.get("candles") is not None:
            await self._handle_candles(data, data["candles"])
        elif isinstance(data.get("tick"), dict):
            await self._handle_tick(data["tick"])
        elif data.get("error"):
            error = data["error"]
            message = error.get("message", error) if isinstance(error, dict) else error
            logger.error(f"API Error: {message}")
        else:
            logger.warning(f"Unexpected response structure: {data}")

    async def _handle_candles(self, data: Dict[str, Any], candles: Any):
        echo = data.get("echo_req") or {}
        symbol = echo.get("ticks_history")
        if not symbol or not isinstance(candles, list):
            logger.warning(f"Candle response without symbol or candle list: {data}")
            return

        self._resolve_pending(symbol)

        if self.on_candles:
            try:
                await self.on_candles(symbol, candles)
            except Exception as e:
                logger.error(f"Error in candles callback for {symbol}: {e}")

    async def _handle_tick(self, tick: Dict[str, Any]):
        symbol = tick.get("symbol")
        quote = tick.get("quote")
        if not symbol:
            logger.warning(f"Tick without symbol: {tick}")
            return

        if self.on_tick:
            try:
                await self.on_tick(symbol, quote, tick.get("epoch"))
            except Exception as e:
                logger.error(f"Error in tick callback for {symbol}: {e}")

        if symbol not in self._symbols:
            return

        last = self._last_history_request.get(symbol)
        if last is None or self._clock() - last >= self.config.tick_request_interval:
            logger.info(f"Requesting candle update for {symbol}")
            await self.request_history(symbol)
