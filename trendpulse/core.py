"""
TrendPulse Core - Main orchestrator for the TrendPulse module.

Coordinates:
- DerivConnector for live market data
- SymbolStateStore for per-symbol rolling state
- CrossoverDetector / ReversalDetector for events
- TrendClassifier for trend, signal and confidence
- AlertDispatcher for paced notifications
- Callback system for event-driven updates
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from connectors.deriv import ConnectionState, DerivConnector
from trendpulse.alerts import AlertDispatcher, format_analysis_alert
from trendpulse.config import (
    SMACrossover,
    Trend,
    TrendAnalysis,
    TRENDPULSE_EVENTS,
    TrendPulseConfig,
)
from trendpulse.detectors import CrossoverDetector, ReversalDetector
from trendpulse.indicators import (
    calculate_adaptive_volatility,
    calculate_indicators,
    calculate_price_stats,
    calculate_volatility,
    candles_from_closes,
    clean_prices,
)
from trendpulse.state import SymbolStateStore
from trendpulse.trend import TrendClassifier

logger = logging.getLogger("TrendPulse.Core")


class CallbackManager:
    """Manages event callbacks for TrendPulse events."""

    def __init__(self):
        """Initialize callback manager."""
        self._callbacks: Dict[str, List[Callable]] = {
            event: [] for event in TRENDPULSE_EVENTS
        }

    def register(self, event: str, callback: Callable) -> bool:
        """
        Register a callback for an event.

        Args:
            event: Event name
            callback: Callback function (sync or coroutine)

        Returns:
            True if registered, False if event unknown
        """
        if event not in self._callbacks:
            logger.warning(f"Unknown event: {event}")
            return False

        self._callbacks[event].append(callback)
        return True

    def unregister(self, event: str, callback: Callable) -> bool:
        if event not in self._callbacks:
            return False

        try:
            self._callbacks[event].remove(callback)
            return True
        except ValueError:
            return False

    async def emit(self, event: str, *args, **kwargs):
        """
        Emit an event to all registered callbacks.

        A failing callback is logged and does not affect the others.
        """
        for callback in self._callbacks.get(event, []):
            try:
                if asyncio.iscoroutinefunction(callback):
                    await callback(*args, **kwargs)
                else:
                    callback(*args, **kwargs)
            except Exception as e:
                logger.error(f"Error in callback for {event}: {e}")


def build_message(analysis: TrendAnalysis, rsi: float) -> str:
    """One-line summary of an analysis."""
    symbol = analysis.symbol
    rsi_text = round(rsi)

    if analysis.range_kind == "tight":
        message = f"{symbol} is in a tight range ({analysis.price_range} pips, RSI: {rsi_text})"
    elif analysis.range_kind == "wide":
        message = f"{symbol} is ranging with wider swings ({analysis.price_range} pips, RSI: {rsi_text})"
    else:
        strength = "STRONG " if analysis.confidence >= 0.8 else ""
        message = (
            f"{symbol}: {strength}{analysis.trend.value} "
            f"(Conf: {round(analysis.confidence * 100)}%, RSI: {rsi_text})"
        )

    if analysis.crossovers:
        direction = "bullish" if any(c.direction.is_bullish for c in analysis.crossovers) else "bearish"
        message += f" - SMA {direction} crossover detected!"

    return message


class TrendPulseCore:
    """
    Main TrendPulse orchestrator.

    Usage:
        core = TrendPulseCore(config, sink=notifier.send)
        core.register_callback('analysis', on_analysis)
        await core.start()
        ...
        await core.stop()
    """

    def __init__(
        self,
        config: Optional[TrendPulseConfig] = None,
        sink: Optional[Callable[[str], Awaitable[bool]]] = None,
        connector: Optional[DerivConnector] = None,
    ):
        """
        Initialize TrendPulseCore.

        Args:
            config: TrendPulse configuration
            sink: Notification coroutine; alerts are only published as events when omitted
            connector: Market data connector (created on start if omitted)
        """
        self.config = config or TrendPulseConfig()

        self.store = SymbolStateStore(self.config)
        self.crossover_detector = CrossoverDetector(self.store, self.config)
        self.reversal_detector = ReversalDetector(self.store, self.config)
        self.classifier = TrendClassifier()

        self.dispatcher: Optional[AlertDispatcher] = None
        if sink is not None:
            self.dispatcher = AlertDispatcher(
                sink,
                rate_limit_ms=self.config.alert_rate_limit_ms,
                max_length=self.config.alert_max_length,
            )

        self._callbacks = CallbackManager()
        self._connector = connector
        self._running = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self):
        """Connect to the market data feed."""
        if self._running:
            logger.warning("TrendPulseCore already running")
            return

        self._running = True
        logger.info(f"Starting TrendPulseCore for {', '.join(self.config.symbols)}")

        if self._connector is None:
            self._connector = DerivConnector(config=self.config)

        self._connector.on_candles = self._on_candles
        self._connector.on_tick = self._on_tick
        self._connector.on_connection_status = self._on_connection_status

        await self._connector.start(self.config.symbols)

    async def stop(self):
        """Disconnect and flush nothing further."""
        self._running = False
        logger.info("Stopping TrendPulseCore...")

        if self._connector:
            await self._connector.stop()

        if self.dispatcher:
            await self.dispatcher.stop()

        logger.info("TrendPulseCore stopped")

    @property
    def connection_state(self) -> ConnectionState:
        if self._connector is None:
            return ConnectionState.DISCONNECTED
        return self._connector.state

    def register_callback(self, event: str, callback: Callable) -> bool:
        return self._callbacks.register(event, callback)

    def unregister_callback(self, event: str, callback: Callable) -> bool:
        return self._callbacks.unregister(event, callback)

    async def notify(self, text: str):
        """Send a free-form notification through the dispatcher."""
        if self.dispatcher:
            self.dispatcher.submit(text)
        await self._callbacks.emit('alert', None, text)

    # -------------------------------------------------------------------------
    # Connector callbacks
    # -------------------------------------------------------------------------

    async def _on_candles(self, symbol: str, candles: List[Dict[str, Any]]):
        """Handle a candle history response."""
        closes = [candle.get("close") for candle in candles if isinstance(candle, dict)]
        epochs = [candle.get("epoch") for candle in candles if isinstance(candle, dict)]
        timestamp = epochs[-1] if epochs and isinstance(epochs[-1], (int, float)) else None

        logger.info(f"Received candle update for {symbol} ({len(closes)} candles)")
        await self.process_history(symbol, closes, timestamp=timestamp)

    async def _on_tick(self, symbol: str, quote: float, epoch: Optional[int]):
        logger.debug(f"Tick received for {symbol}: {quote}")

    async def _on_connection_status(self, connected: bool, message: str):
        if connected:
            logger.info(f"Connection status: {message}")
        else:
            logger.warning(f"Connection status: {message}")
        await self._callbacks.emit('connection_status', connected, message)

    # -------------------------------------------------------------------------
    # Analysis
    # -------------------------------------------------------------------------

    async def process_history(
        self,
        symbol: str,
        prices: Sequence[Any],
        timestamp: Optional[float] = None,
        now: Optional[float] = None,
    ) -> TrendAnalysis:
        """
        Analyze a price window, publish events and dispatch an alert if warranted.

        Args:
            symbol: Symbol
            prices: Closing prices (oldest first)
            timestamp: Time of the latest price (defaults to now)
            now: Wall-clock time in seconds (defaults to time.time())

        Returns:
            TrendAnalysis
        """
        analysis, detected = self._analyze(symbol, prices, timestamp=timestamp, now=now)

        await self._callbacks.emit('analysis', analysis)
        for crossover in detected:
            await self._callbacks.emit('crossover', crossover)
        for point in analysis.new_reversal_points:
            await self._callbacks.emit('reversal', symbol, point)
        for revisit in analysis.revisits:
            await self._callbacks.emit('revisit', revisit)

        if analysis.is_actionable:
            text = format_analysis_alert(analysis, self.store.get(symbol).sma)
            logger.debug(self.store.describe_sma_state(symbol))

            if self.dispatcher:
                self.dispatcher.submit(text)
                analysis.alert_sent = True
            await self._callbacks.emit('alert', symbol, text)

        return analysis

    def analyze(
        self,
        symbol: str,
        prices: Sequence[Any],
        timestamp: Optional[float] = None,
        now: Optional[float] = None,
    ) -> TrendAnalysis:
        """
        Run one analysis cycle without publishing events or alerts.

        Symbol state still advances as in process_history: price history, RSI
        history and reversal points are updated, the crossover alert throttle
        is consumed and revisit hit counts are bumped. Use process_history for
        live data so those alerts are not lost.

        Args:
            symbol: Symbol
            prices: Closing prices (oldest first)
            timestamp: Time of the latest price (defaults to now)
            now: Wall-clock time in seconds (defaults to time.time())

        Returns:
            TrendAnalysis; trend UNKNOWN with zero confidence on insufficient data
        """
        analysis, _ = self._analyze(symbol, prices, timestamp=timestamp, now=now)
        return analysis

    def _analyze(
        self,
        symbol: str,
        prices: Sequence[Any],
        timestamp: Optional[float] = None,
        now: Optional[float] = None,
    ) -> Tuple[TrendAnalysis, List[SMACrossover]]:
        now = time.time() if now is None else now
        timestamp = now if timestamp is None else timestamp
        minimum = self.config.min_price_points

        if len(prices) < minimum:
            logger.warning(f"Insufficient data for {symbol}: need at least {minimum} price points")
            return TrendAnalysis(
                symbol=symbol,
                trend=Trend.UNKNOWN,
                confidence=0.0,
                message="Insufficient data for analysis",
                timestamp=now,
            ), []

        cleaned = clean_prices(prices)
        if len(cleaned) < minimum:
            logger.warning(f"Clean data for {symbol} insufficient after filtering: {len(cleaned)} points")
            return TrendAnalysis(
                symbol=symbol,
                trend=Trend.UNKNOWN,
                confidence=0.0,
                message="Data quality issues detected",
                timestamp=now,
            ), []

        config = self.store.config_for(symbol)
        candles = candles_from_closes(cleaned)
        volatility = calculate_volatility(candles, config.volatility_window)
        adaptive = calculate_adaptive_volatility(candles)
        range_threshold = self.store.range_threshold_for(symbol, volatility)

        indicators = calculate_indicators(cleaned, config)
        current_price = cleaned[-1]

        update = self.store.update_price(symbol, current_price, timestamp)
        new_points = []
        detected: List[SMACrossover] = []
        if update.new_minute:
            new_points = self.reversal_detector.record_rsi(symbol, indicators.rsi, current_price, now)
            detected = self.crossover_detector.check(symbol, now)

        alerting: List[SMACrossover] = []
        if detected:
            if self.crossover_detector.should_alert(symbol, now):
                self.crossover_detector.mark_alerted(symbol, now)
                alerting = detected
            else:
                logger.debug(f"Crossover alert for {symbol} suppressed by throttle")

        stats = calculate_price_stats(cleaned)
        result = self.classifier.classify(indicators, config)

        revisits = self.reversal_detector.check_revisits(symbol, indicators.rsi, now)
        sma = self.store.get(symbol).sma
        self.classifier.apply_reversal_revisits(
            result,
            revisits,
            sma,
            volatility=adaptive,
            recent_crossover=self.crossover_detector.recently_alerted(symbol, now),
        )
        self.classifier.apply_crossovers(result, alerting)

        analysis = TrendAnalysis(
            symbol=symbol,
            trend=result.trend,
            confidence=round(result.confidence, 2),
            signal=result.signal,
            price_range=round(stats.range, 2),
            volatility=round(volatility, 4),
            range_threshold=range_threshold,
            range_kind=self.classifier.classify_range(result.trend, stats.range, range_threshold),
            indicators=indicators.rounded(),
            crossovers=alerting,
            revisits=revisits,
            new_reversal_points=new_points,
            timestamp=now,
        )
        analysis.message = build_message(analysis, indicators.rsi)
        logger.info(analysis.message)

        return analysis, detected
