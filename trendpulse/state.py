"""
TrendPulse State - Per-symbol rolling state.

Each tracked symbol owns:
- A minute-bucketed price buffer feeding SMA19/50/100
- The SMA crossing flags used by the crossover detector
- RSI history, significant RSI points and the signal validation ledger
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Tuple

from trendpulse.config import (
    RSIPoint,
    SignalValidationRecord,
    SignificantRSIPoint,
    SMAPair,
    SymbolConfig,
    TrendPulseConfig,
)
from trendpulse.indicators import calculate_sma

logger = logging.getLogger("TrendPulse.State")

SMA_PERIODS = (19, 50, 100)


def floor_to_minute(timestamp: float) -> int:
    """Floor a UNIX timestamp (seconds) to the start of its minute."""
    return int(timestamp // 60) * 60


@dataclass
class SMAState:
    """SMA triplet plus crossing flags (None = unknown, True = fast above slow)."""
    sma19: Optional[float] = None
    sma50: Optional[float] = None
    sma100: Optional[float] = None
    above: Dict[SMAPair, Optional[bool]] = field(
        default_factory=lambda: {pair: None for pair in SMAPair}
    )
    last_alert_time: Optional[float] = None     # last crossover alert, None = never

    @property
    def is_reliable(self) -> bool:
        """All three SMAs are populated."""
        return None not in (self.sma19, self.sma50, self.sma100)

    @property
    def has_baseline(self) -> bool:
        return any(flag is not None for flag in self.above.values())

    def value(self, period: int) -> Optional[float]:
        return {19: self.sma19, 50: self.sma50, 100: self.sma100}[period]

    def current_above(self) -> Dict[SMAPair, bool]:
        """Current fast-above-slow booleans; requires a reliable state."""
        return {
            pair: self.value(pair.periods[0]) > self.value(pair.periods[1])
            for pair in SMAPair
        }


@dataclass
class PriceUpdate:
    """Outcome of feeding one price into the store."""
    symbol: str
    minute: int
    new_minute: bool
    missed_minutes: int = 0
    stale: bool = False


@dataclass
class SymbolState:
    """All rolling state owned by one symbol."""
    symbol: str
    prices: Deque[Tuple[int, float]]
    rsi_history: Deque[RSIPoint]
    sma: SMAState = field(default_factory=SMAState)
    last_minute: Optional[int] = None
    significant_points: List[SignificantRSIPoint] = field(default_factory=list)
    validation_ledger: Dict[str, SignalValidationRecord] = field(default_factory=dict)

    @property
    def price_values(self) -> List[float]:
        return [price for _, price in self.prices]

    @property
    def latest_price(self) -> Optional[float]:
        return self.prices[-1][1] if self.prices else None


class SymbolStateStore:
    """
    Single state store keyed by symbol.

    Features:
    - Lazy per-symbol initialization
    - Fixed-size deque buffers
    - Minute-granular price updates (same minute overwrites in place)
    """

    def __init__(self, config: Optional[TrendPulseConfig] = None):
        """
        Initialize state store.

        Args:
            config: TrendPulse configuration
        """
        self.config = config or TrendPulseConfig()
        self._states: Dict[str, SymbolState] = {}

    def get(self, symbol: str) -> SymbolState:
        """Get state for a symbol, creating it on first access."""
        state = self._states.get(symbol)
        if state is None:
            state = SymbolState(
                symbol=symbol,
                prices=deque(maxlen=self.config.price_buffer_size),
                rsi_history=deque(maxlen=self.config.rsi_history_size),
            )
            self._states[symbol] = state
        return state

    def symbols(self) -> List[str]:
        return list(self._states.keys())

    def reset(self, symbol: Optional[str] = None):
        """Drop state for one symbol, or all symbols."""
        if symbol is None:
            self._states.clear()
        else:
            self._states.pop(symbol, None)

    def config_for(self, symbol: str) -> SymbolConfig:
        return self.config.config_for(symbol)

    def range_threshold_for(self, symbol: str, volatility: float) -> float:
        """
        Range threshold from the symbol table, else derived from volatility.

        Args:
            symbol: Symbol
            volatility: Current normalized volatility

        Returns:
            Threshold in price units
        """
        configured = self.config_for(symbol).range_threshold
        if configured:
            return configured

        factor = 1.2 if symbol.startswith("R_") else 1.0
        return max(0.0008, volatility * factor)

    def update_price(self, symbol: str, price: float, timestamp: float) -> PriceUpdate:
        """
        Feed one price observation.

        A new minute appends a sample and recomputes the SMAs; the same minute
        overwrites the last sample only. Minutes older than the last stored one
        are ignored.

        Args:
            symbol: Symbol
            price: Latest price
            timestamp: UNIX timestamp in seconds

        Returns:
            PriceUpdate describing what happened
        """
        state = self.get(symbol)
        minute = floor_to_minute(timestamp)

        if state.last_minute is not None and minute < state.last_minute:
            logger.debug(f"Ignoring stale price for {symbol} at minute {minute}")
            return PriceUpdate(symbol=symbol, minute=minute, new_minute=False, stale=True)

        if minute == state.last_minute:
            if state.prices:
                state.prices[-1] = (minute, price)
            return PriceUpdate(symbol=symbol, minute=minute, new_minute=False)

        missed = 0
        if state.last_minute is not None:
            gap = minute - state.last_minute
            if gap > 60:
                missed = gap // 60 - 1
                logger.warning(
                    f"Missing {missed} minute(s) of data for {symbol}. "
                    f"SMA calculations may be affected."
                )

        state.prices.append((minute, price))
        state.last_minute = minute
        self._recompute_smas(state)

        return PriceUpdate(symbol=symbol, minute=minute, new_minute=True, missed_minutes=missed)

    def _recompute_smas(self, state: SymbolState):
        """Recompute the SMA triplet for whichever windows are full."""
        values = state.price_values
        if len(values) >= 19:
            state.sma.sma19 = calculate_sma(values, 19)
        if len(values) >= 50:
            state.sma.sma50 = calculate_sma(values, 50)
        if len(values) >= 100:
            state.sma.sma100 = calculate_sma(values, 100)

    def describe_sma_state(self, symbol: str) -> str:
        """Human-readable SMA summary for a symbol."""
        if symbol not in self._states:
            return "No SMA data available"

        sma = self._states[symbol].sma
        lines = [f"=== SMA Values for {symbol} ==="]
        for period in SMA_PERIODS:
            value = sma.value(period)
            lines.append(f"SMA{period}: {value:.2f}" if value is not None else f"SMA{period}: N/A")

        for pair, above in sma.above.items():
            if above is None:
                continue
            fast, slow = pair.periods
            lines.append(f"SMA{fast} is {'ABOVE' if above else 'BELOW'} SMA{slow}")

        return "\n".join(lines)
