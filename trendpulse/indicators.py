"""
TrendPulse Indicators - Technical indicator calculations.

Contains pure functions over a price window:
- calculate_sma / calculate_ema: Moving averages
- calculate_rsi: Relative Strength Index (Wilder smoothing)
- calculate_volatility: ATR normalized by median close
- calculate_adaptive_volatility: Volatility with a shortened period on high prints
- calculate_macd: MACD line and signal line
- calculate_indicators: Bundles everything the trend classifier needs
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from trendpulse.config import Candle, SymbolConfig

logger = logging.getLogger("TrendPulse.Indicators")


@dataclass
class AdaptiveVolatility:
    """Volatility reading with an adaptive lookback."""
    value: float          # raw * scaling factor
    normalized: float     # raw ATR percentage
    change: float         # rate of change vs. one window earlier
    period: int           # effective period used


@dataclass
class PriceStats:
    """Min/max statistics over the analysis window."""
    min: float
    max: float
    range: float
    current: float
    percent_from_low: float


@dataclass
class IndicatorSet:
    """Indicator snapshot for one analysis window."""
    ma_short: Optional[float]
    ma_long: Optional[float]
    ma_very_long: Optional[float]
    rsi: float
    momentum: float
    macd: Optional[float]
    macd_signal: Optional[float]

    def rounded(self) -> Dict[str, Any]:
        """Return a display-friendly snapshot."""
        def _round(value: Optional[float], digits: int) -> Optional[float]:
            return round(value, digits) if value is not None else None

        return {
            "ma_short": _round(self.ma_short, 2),
            "ma_long": _round(self.ma_long, 2),
            "ma_very_long": _round(self.ma_very_long, 2),
            "rsi": _round(self.rsi, 1),
            "momentum": _round(self.momentum, 3),
            "macd": _round(self.macd, 4),
            "macd_signal": _round(self.macd_signal, 4),
        }


def is_clean_price(value: Any) -> bool:
    """True for finite real numbers (bools excluded)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def clean_prices(prices: Sequence[Any]) -> List[float]:
    """
    Drop unparseable or non-finite values from a price sequence.

    Numeric strings (as some feeds send quotes) are accepted.
    """
    cleaned: List[float] = []
    for value in prices:
        if isinstance(value, str):
            try:
                value = float(value)
            except ValueError:
                continue
        if is_clean_price(value):
            cleaned.append(float(value))
    return cleaned


def candles_from_closes(closes: Sequence[float]) -> List[Candle]:
    """Build degenerate candles (high == low == close) from closing prices."""
    return [Candle.from_close(close) for close in closes]


def calculate_sma(prices: Sequence[float], period: int) -> Optional[float]:
    """
    Simple moving average of the last `period` prices.

    Args:
        prices: Price series (oldest first)
        period: Window length

    Returns:
        Average, or None if the window is short or holds invalid values
    """
    if period <= 0 or len(prices) < period:
        return None

    window = list(prices)[-period:]
    if not all(is_clean_price(p) for p in window):
        logger.warning(f"Not enough valid prices for SMA{period} calculation")
        return None

    return sum(window) / period


def calculate_ema(prices: Sequence[float], period: int) -> Optional[float]:
    """
    Exponential moving average seeded with the SMA of the first `period` values.

    Args:
        prices: Price series (oldest first)
        period: EMA period

    Returns:
        EMA value, or None if series is shorter than period
    """
    if period <= 0 or len(prices) < period:
        return None

    k = 2.0 / (period + 1)
    ema = sum(prices[:period]) / period

    for price in prices[period:]:
        ema = (price * k) + (ema * (1 - k))

    return ema


def calculate_rsi(prices: Sequence[float], period: int = 14) -> float:
    """
    Relative Strength Index with Wilder smoothing.

    - RSI > 70: Overbought
    - RSI < 30: Oversold
    - RSI = 50: Neutral (also returned when history is too short)

    Args:
        prices: Price series (oldest first)
        period: Lookback period (default 14)

    Returns:
        RSI in [0, 100]
    """
    if len(prices) <= period:
        return 50.0

    gains = 0.0
    losses = 0.0

    # Initial averages over the first `period` deltas
    for i in range(1, period + 1):
        change = prices[i] - prices[i - 1]
        if change >= 0:
            gains += change
        else:
            losses -= change

    avg_gain = gains / period
    avg_loss = losses / period

    # Wilder's smoothing
    for i in range(period + 1, len(prices)):
        change = prices[i] - prices[i - 1]
        avg_gain = ((avg_gain * (period - 1)) + max(change, 0.0)) / period
        avg_loss = ((avg_loss * (period - 1)) + max(-change, 0.0)) / period

    if avg_loss == 0:
        return 100.0

    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def calculate_true_ranges(candles: Sequence[Candle]) -> List[float]:
    """True range for every candle after the first."""
    true_ranges = []
    for i in range(1, len(candles)):
        current = candles[i]
        prev_close = candles[i - 1].close
        true_ranges.append(max(
            current.high - current.low,
            abs(current.high - prev_close),
            abs(current.low - prev_close),
        ))
    return true_ranges


def calculate_volatility(
    candles: Sequence[Candle],
    period: int = 14,
    use_ema: bool = True,
) -> float:
    """
    ATR-style volatility as a percentage of the median close.

    Args:
        candles: Candles (oldest first); degenerate candles are accepted
        period: ATR period
        use_ema: EMA-smoothed ATR (SMA seed) if True, else simple average

    Returns:
        (ATR / median close of the last `period` candles) * 100,
        0.0 when fewer than period + 1 candles
    """
    if period <= 0 or len(candles) < period + 1:
        return 0.0

    true_ranges = calculate_true_ranges(candles)

    if use_ema:
        multiplier = 2.0 / (period + 1)
        atr = sum(true_ranges[:period]) / period
        for tr in true_ranges[period:]:
            atr = (tr * multiplier) + (atr * (1 - multiplier))
    else:
        atr = sum(true_ranges[-period:]) / period

    recent_closes = sorted(c.close for c in candles[-period:])
    median_price = recent_closes[period // 2]
    if median_price == 0:
        return 0.0

    return (atr / median_price) * 100


def calculate_adaptive_volatility(
    candles: Sequence[Candle],
    period: int = 14,
    threshold: float = 30,
    scaling_factor: float = 100,
) -> AdaptiveVolatility:
    """
    Volatility with a lookback that shortens when the latest close is high.

    Args:
        candles: Candles (oldest first)
        period: Base period
        threshold: Close above which the period shrinks
        scaling_factor: Multiplier applied to the raw value

    Returns:
        AdaptiveVolatility
    """
    if not candles:
        return AdaptiveVolatility(value=0.0, normalized=0.0, change=0.0, period=period)

    effective_period = period
    last_close = candles[-1].close
    if last_close > threshold:
        effective_period = max(5, math.floor(period * threshold / last_close))

    raw = calculate_volatility(candles, effective_period, use_ema=True)

    change = 0.0
    if len(candles) > effective_period * 2:
        earlier = calculate_volatility(candles[:-effective_period], effective_period, use_ema=True)
        if earlier > 0:
            change = raw / earlier - 1

    return AdaptiveVolatility(
        value=raw * scaling_factor,
        normalized=raw,
        change=change,
        period=effective_period,
    )


def calculate_macd(
    prices: Sequence[float],
    short_period: int,
    long_period: int,
    signal_period: int = 9,
) -> tuple:
    """
    MACD line and signal line.

    The MACD series is evaluated on every prefix of `prices` (0 before the long
    EMA exists); the signal is the EMA of its trailing `signal_period` values.

    Returns:
        (macd, signal); either may be None when history is too short
    """
    ema_short = calculate_ema(prices, short_period)
    ema_long = calculate_ema(prices, long_period)
    macd = ema_short - ema_long if ema_short is not None and ema_long is not None else None

    if len(prices) < signal_period:
        return macd, None

    series = []
    for end in range(len(prices) - signal_period + 1, len(prices) + 1):
        if end >= long_period:
            prefix = prices[:end]
            series.append(calculate_ema(prefix, short_period) - calculate_ema(prefix, long_period))
        else:
            series.append(0.0)

    return macd, calculate_ema(series, signal_period)


def calculate_momentum(prices: Sequence[float], lookback: int = 5) -> float:
    """Rate of change: price[t] / price[t - lookback] - 1."""
    if len(prices) <= lookback or prices[-1 - lookback] == 0:
        return 0.0
    return prices[-1] / prices[-1 - lookback] - 1


def calculate_price_stats(prices: Sequence[float]) -> PriceStats:
    """Min, max, range and position of the last price within the range."""
    low = min(prices)
    high = max(prices)
    price_range = high - low
    current = prices[-1]
    percent_from_low = ((current - low) / price_range) * 100 if price_range else 0.0

    return PriceStats(
        min=low,
        max=high,
        range=price_range,
        current=current,
        percent_from_low=percent_from_low,
    )


def calculate_indicators(prices: Sequence[float], config: SymbolConfig) -> IndicatorSet:
    """
    Compute the indicator set used by the trend classifier.

    Args:
        prices: Clean price series (oldest first)
        config: Symbol analysis parameters

    Returns:
        IndicatorSet
    """
    macd, macd_signal = calculate_macd(prices, config.short_period, config.long_period)

    return IndicatorSet(
        ma_short=calculate_ema(prices, config.short_period),
        ma_long=calculate_ema(prices, config.long_period),
        ma_very_long=calculate_ema(prices, config.very_long_period),
        rsi=calculate_rsi(prices, 14),
        momentum=calculate_momentum(prices, 5),
        macd=macd,
        macd_signal=macd_signal,
    )
