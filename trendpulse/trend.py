"""
TrendPulse Trend Classifier.

Turns an IndicatorSet into a trend label, a directional signal and a
confidence score, then folds in RSI revisits and SMA crossovers.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from trendpulse.config import (
    ReversalType,
    RSIRevisit,
    Signal,
    SMACrossover,
    SMAPair,
    SymbolConfig,
    Trend,
)
from trendpulse.indicators import AdaptiveVolatility, IndicatorSet
from trendpulse.state import SMAState

logger = logging.getLogger("TrendPulse.Trend")

STRONG_SIGNAL_CONFIDENCE = 0.8
RANGE_CONFIDENCE = 0.3
RANGE_MOMENTUM_LIMIT = 0.0005
MACD_BONUS = 0.1
SMA_ALIGNMENT_CAP = 0.45
HIGH_VOLATILITY_VALUE = 0.05

# Crossover pairs by precedence, longest-term first
CROSSOVER_BOOSTS = (
    (SMAPair.SMA50_100, 0.15, Signal.SMA50_100_BULLISH_CROSS, Signal.SMA50_100_BEARISH_CROSS),
    (SMAPair.SMA19_100, 0.12, Signal.SMA19_100_BULLISH_CROSS, Signal.SMA19_100_BEARISH_CROSS),
    (SMAPair.SMA19_50, 0.08, Signal.SMA19_50_BULLISH_CROSS, Signal.SMA19_50_BEARISH_CROSS),
)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


@dataclass
class TrendResult:
    """Mutable classification result."""
    trend: Trend
    confidence: float
    signal: Signal = Signal.NEUTRAL


def uptrend_confidence(
    ma_diff: float,
    ma_long_diff: float,
    rsi: float,
    momentum: float,
    macd: Optional[float],
    macd_signal: Optional[float],
    threshold: float,
) -> float:
    """
    Weighted uptrend confidence.

    40% MA separation, 20% RSI position (50-70), 20% momentum,
    20% long-term MA alignment, +0.1 when MACD confirms.
    """
    confidence = min(1.0, ma_diff / (threshold * 4)) * 0.4
    confidence += _clamp((rsi - 50) / 20) * 0.2
    confidence += _clamp(momentum * 50) * 0.2
    confidence += (min(1.0, ma_long_diff / (threshold * 2)) if ma_long_diff > 0 else 0.0) * 0.2

    if macd is not None and macd_signal is not None and macd > macd_signal and macd > 0:
        confidence = min(1.0, confidence + MACD_BONUS)

    return confidence


def downtrend_confidence(
    ma_diff: float,
    ma_long_diff: float,
    rsi: float,
    momentum: float,
    macd: Optional[float],
    macd_signal: Optional[float],
    threshold: float,
) -> float:
    """Mirror image of uptrend_confidence."""
    confidence = min(1.0, abs(ma_diff) / (threshold * 4)) * 0.4
    confidence += _clamp((50 - rsi) / 20) * 0.2
    confidence += _clamp(abs(momentum) * 50) * 0.2
    confidence += (min(1.0, abs(ma_long_diff) / (threshold * 2)) if ma_long_diff < 0 else 0.0) * 0.2

    if macd is not None and macd_signal is not None and macd < macd_signal and macd < 0:
        confidence = min(1.0, confidence + MACD_BONUS)

    return confidence


class TrendClassifier:
    """
    Rule-based trend classifier.

    Rules, in order:
    - UPTREND: short MA > long MA > very long MA and momentum > 0
    - DOWNTREND: mirror image
    - RANGE (0.3): flat momentum with RSI between 40 and 60
    - RANGE (0.0): everything else
    """

    def classify(self, indicators: IndicatorSet, config: SymbolConfig) -> TrendResult:
        """
        Classify the trend for one indicator snapshot.

        Args:
            indicators: Indicator snapshot
            config: Symbol analysis parameters

        Returns:
            TrendResult with BUY/SELL only at confidence >= 0.8
        """
        ma_short = indicators.ma_short
        ma_long = indicators.ma_long
        ma_very_long = indicators.ma_very_long
        momentum = indicators.momentum
        rsi = indicators.rsi

        if None in (ma_short, ma_long, ma_very_long):
            return TrendResult(trend=Trend.RANGE, confidence=0.0)

        ma_diff = ma_short - ma_long
        ma_long_diff = ma_long - ma_very_long

        if ma_short > ma_long > ma_very_long and momentum > 0:
            confidence = uptrend_confidence(
                ma_diff, ma_long_diff, rsi, momentum,
                indicators.macd, indicators.macd_signal, config.trend_threshold,
            )
            signal = Signal.BUY if confidence >= STRONG_SIGNAL_CONFIDENCE else Signal.NEUTRAL
            return TrendResult(trend=Trend.UPTREND, confidence=_clamp(confidence), signal=signal)

        if ma_short < ma_long < ma_very_long and momentum < 0:
            confidence = downtrend_confidence(
                ma_diff, ma_long_diff, rsi, momentum,
                indicators.macd, indicators.macd_signal, config.trend_threshold,
            )
            signal = Signal.SELL if confidence >= STRONG_SIGNAL_CONFIDENCE else Signal.NEUTRAL
            return TrendResult(trend=Trend.DOWNTREND, confidence=_clamp(confidence), signal=signal)

        if abs(momentum) < RANGE_MOMENTUM_LIMIT and 40 < rsi < 60:
            return TrendResult(trend=Trend.RANGE, confidence=RANGE_CONFIDENCE)

        return TrendResult(trend=Trend.RANGE, confidence=0.0)

    def sma_alignment_bonus(
        self,
        bullish: bool,
        sma: SMAState,
        volatility: Optional[AdaptiveVolatility] = None,
        recent_crossover: bool = False,
    ) -> float:
        """
        Confidence bonus for SMA structure agreeing with a reversal direction.

        Capped at 0.45; zero until all three SMAs exist.
        """
        if not sma.is_reliable:
            return 0.0

        bonus = 0.0
        if sma.above[SMAPair.SMA19_50] == bullish:
            bonus += 0.1
        if volatility is not None and volatility.value > HIGH_VOLATILITY_VALUE:
            bonus += 0.1
        if sma.above[SMAPair.SMA19_100] == bullish:
            bonus += 0.15
        if sma.above[SMAPair.SMA50_100] == bullish:
            bonus += 0.15

        separation_19_50 = abs(sma.sma19 - sma.sma50) / sma.sma50 if sma.sma50 else 0.0
        separation_19_100 = abs(sma.sma19 - sma.sma100) / sma.sma100 if sma.sma100 else 0.0
        if 0.005 < separation_19_50 < 0.03:
            bonus += 0.05
        if 0.01 < separation_19_100 < 0.05:
            bonus += 0.05

        if recent_crossover:
            bonus += 0.1

        return min(SMA_ALIGNMENT_CAP, bonus)

    def reversal_boost(
        self,
        revisits: List[RSIRevisit],
        bullish: bool,
        sma: SMAState,
        volatility: Optional[AdaptiveVolatility] = None,
        recent_crossover: bool = False,
    ) -> float:
        """Best historical success (weighted by estimate confidence) plus SMA alignment."""
        boost = 0.0
        if revisits:
            best = max(revisits, key=lambda r: r.success_rate.adjusted_rate)
            boost += best.success_rate.adjusted_rate * best.success_rate.confidence * 0.2

        return boost + self.sma_alignment_bonus(bullish, sma, volatility, recent_crossover)

    def apply_reversal_revisits(
        self,
        result: TrendResult,
        revisits: List[RSIRevisit],
        sma: SMAState,
        volatility: Optional[AdaptiveVolatility] = None,
        recent_crossover: bool = False,
    ) -> TrendResult:
        """Override the signal and boost confidence for RSI revisits that agree with the trend."""
        bullish = [r for r in revisits if r.point.type == ReversalType.BOTTOM]
        bearish = [r for r in revisits if r.point.type == ReversalType.TOP]

        if bullish and result.trend != Trend.DOWNTREND:
            result.signal = Signal.RSI_BULLISH_REVERSAL
            boost = self.reversal_boost(bullish, True, sma, volatility, recent_crossover)
            result.confidence = _clamp(result.confidence + boost)
        elif bearish and result.trend != Trend.UPTREND:
            result.signal = Signal.RSI_BEARISH_REVERSAL
            boost = self.reversal_boost(bearish, False, sma, volatility, recent_crossover)
            result.confidence = _clamp(result.confidence + boost)

        return result

    def apply_crossovers(self, result: TrendResult, crossovers: List[SMACrossover]) -> TrendResult:
        """
        Let the longest-term crossover set the signal and push the trend its way.

        Bullish crossovers win over bearish ones on the same observation.
        """
        bullish = {c.pair for c in crossovers if c.direction.is_bullish}
        bearish = {c.pair for c in crossovers if not c.direction.is_bullish}

        pairs = bullish or bearish
        if not pairs:
            return result

        is_bullish = bool(bullish)
        for pair, boost, bullish_signal, bearish_signal in CROSSOVER_BOOSTS:
            if pair in pairs:
                result.signal = bullish_signal if is_bullish else bearish_signal
                result.confidence = _clamp(result.confidence + boost)
                break

        if is_bullish and result.trend != Trend.DOWNTREND:
            result.trend = Trend.UPTREND
        elif not is_bullish and result.trend != Trend.UPTREND:
            result.trend = Trend.DOWNTREND

        return result

    @staticmethod
    def classify_range(trend: Trend, price_range: float, range_threshold: float) -> Optional[str]:
        """'tight' or 'wide' for RANGE results, None otherwise."""
        if trend != Trend.RANGE:
            return None
        return "tight" if price_range <= range_threshold else "wide"
