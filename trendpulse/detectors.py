"""
TrendPulse Detectors - SMA crossovers and RSI reversal points.

Contains:
- CrossoverDetector: Flags flips in SMA19/50/100 ordering
- ReversalDetector: Registers RSI reversal points, validates them against
  later price movement and scores their historical success
"""

import logging
import math
import time
from typing import List, Optional

from trendpulse.config import (
    CrossDirection,
    ReversalType,
    RSIPoint,
    RSIRevisit,
    SignalValidationRecord,
    SignificantRSIPoint,
    SMACrossover,
    SuccessRate,
    TrendPulseConfig,
)
from trendpulse.state import SymbolStateStore

logger = logging.getLogger("TrendPulse.Detectors")

MIN_REVERSAL_SWING_PCT = 3.0
POINT_UNIQUENESS_RSI = 2.0
REVISIT_TOLERANCE_RSI = 1.5
SUCCESS_TOLERANCE_RSI = 1.5
VALIDATION_MOVE_PCT = 0.5
SMALL_SAMPLE_SIZE = 5


def wilson_lower_bound(successes: int, total: int, z: float = 1.96) -> float:
    """
    Lower bound of the Wilson score interval for a success proportion.

    Args:
        successes: Number of successes
        total: Number of trials
        z: Z-score (1.96 = 95% confidence)

    Returns:
        Lower bound in [0, 1]; 0.0 when there are no trials
    """
    if total <= 0:
        return 0.0

    p = successes / total
    z2 = z * z
    denominator = 1 + z2 / total
    numerator = p + z2 / (2 * total) - z * math.sqrt((p * (1 - p) + z2 / (4 * total)) / total)
    return numerator / denominator


def adjusted_success_rate(successes: int, total: int) -> float:
    """Wilson lower bound, blended toward 0.5 for samples smaller than 5."""
    if total <= 0:
        return 0.5

    rate = wilson_lower_bound(successes, total)
    if total < SMALL_SAMPLE_SIZE:
        rate = (rate * total + 0.5 * (SMALL_SAMPLE_SIZE - total)) / SMALL_SAMPLE_SIZE
    return rate


class CrossoverDetector:
    """
    Detects SMA crossovers for the 19v50, 19v100 and 50v100 pairs.

    The first reliable observation records a baseline only; every later flip
    of a pair's ordering yields exactly one SMACrossover. Alerting on
    crossovers is throttled separately through should_alert/mark_alerted.
    """

    def __init__(self, store: SymbolStateStore, config: Optional[TrendPulseConfig] = None):
        self.store = store
        self.config = config or store.config

    def check(self, symbol: str, now: Optional[float] = None) -> List[SMACrossover]:
        """
        Compare current SMA ordering against the stored flags.

        Args:
            symbol: Symbol
            now: Event timestamp (seconds)

        Returns:
            Crossovers detected on this observation
        """
        now = time.time() if now is None else now
        sma = self.store.get(symbol).sma

        if not sma.is_reliable:
            return []

        current = sma.current_above()

        if not sma.has_baseline:
            states = ", ".join(
                f"SMA{pair.periods[0]}{'>' if above else '<'}SMA{pair.periods[1]}"
                for pair, above in current.items()
            )
            logger.info(f"Initial SMA states for {symbol}: {states}")
            sma.above.update(current)
            return []

        crossovers = []
        for pair, above in current.items():
            if sma.above[pair] == above:
                continue

            fast, slow = pair.periods
            crossover = SMACrossover(
                symbol=symbol,
                pair=pair,
                direction=CrossDirection.CROSS_ABOVE if above else CrossDirection.CROSS_BELOW,
                fast_value=sma.value(fast),
                slow_value=sma.value(slow),
                timestamp=now,
            )
            crossovers.append(crossover)
            logger.info(f"{symbol}: {crossover.message}")

        sma.above.update(current)
        return crossovers

    def should_alert(self, symbol: str, now: Optional[float] = None) -> bool:
        """True if no crossover alert went out for this symbol within the interval."""
        now = time.time() if now is None else now
        last = self.store.get(symbol).sma.last_alert_time
        return last is None or now - last >= self.config.crossover_alert_interval

    def mark_alerted(self, symbol: str, now: Optional[float] = None):
        now = time.time() if now is None else now
        self.store.get(symbol).sma.last_alert_time = now

    def recently_alerted(self, symbol: str, now: Optional[float] = None) -> bool:
        """True if a crossover alert went out within the recent-crossover window."""
        now = time.time() if now is None else now
        last = self.store.get(symbol).sma.last_alert_time
        return last is not None and now - last < self.config.recent_crossover_window


class ReversalDetector:
    """
    Tracks RSI history per symbol and registers significant reversal points.

    Features:
    - Three-point-ahead confirmation of local RSI extremes (>= 3% swing)
    - 2-unit uniqueness rule per reversal type
    - Validation of each signal 30 minutes later against price displacement
    - Wilson-scored historical success rate per RSI level
    - Revisit alerts, throttled per point
    """

    def __init__(self, store: SymbolStateStore, config: Optional[TrendPulseConfig] = None):
        self.store = store
        self.config = config or store.config

    def record_rsi(
        self,
        symbol: str,
        rsi: float,
        price: float,
        now: Optional[float] = None,
    ) -> List[SignificantRSIPoint]:
        """
        Append an RSI observation and look for a confirmed reversal.

        Args:
            symbol: Symbol
            rsi: Current RSI
            price: Current price
            now: Observation timestamp (seconds)

        Returns:
            Newly registered significant points (usually empty)
        """
        now = time.time() if now is None else now
        state = self.store.get(symbol)
        state.rsi_history.append(RSIPoint(rsi=rsi, price=price, timestamp=now))

        registered = []
        history = state.rsi_history
        check_index = len(history) - 3

        if check_index >= 1:
            prev_point = history[check_index - 1]
            point = history[check_index]
            next_point = history[check_index + 1]
            after_point = history[check_index + 2]

            curr = point.rsi
            reversal_type = None

            # RSI went down then up
            if curr < prev_point.rsi and curr < next_point.rsi and next_point.rsi < after_point.rsi:
                swing = (next_point.rsi - curr) / curr * 100 if curr else math.inf
                if swing >= MIN_REVERSAL_SWING_PCT:
                    reversal_type = ReversalType.BOTTOM

            # RSI went up then down
            elif curr > prev_point.rsi and curr > next_point.rsi and next_point.rsi > after_point.rsi:
                swing = (curr - next_point.rsi) / curr * 100
                if swing >= MIN_REVERSAL_SWING_PCT:
                    reversal_type = ReversalType.TOP

            if reversal_type is not None:
                new_point = self._register_point(symbol, reversal_type, point, now)
                if new_point is not None:
                    registered.append(new_point)

        self.validate_past_signals(symbol, now)
        return registered

    def _register_point(
        self,
        symbol: str,
        reversal_type: ReversalType,
        point: RSIPoint,
        now: float,
    ) -> Optional[SignificantRSIPoint]:
        """Register a reversal point unless one of the same type is within 2 units."""
        state = self.store.get(symbol)

        for existing in state.significant_points:
            if existing.type == reversal_type and abs(existing.value - point.rsi) < POINT_UNIQUENESS_RSI:
                return None

        rate = self.success_rate(symbol, point.rsi, reversal_type)
        new_point = SignificantRSIPoint(
            value=point.rsi,
            type=reversal_type,
            timestamp=point.timestamp,
            price=point.price,
        )
        state.significant_points.append(new_point)

        logger.info(
            f"New RSI {reversal_type.value.replace('_', ' ')} detected for {symbol} at "
            f"{point.rsi:.1f} with {rate.successes}/{rate.total} historical success rate"
        )

        self._track_for_validation(symbol, new_point, now)
        return new_point

    def _track_for_validation(self, symbol: str, point: SignificantRSIPoint, now: float):
        ledger = self.store.get(symbol).validation_ledger
        signal_id = f"{point.type.value}_{point.value:.1f}_{int(now * 1000)}"

        ledger[signal_id] = SignalValidationRecord(
            id=signal_id,
            timestamp=now,
            rsi_value=point.value,
            price=point.price,
            type=point.type,
        )

    def validate_past_signals(
        self,
        symbol: str,
        now: Optional[float] = None,
    ) -> List[SignalValidationRecord]:
        """
        Validate signals older than the validation delay against the latest price.

        Bottom reversals succeed on a rise above +0.5%, top reversals on a fall
        below -0.5%. The ledger is then pruned to the most recent validated
        records.

        Args:
            symbol: Symbol
            now: Current timestamp (seconds)

        Returns:
            Records validated by this call
        """
        now = time.time() if now is None else now
        state = self.store.get(symbol)
        current_price = state.rsi_history[-1].price if state.rsi_history else None
        validated = []

        for record in state.validation_ledger.values():
            if current_price is None:
                break
            if record.validated or now - record.timestamp < self.config.validation_delay:
                continue

            price_change = ((current_price - record.price) / record.price) * 100 if record.price else 0.0
            if record.type == ReversalType.BOTTOM:
                successful = price_change > VALIDATION_MOVE_PCT
            else:
                successful = price_change < -VALIDATION_MOVE_PCT

            record.validated = True
            record.successful = successful
            record.validation_timestamp = now
            record.price_change = price_change
            validated.append(record)

            logger.info(
                f"Validated {record.type.value} signal at RSI {record.rsi_value:.1f}: "
                f"{'Successful' if successful else 'Failed'} ({price_change:.2f}% price change)"
            )

        self._prune_ledger(symbol)
        return validated

    def _prune_ledger(self, symbol: str):
        ledger = self.store.get(symbol).validation_ledger
        done = sorted(
            (r for r in ledger.values() if r.validated),
            key=lambda r: r.validation_timestamp,
            reverse=True,
        )
        for record in done[self.config.validation_ledger_size:]:
            del ledger[record.id]

    def success_rate(self, symbol: str, rsi: float, reversal_type: ReversalType) -> SuccessRate:
        """
        Historical success rate for reversals of a type near an RSI level.

        Args:
            symbol: Symbol
            rsi: RSI level of interest
            reversal_type: Reversal type

        Returns:
            SuccessRate (neutral 0.5 when there is no history)
        """
        ledger = self.store.get(symbol).validation_ledger
        similar = [
            r for r in ledger.values()
            if r.validated and r.type == reversal_type and abs(r.rsi_value - rsi) <= SUCCESS_TOLERANCE_RSI
        ]

        total = len(similar)
        successes = sum(1 for r in similar if r.successful)

        return SuccessRate(
            successes=successes,
            total=total,
            raw_rate=successes / total if total else 0.5,
            adjusted_rate=adjusted_success_rate(successes, total),
            confidence=min(1.0, math.sqrt(total) / 5),
        )

    def check_revisits(
        self,
        symbol: str,
        rsi: float,
        now: Optional[float] = None,
    ) -> List[RSIRevisit]:
        """
        Find significant points the live RSI is revisiting.

        Each revisit bumps the point's hit count; a point alerts at most once
        per revisit interval.

        Args:
            symbol: Symbol
            rsi: Current RSI
            now: Current timestamp (seconds)

        Returns:
            Revisits that should be reported
        """
        now = time.time() if now is None else now
        revisits = []

        for point in self.store.get(symbol).significant_points:
            if abs(rsi - point.value) > REVISIT_TOLERANCE_RSI:
                continue

            if point.last_alerted and now - point.last_alerted <= self.config.revisit_alert_interval:
                continue

            point.hit_count += 1
            point.last_alerted = now

            revisits.append(RSIRevisit(
                symbol=symbol,
                point=point,
                current_rsi=rsi,
                success_rate=self.success_rate(symbol, point.value, point.type),
                timestamp=now,
            ))

        if revisits:
            logger.debug(self.describe_points(symbol))

        return revisits

    def describe_points(self, symbol: str) -> str:
        """Table of significant RSI points with hit counts and success rates."""
        points = self.store.get(symbol).significant_points
        if not points:
            return "No significant RSI points to visualize"

        lines = [f"=== Significant RSI Points for {symbol} ===", "Type\tRSI\tHits\tSuccess"]
        for point in points:
            rate = self.success_rate(symbol, point.value, point.type)
            label = "Bottom" if point.type.is_bullish else "Top"
            lines.append(
                f"{label}\t{point.value:.1f}\t{point.hit_count}\t"
                f"{rate.successes}/{rate.total} ({rate.adjusted_rate * 100:.1f}%)"
            )
        return "\n".join(lines)
