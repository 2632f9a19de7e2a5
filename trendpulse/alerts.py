"""
TrendPulse Alerts - Rate-limited outbound notifications.

Contains:
- AlertDispatcher: Single global gate that paces delivery to a sink
- format_analysis_alert: Plain-text rendering of a TrendAnalysis
"""

import asyncio
import contextlib
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Optional

from trendpulse.config import Signal, TrendAnalysis
from trendpulse.state import SMAState

logger = logging.getLogger("TrendPulse.Alerts")

MAX_MESSAGE_LENGTH = 4000
ELLIPSIS = "..."


def truncate_message(text: str, max_length: int = MAX_MESSAGE_LENGTH) -> str:
    """Cut text to max_length, marking the cut with an ellipsis."""
    if len(text) <= max_length:
        return text
    return text[:max_length - len(ELLIPSIS)] + ELLIPSIS


@dataclass
class AlertQueueItem:
    """Queued payload and the earliest time it may be sent."""
    payload: str
    send_time: float


class AlertDispatcher:
    """
    Serializes and rate-limits outbound notifications.

    Every submission is queued with a send time that keeps at least
    `rate_limit_ms` between consecutive sends. A single drain task delivers
    ready items in arrival order and keeps running while the queue is
    non-empty. A failing sink is logged and never stalls the queue.
    """

    def __init__(
        self,
        sink: Callable[[str], Awaitable[bool]],
        rate_limit_ms: int = 1000,
        max_length: int = MAX_MESSAGE_LENGTH,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize dispatcher.

        Args:
            sink: Coroutine function delivering one message, returning success
            rate_limit_ms: Minimum spacing between sends
            max_length: Maximum payload length
            clock: Monotonic clock in seconds
        """
        self.sink = sink
        self.rate_limit = rate_limit_ms / 1000.0
        self.max_length = max_length
        self._clock = clock

        self._queue: Deque[AlertQueueItem] = deque()
        self._last_sent: Optional[float] = None
        self._drain_task: Optional[asyncio.Task] = None

        self.sent_count = 0
        self.failed_count = 0

    @property
    def pending(self) -> int:
        return len(self._queue)

    def _next_slot(self, now: float) -> float:
        """Earliest send time for a new submission."""
        if self._queue:
            return max(now, self._queue[-1].send_time + self.rate_limit)
        if self._last_sent is None:
            return now
        return max(now, self._last_sent + self.rate_limit)

    def submit(self, text: str) -> AlertQueueItem:
        """
        Queue a message for delivery.

        Args:
            text: Message text (truncated to max_length)

        Returns:
            The queued item
        """
        now = self._clock()
        item = AlertQueueItem(
            payload=truncate_message(text, self.max_length),
            send_time=self._next_slot(now),
        )
        self._queue.append(item)

        if item.send_time > now:
            logger.debug(f"Alert queued, sending in {item.send_time - now:.2f}s ({len(self._queue)} pending)")

        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain())

        return item

    async def _drain(self):
        """Deliver queued items one at a time, honouring the gate."""
        while self._queue:
            now = self._clock()
            ready_at = self._queue[0].send_time
            if self._last_sent is not None:
                ready_at = max(ready_at, self._last_sent + self.rate_limit)

            if ready_at > now:
                await asyncio.sleep(ready_at - now)
                continue

            item = self._queue.popleft()
            await self._deliver(item.payload, now)

    async def _deliver(self, payload: str, now: float):
        self._last_sent = now
        logger.info(f"Sending alert ({len(payload)} chars)")

        try:
            delivered = await self.sink(payload)
        except Exception as e:
            logger.error(f"Alert delivery failed: {e}")
            self.failed_count += 1
            return

        if delivered is False:
            logger.error("Alert delivery failed: sink rejected message")
            self.failed_count += 1
        else:
            self.sent_count += 1

    async def wait_idle(self):
        """Wait until every queued alert has been attempted."""
        while self._drain_task is not None and not self._drain_task.done():
            await asyncio.shield(self._drain_task)

    async def stop(self):
        """Cancel the drain task, dropping anything still queued."""
        if self._queue:
            logger.warning(f"Dropping {len(self._queue)} queued alert(s) on shutdown")
            self._queue.clear()

        if self._drain_task:
            self._drain_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._drain_task
            self._drain_task = None


def _volatility_level(volatility: float) -> str:
    if volatility > 0.05:
        return "High"
    if volatility > 0.02:
        return "Medium"
    return "Low"


def format_analysis_alert(analysis: TrendAnalysis, sma: Optional[SMAState] = None) -> str:
    """
    Render an analysis as a plain-text alert.

    Args:
        analysis: Analysis result
        sma: SMA state of the symbol, for the SMA section

    Returns:
        Alert text
    """
    rsi = analysis.indicators.get("rsi")
    volatility = analysis.volatility or 0.0

    lines = [
        f"{analysis.symbol} | {analysis.trend.value}",
        f"Confidence: {round(analysis.confidence * 100)}% | Range: {analysis.price_range} pips",
        f"RSI: {round(rsi) if rsi is not None else 'N/A'} | "
        f"Volatility: {_volatility_level(volatility)} ({volatility})",
    ]

    if sma is not None:
        lines.append("")
        lines.append(f"SMA Values for {analysis.symbol}")
        for period in (19, 50, 100):
            value = sma.value(period)
            lines.append(f"SMA{period}: {value:.2f}" if value is not None else f"SMA{period}: N/A")
        for pair, above in sma.above.items():
            if above is None:
                continue
            fast, slow = pair.periods
            lines.append(f"SMA{fast} is {'ABOVE' if above else 'BELOW'} SMA{slow}")

    if analysis.revisits:
        lines.append("")
        lines.append("RSI Alerts:")
        for revisit in analysis.revisits:
            history = (
                f"({revisit.success_rate.successes}/{revisit.success_rate.total} historical success)"
                if revisit.success_rate.total > 0
                else "(insufficient historical data)"
            )
            lines.append(f"- {revisit.message} {history}")

    if analysis.crossovers:
        lines.append("")
        lines.append("SMA Crossovers:")
        for crossover in analysis.crossovers:
            lines.append(f"- {crossover.message}")

    if analysis.signal != Signal.NEUTRAL:
        lines.append(f"Signal: {analysis.signal.value}")

    return "\n".join(lines)
