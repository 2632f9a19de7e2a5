"""
TrendPulse Configuration and Data Structures.

Contains all dataclasses, enums, and configuration for the TrendPulse module.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv


class Trend(Enum):
    """Trend labels produced by the classifier."""
    UPTREND = "UPTREND"
    DOWNTREND = "DOWNTREND"
    RANGE = "RANGE"
    UNKNOWN = "UNKNOWN"


class Signal(Enum):
    """Directional signals attached to an analysis."""
    NEUTRAL = "NEUTRAL"
    BUY = "BUY"
    SELL = "SELL"
    RSI_BULLISH_REVERSAL = "RSI_BULLISH_REVERSAL"
    RSI_BEARISH_REVERSAL = "RSI_BEARISH_REVERSAL"
    SMA19_50_BULLISH_CROSS = "SMA19_50_BULLISH_CROSS"
    SMA19_100_BULLISH_CROSS = "SMA19_100_BULLISH_CROSS"
    SMA50_100_BULLISH_CROSS = "SMA50_100_BULLISH_CROSS"
    SMA19_50_BEARISH_CROSS = "SMA19_50_BEARISH_CROSS"
    SMA19_100_BEARISH_CROSS = "SMA19_100_BEARISH_CROSS"
    SMA50_100_BEARISH_CROSS = "SMA50_100_BEARISH_CROSS"


class ReversalType(Enum):
    """RSI reversal point types."""
    BOTTOM = "bottom_reversal"   # RSI dipped then turned up (bullish)
    TOP = "top_reversal"         # RSI peaked then turned down (bearish)

    @property
    def is_bullish(self) -> bool:
        return self is ReversalType.BOTTOM


class CrossDirection(Enum):
    """Direction of an SMA crossover."""
    CROSS_ABOVE = "CROSS_ABOVE"
    CROSS_BELOW = "CROSS_BELOW"

    @property
    def is_bullish(self) -> bool:
        return self is CrossDirection.CROSS_ABOVE


class SMAPair(Enum):
    """Moving average pairs watched for crossovers."""
    SMA19_50 = "19v50"
    SMA19_100 = "19v100"
    SMA50_100 = "50v100"

    @property
    def periods(self) -> tuple:
        """Return (fast, slow) periods of the pair."""
        mapping = {
            "19v50": (19, 50),
            "19v100": (19, 100),
            "50v100": (50, 100),
        }
        return mapping[self.value]


@dataclass(frozen=True)
class Candle:
    """Immutable OHLC candle."""
    close: float
    high: float
    low: float
    open: Optional[float] = None
    epoch: Optional[int] = None      # UNIX timestamp (start of candle)

    @classmethod
    def from_close(cls, close: float, epoch: Optional[int] = None) -> "Candle":
        """Degenerate candle with high == low == close."""
        return cls(close=close, high=close, low=close, open=close, epoch=epoch)


@dataclass(frozen=True)
class SymbolConfig:
    """Immutable per-symbol analysis parameters."""
    short_period: int = 5
    long_period: int = 20
    very_long_period: int = 50
    trend_threshold: float = 0.0008
    strong_trend_threshold: float = 0.002
    volatility_window: int = 14
    range_threshold: Optional[float] = None


DEFAULT_SYMBOL_CONFIG = SymbolConfig()

# Range thresholds in pips
RANGE_THRESHOLDS: Dict[str, float] = {
    "R_10": 3,
    "R_25": 5,
    "R_50": 7,
    "R_75": 10,
    "R_100": 15,
    "RDBEAR": 6,
    "RDBULL": 6,
}

SYMBOL_CONFIGS: Dict[str, SymbolConfig] = {
    "R_10": SymbolConfig(short_period=5, long_period=15, trend_threshold=0.0006,
                         range_threshold=RANGE_THRESHOLDS["R_10"]),
    "R_25": SymbolConfig(short_period=6, long_period=18, trend_threshold=0.0007,
                         range_threshold=RANGE_THRESHOLDS["R_25"]),
    "R_50": SymbolConfig(short_period=8, long_period=21, trend_threshold=0.0008,
                         range_threshold=RANGE_THRESHOLDS["R_50"]),
    "R_75": SymbolConfig(short_period=8, long_period=21, trend_threshold=0.001,
                         range_threshold=RANGE_THRESHOLDS["R_75"]),
    "R_100": SymbolConfig(short_period=10, long_period=25, trend_threshold=0.0012,
                          range_threshold=RANGE_THRESHOLDS["R_100"]),
    "RDBEAR": SymbolConfig(short_period=5, long_period=15, trend_threshold=0.0008,
                           range_threshold=RANGE_THRESHOLDS["RDBEAR"]),
    "RDBULL": SymbolConfig(short_period=5, long_period=15, trend_threshold=0.0008,
                           range_threshold=RANGE_THRESHOLDS["RDBULL"]),
}

DEFAULT_SYMBOLS: List[str] = ["R_10", "R_25", "R_50", "R_75"]


@dataclass
class RSIPoint:
    """One RSI observation recorded on a new minute bucket."""
    rsi: float
    price: float
    timestamp: float


@dataclass
class SignificantRSIPoint:
    """A confirmed RSI reversal level that is watched for revisits."""
    value: float
    type: ReversalType
    timestamp: float
    price: float
    hit_count: int = 1
    last_alerted: float = 0.0    # 0 = never alerted


@dataclass
class SignalValidationRecord:
    """Tracks whether a reversal signal was later confirmed by price."""
    id: str
    timestamp: float
    rsi_value: float
    price: float
    type: ReversalType
    validated: bool = False
    successful: Optional[bool] = None
    validation_timestamp: Optional[float] = None
    price_change: Optional[float] = None


@dataclass
class SuccessRate:
    """Historical success estimate for a reversal type at an RSI level."""
    successes: int = 0
    total: int = 0
    raw_rate: float = 0.5
    adjusted_rate: float = 0.5
    confidence: float = 0.0


@dataclass
class SMACrossover:
    """A flip in the relative ordering of two SMAs."""
    symbol: str
    pair: SMAPair
    direction: CrossDirection
    fast_value: float
    slow_value: float
    timestamp: float

    @property
    def message(self) -> str:
        fast, slow = self.pair.periods
        verb = "crossed above" if self.direction.is_bullish else "crossed below"
        return f"SMA{fast} {verb} SMA{slow}"


@dataclass
class RSIRevisit:
    """Live RSI re-entered the neighbourhood of a significant point."""
    symbol: str
    point: SignificantRSIPoint
    current_rsi: float
    success_rate: SuccessRate
    timestamp: float

    @property
    def message(self) -> str:
        side = "bullish" if self.point.type.is_bullish else "bearish"
        rate = self.success_rate
        return (
            f"RSI revisiting {side} reversal point at {self.point.value:.1f} "
            f"(hit count: {self.point.hit_count}, historical success: "
            f"{rate.successes}/{rate.total}, adjusted: {rate.adjusted_rate * 100:.1f}%)"
        )


@dataclass
class TrendAnalysis:
    """Result of one analysis cycle for a symbol."""
    symbol: str
    trend: Trend
    confidence: float
    signal: Signal = Signal.NEUTRAL
    message: str = ""
    price_range: Optional[float] = None
    volatility: Optional[float] = None
    range_threshold: Optional[float] = None
    range_kind: Optional[str] = None      # "tight" / "wide" when RANGE
    indicators: Dict[str, Any] = field(default_factory=dict)
    crossovers: List[SMACrossover] = field(default_factory=list)
    revisits: List[RSIRevisit] = field(default_factory=list)
    new_reversal_points: List[SignificantRSIPoint] = field(default_factory=list)
    alert_sent: bool = False
    timestamp: float = 0.0

    @property
    def is_actionable(self) -> bool:
        """True when this analysis warrants an outbound alert."""
        if self.trend == Trend.UNKNOWN:
            return False
        return (
            self.trend == Trend.RANGE
            or self.signal != Signal.NEUTRAL
            or bool(self.revisits)
            or bool(self.crossovers)
        )


@dataclass
class TrendPulseConfig:
    """Main configuration for TrendPulse."""

    # Instruments
    symbols: List[str] = field(default_factory=lambda: list(DEFAULT_SYMBOLS))
    symbol_configs: Dict[str, SymbolConfig] = field(default_factory=lambda: dict(SYMBOL_CONFIGS))

    # Market data endpoint
    app_id: str = "69223"
    ws_url: str = "wss://ws.derivws.com/websockets/v3"

    # WebSocket settings
    ws_reconnect_delay: float = 5.0          # seconds, base of the backoff
    ws_max_reconnect_delay: float = 60.0
    ws_max_reconnect_attempts: int = 10
    ws_ping_interval: int = 20
    ws_ping_timeout: int = 10

    # History requests
    history_count: int = 50
    history_granularity: int = 60
    request_timeout: float = 10.0
    request_max_retries: int = 3
    refresh_interval: float = 60.0
    tick_request_interval: float = 60.0

    # Analysis
    min_price_points: int = 50
    price_buffer_size: int = 110             # longest SMA + 10
    rsi_history_size: int = 200
    validation_delay: float = 30 * 60
    validation_ledger_size: int = 100
    revisit_alert_interval: float = 2 * 3600
    crossover_alert_interval: float = 3600
    recent_crossover_window: float = 3 * 60

    # Alerts
    alert_rate_limit_ms: int = 1000
    alert_max_length: int = 4000
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    @property
    def ws_uri(self) -> str:
        """Return endpoint URI including the app id."""
        if "app_id=" in self.ws_url:
            return self.ws_url
        return f"{self.ws_url}?app_id={self.app_id}"

    def config_for(self, symbol: str) -> SymbolConfig:
        """Look up analysis parameters for a symbol, falling back to defaults."""
        return self.symbol_configs.get(symbol, DEFAULT_SYMBOL_CONFIG)

    @classmethod
    def from_env(cls, **overrides) -> "TrendPulseConfig":
        """
        Build configuration from environment variables (.env supported).

        Args:
            **overrides: Explicit values that win over the environment

        Returns:
            TrendPulseConfig instance
        """
        load_dotenv()
        values: Dict[str, Any] = {}

        symbols = os.getenv("TRENDPULSE_SYMBOLS")
        if symbols:
            values["symbols"] = [s.strip() for s in symbols.split(",") if s.strip()]

        if os.getenv("DERIV_APP_ID"):
            values["app_id"] = os.getenv("DERIV_APP_ID")
        if os.getenv("DERIV_WS_URL"):
            values["ws_url"] = os.getenv("DERIV_WS_URL")

        values["telegram_bot_token"] = os.getenv("TELEGRAM_BOT_TOKEN")
        values["telegram_chat_id"] = os.getenv("TELEGRAM_CHAT_ID")

        if os.getenv("TRENDPULSE_MAX_RECONNECT_ATTEMPTS"):
            values["ws_max_reconnect_attempts"] = int(os.getenv("TRENDPULSE_MAX_RECONNECT_ATTEMPTS"))
        if os.getenv("TRENDPULSE_RECONNECT_DELAY"):
            values["ws_reconnect_delay"] = float(os.getenv("TRENDPULSE_RECONNECT_DELAY"))
        if os.getenv("TRENDPULSE_ALERT_RATE_LIMIT_MS"):
            values["alert_rate_limit_ms"] = int(os.getenv("TRENDPULSE_ALERT_RATE_LIMIT_MS"))

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


# Event types for callbacks
TRENDPULSE_EVENTS: tuple = (
    'analysis',           # (analysis: TrendAnalysis)
    'crossover',          # (crossover: SMACrossover)
    'reversal',           # (symbol: str, point: SignificantRSIPoint)
    'revisit',            # (revisit: RSIRevisit)
    'alert',              # (symbol: str, text: str)
    'connection_status',  # (connected: bool, message: str)
)
