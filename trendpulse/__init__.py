"""
TrendPulse - Streaming trend and reversal alerts for synthetic indices.

Tracks Deriv volatility indices over a live WebSocket session, maintains
rolling per-symbol indicator state, detects SMA crossovers and RSI reversal
points, classifies the trend and sends paced alerts to Telegram.

Usage (standalone):
    python -m trendpulse
    python -m trendpulse --symbols R_10 R_50
    python -m trendpulse --dry-run

Usage (integrated):
    from trendpulse import TrendPulseCore, TrendPulseConfig

    core = TrendPulseCore(config=TrendPulseConfig(symbols=["R_10"]))

    # Register callbacks
    core.register_callback('analysis', my_analysis_handler)
    core.register_callback('alert', my_alert_handler)

    await core.start()
    # ... run your application ...
    await core.stop()
"""

from trendpulse.config import (
    CrossDirection,
    ReversalType,
    Signal,
    SMACrossover,
    SymbolConfig,
    Trend,
    TrendAnalysis,
    TRENDPULSE_EVENTS,
    TrendPulseConfig,
)
from trendpulse.core import TrendPulseCore

__all__ = [
    # Core
    "TrendPulseCore",
    "TrendPulseConfig",
    "SymbolConfig",
    # Data types
    "Trend",
    "Signal",
    "ReversalType",
    "CrossDirection",
    "SMACrossover",
    "TrendAnalysis",
    # Constants
    "TRENDPULSE_EVENTS",
]

__version__ = "0.1.0"
