import pytest
import sys
from pathlib import Path
from unittest.mock import AsyncMock

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

# Import test fixtures and mocks
from tests.mocks.mock_websocket import MockWebSocketServer, create_mock_websocket
from tests.fixtures.market_data import (
    BASE_EPOCH,
    falling_prices,
    flat_prices,
    rising_prices,
)
from trendpulse.config import TrendPulseConfig
from trendpulse.state import SymbolStateStore


# ========== Environment Setup ==========
@pytest.fixture
def clean_env(monkeypatch):
    """Remove every environment variable the config layer reads."""
    for name in (
        "TRENDPULSE_SYMBOLS",
        "DERIV_APP_ID",
        "DERIV_WS_URL",
        "TELEGRAM_BOT_TOKEN",
        "TELEGRAM_CHAT_ID",
        "TRENDPULSE_MAX_RECONNECT_ATTEMPTS",
        "TRENDPULSE_RECONNECT_DELAY",
        "TRENDPULSE_ALERT_RATE_LIMIT_MS",
    ):
        monkeypatch.delenv(name, raising=False)


# ========== Configuration ==========
@pytest.fixture
def test_config():
    """TrendPulseConfig with test-safe values (fast reconnects and timers)."""
    config = TrendPulseConfig(symbols=["R_10", "R_25"])
    # Override for testing
    config.ws_reconnect_delay = 0.001
    config.ws_max_reconnect_delay = 0.01
    config.request_timeout = 5.0
    config.refresh_interval = 60.0
    config.alert_rate_limit_ms = 0

    return config


@pytest.fixture
def store(test_config):
    """Fresh SymbolStateStore."""
    return SymbolStateStore(test_config)


# ========== WebSocket Mocks ==========
@pytest.fixture
def mock_websocket_server():
    """Mock WebSocket that idles until closed."""
    return MockWebSocketServer()


@pytest.fixture
def mock_websocket_factory():
    """Factory to create mock WebSockets on demand."""
    return create_mock_websocket


# ========== Notification Sink ==========
@pytest.fixture
def alert_sink():
    """Async sink that accepts every message."""
    return AsyncMock(return_value=True)


# ========== Market Data Fixtures ==========
@pytest.fixture
def uptrend_prices():
    return rising_prices()


@pytest.fixture
def downtrend_prices():
    return falling_prices()


@pytest.fixture
def range_prices():
    return flat_prices()


@pytest.fixture
def base_epoch():
    return BASE_EPOCH


# ========== Time Control ==========
@pytest.fixture
def frozen_time():
    """
    Freeze time for deterministic tests.

    Usage:
        def test_something(frozen_time):
            frozen_time.tick(60)
    """
    from freezegun import freeze_time
    with freeze_time("2026-01-11 12:00:00") as frozen:
        yield frozen


# ========== Callback Tracking ==========
@pytest.fixture
def callback_tracker():
    """
    Utility to track callback invocations during tests.

    Usage:
        def test_callbacks(callback_tracker):
            core.register_callback('analysis', callback_tracker.track('analysis'))
            # ... trigger event
            assert callback_tracker.was_called('analysis')
    """
    class CallbackTracker:
        def __init__(self):
            self.calls = {}

        def track(self, event_name: str):
            """Create a tracking callback for an event."""
            def callback(*args, **kwargs):
                if event_name not in self.calls:
                    self.calls[event_name] = []
                self.calls[event_name].append((args, kwargs))
            return callback

        def was_called(self, event_name: str) -> bool:
            return event_name in self.calls and len(self.calls[event_name]) > 0

        def call_count(self, event_name: str) -> int:
            return len(self.calls.get(event_name, []))

        def get_calls(self, event_name: str):
            return self.calls.get(event_name, [])

        def reset(self):
            self.calls = {}

    return CallbackTracker()
