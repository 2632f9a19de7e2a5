"""Tests for the standalone TrendPulse application."""

import pytest
import asyncio
from unittest.mock import MagicMock, patch
from websockets.exceptions import InvalidURI

from connectors.deriv import ConnectionState
from trendpulse.main import TrendPulseApp, parse_args


@pytest.fixture
def app(clean_env):
    app = TrendPulseApp(parse_args(["--dry-run", "--quiet", "--symbols", "R_10"]))
    app.config.ws_reconnect_delay = 0.001
    app.config.ws_max_reconnect_delay = 0.01
    return app


class TestShutdownOnFailure:
    """The app exits once the market data connection fails for good."""

    @pytest.mark.asyncio
    async def test_invalid_uri_stops_app(self, app):
        with patch("connectors.deriv.connect", side_effect=InvalidURI("bogus://", "bad scheme")) as mock_connect:
            await asyncio.wait_for(app.start(), timeout=2.0)

        assert mock_connect.call_count == 1
        assert app.core is None

    @pytest.mark.asyncio
    async def test_reconnect_ceiling_stops_app(self, app):
        app.config.ws_max_reconnect_attempts = 2

        with patch("connectors.deriv.connect", side_effect=OSError("refused")) as mock_connect:
            await asyncio.wait_for(app.start(), timeout=2.0)

        assert mock_connect.call_count == 3
        assert app.core is None

    @pytest.mark.asyncio
    async def test_transient_disconnect_keeps_running(self, app):
        app.core = MagicMock()
        app.core.connection_state = ConnectionState.CLOSED

        with patch.object(app, "request_shutdown") as request_shutdown:
            await app._on_connection_status(False, "Connection closed: going away")

        request_shutdown.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_state_requests_shutdown(self, app):
        app.core = MagicMock()
        app.core.connection_state = ConnectionState.FAILED

        with patch.object(app, "request_shutdown") as request_shutdown:
            await app._on_connection_status(False, "Invalid URI: bogus://")

        request_shutdown.assert_called_once()
