"""
TrendPulse Standalone Entry Point.

Run with:
    python -m trendpulse
    python -m trendpulse --symbols R_10 R_50
    python -m trendpulse --dry-run --verbose
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from connectors.deriv import ConnectionState
from connectors.telegram import TelegramNotifier
from trendpulse.config import RSIRevisit, SMACrossover, TrendAnalysis, TrendPulseConfig
from trendpulse.core import TrendPulseCore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
)
logger = logging.getLogger("TrendPulse")

STARTUP_MESSAGE = (
    "Bot Started: Volatility Indices Monitor is now active and analyzing market trends."
)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="TrendPulse - Trend and reversal alerts for Deriv volatility indices",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python -m trendpulse
    python -m trendpulse --symbols R_10 R_25
    python -m trendpulse --dry-run --verbose

Environment:
    TELEGRAM_BOT_TOKEN, TELEGRAM_CHAT_ID   Notification target
    DERIV_APP_ID, DERIV_WS_URL             Market data endpoint
    TRENDPULSE_SYMBOLS                     Comma-separated symbols
        """
    )

    parser.add_argument(
        '--symbols', '-s',
        nargs='+',
        default=None,
        help='Symbols to track (default: R_10 R_25 R_50 R_75)'
    )

    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Log alerts instead of sending them to Telegram'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging'
    )

    parser.add_argument(
        '--quiet', '-q',
        action='store_true',
        help='Reduce output (only show alerts and errors)'
    )

    return parser.parse_args(argv)


class TrendPulseApp:
    """Standalone TrendPulse application."""

    def __init__(self, args: argparse.Namespace):
        """
        Initialize TrendPulse app.

        Args:
            args: Parsed command line arguments
        """
        self.args = args
        self.core: Optional[TrendPulseCore] = None
        self.notifier: Optional[TelegramNotifier] = None
        self._shutdown_event = asyncio.Event()

        self.config = TrendPulseConfig.from_env(symbols=args.symbols)

    async def _log_sink(self, text: str) -> bool:
        logger.info(f"[ALERT]\n{text}")
        return True

    async def start(self):
        """Start the TrendPulse application."""
        logger.info("=" * 60)
        logger.info("  TRENDPULSE - Volatility Index Trend Alerts")
        logger.info("=" * 60)
        logger.info(f"Symbols: {', '.join(self.config.symbols)}")
        logger.info("-" * 60)

        sink = self._log_sink
        if not self.args.dry_run:
            self.notifier = TelegramNotifier(
                bot_token=self.config.telegram_bot_token,
                chat_id=self.config.telegram_chat_id,
            )
            if self.notifier.enabled:
                sink = self.notifier.send
            else:
                logger.warning("Telegram not configured, alerts will only be logged")

        self.core = TrendPulseCore(config=self.config, sink=sink)

        self.core.register_callback('analysis', self._on_analysis)
        self.core.register_callback('crossover', self._on_crossover)
        self.core.register_callback('revisit', self._on_revisit)
        self.core.register_callback('connection_status', self._on_connection_status)

        await self.core.notify(STARTUP_MESSAGE)
        await self.core.start()

        await self._shutdown_event.wait()

    async def stop(self):
        """Stop the TrendPulse application."""
        logger.info("Gracefully shutting down...")

        if self.core:
            await self.core.stop()
            self.core = None

        if self.notifier:
            await self.notifier.close()
            self.notifier = None

        self._shutdown_event.set()

    def request_shutdown(self):
        """Request graceful shutdown."""
        asyncio.create_task(self.stop())

    # -------------------------------------------------------------------------
    # Callbacks
    # -------------------------------------------------------------------------

    async def _on_analysis(self, analysis: TrendAnalysis):
        if self.args.quiet:
            return
        print(f"[ANALYSIS] {analysis.message}")

    async def _on_crossover(self, crossover: SMACrossover):
        print(f"[CROSS] {crossover.symbol}: {crossover.message}")

    async def _on_revisit(self, revisit: RSIRevisit):
        print(f"[RSI] {revisit.symbol}: {revisit.message}")

    async def _on_connection_status(self, connected: bool, message: str):
        status = "CONNECTED" if connected else "DISCONNECTED"
        print(f"[STATUS] {status}: {message}")

        # FAILED is terminal, the connector will not retry
        if not connected and self.core and self.core.connection_state == ConnectionState.FAILED:
            logger.error(f"Market data connection failed permanently: {message}")
            self.request_shutdown()


async def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    args = parse_args(argv)

    # Set log level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    elif args.quiet:
        logging.getLogger().setLevel(logging.WARNING)

    app = TrendPulseApp(args)

    # Set up signal handlers
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, app.request_shutdown)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    try:
        await app.start()
    except KeyboardInterrupt:
        pass
    finally:
        await app.stop()


def run():
    """Run the TrendPulse application."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)


if __name__ == "__main__":
    run()
