"""
Telegram Bot API notification sink.

Posts plain-text messages to a chat through sendMessage. Pacing is the
caller's job (see trendpulse.alerts.AlertDispatcher).
"""

import logging
import os
from typing import Optional

from dotenv import load_dotenv

from connectors.async_http_mixin import AsyncHttpFetcherMixin

load_dotenv()

logger = logging.getLogger("TrendPulse.Telegram")

TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"


class TelegramNotifier(AsyncHttpFetcherMixin):
    """
    Sends messages to a Telegram chat.

    Usage:
        notifier = TelegramNotifier()
        await notifier.send("hello")
        await notifier.close()
    """

    def __init__(
        self,
        bot_token: Optional[str] = None,
        chat_id: Optional[str] = None,
        disable_web_page_preview: bool = False,
    ):
        """
        Initialize notifier.

        Args:
            bot_token: Bot token (default: TELEGRAM_BOT_TOKEN)
            chat_id: Target chat (default: TELEGRAM_CHAT_ID)
            disable_web_page_preview: Suppress link previews
        """
        self.bot_token = bot_token or os.getenv("TELEGRAM_BOT_TOKEN")
        self.chat_id = chat_id or os.getenv("TELEGRAM_CHAT_ID")
        self.disable_web_page_preview = disable_web_page_preview
        self.async_session = None

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    @property
    def api_url(self) -> str:
        return TELEGRAM_API_URL.format(token=self.bot_token)

    async def start(self):
        if self.async_session is None:
            self.async_session = await self._create_async_session()

    async def close(self):
        await self._close_async_session()

    async def send(self, text: str) -> bool:
        """
        Send one message.

        Args:
            text: Message text

        Returns:
            True if Telegram accepted the message
        """
        if not self.enabled:
            logger.warning("Telegram bot token or chat id not configured, dropping message")
            return False

        await self.start()

        payload = {
            "chat_id": self.chat_id,
            "text": text,
            "disable_web_page_preview": self.disable_web_page_preview,
        }
        result = await self._post_json_async(self.api_url, payload, label="Telegram sendMessage")

        if result is None:
            return False

        if not result.get("ok"):
            logger.error(f"Telegram Error: {result.get('description', 'unknown error')}")
            return False

        return True
