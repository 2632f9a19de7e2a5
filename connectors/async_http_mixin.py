"""Async HTTP mixin using aiohttp with aiohttp-retry."""

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp
from aiohttp_retry import ExponentialRetry, RetryClient

logger = logging.getLogger("TrendPulse.AsyncHttpMixin")

DEFAULT_REQUEST_TIMEOUT = 10
DEFAULT_MAX_RETRIES = 3
# POSTs are not idempotent: retry on rate limiting only, never on 5xx
RETRY_STATUSES = {429}


class AsyncHttpFetcherMixin:
    """Async HTTP request/response handling using aiohttp."""

    async_session: Optional[RetryClient] = None

    async def _create_async_session(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> RetryClient:
        """Create aiohttp session wrapped with a retry strategy."""
        timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        connector = aiohttp.TCPConnector(limit=10, limit_per_host=10)

        session = aiohttp.ClientSession(
            timeout=timeout,
            connector=connector,
        )

        retry_options = ExponentialRetry(
            attempts=max_retries,
            statuses=RETRY_STATUSES,
            retry_all_server_errors=False,
        )
        return RetryClient(client_session=session, retry_options=retry_options)

    async def _close_async_session(self):
        if self.async_session is not None:
            await self.async_session.close()
            self.async_session = None

    async def _post_json_async(
        self,
        url: str,
        payload: Dict[str, Any],
        label: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Execute async POST with a JSON body and parse the JSON response.

        Args:
            url: Request URL
            payload: JSON body
            label: Name used in logs instead of the URL (URLs may embed secrets)

        Returns:
            Parsed response body, or None on transport failure or a non-JSON body
        """
        label = label or url
        try:
            async with self.async_session.post(url, json=payload) as response:
                body = await response.json(content_type=None)
                if response.status >= 400:
                    logger.error(f"Request to {label} failed with HTTP {response.status}: {body}")
                return body if isinstance(body, dict) else None
        except aiohttp.ClientError as e:
            logger.error(f"Request to {label} failed: {e}")
            return None
        except ValueError as e:
            logger.error(f"Invalid JSON response from {label}: {e}")
            return None
        except asyncio.TimeoutError:
            logger.error(f"Request to {label} timed out")
            return None
