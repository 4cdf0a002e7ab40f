"""
Telegram Bot API Client

Thin aiohttp wrapper around the Bot API methods the relay uses. Every failed
call is classified into one of the delivery error classes so the message
sender can pick a recovery action:

- DeliveryMarkupError: the Markdown of the text/caption could not be parsed
- DeliveryReferenceStaleError: the message being replied to is gone
- DeliveryFatal: the request was refused (400/403/404), never retried
- DeliveryError (retryable): network failures and other server errors
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

import utils.func as func
from AI.error_types import (
    DeliveryError,
    DeliveryFatal,
    DeliveryMarkupError,
    DeliveryReferenceStaleError,
)

log = logging.getLogger(__name__)

MARKUP_ERROR_MARKERS = (
    "can't parse entities",
    "can't find end of the entity",
    "unsupported start tag",
    "can't parse message text",
)

STALE_REFERENCE_MARKERS = (
    "message to be replied not found",
    "replied message not found",
    "message to reply not found",
)

NO_RETRY_CODES = {400, 403, 404}


def classify_error(method: str, code: Optional[int], description: str) -> DeliveryError:
    """
    Map a Bot API error answer to a delivery error.

    Args:
        method: Bot API method name
        code: error_code of the answer
        description: description of the answer

    Returns:
        DeliveryError subclass instance
    """
    text = (description or "").lower()
    message = f"Telegram API error: {description or 'Unknown error'}"
    kwargs = {"method": method, "code": code, "description": description or ""}

    if code == 400 and any(marker in text for marker in MARKUP_ERROR_MARKERS):
        return DeliveryMarkupError(message, **kwargs)
    if code == 400 and any(marker in text for marker in STALE_REFERENCE_MARKERS):
        return DeliveryReferenceStaleError(message, **kwargs)
    if code in NO_RETRY_CODES:
        return DeliveryFatal(message, **kwargs)
    return DeliveryError(message, retryable=True, **kwargs)


class TelegramAPI:
    """
    Calls Bot API methods for one bot token.

    Example:
        api = TelegramAPI(token)
        await api.call("sendMessage", {"chat_id": chat_id, "text": "Hello!"})
        await api.close()
    """

    def __init__(
        self,
        token: str,
        api_base: str = "https://api.telegram.org",
        timeout: float = 30.0,
        retry_attempts: int = 2,
        retry_delay: float = 1.0,
        user_agent: str = "RelayBot/1.0",
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.token = token
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.user_agent = user_agent
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"User-Agent": self.user_agent}
            )
            self._owns_session = True
        return self._session

    async def _call_once(self, method: str, params: Dict[str, Any]) -> Any:
        url = f"{self.api_base}/bot{self.token}/{method}"

        try:
            async with self._get_session().post(url, json=params) as response:
                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    raise DeliveryError(
                        f"Telegram API returned a non-JSON answer ({response.status})",
                        method=method, code=response.status, retryable=response.status >= 500
                    )
        except asyncio.TimeoutError as e:
            raise DeliveryError(f"Telegram API call {method} timed out", method=method, retryable=True) from e
        except aiohttp.ClientError as e:
            raise DeliveryError(f"Telegram API connection error: {e}", method=method, retryable=True) from e

        if not isinstance(data, dict) or not data.get("ok"):
            data = data if isinstance(data, dict) else {}
            error = classify_error(method, data.get("error_code"), data.get("description", ""))
            log.error(
                "Telegram API Error Details: code=%s description=%s method=%s",
                data.get("error_code"), data.get("description"), method
            )
            raise error

        return data.get("result")

    async def call(self, method: str, params: Dict[str, Any]) -> Any:
        """
        Call a Bot API method, retrying transient failures with backoff.

        Raises:
            DeliveryError: (or a subclass) when the call finally fails
        """
        return await func.retry_with_backoff(
            lambda: self._call_once(method, params),
            max_retries=self.retry_attempts,
            base_delay=self.retry_delay,
            should_retry=lambda e: isinstance(e, DeliveryError) and e.retryable
        )

    async def send_chat_action(
        self,
        chat_id: int,
        action: str = "typing",
        business_connection_id: Optional[str] = None
    ) -> Any:
        """Show a chat action such as "typing" for a few seconds."""
        params: Dict[str, Any] = {"chat_id": chat_id, "action": action}
        if business_connection_id:
            params["business_connection_id"] = business_connection_id
        return await self.call("sendChatAction", params)

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
