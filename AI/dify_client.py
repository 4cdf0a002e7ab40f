"""
Dify Client - Chat Messages API

Sends one user query to a Dify application in blocking mode and returns the
answer together with the conversation id Dify assigned.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

import utils.func as func
from AI.base_client import AIResponse, BaseAIClient
from AI.error_types import UpstreamError, UpstreamTimeout

log = logging.getLogger(__name__)


class DifyClient(BaseAIClient):
    """Dify chat-messages client using blocking response mode."""

    provider_name = "Dify"

    def __init__(
        self,
        api_url: str,
        api_token: str,
        timeout: float = 120.0,
        retry_attempts: int = 2,
        retry_delay: float = 1.0,
        user_agent: str = "RelayBot/1.0",
        session: Optional[aiohttp.ClientSession] = None
    ):
        super().__init__()
        self.api_url = api_url.rstrip("/")
        self.api_token = api_token
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.user_agent = user_agent
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        """Create the HTTP session on first use (it must be created inside a running loop)."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"User-Agent": self.user_agent}
            )
            self._owns_session = True
        return self._session

    def build_payload(self, query: str, user: str, conversation_id: str = "") -> Dict[str, Any]:
        """Request body of the chat-messages endpoint."""
        return {
            "inputs": {},
            "query": query,
            "response_mode": "blocking",
            "user": user,
            "conversation_id": conversation_id or "",
            "files": [],
            "auto_generate_name": True,
        }

    async def _post_chat(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Single POST to chat-messages, errors mapped to UpstreamError."""
        url = f"{self.api_url}/chat-messages"
        headers = {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }

        try:
            async with self._get_session().post(url, json=payload, headers=headers) as response:
                log.debug("Dify response status: %s", response.status)

                if response.status != 200:
                    error_text = await response.text()
                    log.error("Dify API error response: %s", func.preview(error_text, 300))
                    raise UpstreamError(
                        f"Dify API error: {response.status} - {func.preview(error_text, 300)}",
                        status=response.status,
                        transient=response.status >= 500 or response.status == 429
                    )

                try:
                    data = await response.json(content_type=None)
                except ValueError as e:
                    raise UpstreamError(f"Dify returned invalid JSON: {e}", status=response.status, transient=False)

        except asyncio.TimeoutError as e:
            raise UpstreamTimeout(f"Dify request timed out after {self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise UpstreamError(f"Dify connection error: {e}", transient=True) from e

        if not isinstance(data, dict):
            raise UpstreamError("Dify returned an unexpected payload", status=200, transient=False)
        return data

    async def chat(self, query: str, user: str, conversation_id: str = "") -> AIResponse:
        """Send the query to Dify, retrying transient failures with backoff."""
        if not self.api_url or not self.api_token:
            raise UpstreamError("Dify API configuration missing", transient=False)

        if not query or not isinstance(query, str):
            raise UpstreamError("Invalid user message", transient=False)

        payload = self.build_payload(query, user, conversation_id)
        log.debug(
            "Sending to Dify: message=%r user=%s conversation=%s",
            func.preview(query), user, conversation_id or "new"
        )

        data = await self.retry_with_backoff(
            lambda: self._post_chat(payload),
            max_retries=self.retry_attempts,
            base_delay=self.retry_delay,
            should_retry=self.is_transient
        )

        log.debug("Dify response preview: %s", func.preview(str(data), 200))
        return AIResponse(
            answer=data.get("answer") or "",
            conversation_id=data.get("conversation_id") or ""
        )

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
