"""
Message Sender - Telegram Delivery with Recovery

This module delivers a processed AI answer to a Telegram chat.

Key Features:
- Text, single photo (with caption) and media group delivery
- Caption truncation with a full-text follow-up message
- Declarative recovery policy: error class → one-shot parameter fix
- Fixed fallback message when a content type cannot be delivered
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Type

from AI.error_types import (
    DeliveryError,
    DeliveryFailed,
    DeliveryMarkupError,
    DeliveryReferenceStaleError,
)
from utils.telegram_api import TelegramAPI
from utils.text_processor import strip_markup, validate_markdown

if TYPE_CHECKING:
    from messaging.processor import ProcessedResponse

log = logging.getLogger(__name__)

DEFAULT_FALLBACK_MESSAGE = "😔 Sorry, I'm having a technical problem right now. Please try again in a few minutes."
DEFAULT_SUCCESS_MESSAGE = "✅ *Your request was completed successfully!*"

MARKDOWN = "Markdown"


def drop_parse_mode(params: Dict[str, Any]) -> bool:
    """Disable rich markup, including inside media items. Returns False if nothing changed."""
    changed = params.pop("parse_mode", None) is not None
    for item in params.get("media") or []:
        changed = item.pop("parse_mode", None) is not None or changed
    return changed


def drop_reply_reference(params: Dict[str, Any]) -> bool:
    """Send without replying. Returns False if there was no reference."""
    return params.pop("reply_to_message_id", None) is not None


# Error class → recovery action. Each action is applied at most once per call.
RECOVERY_POLICY: Dict[Type[DeliveryError], Callable[[Dict[str, Any]], bool]] = {
    DeliveryMarkupError: drop_parse_mode,
    DeliveryReferenceStaleError: drop_reply_reference,
}


@dataclass
class DeliveryAttempt:
    """One outbound Bot API call and its outcome."""
    method: str
    params: Dict[str, Any]
    outcome: str


@dataclass
class DeliveryResult:
    """Outcome of DeliveryClient.deliver()."""
    delivered: bool
    fallback_sent: bool = False
    attempts: List[DeliveryAttempt] = field(default_factory=list)


class DeliveryClient:
    """
    Centralized message sending logic for Telegram.

    Example:
        sender = DeliveryClient(api)
        result = await sender.deliver(
            chat_id, processed, reply_to_id=message_id,
            business_connection_id=None
        )
    """

    def __init__(
        self,
        api: TelegramAPI,
        caption_limit: int = 1024,
        media_group_size: int = 10,
        media_delay: float = 0.5,
        fallback_message: str = DEFAULT_FALLBACK_MESSAGE,
        success_message: str = DEFAULT_SUCCESS_MESSAGE
    ):
        self.api = api
        self.caption_limit = caption_limit
        self.media_group_size = max(1, min(media_group_size, 10))
        self.media_delay = media_delay
        self.fallback_message = fallback_message
        self.success_message = success_message

    @staticmethod
    def _recovery_for(error: Exception) -> Optional[Callable[[Dict[str, Any]], bool]]:
        for error_class, action in RECOVERY_POLICY.items():
            if isinstance(error, error_class):
                return action
        return None

    async def _send(self, method: str, params: Dict[str, Any], attempts: List[DeliveryAttempt]) -> Any:
        """
        Call a Bot API method, applying the recovery policy on failures.

        Raises:
            DeliveryError: when no (further) recovery applies
        """
        params = dict(params)
        if "media" in params:
            params["media"] = [dict(item) for item in params["media"]]
        applied = set()

        while True:
            try:
                result = await self.api.call(method, params)
                attempts.append(DeliveryAttempt(method, dict(params), "ok"))
                return result
            except DeliveryError as e:
                attempts.append(DeliveryAttempt(method, dict(params), f"{type(e).__name__}: {e}"))
                recovery = self._recovery_for(e)
                if recovery is None or recovery in applied or not recovery(params):
                    raise
                applied.add(recovery)
                log.warning(f"{method} failed ({type(e).__name__}), retrying with {recovery.__name__}")

    @staticmethod
    def _base_params(
        chat_id: int,
        reply_to_id: Optional[int],
        business_connection_id: Optional[str]
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"chat_id": chat_id}
        if reply_to_id:
            params["reply_to_message_id"] = reply_to_id
        if business_connection_id:
            params["business_connection_id"] = business_connection_id
        return params

    async def _deliver_text(
        self,
        chat_id: int,
        text: str,
        use_markdown: bool,
        reply_to_id: Optional[int],
        business_connection_id: Optional[str],
        attempts: List[DeliveryAttempt]
    ) -> None:
        validation = validate_markdown(text)
        cleaned = validation.cleaned or strip_markup(text).strip() or text

        params = self._base_params(chat_id, reply_to_id, business_connection_id)
        params["text"] = cleaned
        params["disable_web_page_preview"] = True
        if validation.is_valid and use_markdown:
            params["parse_mode"] = MARKDOWN

        await self._send("sendMessage", params, attempts)

    def _caption(self, text: str):
        """Return (caption, follow_up_text). follow_up_text is set when the caption was truncated."""
        if not text:
            return None, None
        if len(text) <= self.caption_limit:
            return text, None
        return text[:self.caption_limit - 3] + "...", text

    async def _send_remaining_images(
        self,
        chat_id: int,
        image_urls: List[str],
        business_connection_id: Optional[str],
        attempts: List[DeliveryAttempt]
    ) -> None:
        """Send extra images in media groups. Failures are logged and skipped."""
        for start in range(0, len(image_urls), self.media_group_size):
            batch = image_urls[start:start + self.media_group_size]
            await asyncio.sleep(self.media_delay)

            params = self._base_params(chat_id, None, business_connection_id)
            try:
                if len(batch) == 1:
                    params["photo"] = batch[0]
                    await self._send("sendPhoto", params, attempts)
                else:
                    params["media"] = [{"type": "photo", "media": url} for url in batch]
                    await self._send("sendMediaGroup", params, attempts)
                log.debug(f"Sent {len(batch)} additional image(s)")
            except Exception as e:
                log.error(f"Failed to send additional images {batch}: {e}")

    async def _deliver_images(
        self,
        chat_id: int,
        processed: 'ProcessedResponse',
        reply_to_id: Optional[int],
        business_connection_id: Optional[str],
        attempts: List[DeliveryAttempt]
    ) -> None:
        caption, follow_up = self._caption(processed.text)

        params = self._base_params(chat_id, reply_to_id, business_connection_id)
        params["photo"] = processed.image_urls[0]
        if caption:
            validation = validate_markdown(caption)
            params["caption"] = validation.cleaned or caption
            if validation.is_valid and processed.use_markdown:
                params["parse_mode"] = MARKDOWN

        try:
            await self._send("sendPhoto", params, attempts)
            log.debug("First image sent successfully")
        except Exception as e:
            if not processed.text:
                raise
            log.error(f"Failed to send first image, sending the text alone: {e}")
            await self._deliver_text(
                chat_id, processed.text, processed.use_markdown,
                reply_to_id, business_connection_id, attempts
            )
            follow_up = None

        await self._send_remaining_images(
            chat_id, processed.image_urls[1:], business_connection_id, attempts
        )

        if follow_up:
            try:
                await self._deliver_text(
                    chat_id, follow_up, processed.use_markdown,
                    None, business_connection_id, attempts
                )
                log.debug("Full text message sent after truncated caption")
            except Exception as e:
                log.error(f"Failed to send full text: {e}")

    async def deliver(
        self,
        chat_id: int,
        processed: 'ProcessedResponse',
        reply_to_id: Optional[int] = None,
        business_connection_id: Optional[str] = None
    ) -> DeliveryResult:
        """
        Deliver a processed answer.

        Args:
            chat_id: Target chat
            processed: Output of ResponseProcessor.process()
            reply_to_id: Message to reply to
            business_connection_id: Business connection the chat belongs to

        Returns:
            DeliveryResult: delivered=False with fallback_sent=True when only the
                            fallback message could be sent

        Raises:
            DeliveryFailed: the content and the fallback message both failed
        """
        attempts: List[DeliveryAttempt] = []

        try:
            if processed.has_images and processed.image_urls:
                log.debug(f"Sending {len(processed.image_urls)} image(s)...")
                await self._deliver_images(chat_id, processed, reply_to_id, business_connection_id, attempts)
            elif processed.text:
                await self._deliver_text(
                    chat_id, processed.text, processed.use_markdown,
                    reply_to_id, business_connection_id, attempts
                )
            else:
                log.debug("No content, sending success acknowledgment")
                await self._deliver_text(
                    chat_id, self.success_message, True,
                    reply_to_id, business_connection_id, attempts
                )
            return DeliveryResult(delivered=True, attempts=attempts)

        except Exception as e:
            log.error(f"Delivery to chat {chat_id} failed, sending fallback message: {e}")

        try:
            await self.send_plain(chat_id, self.fallback_message, business_connection_id, attempts)
            return DeliveryResult(delivered=False, fallback_sent=True, attempts=attempts)
        except Exception as e:
            log.error(f"Fallback message to chat {chat_id} failed: {e}")
            raise DeliveryFailed(f"Could not deliver anything to chat {chat_id}: {e}") from e

    async def send_plain(
        self,
        chat_id: int,
        text: str,
        business_connection_id: Optional[str] = None,
        attempts: Optional[List[DeliveryAttempt]] = None
    ) -> Any:
        """Send text with no markup and no reply reference."""
        params = self._base_params(chat_id, None, business_connection_id)
        params["text"] = text
        return await self._send("sendMessage", params, attempts if attempts is not None else [])
