"""
Message Intake - Telegram Update Parsing

Validates an incoming Telegram update and turns its message into an
InboundMessage envelope for the relay pipeline.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

log = logging.getLogger(__name__)

UPDATE_BUSINESS_CONNECTION = "business_connection"
UPDATE_BUSINESS_MESSAGE = "business_message"
UPDATE_MESSAGE = "message"
UPDATE_NONE = "none"


@dataclass
class InboundMessage:
    """One user message received from Telegram."""
    chat_id: Optional[int]
    message_id: Optional[int]
    user_id: Optional[int]
    first_name: str = ""
    text: str = ""
    chat_type: str = ""
    business_connection_id: Optional[str] = None

    @property
    def is_business(self) -> bool:
        return bool(self.business_connection_id)

    @property
    def is_eligible(self) -> bool:
        """Only private chats and business messages are answered."""
        return self.is_business or self.chat_type == "private"

    @property
    def has_identifiers(self) -> bool:
        return bool(self.chat_id and self.message_id and self.user_id)

    @classmethod
    def from_update_message(
        cls,
        message: Dict[str, Any],
        is_business: bool = False,
        media_placeholder: str = "Media message"
    ) -> 'InboundMessage':
        """
        Create from the message object of a Telegram update.

        Args:
            message: "message" or "business_message" object
            is_business: Whether the update came through a business connection
            media_placeholder: Text used when the message has neither text nor caption
        """
        chat = message.get("chat") or {}
        sender = message.get("from") or {}
        return cls(
            chat_id=chat.get("id"),
            message_id=message.get("message_id"),
            user_id=sender.get("id"),
            first_name=sender.get("first_name") or "",
            text=message.get("text") or message.get("caption") or media_placeholder,
            chat_type=chat.get("type") or "",
            business_connection_id=message.get("business_connection_id") if is_business else None,
        )


def parse_update(
    update: Dict[str, Any],
    media_placeholder: str = "Media message"
) -> Tuple[str, Optional[InboundMessage]]:
    """
    Decide what kind of update was received.

    Args:
        update: Decoded JSON body of the webhook call

    Returns:
        Tuple of (update kind, InboundMessage or None)
    """
    if not isinstance(update, dict):
        return UPDATE_NONE, None

    if update.get("business_connection"):
        return UPDATE_BUSINESS_CONNECTION, None

    if isinstance(update.get("business_message"), dict):
        return UPDATE_BUSINESS_MESSAGE, InboundMessage.from_update_message(
            update["business_message"], is_business=True, media_placeholder=media_placeholder
        )

    if isinstance(update.get("message"), dict):
        return UPDATE_MESSAGE, InboundMessage.from_update_message(
            update["message"], media_placeholder=media_placeholder
        )

    log.debug("No action needed for update keys %s", [k for k in update if k != "update_id"])
    return UPDATE_NONE, None


def chat_id_of(update: Dict[str, Any]) -> Optional[int]:
    """Chat id of a message update, for last-resort error replies."""
    if not isinstance(update, dict):
        return None
    for key in (UPDATE_MESSAGE, UPDATE_BUSINESS_MESSAGE):
        message = update.get(key)
        if isinstance(message, dict):
            chat_id = (message.get("chat") or {}).get("id")
            if chat_id:
                return chat_id
    return None
