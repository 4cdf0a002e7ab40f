"""
Relay Pipeline - Main Orchestrator

Ties the messaging components together into one flow per inbound message:
Telegram → Intake → RateLimiter → SessionStore → AI backend → Processor → Sender → Telegram
"""

import asyncio
import logging
from collections import Counter
from enum import Enum
from typing import Any, Dict, Optional, Set, Tuple

from AI.base_client import AIResponse, BaseAIClient
from AI.dify_client import DifyClient
from AI.error_types import InvalidInput, RateLimited, UpstreamError, UpstreamTimeout
from messaging.intake import InboundMessage
from messaging.processor import ResponseProcessor
from messaging.rate_limiter import RateLimiter
from messaging.session_store import SessionStore
from messaging.timing import TypingIndicator
from utils.config_manager import RelayConfig
from utils.message_sender import DeliveryClient
from utils.telegram_api import TelegramAPI
import utils.func as func

log = logging.getLogger(__name__)


class RelayState(Enum):
    """Progress of one inbound message through the relay."""
    ADMITTED = "admitted"
    SESSION_RESOLVED = "session_resolved"
    AWAITING_AI = "awaiting_ai"
    PROCESSED = "processed"
    DELIVERED = "delivered"
    FAILED = "failed"
    REJECTED = "rejected"
    DUPLICATE = "duplicate"


TERMINAL_STATES = (
    RelayState.DELIVERED,
    RelayState.FAILED,
    RelayState.REJECTED,
    RelayState.DUPLICATE,
)


class RelayController:
    """
    Per-message state machine of the relay.

    Example:
        controller = RelayController.from_config(config)
        controller.start()
        state = await controller.handle(message)
        await controller.stop()
    """

    def __init__(
        self,
        config: RelayConfig,
        api: TelegramAPI,
        ai_client: BaseAIClient,
        sessions: Optional[SessionStore] = None,
        rate_limiter: Optional[RateLimiter] = None,
        processor: Optional[ResponseProcessor] = None,
        sender: Optional[DeliveryClient] = None
    ):
        """Initialize the controller with optional component overrides."""
        self.config = config
        self.api = api
        self.ai_client = ai_client
        self.sessions = sessions or SessionStore(
            ttl=config.session_ttl,
            max_sessions=config.max_sessions,
            cleanup_interval=config.cleanup_interval
        )
        self.rate_limiter = rate_limiter or RateLimiter(
            max_requests=config.rate_max_requests,
            window=config.rate_window
        )
        self.processor = processor or ResponseProcessor(
            completion_message=config.messages.completion,
            section_headers=config.section_headers
        )
        self.sender = sender or DeliveryClient(
            api,
            caption_limit=config.caption_limit,
            media_group_size=config.media_group_size,
            media_delay=config.media_delay,
            fallback_message=config.messages.fallback,
            success_message=config.messages.success
        )

        self._inflight: Set[Tuple[int, int]] = set()
        self._outcomes: Counter = Counter()
        self._maintenance_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, config: RelayConfig) -> 'RelayController':
        """Build the controller and its network clients from the configuration."""
        api = TelegramAPI(
            config.telegram_token,
            api_base=config.telegram_api_base,
            timeout=config.telegram_timeout,
            retry_attempts=config.delivery_retry_attempts,
            retry_delay=config.delivery_retry_delay,
            user_agent=config.user_agent
        )
        ai_client = DifyClient(
            config.dify_api_url,
            config.dify_api_token,
            timeout=config.ai_timeout,
            retry_attempts=config.ai_retry_attempts,
            retry_delay=config.ai_retry_delay,
            user_agent=config.user_agent
        )
        return cls(config, api, ai_client)

    async def _maintenance_loop(self) -> None:
        """Drop rate-limit windows of users that went quiet."""
        while True:
            await asyncio.sleep(self.config.cleanup_interval)
            try:
                removed = self.rate_limiter.cleanup()
                log.debug(f"Rate limiter sweep removed {removed} idle users")
            except Exception as e:
                log.error(f"Rate limiter sweep failed: {e}")

    def start(self) -> None:
        """Start background maintenance (inside the running loop)."""
        self.sessions.start()
        if self._maintenance_task is None or self._maintenance_task.done():
            self._maintenance_task = asyncio.create_task(self._maintenance_loop())

    async def stop(self) -> None:
        """Stop background maintenance and close the network clients."""
        task, self._maintenance_task = self._maintenance_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.sessions.stop()
        await self.api.close()
        await self.ai_client.close()

    def build_query(self, message: InboundMessage) -> str:
        """User text capped to the backend limit, wrapped for business chats."""
        text = message.text or ""
        limit = self.config.max_query_length
        if len(text) > limit:
            text = text[:limit] + "..."

        if message.is_business:
            name = message.first_name or self.config.default_business_user_name
            return self.config.business_message_format.format(name=name, message=text)
        return text

    def user_label(self, message: InboundMessage) -> str:
        if message.is_business:
            return message.first_name or self.config.default_business_user_name
        return message.first_name or self.config.default_user_name

    async def ask_backend(self, query: str, user: str, conversation_id: str) -> AIResponse:
        """
        Call the AI backend under the hard deadline.

        Timeouts and backend errors are turned into a synthetic answer with an
        empty continuation token, so the stored session is left untouched.
        """
        messages = self.config.messages
        try:
            response = await asyncio.wait_for(
                self.ai_client.chat(query, user, conversation_id),
                timeout=self.config.ai_timeout
            )
        except (asyncio.TimeoutError, UpstreamTimeout) as e:
            log.error(f"AI backend timed out for user {user}: {e}")
            return AIResponse(answer=messages.timeout, synthetic=True)
        except UpstreamError as e:
            log.error(f"AI backend error for user {user}: {e}")
            return AIResponse(answer=messages.upstream_error, synthetic=True)

        if not response.answer:
            log.warning("AI backend returned no answer")
            return AIResponse(
                answer=messages.not_understood,
                conversation_id=response.conversation_id,
                synthetic=True
            )
        return response

    async def _send_notice(self, message: InboundMessage, text: str) -> None:
        """Best-effort plain text message; errors are logged only."""
        try:
            await self.sender.send_plain(message.chat_id, text, message.business_connection_id)
        except Exception as e:
            log.error(f"Failed to send notice to chat {message.chat_id}: {e}")

    @staticmethod
    def _advance(message: InboundMessage, state: RelayState) -> RelayState:
        log.debug(f"Message {message.message_id}: {state.value}")
        return state

    async def _relay(self, message: InboundMessage) -> RelayState:
        self._advance(message, RelayState.ADMITTED)

        session = self.sessions.get_or_create(message.user_id)
        self._advance(message, RelayState.SESSION_RESOLVED)
        log.debug(
            f"Session for user {message.user_id}: conversation={session.conversation_id or 'new'}"
        )

        query = self.build_query(message)
        typing = TypingIndicator(
            lambda: self.api.send_chat_action(
                message.chat_id, "typing", message.business_connection_id
            ),
            interval=self.config.typing_interval
        )
        async with typing:
            self._advance(message, RelayState.AWAITING_AI)
            response = await self.ask_backend(query, self.user_label(message), session.conversation_id)

        processed = self.processor.process(response.answer)
        self.sessions.update(message.user_id, response.conversation_id)
        self._advance(message, RelayState.PROCESSED)
        log.debug(
            f"Processed answer: {len(processed.image_urls)} images, "
            f"text={func.preview(processed.text)!r}"
        )

        result = await self.sender.deliver(
            message.chat_id,
            processed,
            reply_to_id=message.message_id,
            business_connection_id=message.business_connection_id
        )
        if result.delivered:
            return RelayState.DELIVERED

        # The sender already replaced the content with the fallback message
        log.warning(f"Content for chat {message.chat_id} replaced by the fallback message")
        return RelayState.FAILED

    def _admit(self, message: InboundMessage) -> None:
        """
        Admission checks, in order: identifiers, rate limit, chat eligibility.

        Raises:
            InvalidInput: identifiers missing or the chat is not answered
            RateLimited: the sender exceeded the admission window
        """
        if not message.has_identifiers:
            raise InvalidInput("Missing required message data")
        if not self.rate_limiter.is_allowed(message.user_id):
            raise RateLimited(f"Rate limit exceeded for user {message.user_id}")
        if not message.is_eligible:
            raise InvalidInput(f"Not answering {message.chat_type or 'unknown'} chat {message.chat_id}")

    async def handle(self, message: InboundMessage) -> RelayState:
        """
        Relay one inbound message. Never raises.

        Args:
            message: Parsed inbound message

        Returns:
            RelayState: terminal state reached by the message
        """
        state = await self._handle(message)
        self._outcomes[state.value] += 1
        return state

    async def _handle(self, message: InboundMessage) -> RelayState:
        try:
            self._admit(message)
        except RateLimited as e:
            log.warning(str(e))
            if self.config.rate_limit_notice and message.is_eligible:
                await self._send_notice(message, self.config.rate_limit_notice)
            return RelayState.REJECTED
        except InvalidInput as e:
            log.debug(f"Dropping message {message.message_id}: {e}")
            return RelayState.REJECTED

        key = (message.user_id, message.message_id)
        if self.config.dedupe_inflight:
            if key in self._inflight:
                log.info(f"Message {message.message_id} of user {message.user_id} is already being processed")
                return RelayState.DUPLICATE
            self._inflight.add(key)

        try:
            log.info(f"Relaying message {message.message_id} from user {message.user_id}")
            return await self._relay(message)
        except InvalidInput as e:
            log.warning(f"Dropping message {message.message_id}: {e}")
            return RelayState.REJECTED
        except Exception as e:
            log.error(f"Error handling message {message.message_id}: {e}", exc_info=True)
            await self._send_notice(message, self.config.messages.fallback)
            return RelayState.FAILED
        finally:
            self._inflight.discard(key)

    async def send_error_notice(self, chat_id: Any, business_connection_id: Optional[str] = None) -> None:
        """Last-resort fallback message for errors raised outside handle()."""
        if not chat_id:
            return
        try:
            await self.sender.send_plain(chat_id, self.config.messages.fallback, business_connection_id)
        except Exception as e:
            log.error(f"Failed to send error message: {e}")

    def get_stats(self) -> Dict[str, Any]:
        """Get controller statistics."""
        return {
            "inflight": len(self._inflight),
            "maintenance_running": self._maintenance_task is not None and not self._maintenance_task.done(),
            "outcomes": dict(self._outcomes),
            "sessions": self.sessions.get_stats(),
            "rate_limiter": self.rate_limiter.get_stats(),
        }
