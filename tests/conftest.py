import asyncio
import copy

import pytest

from AI.base_client import AIResponse, BaseAIClient
from messaging.intake import InboundMessage
from utils.config_manager import RelayConfig


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeTelegramAPI:
    """Records Bot API calls; failures are scripted per method."""

    def __init__(self):
        self.calls = []
        self.chat_actions = []
        self.failures = {}
        self.always_fail = {}
        self.closed = False

    def fail(self, method, *errors):
        self.failures.setdefault(method, []).extend(errors)

    def fail_always(self, method, error):
        self.always_fail[method] = error

    async def call(self, method, params):
        self.calls.append((method, copy.deepcopy(params)))
        if method in self.always_fail:
            raise self.always_fail[method]
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)
        return {"message_id": len(self.calls)}

    async def send_chat_action(self, chat_id, action="typing", business_connection_id=None):
        self.chat_actions.append((chat_id, action, business_connection_id))
        return True

    async def close(self):
        self.closed = True

    def sent(self, method=None):
        return [params for name, params in self.calls if method is None or name == method]

    @property
    def methods(self):
        return [name for name, _ in self.calls]


class FakeAIClient(BaseAIClient):
    provider_name = "Fake"

    def __init__(self, answer="Hi there", conversation_id="abc", delay=0.0, error=None):
        super().__init__()
        self.answer = answer
        self.conversation_id = conversation_id
        self.delay = delay
        self.error = error
        self.calls = []
        self.closed = False

    async def chat(self, query, user, conversation_id=""):
        self.calls.append({"query": query, "user": user, "conversation_id": conversation_id})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return AIResponse(answer=self.answer, conversation_id=self.conversation_id)

    async def close(self):
        self.closed = True


def make_message(
    text="hello",
    user_id=42,
    message_id=7,
    chat_id=1001,
    chat_type="private",
    first_name="Ana",
    business_connection_id=None
):
    return InboundMessage(
        chat_id=chat_id,
        message_id=message_id,
        user_id=user_id,
        first_name=first_name,
        text=text,
        chat_type=chat_type,
        business_connection_id=business_connection_id,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_api():
    return FakeTelegramAPI()


@pytest.fixture
def config():
    return RelayConfig(
        telegram_token="TOKEN",
        dify_api_url="http://dify.local/v1",
        dify_api_token="app-key",
        media_delay=0,
        ai_retry_delay=0,
        delivery_retry_delay=0,
    )
