import pytest
from aiohttp.test_utils import TestClient, TestServer

from app import TASKS_KEY, create_app
from conftest import FakeAIClient, FakeTelegramAPI
from messaging.pipeline import RelayController


def update_with(key="message", **extra):
    message = {
        "message_id": 7,
        "chat": {"id": 1001, "type": "private"},
        "from": {"id": 42, "first_name": "Ana"},
        "text": "hello",
    }
    message.update(extra)
    return {"update_id": 1, key: message}


@pytest.fixture
async def relay(config):
    """Started test client around the app; the fakes are exposed for assertions."""
    clients = []

    async def start(config=config, controller_class=RelayController):
        api, ai = FakeTelegramAPI(), FakeAIClient()
        controller = controller_class(config, api, ai)
        app = create_app(config, controller)
        client = TestClient(TestServer(app))
        await client.start_server()
        clients.append(client)
        return client, api, ai

    yield start

    for client in clients:
        await client.close()


async def test_message_is_processed(relay):
    client, api, ai = await relay()

    response = await client.post("/webhook", json=update_with())

    assert response.status == 200
    assert await response.json() == {"status": "message_processed"}
    assert ai.calls[0]["query"] == "hello"
    assert api.sent("sendMessage")[0]["text"] == "Hi there"


async def test_business_message_is_processed(relay):
    client, api, ai = await relay()

    response = await client.post(
        "/webhook", json=update_with("business_message", business_connection_id="biz-1")
    )

    assert await response.json() == {"status": "business_message_processed"}
    assert api.sent("sendMessage")[0]["business_connection_id"] == "biz-1"


async def test_business_connection_is_acknowledged(relay):
    client, api, ai = await relay()

    response = await client.post("/webhook", json={"business_connection": {"id": "biz-1"}})

    assert await response.json() == {"status": "business_connection_processed"}
    assert api.calls == []


async def test_other_updates_need_no_action(relay):
    client, api, ai = await relay()

    response = await client.post("/webhook", json=update_with("edited_message"))

    assert await response.json() == {"status": "no_action_needed"}
    assert ai.calls == []


async def test_invalid_body_is_rejected(relay):
    client, api, ai = await relay()

    response = await client.post("/webhook", data="not json")

    assert response.status == 400


async def test_non_object_body_is_rejected(relay):
    client, api, ai = await relay()

    response = await client.post("/webhook", json=[1, 2])

    assert response.status == 400


async def test_empty_update_needs_no_action(relay):
    client, api, ai = await relay()

    response = await client.post("/webhook", json={})

    assert response.status == 200
    assert await response.json() == {"status": "no_action_needed"}
    assert ai.calls == [] and api.calls == []


async def test_missing_credentials(relay, config):
    config.dify_api_token = ""
    client, api, ai = await relay(config)

    response = await client.post("/webhook", json=update_with())

    assert response.status == 500
    assert await response.json() == {
        "error": "Missing environment variables", "missing": ["DIFY_API_TOKEN"]
    }
    assert ai.calls == []


async def test_only_post_is_allowed(relay):
    client, api, ai = await relay()

    response = await client.get("/webhook")

    assert response.status == 405


async def test_unexpected_error_is_still_acknowledged(relay):
    class ExplodingController(RelayController):
        async def handle(self, message):
            raise RuntimeError("bug")

    client, api, ai = await relay(controller_class=ExplodingController)

    response = await client.post("/webhook", json=update_with())

    assert response.status == 200
    assert await response.json() == {"status": "error_handled"}
    assert api.sent("sendMessage")[0]["chat_id"] == 1001


async def test_background_processing_finishes_on_shutdown(relay, config):
    config.background_processing = True
    client, api, ai = await relay(config)

    response = await client.post("/webhook", json=update_with())
    assert await response.json() == {"status": "message_processed"}

    tasks = list(client.app[TASKS_KEY])
    await client.close()

    assert all(task.done() for task in tasks)
    assert api.sent("sendMessage")[0]["text"] == "Hi there"
    assert api.closed and ai.closed


async def test_health(relay):
    client, api, ai = await relay()
    await client.post("/webhook", json=update_with())

    response = await client.get("/health")
    body = await response.json()

    assert response.status == 200
    assert body["status"] == "ok"
    assert body["sessions"]["total_sessions"] == 1
    assert body["sessions"]["sweep_running"] is True
    assert body["rate_limiter"]["tracked_users"] == 1
