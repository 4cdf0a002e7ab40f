import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from AI.dify_client import DifyClient
from AI.error_types import UpstreamError, UpstreamTimeout


@pytest.fixture
async def dify():
    """In-process chat-messages stand-in; answers are queued in state["responses"]."""
    state = {"responses": [], "requests": [], "delay": 0}

    async def handler(request):
        state["requests"].append({
            "path": request.path,
            "auth": request.headers.get("Authorization"),
            "body": await request.json(),
        })
        if state["delay"]:
            await asyncio.sleep(state["delay"])
        if state["responses"]:
            status, payload = state["responses"].pop(0)
        else:
            status, payload = 200, {"answer": "Hi there", "conversation_id": "abc"}
        if isinstance(payload, str):
            return web.Response(text=payload, status=status)
        return web.json_response(payload, status=status)

    app = web.Application()
    app.router.add_post("/{tail:.*}", handler)
    server = TestServer(app)
    await server.start_server()

    base = f"http://{server.host}:{server.port}/v1"
    yield base, state

    await server.close()


async def test_chat_sends_blocking_request(dify):
    base, state = dify
    client = DifyClient(base, "app-key", retry_delay=0)

    response = await client.chat("hello", user="Ana")
    await client.close()

    assert response.answer == "Hi there"
    assert response.conversation_id == "abc"
    assert not response.synthetic

    request = state["requests"][0]
    assert request["path"] == "/v1/chat-messages"
    assert request["auth"] == "Bearer app-key"
    assert request["body"] == {
        "inputs": {},
        "query": "hello",
        "response_mode": "blocking",
        "user": "Ana",
        "conversation_id": "",
        "files": [],
        "auto_generate_name": True,
    }


async def test_chat_continues_conversation(dify):
    base, state = dify
    client = DifyClient(base, "app-key", retry_delay=0)

    await client.chat("again", user="Ana", conversation_id="abc")
    await client.close()

    assert state["requests"][0]["body"]["conversation_id"] == "abc"


async def test_missing_fields_become_empty(dify):
    base, state = dify
    state["responses"].append((200, {"event": "message"}))
    client = DifyClient(base, "app-key", retry_delay=0)

    response = await client.chat("hello", user="Ana")
    await client.close()

    assert response.answer == ""
    assert response.conversation_id == ""


async def test_server_error_is_retried(dify):
    base, state = dify
    state["responses"].append((503, "unavailable"))
    client = DifyClient(base, "app-key", retry_delay=0)

    response = await client.chat("hello", user="Ana")
    await client.close()

    assert response.answer == "Hi there"
    assert len(state["requests"]) == 2


async def test_client_error_is_not_retried(dify):
    base, state = dify
    state["responses"].append((400, {"code": "invalid_param"}))
    client = DifyClient(base, "app-key", retry_delay=0)

    with pytest.raises(UpstreamError) as exc_info:
        await client.chat("hello", user="Ana")
    await client.close()

    assert exc_info.value.status == 400
    assert not exc_info.value.transient
    assert len(state["requests"]) == 1


async def test_retries_are_bounded(dify):
    base, state = dify
    state["responses"].extend([(500, "boom")] * 3)
    client = DifyClient(base, "app-key", retry_attempts=2, retry_delay=0)

    with pytest.raises(UpstreamError):
        await client.chat("hello", user="Ana")
    await client.close()

    assert len(state["requests"]) == 2


async def test_invalid_json_is_an_upstream_error(dify):
    base, state = dify
    state["responses"].append((200, "<html>oops</html>"))
    client = DifyClient(base, "app-key", retry_delay=0)

    with pytest.raises(UpstreamError):
        await client.chat("hello", user="Ana")
    await client.close()

    assert len(state["requests"]) == 1


async def test_timeout_is_not_retried(dify):
    base, state = dify
    state["delay"] = 1
    client = DifyClient(base, "app-key", timeout=0.1, retry_delay=0)

    with pytest.raises(UpstreamTimeout):
        await client.chat("hello", user="Ana")
    await client.close()

    assert len(state["requests"]) == 1


async def test_missing_configuration_fails_fast():
    client = DifyClient("", "", retry_delay=0)

    with pytest.raises(UpstreamError):
        await client.chat("hello", user="Ana")


def test_payload_helper():
    client = DifyClient("http://dify.local/v1/", "key")

    assert client.api_url == "http://dify.local/v1"
    assert client.build_payload("q", "u", None)["conversation_id"] == ""
