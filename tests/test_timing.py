import asyncio

import pytest

from messaging.timing import TypingIndicator


async def test_sends_repeatedly_until_stopped():
    calls = []

    async def action():
        calls.append(1)

    async with TypingIndicator(action, interval=0.01) as typing:
        await asyncio.sleep(0.035)
        assert typing.running

    sent = len(calls)
    assert sent >= 2
    assert typing.sent == sent
    assert not typing.running

    await asyncio.sleep(0.03)
    assert len(calls) == sent


async def test_failing_action_does_not_stop_the_loop():
    attempts = []

    async def action():
        attempts.append(1)
        raise RuntimeError("network down")

    async with TypingIndicator(action, interval=0.01) as typing:
        await asyncio.sleep(0.035)

    assert len(attempts) >= 2
    assert typing.sent == 0


async def test_cancelled_when_body_raises():
    async def action():
        pass

    typing = TypingIndicator(action, interval=0.01)
    with pytest.raises(ValueError):
        async with typing:
            raise ValueError("boom")

    assert not typing.running


async def test_stop_without_start_is_noop():
    typing = TypingIndicator(lambda: asyncio.sleep(0))
    await typing.stop()
    assert not typing.running
