import asyncio

import pytest

from AI.error_types import InvalidIdentifier
from conftest import FakeClock
from messaging.session_store import SessionStore


def test_new_session_has_no_conversation():
    store = SessionStore(clock=FakeClock())

    session = store.get_or_create(42)

    assert session.user_id == 42
    assert session.conversation_id == ""
    assert session.request_count == 0
    assert len(store) == 1


def test_same_user_gets_same_session():
    store = SessionStore(clock=FakeClock())
    assert store.get_or_create(42) is store.get_or_create(42)


@pytest.mark.parametrize("user_id", [None, 0, "42", True, 4.2])
def test_invalid_user_id_is_rejected(user_id):
    store = SessionStore(clock=FakeClock())

    with pytest.raises(InvalidIdentifier):
        store.get_or_create(user_id)
    assert len(store) == 0


def test_update_stores_token():
    clock = FakeClock()
    store = SessionStore(clock=clock)
    store.get_or_create(42)

    clock.advance(5)
    store.update(42, "abc")

    session = store.get_or_create(42)
    assert session.conversation_id == "abc"
    assert session.request_count == 1
    assert session.last_accessed == clock.now


def test_empty_token_never_overwrites():
    store = SessionStore(clock=FakeClock())
    store.update(42, "abc")

    store.update(42, "")
    store.update(42, None)

    session = store.get_or_create(42)
    assert session.conversation_id == "abc"
    assert session.request_count == 1


def test_expired_session_is_replaced():
    clock = FakeClock()
    store = SessionStore(ttl=10, clock=clock)
    store.update(42, "abc")

    clock.advance(10)
    assert store.get_or_create(42).conversation_id == "abc"

    clock.advance(1)
    session = store.get_or_create(42)
    assert session.conversation_id == ""
    assert session.created_at == clock.now
    assert len(store) == 1


def test_ttl_counts_from_creation_not_last_access():
    clock = FakeClock()
    store = SessionStore(ttl=10, clock=clock)
    store.update(42, "abc")

    for _ in range(2):
        clock.advance(4)
        assert store.get_or_create(42).conversation_id == "abc"

    clock.advance(4)
    assert store.get_or_create(42).conversation_id == ""


def test_capacity_evicts_least_recently_accessed():
    clock = FakeClock()
    store = SessionStore(max_sessions=2, clock=clock)

    store.update(1, "one")
    clock.advance(1)
    store.update(2, "two")
    clock.advance(1)
    store.get_or_create(1)
    clock.advance(1)
    store.update(3, "three")

    assert len(store) == 2
    assert store.get_or_create(1).conversation_id == "one"
    assert store.get_or_create(3).conversation_id == "three"
    assert store.get_stats()["total_sessions"] == 2


def test_evicted_user_starts_a_new_conversation():
    clock = FakeClock()
    store = SessionStore(max_sessions=1, clock=clock)
    store.update(1, "one")
    clock.advance(1)
    store.update(2, "two")

    assert store.get_or_create(1).conversation_id == ""


def test_cleanup_removes_only_expired():
    clock = FakeClock()
    store = SessionStore(ttl=10, clock=clock)
    store.update(1, "one")
    clock.advance(6)
    store.update(2, "two")
    clock.advance(6)

    assert store.cleanup() == 1
    assert len(store) == 1
    assert store.get_or_create(2).conversation_id == "two"


async def test_sweep_task_lifecycle():
    clock = FakeClock()
    store = SessionStore(ttl=10, cleanup_interval=0.01, clock=clock)
    store.get_or_create(1)
    clock.advance(11)

    store.start()
    assert store.get_stats()["sweep_running"] is True
    await asyncio.sleep(0.05)
    assert len(store) == 0

    await store.stop()
    stats = store.get_stats()
    assert stats["sweep_running"] is False
    assert stats["total_sessions"] == 0
    assert stats["max_sessions"] == 10000
