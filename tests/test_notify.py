import asyncio
import threading

import pytest

from cortex_brain.notify import SessionRegistry


@pytest.mark.asyncio
async def test_notify_reaches_every_session_of_a_user():
    registry = SessionRegistry()
    first = registry.subscribe("u1")
    second = registry.subscribe("u1")
    other = registry.subscribe("u2")
    await registry.notify("u1", "brain_done", {"requestId": "r1"})
    assert await first.get() == {"event": "brain_done", "data": {"requestId": "r1"}}
    assert second.qsize() == 1
    assert other.empty()


@pytest.mark.asyncio
async def test_unknown_user_is_a_no_op():
    await SessionRegistry().notify("nobody", "brain_done", {})


@pytest.mark.asyncio
async def test_full_queue_drops_messages():
    registry = SessionRegistry(queue_size=2)
    queue = registry.subscribe("u1")
    for i in range(5):
        await registry.notify("u1", "tick", {"n": i})
    assert queue.qsize() == 2
    assert queue.get_nowait()["data"] == {"n": 0}


@pytest.mark.asyncio
async def test_unsubscribe():
    registry = SessionRegistry()
    queue = registry.subscribe("u1")
    assert registry.connected("u1") == 1
    registry.unsubscribe("u1", queue)
    await registry.notify("u1", "brain_done", {})
    assert registry.connected("u1") == 0
    assert queue.empty()


def test_subscribe_requires_running_loop():
    with pytest.raises(RuntimeError):
        SessionRegistry().subscribe("u1")


def test_notify_from_another_loop():
    registry = SessionRegistry()
    ready = threading.Event()
    received = []

    async def listener():
        queue = registry.subscribe("u1")
        ready.set()
        received.append(await asyncio.wait_for(queue.get(), timeout=2))

    thread = threading.Thread(target=asyncio.run, args=(listener(),))
    thread.start()
    assert ready.wait(timeout=2)
    asyncio.run(registry.notify("u1", "brain_dream", {"title": "t"}))
    thread.join(timeout=3)
    assert received == [{"event": "brain_dream", "data": {"title": "t"}}]
