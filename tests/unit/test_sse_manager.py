"""
Unit tests for the per-session progress broker.
"""
import asyncio

from server.sse_manager import SSEManager


def test_subscriber_receives_until_terminal_status():
    manager = SSEManager()

    async def scenario():
        received = []

        async def consume():
            async for event in manager.subscribe("s1"):
                received.append(event)

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        assert manager.subscriber_count("s1") == 1

        manager.publish("s1", {"status": "generating", "progress": 10})
        manager.publish("s2", {"status": "generating", "progress": 99})
        manager.publish("s1", {"status": "markdown_ready", "progress": 100})
        manager.publish("s1", {"status": "markdown_ready", "progress": 100, "late": True})
        await asyncio.wait_for(task, timeout=1)
        return received

    received = asyncio.run(scenario())
    assert [e["progress"] for e in received] == [10, 100]
    assert manager.subscriber_count("s1") == 0


def test_full_queue_drops_events():
    manager = SSEManager(queue_size=1)

    async def scenario():
        agen = manager.subscribe("s1").__aiter__()
        first = asyncio.ensure_future(agen.__anext__())
        await asyncio.sleep(0)
        manager.publish("s1", {"status": "generating", "progress": 1})
        manager.publish("s1", {"status": "generating", "progress": 2})
        manager.publish("s1", {"status": "generating", "progress": 3})
        event = await asyncio.wait_for(first, timeout=1)
        await agen.aclose()
        return event

    assert asyncio.run(scenario())["progress"] == 1
    assert manager.subscriber_count("s1") == 0


def test_publish_without_subscribers_is_harmless():
    SSEManager().publish("nobody", {"status": "failed"})
