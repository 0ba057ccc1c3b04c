"""
BookGen V1.0 - Server-Sent Events Manager
=========================================
Publishes session progress events to connected clients.
Each session has its own set of client queues. Clients connect via
GET /api/v1/sessions/{id}/progress.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import AsyncIterator

STREAM_END_STATUSES = ("markdown_ready", "completed", "failed", "downloaded")


class SSEManager:
    """
    In-memory pub/sub broker for Server-Sent Events.
    The orchestrator PUSHES events via `publish()`.
    Clients PULL events via `subscribe()`.
    """

    def __init__(self, queue_size: int = 100):
        # session_id → list of (loop, queue), one per connected client
        self._queues: dict[str, list[tuple[asyncio.AbstractEventLoop, asyncio.Queue]]] = defaultdict(list)
        self.queue_size = queue_size

    def subscriber_count(self, session_id: str) -> int:
        return len(self._queues.get(session_id, []))

    async def subscribe(self, session_id: str) -> AsyncIterator[dict]:
        """
        Async generator that yields events for one session until it reaches a
        status where nothing more will stream.
        """
        entry = (asyncio.get_running_loop(), asyncio.Queue(maxsize=self.queue_size))
        self._queues[session_id].append(entry)
        try:
            while True:
                event = await entry[1].get()
                yield event
                if event.get("status") in STREAM_END_STATUSES:
                    break
        finally:
            self._queues[session_id].remove(entry)
            if not self._queues[session_id]:
                self._queues.pop(session_id, None)

    def publish(self, session_id: str, event: dict) -> None:
        """
        Push an event to every client of this session. Safe to call from the
        event loop or from a worker thread (export runs in the threadpool).
        """
        for loop, q in list(self._queues.get(session_id, [])):
            if loop.is_closed():
                continue
            loop.call_soon_threadsafe(_offer, q, dict(event))


def _offer(q: asyncio.Queue, event: dict) -> None:
    try:
        q.put_nowait(event)
    except asyncio.QueueFull:
        # slow client: drop the event
        pass


# Global singleton shared across the FastAPI app
sse_manager = SSEManager()
