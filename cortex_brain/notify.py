"""Push notifications to connected clients, keyed by user id."""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Protocol

from prometheus_client import Counter

logger = logging.getLogger(__name__)

NOTIFICATIONS = Counter(
    "brain_notifications_total",
    "Notifications pushed to sessions",
    ["event", "result"],
)

QUEUE_SIZE = 100


class NotificationSink(Protocol):
    async def notify(self, user_id: str, event: str, payload: Dict[str, Any]) -> None:
        ...


@dataclass(eq=False)
class Session:
    queue: asyncio.Queue
    loop: asyncio.AbstractEventLoop


class SessionRegistry:
    """Track live sessions per user and fan notifications out to them.

    Each subscriber gets its own bounded ``asyncio.Queue`` bound to the loop it
    subscribed from; notifications raised on another loop are handed over
    thread-safely. Delivery is best-effort: a full queue drops the message and
    a user without sessions simply receives nothing.
    """

    def __init__(self, queue_size: int = QUEUE_SIZE) -> None:
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._sessions: Dict[str, List[Session]] = {}

    def subscribe(self, user_id: str) -> asyncio.Queue:
        session = Session(asyncio.Queue(maxsize=self.queue_size), asyncio.get_running_loop())
        with self._lock:
            self._sessions.setdefault(user_id, []).append(session)
        return session.queue

    def unsubscribe(self, user_id: str, queue: asyncio.Queue) -> None:
        with self._lock:
            sessions = [s for s in self._sessions.get(user_id, []) if s.queue is not queue]
            if sessions:
                self._sessions[user_id] = sessions
            else:
                self._sessions.pop(user_id, None)

    def connected(self, user_id: str) -> int:
        with self._lock:
            return len(self._sessions.get(user_id, []))

    @staticmethod
    def _offer(queue: asyncio.Queue, message: Dict[str, Any], event: str, user_id: str) -> None:
        try:
            queue.put_nowait(message)
            NOTIFICATIONS.labels(event, "sent").inc()
        except asyncio.QueueFull:
            NOTIFICATIONS.labels(event, "dropped").inc()
            logger.warning("dropping %s for %s: session queue full", event, user_id)

    async def notify(self, user_id: str, event: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            sessions = list(self._sessions.get(user_id, []))
        message = {"event": event, "data": payload}
        current = asyncio.get_running_loop()
        for session in sessions:
            if session.loop is current:
                self._offer(session.queue, message, event, user_id)
            elif not session.loop.is_closed():
                session.loop.call_soon_threadsafe(self._offer, session.queue, message, event, user_id)


__all__ = ["NotificationSink", "Session", "SessionRegistry"]
