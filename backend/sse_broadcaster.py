"""
Server-Sent Events (SSE) broadcaster.

Async fan-out event bus with topics: the simulator publishes quotes on
"quotes:<session_key>", the session runner publishes on "session:<id>",
and connected clients receive them via the streaming endpoints.

Thread-safe: publish() can be called from sync code, events are delivered
to async subscriber queues.

Usage:
    from sse_broadcaster import broadcaster

    # Publish from anywhere (sync or async):
    broadcaster.publish("quote", {"symbol": "BTCUSDT", "price": 100.5}, topic="quotes:global")

    # Subscribe in an async endpoint:
    queue = broadcaster.subscribe("quotes:global")
    try:
        event = await asyncio.wait_for(queue.get(), timeout=15.0)
    finally:
        broadcaster.unsubscribe(queue)
"""

import asyncio
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

ALL_TOPICS = "*"


def quotes_topic(session_key: str) -> str:
    return f"quotes:{session_key}"


def session_topic(session_id: str) -> str:
    return f"session:{session_id}"


class SSEBroadcaster:
    """
    Async fan-out event bus for Server-Sent Events.

    Subscribers get a bounded asyncio.Queue for one topic (or ALL_TOPICS).
    When a queue is full the oldest event is dropped.
    """

    def __init__(self, queue_size: int = 100):
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}
        self._topics: Dict[int, str] = {}
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue_size = queue_size

    def subscribe(self, topic: str = ALL_TOPICS, maxsize: Optional[int] = None) -> asyncio.Queue:
        """Create and register a new subscriber queue for a topic."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize or self._queue_size)
        with self._lock:
            self._subscribers.setdefault(topic, []).append(queue)
            self._topics[id(queue)] = topic
        logger.debug(f"SSE subscriber added to {topic} (total: {self.subscriber_count})")
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        """Remove a subscriber queue. Safe to call more than once."""
        with self._lock:
            topic = self._topics.pop(id(queue), None)
            if topic is None:
                return
            queues = self._subscribers.get(topic, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self._subscribers.pop(topic, None)
        logger.debug(f"SSE subscriber removed from {topic}")

    @property
    def subscriber_count(self) -> int:
        """Number of active subscribers across all topics."""
        with self._lock:
            return sum(len(q) for q in self._subscribers.values())

    def _targets(self, topic: Optional[str]) -> List[asyncio.Queue]:
        with self._lock:
            targets = list(self._subscribers.get(ALL_TOPICS, []))
            if topic and topic != ALL_TOPICS:
                targets.extend(self._subscribers.get(topic, []))
        return targets

    def _make_event(self, event_type: str, payload: dict, topic: Optional[str]) -> dict:
        return {
            "type": event_type,
            "topic": topic,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "payload": payload,
        }

    def publish(self, event_type: str, payload: dict, topic: Optional[str] = None):
        """
        Publish an event to the topic's subscribers and wildcard subscribers.

        Thread-safe: can be called from sync code. Uses
        call_soon_threadsafe to schedule queue puts on the
        event loop.
        """
        subscribers = self._targets(topic)
        if not subscribers:
            return

        event = self._make_event(event_type, payload, topic)
        loop = self._get_loop()

        for queue in subscribers:
            try:
                if loop and loop.is_running() and not self._in_loop(loop):
                    loop.call_soon_threadsafe(self._put_nowait, queue, event)
                else:
                    # Direct put (already in the event loop thread)
                    self._put_nowait(queue, event)
            except Exception as e:
                logger.debug(f"Failed to publish to subscriber: {e}")

    def _put_nowait(self, queue: asyncio.Queue, event: dict):
        """Put an event into a queue, dropping oldest if full."""
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            try:
                queue.get_nowait()
                queue.put_nowait(event)
            except (asyncio.QueueEmpty, asyncio.QueueFull):
                pass

    @staticmethod
    def _in_loop(loop: asyncio.AbstractEventLoop) -> bool:
        try:
            return asyncio.get_running_loop() is loop
        except RuntimeError:
            return False

    def _get_loop(self) -> Optional[asyncio.AbstractEventLoop]:
        """Get the running event loop (cached)."""
        if self._loop is not None and not self._loop.is_closed():
            return self._loop
        try:
            self._loop = asyncio.get_running_loop()
            return self._loop
        except RuntimeError:
            return None

    def format_sse(self, event: dict, event_id: Optional[int] = None) -> str:
        """Format an event dict as an SSE text message."""
        event_type = event.get("type", "message")
        data = json.dumps(event)
        prefix = f"id: {event_id}\n" if event_id is not None else ""
        return f"{prefix}event: {event_type}\ndata: {data}\n\n"

    def heartbeat_event(self) -> dict:
        """Create a heartbeat event."""
        return {
            "type": "heartbeat",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "payload": {},
        }


# Module-level singleton
broadcaster = SSEBroadcaster()
