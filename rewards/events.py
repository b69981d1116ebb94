"""
In-process publish/subscribe fan-out and the SSE stream adapter built on it.

Delivery is synchronous and best effort: a failing handler is logged and the
remaining handlers still run. Nothing is persisted or replayed.
"""

import asyncio
import itertools
import json
import logging
import threading
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Optional

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]


class Topics:
    QUEST_COMPLETED = "quest:completed"
    USER_UPDATED = "user:updated"
    SUBMISSION_CREATED = "submission:created"
    SUBMISSION_VERIFIED = "submission:verified"
    REDEMPTION_CREATED = "redemption:created"
    REDEMPTION_UPDATED = "redemption:updated"
    TOKENS_MINTED = "oracle:minted"

    ALL = (
        QUEST_COMPLETED,
        USER_UPDATED,
        SUBMISSION_CREATED,
        SUBMISSION_VERIFIED,
        REDEMPTION_CREATED,
        REDEMPTION_UPDATED,
        TOKENS_MINTED,
    )


class EventBus:
    def __init__(self):
        self._handlers: dict[str, dict[int, Handler]] = {}
        self._last_published: dict[str, float] = {}
        self._tokens = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        token = next(self._tokens)
        with self._lock:
            self._handlers.setdefault(topic, {})[token] = handler

        def unsubscribe() -> None:
            self._remove(topic, token)

        return unsubscribe

    def unsubscribe(self, topic: str, handler: Handler) -> bool:
        with self._lock:
            handlers = self._handlers.get(topic, {})
            token = next((t for t, h in handlers.items() if h == handler), None)
        if token is None:
            return False
        return self._remove(topic, token)

    def _remove(self, topic: str, token: int) -> bool:
        with self._lock:
            handlers = self._handlers.get(topic)
            if not handlers or handlers.pop(token, None) is None:
                return False
            if not handlers:
                del self._handlers[topic]
                if topic not in Topics.ALL:
                    self._last_published.pop(topic, None)
            return True

    def publish(self, topic: str, payload: Any) -> int:
        with self._lock:
            handlers = list(self._handlers.get(topic, {}).values())
            # only known or subscribed topics are tracked
            if handlers or topic in Topics.ALL:
                self._last_published[topic] = time.time()
        delivered = 0
        for handler in handlers:
            try:
                handler(payload)
                delivered += 1
            except Exception:
                logger.exception("Event handler failed for topic %s", topic)
        return delivered

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        with self._lock:
            if topic is not None:
                return len(self._handlers.get(topic, {}))
            return sum(len(h) for h in self._handlers.values())

    def topics(self) -> list[str]:
        with self._lock:
            return list(self._handlers)

    def last_published(self, topic: str) -> float:
        return self._last_published.get(topic, 0.0)


def format_sse(event: Optional[str], data: Any) -> str:
    body = json.dumps(data, default=str)
    if event is None:
        return f"data: {body}\n\n"
    return f"event: {event}\ndata: {body}\n\n"


class StreamSubscription:
    """Bridges bus events published from any thread into one async SSE stream."""

    def __init__(
        self,
        bus: EventBus,
        topics: Iterable[str],
        heartbeat_interval: float = 30.0,
        max_pending: int = 1000,
    ):
        self.topics = list(topics)
        self.heartbeat_interval = heartbeat_interval
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=max_pending)
        self._closed = False
        self._close_lock = threading.Lock()
        self._unsubscribers = [
            bus.subscribe(topic, self._make_handler(topic)) for topic in self.topics
        ]

    @property
    def closed(self) -> bool:
        return self._closed

    def _make_handler(self, topic: str) -> Handler:
        def handler(payload: Any) -> None:
            if self._closed:
                return
            frame = format_sse(topic, payload)
            try:
                self._loop.call_soon_threadsafe(self._enqueue, frame)
            except RuntimeError:
                # event loop already gone
                self.close()

        return handler

    def _enqueue(self, frame: str) -> None:
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("Dropping realtime event, subscriber queue is full")

    def close(self) -> bool:
        with self._close_lock:
            if self._closed:
                return False
            self._closed = True
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        logger.info("Realtime stream closed (%s)", ",".join(self.topics))
        return True

    async def stream(
        self, is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None
    ) -> AsyncIterator[str]:
        """Yield SSE frames until closed; a heartbeat is due every interval regardless of traffic."""
        try:
            yield format_sse(None, {"type": "connected", "events": self.topics, "timestamp": int(time.time() * 1000)})
            next_heartbeat = self._loop.time() + self.heartbeat_interval
            while not self._closed:
                remaining = next_heartbeat - self._loop.time()
                if remaining <= 0:
                    frame = format_sse("heartbeat", {"timestamp": int(time.time() * 1000)})
                    next_heartbeat = self._loop.time() + self.heartbeat_interval
                else:
                    try:
                        frame = await asyncio.wait_for(self._queue.get(), timeout=remaining)
                    except asyncio.TimeoutError:
                        continue
                yield frame
                if is_disconnected is not None and await is_disconnected():
                    break
        finally:
            self.close()
