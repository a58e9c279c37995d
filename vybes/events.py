import asyncio
import os
import threading
import time

from .logging_util import log_debug, log_error, log_summary

EVENT_QUEUE_SIZE = int(os.getenv("VYBES_EVENT_QUEUE", "64"))


class EventBus:
    """Process-wide fan-out of change events to live subscribers.

    Each subscriber owns a bounded asyncio.Queue. publish() may be called from any
    thread (request handlers run in the threadpool) and never blocks: fan-out is
    scheduled onto the event loop, and a subscriber whose queue is full simply
    misses that event.
    """

    def __init__(self, max_pending: int = EVENT_QUEUE_SIZE):
        self.max_pending = max_pending
        self.subscribers: set[asyncio.Queue] = set()
        self.loop: asyncio.AbstractEventLoop | None = None
        self.lock = threading.Lock()
        self.last_id = 0
        self.dropped = 0

    def attach(self, loop: asyncio.AbstractEventLoop | None) -> None:
        self.loop = loop

    async def subscribe(self) -> asyncio.Queue:
        self.loop = asyncio.get_running_loop()
        q: asyncio.Queue = asyncio.Queue(maxsize=self.max_pending)
        with self.lock:
            self.subscribers.add(q)
        log_summary("events", "subscriber added", total=len(self.subscribers))
        return q

    async def unsubscribe(self, q: asyncio.Queue) -> None:
        with self.lock:
            self.subscribers.discard(q)
        log_summary("events", "subscriber removed", total=len(self.subscribers))

    def subscriber_count(self) -> int:
        with self.lock:
            return len(self.subscribers)

    def publish(self, event: dict) -> None:
        loop = self.loop
        if loop is None or loop.is_closed():
            log_debug("events", "no loop attached; event not delivered", event=event.get("event"))
            return
        payload = dict(event)
        try:
            loop.call_soon_threadsafe(self._fanout, payload)
        except RuntimeError as exc:
            log_error("events", "publish failed", event=payload.get("event"), err=str(exc))

    def _fanout(self, event: dict) -> None:
        with self.lock:
            self.last_id += 1
            targets = list(self.subscribers)
        event.setdefault("ts", int(time.time() * 1000))
        for q in targets:
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                self.dropped += 1
                log_summary("events", "subscriber lagging; event dropped", event=event.get("event"), dropped=self.dropped)


event_bus = EventBus()
