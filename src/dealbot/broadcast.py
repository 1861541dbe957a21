"""
Live stream broadcasting of deal events.

Subscribers receive the trimmed public payload of each event (or the full
payload when an event has no trimmed form). There is no replay on
reconnect: a client that needs history reads the snapshot instead.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Callable, Protocol, runtime_checkable

import orjson

from dealbot.logging import get_logger
from dealbot.types import DealEvent

logger = get_logger(__name__)

CloseCallback = Callable[[], None]


@runtime_checkable
class SubscriberSink(Protocol):
    """A live connection that accepts event dicts."""

    def write(self, event: dict[str, Any]) -> None:
        """Deliver one event. Raising marks the sink as dead."""
        ...

    def on_close(self, callback: CloseCallback) -> None:
        """Register a callback fired once when the connection closes."""
        ...


def format_sse(event: dict[str, Any]) -> str:
    """Render an event dict as a Server-Sent Events frame."""
    data = orjson.dumps(event, default=str).decode()
    return f"event: {event.get('type', 'message')}\ndata: {data}\n\n"


class QueueSink:
    """In-process sink backed by an asyncio queue.

    Suitable for an HTTP layer that streams ``format_sse`` frames, and for
    tests.
    """

    def __init__(self, maxsize: int = 0) -> None:
        self.queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue(maxsize=maxsize)
        self._callbacks: list[CloseCallback] = []
        self.closed = False

    def write(self, event: dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionError("sink closed")
        self.queue.put_nowait(event)

    def on_close(self, callback: CloseCallback) -> None:
        self._callbacks.append(callback)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self.queue.put_nowait(None)
        except asyncio.QueueFull:
            # events() stops on its own once a closed queue is drained
            pass
        for callback in self._callbacks:
            callback()
        self._callbacks.clear()

    def drain(self) -> list[dict[str, Any]]:
        """Return everything queued so far without waiting."""
        items: list[dict[str, Any]] = []
        while not self.queue.empty():
            item = self.queue.get_nowait()
            if item is not None:
                items.append(item)
        return items

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        """Yield events until the sink is closed."""
        while not (self.closed and self.queue.empty()):
            item = await self.queue.get()
            if item is None:
                return
            yield item


class SubscriberRegistry:
    """Live subscribers grouped by deal.

    Constructed and passed to whatever needs it; ``close`` disconnects every
    subscriber so a process can shut down cleanly.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, set[SubscriberSink]] = {}
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    def add(self, deal_id: str, sink: SubscriberSink) -> None:
        if not self._open:
            raise RuntimeError("SubscriberRegistry is closed.")
        self._subscribers.setdefault(deal_id, set()).add(sink)

    def remove(self, deal_id: str, sink: SubscriberSink) -> None:
        sinks = self._subscribers.get(deal_id)
        if sinks is None:
            return
        sinks.discard(sink)
        if not sinks:
            del self._subscribers[deal_id]

    def get(self, deal_id: str) -> list[SubscriberSink]:
        return list(self._subscribers.get(deal_id, ()))

    def count(self, deal_id: str | None = None) -> int:
        if deal_id is not None:
            return len(self._subscribers.get(deal_id, ()))
        return sum(len(s) for s in self._subscribers.values())

    def deal_ids(self) -> list[str]:
        return list(self._subscribers)

    def close(self) -> None:
        """Close every subscriber that supports it and refuse new ones."""
        self._open = False
        for deal_id in list(self._subscribers):
            for sink in self.get(deal_id):
                close = getattr(sink, "close", None)
                if callable(close):
                    close()
        self._subscribers.clear()


class LiveStreamBroadcaster:
    """Fans appended events out to a deal's live subscribers."""

    def __init__(self, registry: SubscriberRegistry) -> None:
        self.registry = registry

    def subscribe(self, deal_id: str, sink: SubscriberSink) -> None:
        """Register ``sink``; it is removed automatically when it closes."""
        self.registry.add(deal_id, sink)
        sink.on_close(lambda: self.registry.remove(deal_id, sink))
        logger.debug("Subscriber added", deal_id=deal_id, subscribers=self.registry.count(deal_id))

    def unsubscribe(self, deal_id: str, sink: SubscriberSink) -> None:
        self.registry.remove(deal_id, sink)

    @staticmethod
    def wire_event(event: DealEvent) -> dict[str, Any]:
        """Subscriber-facing shape of an event."""
        payload = event.public_payload if event.public_payload is not None else event.payload
        return {
            "ts": event.ts,
            "deal_id": event.deal_id,
            "type": event.type.value,
            "payload": payload,
        }

    def broadcast(self, event: DealEvent) -> int:
        """Deliver ``event`` to current subscribers of its deal.

        A sink whose write raises is removed and the rest still receive the
        event.

        Returns:
            Number of sinks that accepted the event.
        """
        sinks = self.registry.get(event.deal_id)
        if not sinks:
            return 0

        message = self.wire_event(event)
        delivered = 0
        for sink in sinks:
            try:
                sink.write(message)
                delivered += 1
            except Exception as e:
                logger.debug("Dropping dead subscriber", deal_id=event.deal_id, error=str(e))
                self.registry.remove(event.deal_id, sink)
        return delivered
