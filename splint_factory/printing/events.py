"""Server-Sent Events fan-out for print queue updates.

Every connected browser tab holds one subscription.  Handlers publish events
(progress pushes, acceptance decisions, edits) which are serialised once into
an SSE frame and queued for every subscriber::

    data: {"type": "progress", "id": "...", "progress": 42.5, "progressLastReportTime": "..."}

Handlers run in the threadpool while streams live on the event loop, so
:meth:`PrintQueueBroadcaster.publish` hands frames over with
``call_soon_threadsafe``.  A subscriber whose queue is full is dropped; the
browser reconnects (``retry: 5000``) and falls back to polling the list
endpoint in the meantime.

Events are tagged with the organization that owns the print; a subscription
bound to an organization only receives that organization's events.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import uuid
from typing import Any, AsyncIterator, Awaitable, Callable

from splint_factory.config import get_settings

logger = logging.getLogger(__name__)

CONNECTED_COMMENT = ": connected\n\n"
HEARTBEAT_COMMENT = ": heartbeat\n\n"
RECONNECT_DELAY_MS = 5000

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_event(event: dict[str, Any]) -> str:
    """Serialise ``event`` as a single SSE ``data`` frame."""

    return f"data: {json.dumps(event, default=str, separators=(',', ':'))}\n\n"


class Subscription:
    """Queue of pending frames for one SSE connection."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        maxsize: int,
        organization_id: uuid.UUID | None = None,
    ) -> None:
        self.loop = loop
        self.organization_id = organization_id
        self.queue: asyncio.Queue[str] = asyncio.Queue(maxsize=maxsize)
        self.dropped = False

    def wants(self, organization_id: uuid.UUID | None) -> bool:
        return (
            self.organization_id is None
            or organization_id is None
            or self.organization_id == organization_id
        )


class PrintQueueBroadcaster:
    def __init__(self, *, heartbeat_seconds: float = 30.0, queue_size: int = 100) -> None:
        self.heartbeat_seconds = heartbeat_seconds
        self.queue_size = queue_size
        self._subscribers: set[Subscription] = set()
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self, organization_id: uuid.UUID | None = None) -> Subscription:
        """Register a subscription bound to the running event loop."""

        subscription = Subscription(
            asyncio.get_running_loop(), self.queue_size, organization_id=organization_id
        )
        with self._lock:
            self._subscribers.add(subscription)
        logger.debug("SSE subscriber added (%d active)", self.subscriber_count)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscribers.discard(subscription)

    def publish(self, event: dict[str, Any], organization_id: uuid.UUID | None = None) -> int:
        """Queue ``event`` for matching subscribers and return how many were targeted.

        Events without an ``organization_id`` go to every subscriber.  Safe to
        call from any thread.
        """

        frame = format_event(event)
        with self._lock:
            subscribers = [s for s in self._subscribers if s.wants(organization_id)]

        try:
            current_loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            current_loop = None

        delivered = 0
        for subscription in subscribers:
            if subscription.loop is current_loop:
                self._deliver(subscription, frame)
                delivered += 1
                continue
            try:
                subscription.loop.call_soon_threadsafe(self._deliver, subscription, frame)
            except RuntimeError:
                # Event loop already closed; the connection is gone.
                self._drop(subscription)
                continue
            delivered += 1
        return delivered

    def _deliver(self, subscription: Subscription, frame: str) -> None:
        if subscription.dropped:
            return
        try:
            subscription.queue.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("Dropping slow SSE subscriber after %d queued events", self.queue_size)
            self._drop(subscription)

    def _drop(self, subscription: Subscription) -> None:
        subscription.dropped = True
        self.unsubscribe(subscription)

    async def stream(
        self,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
        *,
        organization_id: uuid.UUID | None = None,
    ) -> AsyncIterator[str]:
        """Yield SSE text for one connection until the client goes away.

        The stream opens with a ``: connected`` comment and the reconnect
        delay, then yields queued frames, sending a ``: heartbeat`` comment
        whenever nothing was published for :attr:`heartbeat_seconds`.
        """

        subscription = self.subscribe(organization_id)
        try:
            yield CONNECTED_COMMENT
            yield f"retry: {RECONNECT_DELAY_MS}\n\n"
            while not subscription.dropped:
                if is_disconnected is not None and await is_disconnected():
                    break
                try:
                    frame = await asyncio.wait_for(
                        subscription.queue.get(), timeout=self.heartbeat_seconds
                    )
                except asyncio.TimeoutError:
                    yield HEARTBEAT_COMMENT
                    continue
                yield frame
        finally:
            self.unsubscribe(subscription)
            logger.debug("SSE subscriber removed (%d active)", self.subscriber_count)


_BROADCASTER: PrintQueueBroadcaster | None = None
_BROADCASTER_LOCK = threading.Lock()


def get_broadcaster() -> PrintQueueBroadcaster:
    """Return the process-wide broadcaster, created from settings on first use."""

    global _BROADCASTER
    with _BROADCASTER_LOCK:
        if _BROADCASTER is None:
            settings = get_settings()
            _BROADCASTER = PrintQueueBroadcaster(
                heartbeat_seconds=settings.sse_heartbeat_seconds,
                queue_size=settings.sse_queue_size,
            )
        return _BROADCASTER


def reset_broadcaster() -> None:
    global _BROADCASTER
    with _BROADCASTER_LOCK:
        _BROADCASTER = None


__all__ = [
    "CONNECTED_COMMENT",
    "HEARTBEAT_COMMENT",
    "PrintQueueBroadcaster",
    "SSE_HEADERS",
    "Subscription",
    "format_event",
    "get_broadcaster",
    "reset_broadcaster",
]
