"""
Broadcast Channel - Fan-out of committed board events to subscribers.

Contract:
- publish(board_key, event) delivers to every current subscriber of board_key
- subscribe(board_key) returns a Subscription (async iterator of events)
- At-least-once, no ordering promise between subscribers, no durability
- A subscriber that was not connected misses events; it recovers with a
  full-board read, never with replay

The channel is injected wherever it is needed. There is no process-wide
instance.
"""

from __future__ import annotations
import asyncio
import logging
import threading
from typing import Any, Protocol


logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256

_CLOSED = object()


class BroadcastChannel(Protocol):
    """Publish/subscribe capability keyed by board."""

    def publish(self, board_key: str, event: dict[str, Any]) -> int:
        ...

    def subscribe(self, board_key: str) -> Subscription:
        ...


class Subscription:
    """
    One subscriber's view of a board's events.

    Usage:
        sub = channel.subscribe("sales")
        async for event in sub:
            handle(event)
        sub.close()

    Events are buffered in a bounded queue. When the queue is full the
    oldest event is dropped and `lagged` is set: the subscriber has missed
    something and should reload the board.
    """

    def __init__(
        self,
        channel: InMemoryBroadcastChannel,
        board_key: str,
        maxsize: int = DEFAULT_QUEUE_SIZE,
    ):
        self.channel = channel
        self.board_key = board_key
        self.lagged = False
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        try:
            self._loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

    def _deliver(self, event: dict[str, Any]):
        """Enqueue from any thread."""
        if self.closed:
            return
        if self._loop is None or self._on_own_loop():
            self._put(event)
        else:
            self._loop.call_soon_threadsafe(self._put, event)

    def _on_own_loop(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    def _put(self, event: dict[str, Any]):
        if self._queue.full():
            self._queue.get_nowait()
            self.lagged = True
            logger.warning("[stageflow] subscriber on board=%s lagged, dropped oldest event", self.board_key)
        self._queue.put_nowait(event)

    def pending(self) -> int:
        """Number of buffered events."""
        return self._queue.qsize()

    def get_nowait(self) -> dict[str, Any] | None:
        """Return the next buffered event, or None."""
        try:
            event = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        return None if event is _CLOSED else event

    async def get(self, timeout: float | None = None) -> dict[str, Any] | None:
        """Wait for the next event. Returns None once closed and drained."""
        if self.closed and self._queue.empty():
            return None
        if timeout is None:
            event = await self._queue.get()
        else:
            event = await asyncio.wait_for(self._queue.get(), timeout)
        return None if event is _CLOSED else event

    def close(self):
        """Stop receiving events and wake up any waiting reader."""
        if self.closed:
            return
        self.closed = True
        self.channel._remove(self)
        if self._loop is None or self._on_own_loop():
            self._wake()
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._wake)

    def _wake(self):
        # Buffered events are still readable; only an idle reader needs the sentinel
        if self._queue.empty():
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> dict[str, Any]:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info):
        self.close()


class InMemoryBroadcastChannel:
    """
    Process-local broadcast channel.

    Publishing never blocks and never fails because of a subscriber:
    a subscriber whose delivery raises is dropped.
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: dict[str, list[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, board_key: str) -> Subscription:
        subscription = Subscription(self, board_key, maxsize=self.queue_size)
        with self._lock:
            self._subscribers.setdefault(board_key, []).append(subscription)
        return subscription

    def publish(self, board_key: str, event: dict[str, Any]) -> int:
        """
        Deliver an event to every subscriber of board_key.

        Returns the number of subscribers reached.
        """
        with self._lock:
            subscribers = list(self._subscribers.get(board_key, ()))

        delivered = 0
        dead = []
        for subscription in subscribers:
            try:
                subscription._deliver(event)
                delivered += 1
            except Exception:
                logger.exception("[stageflow] delivery failed board=%s", board_key)
                dead.append(subscription)
        for subscription in dead:
            subscription.close()
        return delivered

    def subscriber_count(self, board_key: str) -> int:
        with self._lock:
            return len(self._subscribers.get(board_key, ()))

    def _remove(self, subscription: Subscription):
        with self._lock:
            subscribers = self._subscribers.get(subscription.board_key)
            if subscribers and subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.board_key, None)


def channel_key(account_id: str, board_key: str) -> str:
    """Channel name for one account's board."""
    return f"{account_id}:{board_key}"


class AccountChannel:
    """
    A channel view that keeps boards of different accounts apart.

    Boards are named per account, so two accounts may both have a
    "sales" board; their events must never cross.
    """

    def __init__(self, channel: BroadcastChannel, account_id: str):
        self.channel = channel
        self.account_id = account_id

    def publish(self, board_key: str, event: dict[str, Any]) -> int:
        return self.channel.publish(channel_key(self.account_id, board_key), event)

    def subscribe(self, board_key: str) -> Subscription:
        return self.channel.subscribe(channel_key(self.account_id, board_key))
