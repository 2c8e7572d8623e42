"""Process-wide registry of progress channels and their SSE subscribers."""
from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from crawler.models import ProgressSnapshot

LOGGER = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 256

Event = Tuple[str, Any]


@dataclass
class Subscription:
    """One connected listener for one execution."""

    execution_id: str
    queue: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE))
    loop: Optional[asyncio.AbstractEventLoop] = None

    def offer(self, event: Event) -> None:
        """Queue ``event`` without blocking; the oldest event is dropped when full."""
        if self.loop is not None and self.loop.is_running():
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is not self.loop:
                self.loop.call_soon_threadsafe(self._put, event)
                return
        self._put(event)

    def _put(self, event: Event) -> None:
        if self.queue.full():
            try:
                self.queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
        self.queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Next event, or None after ``timeout`` seconds."""
        if not self.queue.empty():
            return self.queue.get_nowait()
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None


@dataclass
class _Channel:
    snapshot: Optional[ProgressSnapshot] = None
    status: Optional[str] = None
    error: Optional[str] = None
    finished: bool = False
    subscribers: List[Subscription] = field(default_factory=list)


class ConnectionRegistry:
    """Holds the latest snapshot and status per execution.

    Channels are created on first publish or subscribe and removed once the
    execution has finished and the last subscriber has left.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._channels: Dict[str, _Channel] = {}

    def subscribe(self, execution_id: str) -> Subscription:
        try:
            loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        subscription = Subscription(execution_id=execution_id, loop=loop)
        with self._lock:
            channel = self._channels.setdefault(execution_id, _Channel())
            channel.subscribers.append(subscription)
            if channel.snapshot is not None:
                subscription.offer(("progress", channel.snapshot))
            if channel.finished:
                subscription.offer(("status", {"status": channel.status, "error": channel.error}))
        LOGGER.debug("Subscriber added for %s", execution_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            channel = self._channels.get(subscription.execution_id)
            if channel is None:
                return
            if subscription in channel.subscribers:
                channel.subscribers.remove(subscription)
            self._prune(subscription.execution_id, channel)
        LOGGER.debug("Subscriber removed for %s", subscription.execution_id)

    def publish_progress(self, snapshot: ProgressSnapshot) -> None:
        with self._lock:
            channel = self._channels.setdefault(snapshot.execution_id, _Channel())
            channel.snapshot = snapshot
            subscribers = list(channel.subscribers)
        for subscription in subscribers:
            subscription.offer(("progress", snapshot))

    def publish_status(self, execution_id: str, status: str, *, finished: bool, error: Optional[str] = None) -> None:
        with self._lock:
            channel = self._channels.setdefault(execution_id, _Channel())
            channel.status = status
            channel.error = error
            channel.finished = finished
            subscribers = list(channel.subscribers)
            if finished:
                self._prune(execution_id, channel)
        for subscription in subscribers:
            subscription.offer(("status", {"status": status, "error": error}))

    def latest_snapshot(self, execution_id: str) -> Optional[ProgressSnapshot]:
        with self._lock:
            channel = self._channels.get(execution_id)
            return channel.snapshot if channel else None

    def subscriber_count(self, execution_id: str) -> int:
        with self._lock:
            channel = self._channels.get(execution_id)
            return len(channel.subscribers) if channel else 0

    def has_channel(self, execution_id: str) -> bool:
        with self._lock:
            return execution_id in self._channels

    def _prune(self, execution_id: str, channel: _Channel) -> None:
        # Caller holds the lock.
        if channel.subscribers:
            return
        if channel.finished or (channel.snapshot is None and channel.status is None):
            self._channels.pop(execution_id, None)
