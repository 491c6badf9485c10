"""Per-workspace fan-out of conversation events.

Every workspace gets one channel, created on first use. Each subscriber owns a
bounded buffer; publishing never waits on a subscriber. When a subscriber falls
behind, its oldest entries are dropped and the next receive yields a single
``refresh`` event so the client knows to re-fetch through the read API.
"""

from __future__ import annotations

import asyncio
from collections import deque
import logging
import threading
import time
from typing import TYPE_CHECKING

from .config import settings
from .events import REFRESH_PAYLOAD, ConversationEvent, encode_event

if TYPE_CHECKING:
    from .relay import RedisEventRelay

logger = logging.getLogger(__name__)


class SubscriptionClosed(Exception):
    """Raised by ``Subscription.recv`` once the handle has been closed."""


class Subscription:
    """An independent receive handle on a workspace channel.

    The cursor starts at the moment of subscription; nothing published earlier
    is replayed.
    """

    def __init__(self, broadcaster: ConversationBroadcaster, workspace_id: str, capacity: int):
        self.workspace_id = workspace_id
        self._broadcaster = broadcaster
        self._capacity = capacity
        self._buffer: deque[str] = deque()
        self._dropped = 0
        self._ready = asyncio.Event()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def _push(self, payload: str) -> None:
        if len(self._buffer) >= self._capacity:
            self._buffer.popleft()
            self._dropped += 1
        self._buffer.append(payload)
        self._ready.set()

    async def recv(self) -> str:
        """Wait for the next encoded event."""
        while True:
            if self._closed:
                raise SubscriptionClosed(self.workspace_id)
            if self._dropped:
                logger.debug(
                    "Subscriber on workspace %s lagged by %d event(s)",
                    self.workspace_id,
                    self._dropped,
                )
                self._dropped = 0
                return REFRESH_PAYLOAD
            if self._buffer:
                return self._buffer.popleft()
            self._ready.clear()
            await self._ready.wait()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._buffer.clear()
        self._ready.set()
        self._broadcaster._release(self)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> str:
        try:
            return await self.recv()
        except SubscriptionClosed:
            raise StopAsyncIteration from None

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class _Channel:
    def __init__(self) -> None:
        self.subscribers: list[Subscription] = []
        self.last_activity = time.monotonic()

    def send(self, payload: str) -> int:
        self.last_activity = time.monotonic()
        for subscriber in list(self.subscribers):
            subscriber._push(payload)
        return len(self.subscribers)


class ConversationBroadcaster:
    """Registry of workspace channels shared by all publishers and subscribers."""

    def __init__(self, capacity: int | None = None, relay: RedisEventRelay | None = None):
        capacity = settings.broadcast_capacity if capacity is None else capacity
        if capacity < 1:
            raise ValueError("broadcast capacity must be >= 1")
        self.capacity = capacity
        self.relay = relay
        self._channels: dict[str, _Channel] = {}
        self._lock = threading.Lock()

    def _channel(self, workspace_id: str) -> _Channel:
        with self._lock:
            channel = self._channels.get(workspace_id)
            if channel is None:
                channel = self._channels[workspace_id] = _Channel()
            return channel

    async def publish(self, workspace_id: str, event: ConversationEvent) -> int:
        """Encode ``event`` and hand it to every live subscriber of the workspace.

        Returns the number of subscribers the event was delivered to.
        """
        workspace_id = str(workspace_id)
        payload = encode_event(event)
        delivered = self._channel(workspace_id).send(payload)

        if self.relay is not None:
            await self.relay.forward(workspace_id, payload)
        return delivered

    def subscribe(self, workspace_id: str) -> Subscription:
        workspace_id = str(workspace_id)
        channel = self._channel(workspace_id)
        subscription = Subscription(self, workspace_id, self.capacity)
        with self._lock:
            channel.subscribers.append(subscription)
        return subscription

    def subscriber_count(self, workspace_id: str) -> int:
        with self._lock:
            channel = self._channels.get(str(workspace_id))
            return len(channel.subscribers) if channel else 0

    def channel_count(self) -> int:
        with self._lock:
            return len(self._channels)

    def evict_idle(self, max_idle_seconds: float | None = None) -> int:
        """Drop channels with no subscribers and no publish within the window."""
        if max_idle_seconds is None:
            max_idle_seconds = settings.broadcast_idle_seconds
        cutoff = time.monotonic() - max_idle_seconds
        with self._lock:
            idle = [
                workspace_id
                for workspace_id, channel in self._channels.items()
                if not channel.subscribers and channel.last_activity <= cutoff
            ]
            for workspace_id in idle:
                del self._channels[workspace_id]
        return len(idle)

    def _release(self, subscription: Subscription) -> None:
        with self._lock:
            channel = self._channels.get(subscription.workspace_id)
            if channel is None:
                return
            if subscription in channel.subscribers:
                channel.subscribers.remove(subscription)
            if not channel.subscribers:
                del self._channels[subscription.workspace_id]
