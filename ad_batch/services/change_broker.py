"""In-process fan-out of job/item change events to per-owner subscribers.

The push channel is an optimization: delivery is best effort, bounded per
subscriber, and never replayed. A subscriber whose queue overflows is flagged
``lagged`` and must recover with a full read from the StateStore.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

ENTITY_JOB = "job"
ENTITY_ITEM = "item"

CHANGE_INSERT = "insert"
CHANGE_UPDATE = "update"
CHANGE_DELETE = "delete"


@dataclass(frozen=True)
class ChangeEvent:
    """One committed change to a job or item row."""

    entity_type: str  # "job" | "item"
    change_kind: str  # "insert" | "update" | "delete"
    entity_id: str
    owner_id: str
    version: int
    after: dict[str, Any] | None = None
    before: dict[str, Any] | None = None

    def to_payload(self) -> dict[str, Any]:
        """Wire shape pushed to clients."""
        return {
            "entity_type": self.entity_type,
            "change_kind": self.change_kind,
            "entity_id": self.entity_id,
            "version": self.version,
            "after": self.after,
        }


class Subscription:
    """A bounded event queue for one owner key."""

    def __init__(self, broker: "ChangeBroker", owner_id: str, maxsize: int):
        self.owner_id = owner_id
        self.lagged = False
        self._broker = broker
        self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        try:
            self._loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, event: ChangeEvent) -> None:
        """Enqueue an event, hopping onto the subscriber's loop if needed."""
        if self._closed:
            return
        if self._loop is not None and not self._on_own_loop():
            self._loop.call_soon_threadsafe(self._put, event)
            return
        self._put(event)

    def _on_own_loop(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    def _put(self, event: ChangeEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            if not self.lagged:
                logger.warning(
                    f"Change queue full for owner {self.owner_id}, "
                    "subscriber must resync with a full read"
                )
            self.lagged = True

    async def get(self) -> ChangeEvent:
        return await self._queue.get()

    def get_nowait(self) -> ChangeEvent | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def qsize(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._broker.unsubscribe(self)


class ChangeBroker:
    """Routes published events to the subscriptions registered for an owner."""

    def __init__(self, queue_size: int = 1000):
        self._queue_size = queue_size
        self._subscriptions: dict[str, set[Subscription]] = defaultdict(set)

    def subscribe(self, owner_id: str) -> Subscription:
        subscription = Subscription(self, owner_id, self._queue_size)
        self._subscriptions[owner_id].add(subscription)
        logger.debug(f"Subscribed to changes for owner {owner_id}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscriptions.get(subscription.owner_id)
        if not subscribers:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscriptions[subscription.owner_id]

    def publish(self, event: ChangeEvent) -> int:
        """Deliver to every subscriber of the event's owner. Returns the fan-out."""
        subscribers = list(self._subscriptions.get(event.owner_id, ()))
        for subscription in subscribers:
            subscription.deliver(event)
        return len(subscribers)

    def subscriber_count(self, owner_id: str | None = None) -> int:
        if owner_id is not None:
            return len(self._subscriptions.get(owner_id, ()))
        return sum(len(subs) for subs in self._subscriptions.values())
