"""Per-owner read cache kept in sync by push deltas and periodic refresh.

Two independent paths write into the same entries:

* change events from the ChangeBroker, applied as deltas (fast, best effort)
* a forced refresh every ``refresh_interval_seconds`` (the correctness
  backstop; the cache is correct with notifications disabled entirely)

Concurrent ``get`` calls for one owner share a single in-flight fetch.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from ad_batch.db.models import JOB_ACTIVE_STATUSES, JOB_FINISHED_STATUSES
from ad_batch.schemas.jobs import JobItemRead, JobRead
from ad_batch.services.change_broker import (
    CHANGE_DELETE,
    CHANGE_INSERT,
    ENTITY_ITEM,
    ENTITY_JOB,
    ChangeBroker,
    ChangeEvent,
    Subscription,
)

logger = logging.getLogger(__name__)

Fetcher = Callable[[str], Awaitable[list[Any]]]


@dataclass
class CacheEntry:
    """Cached rows for one owner key, most recent first."""

    owner_key: str
    rows: list[Any] = field(default_factory=list)
    fetched_at: float | None = None
    in_flight: asyncio.Task | None = None
    buffered: list[ChangeEvent] = field(default_factory=list)


@dataclass
class _Watch:
    subscription: Subscription | None
    tasks: list[asyncio.Task]


class ClientSyncCache:
    """TTL cache of an owner's jobs (or gallery rows) with live updates."""

    def __init__(
        self,
        fetcher: Fetcher,
        ttl_seconds: float = 60.0,
        refresh_interval_seconds: float = 60.0,
        broker: ChangeBroker | None = None,
        dependents: Iterable["ClientSyncCache"] = (),
        clock: Callable[[], float] = time.monotonic,
        name: str = "jobs",
    ):
        """Initialize the cache.

        Args:
            fetcher: Loads the full row list for an owner key
            ttl_seconds: How long a fetched list is served without refetching
            refresh_interval_seconds: Backstop forced-refresh period per subscription
            broker: Source of change events (None disables push deltas)
            dependents: Caches invalidated when a job finishes (gallery, collections)
            clock: Monotonic time source
            name: Label for logs
        """
        self._fetcher = fetcher
        self.ttl_seconds = ttl_seconds
        self.refresh_interval_seconds = refresh_interval_seconds
        self._broker = broker
        self.dependents = list(dependents)
        self._clock = clock
        self.name = name
        self._entries: dict[str, CacheEntry] = {}
        self._watches: dict[str, _Watch] = {}
        self._holders: dict[str, int] = {}

    # --- Reads ---

    async def get(self, owner_key: str, force_refresh: bool = False) -> list[Any]:
        """Rows for an owner, fetched only when stale, forced, or never loaded.

        A failed fetch serves the previous rows when there are any, otherwise
        the error propagates.
        """
        entry = self._entry(owner_key)
        if entry.in_flight is not None:
            return await asyncio.shield(entry.in_flight)
        if not force_refresh and self._is_fresh(entry):
            return list(entry.rows)

        entry.in_flight = asyncio.create_task(self._fetch(entry), name=f"{self.name}-fetch-{owner_key}")
        return await asyncio.shield(entry.in_flight)

    def peek(self, owner_key: str) -> list[Any] | None:
        """Cached rows without fetching (None when never loaded)."""
        entry = self._entries.get(owner_key)
        if entry is None or entry.fetched_at is None and not entry.rows:
            return None
        return list(entry.rows)

    def active_jobs(self, owner_key: str) -> list[Any]:
        return [job for job in self.peek(owner_key) or [] if job.status in JOB_ACTIVE_STATUSES]

    def entry(self, owner_key: str) -> CacheEntry | None:
        return self._entries.get(owner_key)

    def invalidate(self, owner_key: str) -> None:
        """Mark an owner's rows stale; the next get refetches."""
        entry = self._entries.get(owner_key)
        if entry is not None:
            entry.fetched_at = None
        logger.debug(f"Invalidated {self.name} cache for {owner_key}")

    # --- Subscriptions ---

    def subscribe(self, owner_key: str) -> None:
        """Start push deltas and the backstop refresh for an owner.

        Must be called from a running event loop. Idempotent.
        """
        if owner_key in self._watches:
            return

        subscription = None
        tasks = []
        if self._broker is not None:
            subscription = self._broker.subscribe(owner_key)
            tasks.append(asyncio.create_task(self._consume(subscription), name=f"{self.name}-deltas-{owner_key}"))
        tasks.append(asyncio.create_task(self._backstop(owner_key), name=f"{self.name}-refresh-{owner_key}"))
        self._watches[owner_key] = _Watch(subscription, tasks)
        logger.debug(f"Subscribed {self.name} cache to {owner_key}")

    def retain(self, owner_key: str) -> None:
        """Keep an owner subscribed until every holder has released it."""
        self._holders[owner_key] = self._holders.get(owner_key, 0) + 1
        self.subscribe(owner_key)

    async def release(self, owner_key: str) -> None:
        remaining = self._holders.get(owner_key, 0) - 1
        if remaining > 0:
            self._holders[owner_key] = remaining
            return
        self._holders.pop(owner_key, None)
        await self.unsubscribe(owner_key)
        logger.debug(f"Released {self.name} cache subscription for {owner_key}")

    async def unsubscribe(self, owner_key: str) -> None:
        watch = self._watches.pop(owner_key, None)
        if watch is None:
            return
        if watch.subscription is not None:
            watch.subscription.close()
        for task in watch.tasks:
            task.cancel()
        await asyncio.gather(*watch.tasks, return_exceptions=True)

    async def close(self) -> None:
        """Cancel all subscriptions, backstop refreshes and in-flight fetches."""
        self._holders.clear()
        for owner_key in list(self._watches):
            await self.unsubscribe(owner_key)

        fetches = [e.in_flight for e in self._entries.values() if e.in_flight is not None]
        for task in fetches:
            task.cancel()
        await asyncio.gather(*fetches, return_exceptions=True)

    async def _consume(self, subscription: Subscription) -> None:
        owner_key = subscription.owner_id
        while True:
            event = await subscription.get()
            if subscription.lagged:
                # Events were dropped; only a full read is trustworthy now
                while subscription.get_nowait() is not None:
                    pass
                subscription.lagged = False
                logger.info(f"{self.name} subscription for {owner_key} lagged, invalidating")
                self.invalidate(owner_key)
                continue
            try:
                self.apply_change(event)
            except Exception:
                logger.exception(f"Failed to apply {event.entity_type}.{event.change_kind} to {self.name} cache")
                self.invalidate(owner_key)

    async def _backstop(self, owner_key: str) -> None:
        while True:
            await asyncio.sleep(self.refresh_interval_seconds)
            try:
                await self.get(owner_key, force_refresh=True)
            except Exception as e:
                logger.warning(f"Backstop refresh of {self.name} cache for {owner_key} failed: {e}")

    # --- Deltas ---

    def apply_change(self, event: ChangeEvent) -> None:
        """Apply one change event to the owner's cached rows.

        Events for owners with nothing cached are dropped; events that arrive
        during a fetch are replayed on top of its result.
        """
        entry = self._entries.get(event.owner_id)
        if entry is None:
            return
        if entry.in_flight is not None:
            entry.buffered.append(event)
            return
        if entry.fetched_at is None and not entry.rows:
            return
        self._apply(entry, event)

    def _apply(self, entry: CacheEntry, event: ChangeEvent) -> None:
        if event.entity_type == ENTITY_JOB:
            self._apply_job(entry, event)
        elif event.entity_type == ENTITY_ITEM:
            self._apply_item(entry, event)

    def _apply_job(self, entry: CacheEntry, event: ChangeEvent) -> None:
        index = self._index_of(entry.rows, event.entity_id)

        if event.change_kind == CHANGE_DELETE:
            if index is not None:
                del entry.rows[index]
            return

        if index is None:
            if event.change_kind == CHANGE_INSERT:
                entry.rows.insert(0, JobRead.model_validate(event.after))
            return

        cached = entry.rows[index]
        if event.version <= cached.version:
            return
        updated = JobRead.model_validate({**event.after, "items": cached.items})
        entry.rows[index] = updated

        if cached.status not in JOB_FINISHED_STATUSES and updated.status in JOB_FINISHED_STATUSES:
            self._invalidate_dependents(entry.owner_key, updated.id)

    def _apply_item(self, entry: CacheEntry, event: ChangeEvent) -> None:
        snapshot = event.after or event.before or {}
        job_index = self._index_of(entry.rows, snapshot.get("job_id"))
        if job_index is None:
            return
        items = entry.rows[job_index].items
        index = self._index_of(items, event.entity_id)

        if event.change_kind == CHANGE_DELETE:
            if index is not None:
                del items[index]
            return

        item = JobItemRead.model_validate(event.after)
        if index is None:
            items.append(item)
            items.sort(key=lambda i: i.sort_order)
        elif event.version > items[index].version:
            items[index] = item

    def _invalidate_dependents(self, owner_key: str, job_id: str) -> None:
        if not self.dependents:
            return
        logger.info(f"Job {job_id} finished, invalidating {', '.join(d.name for d in self.dependents)}")
        for dependent in self.dependents:
            dependent.invalidate(owner_key)

    # --- Internals ---

    def _entry(self, owner_key: str) -> CacheEntry:
        entry = self._entries.get(owner_key)
        if entry is None:
            entry = self._entries[owner_key] = CacheEntry(owner_key=owner_key)
        return entry

    def _is_fresh(self, entry: CacheEntry) -> bool:
        return entry.fetched_at is not None and self._clock() - entry.fetched_at < self.ttl_seconds

    async def _fetch(self, entry: CacheEntry) -> list[Any]:
        try:
            rows = await self._fetcher(entry.owner_key)
        except Exception as e:
            entry.buffered.clear()
            if entry.fetched_at is None and not entry.rows:
                raise
            logger.warning(f"Refreshing {self.name} cache for {entry.owner_key} failed, serving stale rows: {e}")
            return list(entry.rows)
        finally:
            entry.in_flight = None

        previous = {row.id: getattr(row, "status", None) for row in entry.rows}
        entry.rows = list(rows)
        entry.fetched_at = self._clock()

        buffered, entry.buffered = entry.buffered, []
        for event in buffered:
            self._apply(entry, event)

        for row in entry.rows:
            before = previous.get(row.id)
            status = getattr(row, "status", None)
            if before is not None and before not in JOB_FINISHED_STATUSES and status in JOB_FINISHED_STATUSES:
                self._invalidate_dependents(entry.owner_key, row.id)

        return list(entry.rows)

    @staticmethod
    def _index_of(rows: list[Any], row_id: str | None) -> int | None:
        if row_id is None:
            return None
        for index, row in enumerate(rows):
            if row.id == row_id:
                return index
        return None
