"""Tests for ClientSyncCache: TTL reads, shared fetches, deltas and backstop refresh."""

import asyncio

import pytest

from ad_batch.schemas.jobs import JobItemRead, JobRead
from ad_batch.services.change_broker import ChangeBroker, ChangeEvent
from ad_batch.services.sync_cache import ClientSyncCache

OWNER = "owner-1"


def _job(job_id="job-1", status="generating", version=1, items=None) -> JobRead:
    return JobRead(
        id=job_id,
        owner_id=OWNER,
        status=status,
        total_items=2,
        input_image_url="https://cdn.example.com/uploads/product.png",
        image_quality="2K",
        group_name="Product Ads",
        version=version,
        items=items or [],
    )


def _item(item_id="item-1", job_id="job-1", sort_order=0, status="pending", version=1) -> JobItemRead:
    return JobItemRead(
        id=item_id,
        job_id=job_id,
        style_id=f"style-{sort_order}",
        style_name="Style",
        platform="instagram",
        aspect_ratio="1:1",
        sort_order=sort_order,
        status=status,
        version=version,
    )


def _job_event(job, change_kind="update", version=None):
    payload = job.model_dump(exclude={"items"})
    return ChangeEvent(
        entity_type="job",
        change_kind=change_kind,
        entity_id=job.id,
        owner_id=OWNER,
        version=version if version is not None else job.version,
        after=None if change_kind == "delete" else payload,
        before=payload if change_kind == "delete" else None,
    )


def _item_event(item, change_kind="update"):
    return ChangeEvent(
        entity_type="item",
        change_kind=change_kind,
        entity_id=item.id,
        owner_id=OWNER,
        version=item.version,
        after=item.model_dump(),
    )


class FakeFetcher:
    """Counts fetches and serves whatever ``rows`` currently holds."""

    def __init__(self, rows=None):
        self.rows = list(rows or [])
        self.calls = 0
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None

    async def __call__(self, owner_key):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return list(self.rows)


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestReads:
    """Tests for TTL-bound reads."""

    @pytest.mark.asyncio
    async def test_fresh_rows_served_without_refetch(self):
        fetcher = FakeFetcher([_job()])
        cache = ClientSyncCache(fetcher, ttl_seconds=60)

        first = await cache.get(OWNER)
        second = await cache.get(OWNER)

        assert fetcher.calls == 1
        assert [j.id for j in first] == [j.id for j in second] == ["job-1"]

    @pytest.mark.asyncio
    async def test_stale_rows_refetched(self):
        clock = FakeClock()
        fetcher = FakeFetcher([_job()])
        cache = ClientSyncCache(fetcher, ttl_seconds=60, clock=clock)

        await cache.get(OWNER)
        clock.now += 61
        await cache.get(OWNER)

        assert fetcher.calls == 2

    @pytest.mark.asyncio
    async def test_force_refresh_bypasses_ttl(self):
        fetcher = FakeFetcher([_job()])
        cache = ClientSyncCache(fetcher, ttl_seconds=60)

        await cache.get(OWNER)
        await cache.get(OWNER, force_refresh=True)

        assert fetcher.calls == 2

    @pytest.mark.asyncio
    async def test_concurrent_gets_share_one_fetch(self):
        fetcher = FakeFetcher([_job()])
        fetcher.gate = asyncio.Event()
        cache = ClientSyncCache(fetcher)

        first = asyncio.create_task(cache.get(OWNER))
        second = asyncio.create_task(cache.get(OWNER, force_refresh=True))
        await asyncio.sleep(0)
        fetcher.gate.set()
        results = await asyncio.gather(first, second)

        assert fetcher.calls == 1
        assert [r[0].id for r in results] == ["job-1", "job-1"]

    @pytest.mark.asyncio
    async def test_failed_refresh_serves_stale_rows(self):
        fetcher = FakeFetcher([_job()])
        cache = ClientSyncCache(fetcher)
        await cache.get(OWNER)

        fetcher.error = RuntimeError("store unavailable")
        rows = await cache.get(OWNER, force_refresh=True)

        assert [j.id for j in rows] == ["job-1"]
        assert cache.entry(OWNER).in_flight is None

    @pytest.mark.asyncio
    async def test_failed_first_fetch_raises(self):
        fetcher = FakeFetcher()
        fetcher.error = RuntimeError("store unavailable")
        cache = ClientSyncCache(fetcher)

        with pytest.raises(RuntimeError):
            await cache.get(OWNER)
        assert cache.peek(OWNER) is None

    @pytest.mark.asyncio
    async def test_invalidate_forces_next_fetch(self):
        fetcher = FakeFetcher([_job()])
        cache = ClientSyncCache(fetcher)
        await cache.get(OWNER)

        cache.invalidate(OWNER)
        await cache.get(OWNER)

        assert fetcher.calls == 2

    @pytest.mark.asyncio
    async def test_active_jobs_filters_terminal(self):
        fetcher = FakeFetcher([_job("a", "generating"), _job("b", "completed"), _job("c", "pending")])
        cache = ClientSyncCache(fetcher)
        await cache.get(OWNER)

        assert [j.id for j in cache.active_jobs(OWNER)] == ["a", "c"]


class TestDeltas:
    """Tests for applying change events to cached rows."""

    @pytest.mark.asyncio
    async def test_insert_prepends_job(self):
        cache = ClientSyncCache(FakeFetcher([_job("old")]))
        await cache.get(OWNER)

        cache.apply_change(_job_event(_job("new", status="pending"), change_kind="insert"))

        assert [j.id for j in cache.peek(OWNER)] == ["new", "old"]

    @pytest.mark.asyncio
    async def test_newer_update_replaces_and_keeps_items(self):
        cache = ClientSyncCache(FakeFetcher([_job(items=[_item()])]))
        await cache.get(OWNER)

        cache.apply_change(_job_event(_job(version=2, status="generating")))

        (job,) = cache.peek(OWNER)
        assert job.version == 2
        assert [i.id for i in job.items] == ["item-1"]

    @pytest.mark.asyncio
    async def test_stale_or_duplicate_update_ignored(self):
        cache = ClientSyncCache(FakeFetcher([_job(version=3, status="generating")]))
        await cache.get(OWNER)

        cache.apply_change(_job_event(_job(version=2, status="pending")))
        cache.apply_change(_job_event(_job(version=3, status="pending")))

        (job,) = cache.peek(OWNER)
        assert job.status == "generating"
        assert job.version == 3

    @pytest.mark.asyncio
    async def test_update_for_uncached_job_ignored(self):
        cache = ClientSyncCache(FakeFetcher([_job("a")]))
        await cache.get(OWNER)

        cache.apply_change(_job_event(_job("b", version=5)))

        assert [j.id for j in cache.peek(OWNER)] == ["a"]

    @pytest.mark.asyncio
    async def test_delete_removes_job(self):
        cache = ClientSyncCache(FakeFetcher([_job("a"), _job("b")]))
        await cache.get(OWNER)

        cache.apply_change(_job_event(_job("a"), change_kind="delete", version=2))

        assert [j.id for j in cache.peek(OWNER)] == ["b"]

    @pytest.mark.asyncio
    async def test_item_events_patch_job_items(self):
        cache = ClientSyncCache(FakeFetcher([_job(items=[_item("item-1", sort_order=0)])]))
        await cache.get(OWNER)

        cache.apply_change(_item_event(_item("item-2", sort_order=1), change_kind="insert"))
        cache.apply_change(_item_event(_item("item-1", status="completed", version=3)))
        cache.apply_change(_item_event(_item("item-1", status="processing", version=2)))

        (job,) = cache.peek(OWNER)
        assert [(i.id, i.status) for i in job.items] == [("item-1", "completed"), ("item-2", "pending")]

    @pytest.mark.asyncio
    async def test_events_without_cached_rows_dropped(self):
        cache = ClientSyncCache(FakeFetcher())

        cache.apply_change(_job_event(_job(), change_kind="insert"))

        assert cache.peek(OWNER) is None

    @pytest.mark.asyncio
    async def test_events_during_fetch_replayed_on_result(self):
        fetcher = FakeFetcher([_job(version=1, status="pending")])
        fetcher.gate = asyncio.Event()
        cache = ClientSyncCache(fetcher)

        pending_get = asyncio.create_task(cache.get(OWNER))
        await asyncio.sleep(0)
        cache.apply_change(_job_event(_job(version=2, status="generating")))
        fetcher.gate.set()
        rows = await pending_get

        assert rows[0].status == "generating"
        assert rows[0].version == 2

    @pytest.mark.asyncio
    async def test_finished_job_invalidates_dependents(self):
        gallery = ClientSyncCache(FakeFetcher([]), name="gallery")
        await gallery.get(OWNER)
        cache = ClientSyncCache(FakeFetcher([_job(status="generating")]), dependents=[gallery])
        await cache.get(OWNER)

        cache.apply_change(_job_event(_job(version=2, status="completed")))

        assert gallery.entry(OWNER).fetched_at is None

    @pytest.mark.asyncio
    async def test_failed_job_does_not_invalidate_dependents(self):
        gallery = ClientSyncCache(FakeFetcher([]), name="gallery")
        await gallery.get(OWNER)
        cache = ClientSyncCache(FakeFetcher([_job(status="generating")]), dependents=[gallery])
        await cache.get(OWNER)

        cache.apply_change(_job_event(_job(version=2, status="failed")))

        assert gallery.entry(OWNER).fetched_at is not None

    @pytest.mark.asyncio
    async def test_refresh_detects_finished_job(self):
        gallery = ClientSyncCache(FakeFetcher([]), name="gallery")
        await gallery.get(OWNER)
        fetcher = FakeFetcher([_job(status="generating")])
        cache = ClientSyncCache(fetcher, dependents=[gallery])
        await cache.get(OWNER)

        fetcher.rows = [_job(version=4, status="partial")]
        await cache.get(OWNER, force_refresh=True)

        assert gallery.entry(OWNER).fetched_at is None


class TestSubscriptions:
    """Tests for the push path and the periodic backstop."""

    @pytest.mark.asyncio
    async def test_broker_events_reach_cache(self):
        broker = ChangeBroker()
        cache = ClientSyncCache(FakeFetcher([_job()]), broker=broker, refresh_interval_seconds=3600)
        cache.subscribe(OWNER)
        await cache.get(OWNER)

        broker.publish(_job_event(_job(version=2, status="completed")))
        for _ in range(5):
            await asyncio.sleep(0)

        assert cache.peek(OWNER)[0].status == "completed"
        await cache.close()
        assert broker.subscriber_count() == 0

    @pytest.mark.asyncio
    async def test_lagged_subscription_invalidates(self):
        broker = ChangeBroker(queue_size=1)
        fetcher = FakeFetcher([_job()])
        cache = ClientSyncCache(fetcher, broker=broker, refresh_interval_seconds=3600)
        cache.subscribe(OWNER)
        await cache.get(OWNER)

        broker.publish(_job_event(_job(version=2)))
        broker.publish(_job_event(_job(version=3)))
        for _ in range(5):
            await asyncio.sleep(0)

        assert cache.entry(OWNER).fetched_at is None
        await cache.close()

    @pytest.mark.asyncio
    async def test_backstop_refresh_without_notifications(self):
        fetcher = FakeFetcher([_job(status="generating")])
        cache = ClientSyncCache(fetcher, ttl_seconds=3600, refresh_interval_seconds=0.01)
        await cache.get(OWNER)
        cache.subscribe(OWNER)

        fetcher.rows = [_job(version=2, status="completed")]
        await asyncio.sleep(0.1)

        assert fetcher.calls >= 2
        assert cache.peek(OWNER)[0].status == "completed"
        await cache.close()

    @pytest.mark.asyncio
    async def test_subscribe_is_idempotent(self):
        broker = ChangeBroker()
        cache = ClientSyncCache(FakeFetcher(), broker=broker, refresh_interval_seconds=3600)

        cache.subscribe(OWNER)
        cache.subscribe(OWNER)

        assert broker.subscriber_count(OWNER) == 1
        await cache.close()

    @pytest.mark.asyncio
    async def test_release_unsubscribes_after_last_holder(self):
        broker = ChangeBroker()
        cache = ClientSyncCache(FakeFetcher(), broker=broker, refresh_interval_seconds=3600)

        cache.retain(OWNER)
        cache.retain(OWNER)
        assert broker.subscriber_count(OWNER) == 1

        await cache.release(OWNER)
        assert broker.subscriber_count(OWNER) == 1

        await cache.release(OWNER)
        assert broker.subscriber_count(OWNER) == 0
        await cache.close()

    @pytest.mark.asyncio
    async def test_close_stops_backstop(self):
        fetcher = FakeFetcher([_job()])
        cache = ClientSyncCache(fetcher, refresh_interval_seconds=0.01)
        cache.subscribe(OWNER)

        await cache.close()
        calls = fetcher.calls
        await asyncio.sleep(0.05)

        assert fetcher.calls == calls
