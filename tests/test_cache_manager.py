"""
Tests for the query cache manager: staleness, coalescing, retries,
stale-if-error, abort and refetch subscriptions.
"""
import asyncio
from typing import List

import pytest

from reliefhub.cache import (
    CacheSource,
    FetchAborted,
    HttpStatusFailure,
    NetworkFailure,
    ParseFailure,
    QueryCacheManager,
    RequestPolicy,
    ResourcePolicy,
)
from reliefhub.schemas import SupplySite


class CountingFetcher:
    """Fetcher that fails with the queued failures, then returns payload."""

    def __init__(self, payload=None, failures: List[Exception] = None):
        self.payload = payload if payload is not None else {"ok": True}
        self.failures = list(failures or [])
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.payload


# =============================================================================
# Caching
# =============================================================================

@pytest.mark.asyncio
async def test_first_read_fetches_and_second_is_served_from_cache(manager, short_policy):
    fetcher = CountingFetcher({"alerts": 3})

    first = await manager.get_or_fetch("alerts", fetcher, short_policy)
    second = await manager.get_or_fetch("alerts", fetcher, short_policy)

    assert first == second == {"alerts": 3}
    assert fetcher.calls == 1


@pytest.mark.asyncio
async def test_meta_reports_source(manager, short_policy):
    fetcher = CountingFetcher()

    _, meta = await manager.get_or_fetch_with_meta("k", fetcher, short_policy)
    assert meta.cache_source == CacheSource.UPSTREAM.value

    _, meta = await manager.get_or_fetch_with_meta("k", fetcher, short_policy)
    assert meta.cache_source == CacheSource.FRESH.value


@pytest.mark.asyncio
async def test_stale_entry_is_refetched(manager, clock, short_policy):
    fetcher = CountingFetcher()
    await manager.get_or_fetch("k", fetcher, short_policy)

    clock.advance(61)
    await manager.get_or_fetch("k", fetcher, short_policy)

    assert fetcher.calls == 2


@pytest.mark.asyncio
async def test_refetch_replaces_entry(manager, clock, short_policy):
    await manager.get_or_fetch("k", CountingFetcher({"v": 1}), short_policy)
    before = manager.peek("k")

    clock.advance(61)
    await manager.get_or_fetch("k", CountingFetcher({"v": 2}), short_policy)
    after = manager.peek("k")

    assert before is not after
    assert before.payload == {"v": 1}
    assert after.payload == {"v": 2}
    assert after.fetched_at > before.fetched_at


@pytest.mark.asyncio
async def test_force_refresh_skips_fresh_entry(manager, short_policy):
    fetcher = CountingFetcher()
    await manager.get_or_fetch("k", fetcher, short_policy)
    await manager.get_or_fetch("k", fetcher, short_policy, force_refresh=True)
    assert fetcher.calls == 2


def test_peek_before_any_fetch_is_none(manager):
    assert manager.peek("never-fetched") is None


@pytest.mark.asyncio
async def test_peek_never_fetches(manager, clock, short_policy):
    fetcher = CountingFetcher()
    await manager.get_or_fetch("k", fetcher, short_policy)
    clock.advance(120)

    entry = manager.peek("k")

    assert entry is not None
    assert not entry.is_fresh(clock())
    assert fetcher.calls == 1


@pytest.mark.asyncio
async def test_invalidate_forces_refetch_within_staleness_window(manager, short_policy):
    fetcher = CountingFetcher()
    await manager.get_or_fetch("k", fetcher, short_policy)

    assert manager.invalidate("k") is True
    assert manager.peek("k") is None
    await manager.get_or_fetch("k", fetcher, short_policy)

    assert fetcher.calls == 2
    assert manager.invalidate("missing") is False


@pytest.mark.asyncio
async def test_invalidate_prefix(manager, short_policy):
    for key in ("/api/species/bioregion/a", "/api/species/bioregion/b", "/api/shifts"):
        await manager.get_or_fetch(key, CountingFetcher(), short_policy)

    assert manager.invalidate_prefix("/api/species/") == 2
    assert manager.peek("/api/shifts") is not None


@pytest.mark.asyncio
async def test_entries_outliving_gc_window_are_evicted(manager, clock, short_policy):
    await manager.get_or_fetch("k", CountingFetcher(), short_policy)

    clock.advance(1800)
    assert manager.collect_garbage() == 0

    clock.advance(1800)
    assert manager.collect_garbage() == 1
    assert manager.peek("k") is None


@pytest.mark.asyncio
async def test_peek_and_entries_skip_entries_past_gc_window(manager, clock, short_policy):
    await manager.get_or_fetch("k", CountingFetcher(), short_policy)
    clock.advance(3601)

    assert manager.entries() == []
    assert manager.peek("k") is None
    assert manager.get_stats()["evictions"] == 1


@pytest.mark.asyncio
async def test_meta_reports_zero_age_for_just_fetched_entry(manager, short_policy):
    _, meta = await manager.get_or_fetch_with_meta("k", CountingFetcher(), short_policy)

    assert meta.to_dict()["_debug"]["age"] == 0.0


# =============================================================================
# Coalescing
# =============================================================================

@pytest.mark.asyncio
async def test_concurrent_reads_share_one_fetch(manager, short_policy):
    gate = asyncio.Event()
    calls = 0

    async def slow_fetch():
        nonlocal calls
        calls += 1
        await gate.wait()
        return {"sites": 12}

    first = asyncio.create_task(manager.get_or_fetch("sites", slow_fetch, short_policy))
    second = asyncio.create_task(manager.get_or_fetch("sites", slow_fetch, short_policy))
    await asyncio.sleep(0)
    gate.set()

    results = await asyncio.gather(first, second)

    assert results == [{"sites": 12}, {"sites": 12}]
    assert calls == 1


@pytest.mark.asyncio
async def test_concurrent_reads_share_failure(manager):
    gate = asyncio.Event()
    calls = 0

    async def failing_fetch():
        nonlocal calls
        calls += 1
        await gate.wait()
        raise HttpStatusFailure(404)

    tasks = [
        asyncio.create_task(manager.get_or_fetch("gone", failing_fetch))
        for _ in range(3)
    ]
    await asyncio.sleep(0)
    gate.set()
    results = await asyncio.gather(*tasks, return_exceptions=True)

    assert calls == 1
    assert all(isinstance(r, HttpStatusFailure) for r in results)


@pytest.mark.asyncio
async def test_different_keys_fetch_independently(manager, short_policy):
    fetcher = CountingFetcher()
    await asyncio.gather(
        manager.get_or_fetch("a", fetcher, short_policy),
        manager.get_or_fetch("b", fetcher, short_policy),
    )
    assert fetcher.calls == 2


# =============================================================================
# Retries and failures
# =============================================================================

@pytest.mark.asyncio
async def test_rate_limited_fetch_is_retried_until_success(manager, short_policy):
    fetcher = CountingFetcher(
        {"ok": True},
        failures=[HttpStatusFailure(429), HttpStatusFailure(429), HttpStatusFailure(429)],
    )

    result = await manager.get_or_fetch("k", fetcher, short_policy)

    assert result == {"ok": True}
    assert fetcher.calls == 4


@pytest.mark.asyncio
async def test_not_found_is_not_retried(manager, short_policy):
    fetcher = CountingFetcher(failures=[HttpStatusFailure(404)])

    with pytest.raises(HttpStatusFailure) as exc_info:
        await manager.get_or_fetch("k", fetcher, short_policy)

    assert exc_info.value.code == 404
    assert fetcher.calls == 1


@pytest.mark.asyncio
async def test_request_timeout_status_is_retried(manager, short_policy):
    fetcher = CountingFetcher(failures=[HttpStatusFailure(408)])
    assert await manager.get_or_fetch("k", fetcher, short_policy) == {"ok": True}
    assert fetcher.calls == 2


@pytest.mark.asyncio
async def test_retries_exhausted_surfaces_last_failure(manager):
    policy = ResourcePolicy(request=RequestPolicy(max_retries=2, retry_delay=lambda a: 0))
    fetcher = CountingFetcher(failures=[NetworkFailure("down")] * 5)

    with pytest.raises(NetworkFailure):
        await manager.get_or_fetch("k", fetcher, policy)

    assert fetcher.calls == 3
    assert manager.peek("k") is None


@pytest.mark.asyncio
async def test_default_backoff_doubles(manager, sleeper):
    fetcher = CountingFetcher(failures=[HttpStatusFailure(503), HttpStatusFailure(503)])

    await manager.get_or_fetch("k", fetcher)

    assert sleeper.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_builtin_connection_errors_become_network_failures(manager):
    policy = ResourcePolicy(request=RequestPolicy(max_retries=0))
    fetcher = CountingFetcher(failures=[ConnectionError("reset")])

    with pytest.raises(NetworkFailure) as exc_info:
        await manager.get_or_fetch("k", fetcher, policy)

    assert exc_info.value.resource_key == "k"


@pytest.mark.asyncio
async def test_os_errors_are_retried_then_served_stale(manager, clock):
    policy = ResourcePolicy(
        stale_after_seconds=60,
        request=RequestPolicy(max_retries=2, retry_delay=lambda attempt: 0),
    )
    await manager.get_or_fetch("k", CountingFetcher({"v": 1}), policy)
    clock.advance(120)
    fetcher = CountingFetcher(failures=[OSError("Network is unreachable")] * 3)

    data, meta = await manager.get_or_fetch_with_meta("k", fetcher, policy, stale_if_error=True)

    assert data == {"v": 1}
    assert meta.cache_source == CacheSource.STALE.value
    assert "Network is unreachable" in meta.error
    assert fetcher.calls == 3


@pytest.mark.asyncio
async def test_untyped_fetcher_errors_become_retryable_network_failures(manager, short_policy):
    fetcher = CountingFetcher(failures=[RuntimeError("socket closed"), asyncio.TimeoutError()])

    assert await manager.get_or_fetch("k", fetcher, short_policy) == {"ok": True}
    assert fetcher.calls == 3


@pytest.mark.asyncio
async def test_untyped_fetcher_error_surfaces_as_network_failure(manager):
    policy = ResourcePolicy(request=RequestPolicy(max_retries=0))
    error = RuntimeError("socket closed")

    with pytest.raises(NetworkFailure) as exc_info:
        await manager.get_or_fetch("k", CountingFetcher(failures=[error]), policy)

    assert exc_info.value.__cause__ is error
    assert "RuntimeError" in str(exc_info.value)


@pytest.mark.asyncio
async def test_schema_mismatch_is_parse_failure_without_retry(manager, short_policy):
    policy = short_policy.with_schema(SupplySite)
    fetcher = CountingFetcher({"name": "No id"})

    with pytest.raises(ParseFailure):
        await manager.get_or_fetch("site", fetcher, policy)

    assert fetcher.calls == 1


@pytest.mark.asyncio
async def test_schema_validated_payload_is_cached(manager, short_policy):
    policy = short_policy.with_schema(SupplySite)
    fetcher = CountingFetcher({"id": "rec1", "name": "Asheville Hub", "latitude": 35.6})

    site = await manager.get_or_fetch("site", fetcher, policy)

    assert isinstance(site, SupplySite)
    assert site.latitude == 35.6
    assert manager.peek("site").payload is site


# =============================================================================
# Stale-if-error
# =============================================================================

@pytest.mark.asyncio
async def test_stale_if_error_serves_previous_payload(manager, clock):
    policy = ResourcePolicy(
        stale_after_seconds=60,
        request=RequestPolicy(max_retries=0),
    )
    await manager.get_or_fetch("k", CountingFetcher({"v": 1}), policy)
    clock.advance(120)

    data, meta = await manager.get_or_fetch_with_meta(
        "k",
        CountingFetcher(failures=[HttpStatusFailure(500)]),
        policy,
        stale_if_error=True,
    )

    assert data == {"v": 1}
    assert meta.cache_source == CacheSource.STALE.value
    assert "500" in meta.error


@pytest.mark.asyncio
async def test_failure_without_stale_if_error_keeps_old_entry(manager, clock):
    policy = ResourcePolicy(stale_after_seconds=60, request=RequestPolicy(max_retries=0))
    await manager.get_or_fetch("k", CountingFetcher({"v": 1}), policy)
    clock.advance(120)

    with pytest.raises(HttpStatusFailure):
        await manager.get_or_fetch("k", CountingFetcher(failures=[HttpStatusFailure(500)]), policy)

    assert manager.peek("k").payload == {"v": 1}


@pytest.mark.asyncio
async def test_stale_if_error_without_previous_entry_raises(manager):
    policy = ResourcePolicy(request=RequestPolicy(max_retries=0))
    with pytest.raises(NetworkFailure):
        await manager.get_or_fetch(
            "k",
            CountingFetcher(failures=[NetworkFailure("down")]),
            policy,
            stale_if_error=True,
        )


# =============================================================================
# Abort
# =============================================================================

@pytest.mark.asyncio
async def test_abort_cancels_fetch_when_last_waiter_leaves(manager):
    started = asyncio.Event()
    cancelled = False

    async def never_finishes():
        nonlocal cancelled
        started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            cancelled = True
            raise

    abort = asyncio.Event()
    task = asyncio.create_task(manager.get_or_fetch("k", never_finishes, abort=abort))
    await started.wait()
    abort.set()

    with pytest.raises(FetchAborted):
        await task
    await asyncio.sleep(0)

    assert cancelled
    assert manager.get_stats()["coalescer"]["active_requests"] == 0
    assert manager.peek("k") is None


@pytest.mark.asyncio
async def test_abort_by_one_waiter_does_not_affect_others(manager):
    gate = asyncio.Event()

    async def gated():
        await gate.wait()
        return "payload"

    abort = asyncio.Event()
    leaving = asyncio.create_task(manager.get_or_fetch("k", gated, abort=abort))
    staying = asyncio.create_task(manager.get_or_fetch("k", gated))
    await asyncio.sleep(0)

    abort.set()
    with pytest.raises(FetchAborted):
        await leaving
    gate.set()

    assert await staying == "payload"


@pytest.mark.asyncio
async def test_already_aborted_never_fetches(manager):
    fetcher = CountingFetcher()
    abort = asyncio.Event()
    abort.set()

    with pytest.raises(FetchAborted):
        await manager.get_or_fetch("k", fetcher, abort=abort)

    assert fetcher.calls == 0


# =============================================================================
# Subscriptions
# =============================================================================

@pytest.mark.asyncio
async def test_subscription_refetches_until_cancelled():
    manager = QueryCacheManager()
    fetcher = CountingFetcher()

    subscription = manager.subscribe("alerts", fetcher, interval_seconds=0.01)
    await asyncio.sleep(0.2)
    subscription.cancel()
    await asyncio.sleep(0)
    calls_at_cancel = fetcher.calls
    await asyncio.sleep(0.05)

    assert calls_at_cancel >= 2
    assert fetcher.calls == calls_at_cancel
    assert not subscription.active
    assert manager.get_stats()["subscriptions"] == 0


@pytest.mark.asyncio
async def test_cancelling_subscription_aborts_refetch_in_flight(manager):
    started = asyncio.Event()
    cancelled = False

    async def blocking_fetch():
        nonlocal cancelled
        started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            cancelled = True
            raise

    subscription = manager.subscribe("alerts", blocking_fetch, interval_seconds=60)
    await started.wait()
    assert manager.get_stats()["coalescer"]["active_keys"] == ["alerts"]

    subscription.cancel()
    for _ in range(5):
        await asyncio.sleep(0)

    assert cancelled
    assert not subscription.active
    assert manager.get_stats()["coalescer"]["active_requests"] == 0
    assert manager.peek("alerts") is None


@pytest.mark.asyncio
async def test_subscription_uses_policy_interval():
    manager = QueryCacheManager()
    policy = ResourcePolicy(refetch_interval_seconds=120)

    subscription = manager.subscribe("alerts", CountingFetcher(), policy)

    assert subscription.interval_seconds == 120
    manager.clear()
    await asyncio.sleep(0)
    assert not subscription.active


def test_subscription_requires_interval(manager):
    with pytest.raises(ValueError):
        manager.subscribe("k", CountingFetcher(), ResourcePolicy())


# =============================================================================
# Stats
# =============================================================================

@pytest.mark.asyncio
async def test_stats_count_hits_and_misses(manager, short_policy):
    fetcher = CountingFetcher()
    await manager.get_or_fetch("k", fetcher, short_policy)
    await manager.get_or_fetch("k", fetcher, short_policy)

    stats = manager.get_stats()

    assert stats["entries"] == 1
    assert stats["misses"] == 1
    assert stats["hits_fresh"] == 1
    assert stats["hit_rate_percent"] == 50.0


@pytest.mark.asyncio
async def test_clear_drops_everything(manager, short_policy):
    await manager.get_or_fetch("a", CountingFetcher(), short_policy)
    await manager.get_or_fetch("b", CountingFetcher(), short_policy)

    assert manager.clear() == 2
    assert manager.entries() == []


@pytest.mark.asyncio
async def test_clear_aborts_fetches_in_flight(manager, short_policy):
    gate = asyncio.Event()

    async def gated():
        await gate.wait()
        return {"user": "before-logout"}

    reader = asyncio.create_task(manager.get_or_fetch("k", gated, short_policy))
    await asyncio.sleep(0)

    manager.clear()
    gate.set()

    with pytest.raises(FetchAborted):
        await reader
    await asyncio.sleep(0)
    assert manager.peek("k") is None
    assert manager.get_stats()["coalescer"]["active_requests"] == 0
