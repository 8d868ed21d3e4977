"""
Main cache orchestration: staleness windows, retries, coalescing and
periodic refetch subscriptions.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import TypeAdapter, ValidationError
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from .coalescer import RequestCoalescer
from .core import CacheEntry, CacheMeta, CacheSource, utcnow
from .errors import FetchFailure, NetworkFailure, ParseFailure
from .policies import ResourcePolicy, ResourceType, get_policy

logger = logging.getLogger("cache.manager")

Fetcher = Callable[[], Awaitable[Any]]


class Subscription:
    """
    Handle for a periodic background refetch.

    cancel() stops the timer and aborts a refetch that is in flight.
    """

    def __init__(self, resource_key: str, interval_seconds: float, task: "asyncio.Task[None]"):
        self.resource_key = resource_key
        self.interval_seconds = interval_seconds
        self._task = task

    @property
    def active(self) -> bool:
        return not self._task.done()

    def cancel(self) -> None:
        if not self._task.done():
            logger.debug(f"Cancelling refetch subscription: {self.resource_key}")
            self._task.cancel()

    def __repr__(self) -> str:
        state = "active" if self.active else "cancelled"
        return f"Subscription({self.resource_key!r}, every {self.interval_seconds}s, {state})"


class QueryCacheManager:
    """
    Process-wide query cache with:
    - Per-resource staleness and garbage-collection windows
    - Retry with backoff for transient failures
    - Request coalescing (at most one fetch in flight per key)
    - Optional stale-if-error fallback
    - Cancellable refetch subscriptions

    Construct one at application start and clear() it at teardown.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        coalesce_timeout: Optional[float] = None,
    ):
        """
        Initialize the cache manager.

        Args:
            clock: Returns the current aware datetime
            sleep: Used between retries and refetches
            coalesce_timeout: Timeout for waiting on coalesced requests
        """
        self._entries: Dict[str, CacheEntry] = {}
        self._coalescer = RequestCoalescer(timeout=coalesce_timeout)
        self._clock = clock
        self._sleep = sleep
        self._subscriptions: List[Subscription] = []
        self._adapters: Dict[Any, TypeAdapter] = {}

        # Stats tracking
        self._stats = {
            "hits_fresh": 0,
            "hits_stale": 0,
            "misses": 0,
            "retries": 0,
            "failures": 0,
            "evictions": 0,
        }

    async def get_or_fetch(
        self,
        cache_key: str,
        fetch_fn: Fetcher,
        policy: Optional[ResourcePolicy] = None,
        *,
        stale_if_error: bool = False,
        force_refresh: bool = False,
        abort: Optional[asyncio.Event] = None,
    ) -> Any:
        """Get a payload from cache or fetch it. See get_or_fetch_with_meta."""
        data, _ = await self.get_or_fetch_with_meta(
            cache_key,
            fetch_fn,
            policy,
            stale_if_error=stale_if_error,
            force_refresh=force_refresh,
            abort=abort,
        )
        return data

    async def get_or_fetch_with_meta(
        self,
        cache_key: str,
        fetch_fn: Fetcher,
        policy: Optional[ResourcePolicy] = None,
        *,
        stale_if_error: bool = False,
        force_refresh: bool = False,
        abort: Optional[asyncio.Event] = None,
    ) -> Tuple[Any, CacheMeta]:
        """
        Get data from cache or fetch from upstream.

        Args:
            cache_key: Unique cache key
            fetch_fn: Coroutine function returning the payload
            policy: Staleness and retry policy (default resource policy if None)
            stale_if_error: Serve the previous payload when the refresh fails
            force_refresh: Skip the freshness check
            abort: Event the caller sets to stop waiting

        Returns:
            (data, cache_meta) tuple

        Raises:
            NetworkFailure, HttpStatusFailure, ParseFailure: After retries
                are exhausted (unless a stale payload was served)
            FetchAborted: If abort was set before the result arrived
        """
        policy = policy or get_policy(ResourceType.DEFAULT)
        now = self._clock()
        self.collect_garbage(now)

        entry = self._entries.get(cache_key)
        if entry is not None and not force_refresh and entry.is_fresh(now):
            logger.debug(f"CACHE HIT (fresh): {cache_key} [age={entry.age_seconds(now):.1f}s]")
            self._stats["hits_fresh"] += 1
            return entry.payload, CacheMeta.for_entry(entry, CacheSource.FRESH, now)

        if entry is None:
            logger.info(f"CACHE MISS: {cache_key}")
        elif force_refresh:
            logger.info(f"FORCE REFRESH: {cache_key}")
        else:
            logger.info(f"CACHE STALE: {cache_key} [age={entry.age_seconds(now):.1f}s]")
        self._stats["misses"] += 1

        try:
            fresh_entry = await self._coalescer.run(
                cache_key,
                lambda: self._fetch_and_store(cache_key, fetch_fn, policy),
                abort=abort,
            )
        except FetchFailure as failure:
            self._stats["failures"] += 1
            if stale_if_error and entry is not None:
                logger.warning(
                    f"Serving stale data for {cache_key} after failed refresh: {failure}"
                )
                self._stats["hits_stale"] += 1
                return entry.payload, CacheMeta.for_entry(
                    entry, CacheSource.STALE, self._clock(), error=str(failure)
                )
            raise

        return fresh_entry.payload, CacheMeta.for_entry(
            fresh_entry, CacheSource.UPSTREAM, self._clock()
        )

    async def _fetch_and_store(
        self,
        cache_key: str,
        fetch_fn: Fetcher,
        policy: ResourcePolicy,
    ) -> CacheEntry:
        """Fetch with retries, then replace the entry for the key."""
        request = policy.request

        def should_retry(exc: BaseException) -> bool:
            return isinstance(exc, FetchFailure) and request.retryable_on(exc)

        def wait_for(retry_state: RetryCallState) -> float:
            # attempt_number counts the attempt that just failed, from 1
            return request.retry_delay(retry_state.attempt_number - 1)

        def log_retry(retry_state: RetryCallState) -> None:
            self._stats["retries"] += 1
            logger.warning(
                f"Retrying {cache_key} (attempt {retry_state.attempt_number} of "
                f"{request.max_retries + 1} failed: {retry_state.outcome.exception()})"
            )

        retrying = AsyncRetrying(
            sleep=self._sleep,
            stop=stop_after_attempt(request.max_retries + 1),
            wait=wait_for,
            retry=retry_if_exception(should_retry),
            before_sleep=log_retry,
            reraise=True,
        )
        payload = await retrying(self._fetch_once, cache_key, fetch_fn, policy)

        entry = CacheEntry(
            resource_key=cache_key,
            payload=payload,
            fetched_at=self._clock(),
            stale_after_seconds=policy.stale_after_seconds,
            gc_after_seconds=policy.gc_after_seconds,
        )
        self._entries[cache_key] = entry
        return entry

    async def _fetch_once(
        self,
        cache_key: str,
        fetch_fn: Fetcher,
        policy: ResourcePolicy,
    ) -> Any:
        try:
            payload = await fetch_fn()
        except FetchFailure as failure:
            if failure.resource_key is None:
                failure.resource_key = cache_key
            raise
        except (OSError, asyncio.TimeoutError) as e:
            raise NetworkFailure(str(e) or type(e).__name__, resource_key=cache_key) from e
        except ValueError as e:
            raise ParseFailure(str(e), resource_key=cache_key) from e
        except Exception as e:
            # Untyped fetcher errors are treated as transient
            raise NetworkFailure(f"{type(e).__name__}: {e}", resource_key=cache_key) from e

        if policy.schema is None:
            return payload
        try:
            return self._adapter(policy.schema).validate_python(payload)
        except ValidationError as e:
            raise ParseFailure(
                f"Payload does not match {policy.schema!r}: {e.error_count()} errors",
                resource_key=cache_key,
            ) from e

    def _adapter(self, schema: Any) -> TypeAdapter:
        adapter = self._adapters.get(schema)
        if adapter is None:
            adapter = TypeAdapter(schema)
            self._adapters[schema] = adapter
        return adapter

    def peek(self, cache_key: str) -> Optional[CacheEntry]:
        """Inspect an entry without fetching. None if nothing live is cached."""
        self.collect_garbage()
        return self._entries.get(cache_key)

    def entries(self) -> List[CacheEntry]:
        """Snapshot of all live cached entries."""
        self.collect_garbage()
        return list(self._entries.values())

    def invalidate(self, cache_key: str) -> bool:
        """
        Invalidate a specific cache entry.

        Returns:
            True if entry was found and removed
        """
        if cache_key in self._entries:
            del self._entries[cache_key]
            logger.info(f"Invalidated cache: {cache_key}")
            return True
        return False

    def invalidate_prefix(self, prefix: str) -> int:
        """
        Invalidate all cache entries whose key starts with prefix.

        Returns:
            Number of entries invalidated
        """
        to_delete = [k for k in self._entries if k.startswith(prefix)]
        for key in to_delete:
            del self._entries[key]
        if to_delete:
            logger.info(f"Invalidated {len(to_delete)} entries under '{prefix}'")
        return len(to_delete)

    def collect_garbage(self, now: Optional[datetime] = None) -> int:
        """
        Evict entries that have outlived their garbage-collection window.

        Returns:
            Number of entries evicted
        """
        now = now or self._clock()
        expired = [k for k, e in self._entries.items() if e.is_collectable(now)]
        for key in expired:
            del self._entries[key]
            logger.debug(f"Evicted cache entry: {key}")
        self._stats["evictions"] += len(expired)
        return len(expired)

    def subscribe(
        self,
        cache_key: str,
        fetch_fn: Fetcher,
        policy: Optional[ResourcePolicy] = None,
        interval_seconds: Optional[float] = None,
    ) -> Subscription:
        """
        Refetch a resource periodically in the background.

        Must be called from a running event loop.

        Args:
            cache_key: Unique cache key
            fetch_fn: Coroutine function returning the payload
            policy: Resource policy; its refetch interval is the default
            interval_seconds: Override for the refetch interval

        Returns:
            Subscription whose cancel() stops refetching
        """
        policy = policy or get_policy(ResourceType.DEFAULT)
        interval = interval_seconds or policy.refetch_interval_seconds
        if not interval or interval <= 0:
            raise ValueError(f"No refetch interval configured for {cache_key}")

        async def refetch_loop() -> None:
            while True:
                await self._sleep(interval)
                try:
                    await self.get_or_fetch(cache_key, fetch_fn, policy, force_refresh=True)
                except FetchFailure as e:
                    logger.warning(f"Background refetch failed: {cache_key} - {e}")

        task = asyncio.create_task(refetch_loop())
        subscription = Subscription(cache_key, interval, task)
        self._subscriptions.append(subscription)
        task.add_done_callback(lambda _: self._forget(subscription))
        logger.info(f"Subscribed to {cache_key} every {interval}s")
        return subscription

    def _forget(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def clear(self) -> int:
        """
        Clear all cache entries, cancel refetch subscriptions and abort
        fetches in flight so none of them repopulates the cache.

        Returns:
            Number of entries cleared
        """
        for subscription in list(self._subscriptions):
            subscription.cancel()
        self._coalescer.cancel_all()
        count = len(self._entries)
        self._entries.clear()
        logger.info(f"Cleared {count} cache entries")
        return count

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        total_hits = self._stats["hits_fresh"] + self._stats["hits_stale"]
        total_requests = self._stats["hits_fresh"] + self._stats["misses"]
        hit_rate = (self._stats["hits_fresh"] / total_requests * 100) if total_requests > 0 else 0

        return {
            "entries": len(self._entries),
            "hits_fresh": self._stats["hits_fresh"],
            "hits_stale": self._stats["hits_stale"],
            "hits_total": total_hits,
            "misses": self._stats["misses"],
            "retries": self._stats["retries"],
            "failures": self._stats["failures"],
            "evictions": self._stats["evictions"],
            "hit_rate_percent": round(hit_rate, 1),
            "subscriptions": len(self._subscriptions),
            "coalescer": self._coalescer.get_stats(),
        }

