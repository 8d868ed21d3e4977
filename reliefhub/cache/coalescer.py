"""
Request coalescing to prevent duplicate upstream API calls.

When multiple concurrent requests ask for the same data, only one
upstream call is made and all requesters share the result.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from .errors import FetchAborted, NetworkFailure

logger = logging.getLogger("cache.coalescer")


@dataclass
class InFlightRequest:
    """Tracks an in-progress upstream request."""
    task: "asyncio.Task[Any]"
    started_at: float = field(default_factory=time.monotonic)
    waiter_count: int = 0


class RequestCoalescer:
    """
    Ensures concurrent requests for the same cache key share one upstream call.

    Pattern:
    - First request for a key starts the fetch as a task
    - Subsequent requests for the same key await the same task
    - When the task completes, all waiters receive the same result or error
    - A waiter may abort its own wait; the task is cancelled only when
      no waiters remain

    Usage:
        coalescer = RequestCoalescer()
        result = await coalescer.run(
            cache_key="/api/supply-sites/public",
            fetch_fn=fetch_sites,
        )
    """

    def __init__(self, timeout: Optional[float] = None):
        """
        Initialize the coalescer.

        Args:
            timeout: Max seconds a waiter waits for an in-flight request,
                None to wait indefinitely
        """
        self._in_flight: Dict[str, InFlightRequest] = {}
        self._timeout = timeout

    async def run(
        self,
        cache_key: str,
        fetch_fn: Callable[[], Awaitable[Any]],
        abort: Optional[asyncio.Event] = None,
    ) -> Any:
        """
        Either join an existing in-flight request or initiate a new one.

        Args:
            cache_key: Unique key for this request
            fetch_fn: Coroutine function to call if we need to fetch
            abort: Event the caller sets to stop waiting

        Returns:
            The fetched data (shared among all concurrent callers)

        Raises:
            FetchAborted: If abort was set before the result arrived
            NetworkFailure: If waiting for the in-flight request timed out
            Exception: Any error from fetch_fn is propagated
        """
        if abort is not None and abort.is_set():
            raise FetchAborted(cache_key)

        in_flight = self._in_flight.get(cache_key)
        if in_flight is None:
            task = asyncio.ensure_future(fetch_fn())
            in_flight = InFlightRequest(task=task)
            self._in_flight[cache_key] = in_flight
            task.add_done_callback(lambda t: self._release(cache_key, t))
            logger.debug(f"Initiating fetch for {cache_key}")
        else:
            logger.debug(
                f"Coalescing request for {cache_key} "
                f"(waiters: {in_flight.waiter_count + 1})"
            )

        in_flight.waiter_count += 1
        try:
            return await self._wait(cache_key, in_flight, abort)
        finally:
            in_flight.waiter_count -= 1
            if in_flight.waiter_count == 0 and not in_flight.task.done():
                logger.info(f"All waiters gone, cancelling fetch for {cache_key}")
                in_flight.task.cancel()
                self._release(cache_key, in_flight.task)

    async def _wait(
        self,
        cache_key: str,
        in_flight: InFlightRequest,
        abort: Optional[asyncio.Event],
    ) -> Any:
        waiters = {in_flight.task}
        abort_waiter = None
        if abort is not None:
            abort_waiter = asyncio.ensure_future(abort.wait())
            waiters.add(abort_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self._timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if abort_waiter is not None:
                abort_waiter.cancel()

        if in_flight.task in done:
            if in_flight.task.cancelled():
                # Cancelled by cancel_all
                raise FetchAborted(cache_key)
            return in_flight.task.result()

        if abort_waiter is not None and abort_waiter in done:
            logger.debug(f"Caller aborted wait for {cache_key}")
            raise FetchAborted(cache_key)

        logger.error(f"Timeout waiting for coalesced request: {cache_key}")
        raise NetworkFailure(
            f"Request timed out after {self._timeout}s", resource_key=cache_key
        )

    def _release(self, cache_key: str, task: "asyncio.Task[Any]") -> None:
        current = self._in_flight.get(cache_key)
        if current is not None and current.task is task:
            del self._in_flight[cache_key]

    def cancel_all(self) -> int:
        """
        Cancel every in-flight request. Current waiters get FetchAborted.

        Returns:
            Number of requests cancelled
        """
        in_flight = list(self._in_flight.items())
        self._in_flight.clear()
        for cache_key, request in in_flight:
            logger.debug(f"Cancelling fetch for {cache_key}")
            request.task.cancel()
        return len(in_flight)

    def is_in_flight(self, cache_key: str) -> bool:
        return cache_key in self._in_flight

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight requests."""
        return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        return {
            "active_requests": len(self._in_flight),
            "active_keys": list(self._in_flight.keys()),
        }
