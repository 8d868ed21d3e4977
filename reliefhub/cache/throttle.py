"""Minimum spacing between identical upstream requests."""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger("cache.throttle")

# Minimum seconds between two dispatches to the same target
MIN_REQUEST_INTERVAL_SECONDS = 3.0


class ThrottleGuard:
    """
    Per-target dispatch spacing for bursty duplicate calls.

    The dispatch slot is reserved before sleeping, so concurrent callers
    for one target line up one interval apart instead of racing.
    """

    def __init__(
        self,
        min_interval_seconds: float = MIN_REQUEST_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.min_interval_seconds = min_interval_seconds
        self._clock = clock
        self._sleep = sleep
        self._last_dispatch: Dict[str, float] = {}

    async def acquire(self, target: str, min_interval: Optional[float] = None) -> float:
        """
        Wait until target may be dispatched again.

        Args:
            target: Request target (usually the URL with its params)
            min_interval: Override for the guard's default interval

        Returns:
            The clock value at which this dispatch was scheduled
        """
        interval = self.min_interval_seconds if min_interval is None else min_interval
        now = self._clock()
        last = self._last_dispatch.get(target)
        dispatch_at = now if last is None else max(now, last + interval)
        self._last_dispatch[target] = dispatch_at

        delay = dispatch_at - now
        if delay > 0:
            logger.debug(f"Throttling {target} for {delay:.2f}s")
            await self._sleep(delay)
        return dispatch_at

    async def throttled_fetch(
        self,
        target: str,
        fetch_fn: Callable[[], Awaitable[Any]],
        min_interval: Optional[float] = None,
    ) -> Any:
        """Dispatch fetch_fn once target's interval has elapsed."""
        await self.acquire(target, min_interval)
        return await fetch_fn()

    def last_dispatch(self, target: str) -> Optional[float]:
        return self._last_dispatch.get(target)

    def reset(self, target: str) -> None:
        """Forget the last dispatch time of a target."""
        self._last_dispatch.pop(target, None)

    def cleanup(self, max_age_seconds: float = 60.0) -> int:
        """
        Drop targets not dispatched within max_age_seconds.

        Returns the number of targets removed.
        """
        cutoff = self._clock() - max_age_seconds
        stale = [t for t, ts in self._last_dispatch.items() if ts < cutoff]
        for target in stale:
            del self._last_dispatch[target]
        return len(stale)
