"""
Upstream fetchers for the relief API.

Each fetcher is a zero-argument coroutine function that returns decoded
JSON or raises NetworkFailure, HttpStatusFailure or ParseFailure.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from reliefhub.cache import (
    HttpStatusFailure,
    NetworkFailure,
    ParseFailure,
    ThrottleGuard,
    resource_key,
)

logger = logging.getLogger("fetchers")

Fetcher = Callable[[], Awaitable[Any]]


def _raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    text = response.text[:200] if response.text else response.reason_phrase
    raise HttpStatusFailure(
        response.status_code,
        f"{response.status_code}: {text}",
        context={"url": str(response.request.url)},
    )


def _decode(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise ParseFailure(
            f"Invalid JSON from {response.request.url}: {e}",
            context={"url": str(response.request.url)},
        ) from e


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    params: Optional[Dict[str, Any]] = None,
    json: Any = None,
) -> Any:
    """
    Perform one request and decode its JSON body.

    Raises:
        NetworkFailure: No response was received
        HttpStatusFailure: Response status was not 2xx
        ParseFailure: Body was not valid JSON
    """
    try:
        response = await client.request(method, url, params=params, json=json)
    except httpx.TimeoutException as e:
        raise NetworkFailure(f"Timed out requesting {url}", context={"url": url}) from e
    except httpx.TransportError as e:
        raise NetworkFailure(f"Could not reach {url}: {e}", context={"url": url}) from e

    _raise_for_status(response)
    return _decode(response)


def json_fetcher(
    client: httpx.AsyncClient,
    url: str,
    params: Optional[Dict[str, Any]] = None,
    throttle: Optional[ThrottleGuard] = None,
    min_interval: Optional[float] = None,
) -> Fetcher:
    """
    Build a GET fetcher for url.

    Args:
        client: Shared async HTTP client
        url: Absolute URL or path relative to the client's base_url
        params: Query parameters
        throttle: Guard spacing out identical requests, if any
        min_interval: Override for the guard's interval

    Returns:
        Coroutine function suitable for QueryCacheManager.get_or_fetch
    """
    target = resource_key(url, **(params or {}))

    async def fetch() -> Any:
        logger.debug(f"GET {target}")
        return await request_json(client, "GET", url, params=params)

    if throttle is None:
        return fetch

    async def throttled() -> Any:
        return await throttle.throttled_fetch(target, fetch, min_interval)

    return throttled
