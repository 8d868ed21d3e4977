"""
Query cache with per-resource staleness, retries, request coalescing and
dispatch throttling.
"""
from .core import CacheEntry, CacheMeta, CacheSource
from .errors import (
    FetchAborted,
    FetchFailure,
    HttpStatusFailure,
    NetworkFailure,
    ParseFailure,
)
from .policies import (
    RESOURCE_POLICIES,
    RequestPolicy,
    ResourcePolicy,
    ResourceType,
    default_retry_delay,
    exponential_backoff,
    get_policy,
    is_retryable,
    resource_key,
    resource_type_for_path,
)
from .coalescer import RequestCoalescer
from .throttle import ThrottleGuard
from .manager import QueryCacheManager, Subscription

__all__ = [
    # Core types
    "CacheEntry",
    "CacheMeta",
    "CacheSource",
    # Failures
    "FetchAborted",
    "FetchFailure",
    "HttpStatusFailure",
    "NetworkFailure",
    "ParseFailure",
    # Policies
    "RESOURCE_POLICIES",
    "RequestPolicy",
    "ResourcePolicy",
    "ResourceType",
    "default_retry_delay",
    "exponential_backoff",
    "get_policy",
    "is_retryable",
    "resource_key",
    "resource_type_for_path",
    # Coalescing and throttling
    "RequestCoalescer",
    "ThrottleGuard",
    # Manager
    "QueryCacheManager",
    "Subscription",
]
