"""
Retry and staleness policies per resource type, and resource key helpers.
"""
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .errors import FetchFailure, HttpStatusFailure, NetworkFailure

# Statuses in the 4xx range that are still worth retrying
RETRYABLE_CLIENT_STATUSES = (408, 429)

DEFAULT_MAX_RETRIES = 2
DEFAULT_BACKOFF_BASE_SECONDS = 1.0
DEFAULT_BACKOFF_CAP_SECONDS = 30.0

HOUR = 60 * 60


def exponential_backoff(
    base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS,
    cap_seconds: float = DEFAULT_BACKOFF_CAP_SECONDS,
) -> Callable[[int], float]:
    """Build a delay function base * 2**attempt, capped."""
    def delay(attempt: int) -> float:
        return min(base_seconds * 2 ** attempt, cap_seconds)
    return delay


def default_retry_delay(attempt: int) -> float:
    """
    Exponential backoff: 1s, 2s, 4s, ... capped at 30s.

    Args:
        attempt: Zero-based index of the retry about to happen
    """
    return min(DEFAULT_BACKOFF_BASE_SECONDS * 2 ** attempt, DEFAULT_BACKOFF_CAP_SECONDS)


def is_retryable(failure: BaseException) -> bool:
    """
    Network failures, 408, 429 and 5xx are transient. Other 4xx and
    parse failures are not.
    """
    if isinstance(failure, NetworkFailure):
        return True
    if isinstance(failure, HttpStatusFailure):
        if failure.is_client_error:
            return failure.code in RETRYABLE_CLIENT_STATUSES
        return True
    return False


@dataclass(frozen=True)
class RequestPolicy:
    """How failed fetches for a resource are retried."""
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay: Callable[[int], float] = default_retry_delay
    retryable_on: Callable[[FetchFailure], bool] = is_retryable


@dataclass(frozen=True)
class ResourcePolicy:
    """
    Caching behaviour for one resource type.

    schema, when set, is any type pydantic can validate (a BaseModel, a
    list of models, a TypedDict...). Payloads that fail validation are
    reported as ParseFailure.
    """
    stale_after_seconds: float = 2 * HOUR
    gc_after_seconds: float = 4 * HOUR
    refetch_interval_seconds: Optional[float] = None
    request: RequestPolicy = field(default_factory=RequestPolicy)
    schema: Optional[Any] = None

    def with_schema(self, schema: Any) -> "ResourcePolicy":
        return replace(self, schema=schema)

    def with_request(self, request: RequestPolicy) -> "ResourcePolicy":
        return replace(self, request=request)


class ResourceType(Enum):
    """Logical resources the UI layer reads through the cache."""
    DEFAULT = "default"
    SPECIES_BIOREGION = "species_bioregion"
    SPECIES_CACHE_STATUS = "species_cache_status"
    SUPPLY_SITES = "supply_sites"
    WEATHER_ALERTS = "weather_alerts"
    FEMA_DISASTERS = "fema_disasters"
    EARTHQUAKES = "earthquakes"
    WILDFIRES = "wildfires"
    EONET_EVENTS = "eonet_events"
    STATES_UNDER_EMERGENCY = "states_under_emergency"
    VOLUNTEER_SHIFTS = "volunteer_shifts"


# Windows by resource type (in seconds)
RESOURCE_POLICIES: Dict[ResourceType, ResourcePolicy] = {
    ResourceType.DEFAULT: ResourcePolicy(),
    ResourceType.SPECIES_BIOREGION: ResourcePolicy(
        stale_after_seconds=72 * HOUR,    # matches the backend species cache
        gc_after_seconds=72 * HOUR,
    ),
    ResourceType.SPECIES_CACHE_STATUS: ResourcePolicy(
        stale_after_seconds=2 * HOUR,
        refetch_interval_seconds=2 * HOUR,
    ),
    ResourceType.SUPPLY_SITES: ResourcePolicy(
        stale_after_seconds=5 * 60,
    ),
    ResourceType.WEATHER_ALERTS: ResourcePolicy(
        stale_after_seconds=2 * HOUR,
        refetch_interval_seconds=2 * HOUR,
    ),
    ResourceType.FEMA_DISASTERS: ResourcePolicy(
        stale_after_seconds=30,
        refetch_interval_seconds=30,
    ),
    ResourceType.EARTHQUAKES: ResourcePolicy(
        stale_after_seconds=10 * 60,
        refetch_interval_seconds=10 * 60,
    ),
    ResourceType.WILDFIRES: ResourcePolicy(
        stale_after_seconds=10 * 60,
        refetch_interval_seconds=10 * 60,
    ),
    ResourceType.EONET_EVENTS: ResourcePolicy(
        stale_after_seconds=15 * 60,
        refetch_interval_seconds=30 * 60,
    ),
    ResourceType.STATES_UNDER_EMERGENCY: ResourcePolicy(
        stale_after_seconds=5 * 60,
        refetch_interval_seconds=5 * 60,
    ),
    ResourceType.VOLUNTEER_SHIFTS: ResourcePolicy(
        stale_after_seconds=0,            # always revalidate
    ),
}

# Path prefixes of the upstream API, longest first
_PATH_PREFIXES = [
    ("/api/species/cache-status", ResourceType.SPECIES_CACHE_STATUS),
    ("/api/species/bioregion", ResourceType.SPECIES_BIOREGION),
    ("/api/supply-sites", ResourceType.SUPPLY_SITES),
    ("/api/weather-alerts-rss", ResourceType.WEATHER_ALERTS),
    ("/api/fema-disasters", ResourceType.FEMA_DISASTERS),
    ("/api/earthquake-incidents", ResourceType.EARTHQUAKES),
    ("/api/wildfire-incidents", ResourceType.WILDFIRES),
    ("/api/nasa-eonet-events", ResourceType.EONET_EVENTS),
    ("/api/states-under-emergency", ResourceType.STATES_UNDER_EMERGENCY),
    ("/api/shifts", ResourceType.VOLUNTEER_SHIFTS),
]


def get_policy(resource_type: ResourceType) -> ResourcePolicy:
    """Get the policy for a resource type, falling back to the default."""
    return RESOURCE_POLICIES.get(resource_type, RESOURCE_POLICIES[ResourceType.DEFAULT])


def resource_type_for_path(path: str) -> ResourceType:
    """
    Determine the resource type for an upstream API path.

    Args:
        path: Path such as "/api/species/bioregion/na_cascadia"

    Returns:
        ResourceType, DEFAULT when no prefix matches
    """
    for prefix, resource_type in _PATH_PREFIXES:
        if path == prefix or path.startswith(prefix + "/") or path.startswith(prefix + "?"):
            return resource_type
    return ResourceType.DEFAULT


def resource_key(path: str, **params: Any) -> str:
    """Build a stable cache key from a path and its query params."""
    sorted_params = sorted((k, v) for k, v in params.items() if v is not None)
    if not sorted_params:
        return path
    return f"{path}:{sorted_params}"
