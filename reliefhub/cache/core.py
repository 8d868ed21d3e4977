"""
Core cache data structures.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CacheSource(Enum):
    """Where a served payload came from."""
    FRESH = "fresh"       # Within staleness window
    STALE = "stale"       # Past staleness window, served after a failed refresh
    UPSTREAM = "upstream" # Fetched from the collaborator just now


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """
    A cached payload for one resource key.

    Entries are never mutated: a refetch stores a new entry in place of the
    old one.
    """
    resource_key: str
    payload: T
    fetched_at: datetime
    stale_after_seconds: float
    gc_after_seconds: float

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        """Seconds since the payload was fetched."""
        return ((now or utcnow()) - self.fetched_at).total_seconds()

    def is_fresh(self, now: Optional[datetime] = None) -> bool:
        """True while the payload can be served without revalidation."""
        return self.age_seconds(now) < self.stale_after_seconds

    def is_collectable(self, now: Optional[datetime] = None) -> bool:
        """True once the entry has outlived its garbage-collection window."""
        return self.age_seconds(now) >= self.gc_after_seconds


@dataclass
class CacheMeta:
    """
    Metadata about a cache access, included in API responses.
    """
    last_updated: str  # ISO timestamp of the served payload
    cache_source: str  # "fresh", "stale", or "upstream"
    resource_key: Optional[str] = None
    age_seconds: Optional[float] = None
    error: Optional[str] = None

    @classmethod
    def for_entry(
        cls,
        entry: CacheEntry,
        source: CacheSource,
        now: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> "CacheMeta":
        return cls(
            last_updated=entry.fetched_at.isoformat(),
            cache_source=source.value,
            resource_key=entry.resource_key,
            age_seconds=entry.age_seconds(now),
            error=error,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        result: Dict[str, Any] = {
            "lastUpdated": self.last_updated,
            "cacheSource": self.cache_source,
        }
        if self.error:
            result["error"] = self.error
        if self.resource_key:
            result["_debug"] = {
                "key": self.resource_key,
                "age": round(self.age_seconds, 1) if self.age_seconds is not None else None,
            }
        return result
