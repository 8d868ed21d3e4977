"""
Recency classification shared by cache-status reports and map markers.

classify() holds no default thresholds. Each view passes its own: supply
site maps count in days (7/30), the species cache in hours (6/24).
"""
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional


class FreshnessBucket(Enum):
    FRESH = "fresh"
    AGING = "aging"
    STALE = "stale"
    UNKNOWN = "unknown"


# Marker fill and border colours used on the supply site map
MARKER_COLORS: Dict[FreshnessBucket, str] = {
    FreshnessBucket.FRESH: "#22c55e",
    FreshnessBucket.AGING: "#eab308",
    FreshnessBucket.STALE: "#ef4444",
    FreshnessBucket.UNKNOWN: "#9ca3af",
}

MARKER_BORDER_COLORS: Dict[FreshnessBucket, str] = {
    FreshnessBucket.FRESH: "#15803d",
    FreshnessBucket.AGING: "#a16207",
    FreshnessBucket.STALE: "#b91c1c",
    FreshnessBucket.UNKNOWN: "#4b5563",
}

# Legacy colour names the map front end still keys on
RECENCY_NAMES: Dict[FreshnessBucket, str] = {
    FreshnessBucket.FRESH: "green",
    FreshnessBucket.AGING: "yellow",
    FreshnessBucket.STALE: "red",
    FreshnessBucket.UNKNOWN: "gray",
}


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def age_of(last_updated: datetime, now: Optional[datetime] = None) -> timedelta:
    """Time elapsed since last_updated. Naive datetimes are read as UTC."""
    now = _as_utc(now) if now else datetime.now(timezone.utc)
    return now - _as_utc(last_updated)


def age_in_hours(last_updated: datetime, now: Optional[datetime] = None) -> float:
    return age_of(last_updated, now).total_seconds() / 3600


def age_in_days(last_updated: datetime, now: Optional[datetime] = None) -> float:
    return age_of(last_updated, now).total_seconds() / 86400


def classify(
    last_updated: Optional[datetime],
    green_threshold: timedelta,
    yellow_threshold: timedelta,
    now: Optional[datetime] = None,
) -> FreshnessBucket:
    """
    Map a last-updated timestamp to a freshness bucket.

    Args:
        last_updated: When the data last changed, None if never
        green_threshold: Oldest age still counted as fresh (inclusive)
        yellow_threshold: Oldest age still counted as aging (inclusive)
        now: Reference time, defaults to the current UTC time

    Returns:
        UNKNOWN without a timestamp, otherwise FRESH, AGING or STALE

    Raises:
        ValueError: If green_threshold is larger than yellow_threshold
    """
    if green_threshold > yellow_threshold:
        raise ValueError(
            f"green threshold {green_threshold} exceeds yellow threshold {yellow_threshold}"
        )
    if last_updated is None:
        return FreshnessBucket.UNKNOWN

    age = age_of(last_updated, now)
    if age <= green_threshold:
        return FreshnessBucket.FRESH
    if age <= yellow_threshold:
        return FreshnessBucket.AGING
    return FreshnessBucket.STALE


def marker_color(bucket: FreshnessBucket) -> str:
    return MARKER_COLORS[bucket]


def legend(green_threshold: timedelta, yellow_threshold: timedelta, unit: str = "days") -> Dict[str, str]:
    """Legend labels for a map or status panel, keyed by bucket value."""
    divisor = 86400 if unit == "days" else 3600
    green = int(green_threshold.total_seconds() // divisor)
    yellow = int(yellow_threshold.total_seconds() // divisor)
    return {
        FreshnessBucket.FRESH.value: f"Updated within {green} {unit}",
        FreshnessBucket.AGING.value: f"Updated {green + 1}-{yellow} {unit} ago",
        FreshnessBucket.STALE.value: f"Updated over {yellow} {unit} ago",
        FreshnessBucket.UNKNOWN.value: "No update recorded",
    }
