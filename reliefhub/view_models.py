"""
View Models for UI Rendering
Maps cached payloads into presentation-ready rows with a freshness bucket,
so map markers and status text always agree.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from reliefhub.cache import CacheEntry
from reliefhub.freshness import (
    MARKER_BORDER_COLORS,
    RECENCY_NAMES,
    FreshnessBucket,
    age_in_days,
    age_in_hours,
    classify,
    marker_color,
)
from reliefhub.schemas import SpeciesCacheStatus, SupplySite

logger = logging.getLogger("view_models")

# Shown to the UI when a site never reported inventory
NO_UPDATE_DAYS = 9999


@dataclass
class SupplySiteView:
    """Supply site marker payload for the public map."""
    id: str
    name: str
    address: str
    city: str
    state: str
    latitude: float
    longitude: float
    site_type: str
    accepting_donations: bool
    distributing_supplies: bool
    site_hours: Optional[str]
    last_inventory_update: Optional[str]  # ISO string
    days_since_update: int
    freshness: FreshnessBucket
    marker_color: str
    marker_border_color: str

    @classmethod
    def from_site(
        cls,
        site: SupplySite,
        green_threshold: timedelta,
        yellow_threshold: timedelta,
        now: Optional[datetime] = None,
    ) -> "SupplySiteView":
        bucket = classify(site.last_inventory_update, green_threshold, yellow_threshold, now)
        if site.last_inventory_update is None:
            days = NO_UPDATE_DAYS
            last_update = None
        else:
            days = int(age_in_days(site.last_inventory_update, now))
            last_update = site.last_inventory_update.isoformat()
        return cls(
            id=site.id,
            name=site.name,
            address=site.address,
            city=site.city,
            state=site.state,
            latitude=site.latitude,
            longitude=site.longitude,
            site_type=site.site_type,
            accepting_donations=site.accepting_donations,
            distributing_supplies=site.distributing_supplies,
            site_hours=site.site_hours,
            last_inventory_update=last_update,
            days_since_update=days,
            freshness=bucket,
            marker_color=marker_color(bucket),
            marker_border_color=MARKER_BORDER_COLORS[bucket],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "city": self.city,
            "state": self.state,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "siteType": self.site_type,
            "acceptingDonations": self.accepting_donations,
            "distributingSupplies": self.distributing_supplies,
            "siteHours": self.site_hours,
            "lastInventoryUpdate": self.last_inventory_update,
            "daysSinceUpdate": self.days_since_update,
            "freshness": self.freshness.value,
            "inventoryRecency": RECENCY_NAMES[self.freshness],
            "markerColor": self.marker_color,
            "markerBorderColor": self.marker_border_color,
        }


@dataclass
class CacheStatusRow:
    """One line of a cache status panel."""
    key: str
    last_updated: Optional[str]
    hours_old: Optional[int]
    freshness: FreshnessBucket
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "key": self.key,
            "lastUpdated": self.last_updated,
            "hoursOld": self.hours_old,
            "freshness": self.freshness.value,
            "color": marker_color(self.freshness),
        }
        result.update(self.extra)
        return result


def supply_sites_to_view_models(
    sites: Iterable[SupplySite],
    green_threshold: timedelta,
    yellow_threshold: timedelta,
    now: Optional[datetime] = None,
) -> List[SupplySiteView]:
    """Map sites with usable coordinates to marker payloads."""
    views = []
    skipped = 0
    for site in sites:
        if not site.has_coordinates:
            skipped += 1
            continue
        views.append(SupplySiteView.from_site(site, green_threshold, yellow_threshold, now))
    if skipped:
        logger.debug(f"Skipped {skipped} supply sites without coordinates")
    return views


def cache_entries_to_rows(
    entries: Iterable[CacheEntry],
    green_threshold: timedelta,
    yellow_threshold: timedelta,
    now: Optional[datetime] = None,
) -> List[CacheStatusRow]:
    """Status rows for locally cached entries, oldest first."""
    rows = [
        CacheStatusRow(
            key=entry.resource_key,
            last_updated=entry.fetched_at.isoformat(),
            hours_old=round(age_in_hours(entry.fetched_at, now)),
            freshness=classify(entry.fetched_at, green_threshold, yellow_threshold, now),
        )
        for entry in entries
    ]
    rows.sort(key=lambda r: r.hours_old or 0, reverse=True)
    return rows


def species_cache_rows(
    status: SpeciesCacheStatus,
    green_threshold: timedelta,
    yellow_threshold: timedelta,
    now: Optional[datetime] = None,
) -> List[CacheStatusRow]:
    """Status rows for the upstream species cache."""
    rows = []
    for entry in status.cache_entries:
        if entry.last_synced is not None:
            hours_old = round(age_in_hours(entry.last_synced, now))
            last_updated = entry.last_synced.isoformat()
        else:
            hours_old = None
            last_updated = None
        rows.append(CacheStatusRow(
            key=entry.bioregion_id,
            last_updated=last_updated,
            hours_old=hours_old,
            freshness=classify(entry.last_synced, green_threshold, yellow_threshold, now),
            extra={
                "bioregionId": entry.bioregion_id,
                "displayName": _bioregion_display_name(entry.bioregion_id),
                "totalSpecies": entry.total_species,
                "syncStatus": entry.status,
            },
        ))
    return rows


def _bioregion_display_name(bioregion_id: str) -> str:
    """'na_cascadia_bioregion' -> 'Cascadia Bioregion'"""
    name = bioregion_id.replace("na_", "", 1).replace("_", " ")
    return name.title()
