"""
Cached access to the relief API.
All reads go through the query cache; identical requests are throttled.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import httpx

from reliefhub.cache import (
    CacheMeta,
    QueryCacheManager,
    RequestPolicy,
    ResourcePolicy,
    ThrottleGuard,
    exponential_backoff,
    get_policy,
    resource_key,
    resource_type_for_path,
)
from reliefhub.fetchers import json_fetcher, request_json
from reliefhub.schemas import SpeciesCacheStatus, SpeciesResponse, SupplySite
from reliefhub.view_models import (
    CacheStatusRow,
    SupplySiteView,
    cache_entries_to_rows,
    species_cache_rows,
    supply_sites_to_view_models,
)
from config.settings import Settings, settings as default_settings

logger = logging.getLogger("relief_client")

SPECIES_BIOREGION_PATH = "/api/species/bioregion"
SPECIES_CACHE_STATUS_PATH = "/api/species/cache-status"
SPECIES_REFRESH_PATH = "/api/species/refresh-cache"
SUPPLY_SITES_PATH = "/api/supply-sites/public"
WEATHER_ALERTS_PATH = "/api/weather-alerts-rss"
FEMA_DISASTERS_PATH = "/api/fema-disasters"


class ReliefClient:
    """
    Read side of the relief API for UI views.

    Every method returns (data, CacheMeta). Terminal fetch failures are
    raised; reads opt into stale-if-error so a view can keep showing old
    data when a refresh fails.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        cache: QueryCacheManager,
        throttle: Optional[ThrottleGuard] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or default_settings
        self.http = http
        self.cache = cache
        self.throttle = throttle or ThrottleGuard(self.settings.throttle_min_interval_seconds)
        self._request_policy = RequestPolicy(
            max_retries=self.settings.max_retries,
            retry_delay=exponential_backoff(
                self.settings.retry_backoff_base_seconds,
                self.settings.retry_backoff_cap_seconds,
            ),
        )

    def policy_for(self, path: str, schema: Any = None) -> ResourcePolicy:
        """Resource policy for a path with the configured retry policy."""
        policy = get_policy(resource_type_for_path(path)).with_request(self._request_policy)
        if schema is not None:
            policy = policy.with_schema(schema)
        return policy

    async def _get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        schema: Any = None,
        force_refresh: bool = False,
        stale_if_error: bool = True,
        abort: Optional[asyncio.Event] = None,
    ) -> Tuple[Any, CacheMeta]:
        key = resource_key(path, **(params or {}))
        fetcher = json_fetcher(self.http, path, params, throttle=self.throttle)
        return await self.cache.get_or_fetch_with_meta(
            key,
            fetcher,
            self.policy_for(path, schema),
            stale_if_error=stale_if_error,
            # With caching disabled every read still coalesces but never hits
            force_refresh=force_refresh or not self.settings.cache_enabled,
            abort=abort,
        )

    # ===== SPECIES =====

    async def get_species_for_bioregion(
        self,
        bioregion_id: str,
        force_refresh: bool = False,
        abort: Optional[asyncio.Event] = None,
    ) -> Tuple[SpeciesResponse, CacheMeta]:
        """Species summary for one bioregion."""
        return await self._get(
            f"{SPECIES_BIOREGION_PATH}/{bioregion_id}",
            schema=SpeciesResponse,
            force_refresh=force_refresh,
            abort=abort,
        )

    async def get_species_cache_status(
        self,
        force_refresh: bool = False,
        abort: Optional[asyncio.Event] = None,
    ) -> Tuple[SpeciesCacheStatus, CacheMeta]:
        return await self._get(
            SPECIES_CACHE_STATUS_PATH,
            schema=SpeciesCacheStatus,
            force_refresh=force_refresh,
            abort=abort,
        )

    async def species_cache_rows(
        self,
        now: Optional[datetime] = None,
    ) -> Tuple[List[CacheStatusRow], CacheMeta]:
        """Upstream species cache, classified with the species thresholds."""
        status, meta = await self.get_species_cache_status()
        rows = species_cache_rows(
            status,
            timedelta(hours=self.settings.species_green_hours),
            timedelta(hours=self.settings.species_yellow_hours),
            now,
        )
        return rows, meta

    async def refresh_species(self, bioregion_id: str) -> int:
        """
        Ask the upstream to rebuild a bioregion's species cache, then drop
        the local copies of it and of the cache status.

        Returns:
            Number of local entries invalidated
        """
        await request_json(self.http, "POST", f"{SPECIES_REFRESH_PATH}/{bioregion_id}")
        removed = self.cache.invalidate_prefix(f"{SPECIES_BIOREGION_PATH}/{bioregion_id}")
        removed += self.cache.invalidate_prefix(SPECIES_CACHE_STATUS_PATH)
        logger.info(f"Refreshed species cache for {bioregion_id} ({removed} local entries dropped)")
        return removed

    # ===== SUPPLY SITES =====

    async def get_supply_sites(
        self,
        force_refresh: bool = False,
        abort: Optional[asyncio.Event] = None,
    ) -> Tuple[List[SupplySite], CacheMeta]:
        return await self._get(
            SUPPLY_SITES_PATH,
            schema=List[SupplySite],
            force_refresh=force_refresh,
            abort=abort,
        )

    async def supply_site_markers(
        self,
        green_days: Optional[int] = None,
        yellow_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[List[SupplySiteView], CacheMeta]:
        """Supply sites as map markers coloured by inventory recency."""
        sites, meta = await self.get_supply_sites()
        green = self.settings.supply_site_green_days if green_days is None else green_days
        yellow = self.settings.supply_site_yellow_days if yellow_days is None else yellow_days
        views = supply_sites_to_view_models(
            sites, timedelta(days=green), timedelta(days=yellow), now
        )
        return views, meta

    # ===== ALERTS =====

    async def get_weather_alerts(
        self,
        force_refresh: bool = False,
        abort: Optional[asyncio.Event] = None,
    ) -> Tuple[Any, CacheMeta]:
        """NWS weather alerts feed."""
        return await self._get(WEATHER_ALERTS_PATH, force_refresh=force_refresh, abort=abort)

    async def get_fema_disasters(
        self,
        force_refresh: bool = False,
        abort: Optional[asyncio.Event] = None,
    ) -> Tuple[Any, CacheMeta]:
        """FEMA disaster declarations."""
        return await self._get(FEMA_DISASTERS_PATH, force_refresh=force_refresh, abort=abort)

    # ===== DIAGNOSTICS =====

    def cache_status(
        self,
        green_hours: Optional[float] = None,
        yellow_hours: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> List[CacheStatusRow]:
        """Local cache entries, classified without triggering any fetch."""
        green = self.settings.species_green_hours if green_hours is None else green_hours
        yellow = self.settings.species_yellow_hours if yellow_hours is None else yellow_hours
        return cache_entries_to_rows(
            self.cache.entries(), timedelta(hours=green), timedelta(hours=yellow), now
        )

    def watch_weather_alerts(self):
        """Keep the weather alerts entry warm. Returns the Subscription."""
        return self.cache.subscribe(
            WEATHER_ALERTS_PATH,
            json_fetcher(self.http, WEATHER_ALERTS_PATH, throttle=self.throttle),
            self.policy_for(WEATHER_ALERTS_PATH),
        )
