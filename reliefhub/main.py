"""
ReliefHub - FastAPI application
Cached, throttled reads of the relief API for the maps and dashboards.
"""
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

import httpx
from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse

from reliefhub.cache import (
    FetchFailure,
    HttpStatusFailure,
    NetworkFailure,
    QueryCacheManager,
    ThrottleGuard,
)
from reliefhub.freshness import legend
from reliefhub.relief_client import ReliefClient
from config.settings import Settings, settings as default_settings

APP_VERSION = "v0.1.0"
APP_NAME = "ReliefHub"

logger = logging.getLogger("main")


def _failure_status(failure: FetchFailure) -> int:
    if isinstance(failure, HttpStatusFailure) and failure.code == 404:
        return 404
    if isinstance(failure, NetworkFailure):
        return 503
    return 502


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Overrides the environment-loaded settings
        transport: HTTP transport for the upstream client (tests)
    """
    settings = settings or default_settings
    logging.basicConfig(level=settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        http = httpx.AsyncClient(
            base_url=settings.relief_api_base_url,
            timeout=settings.http_timeout_seconds,
            transport=transport,
            follow_redirects=True,
        )
        cache = QueryCacheManager(coalesce_timeout=settings.coalesce_timeout_seconds)
        app.state.relief = ReliefClient(
            http,
            cache,
            ThrottleGuard(settings.throttle_min_interval_seconds),
            settings,
        )
        if settings.watch_weather_alerts:
            app.state.relief.watch_weather_alerts()
        logger.info(f"{APP_NAME} started against {settings.relief_api_base_url}")
        try:
            yield
        finally:
            cache.clear()
            await http.aclose()
            logger.info(f"{APP_NAME} stopped")

    app = FastAPI(
        title=APP_NAME,
        description="Cached relief data for maps and dashboards",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    @app.exception_handler(FetchFailure)
    async def fetch_failure_handler(request: Request, exc: FetchFailure):
        logger.warning(f"Upstream failure for {request.url.path}: {exc}")
        return JSONResponse(
            status_code=_failure_status(exc),
            content={"detail": "Data unavailable", "error": str(exc), "type": type(exc).__name__},
        )

    def relief(request: Request) -> ReliefClient:
        return request.app.state.relief

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "ok", "version": APP_VERSION}

    @app.get("/cache/stats")
    def cache_stats(request: Request):
        """Get cache statistics."""
        return relief(request).cache.get_stats()

    @app.get("/cache/status")
    def cache_status(
        request: Request,
        greenHours: Optional[float] = Query(default=None, ge=0),
        yellowHours: Optional[float] = Query(default=None, ge=0),
    ):
        """Freshness of every locally cached entry. Never fetches."""
        try:
            rows = relief(request).cache_status(greenHours, yellowHours)
        except ValueError as e:
            return JSONResponse(status_code=422, content={"detail": str(e)})
        return {"count": len(rows), "entries": [row.to_dict() for row in rows]}

    @app.post("/cache/invalidate")
    def invalidate(request: Request, key: str = Query(..., min_length=1)):
        """Drop one cache entry so the next read refetches it."""
        return {"key": key, "invalidated": relief(request).cache.invalidate(key)}

    @app.get("/api/species/bioregion/{bioregion_id}")
    async def species_for_bioregion(
        request: Request,
        bioregion_id: str,
        forceRefresh: bool = Query(default=False, description="Bypass cache and fetch fresh data"),
    ):
        species, meta = await relief(request).get_species_for_bioregion(
            bioregion_id, force_refresh=forceRefresh
        )
        result = species.model_dump(by_alias=True, mode="json")
        result["_meta"] = meta.to_dict()
        return result

    @app.get("/api/species/cache-status")
    async def species_cache_status(request: Request):
        rows, meta = await relief(request).species_cache_rows()
        return {
            "totalBioregions": len(rows),
            "cacheEntries": [row.to_dict() for row in rows],
            "_meta": meta.to_dict(),
        }

    @app.post("/api/species/refresh-cache/{bioregion_id}")
    async def refresh_species(request: Request, bioregion_id: str):
        removed = await relief(request).refresh_species(bioregion_id)
        return {"success": True, "bioregionId": bioregion_id, "invalidated": removed}

    @app.get("/api/supply-sites/public")
    async def public_supply_sites(
        request: Request,
        greenThreshold: Optional[int] = Query(default=None, ge=0),
        yellowThreshold: Optional[int] = Query(default=None, ge=0),
    ):
        """Supply sites as map markers coloured by inventory recency."""
        client = relief(request)
        green = client.settings.supply_site_green_days if greenThreshold is None else greenThreshold
        yellow = client.settings.supply_site_yellow_days if yellowThreshold is None else yellowThreshold
        if green > yellow:
            return JSONResponse(
                status_code=422,
                content={"detail": "greenThreshold must not exceed yellowThreshold"},
            )
        sites, meta = await client.supply_site_markers(green, yellow)
        return {
            "count": len(sites),
            "sites": [site.to_dict() for site in sites],
            "legend": legend_for_days(green, yellow),
            "_meta": meta.to_dict(),
        }

    @app.get("/api/weather-alerts")
    async def weather_alerts(
        request: Request,
        forceRefresh: bool = Query(default=False),
    ):
        alerts, meta = await relief(request).get_weather_alerts(force_refresh=forceRefresh)
        return {"alerts": alerts, "_meta": meta.to_dict()}

    @app.get("/api/fema-disasters")
    async def fema_disasters(
        request: Request,
        forceRefresh: bool = Query(default=False),
    ):
        disasters, meta = await relief(request).get_fema_disasters(force_refresh=forceRefresh)
        return {"disasters": disasters, "_meta": meta.to_dict()}

    return app


def legend_for_days(green_days: int, yellow_days: int):
    return legend(timedelta(days=green_days), timedelta(days=yellow_days))


app = create_app()
