"""Configuration management using pydantic-settings."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Upstream relief API (FEMA/NOAA/NWS/Airtable/iNaturalist proxies)
    relief_api_base_url: str = "http://localhost:5000"
    http_timeout_seconds: float = 30.0

    # Cache settings
    cache_enabled: bool = True
    coalesce_timeout_seconds: Optional[float] = None

    # Retry policy applied to every resource type
    max_retries: int = 2
    retry_backoff_base_seconds: float = 1.0
    retry_backoff_cap_seconds: float = 30.0

    # Minimum spacing between identical upstream requests
    throttle_min_interval_seconds: float = 3.0

    # Freshness thresholds per view
    species_green_hours: float = 6
    species_yellow_hours: float = 24
    supply_site_green_days: int = 7
    supply_site_yellow_days: int = 30

    # Keep the weather alerts entry warm with a background refetch
    watch_weather_alerts: bool = False

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
