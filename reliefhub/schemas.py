"""
Pydantic schemas for upstream relief API payloads.
Validated at the fetch boundary; a mismatch is reported as ParseFailure.
"""
import math
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class UpstreamModel(BaseModel):
    """Base for camelCase upstream payloads."""

    class Config:
        populate_by_name = True


# ===== SPECIES SCHEMAS =====

class Sighting(UpstreamModel):
    species: str
    location: str
    date: str
    photo: Optional[str] = None
    url: str


class IdentificationNeed(UpstreamModel):
    species: str
    observations: int
    url: str


class SpeciesData(UpstreamModel):
    """Species summary for one bioregion (iNaturalist)."""
    total_species: int = Field(alias="totalSpecies")
    flagship_species: List[str] = Field(default_factory=list, alias="flagshipSpecies")
    endemic_species: List[str] = Field(default_factory=list, alias="endemicSpecies")
    threatened_species: List[str] = Field(default_factory=list, alias="threatenedSpecies")
    top_taxa: Dict[str, int] = Field(default_factory=dict, alias="topTaxa")
    recent_sightings: List[Sighting] = Field(default_factory=list, alias="recentSightings")
    seasonal_trends: Dict[str, float] = Field(default_factory=dict, alias="seasonalTrends")
    identification_needs: List[IdentificationNeed] = Field(
        default_factory=list, alias="identificationNeeds"
    )
    species_photos: Dict[str, str] = Field(default_factory=dict, alias="speciesPhotos")


class ConservationProject(UpstreamModel):
    name: str
    url: str
    description: str


class SpeciesResponse(UpstreamModel):
    bioregion_id: str = Field(alias="bioregionId")
    bioregion_name: str = Field(alias="bioregionName")
    species: SpeciesData
    conservation_projects: List[ConservationProject] = Field(
        default_factory=list, alias="conservationProjects"
    )
    data_source: str = Field(alias="dataSource")
    last_updated: datetime = Field(alias="lastUpdated")


class SpeciesCacheEntry(UpstreamModel):
    bioregion_id: str = Field(alias="bioregionId")
    total_species: int = Field(alias="totalSpecies")
    last_synced: Optional[datetime] = Field(default=None, alias="lastSynced")
    status: Optional[str] = None
    hours_old: Optional[float] = Field(default=None, alias="hoursOld")


class SpeciesCacheStatus(UpstreamModel):
    total_bioregions: int = Field(alias="totalBioregions")
    cache_entries: List[SpeciesCacheEntry] = Field(default_factory=list, alias="cacheEntries")


# ===== SUPPLY SITE SCHEMAS =====

class SupplySite(UpstreamModel):
    """Public supply site (Airtable)."""
    id: str
    name: str
    address: str = ""
    city: str = ""
    state: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    site_hours: Optional[str] = Field(default=None, alias="siteHours")
    accepting_donations: bool = Field(default=False, alias="acceptingDonations")
    distributing_supplies: bool = Field(default=False, alias="distributingSupplies")
    site_type: str = Field(default="", alias="siteType")
    last_inventory_update: Optional[datetime] = Field(default=None, alias="lastInventoryUpdate")

    @property
    def has_coordinates(self) -> bool:
        if self.latitude is None or self.longitude is None:
            return False
        return not (math.isnan(self.latitude) or math.isnan(self.longitude))
