"""
Metrc API response normalizer.

Converts raw JSON from the locations endpoints into frozen value objects.
No HTTP here: MetrcClient does the fetching.

Metrc v2 list endpoints answer with a paginated envelope:

    {"Data": [...], "Total": 3, "TotalRecords": 45, "PageSize": 20,
     "RecordsOnPage": 20, "CurrentPage": 1}

while older endpoints (and some sandboxes) return a bare list. Both are
handled by unwrap_list().
"""
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional


@dataclass(frozen=True)
class ExternalLocation:
    """A Metrc location. Read-only: the sync engine never mutates it."""

    id: int
    name: str
    type_id: Optional[int] = None
    type_name: Optional[str] = None


@dataclass(frozen=True)
class LocationType:
    id: int
    name: str
    for_plant_batches: bool = False
    for_plants: bool = False
    for_harvests: bool = False
    for_packages: bool = False


def unwrap_list(payload: Any) -> List[Dict[str, Any]]:
    """Return the records of a list response, envelope or bare list."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict) and "Data" in payload:
        return payload.get("Data") or []
    return []


def normalize_location(raw: Dict[str, Any]) -> ExternalLocation:
    """
    Raises:
        KeyError: if Id or Name is missing.
    """
    return ExternalLocation(
        id=int(raw["Id"]),
        name=raw["Name"],
        type_id=_optional_int(raw.get("LocationTypeId")),
        type_name=raw.get("LocationTypeName"),
    )


def normalize_location_type(raw: Dict[str, Any]) -> LocationType:
    return LocationType(
        id=int(raw["Id"]),
        name=raw["Name"],
        for_plant_batches=bool(raw.get("ForPlantBatches", False)),
        for_plants=bool(raw.get("ForPlants", False)),
        for_harvests=bool(raw.get("ForHarvests", False)),
        for_packages=bool(raw.get("ForPackages", False)),
    )


def dedupe_locations(locations: Iterable[ExternalLocation]) -> List[ExternalLocation]:
    """Drop repeated records for the same location Id, keeping the first.

    Sandbox facilities share seed data across configurations, so the same
    location can come back more than once in a single pull. That is an
    upstream quirk, not an error.
    """
    seen = set()
    unique = []
    for loc in locations:
        if loc.id in seen:
            continue
        seen.add(loc.id)
        unique.append(loc)
    return unique


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)
