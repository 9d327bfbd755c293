"""Field rep search filters and premium filter classification."""

from __future__ import annotations

import enum
from typing import FrozenSet, List, Literal, Optional, Sequence

from pydantic import BaseModel, Field, field_validator


PLATFORM_OPTIONS = ["EZinspections", "InspectorADE", "SafeView", "WorldAPP", "Other"]

INSPECTION_TYPE_OPTIONS = [
    "Interior/Exterior Inspections",
    "Exterior Only Inspections",
    "Drive-by Inspections",
    "Occupancy Verification",
    "REO Services",
    "Property Preservation",
    "Damage Assessment",
    "High Quality Marketing Photos",
    "Appt-Based Inspections",
]

EXPERIENCE_OPTIONS = ["Less than 1 year", "1-2 years", "3-5 years", "5+ years"]

AVAILABILITY_OPTIONS = ["Available", "Busy", "Not Taking Work"]

CERTIFICATION_OPTIONS = [
    "HUD Key Access",
    "ABC Certification",
    "Insurance License",
    "Real Estate License",
    "Drone Pilot License",
]

SortKey = Literal["", "distance", "trust_score", "community_score", "last_active", "years_experience"]


class FilterDimension(str, enum.Enum):
    """Search refinement dimensions that cost credits the first time per session."""

    PLATFORMS = "platforms"
    ABC_REQUIRED = "abc_required"
    HUD_KEY_REQUIRED = "hud_key_required"
    INSPECTION_TYPES = "inspection_types"


class FieldRepSearchFilters(BaseModel):
    zip_code: str = Field(min_length=1, max_length=10)
    platforms: List[str] = Field(default_factory=list)
    inspection_types: List[str] = Field(default_factory=list)
    abc_required: Optional[bool] = None
    hud_key_required: Optional[bool] = None
    hud_key_code: str = ""
    years_experience: str = ""
    availability_status: str = ""
    certifications: List[str] = Field(default_factory=list)
    only_active_users: bool = False
    sort_by: SortKey = ""

    @field_validator("zip_code")
    @classmethod
    def _zip_code_not_blank(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("zip_code must not be blank")
        return cleaned

    @field_validator("platforms", "inspection_types", "certifications")
    @classmethod
    def _dedupe(cls, values: List[str]) -> List[str]:
        seen: List[str] = []
        for value in values:
            cleaned = str(value or "").strip()
            if cleaned and cleaned not in seen:
                seen.append(cleaned)
        return seen

    def premium_dimensions(self) -> FrozenSet[FilterDimension]:
        return classify_premium_filters(
            self.platforms,
            self.abc_required,
            self.hud_key_required,
            self.inspection_types,
        )


def classify_premium_filters(
    platforms: Sequence[str],
    abc_required: Optional[bool],
    hud_key_required: Optional[bool],
    inspection_types: Sequence[str],
) -> FrozenSet[FilterDimension]:
    """Return the premium dimensions that are active for a filter set.

    The certification flags are tri-state; only an explicit ``True`` counts,
    ``None`` ("no preference") and ``False`` do not.
    """
    active = set()
    if platforms:
        active.add(FilterDimension.PLATFORMS)
    if abc_required is True:
        active.add(FilterDimension.ABC_REQUIRED)
    if hud_key_required is True:
        active.add(FilterDimension.HUD_KEY_REQUIRED)
    if inspection_types:
        active.add(FilterDimension.INSPECTION_TYPES)
    return frozenset(active)
