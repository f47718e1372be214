"""
Organization (tenant) schemas: snapshots, branding settings, admin requests.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .roles import OrganizationRole


class ThemeMode(str, Enum):
    LIGHT = "light"
    DARK = "dark"
    SYSTEM = "system"


class BrandingSettings(BaseModel):
    """Per-organization branding. All fields optional with defaults."""

    logo_url: Optional[str] = Field(default=None, max_length=2048)
    primary_color: str = Field(default="#1f6feb", pattern=r"^#[0-9a-fA-F]{6}$")
    secondary_color: str = Field(default="#6e7781", pattern=r"^#[0-9a-fA-F]{6}$")
    theme: ThemeMode = ThemeMode.SYSTEM


class OrganizationSettings(BaseModel):
    branding: BrandingSettings = Field(default_factory=BrandingSettings)


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

CODE_PATTERN = r"^[A-Z0-9][A-Z0-9_-]*[A-Z0-9]$"


class OrganizationCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100, description="Display name")
    code: str = Field(
        ...,
        min_length=2,
        max_length=32,
        pattern=CODE_PATTERN,
        description="Unique organization code (upper-case)",
    )


class OrganizationUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    settings: Optional[dict] = Field(
        None,
        description="Partial settings update (deep-merged via JSON Merge Patch)",
    )


class OrganizationStatusRequest(BaseModel):
    is_active: bool


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class OrganizationSnapshot(BaseModel):
    id: uuid.UUID
    code: str
    name: str
    is_active: bool
    settings: OrganizationSettings = Field(default_factory=OrganizationSettings)

    model_config = {"from_attributes": True}


class OrganizationResponse(OrganizationSnapshot):
    created_at: datetime
    updated_at: datetime


class OrganizationListItem(BaseModel):
    """An organization visible to the signed-in identity."""

    organization: OrganizationSnapshot
    role: Optional[OrganizationRole] = None  # None: super-admin without membership
    is_primary: bool = False
    joined_at: Optional[datetime] = None


class OrganizationListResponse(BaseModel):
    data: list[OrganizationListItem]
