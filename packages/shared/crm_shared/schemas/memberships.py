"""Membership (user ↔ organization) schemas."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from .organizations import OrganizationSnapshot
from .roles import OrganizationRole


class MembershipGrantRequest(BaseModel):
    user_id: uuid.UUID
    role: OrganizationRole = OrganizationRole.MEMBER


class MembershipResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    organization_id: uuid.UUID
    role: OrganizationRole
    is_active: bool
    joined_at: datetime
    left_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class AccessibleOrganization(BaseModel):
    """An active membership annotated with the organization and primary flag."""

    membership_id: uuid.UUID
    organization: OrganizationSnapshot
    role: OrganizationRole
    joined_at: datetime
    is_primary: bool


class MemberResponse(BaseModel):
    user_id: uuid.UUID
    email: str
    first_name: str
    last_name: str
    platform_role: str
    organization_role: OrganizationRole
    is_primary: bool
    joined_at: datetime


class MemberListResponse(BaseModel):
    data: list[MemberResponse]
