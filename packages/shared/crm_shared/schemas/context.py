"""EffectiveContext and Context Switch Protocol schemas."""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from .organizations import OrganizationSnapshot
from .roles import OrganizationRole, PlatformRole


class AccessType(str, Enum):
    MEMBERSHIP = "membership"
    SUPER_ADMIN = "super_admin"
    UNSCOPED = "unscoped"


class EffectiveContextResponse(BaseModel):
    user_id: uuid.UUID
    platform_role: PlatformRole
    organization: Optional[OrganizationSnapshot] = None
    organization_role: Optional[OrganizationRole] = None
    access_type: AccessType
    unscoped: bool = False


class SwitchOrganizationRequest(BaseModel):
    organization_id: uuid.UUID


class SwitchOrganizationResponse(BaseModel):
    organization: OrganizationSnapshot
    organization_role: Optional[OrganizationRole] = None
    access_type: AccessType
    previous_organization_id: Optional[uuid.UUID] = None
    no_op: bool = False
