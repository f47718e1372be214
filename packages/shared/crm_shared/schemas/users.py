"""Identity schemas: registration, login, admin user management."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, model_validator

from .organizations import OrganizationCreateRequest, OrganizationListItem, OrganizationSnapshot
from .roles import OrganizationRole, PlatformRole


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class RegisterRequest(BaseModel):
    """Self-service registration: a new organization and its owner."""
    organization: OrganizationCreateRequest
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str
    organization_code: Optional[str] = None


class UserCreateRequest(BaseModel):
    email: EmailStr
    password: Optional[str] = Field(default=None, min_length=8, max_length=128)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    role: PlatformRole = PlatformRole.USER
    organization_role: OrganizationRole = OrganizationRole.MEMBER
    # Only honoured for super-admins; others create into their effective org.
    organization_id: Optional[uuid.UUID] = None


class UserRoleUpdateRequest(BaseModel):
    role: Optional[PlatformRole] = None
    organization_role: Optional[OrganizationRole] = None

    @model_validator(mode="after")
    def _at_least_one(self) -> "UserRoleUpdateRequest":
        if self.role is None and self.organization_role is None:
            raise ValueError("role or organization_role is required")
        return self


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class UserResponse(BaseModel):
    id: uuid.UUID
    email: str
    first_name: str
    last_name: str
    role: PlatformRole
    home_organization_id: uuid.UUID
    current_organization_id: Optional[uuid.UUID] = None
    is_active: bool
    last_login_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class UserCreateResponse(BaseModel):
    user: UserResponse
    temporary_password: Optional[str] = None  # shown ONCE


class LoginResponse(BaseModel):
    token: str
    expires_at: datetime
    user: UserResponse
    organizations: list[OrganizationListItem]
    current_organization: Optional[OrganizationSnapshot] = None


class RegisterResponse(BaseModel):
    user: UserResponse
    organization: OrganizationSnapshot


class PasswordResetResponse(BaseModel):
    temporary_password: str  # shown ONCE
