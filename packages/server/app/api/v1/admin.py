"""
Super-admin administration endpoints.

GET    /api/v1/admin/organizations                       — All organizations
POST   /api/v1/admin/organizations                       — Create organization
PATCH  /api/v1/admin/organizations/{id}/status           — Activate / deactivate
GET    /api/v1/admin/users                               — All identities
DELETE /api/v1/admin/users/{user_id}                     — Soft delete
POST   /api/v1/admin/users/{user_id}/reactivate          — Undo a soft delete
POST   /api/v1/admin/users/{user_id}/force-logout        — Invalidate sessions
POST   /api/v1/admin/users/{user_id}/reset-password      — Temporary password
"""

from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from crm_shared.schemas.common import MessageResponse
from crm_shared.schemas.organizations import (
    OrganizationCreateRequest,
    OrganizationResponse,
    OrganizationStatusRequest,
)
from crm_shared.schemas.users import PasswordResetResponse, UserResponse

from app.core.auth import Principal, require_super_admin
from app.core.database import get_session
from app.services import organizations as org_service
from app.services import users as user_service
from app.services.audit import ClientMetadata, get_client_metadata

router = APIRouter()


# ---------------------------------------------------------------------------
# Organizations
# ---------------------------------------------------------------------------

@router.get("/organizations", response_model=list[OrganizationResponse])
async def list_organizations(
    include_inactive: bool = Query(True),
    principal: Principal = Depends(require_super_admin),
    session: AsyncSession = Depends(get_session),
):
    orgs = await org_service.list_all_organizations(
        principal.user, session, include_inactive=include_inactive
    )
    return [OrganizationResponse.model_validate(o) for o in orgs]


@router.post("/organizations", response_model=OrganizationResponse, status_code=201)
async def create_organization(
    body: OrganizationCreateRequest,
    principal: Principal = Depends(require_super_admin),
    session: AsyncSession = Depends(get_session),
    metadata: ClientMetadata = Depends(get_client_metadata),
):
    org = await org_service.create_organization(principal.user, body, session, metadata=metadata)
    return OrganizationResponse.model_validate(org)


@router.patch("/organizations/{organization_id}/status", response_model=OrganizationResponse)
async def set_organization_status(
    organization_id: uuid.UUID,
    body: OrganizationStatusRequest,
    principal: Principal = Depends(require_super_admin),
    session: AsyncSession = Depends(get_session),
    metadata: ClientMetadata = Depends(get_client_metadata),
):
    org = await org_service.set_organization_active(
        principal.user, organization_id, body.is_active, session, metadata=metadata
    )
    return OrganizationResponse.model_validate(org)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

@router.get("/users", response_model=list[UserResponse])
async def list_users(
    organization_id: Optional[uuid.UUID] = Query(None),
    include_inactive: bool = Query(False),
    principal: Principal = Depends(require_super_admin),
    session: AsyncSession = Depends(get_session),
):
    users = await user_service.list_users(
        session, organization_id=organization_id, include_inactive=include_inactive
    )
    return [UserResponse.model_validate(u) for u in users]


@router.delete("/users/{user_id}", response_model=UserResponse)
async def deactivate_user(
    user_id: uuid.UUID,
    principal: Principal = Depends(require_super_admin),
    session: AsyncSession = Depends(get_session),
    metadata: ClientMetadata = Depends(get_client_metadata),
):
    user = await user_service.deactivate_user(principal.user, user_id, session, metadata=metadata)
    return UserResponse.model_validate(user)


@router.post("/users/{user_id}/reactivate", response_model=UserResponse)
async def reactivate_user(
    user_id: uuid.UUID,
    principal: Principal = Depends(require_super_admin),
    session: AsyncSession = Depends(get_session),
    metadata: ClientMetadata = Depends(get_client_metadata),
):
    user = await user_service.reactivate_user(principal.user, user_id, session, metadata=metadata)
    return UserResponse.model_validate(user)


@router.post("/users/{user_id}/force-logout", response_model=MessageResponse)
async def force_logout(
    user_id: uuid.UUID,
    principal: Principal = Depends(require_super_admin),
    session: AsyncSession = Depends(get_session),
    metadata: ClientMetadata = Depends(get_client_metadata),
):
    await user_service.force_logout(principal.user, user_id, session, metadata=metadata)
    return MessageResponse(message="All sessions invalidated")


@router.post("/users/{user_id}/reset-password", response_model=PasswordResetResponse)
async def reset_password(
    user_id: uuid.UUID,
    principal: Principal = Depends(require_super_admin),
    session: AsyncSession = Depends(get_session),
    metadata: ClientMetadata = Depends(get_client_metadata),
):
    temporary_password = await user_service.reset_password(
        principal.user, user_id, session, metadata=metadata
    )
    return PasswordResetResponse(temporary_password=temporary_password)
