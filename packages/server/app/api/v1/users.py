"""
User endpoints.

POST  /api/v1/users                          — Create a user in the effective organization
GET   /api/v1/users/{user_id}/organizations  — Accessible organizations of a user
PATCH /api/v1/users/{user_id}/roles          — Change platform / organization role
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from crm_shared.schemas.memberships import AccessibleOrganization
from crm_shared.schemas.users import (
    UserCreateRequest,
    UserCreateResponse,
    UserResponse,
    UserRoleUpdateRequest,
)

from app.api.v1.deps import get_effective_context
from app.core.auth import Principal, get_principal
from app.core.database import get_session
from app.core.errors import PermissionDenied
from app.services import memberships as membership_service
from app.services import users as user_service
from app.services.audit import ClientMetadata, get_client_metadata
from app.services.context import EffectiveContext

router = APIRouter()


@router.post("", response_model=UserCreateResponse, status_code=201)
async def create_user(
    body: UserCreateRequest,
    principal: Principal = Depends(get_principal),
    ctx: EffectiveContext = Depends(get_effective_context),
    session: AsyncSession = Depends(get_session),
    metadata: ClientMetadata = Depends(get_client_metadata),
):
    user, temporary_password = await user_service.create_user(
        principal.user, ctx, body, session, metadata=metadata
    )
    return UserCreateResponse(
        user=UserResponse.model_validate(user),
        temporary_password=temporary_password,
    )


@router.get("/{user_id}/organizations", response_model=list[AccessibleOrganization])
async def list_user_organizations(
    user_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    """Active memberships of a user. Self, or any user for a super-admin."""
    if user_id != principal.user_id and not principal.is_super_admin:
        raise PermissionDenied("Cannot list another user's organizations")
    return await membership_service.list_accessible(user_id, session)


@router.patch("/{user_id}/roles", response_model=UserResponse)
async def update_roles(
    user_id: uuid.UUID,
    body: UserRoleUpdateRequest,
    principal: Principal = Depends(get_principal),
    ctx: EffectiveContext = Depends(get_effective_context),
    session: AsyncSession = Depends(get_session),
    metadata: ClientMetadata = Depends(get_client_metadata),
):
    user = await user_service.update_user_roles(
        principal.user,
        ctx,
        user_id,
        session,
        platform_role=body.role,
        organization_role=body.organization_role,
        metadata=metadata,
    )
    return UserResponse.model_validate(user)
