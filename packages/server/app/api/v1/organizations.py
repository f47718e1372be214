"""
Organization context endpoints.

GET    /api/v1/organizations                               — Organizations visible to the caller
GET    /api/v1/organizations/current                       — The caller's EffectiveContext
POST   /api/v1/organizations/switch                        — Switch EffectiveContext
POST   /api/v1/organizations/current/clear                 — Super-admin: back to unscoped
PATCH  /api/v1/organizations/current                       — Update name/settings
GET    /api/v1/organizations/current/members               — Members of the effective organization
DELETE /api/v1/organizations/current/users/{user_id} — Remove a user from the effective organization
POST   /api/v1/organizations/{organization_id}/members     — Grant access
DELETE /api/v1/organizations/{organization_id}/members/{user_id} — Revoke access
"""

from __future__ import annotations

import uuid

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from crm_shared.schemas.context import (
    EffectiveContextResponse,
    SwitchOrganizationRequest,
    SwitchOrganizationResponse,
)
from crm_shared.schemas.memberships import (
    MemberListResponse,
    MembershipGrantRequest,
    MembershipResponse,
)
from crm_shared.schemas.organizations import (
    OrganizationListResponse,
    OrganizationResponse,
    OrganizationSnapshot,
    OrganizationUpdateRequest,
)
from crm_shared.schemas.users import UserResponse

from app.api.v1.deps import get_effective_context, require_organization_context
from app.core.auth import Principal, get_principal
from app.core.database import get_session
from app.core.errors import PermissionDenied
from app.services import context as context_service
from app.services import memberships as membership_service
from app.services import organizations as org_service
from app.services import users as user_service
from app.services.audit import ClientMetadata, get_client_metadata
from app.services.authorization import ProtectedAction, authorize
from app.services.context import EffectiveContext

log = structlog.get_logger()
router = APIRouter()


@router.get("", response_model=OrganizationListResponse)
async def list_organizations(
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    """Organizations the caller may select."""
    items = await context_service.visible_organizations(principal.user, session)
    return OrganizationListResponse(data=items)


@router.get("/current", response_model=EffectiveContextResponse)
async def get_current(ctx: EffectiveContext = Depends(get_effective_context)):
    """The EffectiveContext; ``organization`` is null for an unscoped super-admin."""
    return ctx.to_response()


@router.post("/switch", response_model=SwitchOrganizationResponse)
async def switch(
    body: SwitchOrganizationRequest,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
    metadata: ClientMetadata = Depends(get_client_metadata),
):
    result = await context_service.switch_organization(
        principal.user, body.organization_id, session, metadata=metadata
    )
    return SwitchOrganizationResponse(
        organization=OrganizationSnapshot.model_validate(result.context.organization),
        organization_role=result.context.organization_role,
        access_type=result.context.access_type,
        previous_organization_id=result.previous_organization_id,
        no_op=result.no_op,
    )


@router.post("/current/clear", response_model=EffectiveContextResponse)
async def clear_current(
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
    metadata: ClientMetadata = Depends(get_client_metadata),
):
    ctx = await context_service.clear_context(principal.user, session, metadata=metadata)
    return ctx.to_response()


@router.patch("/current", response_model=OrganizationResponse)
async def update_current(
    body: OrganizationUpdateRequest,
    principal: Principal = Depends(get_principal),
    ctx: EffectiveContext = Depends(get_effective_context),
    session: AsyncSession = Depends(get_session),
):
    org = await org_service.update_organization(principal.user, ctx, body, session)
    return OrganizationResponse.model_validate(org)


@router.get("/current/members", response_model=MemberListResponse)
async def list_current_members(
    ctx: EffectiveContext = Depends(require_organization_context),
    session: AsyncSession = Depends(get_session),
):
    decision = authorize(ProtectedAction.VIEW_MEMBERS, ctx.subject)
    if not decision:
        raise PermissionDenied(decision.reason)
    members = await membership_service.list_members(ctx.organization_id, session)
    return MemberListResponse(data=members)


@router.delete("/current/users/{user_id}", response_model=UserResponse)
async def remove_current_user(
    user_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    ctx: EffectiveContext = Depends(get_effective_context),
    session: AsyncSession = Depends(get_session),
    metadata: ClientMetadata = Depends(get_client_metadata),
):
    """Soft-delete a home user, or drop a guest's membership."""
    user = await user_service.remove_organization_user(
        principal.user, ctx, user_id, session, metadata=metadata
    )
    return UserResponse.model_validate(user)


@router.post(
    "/{organization_id}/members",
    response_model=MembershipResponse,
    status_code=201,
)
async def grant_member(
    organization_id: uuid.UUID,
    body: MembershipGrantRequest,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
    metadata: ClientMetadata = Depends(get_client_metadata),
):
    membership = await membership_service.grant_access(
        body.user_id,
        organization_id,
        body.role,
        principal.user_id,
        session,
        metadata=metadata,
    )
    return MembershipResponse.model_validate(membership)


@router.delete(
    "/{organization_id}/members/{user_id}",
    response_model=MembershipResponse,
)
async def revoke_member(
    organization_id: uuid.UUID,
    user_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
    metadata: ClientMetadata = Depends(get_client_metadata),
):
    membership = await membership_service.revoke_access(
        user_id, organization_id, principal.user_id, session, metadata=metadata
    )
    return MembershipResponse.model_validate(membership)
