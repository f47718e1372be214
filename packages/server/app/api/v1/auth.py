"""
Authentication endpoints.

- Self-service registration (new organization + owner)
- Email/Password login returning a bearer JWT
- Logout (token revocation) and the signed-in identity
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from crm_shared.schemas.common import MessageResponse
from crm_shared.schemas.organizations import OrganizationSnapshot
from crm_shared.schemas.users import (
    LoginRequest,
    LoginResponse,
    RegisterRequest,
    RegisterResponse,
    UserResponse,
)

from app.core.auth import Principal, create_jwt, get_principal, revoke_jwt
from app.core.database import get_session
from app.core.errors import OrganizationInactive
from app.services import context as context_service
from app.services import users as user_service
from app.services.audit import ClientMetadata, get_client_metadata

log = structlog.get_logger()
router = APIRouter()


@router.post("/register", response_model=RegisterResponse, status_code=201)
async def register(
    body: RegisterRequest,
    session: AsyncSession = Depends(get_session),
    metadata: ClientMetadata = Depends(get_client_metadata),
):
    """Register a new organization and its owner."""
    user, org = await user_service.register_organization(body, session, metadata=metadata)
    return RegisterResponse(
        user=UserResponse.model_validate(user),
        organization=OrganizationSnapshot.model_validate(org),
    )


@router.post("/login", response_model=LoginResponse)
async def login(
    body: LoginRequest,
    session: AsyncSession = Depends(get_session),
):
    """Authenticate with email/password and receive a bearer token."""
    user = await user_service.authenticate(
        body.email, body.password, session, organization_code=body.organization_code
    )
    token, _jti, expires_at = create_jwt(user.id, user.role, user.token_version)

    organizations = await context_service.visible_organizations(user, session)
    try:
        ctx = await context_service.resolve_effective_context(user, session)
        current = ctx.to_response().organization
    except OrganizationInactive:
        # Still signed in: the client shows the inactive-organization screen.
        current = None

    return LoginResponse(
        token=token,
        expires_at=expires_at,
        user=UserResponse.model_validate(user),
        organizations=organizations,
        current_organization=current,
    )


@router.post("/logout", response_model=MessageResponse)
async def logout(principal: Principal = Depends(get_principal)):
    """Revoke the presented token for the rest of its lifetime."""
    remaining = (principal.expires_at - datetime.now(timezone.utc)).total_seconds()
    await revoke_jwt(principal.jti, ttl_seconds=int(remaining) + 1)
    log.info("auth.logout", user_id=str(principal.user_id))
    return MessageResponse(message="Logged out")


@router.get("/me", response_model=UserResponse)
async def me(principal: Principal = Depends(get_principal)):
    return UserResponse.model_validate(principal.user)
