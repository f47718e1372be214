"""
Organization service — tenant creation, activation and settings.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import HTTPException
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from crm_shared.schemas.audit import AuditAction, AuditTargetType
from crm_shared.schemas.organizations import (
    OrganizationCreateRequest,
    OrganizationSettings,
    OrganizationUpdateRequest,
)
from crm_shared.schemas.roles import is_super_admin

from app.core.errors import InvalidOrganization, PermissionDenied
from app.models.organization import Organization
from app.models.user import User
from app.services import audit
from app.services.audit import ClientMetadata
from app.services.authorization import ProtectedAction, authorize
from app.services.context import EffectiveContext, require_organization

log = structlog.get_logger()


def _deep_merge(base: dict, patch: dict) -> dict:
    """JSON Merge Patch style deep merge."""
    result = base.copy()
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _require_super_admin(actor: User) -> None:
    if not is_super_admin(actor.role):
        raise PermissionDenied("Super admin access required")


async def _code_taken(code: str, session: AsyncSession) -> bool:
    result = await session.execute(select(Organization.id).where(Organization.code == code))
    return result.first() is not None


async def get_organization_or_404(
    organization_id: uuid.UUID, session: AsyncSession
) -> Organization:
    result = await session.execute(
        select(Organization).where(Organization.id == organization_id)
    )
    org = result.scalar_one_or_none()
    if not org:
        raise InvalidOrganization(organization_id=organization_id)
    return org


async def insert_organization(
    req: OrganizationCreateRequest, session: AsyncSession
) -> Organization:
    """Insert a new active organization; 409 if the code is taken."""
    if await _code_taken(req.code, session):
        raise HTTPException(status_code=409, detail="Organization code already taken")
    org = Organization(
        name=req.name,
        code=req.code,
        settings=OrganizationSettings().model_dump(mode="json"),
    )
    session.add(org)
    await session.flush()
    return org


async def create_organization(
    actor: User,
    req: OrganizationCreateRequest,
    session: AsyncSession,
    *,
    metadata: Optional[ClientMetadata] = None,
) -> Organization:
    """Super-admin creates an empty organization."""
    _require_super_admin(actor)
    org = await insert_organization(req, session)
    await audit.log_event(
        session,
        action=AuditAction.ORGANIZATION_CREATE,
        actor_id=actor.id,
        organization_id=org.id,
        target_type=AuditTargetType.ORGANIZATION,
        target_id=org.id,
        details={"code": org.code, "name": org.name},
        metadata=metadata,
    )
    log.info("organization.created", organization_id=str(org.id), code=org.code)
    return org


async def set_organization_active(
    actor: User,
    organization_id: uuid.UUID,
    is_active: bool,
    session: AsyncSession,
    *,
    metadata: Optional[ClientMetadata] = None,
) -> Organization:
    """Activate or deactivate a tenant. Nothing cascades: memberships and
    users stay, the organization just stops resolving as a context.
    """
    _require_super_admin(actor)
    org = await get_organization_or_404(organization_id, session)
    if org.is_active == is_active:
        return org

    previous = org.is_active
    org.is_active = is_active
    org.updated_at = datetime.now(timezone.utc)
    session.add(org)
    await session.flush()

    await audit.log_event(
        session,
        action=AuditAction.ORGANIZATION_STATUS_CHANGE,
        actor_id=actor.id,
        organization_id=org.id,
        target_type=AuditTargetType.ORGANIZATION,
        target_id=org.id,
        details={"from": previous, "to": is_active},
        metadata=metadata,
    )
    log.info("organization.status_changed", organization_id=str(org.id), is_active=is_active)
    return org


async def list_all_organizations(
    actor: User, session: AsyncSession, *, include_inactive: bool = True
) -> list[Organization]:
    _require_super_admin(actor)
    stmt = select(Organization).order_by(Organization.name, Organization.code)
    if not include_inactive:
        stmt = stmt.where(Organization.is_active == True)  # noqa: E712
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def update_organization(
    actor: User,
    ctx: EffectiveContext,
    req: OrganizationUpdateRequest,
    session: AsyncSession,
) -> Organization:
    """Update name and/or settings (deep merge) of the effective organization."""
    ctx = await require_organization(ctx, actor, session)
    decision = authorize(ProtectedAction.UPDATE_ORGANIZATION, ctx.subject)
    if not decision:
        raise PermissionDenied(decision.reason)

    org = ctx.organization
    if req.name is not None:
        org.name = req.name

    if req.settings is not None:
        merged = _deep_merge(org.settings or {}, req.settings)
        try:
            validated = OrganizationSettings.model_validate(merged)
        except ValidationError as exc:
            raise HTTPException(
                status_code=422,
                detail=f"Invalid organization settings: {exc.error_count()} error(s)",
            )
        org.settings = validated.model_dump(mode="json")

    org.updated_at = datetime.now(timezone.utc)
    session.add(org)
    await session.flush()

    log.info("organization.updated", organization_id=str(org.id), code=org.code)
    return org
