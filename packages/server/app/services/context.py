"""
Server-side context manager and context switch protocol.

Every authenticated request resolves an ``EffectiveContext`` from, in order:

1. the identity's persisted current-organization pointer;
2. the identity's home organization;
3. nothing at all, which is valid only for a super-admin ("unscoped").

The token never carries an organization, so switching never re-issues it.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from crm_shared.schemas.audit import AuditAction, AuditTargetType
from crm_shared.schemas.context import AccessType, EffectiveContextResponse
from crm_shared.schemas.organizations import OrganizationListItem, OrganizationSnapshot
from crm_shared.schemas.roles import (
    OrganizationRole,
    PlatformRole,
    is_super_admin,
    parse_organization_role,
    parse_platform_role,
)

from app.core.config import get_settings
from app.core.errors import (
    AccessDenied,
    InvalidOrganization,
    OrganizationInactive,
    OrganizationRequired,
    PermissionDenied,
)
from app.models.membership import Membership
from app.models.organization import Organization
from app.models.user import User
from app.services import audit
from app.services.audit import ClientMetadata
from app.services.authorization import Subject
from app.services.memberships import find_active_membership, get_organization

log = structlog.get_logger()


@dataclass
class EffectiveContext:
    """The organization a request operates against, and the role that applies."""

    user_id: uuid.UUID
    platform_role: PlatformRole
    organization: Optional[Organization] = None
    organization_role: Optional[OrganizationRole] = None
    access_type: AccessType = AccessType.UNSCOPED

    @property
    def unscoped(self) -> bool:
        return self.organization is None

    @property
    def organization_id(self) -> Optional[uuid.UUID]:
        return self.organization.id if self.organization else None

    @property
    def subject(self) -> Subject:
        return Subject(
            user_id=self.user_id,
            organization_id=self.organization_id,
            platform_role=self.platform_role,
            organization_role=self.organization_role,
        )

    def to_response(self) -> EffectiveContextResponse:
        return EffectiveContextResponse(
            user_id=self.user_id,
            platform_role=self.platform_role,
            organization=(
                OrganizationSnapshot.model_validate(self.organization)
                if self.organization else None
            ),
            organization_role=self.organization_role,
            access_type=self.access_type,
            unscoped=self.unscoped,
        )


@dataclass
class SwitchResult:
    context: EffectiveContext
    previous_organization_id: Optional[uuid.UUID]
    no_op: bool


def _bypass_enabled(user: User) -> bool:
    return is_super_admin(user.role) and get_settings().allow_super_admin_access


def _scoped_context(
    user: User, org: Organization, membership: Optional[Membership]
) -> EffectiveContext:
    return EffectiveContext(
        user_id=user.id,
        platform_role=parse_platform_role(user.role),
        organization=org,
        organization_role=parse_organization_role(membership.role) if membership else None,
        access_type=AccessType.MEMBERSHIP if membership else AccessType.SUPER_ADMIN,
    )


def _previous_effective_id(user: User) -> Optional[uuid.UUID]:
    if user.current_organization_id is not None:
        return user.current_organization_id
    if _bypass_enabled(user):
        return None
    return user.home_organization_id


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

async def resolve_effective_context(user: User, session: AsyncSession) -> EffectiveContext:
    """Derive the EffectiveContext for ``user``.

    A stale pointer (organization gone or membership revoked) is cleared and
    resolution falls through to the next source. An inactive organization
    never resolves: ``OrganizationInactive``.
    """
    if user.current_organization_id is not None:
        org = await get_organization(user.current_organization_id, session)
        if org is not None:
            membership = await find_active_membership(user.id, org.id, session)
            if membership is not None or _bypass_enabled(user):
                if not org.is_active:
                    raise OrganizationInactive(organization_id=org.id)
                return _scoped_context(user, org, membership)

        log.info(
            "context.stale_pointer_cleared",
            user_id=str(user.id),
            organization_id=str(user.current_organization_id),
        )
        user.current_organization_id = None
        session.add(user)
        await session.flush()

    if _bypass_enabled(user):
        # No home fallback for super-admins: they must pick explicitly.
        return EffectiveContext(
            user_id=user.id,
            platform_role=parse_platform_role(user.role),
        )

    org = await get_organization(user.home_organization_id, session)
    if org is None:
        raise InvalidOrganization(organization_id=user.home_organization_id)
    if not org.is_active:
        raise OrganizationInactive(organization_id=org.id)
    membership = await find_active_membership(user.id, org.id, session)
    if membership is None:
        log.error("context.home_membership_missing", user_id=str(user.id))
        raise AccessDenied(organization_id=org.id)
    return _scoped_context(user, org, membership)


async def visible_organizations(user: User, session: AsyncSession) -> list[OrganizationListItem]:
    """Organizations ``user`` may select: own active memberships in active
    organizations, plus every other active organization for a super-admin.
    """
    result = await session.execute(
        select(Membership, Organization)
        .join(Organization, Organization.id == Membership.organization_id)
        .where(
            Membership.user_id == user.id,
            Membership.is_active == True,  # noqa: E712
            Organization.is_active == True,  # noqa: E712
        )
        .order_by(Membership.joined_at.asc(), Membership.id)
    )
    items = [
        OrganizationListItem(
            organization=OrganizationSnapshot.model_validate(org),
            role=parse_organization_role(m.role),
            is_primary=org.id == user.home_organization_id,
            joined_at=m.joined_at,
        )
        for m, org in result.all()
    ]

    if _bypass_enabled(user):
        seen = {item.organization.id for item in items}
        result = await session.execute(
            select(Organization)
            .where(Organization.is_active == True)  # noqa: E712
            .order_by(Organization.name, Organization.code)
        )
        items.extend(
            OrganizationListItem(
                organization=OrganizationSnapshot.model_validate(org),
                is_primary=org.id == user.home_organization_id,
            )
            for org in result.scalars().all()
            if org.id not in seen
        )
    return items


async def require_organization(
    ctx: EffectiveContext, user: User, session: AsyncSession
) -> EffectiveContext:
    """Fail with the selection-required signal when ``ctx`` is unscoped.

    The full candidate list is returned; nothing is picked on the caller's
    behalf.
    """
    if not ctx.unscoped:
        return ctx
    candidates = await visible_organizations(user, session)
    log.info("context.selection_required", user_id=str(user.id), candidates=len(candidates))
    raise OrganizationRequired(
        organizations=[c.organization.model_dump(mode="json") for c in candidates]
    )


# ---------------------------------------------------------------------------
# Switch protocol
# ---------------------------------------------------------------------------

async def switch_organization(
    user: User,
    target_organization_id: uuid.UUID,
    session: AsyncSession,
    *,
    metadata: Optional[ClientMetadata] = None,
) -> SwitchResult:
    """Point ``user`` at ``target_organization_id`` for subsequent requests.

    Members switch through their active membership; a super-admin may enter
    any active organization without one. Every successful switch writes one
    CONTEXT_SWITCH record, including a switch to the current organization.
    """
    org = await get_organization(target_organization_id, session)
    if org is None:
        raise InvalidOrganization(organization_id=target_organization_id)

    membership = await find_active_membership(user.id, org.id, session)
    if membership is None and not _bypass_enabled(user):
        log.info(
            "context.switch_denied",
            user_id=str(user.id),
            organization_id=str(org.id),
        )
        raise AccessDenied(organization_id=org.id)

    if not org.is_active:
        raise OrganizationInactive(organization_id=org.id)

    previous_id = _previous_effective_id(user)
    no_op = previous_id == org.id

    user.current_organization_id = org.id
    session.add(user)
    await session.flush()

    ctx = _scoped_context(user, org, membership)
    await audit.log_event(
        session,
        action=AuditAction.CONTEXT_SWITCH,
        actor_id=user.id,
        organization_id=org.id,
        target_type=AuditTargetType.ORGANIZATION,
        target_id=org.id,
        details={
            "from": previous_id,
            "to": org.id,
            "access_type": ctx.access_type,
            "no_op": no_op,
        },
        metadata=metadata,
    )
    log.info(
        "context.switched",
        user_id=str(user.id),
        organization_id=str(org.id),
        access_type=ctx.access_type.value,
        no_op=no_op,
    )
    return SwitchResult(context=ctx, previous_organization_id=previous_id, no_op=no_op)


async def clear_context(
    user: User,
    session: AsyncSession,
    *,
    metadata: Optional[ClientMetadata] = None,
) -> EffectiveContext:
    """Return a super-admin to the unscoped state."""
    if not _bypass_enabled(user):
        raise PermissionDenied("Only super admins can operate without an organization")

    previous_id = user.current_organization_id
    user.current_organization_id = None
    session.add(user)
    await session.flush()

    await audit.log_event(
        session,
        action=AuditAction.CONTEXT_SWITCH,
        actor_id=user.id,
        organization_id=previous_id,
        target_type=AuditTargetType.ORGANIZATION,
        target_id=previous_id,
        details={
            "from": previous_id,
            "to": None,
            "access_type": AccessType.UNSCOPED,
            "no_op": previous_id is None,
        },
        metadata=metadata,
    )
    log.info("context.cleared", user_id=str(user.id))
    return EffectiveContext(user_id=user.id, platform_role=parse_platform_role(user.role))
