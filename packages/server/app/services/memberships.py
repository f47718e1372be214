"""
Membership store — grants, revocations and lookups of user ↔ organization
memberships.

Every check runs before the first write, so a refused operation leaves
neither a Membership row nor an AuditRecord behind.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from crm_shared.schemas.audit import AuditAction, AuditTargetType
from crm_shared.schemas.memberships import AccessibleOrganization, MemberResponse
from crm_shared.schemas.organizations import OrganizationSnapshot
from crm_shared.schemas.roles import (
    OrganizationRole,
    compare_role,
    meets_minimum,
    parse_organization_role,
)

from app.core.errors import (
    AlreadyMember,
    CannotRevokeHome,
    InvalidOrganization,
    LastOwner,
    MembershipNotFound,
    PermissionDenied,
    UserNotFound,
)
from app.models.membership import Membership
from app.models.organization import Organization
from app.models.user import User
from app.services import audit
from app.services.audit import ClientMetadata

log = structlog.get_logger()

MANAGER_ROLE = OrganizationRole.ORG_ADMIN


@dataclass(frozen=True)
class MembershipAccess:
    """Result of a successful ``validate_access``."""

    membership: Membership
    organization: OrganizationSnapshot

    @property
    def role(self) -> OrganizationRole:
        return parse_organization_role(self.membership.role)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

async def find_active_membership(
    user_id: uuid.UUID, organization_id: uuid.UUID, session: AsyncSession
) -> Optional[Membership]:
    result = await session.execute(
        select(Membership).where(
            Membership.user_id == user_id,
            Membership.organization_id == organization_id,
            Membership.is_active == True,  # noqa: E712
        )
    )
    return result.scalar_one_or_none()


async def get_organization(
    organization_id: uuid.UUID, session: AsyncSession
) -> Optional[Organization]:
    result = await session.execute(
        select(Organization).where(Organization.id == organization_id)
    )
    return result.scalar_one_or_none()


async def get_user(user_id: uuid.UUID, session: AsyncSession) -> User:
    result = await session.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise UserNotFound(user_id=user_id)
    return user


async def _require_manager(
    requester_id: uuid.UUID, organization_id: uuid.UUID, session: AsyncSession
) -> OrganizationRole:
    """Requester must hold OWNER or ORG_ADMIN in the organization itself.

    Platform role (super-admin included) does not substitute for it.
    """
    membership = await find_active_membership(requester_id, organization_id, session)
    if membership is None:
        raise PermissionDenied(
            "Organization administrator role required", organization_id=organization_id
        )
    role = parse_organization_role(membership.role)
    if not meets_minimum(role, MANAGER_ROLE):
        raise PermissionDenied(
            "Organization administrator role required", organization_id=organization_id
        )
    return role


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------

async def grant_access(
    user_id: uuid.UUID,
    organization_id: uuid.UUID,
    role: OrganizationRole,
    requester_id: uuid.UUID,
    session: AsyncSession,
    *,
    metadata: Optional[ClientMetadata] = None,
) -> Membership:
    """Grant ``user_id`` an active membership in ``organization_id``."""
    requester_role = await _require_manager(requester_id, organization_id, session)
    if compare_role(role, requester_role) > 0:
        raise PermissionDenied("Cannot grant a role above your own", role=role.value)

    target = await get_user(user_id, session)
    if not target.is_active:
        raise UserNotFound("User is deactivated", user_id=user_id)

    if await find_active_membership(user_id, organization_id, session) is not None:
        raise AlreadyMember(user_id=user_id, organization_id=organization_id)

    org = await get_organization(organization_id, session)
    if org is None or not org.is_active:
        raise InvalidOrganization(organization_id=organization_id)

    membership = Membership(
        user_id=user_id,
        organization_id=organization_id,
        role=role.value,
    )
    # The partial unique index is the arbiter for concurrent grants: the
    # loser's INSERT fails inside its SAVEPOINT and surfaces as AlreadyMember.
    try:
        async with session.begin_nested():
            session.add(membership)
            await session.flush()
    except IntegrityError:
        log.info(
            "membership.grant_conflict",
            user_id=str(user_id),
            organization_id=str(organization_id),
        )
        raise AlreadyMember(user_id=user_id, organization_id=organization_id) from None

    await audit.log_event(
        session,
        action=AuditAction.MEMBERSHIP_GRANT,
        actor_id=requester_id,
        organization_id=organization_id,
        target_type=AuditTargetType.MEMBERSHIP,
        target_id=membership.id,
        details={"user_id": user_id, "role": role},
        metadata=metadata,
    )
    log.info(
        "membership.granted",
        user_id=str(user_id),
        organization_id=str(organization_id),
        role=role.value,
    )
    return membership


async def revoke_access(
    user_id: uuid.UUID,
    organization_id: uuid.UUID,
    requester_id: uuid.UUID,
    session: AsyncSession,
    *,
    metadata: Optional[ClientMetadata] = None,
) -> Membership:
    """Deactivate a membership. The home membership can never be revoked."""
    target = await get_user(user_id, session)
    # Checked before permissions: the answer is the same for every requester.
    if organization_id == target.home_organization_id:
        raise CannotRevokeHome(user_id=user_id, organization_id=organization_id)

    requester_role = await _require_manager(requester_id, organization_id, session)

    membership = await find_active_membership(user_id, organization_id, session)
    if membership is None:
        raise MembershipNotFound(user_id=user_id, organization_id=organization_id)

    if compare_role(parse_organization_role(membership.role), requester_role) > 0:
        raise PermissionDenied("Cannot revoke a member with a higher role")
    await ensure_not_last_owner(membership, target, session)

    await end_membership(membership, target, session)

    await audit.log_event(
        session,
        action=AuditAction.MEMBERSHIP_REVOKE,
        actor_id=requester_id,
        organization_id=organization_id,
        target_type=AuditTargetType.MEMBERSHIP,
        target_id=membership.id,
        details={"user_id": user_id, "role": membership.role},
        metadata=metadata,
    )
    log.info(
        "membership.revoked",
        user_id=str(user_id),
        organization_id=str(organization_id),
    )
    return membership


async def create_home_membership(
    user: User, role: OrganizationRole, session: AsyncSession
) -> Membership:
    """Insert the non-revocable membership to the user's home organization."""
    membership = Membership(
        user_id=user.id,
        organization_id=user.home_organization_id,
        role=role.value,
    )
    session.add(membership)
    await session.flush()
    return membership


async def set_membership_role(
    membership: Membership, role: OrganizationRole, session: AsyncSession
) -> Membership:
    membership.role = role.value
    session.add(membership)
    await session.flush()
    return membership


async def end_membership(membership: Membership, target: User, session: AsyncSession) -> Membership:
    """Deactivate ``membership`` and clear ``target``'s pointer to its organization."""
    membership.is_active = False
    membership.left_at = datetime.now(timezone.utc)
    session.add(membership)

    # Drop a pointer that would otherwise go stale.
    if target.current_organization_id == membership.organization_id:
        target.current_organization_id = None
        session.add(target)

    await session.flush()
    return membership


async def count_active_owners(organization_id: uuid.UUID, session: AsyncSession) -> int:
    """Active OWNER memberships held by active identities."""
    result = await session.execute(
        select(func.count())
        .select_from(Membership)
        .join(User, User.id == Membership.user_id)
        .where(
            Membership.organization_id == organization_id,
            Membership.role == OrganizationRole.OWNER.value,
            Membership.is_active == True,  # noqa: E712
            User.is_active == True,  # noqa: E712
        )
    )
    return result.scalar_one()


async def ensure_not_last_owner(
    membership: Membership, target: User, session: AsyncSession
) -> None:
    """Raise ``LastOwner`` if ``target`` losing ``membership``'s OWNER role
    would leave its organization without an active owner.
    """
    if not target.is_active:
        return
    if parse_organization_role(membership.role) is not OrganizationRole.OWNER:
        return
    if await count_active_owners(membership.organization_id, session) <= 1:
        log.info(
            "membership.last_owner_protected",
            user_id=str(membership.user_id),
            organization_id=str(membership.organization_id),
        )
        raise LastOwner(organization_id=membership.organization_id)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def list_accessible(
    user_id: uuid.UUID, session: AsyncSession
) -> list[AccessibleOrganization]:
    """All active memberships of a user, oldest first, home flagged primary."""
    user = await get_user(user_id, session)
    result = await session.execute(
        select(Membership, Organization)
        .join(Organization, Organization.id == Membership.organization_id)
        .where(Membership.user_id == user_id, Membership.is_active == True)  # noqa: E712
        .order_by(Membership.joined_at.asc(), Membership.id)
    )
    return [
        AccessibleOrganization(
            membership_id=m.id,
            organization=OrganizationSnapshot.model_validate(org),
            role=parse_organization_role(m.role),
            joined_at=m.joined_at,
            is_primary=m.organization_id == user.home_organization_id,
        )
        for m, org in result.all()
    ]


async def validate_access(
    user_id: uuid.UUID,
    organization_id: uuid.UUID,
    session: AsyncSession,
    minimum_role: OrganizationRole = OrganizationRole.GUEST,
) -> Optional[MembershipAccess]:
    """Return the membership if it is active, meets ``minimum_role`` and the
    organization is active; otherwise None. Absence is not an error here.
    """
    result = await session.execute(
        select(Membership, Organization)
        .join(Organization, Organization.id == Membership.organization_id)
        .where(
            Membership.user_id == user_id,
            Membership.organization_id == organization_id,
            Membership.is_active == True,  # noqa: E712
        )
    )
    row = result.first()
    if row is None:
        return None
    membership, org = row
    if not org.is_active:
        return None
    if not meets_minimum(parse_organization_role(membership.role), minimum_role):
        return None
    return MembershipAccess(
        membership=membership,
        organization=OrganizationSnapshot.model_validate(org),
    )


async def list_members(
    organization_id: uuid.UUID, session: AsyncSession
) -> list[MemberResponse]:
    """Active members of one organization, in join order."""
    result = await session.execute(
        select(Membership, User)
        .join(User, User.id == Membership.user_id)
        .where(
            Membership.organization_id == organization_id,
            Membership.is_active == True,  # noqa: E712
            User.is_active == True,  # noqa: E712
        )
        .order_by(Membership.joined_at.asc(), Membership.id)
    )
    return [
        MemberResponse(
            user_id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            platform_role=user.role,
            organization_role=parse_organization_role(m.role),
            is_primary=user.home_organization_id == organization_id,
            joined_at=m.joined_at,
        )
        for m, user in result.all()
    ]
