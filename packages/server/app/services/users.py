"""
Identity service — registration, login, admin user management.

Identities are never hard-deleted: deactivation flips ``is_active`` and
bumps ``token_version`` so outstanding tokens stop working.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import HTTPException
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from crm_shared.schemas.audit import AuditAction, AuditTargetType
from crm_shared.schemas.roles import (
    OrganizationRole,
    PlatformRole,
    compare_role,
    is_super_admin,
    parse_organization_role,
    parse_platform_role,
)
from crm_shared.schemas.users import RegisterRequest, UserCreateRequest

from app.core.auth import generate_temporary_password, hash_password, verify_password
from app.core.errors import (
    DuplicateIdentity,
    InvalidOrganization,
    LastSuperAdmin,
    MembershipNotFound,
    OrganizationRequired,
    PermissionDenied,
)
from app.models.organization import Organization
from app.models.user import User
from app.services import audit, memberships
from app.services.audit import ClientMetadata
from app.services.authorization import (
    ProtectedAction,
    Subject,
    authorize,
    can_manage_user,
    can_manage_user_roles,
)
from app.services.context import (
    EffectiveContext,
    require_organization,
    resolve_effective_context,
)
from app.services.organizations import insert_organization

log = structlog.get_logger()


def normalize_email(email: str) -> str:
    return email.strip().lower()


async def _email_taken(email: str, organization_id: uuid.UUID, session: AsyncSession) -> bool:
    result = await session.execute(
        select(User.id).where(User.email == email, User.home_organization_id == organization_id)
    )
    return result.first() is not None


async def _insert_user(
    *,
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    role: PlatformRole,
    organization_id: uuid.UUID,
    organization_role: OrganizationRole,
    session: AsyncSession,
) -> User:
    email = normalize_email(email)
    if await _email_taken(email, organization_id, session):
        raise DuplicateIdentity(email=email)

    user = User(
        email=email,
        password_hash=hash_password(password),
        first_name=first_name,
        last_name=last_name,
        role=role.value,
        home_organization_id=organization_id,
    )
    try:
        async with session.begin_nested():
            session.add(user)
            await session.flush()
    except IntegrityError:
        raise DuplicateIdentity(email=email) from None

    await memberships.create_home_membership(user, organization_role, session)
    return user


async def count_active_super_admins(session: AsyncSession) -> int:
    result = await session.execute(
        select(func.count()).select_from(User).where(
            User.role == PlatformRole.SUPER_ADMIN.value,
            User.is_active == True,  # noqa: E712
        )
    )
    return result.scalar_one()


# ---------------------------------------------------------------------------
# Registration & login
# ---------------------------------------------------------------------------

async def register_organization(
    req: RegisterRequest,
    session: AsyncSession,
    *,
    metadata: Optional[ClientMetadata] = None,
) -> tuple[User, Organization]:
    """Self-service signup: a new organization and its first identity (OWNER)."""
    org = await insert_organization(req.organization, session)
    user = await _insert_user(
        email=req.email,
        password=req.password,
        first_name=req.first_name,
        last_name=req.last_name,
        role=PlatformRole.ORG_ADMIN,
        organization_id=org.id,
        organization_role=OrganizationRole.OWNER,
        session=session,
    )

    await audit.log_event(
        session,
        action=AuditAction.ORGANIZATION_CREATE,
        actor_id=user.id,
        organization_id=org.id,
        target_type=AuditTargetType.ORGANIZATION,
        target_id=org.id,
        details={"code": org.code, "name": org.name, "self_service": True},
        metadata=metadata,
    )
    await audit.log_event(
        session,
        action=AuditAction.USER_CREATE,
        actor_id=user.id,
        organization_id=org.id,
        target_type=AuditTargetType.USER,
        target_id=user.id,
        details={"email": user.email, "role": user.role, "organization_role": OrganizationRole.OWNER},
        metadata=metadata,
    )
    log.info("auth.registered", user_id=str(user.id), organization_id=str(org.id))
    return user, org


async def authenticate(
    email: str,
    password: str,
    session: AsyncSession,
    *,
    organization_code: Optional[str] = None,
) -> User:
    """Verify credentials. The same email may exist in several organizations;
    if the password matches more than one, the caller must name the
    organization (selection-required with the matching candidates).
    """
    email = normalize_email(email)
    stmt = (
        select(User, Organization)
        .join(Organization, Organization.id == User.home_organization_id)
        .where(User.email == email)
    )
    if organization_code:
        stmt = stmt.where(Organization.code == organization_code.strip().upper())
    rows = (await session.execute(stmt)).all()

    matches = [(u, o) for u, o in rows if verify_password(password, u.password_hash)]
    if not matches:
        log.info("auth.login_failure", reason="invalid_credentials")
        raise HTTPException(status_code=401, detail="Invalid email or password")

    if len(matches) > 1:
        raise OrganizationRequired(
            organizations=[
                {"id": str(o.id), "code": o.code, "name": o.name, "is_active": o.is_active}
                for _, o in matches
            ],
            message="Email exists in several organizations; specify organization_code",
        )

    user, _ = matches[0]
    if not user.is_active:
        log.info("auth.login_failure", reason="inactive", user_id=str(user.id))
        raise HTTPException(status_code=403, detail="Account is deactivated")

    user.last_login_at = datetime.now(timezone.utc)
    session.add(user)
    await session.flush()
    log.info("auth.login_success", user_id=str(user.id))
    return user


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------

async def create_user(
    actor: User,
    ctx: EffectiveContext,
    req: UserCreateRequest,
    session: AsyncSession,
    *,
    metadata: Optional[ClientMetadata] = None,
) -> tuple[User, Optional[str]]:
    """Create an identity with its home membership.

    Super-admins may target any organization (``req.organization_id`` or the
    effective one); organization administrators create only into their
    effective organization. Returns (user, temporary_password_or_none).
    """
    actor_role = parse_platform_role(actor.role)

    if is_super_admin(actor_role):
        organization_id = req.organization_id or ctx.organization_id
        if organization_id is None:
            await require_organization(ctx, actor, session)
    else:
        ctx = await require_organization(ctx, actor, session)
        decision = authorize(ProtectedAction.CREATE_USER, ctx.subject)
        if not decision:
            raise PermissionDenied(decision.reason)
        if req.organization_id is not None and req.organization_id != ctx.organization_id:
            raise PermissionDenied("Cannot create users in another organization")
        organization_id = ctx.organization_id
        if compare_role(req.organization_role, ctx.organization_role) > 0:
            raise PermissionDenied("Cannot assign an organization role above your own")

    if compare_role(req.role, actor_role) > 0:
        raise PermissionDenied("Cannot assign a platform role above your own")

    org = await memberships.get_organization(organization_id, session)
    if org is None or not org.is_active:
        raise InvalidOrganization(organization_id=organization_id)

    temporary_password = None if req.password else generate_temporary_password()
    user = await _insert_user(
        email=req.email,
        password=req.password or temporary_password,
        first_name=req.first_name,
        last_name=req.last_name,
        role=req.role,
        organization_id=org.id,
        organization_role=req.organization_role,
        session=session,
    )

    await audit.log_event(
        session,
        action=AuditAction.USER_CREATE,
        actor_id=actor.id,
        organization_id=org.id,
        target_type=AuditTargetType.USER,
        target_id=user.id,
        details={
            "email": user.email,
            "role": req.role,
            "organization_role": req.organization_role,
        },
        metadata=metadata,
    )
    log.info("user.created", user_id=str(user.id), organization_id=str(org.id), role=user.role)
    return user, temporary_password


async def update_user_roles(
    actor: User,
    ctx: EffectiveContext,
    target_id: uuid.UUID,
    session: AsyncSession,
    *,
    platform_role: Optional[PlatformRole] = None,
    organization_role: Optional[OrganizationRole] = None,
    metadata: Optional[ClientMetadata] = None,
) -> User:
    """Change a target's platform role and/or membership role in the
    effective organization. Both evaluator decisions must allow it.
    """
    ctx = await require_organization(ctx, actor, session)
    target = await memberships.get_user(target_id, session)
    membership = await memberships.find_active_membership(target.id, ctx.organization_id, session)
    if membership is None:
        raise MembershipNotFound(user_id=target.id, organization_id=ctx.organization_id)

    before_platform = parse_platform_role(target.role)
    before_org = parse_organization_role(membership.role)

    # The platform role is global: only the home organization may change it.
    target_subject = Subject(
        user_id=target.id,
        organization_id=(
            target.home_organization_id if platform_role is not None else ctx.organization_id
        ),
        platform_role=before_platform,
        organization_role=before_org,
    )
    decision = can_manage_user_roles(
        ctx.subject,
        target_subject,
        new_platform_role=platform_role,
        new_organization_role=organization_role,
    )
    if not decision:
        log.info(
            "user.role_change_denied",
            actor_id=str(actor.id),
            target_id=str(target.id),
            reason=decision.reason,
        )
        raise PermissionDenied(decision.reason)

    if (
        platform_role is not None
        and before_platform is PlatformRole.SUPER_ADMIN
        and platform_role is not PlatformRole.SUPER_ADMIN
        and target.is_active
        and await count_active_super_admins(session) <= 1
    ):
        raise LastSuperAdmin()

    if organization_role is not None and organization_role is not OrganizationRole.OWNER:
        await memberships.ensure_not_last_owner(membership, target, session)

    if platform_role is not None:
        target.role = platform_role.value
        session.add(target)
    if organization_role is not None:
        await memberships.set_membership_role(membership, organization_role, session)
    await session.flush()

    await audit.log_event(
        session,
        action=AuditAction.ROLE_CHANGE,
        actor_id=actor.id,
        organization_id=ctx.organization_id,
        target_type=AuditTargetType.USER,
        target_id=target.id,
        details={
            "before": {"role": before_platform, "organization_role": before_org},
            "after": {
                "role": platform_role or before_platform,
                "organization_role": organization_role or before_org,
            },
        },
        metadata=metadata,
    )
    log.info(
        "user.roles_changed",
        actor_id=str(actor.id),
        target_id=str(target.id),
        role=target.role,
        organization_role=membership.role,
    )
    return target


async def _load_managed_target(
    actor: User, target_id: uuid.UUID, session: AsyncSession
) -> User:
    """Super-admin only. Unscoped, any identity across organizations; scoped
    to an organization, only identities that belong to it.
    """
    if not is_super_admin(actor.role):
        raise PermissionDenied("Super admin access required")
    ctx = await resolve_effective_context(actor, session)
    target = await memberships.get_user(target_id, session)

    target_organization_id = target.home_organization_id
    if (
        ctx.organization_id is not None
        and target_organization_id != ctx.organization_id
        and await memberships.find_active_membership(target.id, ctx.organization_id, session)
    ):
        target_organization_id = ctx.organization_id

    target_subject = Subject(
        user_id=target.id,
        organization_id=target_organization_id,
        platform_role=parse_platform_role(target.role),
    )
    decision = can_manage_user(ctx.subject, target_subject, unscoped=ctx.unscoped)
    if not decision:
        log.info(
            "user.manage_denied",
            actor_id=str(actor.id),
            target_id=str(target.id),
            reason=decision.reason,
        )
        raise PermissionDenied(decision.reason)
    return target


async def _deactivate_identity(target: User, session: AsyncSession) -> None:
    if is_super_admin(target.role) and await count_active_super_admins(session) <= 1:
        raise LastSuperAdmin()
    target.is_active = False
    target.token_version += 1
    session.add(target)
    await session.flush()


async def deactivate_user(
    actor: User,
    target_id: uuid.UUID,
    session: AsyncSession,
    *,
    metadata: Optional[ClientMetadata] = None,
) -> User:
    """Soft-delete an identity. Never the caller, never the last super-admin."""
    target = await _load_managed_target(actor, target_id, session)
    if target.id == actor.id:
        raise PermissionDenied("Cannot delete your own account")
    if not target.is_active:
        return target
    await _deactivate_identity(target, session)

    await audit.log_event(
        session,
        action=AuditAction.USER_DELETE,
        actor_id=actor.id,
        organization_id=target.home_organization_id,
        target_type=AuditTargetType.USER,
        target_id=target.id,
        details={"email": target.email, "soft_delete": True},
        metadata=metadata,
    )
    log.info("user.deactivated", actor_id=str(actor.id), target_id=str(target.id))
    return target


async def reactivate_user(
    actor: User,
    target_id: uuid.UUID,
    session: AsyncSession,
    *,
    metadata: Optional[ClientMetadata] = None,
) -> User:
    """Undo a soft delete. Tokens issued before deactivation stay invalid."""
    target = await _load_managed_target(actor, target_id, session)
    if target.is_active:
        return target

    org = await memberships.get_organization(target.home_organization_id, session)
    if org is None or not org.is_active:
        raise InvalidOrganization(organization_id=target.home_organization_id)

    target.is_active = True
    session.add(target)
    await session.flush()

    await audit.log_event(
        session,
        action=AuditAction.USER_REACTIVATE,
        actor_id=actor.id,
        organization_id=target.home_organization_id,
        target_type=AuditTargetType.USER,
        target_id=target.id,
        details={"email": target.email},
        metadata=metadata,
    )
    log.info("user.reactivated", actor_id=str(actor.id), target_id=str(target.id))
    return target


async def remove_organization_user(
    actor: User,
    ctx: EffectiveContext,
    target_id: uuid.UUID,
    session: AsyncSession,
    *,
    metadata: Optional[ClientMetadata] = None,
) -> User:
    """Remove a user from the effective organization.

    A user whose home is this organization is soft-deleted; a guest only
    loses their membership here. Never the caller, never a member with a
    higher organization role, never the last owner.
    """
    ctx = await require_organization(ctx, actor, session)
    decision = authorize(ProtectedAction.REMOVE_USER, ctx.subject)
    if not decision:
        raise PermissionDenied(decision.reason)

    target = await memberships.get_user(target_id, session)
    if target.id == actor.id:
        raise PermissionDenied("Cannot remove yourself from the organization")
    membership = await memberships.find_active_membership(target.id, ctx.organization_id, session)
    if membership is None:
        raise MembershipNotFound(user_id=target.id, organization_id=ctx.organization_id)

    target_org_role = parse_organization_role(membership.role)
    target_subject = Subject(
        user_id=target.id,
        organization_id=ctx.organization_id,
        platform_role=parse_platform_role(target.role),
        organization_role=target_org_role,
    )
    decision = can_manage_user(ctx.subject, target_subject)
    if not decision:
        raise PermissionDenied(decision.reason)
    if ctx.organization_role is not None and compare_role(
        target_org_role, ctx.organization_role
    ) > 0:
        raise PermissionDenied("Cannot remove a member with a higher organization role")
    is_home = target.home_organization_id == ctx.organization_id
    if is_home and not target.is_active:
        return target
    await memberships.ensure_not_last_owner(membership, target, session)

    if is_home:
        await _deactivate_identity(target, session)
        action, target_type, audit_target = AuditAction.USER_DELETE, AuditTargetType.USER, target.id
        details = {"email": target.email, "soft_delete": True}
    else:
        await memberships.end_membership(membership, target, session)
        action, target_type, audit_target = (
            AuditAction.MEMBERSHIP_REVOKE, AuditTargetType.MEMBERSHIP, membership.id
        )
        details = {"user_id": target.id, "role": target_org_role}

    await audit.log_event(
        session,
        action=action,
        actor_id=actor.id,
        organization_id=ctx.organization_id,
        target_type=target_type,
        target_id=audit_target,
        details=details,
        metadata=metadata,
    )
    log.info(
        "user.removed_from_organization",
        actor_id=str(actor.id),
        target_id=str(target.id),
        organization_id=str(ctx.organization_id),
        action=action.value,
    )
    return target


async def force_logout(
    actor: User,
    target_id: uuid.UUID,
    session: AsyncSession,
    *,
    metadata: Optional[ClientMetadata] = None,
) -> User:
    """Invalidate every token issued to the target so far."""
    target = await _load_managed_target(actor, target_id, session)
    target.token_version += 1
    session.add(target)
    await session.flush()

    await audit.log_event(
        session,
        action=AuditAction.FORCE_LOGOUT,
        actor_id=actor.id,
        organization_id=target.home_organization_id,
        target_type=AuditTargetType.USER,
        target_id=target.id,
        details={"token_version": target.token_version},
        metadata=metadata,
    )
    log.info("user.force_logout", actor_id=str(actor.id), target_id=str(target.id))
    return target


async def reset_password(
    actor: User,
    target_id: uuid.UUID,
    session: AsyncSession,
    *,
    metadata: Optional[ClientMetadata] = None,
) -> str:
    """Set a random temporary password and return it (shown once)."""
    target = await _load_managed_target(actor, target_id, session)
    temporary_password = generate_temporary_password()
    target.password_hash = hash_password(temporary_password)
    session.add(target)
    await session.flush()

    await audit.log_event(
        session,
        action=AuditAction.PASSWORD_RESET,
        actor_id=actor.id,
        organization_id=target.home_organization_id,
        target_type=AuditTargetType.USER,
        target_id=target.id,
        metadata=metadata,
    )
    log.info("user.password_reset", actor_id=str(actor.id), target_id=str(target.id))
    return temporary_password


async def list_users(
    session: AsyncSession,
    *,
    organization_id: Optional[uuid.UUID] = None,
    include_inactive: bool = False,
) -> list[User]:
    stmt = select(User).order_by(User.created_at, User.email)
    if organization_id is not None:
        stmt = stmt.where(User.home_organization_id == organization_id)
    if not include_inactive:
        stmt = stmt.where(User.is_active == True)  # noqa: E712
    result = await session.execute(stmt)
    return list(result.scalars().all())
