"""
Identity service tests: registration, login, user creation, role changes
and the super-admin maintenance operations.
"""

import pytest
from fastapi import HTTPException
from sqlmodel import select

from crm_shared.schemas.organizations import OrganizationCreateRequest
from crm_shared.schemas.roles import OrganizationRole, PlatformRole
from crm_shared.schemas.users import RegisterRequest, UserCreateRequest

from app.core.auth import verify_password
from app.core.errors import (
    DuplicateIdentity,
    InvalidOrganization,
    LastOwner,
    LastSuperAdmin,
    MembershipNotFound,
    OrganizationRequired,
    PermissionDenied,
)
from app.models.audit_log import AuditRecord
from app.services import memberships
from app.services import users as user_service
from app.services.context import resolve_effective_context


async def _actions(session) -> list[str]:
    result = await session.execute(select(AuditRecord.action).order_by(AuditRecord.created_at))
    return list(result.scalars().all())


@pytest.fixture
async def acme(session, factory):
    return await factory.organization(session, "ACME", "Acme")


@pytest.fixture
async def globex(session, factory):
    return await factory.organization(session, "GLOBEX", "Globex")


@pytest.fixture
async def admin(session, factory, acme):
    return await factory.user(
        session,
        acme,
        role=PlatformRole.ORG_ADMIN,
        organization_role=OrganizationRole.ORG_ADMIN,
    )


@pytest.fixture
async def root(session, factory, acme):
    return await factory.user(
        session,
        acme,
        role=PlatformRole.SUPER_ADMIN,
        organization_role=OrganizationRole.OWNER,
    )


def _create_request(**overrides) -> UserCreateRequest:
    data = {
        "email": "new.hire@example.com",
        "first_name": "New",
        "last_name": "Hire",
    }
    data.update(overrides)
    return UserCreateRequest(**data)


# ---------------------------------------------------------------------------
# Registration & login
# ---------------------------------------------------------------------------

class TestRegister:
    async def test_register_creates_org_owner_and_audit(self, session):
        req = RegisterRequest(
            organization=OrganizationCreateRequest(name="Umbrella", code="UMBRELLA"),
            email="Founder@Example.com",
            password="s3cret-password",
            first_name="Ada",
            last_name="Founder",
        )
        user, org = await user_service.register_organization(req, session)
        assert org.code == "UMBRELLA"
        assert user.email == "founder@example.com"
        assert user.role == "ORG_ADMIN"
        assert user.home_organization_id == org.id

        access = await memberships.validate_access(user.id, org.id, session)
        assert access.role is OrganizationRole.OWNER
        assert await _actions(session) == ["ORGANIZATION_CREATE", "USER_CREATE"]

    async def test_duplicate_code_conflicts(self, session, acme):
        req = RegisterRequest(
            organization=OrganizationCreateRequest(name="Other Acme", code="ACME"),
            email="x@example.com",
            password="s3cret-password",
            first_name="X",
            last_name="Y",
        )
        with pytest.raises(HTTPException) as excinfo:
            await user_service.register_organization(req, session)
        assert excinfo.value.status_code == 409


class TestAuthenticate:
    async def test_valid_credentials(self, session, factory, acme, password):
        user = await factory.user(session, acme, email="alice@example.com")
        found = await user_service.authenticate("ALICE@example.com ", password, session)
        assert found.id == user.id
        assert found.last_login_at is not None

    async def test_wrong_password(self, session, factory, acme):
        await factory.user(session, acme, email="alice@example.com")
        with pytest.raises(HTTPException) as excinfo:
            await user_service.authenticate("alice@example.com", "nope-nope", session)
        assert excinfo.value.status_code == 401

    async def test_unknown_email(self, session):
        with pytest.raises(HTTPException) as excinfo:
            await user_service.authenticate("ghost@example.com", "whatever", session)
        assert excinfo.value.status_code == 401

    async def test_inactive_account(self, session, factory, acme, password):
        await factory.user(session, acme, email="gone@example.com", is_active=False)
        with pytest.raises(HTTPException) as excinfo:
            await user_service.authenticate("gone@example.com", password, session)
        assert excinfo.value.status_code == 403

    async def test_email_in_two_organizations_needs_code(
        self, session, factory, acme, globex, password
    ):
        await factory.user(session, acme, email="shared@example.com")
        other = await factory.user(session, globex, email="shared@example.com")

        with pytest.raises(OrganizationRequired) as excinfo:
            await user_service.authenticate("shared@example.com", password, session)
        assert {o["code"] for o in excinfo.value.organizations} == {"ACME", "GLOBEX"}

        found = await user_service.authenticate(
            "shared@example.com", password, session, organization_code="globex"
        )
        assert found.id == other.id


# ---------------------------------------------------------------------------
# User creation
# ---------------------------------------------------------------------------

class TestCreateUser:
    async def test_admin_creates_in_effective_org(self, session, admin, acme):
        ctx = await resolve_effective_context(admin, session)
        user, temp = await user_service.create_user(admin, ctx, _create_request(), session)
        assert user.home_organization_id == acme.id
        assert temp
        assert verify_password(temp, user.password_hash)
        access = await memberships.validate_access(user.id, acme.id, session)
        assert access.role is OrganizationRole.MEMBER
        assert await _actions(session) == ["USER_CREATE"]

    async def test_explicit_password_returns_no_temp(self, session, admin):
        ctx = await resolve_effective_context(admin, session)
        _, temp = await user_service.create_user(
            admin, ctx, _create_request(password="chosen-password"), session
        )
        assert temp is None

    async def test_admin_cannot_target_other_org(self, session, admin, globex):
        ctx = await resolve_effective_context(admin, session)
        with pytest.raises(PermissionDenied):
            await user_service.create_user(
                admin, ctx, _create_request(organization_id=globex.id), session
            )

    async def test_admin_cannot_assign_higher_role(self, session, admin):
        ctx = await resolve_effective_context(admin, session)
        with pytest.raises(PermissionDenied):
            await user_service.create_user(
                admin, ctx, _create_request(role=PlatformRole.SUPER_ADMIN), session
            )
        with pytest.raises(PermissionDenied):
            await user_service.create_user(
                admin, ctx, _create_request(organization_role=OrganizationRole.OWNER), session
            )

    async def test_regular_user_cannot_create(self, session, factory, acme):
        user = await factory.user(session, acme, organization_role=OrganizationRole.OWNER)
        ctx = await resolve_effective_context(user, session)
        with pytest.raises(PermissionDenied):
            await user_service.create_user(user, ctx, _create_request(), session)

    async def test_duplicate_email_in_same_org(self, session, factory, admin, acme):
        await factory.user(session, acme, email="new.hire@example.com")
        ctx = await resolve_effective_context(admin, session)
        with pytest.raises(DuplicateIdentity):
            await user_service.create_user(admin, ctx, _create_request(), session)

    async def test_same_email_in_other_org_allowed(self, session, factory, root, acme, globex):
        await factory.user(session, acme, email="new.hire@example.com")
        ctx = await resolve_effective_context(root, session)
        user, _ = await user_service.create_user(
            root, ctx, _create_request(organization_id=globex.id), session
        )
        assert user.home_organization_id == globex.id

    async def test_unscoped_super_admin_must_name_org(self, session, root):
        ctx = await resolve_effective_context(root, session)
        assert ctx.unscoped
        with pytest.raises(OrganizationRequired):
            await user_service.create_user(root, ctx, _create_request(), session)


# ---------------------------------------------------------------------------
# Role changes
# ---------------------------------------------------------------------------

class TestUpdateRoles:
    async def test_admin_promotes_member(self, session, factory, admin, acme):
        target = await factory.user(session, acme)
        ctx = await resolve_effective_context(admin, session)
        await user_service.update_user_roles(
            admin, ctx, target.id, session, organization_role=OrganizationRole.ORG_ADMIN
        )
        access = await memberships.validate_access(target.id, acme.id, session)
        assert access.role is OrganizationRole.ORG_ADMIN

        record = (await session.execute(select(AuditRecord))).scalars().one()
        assert record.action == "ROLE_CHANGE"
        assert record.organization_id == acme.id
        assert record.details["before"] == {"role": "USER", "organization_role": "MEMBER"}
        assert record.details["after"] == {"role": "USER", "organization_role": "ORG_ADMIN"}

    async def test_platform_admin_with_member_role_denied(self, session, factory, acme):
        actor = await factory.user(
            session, acme, role=PlatformRole.ORG_ADMIN, organization_role=OrganizationRole.MEMBER
        )
        target = await factory.user(session, acme)
        ctx = await resolve_effective_context(actor, session)
        with pytest.raises(PermissionDenied):
            await user_service.update_user_roles(
                actor, ctx, target.id, session, organization_role=OrganizationRole.GUEST
            )
        assert await _actions(session) == []

    async def test_platform_role_change_needs_home_org(self, session, factory, admin, acme, globex):
        visitor = await factory.user(session, globex)
        await factory.membership(session, visitor, acme, OrganizationRole.MEMBER)
        ctx = await resolve_effective_context(admin, session)
        with pytest.raises(PermissionDenied):
            await user_service.update_user_roles(
                admin, ctx, visitor.id, session, platform_role=PlatformRole.VIEWER
            )
        # The membership role in the shared organization is fair game.
        await user_service.update_user_roles(
            admin, ctx, visitor.id, session, organization_role=OrganizationRole.GUEST
        )

    async def test_target_not_member_of_effective_org(self, session, factory, admin, globex):
        stranger = await factory.user(session, globex)
        ctx = await resolve_effective_context(admin, session)
        with pytest.raises(MembershipNotFound):
            await user_service.update_user_roles(
                admin, ctx, stranger.id, session, organization_role=OrganizationRole.GUEST
            )

    async def test_last_super_admin_cannot_be_demoted(self, session, root, acme):
        root.current_organization_id = acme.id
        ctx = await resolve_effective_context(root, session)
        with pytest.raises(LastSuperAdmin):
            await user_service.update_user_roles(
                root, ctx, root.id, session, platform_role=PlatformRole.ORG_ADMIN
            )

    async def test_sole_owner_cannot_step_down(self, session, factory, acme):
        owner = await factory.user(
            session, acme, role=PlatformRole.ORG_ADMIN, organization_role=OrganizationRole.OWNER
        )
        ctx = await resolve_effective_context(owner, session)
        with pytest.raises(LastOwner):
            await user_service.update_user_roles(
                owner, ctx, owner.id, session, organization_role=OrganizationRole.ORG_ADMIN
            )
        access = await memberships.validate_access(owner.id, acme.id, session)
        assert access.role is OrganizationRole.OWNER
        assert await _actions(session) == []

    async def test_owner_steps_down_when_another_remains(self, session, factory, acme):
        owner = await factory.user(
            session, acme, role=PlatformRole.ORG_ADMIN, organization_role=OrganizationRole.OWNER
        )
        await factory.user(session, acme, organization_role=OrganizationRole.OWNER)
        ctx = await resolve_effective_context(owner, session)
        await user_service.update_user_roles(
            owner, ctx, owner.id, session, organization_role=OrganizationRole.ORG_ADMIN
        )
        access = await memberships.validate_access(owner.id, acme.id, session)
        assert access.role is OrganizationRole.ORG_ADMIN

    async def test_deactivated_owner_does_not_count(self, session, factory, acme):
        owner = await factory.user(
            session, acme, role=PlatformRole.ORG_ADMIN, organization_role=OrganizationRole.OWNER
        )
        await factory.user(
            session, acme, organization_role=OrganizationRole.OWNER, is_active=False
        )
        ctx = await resolve_effective_context(owner, session)
        with pytest.raises(LastOwner):
            await user_service.update_user_roles(
                owner, ctx, owner.id, session, organization_role=OrganizationRole.MEMBER
            )


# ---------------------------------------------------------------------------
# Super-admin maintenance
# ---------------------------------------------------------------------------

class TestMaintenance:
    async def test_deactivate_bumps_token_version(self, session, factory, root, globex):
        target = await factory.user(session, globex)
        await user_service.deactivate_user(root, target.id, session)
        assert target.is_active is False
        assert target.token_version == 2
        assert await _actions(session) == ["USER_DELETE"]

    async def test_cannot_deactivate_self(self, session, root):
        with pytest.raises(PermissionDenied):
            await user_service.deactivate_user(root, root.id, session)

    async def test_org_admin_cannot_deactivate(self, session, factory, admin, acme):
        target = await factory.user(session, acme)
        with pytest.raises(PermissionDenied):
            await user_service.deactivate_user(admin, target.id, session)

    async def test_force_logout(self, session, factory, root, globex):
        target = await factory.user(session, globex)
        await user_service.force_logout(root, target.id, session)
        assert target.token_version == 2
        assert await _actions(session) == ["FORCE_LOGOUT"]

    async def test_reset_password(self, session, factory, root, globex, password):
        target = await factory.user(session, globex)
        temp = await user_service.reset_password(root, target.id, session)
        assert verify_password(temp, target.password_hash)
        assert not verify_password(password, target.password_hash)

    async def test_scoped_super_admin_limited_to_organization(
        self, session, factory, root, acme, globex
    ):
        root.current_organization_id = acme.id
        outsider = await factory.user(session, globex)
        with pytest.raises(PermissionDenied):
            await user_service.deactivate_user(root, outsider.id, session)
        with pytest.raises(PermissionDenied):
            await user_service.force_logout(root, outsider.id, session)
        with pytest.raises(PermissionDenied):
            await user_service.reset_password(root, outsider.id, session)
        assert outsider.is_active
        assert outsider.token_version == 1
        assert await _actions(session) == []

    async def test_scoped_super_admin_manages_own_organization(
        self, session, factory, root, acme, globex
    ):
        root.current_organization_id = acme.id
        local = await factory.user(session, acme)
        visitor = await factory.user(session, globex)
        await factory.membership(session, visitor, acme, OrganizationRole.GUEST)
        await user_service.force_logout(root, local.id, session)
        await user_service.force_logout(root, visitor.id, session)
        assert local.token_version == 2
        assert visitor.token_version == 2

    async def test_reactivate_restores_identity(self, session, factory, root, globex):
        target = await factory.user(session, globex)
        await user_service.deactivate_user(root, target.id, session)
        await user_service.reactivate_user(root, target.id, session)
        assert target.is_active is True
        # Tokens issued before the soft delete stay revoked.
        assert target.token_version == 2
        assert await _actions(session) == ["USER_DELETE", "USER_REACTIVATE"]

    async def test_reactivate_active_user_is_noop(self, session, factory, root, globex):
        target = await factory.user(session, globex)
        await user_service.reactivate_user(root, target.id, session)
        assert await _actions(session) == []

    async def test_reactivate_needs_active_home_organization(self, session, factory, root):
        dormant = await factory.organization(session, "DORMANT", is_active=False)
        target = await factory.user(session, dormant, is_active=False)
        with pytest.raises(InvalidOrganization):
            await user_service.reactivate_user(root, target.id, session)
        assert target.is_active is False

    async def test_org_admin_cannot_reactivate(self, session, factory, admin, acme):
        target = await factory.user(session, acme, is_active=False)
        with pytest.raises(PermissionDenied):
            await user_service.reactivate_user(admin, target.id, session)
        assert target.is_active is False

    async def test_list_users_filters(self, session, factory, root, acme, globex):
        await factory.user(session, globex)
        await factory.user(session, globex, is_active=False)
        assert len(await user_service.list_users(session, organization_id=globex.id)) == 1
        assert len(
            await user_service.list_users(
                session, organization_id=globex.id, include_inactive=True
            )
        ) == 2
        assert len(await user_service.list_users(session)) == 2


# ---------------------------------------------------------------------------
# Removal from the effective organization
# ---------------------------------------------------------------------------

class TestRemoveFromOrganization:
    async def test_home_user_is_soft_deleted(self, session, factory, admin, acme):
        target = await factory.user(session, acme)
        ctx = await resolve_effective_context(admin, session)
        await user_service.remove_organization_user(admin, ctx, target.id, session)
        assert target.is_active is False
        assert target.token_version == 2

        record = (await session.execute(select(AuditRecord))).scalars().one()
        assert record.action == "USER_DELETE"
        assert record.organization_id == acme.id
        assert record.target_id == target.id

    async def test_guest_loses_membership_only(self, session, factory, admin, acme, globex):
        visitor = await factory.user(session, globex)
        await factory.membership(session, visitor, acme, OrganizationRole.MEMBER)
        visitor.current_organization_id = acme.id
        ctx = await resolve_effective_context(admin, session)

        await user_service.remove_organization_user(admin, ctx, visitor.id, session)

        assert visitor.is_active is True
        assert visitor.current_organization_id is None
        assert await memberships.find_active_membership(visitor.id, acme.id, session) is None
        assert await memberships.find_active_membership(visitor.id, globex.id, session)
        assert await _actions(session) == ["MEMBERSHIP_REVOKE"]

    async def test_cannot_remove_self(self, session, admin):
        ctx = await resolve_effective_context(admin, session)
        with pytest.raises(PermissionDenied):
            await user_service.remove_organization_user(admin, ctx, admin.id, session)

    async def test_regular_user_cannot_remove(self, session, factory, acme):
        actor = await factory.user(session, acme, organization_role=OrganizationRole.OWNER)
        target = await factory.user(session, acme)
        ctx = await resolve_effective_context(actor, session)
        with pytest.raises(PermissionDenied):
            await user_service.remove_organization_user(actor, ctx, target.id, session)
        assert target.is_active

    async def test_higher_platform_role_refused(self, session, factory, admin, acme, globex):
        platform_admin = await factory.user(session, globex, role=PlatformRole.SUPER_ADMIN)
        await factory.membership(session, platform_admin, acme, OrganizationRole.MEMBER)
        ctx = await resolve_effective_context(admin, session)
        with pytest.raises(PermissionDenied):
            await user_service.remove_organization_user(admin, ctx, platform_admin.id, session)

    async def test_admin_cannot_remove_owner(self, session, factory, admin, acme):
        owner = await factory.user(session, acme, organization_role=OrganizationRole.OWNER)
        ctx = await resolve_effective_context(admin, session)
        with pytest.raises(PermissionDenied):
            await user_service.remove_organization_user(admin, ctx, owner.id, session)
        assert owner.is_active

    async def test_user_outside_organization(self, session, factory, admin, globex):
        stranger = await factory.user(session, globex)
        ctx = await resolve_effective_context(admin, session)
        with pytest.raises(MembershipNotFound):
            await user_service.remove_organization_user(admin, ctx, stranger.id, session)

    async def test_last_owner_protected(self, session, factory, acme, globex):
        operator = await factory.user(session, globex, role=PlatformRole.SUPER_ADMIN)
        owner = await factory.user(session, acme, organization_role=OrganizationRole.OWNER)
        operator.current_organization_id = acme.id
        ctx = await resolve_effective_context(operator, session)
        assert ctx.organization_role is None

        with pytest.raises(LastOwner):
            await user_service.remove_organization_user(operator, ctx, owner.id, session)
        assert owner.is_active
        assert await _actions(session) == []

    async def test_unscoped_super_admin_must_select_organization(self, session, factory, root, acme):
        target = await factory.user(session, acme)
        ctx = await resolve_effective_context(root, session)
        with pytest.raises(OrganizationRequired):
            await user_service.remove_organization_user(root, ctx, target.id, session)
