"""
Unit tests for the role hierarchies and comparison helpers.
"""

import itertools

import pytest

from crm_shared.schemas.roles import (
    ORGANIZATION_ROLE_ORDER,
    PLATFORM_ROLE_ORDER,
    OrganizationRole,
    PlatformRole,
    UnknownRoleError,
    compare_role,
    is_super_admin,
    meets_minimum,
    parse_organization_role,
    parse_platform_role,
)


class TestCompareRole:
    @pytest.mark.parametrize("order", [PLATFORM_ROLE_ORDER, ORGANIZATION_ROLE_ORDER])
    def test_total_order_matches_declaration(self, order):
        for (i, a), (j, b) in itertools.product(enumerate(order), repeat=2):
            expected = (i > j) - (i < j)
            assert compare_role(a, b) == expected

    def test_reflexive(self):
        for role in [*PlatformRole, *OrganizationRole]:
            assert compare_role(role, role) == 0

    def test_super_admin_is_top(self):
        for role in PlatformRole:
            assert meets_minimum(PlatformRole.SUPER_ADMIN, role)

    def test_owner_outranks_org_admin(self):
        assert compare_role(OrganizationRole.OWNER, OrganizationRole.ORG_ADMIN) == 1
        assert compare_role(OrganizationRole.GUEST, OrganizationRole.MEMBER) == -1

    def test_cross_hierarchy_comparison_raises(self):
        with pytest.raises(UnknownRoleError):
            compare_role(PlatformRole.ORG_ADMIN, OrganizationRole.ORG_ADMIN)

    def test_plain_string_rejected(self):
        with pytest.raises(UnknownRoleError):
            compare_role("ORG_ADMIN", PlatformRole.USER)


class TestParsing:
    def test_parse_platform_role(self):
        assert parse_platform_role("VIEWER") is PlatformRole.VIEWER
        assert parse_platform_role(PlatformRole.USER) is PlatformRole.USER

    def test_parse_organization_role(self):
        assert parse_organization_role("OWNER") is OrganizationRole.OWNER

    @pytest.mark.parametrize("value", ["", "admin", "ROOT", "owner"])
    def test_unknown_values_raise(self, value):
        with pytest.raises(UnknownRoleError):
            parse_platform_role(value)
        with pytest.raises(UnknownRoleError):
            parse_organization_role(value)

    def test_unknown_role_is_value_error(self):
        assert issubclass(UnknownRoleError, ValueError)


class TestIsSuperAdmin:
    def test_values(self):
        assert is_super_admin(PlatformRole.SUPER_ADMIN)
        assert is_super_admin("SUPER_ADMIN")
        assert not is_super_admin(PlatformRole.ORG_ADMIN)
        assert not is_super_admin(None)
