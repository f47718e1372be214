"""
Role Model: ordered role hierarchies for platform and organization roles.

Every authorization check compares roles through ``compare_role`` /
``meets_minimum``. Role values are never compared by string equality
outside this module.
"""

from __future__ import annotations

from enum import Enum
from typing import Union


class UnknownRoleError(ValueError):
    """Raised for a role value outside the declared hierarchies."""


class PlatformRole(str, Enum):
    VIEWER = "VIEWER"
    USER = "USER"
    ORG_ADMIN = "ORG_ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


class OrganizationRole(str, Enum):
    GUEST = "GUEST"
    MEMBER = "MEMBER"
    ORG_ADMIN = "ORG_ADMIN"
    OWNER = "OWNER"


# Ordered lowest → highest. SUPER_ADMIN sits above the product hierarchy and
# additionally bypasses organization scoping (see services.authorization).
PLATFORM_ROLE_ORDER: list[PlatformRole] = [
    PlatformRole.VIEWER,
    PlatformRole.USER,
    PlatformRole.ORG_ADMIN,
    PlatformRole.SUPER_ADMIN,
]

ORGANIZATION_ROLE_ORDER: list[OrganizationRole] = [
    OrganizationRole.GUEST,
    OrganizationRole.MEMBER,
    OrganizationRole.ORG_ADMIN,
    OrganizationRole.OWNER,
]

RoleLike = Union[PlatformRole, OrganizationRole, str]


def _hierarchy_for(role: RoleLike) -> tuple[list, Enum]:
    if isinstance(role, PlatformRole):
        return PLATFORM_ROLE_ORDER, role
    if isinstance(role, OrganizationRole):
        return ORGANIZATION_ROLE_ORDER, role
    raise UnknownRoleError(f"Unknown role value: {role!r}")


def parse_platform_role(value: RoleLike) -> PlatformRole:
    """Coerce a stored string to ``PlatformRole``; unknown values raise."""
    if isinstance(value, PlatformRole):
        return value
    try:
        return PlatformRole(value)
    except ValueError:
        raise UnknownRoleError(f"Unknown platform role: {value!r}") from None


def parse_organization_role(value: RoleLike) -> OrganizationRole:
    """Coerce a stored string to ``OrganizationRole``; unknown values raise."""
    if isinstance(value, OrganizationRole):
        return value
    try:
        return OrganizationRole(value)
    except ValueError:
        raise UnknownRoleError(f"Unknown organization role: {value!r}") from None


def compare_role(a: RoleLike, b: RoleLike) -> int:
    """Compare two roles of the same hierarchy. Returns -1, 0 or 1.

    Plain strings are not accepted: callers parse stored values first with
    ``parse_platform_role`` / ``parse_organization_role``. Comparing roles
    from different hierarchies is a programming error.
    """
    order_a, role_a = _hierarchy_for(a)
    order_b, role_b = _hierarchy_for(b)
    if order_a is not order_b:
        raise UnknownRoleError(
            f"Cannot compare {type(role_a).__name__} with {type(role_b).__name__}"
        )
    ia, ib = order_a.index(role_a), order_b.index(role_b)
    return (ia > ib) - (ia < ib)


def meets_minimum(role: RoleLike, minimum: RoleLike) -> bool:
    """True if ``role`` is at or above ``minimum`` in its hierarchy."""
    return compare_role(role, minimum) >= 0


def is_super_admin(role: RoleLike | None) -> bool:
    if role is None:
        return False
    return parse_platform_role(role) is PlatformRole.SUPER_ADMIN
