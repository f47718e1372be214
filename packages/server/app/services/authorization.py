"""
Authorization evaluator — pure policy decisions, no I/O.

Decisions are returned, never enforced here: callers raise
``PermissionDenied`` (or pick another outcome) before touching the
Membership store or the identity table.

Two role axes are evaluated independently:

* platform role (``PlatformRole``) governs product feature access;
* organization role (``OrganizationRole``) governs the tenant-internal
  hierarchy inside the effective organization.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import NamedTuple, Optional

from crm_shared.schemas.roles import (
    OrganizationRole,
    PlatformRole,
    compare_role,
    is_super_admin,
    meets_minimum,
)


@dataclass(frozen=True)
class Subject:
    """A principal (or a target identity) as seen by the evaluator.

    ``organization_id`` is the organization the subject is evaluated in;
    ``organization_role`` is their membership role there (None when they
    hold no membership, e.g. a super-admin acting through the bypass).
    """

    user_id: uuid.UUID
    organization_id: Optional[uuid.UUID]
    platform_role: PlatformRole
    organization_role: Optional[OrganizationRole] = None

    @property
    def is_super_admin(self) -> bool:
        return is_super_admin(self.platform_role)


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str = ""

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = Decision(True)


def deny(reason: str) -> Decision:
    return Decision(False, reason)


# ---------------------------------------------------------------------------
# Peer management
# ---------------------------------------------------------------------------

def can_manage_user(actor: Subject, target: Subject, *, unscoped: bool = False) -> Decision:
    """Can ``actor`` manage ``target`` (edit, deactivate, reset)?

    Same organization, actor platform role at least ORG_ADMIN, and at least
    the target's platform role. Only an unscoped super-admin skips the
    organization check.
    """
    if not meets_minimum(actor.platform_role, PlatformRole.ORG_ADMIN):
        return deny("Administrator role required")
    if compare_role(actor.platform_role, target.platform_role) < 0:
        return deny("Cannot manage a user with a higher role")
    if actor.is_super_admin and unscoped:
        return ALLOW
    if actor.organization_id is None or actor.organization_id != target.organization_id:
        return deny("User belongs to a different organization")
    return ALLOW


# ---------------------------------------------------------------------------
# Role mutation
# ---------------------------------------------------------------------------

def can_manage_user_roles(
    actor: Subject,
    target: Subject,
    *,
    new_platform_role: Optional[PlatformRole] = None,
    new_organization_role: Optional[OrganizationRole] = None,
) -> Decision:
    """Can ``actor`` change the roles of ``target``?

    Stricter than ``can_manage_user``: the actor also needs organization
    role ORG_ADMIN or OWNER in the shared organization. A platform ORG_ADMIN
    holding only a MEMBER/GUEST membership is refused, and so is a
    super-admin acting without a membership. Nobody may grant a role above
    their own on either axis.
    """
    if actor.organization_role is None or not meets_minimum(
        actor.organization_role, OrganizationRole.ORG_ADMIN
    ):
        return deny("Organization administrator role required")

    peer = can_manage_user(actor, target)
    if not peer:
        return peer

    if target.organization_role is not None and compare_role(
        actor.organization_role, target.organization_role
    ) < 0:
        return deny("Cannot change roles of a user with a higher organization role")

    if new_platform_role is not None and compare_role(new_platform_role, actor.platform_role) > 0:
        return deny("Cannot assign a platform role above your own")

    if new_organization_role is not None and compare_role(
        new_organization_role, actor.organization_role
    ) > 0:
        return deny("Cannot assign an organization role above your own")

    return ALLOW


# ---------------------------------------------------------------------------
# Action requirements
# ---------------------------------------------------------------------------

class ProtectedAction(str, Enum):
    VIEW_ORGANIZATION = "view_organization"
    VIEW_MEMBERS = "view_members"
    VIEW_AUDIT = "view_audit"
    UPDATE_ORGANIZATION = "update_organization"
    MANAGE_MEMBERSHIPS = "manage_memberships"
    MANAGE_ROLES = "manage_roles"
    CREATE_USER = "create_user"
    REMOVE_USER = "remove_user"
    SWITCH_ORGANIZATION = "switch_organization"
    LIST_ORGANIZATIONS = "list_organizations"


class Requirement(NamedTuple):
    platform: PlatformRole
    organization: Optional[OrganizationRole]  # None: no membership needed
    scoped: bool  # needs an effective organization
    super_admin_bypass: bool  # super-admin may act without a membership


ACTION_REQUIREMENTS: dict[ProtectedAction, Requirement] = {
    ProtectedAction.VIEW_ORGANIZATION: Requirement(PlatformRole.VIEWER, OrganizationRole.GUEST, True, True),
    ProtectedAction.VIEW_MEMBERS: Requirement(PlatformRole.VIEWER, OrganizationRole.MEMBER, True, True),
    ProtectedAction.VIEW_AUDIT: Requirement(PlatformRole.VIEWER, OrganizationRole.ORG_ADMIN, False, True),
    ProtectedAction.UPDATE_ORGANIZATION: Requirement(PlatformRole.VIEWER, OrganizationRole.ORG_ADMIN, True, False),
    ProtectedAction.MANAGE_MEMBERSHIPS: Requirement(PlatformRole.VIEWER, OrganizationRole.ORG_ADMIN, True, False),
    ProtectedAction.MANAGE_ROLES: Requirement(PlatformRole.ORG_ADMIN, OrganizationRole.ORG_ADMIN, True, False),
    ProtectedAction.CREATE_USER: Requirement(PlatformRole.ORG_ADMIN, OrganizationRole.ORG_ADMIN, True, True),
    ProtectedAction.REMOVE_USER: Requirement(PlatformRole.ORG_ADMIN, OrganizationRole.ORG_ADMIN, True, True),
    ProtectedAction.SWITCH_ORGANIZATION: Requirement(PlatformRole.VIEWER, OrganizationRole.GUEST, False, True),
    ProtectedAction.LIST_ORGANIZATIONS: Requirement(PlatformRole.VIEWER, None, False, True),
}


def minimum_role_for(action: ProtectedAction) -> Requirement:
    """Minimum platform and organization role required for ``action``."""
    return ACTION_REQUIREMENTS[action]


def requires_explicit_context(action: ProtectedAction, subject: Subject) -> bool:
    """Does ``subject`` need to select an organization before ``action``?

    True for an organization-scoped action attempted by a super-admin who
    has no effective organization. Other principals always resolve to one.
    """
    return minimum_role_for(action).scoped and subject.organization_id is None


def authorize(action: ProtectedAction, subject: Subject) -> Decision:
    """Evaluate ``subject`` against the requirement table for ``action``."""
    req = minimum_role_for(action)
    if not meets_minimum(subject.platform_role, req.platform):
        return deny(f"Platform role {req.platform.value} required")
    if req.organization is None:
        return ALLOW
    if subject.organization_role is None:
        if subject.is_super_admin and req.super_admin_bypass:
            return ALLOW
        return deny("Organization membership required")
    if not meets_minimum(subject.organization_role, req.organization):
        if subject.is_super_admin and req.super_admin_bypass:
            return ALLOW
        return deny(f"Organization role {req.organization.value} required")
    return ALLOW
