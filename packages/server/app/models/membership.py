"""User ↔ Organization membership."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import UUIDMixin, utcnow


class Membership(UUIDMixin, SQLModel, table=True):
    __tablename__ = "memberships"
    # At most one *active* membership per (user, organization). Revoked rows
    # stay behind as history.
    __table_args__ = (
        sa.Index(
            "uq_memberships_active_pair",
            "user_id",
            "organization_id",
            unique=True,
            postgresql_where=sa.text("is_active"),
            sqlite_where=sa.text("is_active = 1"),
        ),
    )

    user_id: uuid.UUID = Field(foreign_key="users.id", nullable=False, index=True)
    organization_id: uuid.UUID = Field(foreign_key="organizations.id", nullable=False, index=True)
    role: str = Field(nullable=False, default="MEMBER")  # OrganizationRole
    is_active: bool = Field(default=True, nullable=False)
    joined_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_type=sa.DateTime(timezone=True),
    )
    left_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
