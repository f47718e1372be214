"""Identity model."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import UUIDMixin, utcnow


class User(UUIDMixin, SQLModel, table=True):
    __tablename__ = "users"
    # Email is unique within the home organization, not globally.
    __table_args__ = (
        sa.UniqueConstraint("email", "home_organization_id", name="uq_users_email_home_org"),
    )

    email: str = Field(nullable=False, index=True)
    password_hash: str = Field(nullable=False)
    first_name: str = Field(nullable=False)
    last_name: str = Field(nullable=False)
    role: str = Field(nullable=False, default="USER")  # PlatformRole
    home_organization_id: uuid.UUID = Field(foreign_key="organizations.id", nullable=False, index=True)
    # Persisted "current organization" pointer; NULL means "use the default".
    current_organization_id: Optional[uuid.UUID] = Field(
        default=None, foreign_key="organizations.id", nullable=True
    )
    is_active: bool = Field(default=True, nullable=False)
    # Bumped on forced logout / deactivation; tokens carry it as the "ver" claim.
    token_version: int = Field(default=1, nullable=False)
    last_login_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    created_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_column_kwargs={"server_default": sa.func.now()},
        sa_type=sa.DateTime(timezone=True),
    )
