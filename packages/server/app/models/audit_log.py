"""Append-only audit trail of privileged actions."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlalchemy import event
from sqlmodel import Field, SQLModel

from app.core.errors import AuditImmutableError

from .base import JSONType, UUIDMixin, utcnow


class AuditRecord(UUIDMixin, SQLModel, table=True):
    __tablename__ = "audit_records"

    actor_id: Optional[uuid.UUID] = Field(default=None, foreign_key="users.id", index=True)
    # EffectiveContext organization at the time of the action.
    organization_id: Optional[uuid.UUID] = Field(
        default=None, foreign_key="organizations.id", index=True
    )
    action: str = Field(nullable=False, index=True)  # AuditAction
    target_type: Optional[str] = None
    target_id: Optional[uuid.UUID] = Field(default=None, index=True)
    details: dict = Field(default_factory=dict, sa_type=JSONType, nullable=False)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        index=True,
        sa_type=sa.DateTime(timezone=True),
    )


@event.listens_for(AuditRecord, "before_update")
def _refuse_update(mapper, connection, target):
    raise AuditImmutableError("Audit records cannot be modified")


@event.listens_for(AuditRecord, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise AuditImmutableError("Audit records cannot be deleted")
