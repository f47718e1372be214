"""Audit Trail schemas."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

from .common import Pagination


class AuditAction(str, Enum):
    ROLE_CHANGE = "ROLE_CHANGE"
    CONTEXT_SWITCH = "CONTEXT_SWITCH"
    MEMBERSHIP_GRANT = "MEMBERSHIP_GRANT"
    MEMBERSHIP_REVOKE = "MEMBERSHIP_REVOKE"
    USER_CREATE = "USER_CREATE"
    USER_DELETE = "USER_DELETE"
    USER_REACTIVATE = "USER_REACTIVATE"
    FORCE_LOGOUT = "FORCE_LOGOUT"
    PASSWORD_RESET = "PASSWORD_RESET"
    ORGANIZATION_CREATE = "ORGANIZATION_CREATE"
    ORGANIZATION_STATUS_CHANGE = "ORGANIZATION_STATUS_CHANGE"


class AuditTargetType(str, Enum):
    USER = "User"
    ORGANIZATION = "Organization"
    MEMBERSHIP = "Membership"


class AuditQuery(BaseModel):
    actor_id: Optional[uuid.UUID] = None
    organization_id: Optional[uuid.UUID] = None
    action: Optional[AuditAction] = None
    target_type: Optional[AuditTargetType] = None
    target_id: Optional[uuid.UUID] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    page: int = Field(default=1, ge=1)
    per_page: int = Field(default=50, ge=1, le=200)

    @model_validator(mode="after")
    def _check_range(self) -> "AuditQuery":
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")
        return self


class AuditRecordResponse(BaseModel):
    id: uuid.UUID
    actor_id: Optional[uuid.UUID] = None
    organization_id: Optional[uuid.UUID] = None
    action: AuditAction
    target_type: Optional[AuditTargetType] = None
    target_id: Optional[uuid.UUID] = None
    details: dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class AuditPage(BaseModel):
    data: list[AuditRecordResponse]
    pagination: Pagination
