"""
Structured error envelope shared by server and client.

Every non-2xx response carries::

    {"error": {"code": "...", "message": "...", "status": 403, "details": {}}}

Clients dispatch on ``code``; the HTTP status is informational.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ErrorCode(str, Enum):
    PERMISSION_DENIED = "PERMISSION_DENIED"
    ALREADY_MEMBER = "ALREADY_MEMBER"
    CANNOT_REVOKE_HOME = "CANNOT_REVOKE_HOME"
    INVALID_ORGANIZATION = "INVALID_ORGANIZATION"
    MEMBERSHIP_NOT_FOUND = "MEMBERSHIP_NOT_FOUND"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    DUPLICATE_IDENTITY = "DUPLICATE_IDENTITY"
    LAST_SUPER_ADMIN = "LAST_SUPER_ADMIN"
    LAST_OWNER = "LAST_OWNER"
    ORGANIZATION_SELECTION_REQUIRED = "ORGANIZATION_SELECTION_REQUIRED"
    ORGANIZATION_ACCESS_DENIED = "ORGANIZATION_ACCESS_DENIED"
    ORGANIZATION_INACTIVE = "ORGANIZATION_INACTIVE"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    HTTP_ERROR = "HTTP_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# Non-2xx, non-4xx status used for the selection-required signal.
SELECTION_REQUIRED_STATUS = 300


class ErrorBody(BaseModel):
    code: str
    message: str
    status: int
    details: dict[str, Any] = Field(default_factory=dict)


class ErrorEnvelope(BaseModel):
    error: ErrorBody
