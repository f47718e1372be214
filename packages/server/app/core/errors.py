"""
Access-control error taxonomy and the structured error envelope.

Domain errors are raised by services before any persistence write and
rendered by a single exception handler as::

    {"error": {"code": ..., "message": ..., "status": ..., "details": {...}}}
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from crm_shared.schemas.errors import SELECTION_REQUIRED_STATUS, ErrorCode

log = structlog.get_logger()


class AccessControlError(Exception):
    """Base class for recoverable access-control failures."""

    code: ErrorCode = ErrorCode.PERMISSION_DENIED
    status: int = 403
    default_message: str = "Access control error"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_envelope(self) -> dict:
        return {
            "error": {
                "code": self.code.value,
                "message": self.message,
                "status": self.status,
                "details": jsonable(self.details),
            }
        }


class PermissionDenied(AccessControlError):
    code = ErrorCode.PERMISSION_DENIED
    status = 403
    default_message = "You do not have permission to perform this action"


class AlreadyMember(AccessControlError):
    code = ErrorCode.ALREADY_MEMBER
    status = 409
    default_message = "User already has access to this organization"


class CannotRevokeHome(AccessControlError):
    code = ErrorCode.CANNOT_REVOKE_HOME
    status = 409
    default_message = "Cannot revoke access from the user's home organization"


class InvalidOrganization(AccessControlError):
    code = ErrorCode.INVALID_ORGANIZATION
    status = 404
    default_message = "Invalid or inactive organization"


class MembershipNotFound(AccessControlError):
    code = ErrorCode.MEMBERSHIP_NOT_FOUND
    status = 404
    default_message = "User has no active membership in this organization"


class UserNotFound(AccessControlError):
    code = ErrorCode.USER_NOT_FOUND
    status = 404
    default_message = "User not found"


class DuplicateIdentity(AccessControlError):
    code = ErrorCode.DUPLICATE_IDENTITY
    status = 409
    default_message = "A user with this email already exists in the organization"


class LastSuperAdmin(AccessControlError):
    code = ErrorCode.LAST_SUPER_ADMIN
    status = 409
    default_message = "Cannot remove the last active super admin"


class LastOwner(AccessControlError):
    code = ErrorCode.LAST_OWNER
    status = 409
    default_message = "Cannot remove the last owner of the organization"


class OrganizationRequired(AccessControlError):
    """Request needs an organization but the EffectiveContext is unscoped.

    Rendered as the selection-required signal: the client presents a picker
    over ``details["organizations"]`` and retries after a successful switch.
    """

    code = ErrorCode.ORGANIZATION_SELECTION_REQUIRED
    status = SELECTION_REQUIRED_STATUS
    default_message = "Organization selection required"

    def __init__(self, organizations: list[dict], message: Optional[str] = None):
        super().__init__(message, organizations=organizations)
        self.organizations = organizations


class AccessDenied(AccessControlError):
    code = ErrorCode.ORGANIZATION_ACCESS_DENIED
    status = 403
    default_message = "Access denied to the requested organization"


class OrganizationInactive(AccessControlError):
    code = ErrorCode.ORGANIZATION_INACTIVE
    status = 403
    default_message = "Organization is inactive or suspended"


class AuditImmutableError(RuntimeError):
    """Audit records are append-only."""


# ---------------------------------------------------------------------------
# Envelope rendering
# ---------------------------------------------------------------------------

_HTTP_CODES = {
    401: ErrorCode.UNAUTHENTICATED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    409: ErrorCode.CONFLICT,
    422: ErrorCode.VALIDATION_FAILED,
}


def jsonable(value: Any) -> Any:
    """Make audit details and error details JSON-serializable."""
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, dict):
        return {k: jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def error_response(
    status: int, code: ErrorCode | str, message: str, details: Optional[dict] = None
) -> JSONResponse:
    code_value = code.value if isinstance(code, ErrorCode) else code
    return JSONResponse(
        status_code=status,
        content={
            "error": {
                "code": code_value,
                "message": message,
                "status": status,
                "details": jsonable(details or {}),
            }
        },
    )


async def _access_control_handler(request: Request, exc: AccessControlError) -> JSONResponse:
    log.info(
        "request.denied",
        code=exc.code.value,
        status=exc.status,
        message=exc.message,
    )
    return JSONResponse(status_code=exc.status, content=exc.to_envelope())


async def _http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code = _HTTP_CODES.get(exc.status_code, ErrorCode.HTTP_ERROR)
    response = error_response(exc.status_code, code, str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def _validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        422,
        ErrorCode.VALIDATION_FAILED,
        "Request validation failed",
        {"errors": [
            {"loc": list(e.get("loc", ())), "msg": e.get("msg", "")}
            for e in exc.errors()
        ]},
    )


async def _unhandled_handler(request: Request, exc: Exception) -> JSONResponse:
    log.exception("request.unhandled_error", error_type=type(exc).__name__)
    return error_response(500, ErrorCode.INTERNAL_ERROR, "Internal server error")


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AccessControlError, _access_control_handler)
    app.add_exception_handler(HTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_handler)
    app.add_exception_handler(Exception, _unhandled_handler)
