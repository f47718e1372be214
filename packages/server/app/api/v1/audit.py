"""
Audit query endpoint (read-only).

GET /api/v1/audit — filter by actor, organization, action, target, date range.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from crm_shared.schemas.audit import AuditPage, AuditQuery

from app.api.v1.deps import get_effective_context
from app.core.config import get_settings
from app.core.database import get_session
from app.core.errors import PermissionDenied
from app.services import audit as audit_service
from app.services.authorization import ProtectedAction, authorize
from app.services.context import EffectiveContext

router = APIRouter()


@router.get("", response_model=AuditPage)
async def query_audit(
    query: Annotated[AuditQuery, Query()],
    ctx: EffectiveContext = Depends(get_effective_context),
    session: AsyncSession = Depends(get_session),
):
    """Super-admins see everything; organization administrators are pinned
    to their effective organization."""
    decision = authorize(ProtectedAction.VIEW_AUDIT, ctx.subject)
    if not decision:
        raise PermissionDenied(decision.reason)

    pinned = None if ctx.subject.is_super_admin else ctx.organization_id
    return await audit_service.query_audit(
        query,
        session,
        pinned_organization_id=pinned,
        max_page_size=get_settings().audit_page_size_max,
    )
