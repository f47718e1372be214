"""
Audit Trail service — append-only records of privileged actions.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Optional

import structlog
from fastapi import Request
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from crm_shared.schemas.audit import AuditAction, AuditPage, AuditQuery, AuditRecordResponse, AuditTargetType
from crm_shared.schemas.common import build_pagination

from app.core.errors import jsonable
from app.core.middleware import client_ip
from app.models.audit_log import AuditRecord

log = structlog.get_logger()


@dataclass(frozen=True)
class ClientMetadata:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


def get_client_metadata(request: Request) -> ClientMetadata:
    """FastAPI dependency: caller IP and user agent for audit records."""
    user_agent = request.headers.get("User-Agent")
    return ClientMetadata(
        ip_address=client_ip(request),
        user_agent=user_agent[:512] if user_agent else None,
    )


async def log_event(
    session: AsyncSession,
    *,
    action: AuditAction,
    actor_id: Optional[uuid.UUID],
    organization_id: Optional[uuid.UUID],
    target_type: Optional[AuditTargetType] = None,
    target_id: Optional[uuid.UUID] = None,
    details: Optional[dict] = None,
    metadata: Optional[ClientMetadata] = None,
) -> AuditRecord:
    """Write one AuditRecord inside the caller's transaction."""
    metadata = metadata or ClientMetadata()
    record = AuditRecord(
        actor_id=actor_id,
        organization_id=organization_id,
        action=action.value,
        target_type=target_type.value if target_type else None,
        target_id=target_id,
        details=jsonable(details or {}),
        ip_address=metadata.ip_address,
        user_agent=metadata.user_agent,
    )
    session.add(record)
    await session.flush()

    log.info(
        "audit.recorded",
        action=action.value,
        actor_id=str(actor_id) if actor_id else None,
        organization_id=str(organization_id) if organization_id else None,
        target_id=str(target_id) if target_id else None,
    )
    return record


async def query_audit(
    query: AuditQuery,
    session: AsyncSession,
    *,
    pinned_organization_id: Optional[uuid.UUID] = None,
    max_page_size: int = 200,
) -> AuditPage:
    """Filter and paginate audit records, newest first.

    ``pinned_organization_id`` restricts results to one organization
    regardless of the requested filter (organization administrators).
    """
    conditions = []
    if pinned_organization_id is not None:
        conditions.append(AuditRecord.organization_id == pinned_organization_id)
    elif query.organization_id is not None:
        conditions.append(AuditRecord.organization_id == query.organization_id)
    if query.actor_id is not None:
        conditions.append(AuditRecord.actor_id == query.actor_id)
    if query.action is not None:
        conditions.append(AuditRecord.action == query.action.value)
    if query.target_type is not None:
        conditions.append(AuditRecord.target_type == query.target_type.value)
    if query.target_id is not None:
        conditions.append(AuditRecord.target_id == query.target_id)
    if query.date_from is not None:
        conditions.append(AuditRecord.created_at >= query.date_from)
    if query.date_to is not None:
        conditions.append(AuditRecord.created_at <= query.date_to)

    per_page = min(query.per_page, max_page_size)

    count_q = select(func.count()).select_from(AuditRecord).where(*conditions)
    total = (await session.execute(count_q)).scalar_one()

    rows_q = (
        select(AuditRecord)
        .where(*conditions)
        .order_by(AuditRecord.created_at.desc(), AuditRecord.id)
        .offset((query.page - 1) * per_page)
        .limit(per_page)
    )
    records = (await session.execute(rows_q)).scalars().all()

    return AuditPage(
        data=[AuditRecordResponse.model_validate(r) for r in records],
        pagination=build_pagination(query.page, per_page, total),
    )
