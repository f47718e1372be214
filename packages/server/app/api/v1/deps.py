"""
Shared request dependencies: the EffectiveContext of the caller.
"""

from __future__ import annotations

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import Principal, get_principal
from app.core.database import get_session
from app.services import context as context_service
from app.services.context import EffectiveContext


async def get_effective_context(
    request: Request,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
) -> EffectiveContext:
    """Resolve the EffectiveContext; unscoped is allowed (super-admin)."""
    ctx = await context_service.resolve_effective_context(principal.user, session)
    request.state.effective_context = ctx
    return ctx


async def require_organization_context(
    principal: Principal = Depends(get_principal),
    ctx: EffectiveContext = Depends(get_effective_context),
    session: AsyncSession = Depends(get_session),
) -> EffectiveContext:
    """EffectiveContext that must name an organization (selection-required otherwise)."""
    return await context_service.require_organization(ctx, principal.user, session)
