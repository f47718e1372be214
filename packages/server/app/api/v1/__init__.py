"""
API v1 Router

Organization-scoped endpoints never carry the organization in the path:
it is the caller's EffectiveContext, resolved server-side per request.
"""

from fastapi import APIRouter
from . import admin, audit, organizations, users

router = APIRouter()

router.include_router(organizations.router, prefix="/organizations", tags=["Organizations"])
router.include_router(users.router, prefix="/users", tags=["Users"])
router.include_router(audit.router, prefix="/audit", tags=["Audit"])
router.include_router(admin.router, prefix="/admin", tags=["Administration"])


@router.get("/", tags=["API"])
async def api_root():
    """API root — returns version and available endpoints."""
    return {
        "api": "v1",
        "version": "0.1.0",
        "endpoints": [
            "/organizations",
            "/organizations/current",
            "/organizations/switch",
            "/users/{user_id}/organizations",
            "/audit",
            "/admin",
        ],
    }
