"""
Authentication for the CRM access-control server.

Supports:
- Email/Password login with bcrypt hashes
- JWT bearer tokens (principal id + platform role, never an organization)
- Redis revocation list for logout, token_version for forced logout
- Super-admin dependency for the administration surface
"""

from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
import structlog
from fastapi import Depends, HTTPException, Request
from fastapi.security import APIKeyHeader
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from crm_shared.schemas.roles import PlatformRole, is_super_admin, parse_platform_role

from app.core.config import get_settings
from app.core.database import get_session
from app.core.redis import get_redis
from app.models.user import User

log = structlog.get_logger()
settings = get_settings()

authorization_header = APIKeyHeader(name="Authorization", auto_error=False)

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------

def hash_password(password: str) -> str:
    """Hash a password using bcrypt with cost factor 12."""
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=12)).decode()


def verify_password(password: str, hashed: str) -> bool:
    """Verify a password against a bcrypt hash."""
    return bcrypt.checkpw(password.encode(), hashed.encode())


def generate_temporary_password() -> str:
    """Random password handed out once on admin creation / reset."""
    return secrets.token_urlsafe(12)


# ---------------------------------------------------------------------------
# JWT
# ---------------------------------------------------------------------------

def create_jwt(
    user_id: uuid.UUID,
    role: str,
    token_version: int,
    *,
    expires_delta: timedelta | None = None,
) -> tuple[str, str, datetime]:
    """Create a signed JWT. Returns (token, jti, expires_at).

    Organization context is deliberately absent: it is resolved per request
    from the persisted current-organization pointer.
    """
    jti = str(uuid.uuid4())
    now = datetime.now(timezone.utc)
    exp = now + (expires_delta or timedelta(minutes=settings.jwt_expire_minutes))
    payload = {
        "sub": str(user_id),
        "role": role,
        "ver": token_version,
        "iat": now,
        "exp": exp,
        "jti": jti,
    }
    token = jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)
    return token, jti, exp


def decode_jwt(token: str) -> dict:
    """Decode and verify a JWT. Raises jwt.PyJWTError on failure."""
    return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])


# ---------------------------------------------------------------------------
# JWT Revocation (Redis)
# ---------------------------------------------------------------------------

async def revoke_jwt(jti: str, ttl_seconds: int = 3600) -> None:
    """Add a JWT ID to the revocation list in Redis."""
    redis = await get_redis()
    await redis.setex(f"jwt:revoked:{jti}", max(ttl_seconds, 1), "1")


async def is_jwt_revoked(jti: str) -> bool:
    """Check if a JWT ID has been revoked."""
    redis = await get_redis()
    return await redis.exists(f"jwt:revoked:{jti}") > 0


# ---------------------------------------------------------------------------
# Authentication dependencies
# ---------------------------------------------------------------------------

@dataclass
class Principal:
    """The authenticated identity behind a request."""

    user: User
    jti: str
    expires_at: datetime

    @property
    def user_id(self) -> uuid.UUID:
        return self.user.id

    @property
    def platform_role(self) -> PlatformRole:
        return parse_platform_role(self.user.role)

    @property
    def is_super_admin(self) -> bool:
        return is_super_admin(self.user.role)


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return authorization[7:].strip()


async def get_principal(
    request: Request,
    authorization: Optional[str] = Depends(authorization_header),
    session: AsyncSession = Depends(get_session),
) -> Principal:
    """Main authentication dependency: Bearer JWT → active User."""
    token = _bearer_token(authorization)
    try:
        payload = decode_jwt(token)
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired session")

    jti = payload.get("jti")
    if not jti or await is_jwt_revoked(jti):
        raise HTTPException(status_code=401, detail="Session has been revoked")

    try:
        user_id = uuid.UUID(payload["sub"])
    except (KeyError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid or expired session")

    result = await session.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")

    # Forced logout bumps token_version; older tokens stop working here.
    if payload.get("ver") != user.token_version:
        log.info("auth.stale_token_version", user_id=str(user.id))
        raise HTTPException(status_code=401, detail="Session has been revoked")

    principal = Principal(
        user=user,
        jti=jti,
        expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
    )
    request.state.principal = principal
    structlog.contextvars.bind_contextvars(user_id=str(user.id))
    return principal


async def require_super_admin(
    principal: Principal = Depends(get_principal),
) -> Principal:
    """Requires platform role SUPER_ADMIN."""
    if not principal.is_super_admin:
        raise HTTPException(status_code=403, detail="Super admin access required")
    return principal
