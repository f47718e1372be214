"""
Shared fixtures: an in-memory SQLite database per test, factories for
organizations / identities / memberships, and an ASGI client wired to it.

Environment is set before ``app`` is imported: settings are read once at
import time.
"""

import os

os.environ.setdefault("CRM_DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("CRM_SECRET_KEY", "test-secret-key-0123456789abcdef0123456789abcdef")
os.environ.setdefault("CRM_LOG_LEVEL", "warning")
os.environ.setdefault("CRM_LOG_FORMAT", "text")

from typing import Optional
from unittest.mock import AsyncMock, patch

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

import app.models  # noqa: F401
from crm_shared.schemas.organizations import OrganizationSettings
from crm_shared.schemas.roles import OrganizationRole, PlatformRole

from app.core.auth import create_jwt, hash_password
from app.core.database import get_session
from app.models.membership import Membership
from app.models.organization import Organization
from app.models.user import User

PASSWORD = "correct-horse-battery"
# bcrypt at cost 12 is slow; hash once per run.
PASSWORD_HASH = hash_password(PASSWORD)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite's implicit transactions break SAVEPOINT; let SQLAlchemy emit BEGIN.
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

class Factory:
    """Builds rows directly, bypassing services (no audit records)."""

    def __init__(self):
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    async def organization(
        self,
        session: AsyncSession,
        code: Optional[str] = None,
        name: Optional[str] = None,
        *,
        is_active: bool = True,
    ) -> Organization:
        n = self._next()
        org = Organization(
            code=code or f"ORG{n}",
            name=name or f"Organization {n}",
            is_active=is_active,
            settings=OrganizationSettings().model_dump(mode="json"),
        )
        session.add(org)
        await session.flush()
        return org

    async def user(
        self,
        session: AsyncSession,
        organization: Organization,
        *,
        email: Optional[str] = None,
        role: PlatformRole = PlatformRole.USER,
        organization_role: OrganizationRole = OrganizationRole.MEMBER,
        is_active: bool = True,
        password_hash: str = PASSWORD_HASH,
    ) -> User:
        """An identity homed in ``organization`` with its home membership."""
        n = self._next()
        user = User(
            email=email or f"user{n}@example.com",
            password_hash=password_hash,
            first_name="Test",
            last_name=f"User{n}",
            role=role.value,
            home_organization_id=organization.id,
            is_active=is_active,
        )
        session.add(user)
        await session.flush()
        await self.membership(session, user, organization, organization_role)
        return user

    async def membership(
        self,
        session: AsyncSession,
        user: User,
        organization: Organization,
        role: OrganizationRole = OrganizationRole.MEMBER,
    ) -> Membership:
        membership = Membership(user_id=user.id, organization_id=organization.id, role=role.value)
        session.add(membership)
        await session.flush()
        return membership

    def headers(self, user: User) -> dict:
        token, _, _ = create_jwt(user.id, user.role, user.token_version)
        return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def factory() -> Factory:
    return Factory()


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

@pytest.fixture
def revoked_jtis() -> set:
    return set()


@pytest.fixture
async def client(session_factory, revoked_jtis):
    """ASGI client against the test database; Redis replaced by a set."""
    from app.main import app

    async def _get_session():
        async with session_factory() as s:
            try:
                yield s
                await s.commit()
            except Exception:
                await s.rollback()
                raise

    async def _revoke(jti: str, ttl_seconds: int = 3600) -> None:
        revoked_jtis.add(jti)

    async def _is_revoked(jti: str) -> bool:
        return jti in revoked_jtis

    app.dependency_overrides[get_session] = _get_session
    with (
        patch("app.core.auth.is_jwt_revoked", AsyncMock(side_effect=_is_revoked)),
        patch("app.api.v1.auth.revoke_jwt", AsyncMock(side_effect=_revoke)),
    ):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def password() -> str:
    return PASSWORD
