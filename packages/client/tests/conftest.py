"""
Client test fixtures: an in-process fake of the server's auth and context
endpoints served through ``httpx.MockTransport``.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
import pytest

from crm_client.api import AccessApiClient
from crm_client.token_store import TokenStore

PASSWORD = "pw-123456"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _error(status: int, code: str, message: str = "", details: Optional[dict] = None) -> httpx.Response:
    return httpx.Response(
        status,
        json={"error": {"code": code, "message": message or code, "status": status, "details": details or {}}},
    )


class FakeServer:
    """Just enough server behaviour to drive the context manager and session."""

    def __init__(self, platform_role: str = "USER"):
        self.user_id = str(uuid.uuid4())
        self.platform_role = platform_role
        self.token = "token-1"
        self.organizations: dict[str, dict] = {}
        self.roles: dict[str, str] = {}
        self.home: Optional[str] = None
        self.current: Optional[str] = None
        self.login_candidates: list[dict] = []
        self.overrides: dict[tuple[str, str], httpx.Response] = {}
        self.calls: list[tuple[str, str]] = []
        self.login_bodies: list[dict] = []

    # --- Setup helpers ---

    def add_organization(
        self,
        code: str,
        role: Optional[str] = "MEMBER",
        *,
        is_active: bool = True,
        home: bool = False,
        settings: Optional[dict] = None,
    ) -> str:
        org_id = str(uuid.uuid4())
        self.organizations[org_id] = {
            "id": org_id,
            "code": code,
            "name": code.title(),
            "is_active": is_active,
            "settings": settings or {},
        }
        if role is not None:
            self.roles[org_id] = role
        if home:
            self.home = org_id
        return org_id

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def count(self, method: str, path: str) -> int:
        return self.calls.count((method, path))

    # --- Views ---

    @property
    def super_admin(self) -> bool:
        return self.platform_role == "SUPER_ADMIN"

    def _effective(self) -> Optional[str]:
        if self.current:
            return self.current
        if self.super_admin:
            return None
        return self.home

    def _items(self) -> list[dict]:
        return [
            {
                "organization": org,
                "role": self.roles.get(org_id),
                "is_primary": org_id == self.home,
            }
            for org_id, org in self.organizations.items()
            if org["is_active"] and (org_id in self.roles or self.super_admin)
        ]

    def _user(self) -> dict:
        return {
            "id": self.user_id,
            "email": "user@example.com",
            "first_name": "Test",
            "last_name": "User",
            "role": self.platform_role,
            "home_organization_id": self.home or str(uuid.uuid4()),
            "current_organization_id": self.current,
            "is_active": True,
            "created_at": _now(),
        }

    def _context(self) -> dict:
        org_id = self._effective()
        org = self.organizations.get(org_id) if org_id else None
        role = self.roles.get(org_id) if org_id else None
        return {
            "user_id": self.user_id,
            "platform_role": self.platform_role,
            "organization": org,
            "organization_role": role,
            "access_type": "unscoped" if org is None else ("membership" if role else "super_admin"),
            "unscoped": org is None,
        }

    # --- Routing ---

    def handle(self, request: httpx.Request) -> httpx.Response:
        key = (request.method, request.url.path)
        self.calls.append(key)
        if key in self.overrides:
            return self.overrides[key]

        if key == ("POST", "/auth/login"):
            return self._login(json.loads(request.content))

        if request.headers.get("Authorization") != f"Bearer {self.token}":
            return _error(401, "UNAUTHENTICATED", "Authentication required")

        if key == ("POST", "/auth/logout"):
            return httpx.Response(200, json={"message": "Logged out"})
        if key == ("GET", "/auth/me"):
            return httpx.Response(200, json=self._user())
        if key == ("GET", "/api/v1/organizations"):
            return httpx.Response(200, json={"data": self._items()})
        if key == ("GET", "/api/v1/organizations/current"):
            return httpx.Response(200, json=self._context())
        if key == ("POST", "/api/v1/organizations/switch"):
            return self._switch(json.loads(request.content)["organization_id"])
        if key == ("POST", "/api/v1/organizations/current/clear"):
            if not self.super_admin:
                return _error(403, "PERMISSION_DENIED")
            self.current = None
            return httpx.Response(200, json=self._context())
        if key == ("GET", "/api/v1/organizations/current/members"):
            if self._effective() is None:
                return _error(
                    300,
                    "ORGANIZATION_SELECTION_REQUIRED",
                    details={"organizations": [i["organization"] for i in self._items()]},
                )
            return httpx.Response(200, json={"data": []})
        return _error(404, "NOT_FOUND")

    def _login(self, body: dict) -> httpx.Response:
        self.login_bodies.append(body)
        if body.get("password") != PASSWORD:
            return _error(401, "UNAUTHENTICATED", "Invalid email or password")
        if self.login_candidates and not body.get("organization_code"):
            return _error(
                300,
                "ORGANIZATION_SELECTION_REQUIRED",
                details={"organizations": self.login_candidates},
            )
        org_id = self._effective()
        return httpx.Response(
            200,
            json={
                "token": self.token,
                "expires_at": (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat(),
                "user": self._user(),
                "organizations": self._items(),
                "current_organization": self.organizations.get(org_id) if org_id else None,
            },
        )

    def _switch(self, org_id: str) -> httpx.Response:
        org = self.organizations.get(org_id)
        if org is None:
            return _error(404, "INVALID_ORGANIZATION")
        role = self.roles.get(org_id)
        if role is None and not self.super_admin:
            return _error(403, "ORGANIZATION_ACCESS_DENIED", "Access denied to the requested organization")
        if not org["is_active"]:
            return _error(403, "ORGANIZATION_INACTIVE", "Organization is inactive or suspended")
        previous = self._effective()
        self.current = org_id
        return httpx.Response(
            200,
            json={
                "organization": org,
                "organization_role": role,
                "access_type": "membership" if role else "super_admin",
                "previous_organization_id": previous,
                "no_op": previous == org_id,
            },
        )


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest.fixture
async def api(server):
    client = AccessApiClient("http://crm.example.com/", transport=server.transport())
    await client.open()
    yield client
    await client.close()


@pytest.fixture
async def authed_api(api, server):
    api.token = server.token
    return api


@pytest.fixture
async def store(tmp_path):
    s = TokenStore(str(tmp_path / "state" / "tokens.db"))
    await s.open()
    yield s
    await s.close()


@pytest.fixture
def password() -> str:
    return PASSWORD
