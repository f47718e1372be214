"""
Async HTTP client for the access-control server.

Every non-2xx response is parsed as the structured error envelope and raised
as the matching exception; dispatch is on ``error.code``, never on the bare
status. Timeouts and transport failures raise ``ApiError`` and are not
retried.
"""

from __future__ import annotations

import uuid
from typing import Any, Optional

import httpx
import structlog

from crm_shared.schemas.context import EffectiveContextResponse, SwitchOrganizationResponse
from crm_shared.schemas.errors import ErrorCode
from crm_shared.schemas.memberships import MemberListResponse
from crm_shared.schemas.organizations import OrganizationListItem, OrganizationListResponse
from crm_shared.schemas.users import LoginResponse, UserResponse

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ApiError(Exception):
    """A failed call. ``code`` is the server's error code, or a local one
    (``TIMEOUT``, ``TRANSPORT_ERROR``, ``BAD_RESPONSE``)."""

    def __init__(
        self,
        code: str,
        message: str,
        status: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status
        self.details = details or {}


class SelectionRequired(ApiError):
    """The server needs an explicit organization; pick one and retry."""

    @property
    def organizations(self) -> list[dict]:
        return list(self.details.get("organizations", []))


class AccessDenied(ApiError):
    """The switch target is not accessible to the signed-in identity."""


class OrganizationInactive(ApiError):
    """The organization is disabled; only an administrator can fix it."""


class Unauthenticated(ApiError):
    """Missing, expired or revoked token."""


_CODE_EXCEPTIONS: dict[str, type[ApiError]] = {
    ErrorCode.ORGANIZATION_SELECTION_REQUIRED.value: SelectionRequired,
    ErrorCode.ORGANIZATION_ACCESS_DENIED.value: AccessDenied,
    ErrorCode.ORGANIZATION_INACTIVE.value: OrganizationInactive,
    ErrorCode.UNAUTHENTICATED.value: Unauthenticated,
}


def error_from_response(response: httpx.Response) -> ApiError:
    """Build the exception for a non-2xx response."""
    try:
        body = response.json()
        error = body["error"]
        code = str(error["code"])
        message = str(error.get("message", ""))
        details = error.get("details") or {}
    except (ValueError, KeyError, TypeError):
        return ApiError(
            "BAD_RESPONSE",
            f"Unexpected response from server (HTTP {response.status_code})",
            status=response.status_code,
        )
    cls = _CODE_EXCEPTIONS.get(code, ApiError)
    return cls(code, message, status=response.status_code, details=details)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class AccessApiClient:
    """Thin typed wrapper over the server's auth and context endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        verify_tls: bool = True,
        request_timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._verify_tls = verify_tls
        self._request_timeout = request_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self.token: Optional[str] = None

    @property
    def base_url(self) -> str:
        return self._base_url

    async def open(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(self._request_timeout),
            verify=self._verify_tls,
            transport=self._transport,
            follow_redirects=False,
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "AccessApiClient":
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # --- Transport ---

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[dict] = None,
    ) -> Any:
        """Send a request and return the decoded JSON body."""
        assert self._client
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            response = await self._client.request(
                method, path, json=json, params=params, headers=headers
            )
        except httpx.TimeoutException as exc:
            log.warning("api.timeout", method=method, path=path)
            raise ApiError("TIMEOUT", f"Request timed out: {method} {path}") from exc
        except httpx.TransportError as exc:
            log.warning("api.transport_error", method=method, path=path, error=str(exc))
            raise ApiError("TRANSPORT_ERROR", f"Could not reach server: {exc}") from exc

        if not 200 <= response.status_code < 300:
            error = error_from_response(response)
            log.info("api.error", method=method, path=path, code=error.code, status=error.status)
            raise error
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # --- Auth ---

    async def login(
        self, email: str, password: str, organization_code: Optional[str] = None
    ) -> LoginResponse:
        body = {"email": email, "password": password}
        if organization_code:
            body["organization_code"] = organization_code
        data = await self.request("POST", "/auth/login", json=body)
        result = LoginResponse.model_validate(data)
        self.token = result.token
        return result

    async def logout(self) -> None:
        await self.request("POST", "/auth/logout")

    async def me(self) -> UserResponse:
        return UserResponse.model_validate(await self.request("GET", "/auth/me"))

    # --- Organization context ---

    async def list_organizations(self) -> list[OrganizationListItem]:
        data = await self.request("GET", "/api/v1/organizations")
        return OrganizationListResponse.model_validate(data).data

    async def current_organization(self) -> EffectiveContextResponse:
        data = await self.request("GET", "/api/v1/organizations/current")
        return EffectiveContextResponse.model_validate(data)

    async def switch_organization(self, organization_id: uuid.UUID) -> SwitchOrganizationResponse:
        data = await self.request(
            "POST",
            "/api/v1/organizations/switch",
            json={"organization_id": str(organization_id)},
        )
        return SwitchOrganizationResponse.model_validate(data)

    async def clear_organization(self) -> EffectiveContextResponse:
        data = await self.request("POST", "/api/v1/organizations/current/clear")
        return EffectiveContextResponse.model_validate(data)

    async def list_members(self) -> MemberListResponse:
        data = await self.request("GET", "/api/v1/organizations/current/members")
        return MemberListResponse.model_validate(data)
