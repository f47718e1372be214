"""
Client-side organization context manager.

State machine::

    UNINITIALIZED → LOADING → READY(organization | None) → ERROR
          ↑______________________ teardown() ____________________|

* Loads once per sign-in lifecycle; a repeated ``init`` for the same
  identity is ignored so write-backs cannot re-trigger the load.
* Every load or switch bumps ``generation``; results of calls started under
  an older generation are discarded (``StaleContextError``).
* Any failure clears organization state (fail closed).
* A successful switch is followed by a full re-fetch and the reload
  listeners, never by partial cache invalidation.
"""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog

from crm_shared.schemas.organizations import BrandingSettings, OrganizationListItem, OrganizationSnapshot
from crm_shared.schemas.roles import OrganizationRole, PlatformRole, is_super_admin

from .api import AccessApiClient, AccessDenied, ApiError, OrganizationInactive

log = structlog.get_logger()

ReloadListener = Callable[[Optional[OrganizationSnapshot]], Awaitable[None]]


class ContextStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


class StaleContextError(Exception):
    """A result was computed under an EffectiveContext that is no longer current."""


class ContextNotReady(Exception):
    """An organization-scoped call was attempted outside the READY state."""


class OrganizationContextManager:
    """Holds the current organization, the selectable organizations and the
    load/error state for one signed-in identity."""

    def __init__(self, api: AccessApiClient):
        self._api = api
        self._listeners: list[ReloadListener] = []
        self._reset()

    def _reset(self) -> None:
        self.status = ContextStatus.UNINITIALIZED
        self.organization: Optional[OrganizationSnapshot] = None
        self.organization_role: Optional[OrganizationRole] = None
        self.platform_role: Optional[PlatformRole] = None
        self.organizations: list[OrganizationListItem] = []
        self.error: Optional[str] = None
        self.error_code: Optional[str] = None
        self._lifecycle_user: Optional[uuid.UUID] = None
        self.generation = getattr(self, "generation", 0) + 1

    # --- Introspection ---

    @property
    def unscoped(self) -> bool:
        return self.status is ContextStatus.READY and self.organization is None

    @property
    def branding(self) -> Optional[BrandingSettings]:
        return self.organization.settings.branding if self.organization else None

    def add_reload_listener(self, listener: ReloadListener) -> Callable[[], None]:
        """Register a callback run after every successful switch; returns an unsubscribe."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    # --- Lifecycle ---

    async def init(self, user_id: uuid.UUID, platform_role: PlatformRole) -> ContextStatus:
        """Load the context for a freshly signed-in identity, once."""
        if self._lifecycle_user == user_id and self.status in (
            ContextStatus.LOADING,
            ContextStatus.READY,
        ):
            return self.status
        self._lifecycle_user = user_id
        self.platform_role = platform_role
        await self._load()
        return self.status

    def teardown(self) -> None:
        """Sign-out: back to UNINITIALIZED unconditionally."""
        log.debug("context.teardown")
        self._reset()

    async def reload(self) -> ContextStatus:
        """Full re-fetch of the context (used after a switch)."""
        await self._load()
        return self.status

    def _fail(self, exc: Exception) -> None:
        self.status = ContextStatus.ERROR
        self.organization = None
        self.organization_role = None
        self.organizations = []
        self.error = getattr(exc, "message", None) or str(exc) or type(exc).__name__
        self.error_code = getattr(exc, "code", None)
        log.warning("context.load_failed", error=self.error, code=self.error_code)

    async def _load(self) -> None:
        self.generation += 1
        generation = self.generation
        self.status = ContextStatus.LOADING
        self.error = None
        self.error_code = None

        try:
            organizations = await self._api.list_organizations()
            current = await self._api.current_organization()
        except ApiError as exc:
            if generation == self.generation:
                self._fail(exc)
            return
        except Exception as exc:
            # Unexpected: logged, surfaced generically, never READY.
            log.exception("context.load_unexpected_error")
            if generation == self.generation:
                self._fail(ApiError("CLIENT_ERROR", "Could not load organization context"))
            return

        if generation != self.generation:
            log.debug("context.load_discarded", generation=generation)
            return

        self.organizations = organizations
        self.platform_role = current.platform_role

        if current.organization is not None:
            self._ready(current.organization, current.organization_role)
            return

        if is_super_admin(current.platform_role):
            # Valid only for super-admins: no organization selected.
            self._ready(None, None)
            return

        if len(organizations) == 1:
            try:
                await self._switch(organizations[0].organization.id)
            except ApiError as exc:
                self._fail(exc)
            return

        self._fail(
            ApiError(
                "ORGANIZATION_SELECTION_REQUIRED",
                "No current organization and no single candidate to select",
            )
        )

    def _ready(
        self, organization: Optional[OrganizationSnapshot], role: Optional[OrganizationRole]
    ) -> None:
        self.status = ContextStatus.READY
        self.organization = organization
        self.organization_role = role
        log.info(
            "context.ready",
            organization_id=str(organization.id) if organization else None,
            generation=self.generation,
        )

    # --- Switch protocol ---

    async def switch(self, organization_id: uuid.UUID) -> Optional[OrganizationSnapshot]:
        """Switch to ``organization_id`` and reload everything.

        ``AccessDenied`` and ``OrganizationInactive`` leave the current
        context untouched (the server pointer did not move) and propagate.
        Any other failure fails closed.
        """
        await self._switch(organization_id)
        return self.organization

    async def _switch(self, organization_id: uuid.UUID) -> None:
        # In-flight results from the old context must not land after this.
        self.generation += 1
        try:
            await self._api.switch_organization(organization_id)
        except (AccessDenied, OrganizationInactive):
            raise
        except ApiError as exc:
            self._fail(exc)
            raise

        log.info("context.switched", organization_id=str(organization_id))
        await self._load()
        if self.status is ContextStatus.READY:
            await self._notify()

    async def clear(self) -> None:
        """Super-admin: return to the unscoped state."""
        self.generation += 1
        try:
            await self._api.clear_organization()
        except ApiError as exc:
            self._fail(exc)
            raise
        await self._load()
        if self.status is ContextStatus.READY:
            await self._notify()

    async def _notify(self) -> None:
        for listener in list(self._listeners):
            await listener(self.organization)

    # --- Scoped calls ---

    async def run_scoped(self, fn: Callable[[AccessApiClient], Awaitable[Any]]) -> Any:
        """Run an organization-scoped call; drop its result if the context
        changed while it was in flight."""
        if self.status is not ContextStatus.READY:
            raise ContextNotReady(f"Organization context is {self.status.value}")
        generation = self.generation
        result = await fn(self._api)
        if generation != self.generation:
            log.info("context.stale_result_discarded", generation=generation, current=self.generation)
            raise StaleContextError("Organization context changed during the request")
        return result
