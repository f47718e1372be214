"""
Client session: the composition root wiring the API client, the token store
and the organization context manager for one signed-in identity.
"""

from __future__ import annotations

import uuid
from typing import Any, Awaitable, Callable, Optional, Protocol

import structlog

from crm_shared.schemas.organizations import OrganizationListItem
from crm_shared.schemas.users import UserResponse

from .api import AccessApiClient, AccessDenied, ApiError, OrganizationInactive, SelectionRequired
from .context import OrganizationContextManager
from .token_store import TokenStore

log = structlog.get_logger()

# Picker rounds per call before giving up.
MAX_SELECTION_ROUNDS = 2


class Prompts(Protocol):
    """User-facing decisions the session cannot make on its own."""

    async def choose_organization(self, organizations: list[dict]) -> Optional[dict]:
        """Pick one of ``organizations`` (dicts with id/code/name); None cancels."""

    async def access_denied(
        self, message: str, organizations: list[OrganizationListItem]
    ) -> Optional[uuid.UUID]:
        """Offer another accessible organization; None means sign out."""

    async def organization_inactive(self, message: str) -> None:
        """Terminal: the organization needs an administrator."""


class SignedOut(Exception):
    """The user chose to sign out instead of picking an organization."""


class ClientSession:
    def __init__(self, api: AccessApiClient, store: TokenStore, prompts: Prompts):
        self.api = api
        self.store = store
        self.prompts = prompts
        self.context = OrganizationContextManager(api)
        self.user: Optional[UserResponse] = None

    @property
    def signed_in(self) -> bool:
        return self.user is not None

    async def _start(self, user: UserResponse) -> None:
        self.user = user
        await self.context.init(user.id, user.role)

    # --- Sign-in lifecycle ---

    async def restore(self) -> bool:
        """Resume from a stored token. Returns False if there is none or it
        no longer works."""
        stored = await self.store.load(self.api.base_url)
        if stored is None:
            return False
        self.api.token = stored.token
        try:
            user = await self.api.me()
        except ApiError as exc:
            log.info("session.restore_failed", code=exc.code)
            self.api.token = None
            await self.store.clear(self.api.base_url)
            return False
        await self._start(user)
        return True

    async def sign_in(
        self, email: str, password: str, organization_code: Optional[str] = None
    ) -> UserResponse:
        """Log in; if the email exists in several organizations, ask which one."""
        try:
            result = await self.api.login(email, password, organization_code)
        except SelectionRequired as exc:
            choice = await self.prompts.choose_organization(exc.organizations)
            if choice is None:
                raise
            result = await self.api.login(email, password, choice["code"])

        await self.store.save(
            self.api.base_url, result.token, str(result.user.id), result.expires_at
        )
        log.info("session.signed_in", user_id=str(result.user.id))
        await self._start(result.user)
        return result.user

    async def sign_out(self) -> None:
        """Revoke the token server-side (best effort) and reset all state."""
        try:
            if self.api.token:
                await self.api.logout()
        except ApiError as exc:
            log.warning("session.logout_failed", code=exc.code)
        finally:
            await self.store.clear(self.api.base_url)
            self.api.token = None
            self.user = None
            self.context.teardown()
            log.info("session.signed_out")

    # --- Context switching ---

    async def switch(self, organization_id: uuid.UUID) -> None:
        """Switch organizations, handling the access-denied and inactive cases.

        A denied switch offers another organization until one succeeds or
        the user declines, which signs them out.
        """
        target = organization_id
        while True:
            try:
                await self.context.switch(target)
                return
            except AccessDenied as exc:
                choice = await self.prompts.access_denied(exc.message, self.context.organizations)
                if choice is None:
                    await self.sign_out()
                    raise SignedOut() from exc
                target = choice
            except OrganizationInactive as exc:
                await self.prompts.organization_inactive(exc.message)
                raise

    async def call(self, fn: Callable[[AccessApiClient], Awaitable[Any]]) -> Any:
        """Run an organization-scoped action.

        On selection-required, the user picks an organization and the action
        is retried only after the switch has succeeded. Nothing is picked
        silently.
        """
        for _ in range(MAX_SELECTION_ROUNDS):
            try:
                return await self.context.run_scoped(fn)
            except SelectionRequired as exc:
                choice = await self.prompts.choose_organization(exc.organizations)
                if choice is None:
                    raise
                await self.switch(uuid.UUID(str(choice["id"])))
        return await self.context.run_scoped(fn)
