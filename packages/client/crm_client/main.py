"""
``crm-context`` command line.

    crm-context -c client.yaml login --email a@b.c --password ...
    crm-context -c client.yaml status
    crm-context -c client.yaml orgs
    crm-context -c client.yaml switch <organization-id>
    crm-context -c client.yaml logout
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import sys
import uuid
from typing import Optional

import structlog

from crm_shared.schemas.organizations import OrganizationListItem

from .api import AccessApiClient, ApiError
from .config import ClientConfig, load_config
from .context import ContextStatus
from .session import ClientSession, SignedOut
from .token_store import TokenStore


def configure_logging(level: str = "info", fmt: str = "text") -> None:
    """Configure structlog with the specified level and format."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
    )


class TerminalPrompts:
    """Prompts answered on stdin."""

    async def _ask(self, question: str) -> str:
        return (await asyncio.to_thread(input, question)).strip()

    async def choose_organization(self, organizations: list[dict]) -> Optional[dict]:
        if not organizations:
            return None
        print("Select an organization:")
        for i, org in enumerate(organizations, start=1):
            print(f"  {i}. {org.get('name')} [{org.get('code')}]")
        answer = await self._ask("Number (empty to cancel): ")
        if not answer.isdigit() or not 1 <= int(answer) <= len(organizations):
            return None
        return organizations[int(answer) - 1]

    async def access_denied(
        self, message: str, organizations: list[OrganizationListItem]
    ) -> Optional[uuid.UUID]:
        print(f"Access denied: {message}")
        choice = await self.choose_organization(
            [item.organization.model_dump(mode="json") for item in organizations]
        )
        return uuid.UUID(choice["id"]) if choice else None

    async def organization_inactive(self, message: str) -> None:
        print(f"Organization unavailable: {message}. Contact an administrator.")


def _print_status(session: ClientSession) -> None:
    ctx = session.context
    user = session.user
    print(f"Signed in as: {user.email} ({user.role.value})" if user else "Not signed in")
    if ctx.status is ContextStatus.READY:
        if ctx.organization is None:
            print("Organization: none selected (super admin)")
        else:
            role = ctx.organization_role.value if ctx.organization_role else "super admin access"
            print(f"Organization: {ctx.organization.name} [{ctx.organization.code}] as {role}")
    elif ctx.status is ContextStatus.ERROR:
        print(f"Context error: {ctx.error}")


def _print_orgs(session: ClientSession) -> None:
    current = session.context.organization
    for item in session.context.organizations:
        org = item.organization
        marker = "*" if current and org.id == current.id else " "
        role = item.role.value if item.role else "-"
        primary = " (home)" if item.is_primary else ""
        print(f"{marker} {org.id}  {org.code:<16} {org.name}  {role}{primary}")


async def _run(config: ClientConfig, args: argparse.Namespace) -> int:
    organization_id = None
    if args.command == "switch":
        try:
            organization_id = uuid.UUID(args.organization_id)
        except ValueError:
            print(f"Usage error: not an organization id: {args.organization_id!r}", file=sys.stderr)
            return 2

    store = TokenStore(config.state.db_path)
    api = AccessApiClient(
        config.server.url,
        verify_tls=config.server.verify_tls,
        request_timeout=config.server.request_timeout_seconds,
    )
    await store.open()
    await api.open()
    session = ClientSession(api, store, TerminalPrompts())
    try:
        if args.command == "login":
            password = args.password or getpass.getpass("Password: ")
            await session.sign_in(args.email, password, args.organization)
            _print_status(session)
            return 0

        if not await session.restore():
            print("Not signed in. Run: crm-context login", file=sys.stderr)
            return 1

        if args.command == "status":
            _print_status(session)
        elif args.command == "orgs":
            _print_orgs(session)
        elif args.command == "switch":
            await session.switch(organization_id)
            _print_status(session)
        elif args.command == "logout":
            await session.sign_out()
            print("Signed out.")
        return 0 if session.context.status is not ContextStatus.ERROR else 2
    except SignedOut:
        print("Signed out.")
        return 0
    except ApiError as exc:
        print(f"Error [{exc.code}]: {exc.message}", file=sys.stderr)
        return 1
    finally:
        await api.close()
        await store.close()


def run() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="CRM organization context client")
    parser.add_argument(
        "-c", "--config",
        default="crm-client.yaml",
        help="Path to configuration file (default: crm-client.yaml)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    login = sub.add_parser("login", help="Sign in and load the organization context")
    login.add_argument("--email", required=True)
    login.add_argument("--password", help="Prompted for when omitted")
    login.add_argument("--organization", help="Organization code, when the email exists in several")

    sub.add_parser("status", help="Show the signed-in identity and current organization")
    sub.add_parser("orgs", help="List selectable organizations")
    switch = sub.add_parser("switch", help="Switch the current organization")
    switch.add_argument("organization_id")
    sub.add_parser("logout", help="Sign out and forget the token")

    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except Exception as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)

    configure_logging(config.logging.level, config.logging.format)
    try:
        sys.exit(asyncio.run(_run(config, args)))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    run()
