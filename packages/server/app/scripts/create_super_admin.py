"""
Bootstrap a platform super-admin (and its home organization) for a fresh
deployment.

    python -m app.scripts.create_super_admin --email root@example.com \
        --password '...' --org-code PLATFORM --org-name "Platform"
"""

import argparse
import asyncio

import structlog
from sqlmodel import select

from crm_shared.schemas.organizations import OrganizationSettings
from crm_shared.schemas.roles import OrganizationRole, PlatformRole

from app.core.auth import hash_password
from app.core.config import get_settings
from app.core.database import get_session_context
from app.core.logging_config import configure_logging
from app.models.organization import Organization
from app.models.user import User
from app.services.memberships import create_home_membership
from app.services.users import normalize_email

log = structlog.get_logger()


async def create_super_admin(
    email: str, password: str, first_name: str, last_name: str, org_code: str, org_name: str
) -> None:
    async with get_session_context() as session:
        # 1. Ensure the home organization exists
        result = await session.execute(select(Organization).where(Organization.code == org_code))
        org = result.scalar_one_or_none()
        if not org:
            org = Organization(
                code=org_code,
                name=org_name,
                settings=OrganizationSettings().model_dump(mode="json"),
            )
            session.add(org)
            await session.flush()
            log.info("bootstrap.organization_created", code=org_code)

        # 2. Create or promote the identity
        email = normalize_email(email)
        result = await session.execute(
            select(User).where(User.email == email, User.home_organization_id == org.id)
        )
        user = result.scalar_one_or_none()
        if user:
            user.role = PlatformRole.SUPER_ADMIN.value
            user.is_active = True
            session.add(user)
            log.info("bootstrap.user_promoted", email=email)
        else:
            user = User(
                email=email,
                password_hash=hash_password(password),
                first_name=first_name,
                last_name=last_name,
                role=PlatformRole.SUPER_ADMIN.value,
                home_organization_id=org.id,
            )
            session.add(user)
            await session.flush()
            await create_home_membership(user, OrganizationRole.OWNER, session)
            log.info("bootstrap.user_created", email=email)


def main() -> None:
    parser = argparse.ArgumentParser(description="Create a platform super-admin.")
    parser.add_argument("--email", required=True, help="Email address for the user")
    parser.add_argument("--password", required=True, help="Password for the user")
    parser.add_argument("--first-name", default="Platform")
    parser.add_argument("--last-name", default="Admin")
    parser.add_argument("--org-code", default="PLATFORM", help="Home organization code")
    parser.add_argument("--org-name", default="Platform", help="Home organization name")
    args = parser.parse_args()

    settings = get_settings()
    configure_logging(settings.log_level, "text")
    asyncio.run(
        create_super_admin(
            args.email, args.password, args.first_name, args.last_name, args.org_code, args.org_name
        )
    )


if __name__ == "__main__":
    main()
