#!/usr/bin/env python
"""
scripts/seed.py
───────────────
Bootstrap data for a fresh database.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=... python scripts/seed.py [--plan-price 1900]

What it does:
  1. Creates the admin user (password hashed with bcrypt) unless it exists.
  2. Creates a company authored by the admin and its author member.
  3. Creates a default plan with unlimited resources.

No subscription is created: subscriptions only ever come from Stripe webhooks.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

# Allow running from repo root
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.core.database import AsyncSessionLocal
from app.core.security import hash_password
from app.models.models import MemberPermission, MemberRole
from app.repositories.repositories import (
    CompanyRepository, MemberRepository, PlanRepository, UserRepository
)

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
log = logging.getLogger(__name__)


async def seed(email: str, password: str, company_name: str, plan_name: str, plan_price: int) -> None:
    async with AsyncSessionLocal() as db:
        users = UserRepository(db)
        admin = await users.get_by_email(email)
        if admin:
            log.info(f"Admin {email} already exists, skipping seed.")
            return

        admin = await users.create(
            email=email,
            hashed_password=hash_password(password),
            first_name="Admin",
            is_admin=True,
        )
        log.info(f"Created admin user {admin.email}")

        company = await CompanyRepository(db).create(name=company_name, author_id=admin.id)
        await MemberRepository(db).create(
            company_id=company.id,
            user_id=admin.id,
            role=MemberRole.author,
            permissions=[MemberPermission.ALL.value],
        )
        await users.select_company(admin, company.id)
        log.info(f"Created company {company.name} ({company.id})")

        plan = await PlanRepository(db).create(name=plan_name, price=plan_price)
        log.info(f"Created plan {plan.name} ({plan.id}) at {plan_price} cents/month")


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed the admin user, company and default plan.")
    parser.add_argument("--company", default="Default Company")
    parser.add_argument("--plan-name", default="Standard")
    parser.add_argument("--plan-price", type=int, default=1900, help="Monthly price in cents")
    args = parser.parse_args()

    email = os.environ.get("ADMIN_EMAIL")
    password = os.environ.get("ADMIN_PASSWORD")
    if not email or not password:
        log.error("ADMIN_EMAIL and ADMIN_PASSWORD must be set.")
        return 1

    asyncio.run(seed(email, password, args.company, args.plan_name, args.plan_price))
    return 0


if __name__ == "__main__":
    sys.exit(main())
