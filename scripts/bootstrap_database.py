#!/usr/bin/env python3
"""Bootstrap the Prontivus database with plans, consultation types and a super admin."""

from __future__ import annotations

import argparse
import os
import sys
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Tuple

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from prontivus import auth, clinics  # noqa: E402
from prontivus.db import init_schema, session_scope  # noqa: E402
from prontivus.db.models import UserRole  # noqa: E402
from prontivus.observability import configure_logging  # noqa: E402


DEFAULT_PLANS: Tuple[Dict[str, object], ...] = (
    {
        "tier": "basic",
        "name": "Básico",
        "price": Decimal("299.00"),
        "monthly_tokens": 2000,
        "telemedicine_enabled": False,
    },
    {
        "tier": "intermediate",
        "name": "Intermediário",
        "price": Decimal("599.00"),
        "monthly_tokens": 5000,
        "telemedicine_enabled": False,
    },
    {
        "tier": "professional",
        "name": "Profissional",
        "price": Decimal("999.00"),
        "monthly_tokens": 10000,
        "telemedicine_enabled": True,
    },
)

DEFAULT_SUPER_ADMIN = {
    "email": "admin@system.com",
    "password": "Admin@123",
    "name": "Super Administrador",
}

SUPER_ADMIN_ENV_VARS = ("PRONTIVUS_ADMIN_EMAIL", "PRONTIVUS_ADMIN_PASSWORD")


def seed_plans(session) -> List[str]:
    created: List[str] = []
    for spec in DEFAULT_PLANS:
        if clinics.get_plan_by_tier(session, str(spec["tier"])) is not None:
            continue
        plan = clinics.create_plan(
            session,
            str(spec["tier"]),
            str(spec["name"]),
            spec["price"],
            int(spec["monthly_tokens"]),
            telemedicine_enabled=bool(spec["telemedicine_enabled"]),
        )
        created.append(plan.tier)
    return created


def seed_super_admin(session, args: argparse.Namespace) -> Tuple[str, str] | None:
    email = args.admin_email or os.getenv(SUPER_ADMIN_ENV_VARS[0]) or DEFAULT_SUPER_ADMIN["email"]
    password = args.admin_password or os.getenv(SUPER_ADMIN_ENV_VARS[1]) or DEFAULT_SUPER_ADMIN["password"]
    if auth.get_user_by_email(session, email) is not None:
        return None
    auth.register_user(
        session,
        email,
        password,
        DEFAULT_SUPER_ADMIN["name"],
        UserRole.SUPER_ADMIN.value,
    )
    return email, password


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Seed the Prontivus database with plans, consultation types and the super admin.",
    )
    parser.add_argument(
        "--skip-schema",
        action="store_true",
        help="Assume the schema already exists (e.g. created by 'alembic upgrade head').",
    )
    parser.add_argument(
        "--skip-user-seed",
        action="store_true",
        help="Do not create the default super admin account.",
    )
    parser.add_argument("--admin-email", help="Override the seeded super admin e-mail")
    parser.add_argument("--admin-password", help="Override the seeded super admin password")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    configure_logging()

    if not args.skip_schema:
        init_schema()

    created_admin = None
    with session_scope() as session:
        created_plans = seed_plans(session)
        types = clinics.ensure_consultation_types(session)
        if not args.skip_user_seed:
            created_admin = seed_super_admin(session, args)

    print("Database schema ensured." if not args.skip_schema else "Schema creation skipped.")
    print(f"Plans created: {', '.join(created_plans) if created_plans else 'none (already present)'}")
    print(f"Consultation types available: {len(types)}")

    if args.skip_user_seed:
        print("User seeding skipped.")
    elif created_admin:
        email, password = created_admin
        print("Created the default super admin (update credentials before production use):")
        print(f"  - {email} → {password}")
    else:
        print("Super admin already existed; no credentials were changed.")

    return 0


if __name__ == "__main__":
    sys.exit(main())
